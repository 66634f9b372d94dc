from typing import MutableMapping, Optional, Tuple, Union
import logging
import enum

import numpy as np
from numpy.typing import ArrayLike
from mpi4py import MPI

from . import core
from . import parallel
from .constants import GRAVITY

TGRID = 1
UGRID = 2
VGRID = 3

DEG2RAD = np.pi / 180  # degree to radian conversion
R_EARTH = 6378815.0  # radius of the earth (m)


class Topology(enum.IntEnum):
    PERIODIC = 1  #: the domain wraps around
    BOUNDED = 2  #: impermeable walls at both ends
    FLAT = 3  #: a single point without variation in this direction


class Grid:
    """One of the staggered grids of a :class:`Domain`: T (tracer points at cell
    centers), U (faces in x-direction, east of the T point with the same index) or
    V (faces in y-direction, north of the T point with the same index).
    """

    _array_args = {
        "x": dict(units="m"),
        "y": dict(units="m"),
        "lon": dict(units="degrees_east", long_name="longitude"),
        "lat": dict(units="degrees_north", long_name="latitude"),
        "dx": dict(units="m"),
        "dy": dict(units="m"),
        "idx": dict(units="m-1"),
        "idy": dict(units="m-1"),
        "area": dict(units="m2", long_name="cell area"),
        "iarea": dict(units="m-2", long_name="inverse of cell area"),
        "mask": dict(),
        "H": dict(units="m", long_name="water depth at rest"),
        "hn": dict(units="m", long_name="cell thickness"),
    }

    __slots__ = tuple(_array_args) + (
        "domain",
        "type",
        "postfix",
        "halo",
        "nx",
        "ny",
        "nz",
        "nx_",
        "ny_",
        "nz_",
        "xc1d",
        "yc1d",
        "_land",
        "_water",
        "_active",
    )
    domain: "Domain"

    def __init__(self, domain: "Domain", grid_type: int):
        self.domain = domain
        self.type = grid_type
        self.postfix = {TGRID: "t", UGRID: "u", VGRID: "v"}[grid_type]
        self.halo = domain.halo
        self.nx, self.ny, self.nz = domain.nx, domain.ny, domain.nz
        self.nx_ = self.nx + 2 * self.halo
        self.ny_ = self.ny + 2 * self.halo
        self.nz_ = self.nz

    def _setup_array(self, name: str, data: np.ndarray) -> core.Array:
        array = core.Array(self, name=name + self.postfix, **self._array_args[name])
        data.flags.writeable = False
        array.wrap_ndarray(data)
        setattr(self, name, array)
        return array

    def _setup_metrics(
        self,
        x: np.ndarray,
        y: np.ndarray,
        dx: np.ndarray,
        dy: np.ndarray,
        hn: np.ndarray,
        xc1d: np.ndarray,
        yc1d: np.ndarray,
    ):
        xname, yname = ("lon", "lat") if self.domain.spherical else ("x", "y")
        self._setup_array(xname, x)
        self._setup_array(yname, y)
        self.xc1d, self.yc1d = xc1d, yc1d
        self._setup_array("dx", dx)
        self._setup_array("dy", dy)
        self._setup_array("area", dx * dy)
        self._setup_array("idx", 1.0 / dx)
        self._setup_array("idy", 1.0 / dy)
        self._setup_array("iarea", 1.0 / (dx * dy))
        self._setup_array("hn", hn)
        H = hn.sum(axis=0)
        self._setup_array("H", H)
        self._setup_array("mask", (H > 0.0).astype(np.intc))
        self._water = self.mask.all_values != 0
        self._land = ~self._water
        self._active = hn > 0.0

    def array(self, *args, **kwargs) -> core.Array:
        return core.Array.create(self, *args, **kwargs)

    def mask_immersed(self, array: core.Array):
        """Set all immersed or dry points of the array to zero"""
        mask = self._active if array.ndim == 3 else self._water
        np.putmask(array.all_values, ~mask, 0.0)


def find_interfaces(c: ArrayLike) -> np.ndarray:
    """Cell edges halfway between consecutive centers; the outer edges lie half a
    cell beyond the first and last center."""
    c = np.asarray(c, dtype=float)
    if c.size == 1:
        # single point (e.g., a flat dimension): use unit width
        return np.array([c[0] - 0.5, c[0] + 0.5])
    mid = 0.5 * (c[1:] + c[:-1])
    return np.concatenate(
        ([2 * c[0] - mid[0]], mid, [2 * c[-1] - mid[-1]])
    )


def create_cartesian(
    x: ArrayLike, y: ArrayLike, nz: int, interfaces=False, **kwargs
) -> "Domain":
    """Domain on a Cartesian grid described by 1D coordinate arrays (m).

    Args:
        x: x coordinate of cell centers, or of cell edges if ``interfaces`` is set
        y: y coordinate of cell centers, or of cell edges if ``interfaces`` is set
        nz: number of layers
        interfaces: whether ``x`` and ``y`` describe cell edges
        **kwargs: passed on to :func:`create`
    """
    x, y = np.asarray(x, dtype=float), np.asarray(y, dtype=float)
    if x.ndim != 1 or y.ndim != 1:
        raise Exception("x and y coordinates must be one-dimensional")
    if not interfaces:
        x, y = find_interfaces(x), find_interfaces(y)
    return create(x.size - 1, y.size - 1, nz, x=x, y=y, **kwargs)


def create_spherical(
    lon: ArrayLike, lat: ArrayLike, nz: int, interfaces=False, **kwargs
) -> "Domain":
    """Domain on a longitude-latitude grid described by 1D coordinate arrays
    (degrees). Zonal cell widths shrink with the cosine of latitude.

    Args:
        lon: longitude of cell centers, or of cell edges if ``interfaces`` is set
        lat: latitude of cell centers, or of cell edges if ``interfaces`` is set
        nz: number of layers
        interfaces: whether ``lon`` and ``lat`` describe cell edges
        **kwargs: passed on to :func:`create`
    """
    lon, lat = np.asarray(lon, dtype=float), np.asarray(lat, dtype=float)
    if lon.ndim != 1 or lat.ndim != 1:
        raise Exception("longitude and latitude must be one-dimensional")
    if not interfaces:
        lon, lat = find_interfaces(lon), find_interfaces(lat)
    return create(
        lon.size - 1, lat.size - 1, nz, lon=lon, lat=lat, spherical=True, **kwargs
    )


def create(
    nx: int,
    ny: int,
    nz: int,
    x: Optional[np.ndarray] = None,
    y: Optional[np.ndarray] = None,
    lon: Optional[np.ndarray] = None,
    lat: Optional[np.ndarray] = None,
    H: Union[float, ArrayLike] = 0.0,
    mask: Union[int, ArrayLike] = 1,
    tiling: Optional[Union[parallel.Tiling, Tuple[int, int]]] = None,
    x_topology: Topology = Topology.BOUNDED,
    y_topology: Topology = Topology.BOUNDED,
    **kwargs
) -> "Domain":
    """Create the local subdomain from coordinates, bathymetry and mask of the
    global domain. All ranks must provide the global data.

    Args:
        nx: number of tracer points in x-direction (global domain)
        ny: number of tracer points in y-direction (global domain)
        nz: number of vertical layers
        x: x coordinates of the interfaces (m)
        y: y coordinates of the interfaces (m)
        lon: longitude of the interfaces (degrees East)
        lat: latitude of the interfaces (degrees North)
        H: bathymetric depth (m, positive below mean sea level)
        mask: mask (0: land, 1: water)
        tiling: subdomain decomposition, or tuple with the number of subdomain
            rows and columns
        x_topology: topology in x-direction
        y_topology: topology in y-direction
        **kwargs: additional keyword arguments passed to :class:`Domain`
    """
    if nx <= 0:
        raise Exception("Number of x points is %i but must be > 0" % nx)
    if ny <= 0:
        raise Exception("Number of y points is %i but must be > 0" % ny)

    periodic = dict(
        periodic_x=x_topology == Topology.PERIODIC,
        periodic_y=y_topology == Topology.PERIODIC,
    )
    if tiling is None:
        tiling = parallel.Tiling(nrow=1, ncol=1, **periodic)
    elif not isinstance(tiling, parallel.Tiling):
        nrow, ncol = tiling
        tiling = parallel.Tiling(nrow=nrow, ncol=ncol, **periodic)
    tiling.set_extent(nx, ny)

    H = np.broadcast_to(np.asarray(H, dtype=float), (ny, nx))
    mask = np.broadcast_to(np.asarray(mask), (ny, nx))
    if "zf" not in kwargs or kwargs["zf"] is None:
        # Uniform layers that span the deepest water column of the global domain
        kwargs["zf"] = np.linspace(-H[mask != 0].max(initial=0.0), 0.0, nz + 1)

    islice = slice(tiling.xoffset, tiling.xoffset + tiling.nx_sub)
    jslice = slice(tiling.yoffset, tiling.yoffset + tiling.ny_sub)
    islice_if = slice(islice.start, islice.stop + 1)
    jslice_if = slice(jslice.start, jslice.stop + 1)

    def local(c, s):
        return None if c is None else np.asarray(c, dtype=float)[s]

    return Domain(
        tiling.nx_sub,
        tiling.ny_sub,
        nz,
        x=local(x, islice_if),
        y=local(y, jslice_if),
        lon=local(lon, islice_if),
        lat=local(lat, jslice_if),
        H=H[jslice, islice],
        mask=mask[jslice, islice],
        tiling=tiling,
        x_topology=x_topology,
        y_topology=y_topology,
        **kwargs
    )


class Domain:
    def __init__(
        self,
        nx: int,
        ny: int,
        nz: int,
        x: Optional[np.ndarray] = None,
        y: Optional[np.ndarray] = None,
        lon: Optional[np.ndarray] = None,
        lat: Optional[np.ndarray] = None,
        spherical: bool = False,
        H: Union[float, ArrayLike] = 0.0,
        mask: Union[int, ArrayLike] = 1,
        zf: Optional[ArrayLike] = None,
        x_topology: Topology = Topology.BOUNDED,
        y_topology: Topology = Topology.BOUNDED,
        partial_cell_bottom: bool = False,
        minimum_fractional_cell_height: float = 0.2,
        halo: int = 2,
        tiling: Optional[parallel.Tiling] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Create a (sub)domain with coordinates, bathymetry and mask.

        Args:
            nx: number of tracer points in x-direction
            ny: number of tracer points in y-direction
            nz: number of vertical layers
            x: x coordinate of the nx + 1 cell interfaces (m)
            y: y coordinate of the ny + 1 cell interfaces (m)
            lon: longitude of the nx + 1 cell interfaces (degrees East)
            lat: latitude of the ny + 1 cell interfaces (degrees North)
            spherical: grid is spherical (as opposed to Cartesian). If True,
                ``lon`` and ``lat`` must be provided. Otherwise ``x`` and ``y``
                must be provided.
            H: bathymetric depth (m, positive below mean sea level)
            mask: initial mask (0: land, 1: water)
            zf: height of the nz + 1 layer interfaces (m), increasing from the
                deepest level to the surface (0). By default, layers have equal
                thickness and span the deepest water column.
            x_topology: topology in x-direction
            y_topology: topology in y-direction
            partial_cell_bottom: let the deepest active cell of each column end at
                the bottom, instead of activating only cells whose center lies above
                the bottom
            minimum_fractional_cell_height: minimum thickness of a partial bottom
                cell, as fraction of the full cell thickness
            halo: width of the halos
            tiling: subdomain decomposition
            logger: logger to derive the domain logger from
        """
        if nx <= 0:
            raise Exception("Number of x points is %i but must be > 0" % nx)
        if ny <= 0:
            raise Exception("Number of y points is %i but must be > 0" % ny)
        if nz <= 0:
            raise Exception("Number of z points is %i but must be > 0" % nz)
        if halo <= 0:
            raise Exception("Halo width is %i but must be > 0" % halo)

        # Loggers
        if logger is None:
            logger = parallel.get_logger()
        self.root_logger: logging.Logger = logger
        self.logger: logging.Logger = self.root_logger.getChild("domain")

        #: collection of all model fields
        self.fields: MutableMapping[str, core.Array] = {}

        self.nx, self.ny, self.nz = nx, ny, nz
        self.halo = halo
        self.spherical = spherical
        self.x_topology = Topology(x_topology)
        self.y_topology = Topology(y_topology)
        self.partial_cell_bottom = partial_cell_bottom
        self.minimum_fractional_cell_height = minimum_fractional_cell_height

        # Set up subdomain partition information to enable halo exchanges
        if tiling is None:
            tiling = parallel.Tiling(
                nrow=1,
                ncol=1,
                periodic_x=self.x_topology == Topology.PERIODIC,
                periodic_y=self.y_topology == Topology.PERIODIC,
            )
            tiling.set_extent(nx, ny)
        self.tiling = tiling
        for name, topology, n in (
            ("x", self.x_topology, tiling.nx_glob),
            ("y", self.y_topology, tiling.ny_glob),
        ):
            if topology == Topology.FLAT and n != 1:
                raise Exception(
                    "Flat %s-direction requires a single %s point, but there are %i"
                    % (name, name, n)
                )

        if spherical:
            if lon is None or lat is None:
                raise Exception("lon and lat must be provided for a spherical grid")
            x, y = lon, lat
        elif x is None or y is None:
            raise Exception("x and y must be provided for a Cartesian grid")
        self._xf, self._yf = np.asarray(x, dtype=float), np.asarray(y, dtype=float)
        if self._xf.shape != (nx + 1,):
            raise Exception(
                "Expected %i x interfaces, but got shape %s" % (nx + 1, self._xf.shape)
            )
        if self._yf.shape != (ny + 1,):
            raise Exception(
                "Expected %i y interfaces, but got shape %s" % (ny + 1, self._yf.shape)
            )
        self._xc = 0.5 * (self._xf[:-1] + self._xf[1:])
        self._yc = 0.5 * (self._yf[:-1] + self._yf[1:])

        shape_ = (ny + 2 * halo, nx + 2 * halo)
        self.H_ = np.zeros(shape_)
        self.mask_ = np.zeros(shape_, dtype=np.intc)
        self.H = self.H_[halo:-halo, halo:-halo]
        self.mask = self.mask_[halo:-halo, halo:-halo]
        self.H[...] = H
        self.mask[...] = mask

        if zf is None:
            Hmax = self.H[self.mask != 0].max(initial=0.0)
            Hmax = self.tiling.comm.allreduce(Hmax, op=MPI.MAX)
            zf = np.linspace(-Hmax, 0.0, nz + 1)
        zf = np.asarray(zf, dtype=float)
        if zf.shape != (nz + 1,):
            raise Exception(
                "Expected %i layer interfaces, but got shape %s" % (nz + 1, zf.shape)
            )
        if (np.diff(zf) <= 0.0).any():
            raise Exception("Layer interfaces must increase from bottom to surface")
        if zf[-1] != 0.0:
            raise Exception("Uppermost layer interface must lie at 0, not %s" % zf[-1])

        #: height of layer interfaces of the underlying grid (m)
        self.zf = zf
        #: height of layer centers of the underlying grid (m)
        self.zc = 0.5 * (zf[:-1] + zf[1:])
        #: layer thickness of the underlying grid (m)
        self.dz = np.diff(zf)

        self.T: Optional[Grid] = None
        self.U: Optional[Grid] = None
        self.V: Optional[Grid] = None
        self._initialized = False

        self.logger.info(
            "Domain size (T grid): %i x %i x %i (%i cells)" % (nx, ny, nz, nx * ny * nz)
        )

    def _exchange(self, data: np.ndarray) -> np.ndarray:
        if self.tiling:
            parallel.DistributedArray(self.tiling, data, self.halo).update_halos()
        return data

    def _pad(self, interior: np.ndarray) -> np.ndarray:
        """Extend interior values into the halos by repeating the outermost values,
        then replace them with values from neighboring subdomains where available.
        """
        interior = np.broadcast_to(interior, (self.ny, self.nx))
        return self._exchange(np.pad(interior, self.halo, mode="edge"))

    def initialize(self):
        """Initialize the domain. This creates the T, U and V grids with their
        metrics, masks and cell thicknesses. Values for the mask and bathymetry are
        subsequently read-only.
        """
        if self._initialized:
            raise Exception("Domain has already been initialized")
        halo = self.halo
        ny_, nx_ = self.H_.shape

        # Mask is invalid in halos, unless there is an actual neighbor
        self.mask_[:halo, :] = 0
        self.mask_[-halo:, :] = 0
        self.mask_[:, :halo] = 0
        self.mask_[:, -halo:] = 0
        self._exchange(self.mask_)
        self._exchange(self.H_)

        # Cell widths on the T grid
        dxf, dyf = np.diff(self._xf), np.diff(self._yf)
        if self.spherical:
            dy_t = R_EARTH * DEG2RAD * dyf[:, np.newaxis]
            dx_t = R_EARTH * DEG2RAD * dxf * np.cos(DEG2RAD * self._yc[:, np.newaxis])
        else:
            dy_t = dyf[:, np.newaxis]
            dx_t = dxf[np.newaxis, :]
        dx_t, dy_t = self._pad(dx_t), self._pad(dy_t)

        # Distances between T points, used as widths of U and V cells
        dx_u, dy_v = dx_t.copy(), dy_t.copy()
        dx_u[:, :-1] = 0.5 * (dx_t[:, :-1] + dx_t[:, 1:])
        dy_v[:-1, :] = 0.5 * (dy_t[:-1, :] + dy_t[1:, :])
        dx_v = dx_t.copy()
        dx_v[:-1, :] = 0.5 * (dx_t[:-1, :] + dx_t[1:, :])

        # Cell thicknesses on the T grid, zero in immersed cells
        zf = self.zf[:, np.newaxis, np.newaxis]
        zc = self.zc[:, np.newaxis, np.newaxis]
        dz = self.dz[:, np.newaxis, np.newaxis]
        bottom = -self.H_[np.newaxis, :, :]
        if self.partial_cell_bottom:
            active = zf[1:] > bottom
            hmin = self.minimum_fractional_cell_height * dz
            hn_t = np.where(active, np.clip(zf[1:] - bottom, hmin, dz), 0.0)
        else:
            active = zc > bottom
            hn_t = np.where(active, np.broadcast_to(dz, active.shape), 0.0)
        hn_t[:, self.mask_ == 0] = 0.0
        dry = (hn_t.sum(axis=0) == 0.0) & (self.mask_ != 0)
        if dry[halo:-halo, halo:-halo].any():
            self.logger.warning(
                "Masking %i water points that are too shallow to contain an active"
                " layer" % dry[halo:-halo, halo:-halo].sum()
            )
        self.mask_[dry] = 0

        # Cell thicknesses on U and V grids: both neighboring T cells must be active
        hn_u = np.zeros_like(hn_t)
        hn_v = np.zeros_like(hn_t)
        if self.x_topology != Topology.FLAT:
            hn_u[..., :, :-1] = np.minimum(hn_t[..., :, :-1], hn_t[..., :, 1:])
        if self.y_topology != Topology.FLAT:
            hn_v[..., :-1, :] = np.minimum(hn_t[..., :-1, :], hn_t[..., 1:, :])

        # Coordinates; halos receive extrapolated values
        def coordinates(xc1d, yc1d):
            xx, yy = np.broadcast_arrays(xc1d[np.newaxis, :], yc1d[:, np.newaxis])
            return np.pad(xx, halo, mode="edge"), np.pad(yy, halo, mode="edge")

        self.T = Grid(self, TGRID)
        self.U = Grid(self, UGRID)
        self.V = Grid(self, VGRID)
        xy_t = coordinates(self._xc, self._yc)
        xy_u = coordinates(self._xf[1:], self._yc)
        xy_v = coordinates(self._xc, self._yf[1:])
        self.T._setup_metrics(*xy_t, dx_t, dy_t, hn_t, self._xc, self._yc)
        self.U._setup_metrics(*xy_u, dx_u, dy_t, hn_u, self._xf[1:], self._yc)
        self.V._setup_metrics(*xy_v, dx_v, dy_v, hn_v, self._xc, self._yf[1:])

        self.H_.flags.writeable = self.mask_.flags.writeable = False
        self._initialized = True

        self.tiling.report(self.logger)
        self.logger.info(
            "Water points in the interior: "
            + ", ".join(
                "%i (%s)" % ((grid.mask.values > 0).sum(), name)
                for name, grid in zip("TUV", self.grids)
            )
        )
        self.cfl_check()

    @property
    def grids(self) -> Tuple[Grid, Grid, Grid]:
        return self.T, self.U, self.V

    def cfl_check(self, log: bool = True) -> float:
        """Determine maximum time step for depth-integrated equations

        Args:
            log: whether to write the maximum time step and its location to the log
        """
        T = self.T
        mask = T.mask.values > 0
        if not mask.any():
            return np.inf
        idx2 = 0.0 if self.x_topology == Topology.FLAT else T.idx.values ** 2
        idy2 = 0.0 if self.y_topology == Topology.FLAT else T.idy.values ** 2
        H = T.H.values
        maxdts = np.full(H.shape, np.inf)
        np.divide(
            1.0,
            np.sqrt(2.0 * GRAVITY * H * (idx2 + idy2)),
            where=mask,
            out=maxdts,
        )
        maxdt = maxdts.min()
        if log:
            j, i = np.unravel_index(np.argmin(maxdts), maxdts.shape)
            self.logger.info(
                "Maximum dt = %.3f s (i=%i, j=%i, water depth=%.3f m)"
                % (maxdt, i, j, H[j, i])
            )
        return maxdt

    def mask_rectangle(
        self,
        xmin: Optional[float] = None,
        xmax: Optional[float] = None,
        ymin: Optional[float] = None,
        ymax: Optional[float] = None,
        value: int = 0,
    ):
        """Set the mask of all T points whose centers lie inside a rectangle.
        Bounds that are not given are unlimited. Bounds are longitude and latitude
        for spherical domains, and x and y (m) otherwise.

        Args:
            xmin: western bound
            xmax: eastern bound
            ymin: southern bound
            ymax: northern bound
            value: new mask value (0: land, 1: water)
        """
        if self._initialized:
            raise Exception(
                "mask_rectangle cannot be called after the domain has been initialized."
            )
        x, y = np.broadcast_arrays(self._xc[np.newaxis, :], self._yc[:, np.newaxis])
        selected = np.ones(self.mask.shape, dtype=bool)
        if xmin is not None:
            selected &= x >= xmin
        if xmax is not None:
            selected &= x <= xmax
        if ymin is not None:
            selected &= y >= ymin
        if ymax is not None:
            selected &= y <= ymax
        self.mask[selected] = value

    def mask_indices(self, istart, istop, jstart, jstop, value: int = 0):
        """Set the mask of all T points in a block of global indices.

        Args:
            istart: lower x index in the global domain (first that is included)
            istop: upper x index in the global domain (first that is EXcluded)
            jstart: lower y index in the global domain (first that is included)
            jstop: upper y index in the global domain (first that is EXcluded)
            value: mask value to assign
        """
        if self._initialized:
            raise Exception(
                "mask_indices cannot be called after the domain has been initialized."
            )
        istart = min(max(0, istart - self.tiling.xoffset), self.nx)
        istop = min(max(istart, istop - self.tiling.xoffset), self.nx)
        jstart = min(max(0, jstart - self.tiling.yoffset), self.ny)
        jstop = min(max(jstart, jstop - self.tiling.yoffset), self.ny)
        self.mask[jstart:jstop, istart:istop] = value
