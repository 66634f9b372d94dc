import numbers
from typing import Optional, Union, Tuple, Literal, Mapping, Any, TYPE_CHECKING

import numpy as np
import numpy.lib.mixins
from numpy.typing import DTypeLike, ArrayLike
import xarray

from . import parallel
from .constants import CENTERS, INTERFACES

if TYPE_CHECKING:
    from . import domain

VerticalStaggering = Literal[None, False, CENTERS, INTERFACES]


def _infer_z(grid: "domain.Grid", fill: Optional[np.ndarray]) -> VerticalStaggering:
    if fill is None or fill.ndim != 3:
        return False
    return INTERFACES if fill.shape[0] == grid.nz_ + 1 else CENTERS


def _full_shape(grid: "domain.Grid", z: VerticalStaggering) -> Tuple[int, ...]:
    if not z:
        return (grid.ny_, grid.nx_)
    nz = grid.nz_ + 1 if z == INTERFACES else grid.nz_
    return (nz, grid.ny_, grid.nx_)


class Array(numpy.lib.mixins.NDArrayOperatorsMixin):
    """Field on one of the staggered grids, with halos.

    The complete data, including halos, is available as :attr:`all_values`.
    The interior is available as :attr:`values`, a view of :attr:`all_values`.
    The last two dimensions are y and x; 3D fields have the vertical dimension
    first, with index 0 for the deepest layer.

    NumPy ufuncs and arithmetic operators act on :attr:`all_values` and return
    a new (unregistered) array on the same grid.
    """

    __slots__ = (
        "grid",
        "all_values",
        "values",
        "attrs",
        "_name",
        "_fill_value",
        "_ma",
        "_xarray",
        "_exchange",
    )

    def __init__(
        self,
        grid: "domain.Grid",
        name: Optional[str] = None,
        units: Optional[str] = None,
        long_name: Optional[str] = None,
        fill_value: Optional[Union[float, int]] = None,
        attrs: Mapping[str, Any] = {},
    ):
        if fill_value is not None and np.ndim(fill_value) != 0:
            raise Exception("fill_value must be a scalar, but is %r" % (fill_value,))
        self.grid = grid
        self._name = name
        self.attrs = dict(attrs, units=units, long_name=long_name)
        self._fill_value = fill_value
        self.all_values: Optional[np.ndarray] = None
        self.values: Optional[np.ndarray] = None
        self._ma = None
        self._xarray: Optional[xarray.DataArray] = None
        self._exchange: Optional[parallel.DistributedArray] = None

    @staticmethod
    def create(
        grid: "domain.Grid",
        fill: Optional[ArrayLike] = None,
        z: VerticalStaggering = None,
        dtype: DTypeLike = None,
        register: bool = True,
        **kwargs
    ) -> "Array":
        """Create a new :class:`Array`

        Args:
            grid: grid associated with the new array
            fill: initial value. If not provided, the fill value is used; if that is
                not provided either, the array is left uninitialized.
            z: vertical dimension: ``False`` for a 2D array, ``CENTERS`` for layer
                centers, ``INTERFACES`` for layer interfaces, ``None`` to derive it
                from the shape of ``fill``
            dtype: data type (default: that of ``fill``, or float)
            register: whether to add the array to the fields of the domain
            **kwargs: additional keyword arguments passed to :class:`Array`
        """
        array = Array(grid, **kwargs)
        if fill is None:
            fill = array.fill_value
        if fill is not None:
            fill = np.asarray(fill)
        if z is None:
            z = _infer_z(grid, fill)
        if dtype is None:
            dtype = float if fill is None else fill.dtype
        data = np.empty(_full_shape(grid, z), dtype=dtype)
        if fill is not None:
            data[...] = fill
        array.wrap_ndarray(data, register=register)
        return array

    def wrap_ndarray(self, data: np.ndarray, register: bool = True):
        """Use the provided data, which must include halos"""
        if data.shape[-2:] != (self.grid.ny_, self.grid.nx_):
            raise Exception(
                "Horizontal shape %s does not match grid (%i, %i)"
                % (data.shape[-2:], self.grid.ny_, self.grid.nx_)
            )
        halo = self.grid.halo
        self.all_values = data
        self.values = data[..., halo:-halo, halo:-halo]
        if self._fill_value is not None:
            self._fill_value = np.array(self._fill_value, dtype=data.dtype)
        if register:
            self.register()

    def register(self):
        """Add the array to the fields of the domain, if it has a name"""
        if self._name is None:
            return
        fields = self.grid.domain.fields
        if self._name in fields:
            raise Exception("A field named %r has already been registered" % self._name)
        fields[self._name] = self

    def __repr__(self) -> str:
        return "<Array %s on %s grid, shape %s>" % (
            self._name,
            self.grid.postfix,
            self.shape,
        )

    def _distributed(self) -> Optional[parallel.DistributedArray]:
        tiling = self.grid.domain.tiling
        if not tiling:
            return None
        if self._exchange is None:
            self._exchange = parallel.DistributedArray(
                tiling, self.all_values, self.grid.halo
            )
        return self._exchange

    def update_halos(self, group: parallel.Neighbor = parallel.Neighbor.ALL):
        """Copy values from neighboring subdomains into the halos. This does
        nothing if the subdomain has no neighbors."""
        exchange = self._distributed()
        if exchange is not None:
            exchange.update_halos(group)

    def update_halos_start(self, group: parallel.Neighbor = parallel.Neighbor.ALL):
        exchange = self._distributed()
        if exchange is not None:
            exchange.update_halos_start(group)

    def update_halos_finish(self, group: parallel.Neighbor = parallel.Neighbor.ALL):
        exchange = self._distributed()
        if exchange is not None:
            exchange.update_halos_finish(group)

    def global_sum(self, where: Optional["Array"] = None) -> Optional[np.ndarray]:
        """Sum over the interior of all subdomains. The result is only available
        on the root rank; other ranks receive None.
        """
        kwargs = {} if where is None else {"where": np.asarray(where.values, bool)}
        local_sum = self.values.sum(**kwargs)
        tiling = self.grid.domain.tiling
        if tiling.n == 1:
            return local_sum
        return parallel.Sum(tiling, local_sum)()

    def fill(self, value):
        """Set the array to the specified value. Land points are subsequently set
        to :attr:`fill_value`, if the array has one.
        """
        try:
            self.all_values[...] = value
        except ValueError:
            # value only covers the interior
            self.values[...] = value
            self.update_halos()
        if self._fill_value is not None:
            self.all_values[..., self.grid._land] = self._fill_value

    @property
    def ma(self) -> np.ma.MaskedArray:
        """Interior as masked array, with land points masked"""
        if self._ma is None:
            land = np.broadcast_to(self.grid.mask.values == 0, self.shape)
            self._ma = np.ma.array(self.values, mask=land)
        return self._ma

    def interp(
        self, target: Union["Array", "domain.Grid"], z: VerticalStaggering = None,
    ) -> "Array":
        """Interpolate between the T grid and the U or V grid by averaging the two
        nearest points. Points without two neighbors are left untouched.

        Args:
            target: the array to hold the interpolated values, or the grid to
                interpolate to, in which case a new array is created
            z: vertical dimension of the new array (default: that of the source)
        """
        if not isinstance(target, Array):
            target = Array.create(
                target, dtype=self.dtype, z=self.z if z is None else z
            )
        domain = self.grid.domain
        T, U, V = domain.T, domain.U, domain.V
        pair = (self.grid, target.grid)
        src, out = self.all_values, target.all_values
        if pair in ((T, U), (U, T)):
            mean = 0.5 * (src[..., :, :-1] + src[..., :, 1:])
            if self.grid is T:
                out[..., :, :-1] = mean
            else:
                out[..., :, 1:] = mean
        elif pair in ((T, V), (V, T)):
            mean = 0.5 * (src[..., :-1, :] + src[..., 1:, :])
            if self.grid is T:
                out[..., :-1, :] = mean
            else:
                out[..., 1:, :] = mean
        else:
            raise NotImplementedError(
                "Interpolation from %s grid to %s grid is not supported"
                % (self.grid.postfix, target.grid.postfix)
            )
        return target

    def __array__(self, dtype: Optional[DTypeLike] = None, copy=None) -> np.ndarray:
        """Interior as NumPy array; a copy is made only if ``dtype`` differs"""
        return np.asarray(self.values, dtype=dtype)

    def __getitem__(self, key) -> np.ndarray:
        return self.values[key]

    def __setitem__(self, key, values):
        self.values[key] = values

    @property
    def shape(self) -> Tuple[int, ...]:
        """Shape of the interior"""
        return self.values.shape

    @property
    def ndim(self) -> int:
        return self.all_values.ndim

    @property
    def size(self) -> int:
        return self.values.size

    @property
    def dtype(self) -> DTypeLike:
        return self.all_values.dtype

    @property
    def z(self) -> VerticalStaggering:
        """``False`` for 2D arrays, otherwise ``CENTERS`` or ``INTERFACES``"""
        if self.ndim != 3:
            return False
        return INTERFACES if self.all_values.shape[0] == self.grid.nz_ + 1 else CENTERS

    @property
    def name(self) -> Optional[str]:
        return self._name

    @property
    def units(self) -> Optional[str]:
        return self.attrs.get("units")

    @property
    def long_name(self) -> Optional[str]:
        return self.attrs.get("long_name")

    @property
    def fill_value(self) -> Optional[Union[int, float]]:
        return self._fill_value

    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        if method != "__call__":
            return NotImplemented

        for x in inputs + kwargs.get("out", ()):
            if isinstance(x, Array):
                if x.grid is not self.grid:
                    return NotImplemented
            elif not isinstance(x, (np.ndarray, numbers.Number)):
                return NotImplemented

        def unwrap(values):
            return tuple(x.all_values if isinstance(x, Array) else x for x in values)

        if "out" in kwargs:
            kwargs["out"] = unwrap(kwargs["out"])
        result = ufunc(*unwrap(inputs), **kwargs)
        if isinstance(result, tuple):
            return tuple(self.create(self.grid, r, register=False) for r in result)
        return self.create(self.grid, result, register=False)

    def as_xarray(self, mask: bool = False) -> xarray.DataArray:
        """Interior as :class:`xarray.DataArray` with coordinates and attributes.
        If ``mask`` is True, land points are masked.
        """
        if self._xarray is not None and not mask:
            return self._xarray
        grid = self.grid
        xname, yname = ("lon", "lat") if grid.domain.spherical else ("x", "y")
        dims = (yname + grid.postfix, xname + grid.postfix)
        coords = {dims[0]: grid.yc1d, dims[1]: grid.xc1d}
        if self.z == INTERFACES:
            dims = ("zi",) + dims
            coords["zi"] = grid.domain.zf
        elif self.z == CENTERS:
            dims = ("z",) + dims
            coords["z"] = grid.domain.zc
        attrs = {k: v for k, v in self.attrs.items() if v is not None}
        da = xarray.DataArray(
            self.ma if mask else self.values,
            coords=coords,
            dims=dims,
            attrs=attrs,
            name=self.name,
        )
        if not mask:
            self._xarray = da
        return da

    xarray = property(as_xarray)
