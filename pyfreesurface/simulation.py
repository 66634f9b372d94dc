from typing import Union, Optional
import datetime
import timeit
import functools

import numpy as np
import cftime

from .constants import INTERFACES, CENTERS, RHO0
from . import core
from . import operators
from . import domain as _domain
from . import free_surface as _free_surface
from . import hydrostatic_pressure as _hydrostatic_pressure


def to_cftime(time: Union[datetime.datetime, cftime.datetime]) -> cftime.datetime:
    """Model time as :class:`cftime.datetime` (proleptic Gregorian calendar)"""
    if isinstance(time, cftime.datetime):
        return time
    if not isinstance(time, datetime.datetime):
        raise Exception(f"Cannot use {time!r} as model time")
    fields = time.timetuple()[:6]
    return cftime.datetime(*fields, time.microsecond, calendar="proleptic_gregorian")


def _nsteps(interval: Union[int, datetime.timedelta], timestep: float) -> int:
    if isinstance(interval, datetime.timedelta):
        return int(round(interval.total_seconds() / timestep))
    return interval


def log_exceptions(method):
    """Decorator for methods that run on every rank. In a run with multiple ranks,
    an exception on one rank would leave the others waiting forever; it is
    therefore logged, after which all ranks are aborted."""

    @functools.wraps(method)
    def wrapper(self: "Simulation", *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except Exception:
            tiling = self.domain.tiling
            if tiling.n == 1:
                raise
            self.logger.exception(f"Rank {tiling.rank} failed in {method.__name__}")
            tiling.comm.Abort(1)

    return wrapper


class Simulation:
    """Hydrostatic time stepper for the 3D velocity. Velocities are predicted with
    second-order Adams-Bashforth, optionally followed by implicit vertical viscosity.
    The free surface then advances the surface elevation and corrects the
    velocities. Finally, the hydrostatic pressure is updated from buoyancy.

    Args:
        domain: simulation domain; it will be initialized if that has not been done
            already
        free_surface: free surface solver
        hydrostatic_pressure: method to compute the hydrostatic pressure and its
            gradients (default: constant)
        viscosity: vertical viscosity (m2 s-1)
        cnpar: implicitness of vertical viscosity
        chi: offset of the Adams-Bashforth 2 time stepper
        log_level: level of log messages to show
    """

    def __init__(
        self,
        domain: _domain.Domain,
        free_surface: _free_surface.FreeSurface,
        hydrostatic_pressure: Optional[_hydrostatic_pressure.Base] = None,
        viscosity: float = 0.0,
        cnpar: float = 1.0,
        chi: float = 0.1,
        log_level: Optional[int] = None,
    ):
        self.logger = domain.root_logger
        if log_level is not None:
            self.logger.setLevel(log_level)

        if not domain._initialized:
            domain.initialize()
        self.domain = domain
        self.chi = chi

        U, V, T = domain.U, domain.V, domain.T
        self.u = U.array(
            name="u", units="m s-1", long_name="velocity in x-direction", z=CENTERS,
            fill=0.0,
        )
        self.v = V.array(
            name="v", units="m s-1", long_name="velocity in y-direction", z=CENTERS,
            fill=0.0,
        )
        self.Gu = U.array(name="Gu", units="m s-2", z=CENTERS, fill=0.0)
        self.Gv = V.array(name="Gv", units="m s-2", z=CENTERS, fill=0.0)
        self.Gu_prev = U.array(name="Gu_prev", units="m s-2", z=CENTERS, fill=0.0)
        self.Gv_prev = V.array(name="Gv_prev", units="m s-2", z=CENTERS, fill=0.0)
        self.Fu = U.array(
            name="Fu",
            units="m s-2",
            long_name="prescribed acceleration in x-direction",
            z=CENTERS,
            fill=0.0,
        )
        self.Fv = V.array(
            name="Fv",
            units="m s-2",
            long_name="prescribed acceleration in y-direction",
            z=CENTERS,
            fill=0.0,
        )
        self.tausx = U.array(
            name="tausx", units="Pa", long_name="surface stress in x-direction", fill=0.0
        )
        self.tausy = V.array(
            name="tausy", units="Pa", long_name="surface stress in y-direction", fill=0.0
        )
        self.buoy = T.array(
            name="buoy", units="m s-2", long_name="buoyancy", z=CENTERS, fill=0.0
        )

        self.hydrostatic_pressure = (
            hydrostatic_pressure or _hydrostatic_pressure.Constant()
        )
        self.hydrostatic_pressure.initialize(domain)

        self.vertical_viscosity = None
        if viscosity > 0.0:
            self.logger.info(f"Vertical viscosity: {viscosity} m2 s-1")
            self.num_u = U.array(z=INTERFACES, fill=viscosity)
            self.num_v = V.array(z=INTERFACES, fill=viscosity)
            self.vertical_viscosity = (
                operators.VerticalDiffusion(U, cnpar=cnpar),
                operators.VerticalDiffusion(V, cnpar=cnpar),
            )

        self.free_surface = free_surface
        self.free_surface.initialize(
            domain,
            self.u,
            self.v,
            logger=self.logger.getChild(type(free_surface).__name__),
        )

        unmasked = T.mask != 0
        self.total_area = T.area.global_sum(where=unmasked)
        self.total_volume_ref = (T.H * T.area).global_sum(where=unmasked)
        self._first = True

    def __getitem__(self, key: str) -> core.Array:
        return self.domain.fields[key]

    def start(
        self,
        time: Union[cftime.datetime, datetime.datetime],
        timestep: float,
        report: Union[int, datetime.timedelta] = 10,
        report_totals: Union[int, datetime.timedelta] = datetime.timedelta(days=1),
    ):
        """Start a simulation by configuring the time, preparing the free surface
        for the initial velocities and computing the initial hydrostatic pressure.

        Args:
            time (:class:`cftime.datetime`): start time
            timestep: baroclinic time step (s)
            report: time interval or number of time steps between reporting of the
                current time, used as indicator of simulation progress
            report_totals: time interval or number of time steps between reporting
                of integrals over the global domain
        """
        time = to_cftime(time)
        self.logger.info(f"Starting simulation at {time}")
        self.timestep = timestep
        self.timedelta = datetime.timedelta(seconds=timestep)
        self.time = time
        self.istep = 0
        self.report = _nsteps(report, timestep)
        self.report_totals = _nsteps(report_totals, timestep)

        maxdt = self.domain.cfl_check(log=False)
        if isinstance(self.free_surface, _free_surface.SplitExplicitFreeSurface):
            substeps = self.free_surface.substepping.substeps(timestep)
            fraction, _ = self.free_surface.substepping.settings(substeps)
            if fraction * timestep > maxdt:
                self.logger.warning(
                    f"Barotropic time step {fraction * timestep} s exceeds the"
                    f" maximum stable time step of {maxdt} s"
                )

        self.u.update_halos()
        self.v.update_halos()
        self.free_surface.start(self.u, self.v)

        self.buoy.update_halos()
        self.hydrostatic_pressure(self.buoy)
        self.check_finite()

        self._start_time = timeit.default_timer()

    def update_tendencies(self):
        """Compute tendencies of the 3D velocities from the hydrostatic pressure
        gradient, prescribed accelerations and surface stresses. Tendencies in
        inactive cells are zero."""
        for G, idp, F, taus in (
            (self.Gu, self.hydrostatic_pressure.idpdx, self.Fu, self.tausx),
            (self.Gv, self.hydrostatic_pressure.idpdy, self.Fv, self.tausy),
        ):
            grid = G.grid
            G.all_values[...] = np.where(
                grid._active, idp.all_values + F.all_values, 0.0
            )
            h_top = grid.hn.all_values[-1]
            stress = np.zeros_like(h_top)
            np.divide(taus.all_values, RHO0 * h_top, out=stress, where=h_top > 0.0)
            G.all_values[-1] += stress

    @log_exceptions
    def advance(self, check_finite: bool = False):
        """Advance the model state by one time step.

        Args:
            check_finite: after the state update, verify that all fields only contain
                finite values
        """
        self.time += self.timedelta
        self.istep += 1
        if self.report != 0 and self.istep % self.report == 0:
            self.logger.info(self.time)

        self.update_tendencies()

        # Forward Euler on the first step, as there is no previous tendency
        chi = -0.5 if self._first else self.chi
        for vel, G, G_prev in (
            (self.u, self.Gu, self.Gu_prev),
            (self.v, self.Gv, self.Gv_prev),
        ):
            increment = (1.5 + chi) * G.all_values - (0.5 + chi) * G_prev.all_values
            vel.all_values += self.timestep * np.where(vel.grid._active, increment, 0.0)

        if self.vertical_viscosity is not None:
            vdif_u, vdif_v = self.vertical_viscosity
            vdif_u(self.num_u, self.timestep, self.u)
            vdif_v(self.num_v, self.timestep, self.v)

        self.free_surface.advance(
            self.timestep,
            self.u,
            self.v,
            self.Gu,
            self.Gv,
            self.Gu_prev,
            self.Gv_prev,
            chi,
        )

        self.buoy.update_halos()
        self.hydrostatic_pressure(self.buoy)

        self.Gu_prev.all_values[...] = self.Gu.all_values
        self.Gv_prev.all_values[...] = self.Gv.all_values
        self._first = False

        if self.report_totals != 0 and self.istep % self.report_totals == 0:
            self.report_domain_integrals()

        if check_finite:
            self.check_finite()

    @log_exceptions
    def finish(self):
        nsecs = timeit.default_timer() - self._start_time
        self.logger.info(f"Time spent in main loop: {nsecs:.3f} s")

    @property
    def totals(self) -> Optional[float]:
        """Global total volume of water (m3). Only available on the root subdomain;
        others receive None"""
        T = self.domain.T
        unmasked = T.mask != 0
        return ((T.H + self.free_surface.eta) * T.area).global_sum(where=unmasked)

    def report_domain_integrals(self):
        """Log the global water volume, along with the change in mean surface
        elevation since the start of the simulation"""
        volume = self.totals
        if volume is None:
            return
        dz = (volume - self.total_volume_ref) / self.total_area
        self.logger.info(f"Global volume: {volume:.15e} m3 (mean eta: {dz:.6e} m)")

    def check_finite(self):
        """Check all registered fields for NaN and infinity at water points. Each
        offending field is logged as an error, after which an exception is raised.
        """
        bad = []
        for name, field in self.domain.fields.items():
            water = np.broadcast_to(field.grid.mask.values != 0, field.shape)
            invalid = ~np.isfinite(field.values) & water
            if invalid.any():
                bad.append(name)
                self.logger.error(
                    f"{name}: {invalid.sum()} of {water.sum()} water points"
                    " are not finite"
                )
        if bad:
            raise Exception(f"Non-finite values in {', '.join(bad)}")
