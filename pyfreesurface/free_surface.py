from typing import Callable, Optional, Tuple
import logging

import numpy as np
from mpi4py import MPI

from . import core
from . import domain
from .domain import Topology
from . import operators
from . import elliptic
from .constants import GRAVITY, MINIMUM_SUBSTEPS


class ForwardBackwardScheme:
    """Forward-backward integration of the barotropic mode: the surface elevation
    is updated with the current transports, after which the transports are updated
    with the new surface elevation"""

    def U_star(self, U: np.ndarray, Um1: np.ndarray, Um2: np.ndarray) -> np.ndarray:
        return U

    def eta_star(
        self, eta: np.ndarray, etam: np.ndarray, etam1: np.ndarray, etam2: np.ndarray
    ) -> np.ndarray:
        return eta

    def advance_previous_velocity(self, U: np.ndarray, Um1: np.ndarray, Um2: np.ndarray):
        pass

    def advance_previous_free_surface(
        self, eta: np.ndarray, etam: np.ndarray, etam1: np.ndarray, etam2: np.ndarray
    ):
        pass


class AdamsBashforth3Scheme:
    """Generalized forward-backward scheme with third-order Adams-Bashforth
    extrapolation of the transports and a four-level blend of surface elevations.
    Coefficients from `Shchepetkin & McWilliams (2005)
    <https://doi.org/10.1016/j.ocemod.2004.08.002>`_.
    """

    def __init__(
        self,
        beta: float = 0.281105,
        gamma: float = 0.088,
        delta: float = 0.614,
        epsilon: float = 0.013,
    ):
        self.beta = beta
        self.alpha = 1.5 + beta
        self.theta = -0.5 - 2 * beta
        self.gamma = gamma
        self.delta = delta
        self.epsilon = epsilon
        self.mu = 1.0 - delta - gamma - epsilon

    def U_star(self, U: np.ndarray, Um1: np.ndarray, Um2: np.ndarray) -> np.ndarray:
        return self.alpha * U + self.theta * Um1 + self.beta * Um2

    def eta_star(
        self, eta: np.ndarray, etam: np.ndarray, etam1: np.ndarray, etam2: np.ndarray
    ) -> np.ndarray:
        return (
            self.delta * eta
            + self.mu * etam
            + self.gamma * etam1
            + self.epsilon * etam2
        )

    def advance_previous_velocity(self, U: np.ndarray, Um1: np.ndarray, Um2: np.ndarray):
        Um2[...] = Um1
        Um1[...] = U

    def advance_previous_free_surface(
        self, eta: np.ndarray, etam: np.ndarray, etam1: np.ndarray, etam2: np.ndarray
    ):
        etam2[...] = etam1
        etam1[...] = etam
        etam[...] = eta


def averaging_shape_function(
    tau: np.ndarray, p: int = 2, q: int = 4, r: float = 0.18927
) -> np.ndarray:
    """Averaging kernel of `Shchepetkin & McWilliams (2005)
    <https://doi.org/10.1016/j.ocemod.2004.08.002>`_, as function of time relative
    to the start of the baroclinic step, in units of the baroclinic time step.
    It is negative for small ``tau``."""
    tau0 = (p + 2) * (p + q + 2) / (p + 1) / (p + q + 1)
    t = np.asarray(tau, dtype=float) / tau0
    return t ** p * (1 - t ** q) - r * t


def cosine_averaging_kernel(tau: np.ndarray) -> np.ndarray:
    tau = np.asarray(tau, dtype=float)
    return np.where(
        (tau >= 0.5) & (tau <= 1.5), 1.0 + np.cos(2 * np.pi * (tau - 1.0)), 0.0
    )


def constant_averaging_kernel(tau: np.ndarray) -> np.ndarray:
    return np.ones_like(np.asarray(tau, dtype=float))


def weights_from_substeps(
    substeps: int, averaging_kernel: Callable[[np.ndarray], np.ndarray]
) -> Tuple[float, np.ndarray]:
    """Return the barotropic time step as fraction of the baroclinic time step,
    and the averaging weight of each substep.

    Substeps span two baroclinic time steps. The kernel is evaluated at the end
    of each substep; substeps after the last positive weight are dropped, and the
    remaining weights are normalized to sum to 1.

    Args:
        substeps: number of substeps over two baroclinic time steps
        averaging_kernel: averaging weight as function of time (in units of the
            baroclinic time step)
    """
    tau = np.linspace(0.0, 2.0, substeps + 1)
    fractional_step = tau[1] - tau[0]
    weights = np.asarray(averaging_kernel(tau[1:]), dtype=float)
    positive = np.nonzero(weights > 0.0)[0]
    if positive.size == 0:
        raise Exception(
            "Averaging kernel has no positive weights for %i substeps" % substeps
        )
    weights = weights[: positive[-1] + 1]
    return fractional_step, weights / weights.sum()


class FixedSubstepNumber:
    def __init__(
        self,
        substeps: int,
        averaging_kernel: Callable[[np.ndarray], np.ndarray] = averaging_shape_function,
    ):
        if substeps < 1:
            raise Exception("Number of substeps is %i but must be > 0" % substeps)
        self.averaging_kernel = averaging_kernel
        self.fractional_step_size, self.averaging_weights = weights_from_substeps(
            substeps, averaging_kernel
        )

    def initialize(self, domain: domain.Domain, gravitational_acceleration: float):
        pass

    def substeps(self, timestep: float) -> int:
        return len(self.averaging_weights)

    def settings(self, substeps: int) -> Tuple[float, np.ndarray]:
        return self.fractional_step_size, self.averaging_weights

    def __repr__(self) -> str:
        return "%s(%i substeps)" % (type(self).__name__, len(self.averaging_weights))


class FixedTimeStepSize:
    """Substepping with a prescribed barotropic time step. That time step is given
    explicitly, or derived from a CFL number for surface gravity waves.

    Args:
        dt_barotropic: barotropic time step (s)
        cfl: CFL number for surface gravity waves in the deepest water column
        averaging_kernel: averaging weight as function of time (in units of the
            baroclinic time step)
        minimum_substeps: minimum number of substeps
    """

    def __init__(
        self,
        dt_barotropic: Optional[float] = None,
        cfl: Optional[float] = None,
        averaging_kernel: Callable[[np.ndarray], np.ndarray] = averaging_shape_function,
        minimum_substeps: int = MINIMUM_SUBSTEPS,
    ):
        if (dt_barotropic is None) == (cfl is None):
            raise Exception(
                "Either the barotropic time step or the CFL number must be"
                " provided, but not both"
            )
        if dt_barotropic is not None and dt_barotropic <= 0.0:
            raise Exception(
                "Barotropic time step is %s but must be > 0" % dt_barotropic
            )
        if cfl is not None and cfl <= 0.0:
            raise Exception("CFL number is %s but must be > 0" % cfl)
        self.dt_barotropic = dt_barotropic
        self.cfl = cfl
        self.averaging_kernel = averaging_kernel
        self.minimum_substeps = minimum_substeps

    def initialize(self, domain: domain.Domain, gravitational_acceleration: float):
        if self.cfl is None:
            return
        T = domain.T
        water = T.mask.values != 0
        comm = domain.tiling.comm
        Hmax = comm.allreduce(T.H.values.max(where=water, initial=0.0), op=MPI.MAX)
        inverse_ds2 = 0.0
        if domain.x_topology != Topology.FLAT:
            dxmin = comm.allreduce(
                T.dx.values.min(where=water, initial=np.inf), op=MPI.MIN
            )
            inverse_ds2 += 1.0 / dxmin ** 2
        if domain.y_topology != Topology.FLAT:
            dymin = comm.allreduce(
                T.dy.values.min(where=water, initial=np.inf), op=MPI.MIN
            )
            inverse_ds2 += 1.0 / dymin ** 2
        if Hmax <= 0.0 or inverse_ds2 == 0.0:
            raise Exception(
                "Cannot derive a barotropic time step from the CFL number: the"
                " domain has no water or no horizontal extent"
            )
        wave_speed = np.sqrt(gravitational_acceleration * Hmax)
        self.dt_barotropic = self.cfl / np.sqrt(inverse_ds2) / wave_speed

    def substeps(self, timestep: float) -> int:
        return max(
            self.minimum_substeps, int(np.ceil(2 * timestep / self.dt_barotropic))
        )

    def settings(self, substeps: int) -> Tuple[float, np.ndarray]:
        return weights_from_substeps(substeps, self.averaging_kernel)

    def __repr__(self) -> str:
        return "%s(dt_barotropic=%s)" % (type(self).__name__, self.dt_barotropic)


class FreeSurface:
    """Base class for free surface solvers. They advance the surface elevation
    :attr:`eta` and make the 3D velocities consistent with it."""

    def __init__(self, gravitational_acceleration: float = GRAVITY):
        self.gravitational_acceleration = gravitational_acceleration

    def initialize(
        self,
        domain: domain.Domain,
        u: core.Array,
        v: core.Array,
        logger: Optional[logging.Logger] = None,
    ):
        self.domain = domain
        self.logger = logger or domain.root_logger.getChild(type(self).__name__)
        self.eta = domain.T.array(
            name="eta", units="m", long_name="sea surface elevation", fill=0.0
        )

    def start(self, u: core.Array, v: core.Array):
        """Prepare for time stepping from the current state. This must be called
        after the initial surface elevation and velocities have been set."""
        self.eta.update_halos()

    def advance(
        self,
        timestep: float,
        u: core.Array,
        v: core.Array,
        Gu: core.Array,
        Gv: core.Array,
        Gu_prev: core.Array,
        Gv_prev: core.Array,
        chi: float,
    ):
        """Advance the surface elevation by one baroclinic time step and update the
        predicted velocities ``u`` and ``v`` in place.

        Args:
            timestep: baroclinic time step (s)
            u: predicted velocity in x-direction (m s-1)
            v: predicted velocity in y-direction (m s-1)
            Gu: tendency of u at the current time step (m s-2)
            Gv: tendency of v at the current time step (m s-2)
            Gu_prev: tendency of u at the previous time step (m s-2)
            Gv_prev: tendency of v at the previous time step (m s-2)
            chi: Adams-Bashforth 2 offset of the time stepper
        """
        raise NotImplementedError


class SplitExplicitFreeSurface(FreeSurface):
    """Free surface that subcycles the barotropic mode within the baroclinic time
    step. Substeps run over two baroclinic time steps; the surface elevation and
    transports are averaged over the substeps with weights from an averaging kernel.
    The averaged transports then replace the depth-integral of the 3D velocities.

    Args:
        substeps: number of substeps over two baroclinic time steps
        cfl: CFL number used to derive the barotropic time step
        dt_barotropic: barotropic time step (s)
        averaging_kernel: averaging weight as function of time (in units of the
            baroclinic time step)
        timestepper: integration scheme for the barotropic mode
        gravitational_acceleration: gravitational acceleration (m s-2)
        minimum_substeps: minimum number of substeps if these are derived from a
            barotropic time step or CFL number

    Exactly one of ``substeps``, ``cfl`` and ``dt_barotropic`` must be provided.
    """

    def __init__(
        self,
        substeps: Optional[int] = None,
        cfl: Optional[float] = None,
        dt_barotropic: Optional[float] = None,
        averaging_kernel: Callable[[np.ndarray], np.ndarray] = averaging_shape_function,
        timestepper=None,
        gravitational_acceleration: float = GRAVITY,
        minimum_substeps: int = MINIMUM_SUBSTEPS,
    ):
        super().__init__(gravitational_acceleration)
        if substeps is not None:
            if cfl is not None or dt_barotropic is not None:
                raise Exception(
                    "If the number of substeps is provided, the CFL number and"
                    " barotropic time step must not be."
                )
            self.substepping = FixedSubstepNumber(substeps, averaging_kernel)
        else:
            self.substepping = FixedTimeStepSize(
                dt_barotropic, cfl, averaging_kernel, minimum_substeps
            )
        self.timestepper = timestepper or ForwardBackwardScheme()
        self._pending_halo_exchange = False

    def initialize(
        self,
        domain: domain.Domain,
        u: core.Array,
        v: core.Array,
        logger: Optional[logging.Logger] = None,
    ):
        super().initialize(domain, u, v, logger)
        T, U, V = domain.T, domain.U, domain.V
        self.substepping.initialize(domain, self.gravitational_acceleration)

        def barotropic_array(grid, name: str, **kwargs):
            return grid.array(name=name, fill=0.0, **kwargs)

        # Surface elevation at previous substeps and its average
        self.etam = barotropic_array(T, "etam", units="m")
        self.etam1 = barotropic_array(T, "etam1", units="m")
        self.etam2 = barotropic_array(T, "etam2", units="m")
        self.eta_avg = barotropic_array(
            T, "eta_avg", units="m", long_name="substep-averaged surface elevation"
        )

        # Transports, transports at previous substeps, and their averages
        self.U = barotropic_array(U, "U", units="m2 s-1", long_name="transport in x")
        self.V = barotropic_array(V, "V", units="m2 s-1", long_name="transport in y")
        self.Um1 = barotropic_array(U, "Um1", units="m2 s-1")
        self.Um2 = barotropic_array(U, "Um2", units="m2 s-1")
        self.Vm1 = barotropic_array(V, "Vm1", units="m2 s-1")
        self.Vm2 = barotropic_array(V, "Vm2", units="m2 s-1")
        self.U_avg = barotropic_array(
            U, "U_avg", units="m2 s-1", long_name="substep-averaged transport in x"
        )
        self.V_avg = barotropic_array(
            V, "V_avg", units="m2 s-1", long_name="substep-averaged transport in y"
        )

        # Depth-integrated forcing
        self.GU = barotropic_array(U, "GU", units="m2 s-2")
        self.GV = barotropic_array(V, "GV", units="m2 s-2")

        # Work arrays
        self.U_star = U.array(fill=0.0)
        self.V_star = V.array(fill=0.0)
        self.eta_star = T.array(fill=0.0)
        self.div = T.array(fill=0.0)
        self.deta_dx = U.array(fill=0.0)
        self.deta_dy = V.array(fill=0.0)
        self._water_U = U.mask.values != 0
        self._water_V = V.mask.values != 0
        self._active_U = U._active[(slice(None),) + _interior(U)]
        self._active_V = V._active[(slice(None),) + _interior(V)]

        self.logger.info(
            "Substepping: %r, time stepper: %s"
            % (self.substepping, type(self.timestepper).__name__)
        )

        self.start(u, v)

    def start(self, u: core.Array, v: core.Array):
        """Seed the averaged transports from the depth integral of the initial 3D
        velocities. These serve as the transports at the start of the first step."""
        self._complete_halo_exchange()
        super().start(u, v)
        operators.barotropic_transport(u, self.U_avg)
        operators.barotropic_transport(v, self.V_avg)
        self.U_avg.update_halos()
        self.V_avg.update_halos()

    def _complete_halo_exchange(self):
        if self._pending_halo_exchange:
            self.eta.update_halos_finish()
            self.U_avg.update_halos_finish()
            self.V_avg.update_halos_finish()
            self._pending_halo_exchange = False

    def setup(
        self,
        Gu: core.Array,
        Gv: core.Array,
        Gu_prev: core.Array,
        Gv_prev: core.Array,
        chi: float,
    ):
        """Compute the depth-integrated forcing of the barotropic mode from an
        Adams-Bashforth 2 blend of the current and previous 3D tendencies. Forcing
        at inactive faces is zero."""
        for G, Gn, Gp in ((self.GU, Gu, Gu_prev), (self.GV, Gv, Gv_prev)):
            grid = G.grid
            blend = np.where(
                grid._active,
                (1.5 + chi) * Gn.all_values - (0.5 + chi) * Gp.all_values,
                0.0,
            )
            np.sum(grid.hn.all_values * blend, axis=0, out=G.all_values)

    def initialize_state(self):
        """Seed all substep levels from the averages of the previous step and reset
        the averages"""
        for source, targets in (
            (self.U_avg, (self.U, self.Um1, self.Um2)),
            (self.V_avg, (self.V, self.Vm1, self.Vm2)),
            (self.eta, (self.etam, self.etam1, self.etam2)),
        ):
            for target in targets:
                target.all_values[...] = source.all_values
        self.eta_avg.all_values[...] = 0.0
        self.U_avg.all_values[...] = 0.0
        self.V_avg.all_values[...] = 0.0

    def substep(self, dtau: float, weight: float):
        """Advance surface elevation and transports by one barotropic time step and
        add their contributions to the averages

        Args:
            dtau: barotropic time step (s)
            weight: averaging weight of this substep
        """
        ts = self.timestepper
        T = self.domain.T
        g = self.gravitational_acceleration

        # Surface elevation from the divergence of the extrapolated transports
        ts.advance_previous_free_surface(
            self.eta.all_values,
            self.etam.all_values,
            self.etam1.all_values,
            self.etam2.all_values,
        )
        self.U_star.all_values[...] = ts.U_star(
            self.U.all_values, self.Um1.all_values, self.Um2.all_values
        )
        self.V_star.all_values[...] = ts.U_star(
            self.V.all_values, self.Vm1.all_values, self.Vm2.all_values
        )
        operators.flux_divergence(self.U_star, self.V_star, self.div)
        self.eta.values[...] -= dtau * self.div.values * T.iarea.values
        self.eta.update_halos()

        # Transports from the pressure gradient of the blended surface elevation
        ts.advance_previous_velocity(
            self.U.all_values, self.Um1.all_values, self.Um2.all_values
        )
        ts.advance_previous_velocity(
            self.V.all_values, self.Vm1.all_values, self.Vm2.all_values
        )
        self.eta_star.all_values[...] = ts.eta_star(
            self.eta.all_values,
            self.etam.all_values,
            self.etam1.all_values,
            self.etam2.all_values,
        )
        operators.gradient_x(self.eta_star, self.deta_dx)
        operators.gradient_y(self.eta_star, self.deta_dy)
        for transport, water, H, slope, G in (
            (self.U, self._water_U, self.domain.U.H, self.deta_dx, self.GU),
            (self.V, self._water_V, self.domain.V.H, self.deta_dy, self.GV),
        ):
            transport.values[...] = np.where(
                water,
                transport.values + dtau * (-g * H.values * slope.values + G.values),
                0.0,
            )
            transport.update_halos()

        # Running averages
        self.eta_avg.all_values += weight * self.eta.all_values
        self.U_avg.all_values += weight * self.U.all_values
        self.V_avg.all_values += weight * self.V.all_values

    def step(self, timestep: float):
        """Subcycle the barotropic mode over one baroclinic time step and replace
        the surface elevation by its substep average.

        Args:
            timestep: baroclinic time step (s)
        """
        self._complete_halo_exchange()
        self.initialize_state()
        substeps = self.substepping.substeps(timestep)
        fractional_step, weights = self.substepping.settings(substeps)
        dtau = fractional_step * timestep
        self.logger.debug(
            "Running %i substeps of %s s (fraction %s of the baroclinic time step)"
            % (len(weights), dtau, fractional_step)
        )
        for weight in weights:
            self.substep(dtau, weight)
        self.eta.all_values[...] = self.eta_avg.all_values

        self.eta.update_halos_start()
        self.U_avg.update_halos_start()
        self.V_avg.update_halos_start()
        self._pending_halo_exchange = True

    def correct_velocities(self, u: core.Array, v: core.Array):
        """Replace the depth integral of the 3D velocities by the averaged
        transports. Velocities in inactive cells are set to zero."""
        for vel, transport, transport_avg, active in (
            (u, self.U, self.U_avg, self._active_U),
            (v, self.V, self.V_avg, self._active_V),
        ):
            # The substep transport is not needed anymore and provides storage
            operators.barotropic_transport(vel, transport)
            H = vel.grid.H.values
            correction = np.zeros_like(H)
            np.divide(
                transport_avg.values - transport.values, H, out=correction, where=H > 0.0
            )
            vel.values[...] = np.where(active, vel.values + correction, 0.0)
            vel.update_halos()

    def advance(
        self,
        timestep: float,
        u: core.Array,
        v: core.Array,
        Gu: core.Array,
        Gv: core.Array,
        Gu_prev: core.Array,
        Gv_prev: core.Array,
        chi: float,
    ):
        self.setup(Gu, Gv, Gu_prev, Gv_prev, chi)
        self.step(timestep)
        self.correct_velocities(u, v)


class ImplicitFreeSurface(FreeSurface):
    """Free surface that is solved implicitly from the transports of the predicted
    velocities, followed by a correction of those velocities with the gradient of
    the new surface elevation.

    Args:
        gravitational_acceleration: gravitational acceleration (m s-2)
        **solver_settings: keyword arguments for
            :class:`~pyfreesurface.elliptic.HeptadiagonalIterativeSolver`, e.g.,
            ``method``, ``preconditioner``, ``tolerance``, ``maximum_iterations``
    """

    def __init__(self, gravitational_acceleration: float = GRAVITY, **solver_settings):
        super().__init__(gravitational_acceleration)
        self.solver_settings = solver_settings

    def initialize(
        self,
        domain: domain.Domain,
        u: core.Array,
        v: core.Array,
        logger: Optional[logging.Logger] = None,
    ):
        super().initialize(domain, u, v, logger)
        self.solver = elliptic.MatrixImplicitFreeSurfaceSolver(
            domain, self.gravitational_acceleration, **self.solver_settings
        )
        self.U = domain.U.array(
            name="U", units="m2 s-1", long_name="transport in x", fill=0.0
        )
        self.V = domain.V.array(
            name="V", units="m2 s-1", long_name="transport in y", fill=0.0
        )
        self.deta_dx = domain.U.array(fill=0.0)
        self.deta_dy = domain.V.array(fill=0.0)
        self.logger.info(
            "Implicit free surface with %s solver and %s preconditioner"
            % (self.solver.solver.method, self.solver.solver.preconditioner)
        )

    def advance(
        self,
        timestep: float,
        u: core.Array,
        v: core.Array,
        Gu: core.Array,
        Gv: core.Array,
        Gu_prev: core.Array,
        Gv_prev: core.Array,
        chi: float,
    ):
        operators.barotropic_transport(u, self.U)
        operators.barotropic_transport(v, self.V)
        self.U.update_halos()
        self.V.update_halos()
        rhs = self.solver.compute_right_hand_side(self.U, self.V, self.eta, timestep)
        self.solver.solve(self.eta, rhs, timestep)

        g = self.gravitational_acceleration
        operators.gradient_x(self.eta, self.deta_dx)
        operators.gradient_y(self.eta, self.deta_dy)
        for vel, slope in ((u, self.deta_dx), (v, self.deta_dy)):
            vel.all_values[...] = np.where(
                vel.grid._active,
                vel.all_values - g * timestep * slope.all_values,
                0.0,
            )
            vel.update_halos()


def _interior(grid: domain.Grid) -> Tuple[slice, slice]:
    return (slice(grid.halo, -grid.halo), slice(grid.halo, -grid.halo))
