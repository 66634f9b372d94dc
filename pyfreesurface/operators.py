from typing import Optional, Union, Callable, Sequence, Any
import logging

import numpy as np

from . import core
from . import domain

Coefficient = Union[float, np.ndarray, core.Array, Callable[..., Any]]


def flux_divergence(U: core.Array, V: core.Array, out: core.Array):
    """Area-integrated divergence of the transports U (on the U grid) and
    V (on the V grid), computed at T points. The outermost row and column of the
    halos are set to zero as they lack the required neighbors.
    """
    Ufl = U.all_values * U.grid.dy.all_values
    Vfl = V.all_values * V.grid.dx.all_values
    div = out.all_values
    div[..., 1:, 1:] = (
        Ufl[..., 1:, 1:] - Ufl[..., 1:, :-1] + Vfl[..., 1:, 1:] - Vfl[..., :-1, 1:]
    )
    div[..., 0, :] = 0.0
    div[..., :, 0] = 0.0
    return out


def gradient_x(eta: core.Array, out: core.Array):
    """Gradient in x-direction of a T field, computed at U points"""
    source, grad = eta.all_values, out.all_values
    idx = out.grid.idx.all_values
    grad[..., :, :-1] = (source[..., :, 1:] - source[..., :, :-1]) * idx[:, :-1]
    grad[..., :, -1] = 0.0
    return out


def gradient_y(eta: core.Array, out: core.Array):
    """Gradient in y-direction of a T field, computed at V points"""
    source, grad = eta.all_values, out.all_values
    idy = out.grid.idy.all_values
    grad[..., :-1, :] = (source[..., 1:, :] - source[..., :-1, :]) * idy[:-1, :]
    grad[..., -1, :] = 0.0
    return out


def barotropic_transport(u: core.Array, out: core.Array):
    """Depth-integrated transport of a 3D velocity: the sum of velocity times
    cell thickness over all active cells of each column"""
    grid = u.grid
    np.sum(
        grid.hn.all_values * u.all_values,
        axis=0,
        where=grid._active,
        out=out.all_values,
    )
    return out


def get_coefficient(coefficient: Coefficient, k: int, args: Sequence[Any]):
    """Return the coefficient for level ``k``: either a scalar or a horizontal slab
    that broadcasts to the shape of the grid (including halos)

    Args:
        coefficient: scalar, depth-only 1D array, 3D array, :class:`core.Array`, or
            callable that takes the level index and ``args``
        k: level index
        args: additional arguments for callable coefficients
    """
    if callable(coefficient):
        return coefficient(k, *args)
    if isinstance(coefficient, core.Array):
        return coefficient.all_values[k]
    if np.ndim(coefficient) == 0:
        return coefficient
    return coefficient[k]


class BatchedTridiagonalSolver:
    """Solver for independent tridiagonal systems, one per water column.

    For each column::

        b[0] phi[0] + c[0] phi[1] = f[0]
        a[k-1] phi[k-1] + b[k] phi[k] + c[k] phi[k+1] = f[k]  for 0 < k < nz - 1
        a[nz-2] phi[nz-2] + b[nz-1] phi[nz-1] = f[nz-1]

    Columns are processed simultaneously as horizontal slabs; the recurrence runs
    over the vertical, from the bottom (k=0) up. Where the pivot of a column
    vanishes, the forward sweep of that column stops: its solution is left unchanged
    at that level and all levels above.
    Affected columns are flagged in :attr:`unstable` and reported as a warning.
    """

    def __init__(
        self,
        grid: domain.Grid,
        lower_diagonal: Coefficient,
        diagonal: Coefficient,
        upper_diagonal: Coefficient,
        parameters: Sequence[Any] = (),
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            grid: grid that the systems are defined on
            lower_diagonal: sub-diagonal a, with ``a[k]`` multiplying
                ``phi[k]`` in equation ``k + 1``
            diagonal: diagonal b
            upper_diagonal: super-diagonal c, with ``c[k]`` multiplying
                ``phi[k + 1]`` in equation ``k``
            parameters: additional arguments passed to callable coefficients
            logger: logger for diagnostics about unstable columns
        """
        self.grid = grid
        self.a = lower_diagonal
        self.b = diagonal
        self.c = upper_diagonal
        self.parameters = tuple(parameters)
        self.logger = logger or grid.domain.root_logger.getChild(
            "BatchedTridiagonalSolver"
        )
        self.epsilon = 10 * np.finfo(float).eps

        #: forward-elimination multipliers, reused between calls
        self.t = np.zeros((grid.nz_, grid.ny_, grid.nx_))

        #: columns where the forward sweep stopped in the last call
        self.unstable = np.zeros((grid.ny_, grid.nx_), dtype=bool)

    def solve(
        self,
        phi: Union[core.Array, np.ndarray],
        rhs: Union[core.Array, np.ndarray, float],
        *args,
        scratch: Optional[np.ndarray] = None
    ):
        """Solve all systems and store the result in ``phi``. Additional positional
        arguments follow the solver's ``parameters`` in calls to callable
        coefficients.

        Args:
            phi: array to hold the solution (layer centers, including halos)
            rhs: right-hand side f
            scratch: array with the shape of :attr:`t` to use for the multipliers
                instead of the solver's own
        """
        out = phi.all_values if isinstance(phi, core.Array) else phi
        f = rhs.all_values if isinstance(rhs, core.Array) else rhs
        t = self.t if scratch is None else scratch
        args = self.parameters + args
        nz = out.shape[0]

        def coef(coefficient, k):
            return get_coefficient(coefficient, k, args)

        def rhs_at(k):
            return f if np.ndim(f) == 0 else f[k]

        unstable = self.unstable
        unstable[...] = False
        beta = np.array(np.broadcast_to(coef(self.b, 0), unstable.shape), dtype=float)
        unstable |= np.abs(beta) <= self.epsilon
        np.divide(rhs_at(0), beta, out=out[0], where=~unstable)
        t[0] = 0.0
        for k in range(1, nz):
            a = coef(self.a, k - 1)
            t[k] = 0.0
            np.divide(coef(self.c, k - 1), beta, out=t[k], where=~unstable)
            beta_new = coef(self.b, k) - a * t[k]
            unstable |= np.abs(beta_new) <= self.epsilon
            beta = np.where(unstable, beta, beta_new)
            np.divide(rhs_at(k) - a * out[k - 1], beta, out=out[k], where=~unstable)

        for k in range(nz - 2, -1, -1):
            out[k] -= t[k + 1] * out[k + 1]

        if unstable.any():
            self.logger.warning(
                "Tridiagonal system is unstable in %i columns: solution there was"
                " left unchanged from the level where the pivot vanished upwards"
                % unstable.sum()
            )
        return phi


class VerticalDiffusion:
    """Implicit vertical diffusion of a 3D field. The integral over each water
    column is conserved, and there is no flux through surface and bottom.

    Args:
        grid: grid that diffused fields are defined on
        cnpar: implicitness of the time integration (0: explicit, 0.5:
            Crank-Nicolson, 1: fully implicit)
    """

    def __init__(self, grid: domain.Grid, cnpar: float = 1.0):
        self.grid = grid
        self.cnpar = cnpar
        nz, ny_, nx_ = grid.nz_, grid.ny_, grid.nx_
        self.lower = np.zeros((max(nz - 1, 0), ny_, nx_))
        self.upper = np.zeros((max(nz - 1, 0), ny_, nx_))
        self.diag = np.zeros((nz, ny_, nx_))
        self.rhs = np.zeros((nz, ny_, nx_))
        self.solution = np.zeros((nz, ny_, nx_))
        self.solver = BatchedTridiagonalSolver(
            grid, self.lower, self.diag, self.upper
        )

        # Interfaces with active cells on both sides
        active = grid._active
        self._interior = active[:-1] & active[1:]

    def __call__(
        self,
        nuh: core.Array,
        timestep: float,
        var: core.Array,
        sources: Optional[core.Array] = None,
    ):
        """Diffuse ``var`` in place

        Args:
            nuh: diffusivity at layer interfaces (only values at interior interfaces
                between active cells are used)
            timestep: time step (s)
            var: field to diffuse, defined at layer centers
            sources: time- and layer-integrated source terms to add
        """
        assert nuh.grid is self.grid and nuh.ndim == 3
        assert var.grid is self.grid and var.ndim == 3
        h = self.grid.hn.all_values
        active = self.grid._active
        c = np.where(active, var.all_values, 0.0)

        # Exchange coefficient per interface: diffusivity over distance between
        # the adjacent layer centers
        D = np.zeros(self.lower.shape)
        np.divide(
            nuh.all_values[1:-1],
            0.5 * (h[:-1] + h[1:]),
            out=D,
            where=self._interior,
        )
        implicit = timestep * self.cnpar * D
        self.lower[...] = -implicit
        self.upper[...] = -implicit
        self.diag[...] = h
        self.diag[:-1] += implicit
        self.diag[1:] += implicit
        self.diag[~active] = 1.0

        # Explicit part of the fluxes between layers
        flux = timestep * (1.0 - self.cnpar) * D * (c[1:] - c[:-1])
        self.rhs[...] = h * c
        self.rhs[:-1] += flux
        self.rhs[1:] -= flux
        if sources is not None:
            self.rhs += np.where(active, sources.all_values, 0.0)
        self.rhs[~active] = 0.0

        # columns with a vanishing pivot keep their current values
        np.copyto(self.solution, c)
        self.solver.solve(self.solution, self.rhs)
        np.copyto(var.all_values, self.solution, where=active)
