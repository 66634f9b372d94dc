from typing import Optional, Union
import logging

import numpy as np
from numpy.typing import ArrayLike
import scipy.sparse
import scipy.sparse.linalg as spla

from . import core
from . import domain
from .domain import Topology
from . import operators
from .constants import GRAVITY

METHODS = {"cg": spla.cg, "bicgstab": spla.bicgstab, "gmres": spla.gmres}
PRECONDITIONERS = ("ilu", "jacobi", "asymptotic_inverse", None)

#: Krylov subspace size of GMRES before it restarts
GMRES_RESTART = 20


class ConvergenceError(Exception):
    """The iterative solver exhausted its iteration budget before reaching the
    requested tolerance"""

    def __init__(self, iterations: int, residual: float, method: str = "cg"):
        super().__init__(
            "%s did not converge within %i iterations (relative residual %.3g)"
            % (method, iterations, residual)
        )
        self.iterations = iterations
        self.residual = residual


class HeptadiagonalIterativeSolver:
    """Iterative solver for a sparse system with a seven-point stencil on a
    structured (nz, ny, nx) grid.

    Cell ``(k, j, i)`` has linear index ``i + nx * j + nx * ny * k``. ``Ax[k, j, i]``
    couples the cell to ``(k, j, i + 1)``, ``Ay`` to ``(k, j + 1, i)`` and
    ``Az`` to ``(k + 1, j, i)``; all couplings are symmetric. The main diagonal is
    ``C`` minus the sum of the couplings of the cell with all its neighbors, plus
    ``D / dt**2``. Couplings beyond the last cell along x and y exist only if the
    corresponding direction is periodic, in which case they wrap to the first cell.

    The matrix and preconditioner depend on the time step. They are rebuilt
    whenever :meth:`solve` is called with a time step that differs from that of
    the previous call.
    """

    def __init__(
        self,
        Ax: ArrayLike,
        Ay: ArrayLike = 0.0,
        Az: ArrayLike = 0.0,
        C: ArrayLike = 0.0,
        D: ArrayLike = 0.0,
        periodic_x: bool = False,
        periodic_y: bool = False,
        maximum_iterations: Optional[int] = None,
        tolerance: Optional[float] = None,
        method: str = "cg",
        preconditioner: Optional[str] = "ilu",
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            Ax: coupling in x-direction, with shape (nz, ny, nx)
            Ay: coupling in y-direction
            Az: coupling in z-direction
            C: time-step independent contribution to the main diagonal
            D: contribution to the main diagonal that is divided by ``dt**2``
            periodic_x: whether the grid wraps around in x-direction
            periodic_y: whether the grid wraps around in y-direction
            maximum_iterations: maximum number of iterations (default: nx * ny). For
                GMRES, this is rounded up to a whole number of restart cycles of
                at most :data:`GMRES_RESTART` iterations
            tolerance: relative tolerance for the norm of the residual
                (default: square root of the machine epsilon)
            method: iterative method: ``"cg"``, ``"bicgstab"`` or ``"gmres"``
            preconditioner: ``"ilu"`` (incomplete LU factorization), ``"jacobi"``,
                ``"asymptotic_inverse"`` (first-order expansion of the inverse
                around the diagonal) or ``None``
            logger: logger for diagnostics
        """
        if method not in METHODS:
            raise Exception(
                "Unknown iterative method %r. Available: %s"
                % (method, ", ".join(METHODS))
            )
        if preconditioner not in PRECONDITIONERS:
            raise Exception(
                "Unknown preconditioner %r. Available: %s"
                % (preconditioner, ", ".join(map(str, PRECONDITIONERS)))
            )
        Ax = np.asarray(Ax, dtype=float)
        if Ax.ndim != 3:
            raise Exception("Ax must have shape (nz, ny, nx), but has %s" % (Ax.shape,))
        self.shape = Ax.shape
        nz, ny, nx = self.shape
        self.n = nz * ny * nx
        self.method = method
        self.preconditioner = preconditioner
        self.tolerance = np.sqrt(np.finfo(float).eps) if tolerance is None else tolerance
        self.maximum_iterations = (
            nx * ny if maximum_iterations is None else maximum_iterations
        )
        if self.maximum_iterations < 1:
            raise Exception(
                "maximum_iterations must be at least 1, but is %i"
                % self.maximum_iterations
            )
        self.logger = logger or logging.getLogger().getChild("elliptic")

        # Time-step independent part of the matrix
        index = np.arange(self.n).reshape(self.shape)
        diagonal = np.array(np.broadcast_to(C, self.shape), dtype=float)
        rows, cols, values = [], [], []
        for coupling, axis, periodic in (
            (Ax, 2, periodic_x),
            (Ay, 1, periodic_y),
            (Az, 0, False),
        ):
            c = np.array(np.broadcast_to(coupling, self.shape), dtype=float)
            if not periodic:
                last = [slice(None)] * 3
                last[axis] = -1
                c[tuple(last)] = 0.0
            neighbor = np.roll(index, -1, axis=axis)
            diagonal -= c + np.roll(c, 1, axis=axis)
            nonzero = c != 0.0
            rows += [index[nonzero], neighbor[nonzero]]
            cols += [neighbor[nonzero], index[nonzero]]
            values += [c[nonzero], c[nonzero]]
        self._offdiagonal = scipy.sparse.coo_matrix(
            (np.concatenate(values), (np.concatenate(rows), np.concatenate(cols))),
            shape=(self.n, self.n),
        ).tocsr()
        self._diagonal = diagonal.ravel()
        self._D = np.array(np.broadcast_to(D, self.shape), dtype=float).ravel()

        self.matrix: Optional[scipy.sparse.csr_matrix] = None
        self.M: Optional[Union[spla.LinearOperator, scipy.sparse.spmatrix]] = None
        self.previous_dt = -1.0

        #: number of times the matrix and preconditioner have been built
        self.build_count = 0

        #: number of iterations used by the last call to :meth:`solve`
        self.iterations = 0

    def _build(self, dt: float):
        diagonal = self._diagonal + self._D / dt ** 2
        self.matrix = (self._offdiagonal + scipy.sparse.diags(diagonal)).tocsr()
        if self.preconditioner == "ilu":
            ilu = spla.spilu(self.matrix.tocsc())
            self.M = spla.LinearOperator(self.matrix.shape, ilu.solve)
        elif self.preconditioner == "jacobi":
            self.M = scipy.sparse.diags(1.0 / diagonal)
        elif self.preconditioner == "asymptotic_inverse":
            inverse_diagonal = scipy.sparse.diags(1.0 / diagonal)
            self.M = (
                inverse_diagonal - inverse_diagonal @ self._offdiagonal @ inverse_diagonal
            ).tocsr()
        else:
            self.M = None
        self.previous_dt = dt
        self.build_count += 1
        self.logger.debug(
            "Built %i x %i matrix with %i nonzeros and %s preconditioner for dt=%s"
            % (self.n, self.n, self.matrix.nnz, self.preconditioner, dt)
        )

    def solve(
        self, b: ArrayLike, dt: float, x0: Optional[ArrayLike] = None
    ) -> np.ndarray:
        """Solve the system for right-hand side ``b`` and return the solution as
        flat array. :class:`ConvergenceError` is raised if the solver does not
        converge within the maximum number of iterations.

        Args:
            b: right-hand side (any shape with nz * ny * nx elements)
            dt: time step
            x0: initial guess
        """
        if dt != self.previous_dt:
            self._build(dt)
        b = np.ravel(b)
        if x0 is not None:
            x0 = np.ravel(x0)

        self.iterations = 0

        def count(*args):
            self.iterations += 1

        maxiter = self.maximum_iterations
        kwargs = {}
        if self.method == "gmres":
            # scipy counts restart cycles rather than iterations
            restart = min(GMRES_RESTART, self.maximum_iterations)
            maxiter = -(-self.maximum_iterations // restart)
            kwargs = {"callback_type": "pr_norm", "restart": restart}
        x, info = METHODS[self.method](
            self.matrix,
            b,
            x0=x0,
            rtol=self.tolerance,
            atol=0.0,
            maxiter=maxiter,
            M=self.M,
            callback=count,
            **kwargs
        )
        if info != 0:
            bnorm = np.linalg.norm(b)
            residual = np.linalg.norm(b - self.matrix @ x)
            if bnorm > 0.0:
                residual /= bnorm
            raise ConvergenceError(self.iterations, residual, self.method)
        return x


class MatrixImplicitFreeSurfaceSolver:
    """Solver for the surface elevation at the next time step under an implicit
    free surface::

        [div(H grad) - 1/(g dt^2)] eta^{n+1} = (div(Q*) - eta^n/dt)/(g dt)

    Transports Q* are those of the predicted 3D velocity. The system is integrated
    over cell areas: couplings are the vertically-integrated face areas divided by
    the distance between T points, and the diagonal contribution is -area/g.
    """

    def __init__(
        self,
        domain: domain.Domain,
        gravitational_acceleration: float = GRAVITY,
        **solver_settings
    ):
        if domain.tiling.n > 1:
            raise Exception(
                "The matrix-based implicit free surface does not support subdomain"
                " decomposition (%i subdomains requested)" % domain.tiling.n
            )
        self.domain = domain
        self.g = gravitational_acceleration
        T, U, V = domain.T, domain.U, domain.V
        Ax = (U.H.values * U.dy.values * U.idx.values)[np.newaxis, ...]
        Ay = (V.H.values * V.dx.values * V.idy.values)[np.newaxis, ...]
        D = -(T.area.values / self.g)[np.newaxis, ...]
        self.solver = HeptadiagonalIterativeSolver(
            Ax,
            Ay,
            D=D,
            periodic_x=domain.x_topology == Topology.PERIODIC,
            periodic_y=domain.y_topology == Topology.PERIODIC,
            logger=domain.root_logger.getChild("elliptic"),
            **solver_settings
        )
        self._div = T.array()

    def compute_right_hand_side(
        self, U: core.Array, V: core.Array, eta: core.Array, dt: float
    ) -> np.ndarray:
        """Right-hand side of the system as flat array with index ``i + nx * j``

        Args:
            U: barotropic transport in x-direction (m2 s-1)
            V: barotropic transport in y-direction (m2 s-1)
            eta: surface elevation at the current time step (m)
            dt: time step (s)
        """
        operators.flux_divergence(U, V, self._div)
        area = self.domain.T.area.values
        rhs = (self._div.values - area * eta.values / dt) / (self.g * dt)
        return rhs.ravel()

    def solve(self, eta: core.Array, rhs: np.ndarray, dt: float):
        """Update ``eta`` to the solution of the system, including its halos.
        The current value of ``eta`` is used as initial guess.
        """
        x = self.solver.solve(rhs, dt, x0=eta.values)
        eta.values[...] = x.reshape(eta.values.shape)
        eta.update_halos()

