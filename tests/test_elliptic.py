import unittest
import logging

import numpy as np

import pyfreesurface
from pyfreesurface import elliptic


handler = logging.StreamHandler()
handler.setLevel(level=logging.ERROR)
logging.basicConfig(handlers=(handler,))

rng = np.random.default_rng()


def periodic_1d_solver(nx: int, **kwargs) -> elliptic.HeptadiagonalIterativeSolver:
    return elliptic.HeptadiagonalIterativeSolver(
        np.ones((1, 1, nx)), D=-1.0, periodic_x=True, **kwargs
    )


class TestHeptadiagonalIterativeSolver(unittest.TestCase):
    def test_sinusoid(self):
        # sinusoids are eigenvectors of the periodic 1D system:
        # A x = (2 cos(2 pi n / nx) - 2 - 1 / dt**2) x
        nx = 32
        dt = 1.0
        x = np.arange(nx)
        for method in elliptic.METHODS:
            for preconditioner in elliptic.PRECONDITIONERS:
                with self.subTest(method=method, preconditioner=preconditioner):
                    solver = periodic_1d_solver(
                        nx, method=method, preconditioner=preconditioner
                    )
                    for n in (1, 3):
                        expected = np.sin(2 * np.pi * n * x / nx)
                        eigenvalue = 2 * np.cos(2 * np.pi * n / nx) - 2 - 1.0 / dt ** 2
                        solution = solver.solve(eigenvalue * expected, dt)
                        np.testing.assert_allclose(solution, expected, atol=1e-6)

    def test_matrix_structure(self):
        nx = 6
        for periodic in (False, True):
            with self.subTest(periodic=periodic):
                solver = elliptic.HeptadiagonalIterativeSolver(
                    np.full((1, 1, nx), 2.0), C=0.5, D=-1.0, periodic_x=periodic
                )
                solver.solve(np.ones(nx), 2.0)
                A = solver.matrix.toarray()
                np.testing.assert_array_equal(A, A.T)
                self.assertEqual(A[0, 1], 2.0)
                self.assertEqual(A[0, nx - 1], 2.0 if periodic else 0.0)
                if periodic:
                    diagonal = 0.5 - 4.0 - 0.25
                    np.testing.assert_allclose(np.diag(A), diagonal)
                else:
                    np.testing.assert_allclose(A[0, 0], 0.5 - 2.0 - 0.25)
                    np.testing.assert_allclose(A[1, 1], 0.5 - 4.0 - 0.25)
                    np.testing.assert_allclose(A[-1, -1], 0.5 - 2.0 - 0.25)

    def test_three_dimensional(self):
        shape = (3, 4, 5)
        Ax = rng.uniform(1.0, 2.0, shape)
        Ay = rng.uniform(1.0, 2.0, shape)
        Az = rng.uniform(1.0, 2.0, shape)
        D = -rng.uniform(1.0, 2.0, shape)
        solver = elliptic.HeptadiagonalIterativeSolver(
            Ax, Ay, Az, D=D, tolerance=1e-12, maximum_iterations=1000
        )
        b = rng.normal(size=shape)
        solution = solver.solve(b, 0.5)
        A = solver.matrix.toarray()

        # coupling of cell (k, j, i) with its neighbor at i + 1, j + 1 and k + 1
        index = np.arange(solver.n).reshape(shape)
        self.assertEqual(A[index[1, 2, 3], index[1, 2, 4]], Ax[1, 2, 3])
        self.assertEqual(A[index[1, 2, 3], index[1, 3, 3]], Ay[1, 2, 3])
        self.assertEqual(A[index[1, 2, 3], index[2, 2, 3]], Az[1, 2, 3])
        np.testing.assert_allclose(
            solution, np.linalg.solve(A, b.ravel()), rtol=1e-8, atol=1e-10
        )

    def test_rebuild_on_time_step_change(self):
        solver = periodic_1d_solver(16)
        b = rng.normal(size=16)
        self.assertEqual(solver.build_count, 0)
        solver.solve(b, 1.0)
        solver.solve(b, 1.0)
        self.assertEqual(solver.build_count, 1)
        self.assertEqual(solver.previous_dt, 1.0)
        solver.solve(b, 2.0)
        self.assertEqual(solver.build_count, 2)
        solver.solve(b, 2.0)
        self.assertEqual(solver.build_count, 2)
        solver.solve(b, 1.0)
        self.assertEqual(solver.build_count, 3)

    def test_convergence_error(self):
        shape = (1, 16, 16)
        for method in elliptic.METHODS:
            for maximum_iterations in (1, 5):
                with self.subTest(method=method, maximum_iterations=maximum_iterations):
                    solver = elliptic.HeptadiagonalIterativeSolver(
                        np.ones(shape),
                        np.ones(shape),
                        D=-1.0,
                        method=method,
                        preconditioner=None,
                        maximum_iterations=maximum_iterations,
                    )
                    with self.assertRaises(elliptic.ConvergenceError) as cm:
                        solver.solve(rng.normal(size=shape), 10.0)
                    self.assertLessEqual(cm.exception.iterations, maximum_iterations)
                    self.assertGreater(cm.exception.residual, solver.tolerance)

    def test_invalid_settings(self):
        with self.assertRaises(Exception):
            periodic_1d_solver(8, method="jacobi")
        with self.assertRaises(Exception):
            periodic_1d_solver(8, preconditioner="multigrid")
        with self.assertRaises(Exception):
            periodic_1d_solver(8, maximum_iterations=0)
        with self.assertRaises(Exception):
            elliptic.HeptadiagonalIterativeSolver(np.ones((4, 4)))


class TestMatrixImplicitFreeSurfaceSolver(unittest.TestCase):
    def create_domain(self, nx: int = 20):
        domain = pyfreesurface.domain.create_cartesian(
            np.linspace(0.0, 1000.0 * nx, nx + 1),
            np.linspace(0.0, 1000.0, 2),
            1,
            interfaces=True,
            H=10.0,
            y_topology=pyfreesurface.Topology.FLAT,
            logger=pyfreesurface.parallel.get_logger(level="ERROR"),
        )
        domain.initialize()
        return domain

    def test_uniform_elevation_is_steady(self):
        domain = self.create_domain()
        solver = elliptic.MatrixImplicitFreeSurfaceSolver(domain, tolerance=1e-12)
        U = domain.U.array(fill=0.0)
        V = domain.V.array(fill=0.0)
        eta = domain.T.array(fill=0.3)
        rhs = solver.compute_right_hand_side(U, V, eta, 60.0)
        solver.solve(eta, rhs, 60.0)
        np.testing.assert_allclose(eta.values, 0.3, rtol=1e-10)

    def test_volume_conservation(self):
        domain = self.create_domain()
        solver = elliptic.MatrixImplicitFreeSurfaceSolver(domain, tolerance=1e-12)
        U = domain.U.array(fill=0.0)
        V = domain.V.array(fill=0.0)
        eta = domain.T.array(fill=0.0)
        U.values[...] = rng.uniform(-1.0, 1.0, U.shape) * domain.U.mask.values
        eta.values[...] = rng.uniform(-0.5, 0.5, eta.shape)
        area = domain.T.area.values
        volume = (area * eta.values).sum()
        for dt in (30.0, 60.0):
            with self.subTest(dt=dt):
                rhs = solver.compute_right_hand_side(U, V, eta, dt)
                solver.solve(eta, rhs, dt)
                self.assertTrue(np.isfinite(eta.values).all())
                new_volume = (area * eta.values).sum()
                self.assertLess(abs(new_volume - volume), 1e-8 * area.sum())
                volume = new_volume

    def test_divergence_raises_elevation(self):
        # converging transports raise the surface elevation in the center
        nx = 20
        domain = self.create_domain(nx)
        solver = elliptic.MatrixImplicitFreeSurfaceSolver(domain)
        U = domain.U.array(fill=0.0)
        V = domain.V.array(fill=0.0)
        eta = domain.T.array(fill=0.0)
        U.values[..., : nx // 2 - 1] = 1.0
        U.values[..., nx // 2 : -1] = -1.0
        rhs = solver.compute_right_hand_side(U, V, eta, 60.0)
        solver.solve(eta, rhs, 60.0)
        self.assertGreater(eta.values[0, nx // 2], 0.0)
        self.assertLess(eta.values[0, 0], eta.values[0, nx // 2])
        np.testing.assert_allclose(
            eta.values[0, :], eta.values[0, ::-1], rtol=1e-6, atol=1e-6
        )


if __name__ == "__main__":
    unittest.main()
