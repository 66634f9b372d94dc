import unittest
import logging
from functools import wraps
from typing import Optional

import numpy as np

import pyfreesurface


handler = logging.StreamHandler()
handler.setLevel(level=logging.ERROR)
logging.basicConfig(handlers=(handler,))

rng = np.random.default_rng()


def for_each_grid(test_func):
    @wraps(test_func)
    def wrapper(self: unittest.TestCase, *args, **kwargs):
        EXTENT = 50000
        uniform = np.linspace(-50.0, 0.0, 26)
        stretched = -50.0 * np.linspace(1.0, 0.0, 26) ** 1.5
        for name, zf in (("uniform", uniform), ("stretched", stretched)):
            with self.subTest(layers=name):
                domain = pyfreesurface.domain.create_cartesian(
                    np.linspace(0, EXTENT, 50),
                    np.linspace(0, EXTENT, 52),
                    25,
                    H=50.0,
                    zf=zf,
                    logger=pyfreesurface.parallel.get_logger(level="ERROR"),
                )
                # randomly mask half of the domain
                domain.mask[...] = rng.random(domain.mask.shape) > 0.5
                domain.initialize()
                test_func(self, domain.T, *args, **kwargs)

    return wrapper


def for_each_cnpar(*cnpars):
    def decorator(test_func):
        @wraps(test_func)
        def wrapper(self: unittest.TestCase, *args, **kwargs):
            for cnpar in cnpars:
                with self.subTest(cnpar=cnpar):
                    test_func(self, cnpar, *args, **kwargs)

        return wrapper

    return decorator


def repeat(test_func):
    @wraps(test_func)
    def wrapper(self: unittest.TestCase, *args, **kwargs):
        for i in range(5):
            with self.subTest(repeat=i):
                test_func(self, *args, **kwargs)

    return wrapper


class TestVerticalDiffusion(unittest.TestCase):
    DT = 600.0
    NSTEP = 100

    def diffuse(
        self,
        tracer_in: pyfreesurface.core.Array,
        nuh: pyfreesurface.core.Array,
        cnpar: float,
        tolerance: float = 1e-13,
        sources: Optional[pyfreesurface.core.Array] = None,
    ):
        self.assertTrue(
            np.isfinite(tracer_in.ma).all(),
            "tracer contains non-finite values before diffusion",
        )

        tracer = tracer_in.grid.array(z=tracer_in.z)
        tracer.all_values[...] = tracer_in.all_values
        vdif = pyfreesurface.operators.VerticalDiffusion(tracer.grid, cnpar=cnpar)
        hn = tracer.grid.hn.values

        # Set diffusivity at all masked points to NaN
        nuh.all_values[:, nuh.grid.mask.all_values != 1] = np.nan

        # Set diffusivity at the very surface and bottom to NaN,
        # so we can later check that this value has not been propagated (used)
        nuh.all_values[0, ...] = np.nan
        nuh.all_values[-1, ...] = np.nan

        expected_integral = (tracer_in.ma * hn).sum(axis=0)
        for _ in range(self.NSTEP):
            vdif(nuh, self.DT, tracer, sources=sources)

        self.assertTrue(
            np.isfinite(tracer.ma)[...].all(),
            "tracer contains non-finite values after diffusion",
        )

        col_min = tracer.ma.min(axis=(1, 2))
        col_max = tracer.ma.max(axis=(1, 2))

        col_range = col_max - col_min
        self.assertEqual(
            col_range.max(), 0.0, "horizontal variability in tracer after diffusion"
        )
        # only the fully implicit scheme is guaranteed to be monotone
        if sources is None and cnpar == 1.0:
            ini_min, ini_max = tracer_in.ma.min(), tracer_in.ma.max()
            global_min, global_max = col_min.min(), col_max.max()
            eps = tolerance * max(abs(global_min), abs(global_max))
            self.assertLessEqual(
                global_max,
                ini_max + eps,
                "final global maximum value exceeds initial maximum",
            )
            self.assertGreaterEqual(
                global_min,
                ini_min - eps,
                "final global minimum value below initial minimum",
            )

        if sources is not None:
            expected_integral += sources.ma.sum(axis=0) * self.NSTEP
        integral = (tracer.ma * hn).sum(axis=0)
        delta = np.abs(integral - expected_integral).max()
        reldelta = delta / np.abs(expected_integral).max()
        self.assertLessEqual(
            reldelta, tolerance, "depth integral differs from expected value"
        )

    @for_each_grid
    @for_each_cnpar(0.5, 0.75, 1.0)
    def test_mixing_from_bottom(self, cnpar: float, grid: pyfreesurface.domain.Grid):
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill_value=0.01)
        tracer = grid.array(z=pyfreesurface.CENTERS, fill=0.0)
        tracer.values[0, ...] = 1.0
        self.diffuse(tracer, nuh, cnpar)

    @for_each_grid
    @for_each_cnpar(0.5, 0.75, 1.0)
    def test_mixing_from_surface(self, cnpar: float, grid: pyfreesurface.domain.Grid):
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill_value=0.01)
        tracer = grid.array(z=pyfreesurface.CENTERS, fill=0.0)
        tracer.values[-1, ...] = 1.0
        self.diffuse(tracer, nuh, cnpar)

    @repeat
    @for_each_grid
    @for_each_cnpar(0.5, 0.75, 1.0)
    def test_mixing_of_random_state(self, cnpar: float, grid: pyfreesurface.domain.Grid):
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill_value=0.01)
        tracer = grid.array(z=pyfreesurface.CENTERS, fill=0.0)
        tracer[...] = rng.uniform(0.0, 1.0, (tracer.shape[0], 1, 1))
        self.diffuse(tracer, nuh, cnpar)

    @for_each_grid
    @for_each_cnpar(0.5, 0.75, 1.0)
    def test_source(self, cnpar: float, grid: pyfreesurface.domain.Grid):
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill_value=0.01)
        tracer = grid.array(z=pyfreesurface.CENTERS, fill=0.0)
        # note that sources should be time- and layer-integrated!
        sources = grid.array(fill=1.0 / self.DT, z=pyfreesurface.CENTERS)
        self.diffuse(tracer, nuh, cnpar, sources=sources * self.DT * grid.hn)

    @repeat
    @for_each_grid
    @for_each_cnpar(0.75, 1.0)
    def test_random_diffusivity(self, cnpar: float, grid: pyfreesurface.domain.Grid):
        tracer = grid.array(z=pyfreesurface.CENTERS, fill_value=np.nan)
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill_value=np.nan)
        nuh.fill(10.0 ** rng.uniform(-6.0, 0.0, (nuh.shape[0], 1, 1)))
        tracer.fill(35.0)
        self.diffuse(tracer, nuh, cnpar, tolerance=1e-11)

    @repeat
    @for_each_grid
    @for_each_cnpar(0.75, 1.0)
    def test_random_diffusivity_random_tracer(
        self, cnpar: float, grid: pyfreesurface.domain.Grid
    ):
        tracer = grid.array(z=pyfreesurface.CENTERS, fill_value=np.nan)
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill_value=np.nan)
        nuh.fill(10.0 ** rng.uniform(-6.0, 0.0, (nuh.shape[0], 1, 1)))
        tracer.fill(rng.uniform(0.0, 1.0, (tracer.shape[0], 1, 1)))
        self.diffuse(tracer, nuh, cnpar, tolerance=1e-11)

    @repeat
    @for_each_grid
    @for_each_cnpar(0.75, 1.0)
    def test_random_diffusivity_random_tracer_with_sources(
        self, cnpar: float, grid: pyfreesurface.domain.Grid
    ):
        tracer = grid.array(z=pyfreesurface.CENTERS, fill_value=np.nan)
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill_value=np.nan)
        nuh.fill(10.0 ** rng.uniform(-6.0, 0.0, (nuh.shape[0], 1, 1)))
        tracer.fill(rng.uniform(0.0, 1.0, (tracer.shape[0], 1, 1)))
        sources = grid.array(fill=1.0, z=pyfreesurface.CENTERS)
        sources.fill(rng.uniform(0.0, 1.0, (sources.shape[0], 1, 1)))
        self.diffuse(
            tracer, nuh, cnpar, tolerance=1e-11, sources=sources * self.DT * grid.hn
        )

    def test_land_and_immersed_cells_are_untouched(self):
        H = np.broadcast_to(np.linspace(0.0, 50.0, 10), (8, 10))
        domain = pyfreesurface.domain.create_cartesian(
            np.linspace(0, 10000, 11),
            np.linspace(0, 8000, 9),
            10,
            interfaces=True,
            H=H,
            zf=np.linspace(-50.0, 0.0, 11),
            logger=pyfreesurface.parallel.get_logger(level="ERROR"),
        )
        domain.initialize()
        grid = domain.T
        tracer = grid.array(z=pyfreesurface.CENTERS)
        tracer.all_values[...] = rng.uniform(0.0, 1.0, tracer.all_values.shape)
        initial = tracer.all_values.copy()
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill=0.01)
        vdif = pyfreesurface.operators.VerticalDiffusion(grid)
        vdif(nuh, self.DT, tracer)

        inactive = ~grid._active
        self.assertTrue(inactive[:, grid.mask.all_values != 0].any())
        np.testing.assert_array_equal(tracer.all_values[inactive], initial[inactive])
        self.assertFalse(vdif.solver.unstable.any())
        hn = grid.hn.all_values
        np.testing.assert_allclose(
            (hn * tracer.all_values).sum(axis=0, where=grid._active),
            (hn * initial).sum(axis=0, where=grid._active),
            rtol=1e-12,
        )

    def test_vanishing_pivot_keeps_column(self):
        # with negative diffusivity nuh = -h^2 / dt, the lowest pivot h + nuh dt / h
        # vanishes in all water columns
        domain = pyfreesurface.domain.create_cartesian(
            np.linspace(0, 10000, 11),
            np.linspace(0, 8000, 9),
            2,
            interfaces=True,
            H=8.0,
            logger=pyfreesurface.parallel.get_logger(level="ERROR"),
        )
        domain.mask_indices(0, 3, 0, 8)
        domain.initialize()
        grid = domain.T
        np.testing.assert_array_equal(grid.hn.values[:, :, 3:], 4.0)
        tracer = grid.array(z=pyfreesurface.CENTERS, fill=0.0)
        tracer.values[...] = rng.uniform(0.0, 1.0, tracer.shape)
        initial = tracer.values.copy()
        nuh = grid.array(z=pyfreesurface.INTERFACES, fill=-16.0)
        vdif = pyfreesurface.operators.VerticalDiffusion(grid)
        vdif(nuh, 1.0, tracer)
        np.testing.assert_array_equal(vdif.solver.unstable, grid._water)
        np.testing.assert_array_equal(tracer.values, initial)


if __name__ == "__main__":
    unittest.main()
