import unittest
import datetime
import logging

import numpy as np

import pyfreesurface
from pyfreesurface import free_surface, elliptic


handler = logging.StreamHandler()
handler.setLevel(level=logging.ERROR)
logging.basicConfig(handlers=(handler,))

rng = np.random.default_rng()

TIMESTEP = 30.0
TAU = 0.1


def create_periodic_channel(nx: int = 10, nz: int = 5, H: float = 20.0):
    return pyfreesurface.domain.create_cartesian(
        np.linspace(0.0, 1000.0 * nx, nx + 1),
        np.linspace(0.0, 1000.0, 2),
        nz,
        interfaces=True,
        H=H,
        x_topology=pyfreesurface.Topology.PERIODIC,
        y_topology=pyfreesurface.Topology.FLAT,
        logger=pyfreesurface.parallel.get_logger(level="ERROR"),
    )


class TestSimulation(unittest.TestCase):
    def run_stress(self, fs: free_surface.FreeSurface, nstep: int, **kwargs):
        domain = create_periodic_channel()
        sim = pyfreesurface.Simulation(domain, fs, **kwargs)
        sim.tausx.fill(TAU)
        sim.start(datetime.datetime(2000, 1, 1), TIMESTEP, report=0)
        for _ in range(nstep):
            sim.advance(check_finite=True)
        sim.finish()
        transport = domain.U.array()
        pyfreesurface.operators.barotropic_transport(sim.u, transport)
        return sim, transport

    def test_stress_driven_transport_implicit(self):
        nstep = 20
        for viscosity in (0.0, 1e-3):
            with self.subTest(viscosity=viscosity):
                sim, transport = self.run_stress(
                    free_surface.ImplicitFreeSurface(), nstep, viscosity=viscosity
                )
                expected = nstep * TIMESTEP * TAU / pyfreesurface.RHO0
                np.testing.assert_allclose(transport.values, expected, rtol=1e-12)
                self.assertTrue((sim.free_surface.eta.values == 0.0).all())
                self.assertEqual(
                    sim.time, pyfreesurface.simulation.to_cftime(
                        datetime.datetime(2000, 1, 1) + nstep * sim.timedelta
                    )
                )

    def test_stress_driven_transport_split_explicit(self):
        nstep = 20
        for viscosity in (0.0, 1e-3):
            with self.subTest(viscosity=viscosity):
                fs = free_surface.SplitExplicitFreeSurface(substeps=20)
                sim, transport = self.run_stress(fs, nstep, viscosity=viscosity)
                fraction, weights = fs.substepping.settings(20)
                steps = np.arange(1, len(weights) + 1)
                increment = TIMESTEP * fraction * (weights * steps).sum()
                expected = nstep * increment * TAU / pyfreesurface.RHO0
                np.testing.assert_allclose(transport.values, expected, rtol=1e-12)
                np.testing.assert_allclose(fs.U_avg.values, expected, rtol=1e-12)
                self.assertTrue((fs.eta.values == 0.0).all())

    def test_stress_stays_in_top_layer_without_viscosity(self):
        nstep = 5
        sim, transport = self.run_stress(free_surface.ImplicitFreeSurface(), nstep)
        self.assertTrue((sim.u.values[:-1] == 0.0).all())
        h_top = sim.domain.U.hn.values[-1]
        expected = nstep * TIMESTEP * TAU / (pyfreesurface.RHO0 * h_top)
        np.testing.assert_allclose(sim.u.values[-1], expected, rtol=1e-12)

    def test_volume(self):
        domain = create_periodic_channel()
        sim = pyfreesurface.Simulation(
            domain, free_surface.SplitExplicitFreeSurface(substeps=20)
        )
        sim.free_surface.eta.values[...] = rng.uniform(-0.1, 0.1, (1, 10))
        sim.free_surface.eta.update_halos()
        sim.start(datetime.datetime(2000, 1, 1), TIMESTEP, report=0, report_totals=5)
        volume = sim.totals
        for _ in range(10):
            sim.advance()
        self.assertLess(abs(sim.totals - volume), 1e-12 * volume)
        self.assertIs(sim["eta"], sim.free_surface.eta)

    def test_uniform_flow_is_steady(self):
        # the initial velocity set after construction is picked up by start
        fss = (
            lambda: free_surface.SplitExplicitFreeSurface(substeps=20),
            lambda: free_surface.SplitExplicitFreeSurface(
                substeps=20, timestepper=free_surface.AdamsBashforth3Scheme()
            ),
            free_surface.ImplicitFreeSurface,
        )
        for create_fs in fss:
            fs = create_fs()
            with self.subTest(free_surface=fs):
                sim = pyfreesurface.Simulation(create_periodic_channel(), fs)
                sim.u.values[...] = 0.1
                sim.start(datetime.datetime(2000, 1, 1), TIMESTEP, report=0)
                for _ in range(3):
                    sim.advance(check_finite=True)
                np.testing.assert_allclose(sim.u.values, 0.1, rtol=1e-12)
                self.assertLess(np.abs(fs.eta.values).max(), 1e-12)

    def test_check_finite(self):
        domain = create_periodic_channel()
        sim = pyfreesurface.Simulation(domain, free_surface.ImplicitFreeSurface())
        sim.start(datetime.datetime(2000, 1, 1), TIMESTEP, report=0)
        sim.u.values[0, 0, 0] = np.nan
        with self.assertRaises(Exception):
            sim.check_finite()

    def test_convergence_error_propagates(self):
        domain = create_periodic_channel(nx=16)
        sim = pyfreesurface.Simulation(
            domain,
            free_surface.ImplicitFreeSurface(preconditioner=None, maximum_iterations=1),
        )
        sim.Fu.values[...] = rng.normal(size=sim.Fu.shape)
        sim.start(datetime.datetime(2000, 1, 1), TIMESTEP, report=0)
        with self.assertRaises(elliptic.ConvergenceError):
            sim.advance()

    def test_hydrostatic_pressure_drives_flow(self):
        domain = pyfreesurface.domain.create_cartesian(
            np.linspace(0.0, 10000.0, 11),
            np.linspace(0.0, 1000.0, 2),
            10,
            interfaces=True,
            H=50.0,
            y_topology=pyfreesurface.Topology.FLAT,
            logger=pyfreesurface.parallel.get_logger(level="ERROR"),
        )
        sim = pyfreesurface.Simulation(
            domain,
            free_surface.SplitExplicitFreeSurface(substeps=40),
            hydrostatic_pressure=pyfreesurface.hydrostatic_pressure.HydrostaticPressure(),
        )
        # light water in the west, dense water in the east
        sim.buoy.values[:, :, :5] = 0.01
        sim.start(datetime.datetime(2000, 1, 1), TIMESTEP, report=0)
        for _ in range(5):
            sim.advance(check_finite=True)

        # at the front, light water moves eastward relative to the dense water below
        self.assertGreater(sim.u.values[-1, 0, 4], sim.u.values[0, 0, 4])
        self.assertTrue((sim.u.values[:, 0, -1] == 0.0).all())


if __name__ == "__main__":
    unittest.main()
