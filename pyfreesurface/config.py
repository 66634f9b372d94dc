from typing import Any, Mapping, Iterator, Optional
import collections.abc

import numpy as np
import yaml

from . import domain
from . import parallel
from . import free_surface
from . import hydrostatic_pressure
from . import simulation
from .constants import GRAVITY, MINIMUM_SUBSTEPS

TOPOLOGIES = {
    'periodic': domain.Topology.PERIODIC,
    'bounded': domain.Topology.BOUNDED,
    'flat': domain.Topology.FLAT,
}
TIMESTEPPERS = {
    'forward_backward': free_surface.ForwardBackwardScheme,
    'adams_bashforth3': free_surface.AdamsBashforth3Scheme,
}
AVERAGING_KERNELS = {
    'shape_function': free_surface.averaging_shape_function,
    'cosine': free_surface.cosine_averaging_kernel,
    'constant': free_surface.constant_averaging_kernel,
}
FREE_SURFACES = ('split_explicit', 'implicit')

class Node(collections.abc.Mapping):
    """Read-only view of a configuration mapping that tracks which keys have been
    retrieved. Nested mappings become nodes themselves; their keys can be accessed
    with paths like ``domain/nx``."""

    def __init__(self, dictionary: Mapping[str, Any], prefix: str=''):
        self.prefix = prefix
        assert isinstance(dictionary, Mapping)
        self.dictionary = {}
        for name, value in dictionary.items():
            if isinstance(value, Mapping):
                value = Node(value, prefix='%s%s/' % (self.prefix, name))
            self.dictionary[name] = value
        self.retrieved = set()

    def __getitem__(self, path: str):
        components = path.split('/', 1)
        value = self.dictionary[components[0]]
        self.retrieved.add(components[0])
        if len(components) > 1:
            assert isinstance(value, Node)
            value = value[components[1]]
        return value

    def __iter__(self) -> Iterator:
        return self.dictionary.__iter__()

    def __len__(self) -> int:
        return self.dictionary.__len__()

    def check(self):
        """Return the paths of all keys that have not been retrieved"""
        unused = []
        for name, value in self.dictionary.items():
            if name not in self.retrieved:
                unused.append('%s%s' % (self.prefix, name))
            if isinstance(value, Node):
                unused += value.check()
        return unused

    def require(self, name: str):
        if name not in self:
            raise Exception('%s%s is required' % (self.prefix, name))
        return self[name]

    def get_choice(self, name: str, choices, default: Optional[str]=None):
        value = self.get(name, default)
        if value not in choices:
            raise Exception('%s%s must be one of %s, but is %r' % (self.prefix, name, ', '.join(choices), value))
        return value

def configure(path: str) -> Node:
    with open(path) as f:
        settings = yaml.safe_load(f)
    if not isinstance(settings, Mapping):
        raise Exception('%s should contain a mapping with configuration information, but instead contains %s' % (path, settings))
    return Node(settings)

def create_domain(node: Node, **kwargs) -> domain.Domain:
    """Create a Cartesian domain with uniform spacing from the ``domain`` section"""
    nx, ny, nz = node.require('nx'), node.require('ny'), node.require('nz')
    x = np.linspace(0.0, node.get('x_extent', float(nx)), nx + 1)
    y = np.linspace(0.0, node.get('y_extent', float(ny)), ny + 1)
    return domain.create_cartesian(
        x,
        y,
        nz,
        interfaces=True,
        H=node.get('H', 10.0),
        x_topology=TOPOLOGIES[node.get_choice('x_topology', TOPOLOGIES, 'bounded')],
        y_topology=TOPOLOGIES[node.get_choice('y_topology', TOPOLOGIES, 'bounded')],
        partial_cell_bottom=node.get('partial_cell_bottom', False),
        **kwargs
    )

def create_free_surface(node: Node) -> free_surface.FreeSurface:
    """Create the free surface solver from the ``free_surface`` section"""
    kind = node.get_choice('type', FREE_SURFACES, 'split_explicit')
    g = node.get('gravitational_acceleration', GRAVITY)
    if kind == 'implicit':
        settings = {}
        for name in ('method', 'preconditioner', 'tolerance', 'maximum_iterations'):
            if name in node:
                settings[name] = node[name]
        return free_surface.ImplicitFreeSurface(g, **settings)
    timestepper = TIMESTEPPERS[node.get_choice('timestepper', TIMESTEPPERS, 'forward_backward')]
    kernel = AVERAGING_KERNELS[node.get_choice('averaging_kernel', AVERAGING_KERNELS, 'shape_function')]
    return free_surface.SplitExplicitFreeSurface(
        substeps=node.get('substeps'),
        cfl=node.get('cfl'),
        dt_barotropic=node.get('dt_barotropic'),
        averaging_kernel=kernel,
        timestepper=timestepper(),
        gravitational_acceleration=g,
        minimum_substeps=node.get('minimum_substeps', MINIMUM_SUBSTEPS),
    )

def create_simulation(path: str) -> simulation.Simulation:
    """Create a simulation from a YAML file with sections ``domain`` and
    ``free_surface``, and optional settings ``log_level``, ``hydrostatic_pressure``
    (bool), ``viscosity`` and ``chi``. Unused keys are an error."""
    config = configure(path)
    logger = parallel.get_logger(level=config.get('log_level', 'INFO'))
    dom = create_domain(config.require('domain'), logger=logger)
    fs = create_free_surface(config.require('free_surface'))
    if config.get('hydrostatic_pressure', False):
        pressure = hydrostatic_pressure.HydrostaticPressure()
    else:
        pressure = hydrostatic_pressure.Constant()
    viscosity = config.get('viscosity', 0.0)
    chi = config.get('chi', 0.1)
    unused = config.check()
    if unused:
        raise Exception('Unused configuration settings: %s' % ', '.join(unused))
    logger.info('Configuration read from %s' % path)
    return simulation.Simulation(dom, fs, hydrostatic_pressure=pressure, viscosity=viscosity, chi=chi)
