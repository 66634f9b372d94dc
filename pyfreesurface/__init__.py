from . import core
from . import parallel
from . import domain
from . import operators
from . import elliptic
from . import free_surface
from . import hydrostatic_pressure
from . import config
from .simulation import *
from .constants import *
from .domain import Topology
