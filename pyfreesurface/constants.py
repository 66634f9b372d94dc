RHO0 = 1025.     #: reference density of seawater
GRAVITY = 9.81   #: gravitational acceleration

CENTERS = 1
INTERFACES = 2

#: lower bound on the number of barotropic substeps derived from a barotropic
#: time step; early averaging weights may be negative
MINIMUM_SUBSTEPS = 5

FILL_VALUE = -2e20
