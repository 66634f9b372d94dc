import numpy as np

from . import core
from . import domain
from . import operators
from .constants import FILL_VALUE, CENTERS


class Base:
    pHY: core.Array
    idpdx: core.Array
    idpdy: core.Array

    def __init__(self, idpdx_fill: float = 0.0, idpdy_fill: float = 0.0):
        self.idpdx_fill = idpdx_fill
        self.idpdy_fill = idpdy_fill

    def initialize(self, domain: domain.Domain):
        self.domain = domain
        self.pHY = domain.T.array(
            name="pHY",
            units="m2 s-2",
            long_name="hydrostatic pressure perturbation divided by reference density",
            z=CENTERS,
            fill=0.0,
        )
        self.idpdx = domain.U.array(
            name="idpdx",
            units="m s-2",
            long_name="hydrostatic pressure gradient in x-direction",
            z=CENTERS,
            fill_value=FILL_VALUE,
        )
        self.idpdy = domain.V.array(
            name="idpdy",
            units="m s-2",
            long_name="hydrostatic pressure gradient in y-direction",
            z=CENTERS,
            fill_value=FILL_VALUE,
        )
        self.idpdx.all_values[...] = self.idpdx_fill
        self.idpdy.all_values[...] = self.idpdy_fill
        self.domain.U.mask_immersed(self.idpdx)
        self.domain.V.mask_immersed(self.idpdy)

    def __call__(self, buoy: core.Array):
        raise NotImplementedError


class Constant(Base):
    def __call__(self, buoy: core.Array):
        return


class HydrostaticPressure(Base):
    """Hydrostatic pressure perturbation from the downward integral of buoyancy,
    and its horizontal gradients.

    The integral is computed on the levels of the underlying grid, regardless of the
    position of the bottom. At the top, buoyancy is assumed constant up to the
    surface and beyond the uppermost layer center. With partial bottom cells, the
    integral also covers the outermost halo points adjacent to the interior, which
    requires buoyancy with up-to-date halos. Otherwise, the integral covers the
    interior only and the halos of the pressure are then exchanged.
    """

    def initialize(self, domain: domain.Domain):
        super().initialize(domain)
        halo = domain.halo
        ny_, nx_ = domain.T.ny_, domain.T.nx_
        extra = 1 if domain.partial_cell_bottom else 0
        self._region = (
            slice(None),
            slice(halo - extra, ny_ - halo + extra),
            slice(halo - extra, nx_ - halo + extra),
        )
        self._dz = domain.dz[:, np.newaxis, np.newaxis]
        self._dzc = np.diff(domain.zc)[:, np.newaxis, np.newaxis]

    def __call__(self, buoy: core.Array):
        assert buoy.grid is self.domain.T and buoy.z == CENTERS
        b = buoy.all_values[self._region]
        p = self.pHY.all_values[self._region]
        p[-1] = -b[-1] * self._dz[-1]
        for k in range(p.shape[0] - 2, -1, -1):
            p[k] = p[k + 1] - 0.5 * (b[k] + b[k + 1]) * self._dzc[k]
        if not self.domain.partial_cell_bottom:
            self.pHY.update_halos()

        operators.gradient_x(self.pHY, self.idpdx)
        operators.gradient_y(self.pHY, self.idpdy)
        for idp, grid in ((self.idpdx, self.domain.U), (self.idpdy, self.domain.V)):
            np.negative(idp.all_values, out=idp.all_values)
            grid.mask_immersed(idp)
