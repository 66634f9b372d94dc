from typing import Dict, Optional, Tuple, Union, List
import logging
import enum

from mpi4py import MPI
import numpy as np

Waitall = MPI.Request.Waitall
Startall = MPI.Prequest.Startall


def get_logger(level: Union[int, str] = logging.INFO, comm=MPI.COMM_WORLD):
    """Configure logging for the current process and return the root logger.
    Rank 0 writes to the console; with multiple ranks, every rank also writes to
    its own log file ``pyfreesurface-<rank>.log``.

    Args:
        level: log level, either as number or as name (e.g., ``"ERROR"``)
        comm: MPI communicator
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    handlers: List[logging.Handler] = []
    if comm.rank == 0:
        handlers.append(logging.StreamHandler())
    if comm.size > 1:
        log_file = logging.FileHandler("pyfreesurface-%04i.log" % comm.rank, mode="w")
        log_file.setFormatter(logging.Formatter("%(asctime)s - %(message)s"))
        handlers.append(log_file)
    logging.basicConfig(level=level, handlers=handlers, force=True)
    return logging.getLogger()


@enum.unique
class Neighbor(enum.IntEnum):
    # Individual neighbors
    BOTTOMLEFT = 1
    BOTTOM = 2
    BOTTOMRIGHT = 3
    LEFT = 4
    RIGHT = 5
    TOPLEFT = 6
    TOP = 7
    TOPRIGHT = 8

    # Groups of neighbors whose halos are updated together
    ALL = 0
    TOP_AND_BOTTOM = 9
    LEFT_AND_RIGHT = 10
    TOP_AND_RIGHT = 11
    LEFT_AND_RIGHT_AND_TOP_AND_BOTTOM = 12


#: position of each neighbor relative to the subdomain as (row, column) offset
OFFSETS: Dict[Neighbor, Tuple[int, int]] = {
    Neighbor.BOTTOMLEFT: (-1, -1),
    Neighbor.BOTTOM: (-1, 0),
    Neighbor.BOTTOMRIGHT: (-1, 1),
    Neighbor.LEFT: (0, -1),
    Neighbor.RIGHT: (0, 1),
    Neighbor.TOPLEFT: (1, -1),
    Neighbor.TOP: (1, 0),
    Neighbor.TOPRIGHT: (1, 1),
}
OPPOSITE = {
    which: next(n for n, o in OFFSETS.items() if o == (-di, -dj))
    for which, (di, dj) in OFFSETS.items()
}
GROUPS = {
    Neighbor.ALL: tuple(OFFSETS),
    Neighbor.TOP_AND_BOTTOM: (Neighbor.TOP, Neighbor.BOTTOM),
    Neighbor.LEFT_AND_RIGHT: (Neighbor.LEFT, Neighbor.RIGHT),
    Neighbor.TOP_AND_RIGHT: (Neighbor.TOP, Neighbor.RIGHT),
    Neighbor.LEFT_AND_RIGHT_AND_TOP_AND_BOTTOM: (
        Neighbor.LEFT,
        Neighbor.RIGHT,
        Neighbor.TOP,
        Neighbor.BOTTOM,
    ),
}
GROUPS.update({which: (which,) for which in OFFSETS})


class Tiling:
    def __init__(
        self,
        nrow: Optional[int] = None,
        ncol: Optional[int] = None,
        map: Optional[np.ndarray] = None,
        comm=MPI.COMM_WORLD,
        periodic_x: bool = False,
        periodic_y: bool = False,
        ncpus: Optional[int] = None,
    ):
        """Division of the global domain into subdomains, one per MPI rank

        Args:
            nrow: number of subdomain rows
            ncol: number of subdomain columns
            map: 2D array with the rank of each subdomain (-1 for unused subdomains).
                Must be provided if ``nrow`` and ``ncol`` are not.
            comm: MPI communicator
            periodic_x: whether the global domain wraps around in x-direction
            periodic_y: whether the global domain wraps around in y-direction
            ncpus: number of active subdomains (default: size of the communicator)
        """
        if map is None:
            if nrow is None or ncol is None:
                raise Exception(
                    "Either the number of subdomain rows and columns or the rank map"
                    " must be provided."
                )
            map = np.arange(nrow * ncol).reshape(nrow, ncol)
        self.map = np.asarray(map)
        self.nrow, self.ncol = self.map.shape
        self.periodic_x = periodic_x
        self.periodic_y = periodic_y

        self.comm = comm
        self.rank: int = comm.rank
        self.n = comm.size if ncpus is None else ncpus
        nactive = (self.map != -1).sum()
        if nactive != self.n:
            raise Exception(
                "Number of active subdomains (%i) does not match the number of MPI"
                " processes (%i). Map: %s" % (nactive, self.n, self.map)
            )

        (self.irow, self.icol), = np.argwhere(self.map == self.rank)

        #: rank of each neighboring subdomain (-1 if there is none)
        self.neighbors: Dict[Neighbor, int] = {
            which: self._rank_at(self.irow + di, self.icol + dj)
            for which, (di, dj) in OFFSETS.items()
        }
        self.n_neighbors = sum(rank != -1 for rank in self.neighbors.values())
        self.nx_glob = self.ny_glob = None

    def _rank_at(self, irow: int, icol: int) -> int:
        if self.periodic_y:
            irow %= self.nrow
        if self.periodic_x:
            icol %= self.ncol
        if 0 <= irow < self.nrow and 0 <= icol < self.ncol:
            return int(self.map[irow, icol])
        return -1

    def set_extent(self, nx_glob: int, ny_glob: int):
        """Set the extent of the global domain, which must divide evenly over
        the subdomain rows and columns. This also determines the extent and offset
        of the local subdomain.
        """
        if self.nx_glob is not None:
            raise Exception("Domain extent has already been set.")
        for name, n, nsub in (("x", nx_glob, self.ncol), ("y", ny_glob, self.nrow)):
            if n % nsub != 0:
                raise Exception(
                    "Number of %s points (%i) is not divisible by the number of"
                    " subdomains in that direction (%i)" % (name, n, nsub)
                )
        self.nx_glob, self.ny_glob = nx_glob, ny_glob
        self.nx_sub = nx_glob // self.ncol
        self.ny_sub = ny_glob // self.nrow
        self.xoffset = self.icol * self.nx_sub
        self.yoffset = self.irow * self.ny_sub

    def report(self, logger: logging.Logger):
        """Log the decomposition, unless there is only one subdomain"""
        if self.nrow * self.ncol == 1:
            return
        logger.info(
            "Using subdomain decomposition %i x %i (%i active nodes)"
            % (self.nrow, self.ncol, self.n)
        )
        logger.info(
            "Global domain shape %i x %i, subdomain shape %i x %i"
            % (self.nx_glob, self.ny_glob, self.nx_sub, self.ny_sub)
        )
        logger.info(
            "I am rank %i at subdomain row %i, column %i, with offset x=%i, y=%i"
            % (self.rank, self.irow, self.icol, self.xoffset, self.yoffset)
        )

    def __bool__(self) -> bool:
        """Return True if the current subdomain has any neighbors, False otherwise.
        """
        return self.n_neighbors > 0


def _halo_slices(offset: int, halo: int) -> Tuple[slice, slice]:
    """Slices along one axis for the halo on the side given by ``offset``, and
    for the interior points that the neighbor on that side needs for its halo"""
    if offset < 0:
        return slice(None, halo), slice(halo, 2 * halo)
    elif offset > 0:
        return slice(-halo, None), slice(-2 * halo, -halo)
    return slice(halo, -halo), slice(halo, -halo)


class DistributedArray:
    """Halo exchange for a single array, based on persistent MPI requests that
    are created once and restarted for every exchange. A subdomain that is its
    own neighbor (periodic boundaries with a single subdomain row or column)
    exchanges with itself.

    Data for neighbor ``N`` is sent with the tag of the opposite neighbor, which
    is where the sender is located from the perspective of the receiver.
    """

    __slots__ = ["rank", "tasks"]

    def __init__(self, tiling: Tiling, field: np.ndarray, halo: int):
        self.rank = tiling.rank

        # per neighbor: receive request, send request, halo, interior and buffers
        exchanges = {}
        for which, (di, dj) in OFFSETS.items():
            rank = tiling.neighbors[which]
            if rank == -1:
                continue
            outer_j, inner_j = _halo_slices(di, halo)
            outer_i, inner_i = _halo_slices(dj, halo)
            outer = field[..., outer_j, outer_i]
            inner = field[..., inner_j, inner_i]
            recv_buffer, send_buffer = np.empty_like(outer), np.empty_like(inner)
            exchanges[which] = (
                tiling.comm.Recv_init(recv_buffer, rank, which),
                tiling.comm.Send_init(send_buffer, rank, OPPOSITE[which]),
                (outer, recv_buffer),
                (inner, send_buffer),
            )

        # Updating the halos of a group requires receiving from the neighbors in
        # that group, and sending to the neighbors on the opposite side.
        self.tasks: Dict[Neighbor, Tuple[list, list, list, list]] = {}
        for group, members in GROUPS.items():
            recv = [exchanges[n] for n in members if n in exchanges]
            send = [exchanges[OPPOSITE[n]] for n in members if OPPOSITE[n] in exchanges]
            self.tasks[group] = (
                [e[1] for e in send],
                [e[0] for e in recv],
                [e[3] for e in send],
                [e[2] for e in recv],
            )

    def update_halos(self, group: Neighbor = Neighbor.ALL):
        self.update_halos_start(group)
        self.update_halos_finish(group)

    def update_halos_start(self, group: Neighbor = Neighbor.ALL):
        send_reqs, recv_reqs, send_data, _ = self.tasks[group]
        Startall(recv_reqs)
        for inner, buffer in send_data:
            buffer[...] = inner
        Startall(send_reqs)

    def update_halos_finish(self, group: Neighbor = Neighbor.ALL):
        send_reqs, recv_reqs, _, recv_data = self.tasks[group]
        Waitall(recv_reqs)
        for outer, buffer in recv_data:
            outer[...] = buffer
        Waitall(send_reqs)


class Sum:
    """Sum of an array over all subdomains, available on the root rank only"""

    def __init__(self, tiling: Tiling, field: np.ndarray, root: int = 0):
        self.comm = tiling.comm
        self.root = root
        self.field = np.asarray(field)
        self.result = np.empty_like(self.field) if tiling.rank == root else None

    def __call__(self) -> Optional[np.ndarray]:
        self.comm.Reduce(self.field, self.result, op=MPI.SUM, root=self.root)
        return self.result
