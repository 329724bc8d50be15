"""Print which MPI rank stores each element of a distributed matrix.

Usage: mpirun -n 4 python ownership_map.py ROWS COLS [NBR NBC]

NBR and NBC are the number of blocks to split the rows and columns into, zero
meaning one block per row (column) of the process grid.
"""

import sys

import numpy as np

from mpi4py import MPI

from pmatrix import core, util


if len(sys.argv) not in (3, 5):
    if MPI.COMM_WORLD.rank == 0:
        print(__doc__)
    sys.exit(1)

nrows, ncols = int(sys.argv[1]), int(sys.argv[2])
nblocks = (int(sys.argv[3]), int(sys.argv[4])) if len(sys.argv) == 5 else (0, 0)

comm = MPI.COMM_WORLD

with util.abort_on_error(comm):
    dm = core.DistributedMatrix((nrows, ncols), dtype=np.float64, num_blocks=nblocks)

    # Each process marks the elements it stores with its rank
    for row, col in dm.local_elements():
        dm[row, col] = comm.rank

    owners = dm.to_global_array(rank=0)

    if comm.rank == 0:
        print("Grid %s, block shape %s" % (dm.context.grid_shape, dm.block_shape))
        print("the matrix:")
        print(owners.astype(int))
