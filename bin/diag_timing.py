"""Time the diagonalization of a symmetric distributed matrix.

Usage: mpirun -n 4 python diag_timing.py N [BLOCK]

The N x N matrix is split into blocks of BLOCK x BLOCK elements (default 64).
"""

import logging
import sys
import time

import numpy as np

from mpi4py import MPI

from pmatrix import core, util


logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s: %(message)s')

if len(sys.argv) not in (2, 3):
    if MPI.COMM_WORLD.rank == 0:
        print(__doc__)
    sys.exit(1)

n = int(sys.argv[1])
block = int(sys.argv[2]) if len(sys.argv) == 3 else 64

comm = MPI.COMM_WORLD
rank = comm.rank

with util.abort_on_error(comm):
    dm = core.DistributedMatrix((n, n), num_blocks=(max(n // block, 1), max(n // block, 1)))

    # A symmetric matrix with a strong diagonal
    ri, ci = dm.indices()
    dm.local_array[:] = 1.0 / (1.0 + np.abs(ri - ci)) + (ri == ci) * ri

    if rank == 0:
        print("Done filling matrix.")

    comm.Barrier()
    st = time.time()

    evals, evecs = dm.diagonalize()

    comm.Barrier()
    et = time.time()

    if rank == 0:
        print("Lowest eigenvalues: %s" % evals[:4])
        print("Time [milli s]: %i" % int(1e3 * (et - st)))
