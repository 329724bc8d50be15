import math

import numpy as np
import pytest

from mpi4py import MPI

from pmatrix import core

comm = MPI.COMM_WORLD

rank = comm.rank
size = comm.size

g = math.isqrt(size)

if g * g != size:
    raise Exception("Test needs a square number of processes.")


def test_process_grid():
    pc = core.ProcessGrid([g, g], comm=comm)

    # Test grid shape is correct
    assert pc.grid_shape == (g, g)

    # Test we have the correct (row major) positions
    assert pc.grid_position == (rank // g, rank % g)

    # Test the MPI communicator is correct
    assert comm == pc.mpi_comm

    assert pc.is_active()
    assert pc.is_head() == (rank == 0)


def test_all_positions():
    pc = core.get_grid((g, g), comm=comm)

    assert pc.all_grid_positions.shape == (size, 2)
    assert tuple(pc.all_grid_positions[rank]) == pc.grid_position
    assert pc.all_mpi_ranks[pc.grid_position] == rank
    assert sorted(pc.all_mpi_ranks.flatten()) == list(range(size))


def test_resolve_grid_shape():
    assert core._resolve_grid_shape((2, 3), 6) == (2, 3)
    assert core._resolve_grid_shape((2, 0), 6) == (2, 3)
    assert core._resolve_grid_shape((0, 3), 6) == (2, 3)
    assert core._resolve_grid_shape(None, 9) == (3, 3)

    # Fewer cells than processes is allowed
    assert core._resolve_grid_shape((1, 1), 4) == (1, 1)

    # Default grid needs a square number of processes
    with pytest.raises(core.PMatrixException):
        core._resolve_grid_shape(None, 6)

    # Too many cells
    with pytest.raises(core.PMatrixException):
        core._resolve_grid_shape((3, 3), 4)

    with pytest.raises(core.PMatrixException):
        core._resolve_grid_shape((-1, 2), 4)


def test_grid_too_large():
    with pytest.raises(core.PMatrixException):
        core.get_grid((size + 1, 1), comm=comm)


def test_registry():
    pc1 = core.get_grid((g, g), comm=comm)
    pc2 = core.get_grid((g, g), comm=comm)

    # One grid per communicator and shape
    assert pc1 is pc2
    assert core.lookup_context(pc1.context) is pc1

    # Context ids agree on every process
    ids = comm.allgather(pc1.context)
    assert len(set(ids)) == 1

    with pytest.raises(core.PMatrixException):
        core.lookup_context(pc1.context + 1000)


def test_inactive_ranks():
    # A 1x1 grid only uses rank 0, the others must still join in
    pc = core.get_grid((1, 1), comm=comm)

    if rank == 0:
        assert pc.grid_position == (0, 0)
        assert pc.is_active()
    else:
        assert pc.grid_position == (-1, -1)
        assert not pc.is_active()

    garr = np.arange(20.0).reshape(4, 5, order='F')
    dm = core.DistributedMatrix.from_global_array(garr, rank=0, block_shape=(2, 2), context=pc)

    if rank != 0:
        assert dm.local_array.size == 0

    assert (dm.to_global_array() == garr).all()


def test_initmpi():

    saved = core._block_shape

    with core.shape_context(gridshape=[g, g], block_shape=[5, 5]):

        # Test grid shape is correct
        assert core._context.grid_shape == (g, g)

        # Test we have the correct positions
        assert core._context.grid_position == (rank // g, rank % g)

        # Test the blockshape is set correctly
        assert core._block_shape == (5, 5)

        dm = core.DistributedMatrix([7, 7])
        assert dm.block_shape == (5, 5)

    # Defaults are restored on exit
    assert core._block_shape == saved


def test_context_by_id():
    pc = core.get_grid((g, g), comm=comm)

    dm = core.DistributedMatrix([6, 6], context=pc.context)
    assert dm.context is pc


def test_release_grids():
    pc = core.get_grid((g, g), comm=comm)
    core.release_grids()

    with pytest.raises(core.PMatrixException):
        core.lookup_context(pc.context)

    pc2 = core.get_grid((g, g), comm=comm)
    assert pc2 is not pc
    assert pc2.context != pc.context
