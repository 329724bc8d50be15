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

test_context = {"gridshape": (g, g), "block_shape": (3, 3)}

allclose = lambda a, b: np.allclose(a, b, rtol=1e-4, atol=1e-6)


def test_dm_init():
    with core.shape_context(**test_context):
        dm = core.DistributedMatrix([5, 5])

        # Check global shape
        assert dm.global_shape == (5, 5)
        assert (dm.rows, dm.cols, dm.size) == (5, 5, 25)

        # Check block size
        assert dm.block_shape == test_context["block_shape"]

        # Check local shape
        if size == 4:
            shapelist = [(3, 3), (3, 2), (2, 3), (2, 2)]
            assert dm.local_shape == shapelist[rank]

        # A new matrix is zero, and stored column major
        assert (dm.local_array == 0).all()
        assert dm.local_array.flags.f_contiguous
        assert dm.sc_dtype == 'D'


def test_dm_desc():
    with core.shape_context(**test_context):
        dm = core.DistributedMatrix([7, 4], dtype=np.complex64)

        desc = dm.desc
        assert list(desc[:8]) == [1, dm.context.handle, 7, 4, 3, 3, 0, 0]
        assert desc[8] == max(1, dm.local_shape[0])
        assert dm.sc_dtype == 'C'
        assert dm.mpi_dtype == MPI.COMPLEX

        # The descriptor is returned as a copy
        desc[2] = 100
        assert dm.desc[2] == 7


def test_dm_bad_args():
    with core.shape_context(**test_context):
        with pytest.raises(core.PMatrixException):
            core.DistributedMatrix([5, 5], dtype=np.int32)

        with pytest.raises(core.PMatrixException):
            core.DistributedMatrix([5])

        with pytest.raises(core.PMatrixException):
            core.DistributedMatrix([5, 5], block_shape=[0, 2])


def test_dm_num_blocks():
    with core.shape_context(gridshape=(g, g)):
        assert core.DistributedMatrix([8, 8], num_blocks=(2, 2)).block_shape == (4, 4)
        assert core.DistributedMatrix([5, 5], num_blocks=(2, 2)).block_shape == (3, 3)
        assert core.DistributedMatrix([3, 3], num_blocks=(10, 10)).block_shape == (1, 1)

        # Zero means one block per row/column of the grid
        bs = math.ceil(12 / g)
        assert core.DistributedMatrix([12, 12], num_blocks=(0, 0)).block_shape == (bs, bs)
        assert core.DistributedMatrix([12, 12]).block_shape == (bs, bs)

        # Explicit block shape wins
        assert core.DistributedMatrix([8, 8], block_shape=(2, 3), num_blocks=(2, 2)).block_shape == (2, 3)


def test_dm_load_5x5():
    """Test that a 5x5 DistributedMatrix is loaded correctly"""
    with core.shape_context(**test_context):
        # Generate matrix
        garr = np.arange(25.0).reshape(5, 5, order='F')

        # Load with DistributedMatrix
        dm = core.DistributedMatrix.from_global_array(garr)

        if size == 4:
            # Manually extract correct sections
            glist = [garr[:3, :3], garr[:3, 3:], garr[3:, :3], garr[3:, 3:]]
            np.testing.assert_equal(dm.local_array, glist[rank])

        ri, ci = dm.indices()
        np.testing.assert_equal(dm.local_array, garr[ri, ci])


@pytest.mark.parametrize("gshape,bshape", [
    ((3, 3), (5, 5)),
    ((132, 109), (21, 11)),
    ((563, 5), (3, 2)),
    ((81, 81), (90, 2)),
])
def test_dm_cycle(gshape, bshape):
    with core.shape_context(**test_context):
        nr, nc = gshape
        arr = np.arange(nr*nc, dtype=np.float64).reshape(nr, nc, order='F')

        dm = core.DistributedMatrix.from_global_array(arr, block_shape=bshape)
        assert (dm.to_global_array() == arr).all()

        dm2 = core.DistributedMatrix.from_global_array(arr, rank=0, block_shape=bshape)
        assert (dm2.local_array == dm.local_array).all()


def test_get_set():
    with core.shape_context(**test_context):
        dm = core.DistributedMatrix([7, 6])

        written = dm.set(2, 3, 5.0)
        assert written == dm.is_local(2, 3)

        # Exactly one process wrote the element
        assert comm.allreduce(int(written)) == 1

        # Reads elsewhere give zero
        assert comm.allreduce(dm.get(2, 3)) == 5.0
        assert dm[2, 3] == (5.0 if written else 0.0)

        dm[4, 5] = -1.0

        garr = dm.to_global_array()
        expected = np.zeros((7, 6))
        expected[2, 3] = 5.0
        expected[4, 5] = -1.0
        assert (garr == expected).all()


def test_get_bad_index():
    with core.shape_context(**test_context):
        dm = core.DistributedMatrix([4, 4])

        with pytest.raises(core.DeveloperException):
            dm.get(4, 0)

        with pytest.raises(core.DeveloperException):
            dm[0, 7] = 1.0

        with pytest.raises(core.PMatrixException):
            dm[1:2, 0]


def test_local_elements():
    with core.shape_context(**test_context):
        dm = core.DistributedMatrix([10, 7])

        elements = dm.local_elements()
        assert len(elements) == dm.local_array.size
        assert all(dm.is_local(r, c) for r, c in elements)

        # Every element is stored exactly once
        assert comm.allreduce(len(elements)) == 70

        for r, c in elements:
            dm[r, c] = 10 * r + c

        garr = dm.to_global_array()
        ri, ci = np.mgrid[:10, :7]
        assert (garr == 10 * ri + ci).all()


def test_local_diagonal_indices():
    with core.shape_context(**test_context):
        dm = core.DistributedMatrix([11, 11])

        gi, lri, lci = dm.local_diagonal_indices()
        dm.local_array[lri, lci] = gi

        garr = dm.to_global_array()
        assert (garr == np.diag(np.arange(11.0))).all()


def test_eye_trace():
    with core.shape_context(**test_context):
        dm = core.DistributedMatrix.eye(9, dtype=np.complex128)

        assert (dm.to_global_array() == np.eye(9)).all()
        assert dm.trace() == 9.0

        with pytest.raises(core.PMatrixException):
            core.DistributedMatrix([4, 5]).identity()


def test_identity_clears():
    with core.shape_context(**test_context):
        dm = core.DistributedMatrix.from_global_array(np.ones((6, 6)))
        dm.identity()

        assert (dm.to_global_array() == np.eye(6)).all()


def test_copy():
    with core.shape_context(**test_context):
        garr = np.arange(30.0).reshape(5, 6)
        dm = core.DistributedMatrix.from_global_array(garr)

        cp = dm.copy()
        cp.local_array[:] = 0

        assert (dm.to_global_array() == garr).all()
        assert (cp.to_global_array() == 0).all()
        assert cp.context is dm.context

        # Plain assignment is not a copy
        ref = dm
        ref.local_array[:] = 1
        assert (dm.to_global_array() == 1).all()


def test_add_sub():
    with core.shape_context(**test_context):
        gA = np.asfortranarray(np.random.standard_normal((7, 5)))
        gB = np.asfortranarray(np.random.standard_normal((7, 5)))

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)
        dB = core.DistributedMatrix.from_global_array(gB, rank=0)

        gC = (dA + dB).to_global_array(rank=0)
        gD = (dA - dB).to_global_array(rank=0)
        gN = (-dA).to_global_array(rank=0)

        dA += dB
        dA -= dB
        dA += dB
        gE = dA.to_global_array(rank=0)

        if rank == 0:
            assert allclose(gC, gA + gB)
            assert allclose(gD, gA - gB)
            assert allclose(gN, -gA)
            assert allclose(gE, gA + gB)


def test_add_mismatch():
    with core.shape_context(**test_context):
        dA = core.DistributedMatrix([4, 4])
        dB = core.DistributedMatrix([4, 5])

        with pytest.raises(core.PMatrixException):
            dA += dB

        with pytest.raises(core.PMatrixException):
            dA - dB

        assert (dA.local_array == 0).all()


def test_scale():
    with core.shape_context(**test_context):
        ms, ns = 5, 14

        gA = np.random.standard_normal((ms, ns)).astype(np.float64)
        gA = np.asfortranarray(gA)
        dA = core.DistributedMatrix.from_global_array(gA, rank=0)

        gB = np.random.standard_normal((ms, ns)).astype(np.float64)
        gB = np.asfortranarray(gB)
        dB = core.DistributedMatrix.from_global_array(gB, rank=0)

        gC = (dA * dB).to_global_array(rank=0)

        a = np.random.standard_normal(ns).astype(np.float64)
        comm.Bcast(a, root=0) # ensure all process have the same data
        gD = (dA * a).to_global_array(rank=0)

        alpha = 2.345
        gE = (dA * alpha).to_global_array(rank=0)
        gF = (alpha * dA).to_global_array(rank=0)
        gG = (dA / alpha).to_global_array(rank=0)

        dA *= 2.0
        dA /= 4.0
        gH = dA.to_global_array(rank=0)

        if rank == 0:
            assert allclose(gA * gB, gC)
            assert allclose(gA * a, gD)
            assert allclose(gA * alpha, gE)
            assert allclose(gA * alpha, gF)
            assert allclose(gA / alpha, gG)
            assert allclose(gA / 2.0, gH)

        with pytest.raises(core.PMatrixException):
            dA * np.ones(3)


def test_dot_norm():
    with core.shape_context(**test_context):
        gA = np.arange(12.0).reshape(3, 4)
        gB = np.ones((3, 4)) * 2.0

        dA = core.DistributedMatrix.from_global_array(gA)
        dB = core.DistributedMatrix.from_global_array(gB)

        assert np.isclose(dA.dot(dB), 2.0 * gA.sum())
        assert np.isclose(dA.squared_norm(), (gA**2).sum())
        assert np.isclose(dA.norm(), np.linalg.norm(gA))


def test_norm_complex():
    with core.shape_context(**test_context):
        gA = np.arange(12.0).reshape(4, 3) * (1.0 - 2.0J)
        dA = core.DistributedMatrix.from_global_array(gA)

        # The norm is always real and positive
        assert np.isclose(dA.squared_norm(), (np.abs(gA)**2).sum())
        assert np.isclose(dA.norm(), np.linalg.norm(gA))

        # dot does not conjugate
        assert np.isclose(dA.dot(dA), (gA * gA).sum())
        assert not np.isclose(dA.dot(dA), dA.squared_norm())
        assert np.isclose(dA.squared_norm(), np.real(dA.dot(dA.conj())))
