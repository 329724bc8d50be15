import math

import numpy as np
import pytest

from mpi4py import MPI

from pmatrix import core
import pmatrix.routines as rt


comm = MPI.COMM_WORLD

rank = comm.rank
size = comm.size

g = math.isqrt(size)

if g * g != size:
    raise Exception("Test needs a square number of processes.")

test_context = {"gridshape": (g, g), "block_shape": (4, 4)}

allclose = lambda a, b: np.allclose(a, b, rtol=1e-4, atol=1e-6)


def test_trans_D():
    ## Test transpose of a real double precision distributed matrix
    with core.shape_context(**test_context):
        m, n = 35, 23

        gA = np.random.standard_normal((m, n)).astype(np.float64)
        gA = np.asfortranarray(gA)

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)

        dAT = rt.transpose(dA)
        gAT = dAT.to_global_array(rank=0)

        assert dAT.global_shape == (n, m)

        if rank == 0:
            assert allclose(gAT, gA.T) # compare with numpy result


def test_trans_Z():
    ## Test transpose of a complex double precision distributed matrix
    with core.shape_context(**test_context):
        m, n = 37, 43

        gA = np.random.standard_normal((m, n)).astype(np.float64)
        gA = gA + 1.0J * np.random.standard_normal((m, n)).astype(np.float64)
        gA = np.asfortranarray(gA)

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)

        gAT = dA.T.to_global_array(rank=0)

        if rank == 0:
            assert allclose(gAT, gA.T) # compare with numpy result


def test_conj_D():
    ## Test complex conjugate of a real double precision distributed matrix
    with core.shape_context(**test_context):
        m, n = 24, 35

        gA = np.random.standard_normal((m, n)).astype(np.float64)
        gA = np.asfortranarray(gA)

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)

        gAC = rt.conj(dA).to_global_array(rank=0)

        if rank == 0:
            assert allclose(gAC, gA)


def test_conj_C():
    ## Test complex conjugate of a complex single precision distributed matrix
    with core.shape_context(**test_context):
        m, n = 24, 35

        gA = np.random.standard_normal((m, n)) + 1.0J * np.random.standard_normal((m, n))
        gA = np.asfortranarray(gA.astype(np.complex64))

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)

        gAC = dA.C.to_global_array(rank=0)

        if rank == 0:
            assert allclose(gAC, gA.conj())


def test_hconj_D():
    ## Test Hermitian conjugate of a real double precision distributed matrix
    with core.shape_context(**test_context):
        m, n = 14, 9

        gA = np.asfortranarray(np.random.standard_normal((m, n)))

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)

        gAH = rt.hconj(dA).to_global_array(rank=0)

        if rank == 0:
            assert allclose(gAH, gA.T)


def test_hconj_Z():
    ## Test Hermitian conjugate of a complex double precision distributed matrix
    with core.shape_context(**test_context):
        m, n = 31, 12

        gA = np.random.standard_normal((m, n)) + 1.0J * np.random.standard_normal((m, n))
        gA = np.asfortranarray(gA)

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)

        gAH = dA.H.to_global_array(rank=0)

        if rank == 0:
            assert allclose(gAH, gA.T.conj())


@pytest.mark.parametrize("dtype", [np.float32, np.float64, np.complex64, np.complex128])
def test_symmetrize(dtype):
    with core.shape_context(**test_context):
        n = 17

        gA = np.random.standard_normal((n, n))
        if np.iscomplexobj(dtype(0)):
            gA = gA + 1.0J * np.random.standard_normal((n, n))
        gA = np.asfortranarray(gA.astype(dtype))

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)

        dS = dA.symmetrize()

        # Done in place
        assert dS is dA

        gS = dA.to_global_array(rank=0)

        if rank == 0:
            assert allclose(gS, 0.5 * (gA + gA.T))
            assert allclose(gS, gS.T)


def test_symmetrize_symmetric():
    # A symmetric matrix is unchanged, however often it is symmetrized
    with core.shape_context(**test_context):
        gA = np.arange(36.0).reshape(6, 6)
        gA = gA + gA.T

        dA = core.DistributedMatrix.from_global_array(gA)
        rt.symmetrize(dA)
        rt.symmetrize(dA)

        assert np.allclose(dA.to_global_array(), gA)


def test_symmetrize_copy():
    with core.shape_context(**test_context):
        gA = np.triu(np.ones((5, 5)))

        dA = core.DistributedMatrix.from_global_array(gA)
        dS = rt.symmetrize(dA, overwrite_a=False)

        assert (dA.to_global_array() == gA).all()
        assert allclose(dS.to_global_array(), 0.5 * (gA + gA.T))


def test_symmetrize_nonsquare():
    with core.shape_context(**test_context):
        dA = core.DistributedMatrix([5, 6])

        with pytest.raises(core.PMatrixException):
            dA.symmetrize()
