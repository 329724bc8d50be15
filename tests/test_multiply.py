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

test_context = {"gridshape": (g, g), "block_shape": (3, 3)}

tolerance = {np.float32: 1e-4, np.float64: 1e-8, np.complex64: 1e-4, np.complex128: 1e-8}

op = {'N': lambda a: a, 'T': lambda a: a.T, 'C': lambda a: a.T.conj()}


def random_matrix(shape, dtype):
    gA = np.random.standard_normal(shape)
    if np.iscomplexobj(dtype(0)):
        gA = gA + 1.0J * np.random.standard_normal(shape)
    return np.asfortranarray(gA.astype(dtype))


@pytest.mark.parametrize("dtype", [np.float32, np.float64, np.complex64, np.complex128])
@pytest.mark.parametrize("transA,transB", [(ta, tb) for ta in 'NTC' for tb in 'NTC'])
def test_prod(dtype, transA, transB):
    with core.shape_context(**test_context):
        m, n, k = 13, 7, 9

        gA = random_matrix((m, k) if transA == 'N' else (k, m), dtype)
        gB = random_matrix((k, n) if transB == 'N' else (n, k), dtype)

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)
        dB = core.DistributedMatrix.from_global_array(gB, rank=0)

        dC = dA.prod(dB, trans_this=transA, trans_that=transB)

        # Result is bound to the left matrix
        assert dC.global_shape == (m, n)
        assert dC.block_shape == dA.block_shape
        assert dC.context is dA.context
        assert dC.dtype == dtype

        gC = dC.to_global_array(rank=0)

        if rank == 0:
            tol = tolerance[dtype]
            assert np.allclose(gC, np.dot(op[transA](gA), op[transB](gB)), rtol=tol, atol=tol)


def test_dot_routine():
    with core.shape_context(**test_context):
        gA = random_matrix((10, 4), np.float64)
        gB = random_matrix((10, 6), np.float64)

        dA = core.DistributedMatrix.from_global_array(gA, rank=0)
        dB = core.DistributedMatrix.from_global_array(gB, rank=0)

        gC = rt.dot(dA, dB, transA='T').to_global_array(rank=0)
        gD = (dA.T @ dB).to_global_array(rank=0)

        if rank == 0:
            assert np.allclose(gC, np.dot(gA.T, gB))
            assert np.allclose(gD, np.dot(gA.T, gB))


def test_prod_mixed_blocking():
    with core.shape_context(**test_context):
        gA = random_matrix((8, 11), np.float64)
        gB = random_matrix((11, 5), np.float64)

        dA = core.DistributedMatrix.from_global_array(gA, rank=0, block_shape=(2, 4))
        dB = core.DistributedMatrix.from_global_array(gB, rank=0, block_shape=(5, 1))

        dC = dA.prod(dB)
        assert dC.block_shape == (2, 4)

        gC = dC.to_global_array(rank=0)

        if rank == 0:
            assert np.allclose(gC, np.dot(gA, gB))


def test_identity_product():
    with core.shape_context(**test_context):
        dI = core.DistributedMatrix.eye(10)

        dI2 = dI.prod(dI)

        assert (dI2.to_global_array() == np.eye(10)).all()


def test_prod_mismatch():
    with core.shape_context(**test_context):
        dA = core.DistributedMatrix([4, 5])
        dB = core.DistributedMatrix([4, 5])

        with pytest.raises(core.PMatrixException):
            dA.prod(dB)

        # Works after transposing the right matrix
        assert dA.prod(dB, trans_that='T').global_shape == (4, 4)

        with pytest.raises(core.PMatrixException):
            dA.prod(dB, trans_this='X')

        with pytest.raises(core.PMatrixException):
            dA.prod(core.DistributedMatrix([5, 5], dtype=np.complex128))
