"""
==============================================
Highlevel Interface (:mod:`~pmatrix.routines`)
==============================================

This module presents a functional interface to the operations of
:class:`~pmatrix.core.DistributedMatrix`, modelled on the API of
``scipy.linalg``.

Routines
========

.. autosummary::
    :toctree: generated/

    eigh
    dot
    symmetrize
    transpose
    conj
    hconj
    copy
    identity
    norm

"""

import numpy as np

from . import core, util


__all__ = ['eigh', 'dot', 'symmetrize', 'transpose', 'conj', 'hconj', 'copy', 'identity', 'norm']


def eigh(A, num_eigenvalues=None, eigvals_only=False, overwrite_a=True):
    """Find the eigen-solution of a symmetric/hermitian matrix.

    Only the upper triangle of `A` is used.

    Parameters
    ----------
    A : DistributedMatrix
        A complex hermitian, or real symmetric matrix to eigensolve. Must be
        on a square process grid.
    num_eigenvalues : integer, optional
        Only find the lowest `num_eigenvalues` eigenpairs. By default all
        are found.
    eigvals_only : bool, optional
        Whether to return only eigenvalues and no eigenvectors.
        (Default: both are returned)
    overwrite_a : boolean, optional
        By default the input matrix is destroyed, if set to False a
        copy is taken and operated on.

    Returns
    -------
    evals : np.ndarray
        The eigenvalues of the matrix, they are returned as a global
        numpy array of all values.
    evecs : DistributedMatrix
        The eigenvectors as a DistributedMatrix. When `num_eigenvalues` is
        set only the first `num_eigenvalues` columns hold eigenvectors.
    """

    # Check if matrix is square
    util.assert_square(A)

    A = A if overwrite_a else A.copy()

    evals, evecs = A.diagonalize(num_eigenvalues=num_eigenvalues)

    if eigvals_only:
        return evals

    return evals, evecs


def dot(A, B, transA='N', transB='N'):
    """Parallel matrix multiplication.

    Parameters
    ----------
    A, B : DistributedMatrix
        Matrices to multiply.
    transA, transB : ['N', 'T', 'C']
        Whether we should use a transpose, rather than A or B themselves.
        Either, do nothing ('N'), normal transpose ('T'), Hermitian transpose
        ('C').

    Returns
    -------
    C : DistributedMatrix
    """

    return A.prod(B, trans_this=transA, trans_that=transB)


def symmetrize(A, overwrite_a=True):
    r"""Symmetric part of a square matrix, :math:`(A + A^T) / 2`.

    Parameters
    ----------
    A : DistributedMatrix
    overwrite_a : boolean, optional
        By default `A` itself is symmetrized, if set to False a copy is taken
        and operated on.

    Returns
    -------
    S : DistributedMatrix
    """

    A = A if overwrite_a else A.copy()

    return A.symmetrize()


def transpose(A):
    """Transpose A."""
    return A.transpose()


def conj(A):
    """Complex conjugate A."""
    return A.conj()


def hconj(A):
    """Hermitian conjugate A."""
    return A.hconj()


def copy(A):
    """Copy A, including the local data."""
    return A.copy()


def identity(n, dtype=np.float64, block_shape=None, num_blocks=None, context=None):
    """Distributed `n` by `n` identity matrix.

    See :meth:`~pmatrix.core.DistributedMatrix.eye`.
    """
    return core.DistributedMatrix.eye(n, dtype=dtype, block_shape=block_shape,
                                      num_blocks=num_blocks, context=context)


def norm(A):
    """Frobenius norm of A."""
    return A.norm()
