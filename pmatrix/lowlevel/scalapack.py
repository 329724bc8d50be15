"""
Calls into the PBLAS and ScaLAPACK routines of the library found by
:mod:`pmatrix.blacs`.

Every process of the grid passes its own local array and the descriptor, so
no process ever holds more than its part of a matrix. Processes outside the
grid do not call the library; the status, and any replicated output such as
the eigenvalues, are broadcast to them from the head of the grid.

The kernels take the expanded argument lists of :mod:`pmatrix.lowlevel`,
which have been checked already, since an invalid argument makes the PBLAS
abort.
"""

import ctypes

import numpy as np

from .. import blacs, core, util


_prefix = {np.float32: 's', np.float64: 'd', np.complex64: 'c', np.complex128: 'z'}


def _int(x):
    return np.array([x], dtype=np.int32)


def _scalar(x, dtype):
    return np.array([x], dtype=dtype)


def _fcall(name, *args):
    # Call a Fortran routine. Every argument is passed by reference, and the
    # hidden lengths of the character arguments go at the end.

    func = getattr(blacs.library(), name + '_')
    func.restype = None

    cargs, lengths = [], []
    for arg in args:
        if isinstance(arg, str):
            cargs.append(ctypes.c_char_p(arg.encode('ascii')))
            lengths.append(ctypes.c_size_t(len(arg)))
        elif isinstance(arg, np.ndarray):
            if not arg.flags.f_contiguous:
                raise core.DeveloperException("Arrays passed to %s must be Fortran contiguous." % name)
            cargs.append(arg.ctypes.data_as(ctypes.c_void_p))
        else:
            raise core.DeveloperException("Cannot pass %r to %s." % (arg, name))

    func(*(cargs + lengths))


def _share(grid, info, *arrays):
    # Send the status and the replicated outputs from the head to the ranks
    # outside the grid. Returns the status.
    nrow, ncol = grid.grid_shape

    if grid.mpi_comm.size > nrow * ncol:
        for arr in (info,) + arrays:
            grid.mpi_comm.Bcast(arr, root=0)

    return int(info[0])


def _desc_args(a, ia, ja, desca):
    return [a, _int(ia), _int(ja), desca]


## PBLAS

def gemm(transa, transb, m, n, k, alpha, a, ia, ja, desca, b, ib, jb, descb,
         beta, c, ic, jc, descc, dtype=None, grid=None):

    if grid.is_active():
        _fcall('p%sgemm' % _prefix[dtype], transa, transb, _int(m), _int(n), _int(k),
               _scalar(alpha, dtype), *_desc_args(a, ia, ja, desca), *_desc_args(b, ib, jb, descb),
               _scalar(beta, dtype), *_desc_args(c, ic, jc, descc))

    return 0


def tran(m, n, alpha, a, ia, ja, desca, beta, c, ic, jc, descc, dtype=None, grid=None, conjugate=False):

    p = _prefix[dtype]

    if p in 'sd':
        name = 'p%stran' % p
    else:
        name = 'p%stranc' % p if conjugate else 'p%stranu' % p

    if grid.is_active():
        _fcall(name, _int(m), _int(n), _scalar(alpha, dtype), *_desc_args(a, ia, ja, desca),
               _scalar(beta, dtype), *_desc_args(c, ic, jc, descc))

    return 0


## Symmetric/Hermitian eigensolvers

def _query_heads(query, *works):
    # The first element of each work array carries the result of a query.
    return [ work[:1] for work in works ] if query else []


def syevd(jobz, uplo, n, a, ia, ja, desca, w, z, iz, jz, descz,
          work, lwork, iwork, liwork, dtype=None, grid=None):

    info = _int(0)

    if grid.is_active():
        _fcall('p%ssyevd' % _prefix[dtype], jobz, uplo, _int(n), *_desc_args(a, ia, ja, desca),
               w, *_desc_args(z, iz, jz, descz), work, _int(lwork), iwork, _int(liwork), info)

    query = lwork == -1 or liwork == -1

    return _share(grid, info, w, *_query_heads(query, work, iwork))


def heevd(jobz, uplo, n, a, ia, ja, desca, w, z, iz, jz, descz,
          work, lwork, rwork, lrwork, iwork, liwork, dtype=None, grid=None):

    info = _int(0)

    if grid.is_active():
        _fcall('p%sheevd' % _prefix[dtype], jobz, uplo, _int(n), *_desc_args(a, ia, ja, desca),
               w, *_desc_args(z, iz, jz, descz), work, _int(lwork), rwork, _int(lrwork),
               iwork, _int(liwork), info)

    query = lwork == -1 or lrwork == -1 or liwork == -1

    return _share(grid, info, w, *_query_heads(query, work, rwork, iwork))


def syevr(jobz, erange, uplo, n, a, ia, ja, desca, vl, vu, il, iu, w, z, iz, jz, descz,
          work, lwork, iwork, liwork, dtype=None, grid=None):

    info, m, nz = _int(0), _int(0), _int(0)
    rtype = util.real_equiv(dtype)

    if grid.is_active():
        _fcall('p%ssyevr' % _prefix[dtype], jobz, erange, uplo, _int(n), *_desc_args(a, ia, ja, desca),
               _scalar(vl, rtype), _scalar(vu, rtype), _int(il), _int(iu), m, nz,
               w, *_desc_args(z, iz, jz, descz), work, _int(lwork), iwork, _int(liwork), info)

    query = lwork == -1 or liwork == -1
    info = _share(grid, info, m, nz, w, *_query_heads(query, work, iwork))

    return int(m[0]), int(nz[0]), info


def heevr(jobz, erange, uplo, n, a, ia, ja, desca, vl, vu, il, iu, w, z, iz, jz, descz,
          work, lwork, rwork, lrwork, iwork, liwork, dtype=None, grid=None):

    info, m, nz = _int(0), _int(0), _int(0)
    rtype = util.real_equiv(dtype)

    if grid.is_active():
        _fcall('p%sheevr' % _prefix[dtype], jobz, erange, uplo, _int(n), *_desc_args(a, ia, ja, desca),
               _scalar(vl, rtype), _scalar(vu, rtype), _int(il), _int(iu), m, nz,
               w, *_desc_args(z, iz, jz, descz), work, _int(lwork), rwork, _int(lrwork),
               iwork, _int(liwork), info)

    query = lwork == -1 or lrwork == -1 or liwork == -1
    info = _share(grid, info, m, nz, w, *_query_heads(query, work, rwork, iwork))

    return int(m[0]), int(nz[0]), info
