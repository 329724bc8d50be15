"""
Single process fallback for the routines in :mod:`pmatrix.lowlevel`.

It is only used when no ScaLAPACK library is loaded and the grid holds one
MPI process. The local array of every matrix is then the whole matrix, and
the BLAS and LAPACK routines from ``scipy.linalg`` work on it directly.

The kernels take the same expanded arguments as the ScaLAPACK routines, and
expect them to have been checked already. Workspace queries report the
LAPACK minimum workspace.
"""

import numpy as np

from scipy.linalg import get_blas_funcs, get_lapack_funcs


_trans_codes = {'N': 0, 'T': 1, 'C': 2}


def gemm(transa, transb, m, n, k, alpha, a, ia, ja, desca, b, ib, jb, descb,
         beta, c, ic, jc, descc, dtype=None, grid=None):

    if k == 0:
        c *= beta
    else:
        gemm = get_blas_funcs('gemm', (a, b, c))
        c[:] = gemm(alpha, a, b, beta=beta, c=c,
                    trans_a=_trans_codes[transa], trans_b=_trans_codes[transb])

    return 0


def tran(m, n, alpha, a, ia, ja, desca, beta, c, ic, jc, descc, dtype=None, grid=None, conjugate=False):

    at = a.T.conj() if conjugate else a.T
    c[:] = beta * c + alpha * at

    return 0


## Symmetric/Hermitian eigensolvers

def _evd_sizes(n, jobz, cmplx):
    # Minimum workspace of the divide and conquer eigensolvers, in call
    # order: (work, iwork) when real, (work, rwork, iwork) when complex.
    if cmplx:
        if jobz == 'V':
            return [max(1, 2*n + n**2), max(1, 1 + 5*n + 2*n**2), max(1, 3 + 5*n)]
        return [max(1, n + 1), max(1, n), 1]

    if jobz == 'V':
        return [max(1, 1 + 6*n + 2*n**2), max(1, 3 + 5*n)]
    return [max(1, 2*n + 1), 1]


def _evr_sizes(n, cmplx):
    # Minimum workspace of the MRRR eigensolvers, same ordering as above.
    if cmplx:
        return [max(1, 2*n), max(1, 24*n), max(1, 10*n)]
    return [max(1, 26*n), max(1, 10*n)]


def _chk_work(have, need, positions):
    # Compare the supplied workspace lengths with the minimum required.
    for h, nd, pos in zip(have, need, positions):
        if h < nd:
            return -pos
    return 0


def _lapack_kwargs(names, lengths):
    return dict(zip(names, [ int(l) for l in lengths ]))


def _solve_evd(jobz, uplo, n, a, w, z, work_kw):

    evd = get_lapack_funcs('heevd' if np.iscomplexobj(a) else 'syevd', (a,))
    wg, zg, info = evd(a, compute_v=int(jobz == 'V'), lower=int(uplo == 'L'), **work_kw)

    if info != 0:
        return int(info)

    w[:n] = wg

    if jobz == 'V':
        z[:] = zg

    return 0


def syevd(jobz, uplo, n, a, ia, ja, desca, w, z, iz, jz, descz,
          work, lwork, iwork, liwork, dtype=None, grid=None):

    need = _evd_sizes(n, jobz, False)

    if lwork == -1 or liwork == -1:
        work[0], iwork[0] = need
        return 0

    info = _chk_work([lwork, liwork], need, [14, 16])
    if info != 0 or n == 0:
        return info

    return _solve_evd(jobz, uplo, n, a, w, z, _lapack_kwargs(['lwork', 'liwork'], [lwork, liwork]))


def heevd(jobz, uplo, n, a, ia, ja, desca, w, z, iz, jz, descz,
          work, lwork, rwork, lrwork, iwork, liwork, dtype=None, grid=None):

    need = _evd_sizes(n, jobz, True)

    if lwork == -1 or lrwork == -1 or liwork == -1:
        work[0], rwork[0], iwork[0] = need
        return 0

    info = _chk_work([lwork, lrwork, liwork], need, [14, 16, 18])
    if info != 0 or n == 0:
        return info

    return _solve_evd(jobz, uplo, n, a, w, z,
                      _lapack_kwargs(['lwork', 'lrwork', 'liwork'], [lwork, lrwork, liwork]))


def _solve_evr(jobz, erange, uplo, n, a, vl, vu, il, iu, w, z, work_kw):
    # The eigenvectors found fill the leading columns of z.

    evr = get_lapack_funcs('heevr' if np.iscomplexobj(a) else 'syevr', (a,))

    kwargs = dict(compute_v=int(jobz == 'V'), range=erange, lower=int(uplo == 'L'), **work_kw)
    if erange == 'V':
        kwargs.update(vl=vl, vu=vu)
    elif erange == 'I':
        kwargs.update(il=il, iu=iu)

    wg, zv, m, isuppz, info = evr(a, **kwargs)

    if info != 0:
        return 0, 0, int(info)

    m = int(m)
    w[:m] = wg[:m]

    if jobz == 'V':
        z[:, :m] = zv[:, :m]

    return m, (m if jobz == 'V' else 0), 0


def syevr(jobz, erange, uplo, n, a, ia, ja, desca, vl, vu, il, iu, w, z, iz, jz, descz,
          work, lwork, iwork, liwork, dtype=None, grid=None):

    need = _evr_sizes(n, False)

    if lwork == -1 or liwork == -1:
        work[0], iwork[0] = need
        return 0, 0, 0

    info = _chk_work([lwork, liwork], need, [19, 21])
    if info != 0 or n == 0:
        return 0, 0, info

    return _solve_evr(jobz, erange, uplo, n, a, vl, vu, il, iu, w, z,
                      _lapack_kwargs(['lwork', 'liwork'], [lwork, liwork]))


def heevr(jobz, erange, uplo, n, a, ia, ja, desca, vl, vu, il, iu, w, z, iz, jz, descz,
          work, lwork, rwork, lrwork, iwork, liwork, dtype=None, grid=None):

    need = _evr_sizes(n, True)

    if lwork == -1 or lrwork == -1 or liwork == -1:
        work[0], rwork[0], iwork[0] = need
        return 0, 0, 0

    info = _chk_work([lwork, lrwork, liwork], need, [19, 21, 23])
    if info != 0 or n == 0:
        return 0, 0, info

    return _solve_evr(jobz, erange, uplo, n, a, vl, vu, il, iu, w, z,
                      _lapack_kwargs(['lwork', 'lrwork', 'liwork'], [lwork, lrwork, liwork]))
