"""
=======================================================
Lowlevel Interface (:mod:`~pmatrix.lowlevel`)
=======================================================

This module provides the distributed linear algebra routines that
:class:`~pmatrix.core.DistributedMatrix` is built on, with the calling
convention of PBLAS and ScaLAPACK: each distributed matrix is passed as its
local array, followed by its start indices and its descriptor, and each
workspace as an array followed by its length.

The routines call the PBLAS and ScaLAPACK library located by
:mod:`pmatrix.blacs`, with each process passing only the parts of the
matrices it owns. Without that library only grids of a single process can be
used; the whole matrix is then local, and the BLAS and LAPACK routines from
``scipy.linalg`` are used on it instead (see :mod:`pmatrix.lowlevel.serial`).

The routines are collective over the communicator of the grid the matrices
belong to, and return the status code on every process. As in ScaLAPACK a
status of ``-i`` means the ``i``-th argument was invalid, and a positive
status is a failure of the computation itself. Arguments are checked before
the library is called.

Argument Expansion
==================

Calling the routines directly is tedious, so they expand their arguments:
any :class:`~pmatrix.core.DistributedMatrix` passed as an argument
automatically gets expanded from ``(..., dA, ...)`` to the pattern
``(..., dA.local_array, 1, 1, dA.desc, ...)``.

Workspace is handled in two steps. Passing a :class:`WorkArray` in place of
the work arrays lets :meth:`Routine.plan` perform a workspace query, which
returns the lengths required. :meth:`Routine.execute` then allocates arrays of
those lengths and does the computation::

    dA = core.DistributedMatrix([N, N], dtype=np.complex128)
    # ... initialise matrix

    evals = np.zeros(N, dtype=np.float64)
    evecs = core.DistributedMatrix([N, N], dtype=np.complex128)

    args = ['V', 'U', N, dA, evals, evecs, lowlevel.WorkArray('Z', 'D', 'I')]

    sizes = lowlevel.pzheevd.plan(*args)
    info = lowlevel.pzheevd.execute(sizes, *args)

The sizes can be adjusted between the two calls. Calling the routine itself
does both steps at once.


Classes
=======

.. autosummary::
    :toctree: generated/

    WorkArray
    Routine


Helpers
=======

.. autosummary::
    :toctree: generated/

    backend
    evr_liwork


PBLAS Routines
==============

.. autosummary::
    :toctree: generated/

<_insert_pblas>


Scalapack Routines
==================

.. autosummary::
    :toctree: generated/

<_insert_scalapack>

"""

import functools
import logging

import numpy as np

from .. import blacs, core, util
from . import scalapack, serial


logger = logging.getLogger(__name__)


# Fields of the array descriptor
DTYPE_, CTXT_, M_, N_, MB_, NB_, RSRC_, CSRC_, LLD_ = range(9)


def _expand_work(args, sizes=None):
    ## Go through an argument list and expand any WorkArrays found. Without
    ## sizes they are expanded for a workspace query.

    if sizes is not None:
        sizes = list(sizes)

    exp_args = []
    for arg in args:
        if isinstance(arg, WorkArray):
            if sizes is None:
                arg = arg.to_query()
            else:
                nw = len(arg.types)
                arg, sizes = arg.to_compute(sizes[:nw]), sizes[nw:]
        exp_args.append(arg)

    if sizes:
        raise core.DeveloperException("%i workspace sizes left over." % len(sizes))

    return exp_args


def _expand_dm(args):
    ## Iterate through and expand any DistributedMatrices found.

    exp_args = []
    for arg in args:
        if isinstance(arg, core.DistributedMatrix):
            arg = [ arg.local_array, 1, 1, arg.desc ]
        exp_args.append(arg)
    return exp_args


def _status(rv):
    # Routines returning several values give the status last.
    return rv[-1] if isinstance(rv, tuple) else rv


class WorkArray(object):
    """Helper to deal with workspace entries.

    This class can be used to help with both workspace queries and allocating
    temporary arrays for the workspace. It should be passed to a routine, in
    the form ``WorkArray('Z', 'D')``, where ``Z`` and ``D`` are character
    codes giving the work array types. Possible values are ``I`` (integer),
    ``S`` (single precision float), ``D`` (double precision float), ``C``
    (single precision complex) and ``Z`` (double precision complex).

    Parameters
    ----------
    typecodes : selection of { 'I', 'S', 'D', 'C', 'Z' }
        Character codes listing the types of the work arrays required in
        order of their sequence in the call.
    """

    types = None
    np_types = None
    query_arrays = None

    def __init__(self, *args):
        """Create a set of work arrays.

        """

        _typemap = {'S': np.float32,
                    'C': np.complex64,
                    'D': np.float64,
                    'Z': np.complex128,
                    'I': np.int32}

        types = args

        self.types = types
        self.np_types = [ _typemap[type_] for type_ in self.types ]

    def to_query(self):
        """Return a list of arguments for each work array to do a workspace
        query.

        This will create length-1 arrays to hold the result of the query.
        """

        self.query_arrays = [ np.zeros(1, dtype=type_) for type_ in self.np_types ]

        query_list = [ [arr, -1] for arr in self.query_arrays ]

        return query_list

    def sizes(self):
        """The workspace lengths found by the last query."""

        if self.query_arrays is None:
            raise core.DeveloperException("Work query not yet performed.")

        return [ int(np.real(arr[0])) for arr in self.query_arrays ]

    def to_compute(self, sizes=None):
        """Return the arguments containing the temporary work arrays and their
        lengths.

        Parameters
        ----------
        sizes : list of integers, optional
            Length of each work array. If not given, the lengths found by a
            previous query are used.
        """

        wlens = self.sizes() if sizes is None else [ int(s) for s in sizes ]

        if len(wlens) != len(self.types):
            raise core.DeveloperException("Expected %i workspace sizes, got %i."
                                          % (len(self.types), len(wlens)))

        try:
            work_list = [ [ np.zeros(wlen, dtype=type_), wlen] for wlen, type_ in zip(wlens, self.np_types) ]
        except (MemoryError, ValueError) as e:
            raise core.BackendException("Could not allocate workspace of sizes %s: %s" % (wlens, e))

        return work_list


class Routine(object):
    """A distributed routine, with argument expansion.

    Parameters
    ----------
    name : string
        Name of the routine, e.g. ``pdgemm``.
    kernel : callable
        Function taking the fully expanded argument list, and the
        :class:`~pmatrix.core.ProcessGrid` of the matrices as `grid`.
    dtype : numpy type
        Type of the matrices the routine operates on.
    """

    def __init__(self, name, kernel, dtype):
        self.name = name
        self.kernel = kernel
        self.dtype = dtype

        self.__name__ = name
        self.__doc__ = getattr(kernel, 'func', kernel).__doc__

    def _call(self, grid, args):
        return self.kernel(*util.flatten(args), dtype=self.dtype, grid=grid)

    def plan(self, *args):
        """Perform the workspace query.

        Returns
        -------
        sizes : list of integers
            The workspace length for each work array, in call order. Empty if
            the routine takes no workspace.
        """

        works = [ arg for arg in args if isinstance(arg, WorkArray) ]

        if not works:
            return []

        rv = self._call(_grid(args), _expand_work(_expand_dm(args)))

        if _status(rv) != 0:
            raise core.BackendException("Workspace query for %s failed with info = %d" % (self.name, _status(rv)))

        sizes = util.flatten([ work.sizes() for work in works ])
        logger.debug("%s workspace sizes %s", self.name, sizes)

        return sizes

    def execute(self, sizes, *args):
        """Run the routine with work arrays of the given sizes.

        Returns whatever the routine returns, ending with its status.
        """

        return self._call(_grid(args), _expand_work(_expand_dm(args), sizes=sizes))

    def __call__(self, *args):
        return self.execute(self.plan(*args), *args)

    def __repr__(self):
        return "<Routine %s>" % self.name


## Helpers for the kernels

_trans_codes = ('N', 'T', 'C')


def _grid(args):
    # The grid of the first distributed matrix in the argument list.
    for arg in args:
        if isinstance(arg, core.DistributedMatrix):
            return arg.context

    raise core.DeveloperException("No distributed matrix in the arguments.")


def backend(grid):
    """The module doing the computation for matrices on `grid`.

    This is :mod:`~pmatrix.lowlevel.scalapack` whenever a ScaLAPACK library
    is loaded, and :mod:`~pmatrix.lowlevel.serial` for a grid of one process
    otherwise.
    """

    if blacs.available():
        return scalapack

    if grid.mpi_comm.size == 1:
        return serial

    raise core.BackendException("No ScaLAPACK library found (set %s to its path). "
                                "Without it only a single process is supported." % blacs.LIBRARY_ENV)


def _chk_matrix(a, i, j, desc, rows, cols, dtype, grid, pos):
    # Check a (matrix, i, j, desc) group starting at argument `pos`. Only
    # whole matrices on `grid` are supported.

    if a.dtype.type != dtype:
        return -pos
    if i != 1:
        return -(pos + 1)
    if j != 1:
        return -(pos + 2)
    if desc[M_] != rows or desc[N_] != cols or desc[CTXT_] != grid.handle:
        return -(pos + 3)

    return 0


def _first_error(*codes):
    for code in codes:
        if code != 0:
            return code
    return 0


## PBLAS

def _gemm(transa, transb, m, n, k, alpha, a, ia, ja, desca, b, ib, jb, descb,
          beta, c, ic, jc, descc, dtype=None, grid=None):
    """Matrix multiply, ``C = alpha * op(A) * op(B) + beta * C``.

    ``op(A)`` is `m` by `k`, ``op(B)`` is `k` by `n`. Each of `transa` and
    `transb` is one of ``'N'``, ``'T'`` or ``'C'``.
    """

    if transa not in _trans_codes:
        return -1
    if transb not in _trans_codes:
        return -2
    if m < 0:
        return -3
    if n < 0:
        return -4
    if k < 0:
        return -5

    ashape = (m, k) if transa == 'N' else (k, m)
    bshape = (k, n) if transb == 'N' else (n, k)

    info = _first_error(_chk_matrix(a, ia, ja, desca, ashape[0], ashape[1], dtype, grid, 7),
                        _chk_matrix(b, ib, jb, descb, bshape[0], bshape[1], dtype, grid, 11),
                        _chk_matrix(c, ic, jc, descc, m, n, dtype, grid, 16))
    if info != 0 or m == 0 or n == 0:
        return info

    return backend(grid).gemm(transa, transb, m, n, k, alpha, a, ia, ja, desca, b, ib, jb, descb,
                              beta, c, ic, jc, descc, dtype=dtype, grid=grid)


def _tran(m, n, alpha, a, ia, ja, desca, beta, c, ic, jc, descc, dtype=None, grid=None, conjugate=False):
    """Matrix transpose, ``C = beta * C + alpha * A^T``.

    `C` is `m` by `n` and `A` is `n` by `m`.
    """

    if m < 0:
        return -1
    if n < 0:
        return -2

    info = _first_error(_chk_matrix(a, ia, ja, desca, n, m, dtype, grid, 4),
                        _chk_matrix(c, ic, jc, descc, m, n, dtype, grid, 9))
    if info != 0 or m == 0 or n == 0:
        return info

    return backend(grid).tran(m, n, alpha, a, ia, ja, desca, beta, c, ic, jc, descc,
                              dtype=dtype, grid=grid, conjugate=conjugate)


## Symmetric/Hermitian eigensolvers

def evr_liwork(n, grid_shape):
    """Integer workspace to use for the MRRR eigensolvers on a grid.

    The workspace query of these routines can underestimate the integer
    workspace, so at least this much should be allocated.
    """
    nnp = max(n, grid_shape[0] * grid_shape[1] + 1, 4)

    return 12 * nnp + 2 * n


def _chk_eig(jobz, uplo, n, a, ia, ja, desca, z, iz, jz, descz, dtype, grid, apos, zpos):
    if jobz not in ('N', 'V'):
        return -1
    if uplo not in ('U', 'L'):
        return -(apos - 2)
    if n < 0:
        return -(apos - 1)

    info = _chk_matrix(a, ia, ja, desca, n, n, dtype, grid, apos)

    if info == 0 and jobz == 'V':
        info = _chk_matrix(z, iz, jz, descz, n, n, dtype, grid, zpos)

    return info


def _syevd(jobz, uplo, n, a, ia, ja, desca, w, z, iz, jz, descz,
           work, lwork, iwork, liwork, dtype=None, grid=None):
    """All eigenvalues (and eigenvectors) of a real symmetric matrix, by
    divide and conquer.
    """

    info = _chk_eig(jobz, uplo, n, a, ia, ja, desca, z, iz, jz, descz, dtype, grid, 4, 9)
    if info != 0:
        return info

    return backend(grid).syevd(jobz, uplo, n, a, ia, ja, desca, w, z, iz, jz, descz,
                               work, lwork, iwork, liwork, dtype=dtype, grid=grid)


def _heevd(jobz, uplo, n, a, ia, ja, desca, w, z, iz, jz, descz,
           work, lwork, rwork, lrwork, iwork, liwork, dtype=None, grid=None):
    """All eigenvalues (and eigenvectors) of a complex hermitian matrix, by
    divide and conquer.
    """

    info = _chk_eig(jobz, uplo, n, a, ia, ja, desca, z, iz, jz, descz, dtype, grid, 4, 9)
    if info != 0:
        return info

    return backend(grid).heevd(jobz, uplo, n, a, ia, ja, desca, w, z, iz, jz, descz,
                               work, lwork, rwork, lrwork, iwork, liwork, dtype=dtype, grid=grid)


def _chk_range(erange, n, vl, vu, il, iu):
    if erange not in ('A', 'V', 'I'):
        return -2
    if erange == 'V' and vl >= vu:
        return -10
    if erange == 'I':
        if il < 1 or il > max(1, n):
            return -11
        if iu < min(n, il) or iu > n:
            return -12
    return 0


def _syevr(jobz, erange, uplo, n, a, ia, ja, desca, vl, vu, il, iu, w, z, iz, jz, descz,
           work, lwork, iwork, liwork, dtype=None, grid=None):
    """Selected eigenvalues (and eigenvectors) of a real symmetric matrix, by
    the MRRR algorithm.

    Returns ``(m, nz, info)``, the number of eigenvalues found, the number of
    eigenvectors computed and the status.
    """

    info = _first_error(_chk_eig(jobz, uplo, n, a, ia, ja, desca, z, iz, jz, descz, dtype, grid, 5, 14),
                        _chk_range(erange, n, vl, vu, il, iu))
    if info != 0:
        return 0, 0, info

    return backend(grid).syevr(jobz, erange, uplo, n, a, ia, ja, desca, vl, vu, il, iu, w, z, iz, jz, descz,
                               work, lwork, iwork, liwork, dtype=dtype, grid=grid)


def _heevr(jobz, erange, uplo, n, a, ia, ja, desca, vl, vu, il, iu, w, z, iz, jz, descz,
           work, lwork, rwork, lrwork, iwork, liwork, dtype=None, grid=None):
    """Selected eigenvalues (and eigenvectors) of a complex hermitian matrix,
    by the MRRR algorithm.

    Returns ``(m, nz, info)``, the number of eigenvalues found, the number of
    eigenvectors computed and the status.
    """

    info = _first_error(_chk_eig(jobz, uplo, n, a, ia, ja, desca, z, iz, jz, descz, dtype, grid, 5, 14),
                        _chk_range(erange, n, vl, vu, il, iu))
    if info != 0:
        return 0, 0, info

    return backend(grid).heevr(jobz, erange, uplo, n, a, ia, ja, desca, vl, vu, il, iu, w, z, iz, jz, descz,
                               work, lwork, rwork, lrwork, iwork, liwork, dtype=dtype, grid=grid)


## Add routines to this modules dictionary.
_mod_dict = globals()

_types = {'s': np.float32, 'd': np.float64, 'c': np.complex64, 'z': np.complex128}

_pblas = {'psgemm': _gemm, 'pdgemm': _gemm, 'pcgemm': _gemm, 'pzgemm': _gemm,
          'pstran': _tran, 'pdtran': _tran,
          'pctranu': _tran, 'pztranu': _tran,
          'pctranc': functools.partial(_tran, conjugate=True),
          'pztranc': functools.partial(_tran, conjugate=True)}

_scl = {'pssyevd': _syevd, 'pdsyevd': _syevd, 'pcheevd': _heevd, 'pzheevd': _heevd,
        'pssyevr': _syevr, 'pdsyevr': _syevr, 'pcheevr': _heevr, 'pzheevr': _heevr}

_doc_pblas = ''
_doc_scl = ''

for rname, kernel in sorted(_pblas.items()):
    _mod_dict[rname] = Routine(rname, kernel, _types[rname[1]])
    _doc_pblas += '    ' + rname + '\n'

for rname, kernel in sorted(_scl.items()):
    _mod_dict[rname] = Routine(rname, kernel, _types[rname[1]])
    _doc_scl += '    ' + rname + '\n'

_mod_dict['__doc__'] = _mod_dict['__doc__'].replace('<_insert_pblas>', _doc_pblas)
_mod_dict['__doc__'] = _mod_dict['__doc__'].replace('<_insert_scalapack>', _doc_scl)
