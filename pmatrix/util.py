"""
================================================
pmatrix Utilities (:mod:`~pmatrix.util`)
================================================


Routines
========

.. autosummary::
    :toctree: generated/

    flatten
    assert_square
    real_equiv
    fatal
    abort_on_error
"""

import contextlib
import logging

import numpy as np

from mpi4py import MPI

from . import core


logger = logging.getLogger(__name__)


def flatten(x):
    """Flatten a set of nested list and tuples.

    Returns a single, flat list which contains all elements retrieved
    from the sequence and all recursively contained sub-sequences
    (iterables).

    Parameters
    ----------
    x : list or tuple
        Set of lists and tuples to flatten.

    Returns
    -------
    flat : list or tuple

    Examples
    --------

    >>> flatten([[[1,2,3], (42,None)], [4,5], [6], 7])
    [1, 2, 3, 42, None, 4, 5, 6, 7]"""

    result = []
    for el in x:
        if isinstance(el, (list, tuple)):
            result.extend(flatten(el))
        else:
            result.append(el)
    return result


def assert_square(A):
    """Assert that a distributed matrix is square.
    """
    Alist = flatten([A])
    for A in Alist:

        gs = A.global_shape
        if gs[0] != gs[1]:
            raise core.PMatrixException("Matrix must be square (has dimensions %i x %i)." % (gs[0], gs[1]))


def real_equiv(dtype):
    ## Return the real datatype with the same precision as dtype.
    if dtype == np.float32 or dtype == np.complex64:
        return np.float32

    if dtype == np.float64 or dtype == np.complex128:
        return np.float64

    raise core.PMatrixException("Unsupported data type.")


def fatal(exc, comm=None, errcode=1):
    """Report an error once, and stop every process.

    Misuse errors (:class:`~pmatrix.core.PMatrixException`) and internal
    errors are reported with different headings. The message is logged on
    rank 0 only. This is collective: all processes wait for each other before
    exiting.

    Parameters
    ----------
    exc : Exception
        The error to report.
    comm : mpi4py.MPI.Comm, optional
        Defaults to ``MPI.COMM_WORLD``.
    errcode : integer, optional
        Exit status.
    """

    if comm is None:
        comm = MPI.COMM_WORLD

    if comm.rank == 0:
        if isinstance(exc, core.PMatrixException):
            logger.error("Error!\n%s", exc)
        else:
            logger.error("Developer Error:\n%s", exc)

    comm.Barrier()

    raise SystemExit(errcode) from exc


@contextlib.contextmanager
def abort_on_error(comm=None, errcode=1):
    """Context manager turning pmatrix errors into a clean exit.

    Every process must raise the error, which is the case for argument errors
    and backend failures, as these are detected identically everywhere.
    Example::

        with abort_on_error():
            evals, evecs = dm.diagonalize()
    """

    try:
        yield
    except (core.PMatrixException, core.DeveloperException) as e:
        fatal(e, comm=comm, errcode=errcode)
