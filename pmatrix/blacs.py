"""
===========================================
BLACS (:mod:`pmatrix.blacs`)
===========================================

.. currentmodule:: pmatrix.blacs

Access to the ScaLAPACK shared library, and the few BLACS calls needed to
set up a process grid.

The library is located on first use. The path in the environment variable
``PMATRIX_SCALAPACK`` is used if set, otherwise the usual library names are
searched for. When no library can be found, the distributed routines in
:mod:`pmatrix.lowlevel` can only run on a single process.


Routines
========

.. autosummary::
    :toctree: generated/

    library
    available
    sys2blacs_handle
    gridinit
    gridinfo
    gridexit

"""

import ctypes
import ctypes.util
import logging
import os

from mpi4py import MPI

from . import core


logger = logging.getLogger(__name__)


LIBRARY_ENV = 'PMATRIX_SCALAPACK'

_library_names = ['scalapack', 'scalapack-openmpi', 'scalapack-mpich']

_lib = None
_searched = False


def _find_library():
    path = os.environ.get(LIBRARY_ENV)

    if path:
        return path

    for name in _library_names:
        path = ctypes.util.find_library(name)
        if path:
            return path

    return None


def library():
    """The ScaLAPACK library as a :class:`ctypes.CDLL`, or `None` if there
    is none.

    The library is loaded with ``RTLD_GLOBAL`` so that the BLACS and BLAS it
    links against are shared with MPI.
    """

    global _lib, _searched

    if not _searched:
        _searched = True

        path = _find_library()

        if path is None:
            logger.debug("No ScaLAPACK library found.")
        else:
            try:
                _lib = ctypes.CDLL(path, mode=ctypes.RTLD_GLOBAL)
            except OSError as e:
                raise core.BackendException("Could not load ScaLAPACK library %s: %s" % (path, e))

            logger.debug("Loaded ScaLAPACK library %s.", path)

    return _lib


def available():
    """Whether a ScaLAPACK library has been found."""
    return library() is not None


def _required():
    lib = library()

    if lib is None:
        raise core.BackendException("No ScaLAPACK library found, set %s to its path." % LIBRARY_ENV)

    return lib


def sys2blacs_handle(comm):
    """Turn an MPI communicator into a BLACS system context."""

    lib = _required()

    # MPI_Comm is an integer in MPICH and a pointer in Open MPI
    if MPI._sizeof(MPI.Comm) == ctypes.sizeof(ctypes.c_int):
        handle = ctypes.c_int(MPI._handleof(comm))
    else:
        handle = ctypes.c_void_p(MPI._handleof(comm))

    lib.Csys2blacs_handle.restype = ctypes.c_int

    return lib.Csys2blacs_handle(handle)


def gridinit(ctxt, nprow, npcol):
    """Create a row major BLACS grid over the system context `ctxt`.

    Collective over the processes of `ctxt`. Returns the new context, which
    is ``-1`` on processes left out of the grid.
    """

    lib = _required()

    c = ctypes.c_int(ctxt)
    lib.Cblacs_gridinit(ctypes.byref(c), ctypes.c_char_p(b'Row'),
                        ctypes.c_int(nprow), ctypes.c_int(npcol))

    return c.value


def gridinfo(ctxt):
    """Return ``(nprow, npcol, myrow, mycol)`` for the context `ctxt`.

    All four are ``-1`` if this process is not part of the grid.
    """

    lib = _required()

    info = [ ctypes.c_int(-1) for i in range(4) ]
    lib.Cblacs_gridinfo(ctypes.c_int(ctxt), *[ ctypes.byref(i) for i in info ])

    return tuple(i.value for i in info)


def gridexit(ctxt):
    """Release the BLACS context `ctxt`."""

    lib = _required()
    lib.Cblacs_gridexit(ctypes.c_int(ctxt))
