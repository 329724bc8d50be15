"""
===========================================
Core (:mod:`pmatrix.core`)
===========================================

.. currentmodule:: pmatrix.core

This module contains the core of `pmatrix`: a set of routines and classes to
describe the arrangement of MPI processes into a 2D grid, a registry of those
grids; and a class which holds a block cyclic distributed matrix for
computation.


Routines
========

.. autosummary::
    :toctree: generated/

    initmpi
    shape_context
    get_grid
    lookup_context
    release_grids


Classes
=======

.. autosummary::
    :toctree: generated/

    ProcessGrid
    DistributedMatrix
    PMatrixException
    DeveloperException
    BackendException

"""

import contextlib
import itertools
import logging
import math
from numbers import Number

import numpy as np

from mpi4py import MPI

from . import blockcyclic


__all__ = ['PMatrixException', 'DeveloperException', 'BackendException',
           'ProcessGrid', 'DistributedMatrix',
           'initmpi', 'shape_context', 'get_grid', 'lookup_context', 'release_grids']


logger = logging.getLogger(__name__)


class PMatrixException(Exception):
    """Error in using pmatrix."""
    pass


class DeveloperException(Exception):
    """Internal error in pmatrix, indicating a bug rather than misuse."""
    pass


class BackendException(DeveloperException):
    """Error in calling the linear algebra backend."""
    pass


_context = None
_block_shape = None

# Registry of process grids, by (communicator, shape) and by context id.
_grids = {}
_contexts = {}
_context_ids = itertools.count()


# Map numpy type into MPI type
typemap = { np.float32: MPI.FLOAT,
            np.float64: MPI.DOUBLE,
            np.complex64: MPI.COMPLEX,
            np.complex128: MPI.DOUBLE_COMPLEX }


def _chk_2d_size(shape, positive=True):
    # Check that the shape describes a valid 2D grid. Zero shape not allowed when positive = True.

    if shape is None or len(shape) != 2:
        return False

    if positive:
        if shape[0] <= 0 or shape[1] <= 0:
            return False
    else:
        if shape[0] < 0 or shape[1] < 0:
            return False

    return True


def _resolve_grid_shape(gridshape, size):
    # Turn a requested grid shape into a concrete one for `size` processes. A
    # zero (or None) entry is derived from the other one; with neither given
    # we need a square number of processes.

    nrow, ncol = (0, 0) if gridshape is None else [int(g) for g in gridshape]

    if nrow < 0 or ncol < 0:
        raise PMatrixException("Grid shape invalid (%i x %i)." % (nrow, ncol))

    if nrow and not ncol:
        ncol = size // nrow
    elif ncol and not nrow:
        nrow = size // ncol
    elif not nrow and not ncol:
        nrow = ncol = math.isqrt(size)

        if nrow * ncol != size:
            raise PMatrixException("A default (square) process grid needs a square number "
                                   "of MPI processes, have %i." % size)

    if nrow * ncol > size:
        raise PMatrixException("Requested a %i x %i process grid, but there are only %i MPI processes."
                               % (nrow, ncol, size))

    if nrow * ncol == 0:
        raise PMatrixException("Grid shape invalid (%i x %i)." % (nrow, ncol))

    return (nrow, ncol)


def initmpi(gridshape=None, block_shape=None, comm=None):
    r"""Set the default process grid and blocking on the current process.

    This is collective over the communicator if the grid has not been
    created yet.

    Parameters
    ----------
    gridshape : array_like, optional
        A two element list (or other tuple etc), containing the requested
        shape for the process grid e.g. `[nprow, npcol]`. A zero entry is
        derived from the number of processes. If `None` a square grid is used.
    block_shape : array_like, optional
        The default blocksize for new arrays. A two element, [`brow,
        bcol]` list. If `None`, matrices split each side into one block per
        grid row/column.
    comm : mpi4py.MPI.Comm, optional
        The communicator to build the grid over. Defaults to
        ``MPI.COMM_WORLD``.
    """

    global _context, _block_shape

    # Setup the default grid
    _context = get_grid(gridshape, comm=comm)

    # Set default blocksize
    _block_shape = tuple(block_shape) if block_shape is not None else None


@contextlib.contextmanager
def shape_context(gridshape=None, block_shape=None, comm=None):
    r"""Temporarily change the default process grid and blocking.

    Takes the same arguments as :func:`initmpi`, and yields the
    :class:`ProcessGrid` in use. The previous defaults are restored on exit.
    """

    global _context, _block_shape

    saved = (_context, _block_shape)

    try:
        initmpi(gridshape, block_shape=block_shape, comm=comm)
        yield _context
    finally:
        _context, _block_shape = saved


def _default_context():
    global _context

    if _context is None:
        _context = get_grid(None)

    return _context


def _resolve_context(context):
    # Accept None (the default grid), a ProcessGrid or a context id
    if context is None:
        return _default_context()
    elif not isinstance(context, ProcessGrid):
        return lookup_context(context)

    return context


def get_grid(gridshape=None, comm=None):
    """Fetch the process grid of the given shape, creating it on first use.

    There is at most one grid per communicator and shape. Creating a grid is
    collective over `comm`.

    Parameters
    ----------
    gridshape : array_like, optional
        Requested grid shape, see :func:`initmpi`.
    comm : mpi4py.MPI.Comm, optional
        Defaults to ``MPI.COMM_WORLD``.

    Returns
    -------
    grid : ProcessGrid
    """

    if comm is None:
        comm = MPI.COMM_WORLD

    shape = _resolve_grid_shape(gridshape, comm.size)
    key = (comm.py2f(), shape)

    grid = _grids.get(key)

    if grid is None:
        grid = ProcessGrid(shape, comm=comm)
        _grids[key] = grid
    else:
        logger.debug("Reusing process grid %r.", grid)

    return grid


def lookup_context(ctxt):
    """Return the :class:`ProcessGrid` with context id `ctxt`."""

    try:
        return _contexts[int(ctxt)]
    except KeyError:
        raise PMatrixException("No process grid with context %i." % ctxt)


def release_grids():
    """Forget all process grids, and the defaults. Call at shutdown only.

    The BLACS contexts of the grids are released too.
    """

    from . import blacs

    global _context, _block_shape

    for grid in _contexts.values():
        if grid.blacs_context is not None and grid.is_active():
            blacs.gridexit(grid.blacs_context)

    _grids.clear()
    _contexts.clear()
    _context = None
    _block_shape = None


class ProcessGrid(object):
    r"""Stores information about the 2D arrangement of MPI processes.

    Processes are placed on the grid in row major order, i.e. rank ``r`` is at
    ``(r // npcol, r % npcol)``. If the grid has fewer cells than there are
    processes, the remaining ranks are not part of the grid: their position
    is ``(-1, -1)`` and they store no matrix elements, but they must still
    take part in every collective operation on the communicator.

    When a ScaLAPACK library is available the grid is also a BLACS grid, and
    holds its BLACS context.

    Parameters
    ----------
    grid_shape : array_like, optional
        A two element list (or other tuple etc), containing the
        requested shape for the process grid e.g. [nprow, npcol]. A zero
        entry is derived from the number of processes; `None` gives a square
        grid.

    comm : mpi4py.MPI.Comm, optional
        The MPI communicator to create the grid for. If comm=None,
        then use MPI.COMM_WORLD instead.

    Attributes
    ----------
    grid_shape
    grid_position
    mpi_comm
    context
    blacs_context
    handle
    all_grid_positions
    all_mpi_ranks
    """

    _grid_shape = (1, 1)

    @property
    def grid_shape(self):
        """Process grid shape."""
        return self._grid_shape


    _grid_position = (0, 0)

    @property
    def grid_position(self):
        """Process grid position."""
        return self._grid_position


    _mpi_comm = None

    @property
    def mpi_comm(self):
        """MPI Communicator for this ProcessGrid."""
        return self._mpi_comm


    _context = None

    @property
    def context(self):
        """Integer id of this grid, identical on every process."""
        return self._context


    _blacs_context = None

    @property
    def blacs_context(self):
        """BLACS context handle, `None` when no ScaLAPACK library is loaded.

        It is ``-1`` on processes outside the grid.
        """
        return self._blacs_context


    @property
    def handle(self):
        """The context written into array descriptors: the BLACS context if
        there is one, otherwise the grid id."""
        return self._context if self._blacs_context is None else self._blacs_context


    @property
    def all_grid_positions(self):
        """Returns shape (mpi_comm_size,2) array, such that (arr[i,0], arr[i,1]) gives the grid position of mpi task i."""
        return self._all_grid_positions


    @property
    def all_mpi_ranks(self):
        """Inverse of all_grid_positions: returns 2D array such that arr[i,j] gives the mpi rank at grid position (i,j)."""
        return self._all_mpi_ranks


    def __init__(self, grid_shape=None, comm=None):
        """Construct a process grid for the current process.
        """

        from . import blacs

        # MPI setup
        if comm is None:
            comm = MPI.COMM_WORLD

        self._mpi_comm = comm

        # Grid shape setup
        self._grid_shape = _resolve_grid_shape(grid_shape, comm.size)

        nrow, ncol = self._grid_shape

        if blacs.available():
            # Initialise BLACS context
            ctxt = blacs.sys2blacs_handle(comm)
            self._blacs_context = blacs.gridinit(ctxt, nrow, ncol)

            blacs_info = blacs.gridinfo(self._blacs_context)
            blacs_size, blacs_pos = blacs_info[:2], blacs_info[2:]

            # Check we got the gridsize we wanted
            if blacs_size[0] >= 0 and blacs_size != self.grid_shape:
                raise DeveloperException("BLACS did not give requested gridsize (requested %s, got %s)."
                                         % (repr(self.grid_shape), repr(blacs_size)))

            self._grid_position = tuple(blacs_pos)
        elif comm.rank < nrow * ncol:
            self._grid_position = (comm.rank // ncol, comm.rank % ncol)
        else:
            self._grid_position = (-1, -1)

        # Grids are created collectively and in the same order everywhere, so
        # a running count gives the same id on every process.
        self._context = next(_context_ids)
        _contexts[self._context] = self

        t = np.array(self.grid_position, dtype=np.int64)
        assert t.shape == (2,)
        self._all_grid_positions = np.zeros((self.mpi_comm.size, 2), dtype=t.dtype)
        self.mpi_comm.Allgather(t, self._all_grid_positions)

        # Compute all_mpi_ranks from all_grid_positions
        active = self._all_grid_positions[:, 0] >= 0
        self._all_mpi_ranks = np.full(self.grid_shape, -1, dtype=int)
        self._all_mpi_ranks[self._all_grid_positions[active, 0],
                            self._all_grid_positions[active, 1]] = np.arange(self.mpi_comm.size)[active]

        logger.debug("Created process grid %r.", self)


    def is_active(self):
        """Whether this process is part of the grid."""
        return self._grid_position[0] >= 0


    def is_head(self):
        """Whether this is the process that reports for the grid."""
        return self.mpi_comm.rank == 0


    def __repr__(self):
        return ("ProcessGrid(context=%i, grid_shape=%s, grid_position=%s, size=%i)"
                % (self.context, self.grid_shape, self.grid_position, self.mpi_comm.size))


class DistributedMatrix(object):
    r"""A matrix distributed over multiple MPI processes.

    Parameters
    ----------
    global_shape : list of integers
        The size of the global matrix eg. ``[Nr, Nc]``.
    dtype : np.dtype, optional
        The datatype of the array. See `Notes`_ for the supported types.
    block_shape: list of integers, optional
        The blocking size, packed as ``[Br, Bc]``. Takes precedence over
        `num_blocks`.
    num_blocks: list of integers, optional
        The number of blocks to split the rows and columns into, packed as
        ``[Nbr, Nbc]``. A zero entry means one block per row (column) of the
        process grid. Counts larger than the matrix side are clamped to it.
        If neither `block_shape` or `num_blocks` is given, the default
        blocking set via :func:`initmpi` is used if any, otherwise one block
        per row/column of the process grid.
    context : ProcessGrid or integer, optional
        The process grid, or its integer context id. If not set uses the
        default (a square grid unless changed with :func:`initmpi`).
        Matrices which are combined in an operation must share a grid shape.

    Attributes
    ----------
    local_array
    desc
    context
    layout
    dtype
    mpi_dtype
    sc_dtype
    global_shape
    local_shape
    block_shape

    Methods
    -------
    empty_like
    empty_trans
    eye
    copy
    get
    set
    prod
    symmetrize
    diagonalize
    dot
    norm
    from_global_array
    to_global_array


    .. _notes:

    Notes
    -----
    The type of the array must be specified with the standard numpy types. A
    :class:`DistributedMatrix` has properties for fetching the equivalent
    ``MPI`` (with :attr:`mpi_dtype`) and backend types (which is a
    character given by :attr:`sc_dtype`).

    =================  ======================  ============  ===============================
    Numpy type         MPI type                Backend type  Description
    =================  ======================  ============  ===============================
    ``np.float32``     ``MPI.FLOAT``           ``S``         Single precision float
    ``np.float64``     ``MPI.DOUBLE``          ``D``         Double precision float
    ``np.complex64``   ``MPI.COMPLEX``         ``C``         Single precision complex number
    ``np.complex128``  ``MPI.DOUBLE_COMPLEX``  ``Z``         Double precision complex number
    =================  ======================  ============  ===============================

    Element access
    --------------

    Elements are addressed by their global coordinates, but only the process
    that owns an element holds it::

        dm = DistributedMatrix((10, 10))

        # Only the owner of (2, 3) stores the value, everyone else skips it
        dm[2, 3] = 5.0

        # Reads from anywhere else give zero
        x = dm[2, 3]

    To fill a matrix without testing every element, loop over
    :meth:`local_elements` or use :meth:`indices`.

    Copying
    -------

    Assigning a :class:`DistributedMatrix` to a new name does not copy it. Use
    :meth:`copy` to get an independent matrix on the same grid.
    """

    @property
    def local_array(self):
        """The local, block-cyclic packed segment of the matrix.

        This is an ndarray and is readonly. However, only the
        reference is readonly, the array itself can be modified in
        place.
        """
        return self._local_array


    @property
    def desc(self):
        """The array descriptor passed to the backend. Returned as an integer
        ndarray and is readonly.

        The fields are ``[dtype, context, M, N, MB, NB, RSRC, CSRC, LLD]``,
        where the context is :attr:`ProcessGrid.handle`.
        """
        return self._desc.copy()


    @property
    def context(self):
        """The ProcessGrid of this matrix."""
        return self._context


    @property
    def layout(self):
        """The :class:`~pmatrix.blockcyclic.Layout` of this matrix on this process."""
        return self._layout


    @property
    def dtype(self):
        """The numpy datatype of this matrix."""
        return self._dtype


    @property
    def mpi_dtype(self):
        """The base MPI Datatype."""
        return typemap[self.dtype]


    @property
    def sc_dtype(self):
        """The backend type as a character."""
        _sc_type = {np.float32: 'S',
                    np.float64: 'D',
                    np.complex64: 'C',
                    np.complex128: 'Z'}

        return _sc_type[self.dtype]


    @property
    def global_shape(self):
        """The shape of the global matrix."""
        return self._global_shape


    @property
    def local_shape(self):
        """The shape of the local matrix."""
        return self._layout.local_shape


    @property
    def block_shape(self):
        """The blocksize for the matrix."""
        return self._block_shape


    @property
    def rows(self):
        """Number of rows of the global matrix."""
        return self._global_shape[0]


    @property
    def cols(self):
        """Number of columns of the global matrix."""
        return self._global_shape[1]


    @property
    def size(self):
        """Number of elements of the global matrix."""
        return self._global_shape[0] * self._global_shape[1]


    def __init__(self, global_shape, dtype=np.float64, block_shape=None, num_blocks=None, context=None):
        r"""Initialise a zeroed DistributedMatrix.

        """

        ## Check and set data type
        try:
            dtype = np.dtype(dtype).type
        except TypeError:
            raise PMatrixException("Requested dtype %s not understood." % repr(dtype))

        if dtype not in typemap:
            raise PMatrixException("Requested dtype %s not supported." % dtype.__name__)

        self._dtype = dtype

        ## Check and set global_shape
        if not _chk_2d_size(global_shape, positive=False):
            raise PMatrixException("Array global shape invalid.")

        self._global_shape = tuple(int(n) for n in global_shape)

        ## Check and set context.
        context = _resolve_context(context)
        self._context = context

        ## Work out the block_shape
        if block_shape is None:
            if num_blocks is None and _block_shape is not None:
                block_shape = _block_shape
            else:
                num_blocks = (0, 0) if num_blocks is None else num_blocks

                if not _chk_2d_size(num_blocks, positive=False):
                    raise PMatrixException("Number of blocks invalid.")

                # Zero counts mean one block per grid row/column
                counts = [nb if nb > 0 else gs for nb, gs in zip(num_blocks, context.grid_shape)]
                block_shape = [blockcyclic.block_size_from_count(n, nb)
                               for n, nb in zip(self._global_shape, counts)]

        # Validate block_shape.
        if not _chk_2d_size(block_shape):
            raise PMatrixException("Block shape invalid.")

        self._block_shape = tuple(int(b) for b in block_shape)

        self._layout = blockcyclic.Layout(self._global_shape, self._block_shape,
                                          context.grid_shape, context.grid_position)

        # Allocate the local array.
        self._local_array = np.zeros(self.local_shape, order='F', dtype=dtype)

        # Create the descriptor
        self._mkdesc()


    def _mkdesc(self):
        # Make the array descriptor
        self._desc = np.zeros(9, dtype=np.int32)

        self._desc[0] = 1  # Dense matrix
        self._desc[1] = self.context.handle
        self._desc[2] = self.global_shape[0]
        self._desc[3] = self.global_shape[1]
        self._desc[4] = self.block_shape[0]
        self._desc[5] = self.block_shape[1]
        self._desc[6] = 0
        self._desc[7] = 0
        self._desc[8] = self._layout.leading_dim


    @classmethod
    def empty_like(cls, mat):
        r"""Create a DistributedMatrix, with the same shape and
        blocking as `mat`.

        Parameters
        ----------
        mat : DistributedMatrix
            The matrix to copy.

        Returns
        -------
        cmat : DistributedMatrix
        """
        return cls(mat.global_shape, block_shape=mat.block_shape,
                   dtype=mat.dtype, context=mat.context)


    @classmethod
    def empty_trans(cls, mat):
        r"""Create a DistributedMatrix, with the same blocking
        but transposed shape as `mat`.

        Parameters
        ----------
        mat : DistributedMatrix
            The matrix to operate.

        Returns
        -------
        tmat : DistributedMatrix
        """
        return cls([mat.global_shape[1], mat.global_shape[0]], block_shape=mat.block_shape,
                   dtype=mat.dtype, context=mat.context)


    @classmethod
    def eye(cls, n, dtype=np.float64, block_shape=None, num_blocks=None, context=None):
        """Returns distributed n-by-n identity matrix.

        Parameters
        ----------
        n : integer
           matrix size
        dtype : np.dtype, optional
           The datatype of the array.
           See DistributedMatrix.__init__ docstring for supported types.
        block_shape: list of integers, optional
           The blocking size, packed as ``[Br, Bc]``.
        num_blocks: list of integers, optional
           The number of blocks along each side.
        context : ProcessGrid, optional
           The process grid. If not set uses the default (recommended).
        """

        ret = cls(global_shape = (n,n),
                  dtype = dtype,
                  block_shape = block_shape,
                  num_blocks = num_blocks,
                  context = context)

        ret.identity()
        return ret


    def copy(self):
        """Create a copy of this DistributedMatrix.

        This includes a full copy of the local data. However, the
        :attr:`context` is a reference to the original :class:`ProcessGrid`.
        This is purely local, no communication is needed.

        Returns
        -------
        copy : DistributedMatrix
        """
        cp = DistributedMatrix.empty_like(self)
        cp.local_array[:] = self.local_array

        return cp


    def __copy__(self):
        return self.copy()


    def __deepcopy__(self, memo):
        return self.copy()


    ## Element access

    def is_local(self, row, col):
        """Is the global element (row, col) stored on this process?"""
        return self._layout.is_local(row, col)


    def get(self, row, col):
        """Value of the global element (row, col).

        Returns the stored value on the process which owns the element, and a
        zero of the matrix dtype on every other process.
        """
        lrc = self._layout.localize(row, col)

        if lrc is None:
            return self.dtype(0)

        return self._local_array[lrc]


    def set(self, row, col, value):
        """Set the global element (row, col) if it is stored on this process.

        Returns
        -------
        written : boolean
            True on the owning process, False everywhere else (where nothing
            is written).
        """
        lrc = self._layout.localize(row, col)

        if lrc is None:
            return False

        self._local_array[lrc] = value
        return True


    def _chk_key(self, key):
        if not (isinstance(key, tuple) and len(key) == 2 and
                all(isinstance(k, (int, np.integer)) for k in key)):
            raise PMatrixException("Elements must be indexed by a (row, col) pair of integers, not %s."
                                   % repr(key))

        return int(key[0]), int(key[1])


    def __getitem__(self, key):
        return self.get(*self._chk_key(key))


    def __setitem__(self, key, value):
        row, col = self._chk_key(key)
        self.set(row, col, value)


    def local_elements(self):
        """List of the global (row, col) of every element stored on this process."""
        return list(self._layout.owned_elements())


    def row_indices(self):
        """The row indices of the global array local to the process.
        """
        return self._layout.owned_row_indices()


    def col_indices(self):
        """The column indices of the global array local to the process.
        """
        return self._layout.owned_col_indices()


    def indices(self, full=True):
        r"""The indices of the elements stored in the local matrix.

        This can be used to easily build up distributed matrices that
        depend on their co-ordinates.

        Parameters
        ----------
        full : boolean, optional
            If False the matrices of indices are not fleshed out, if True the
            full matrices are returned. This is like the difference between
            np.ogrid and np.mgrid.

        Returns
        -------
        im : tuple of ndarrays
            The first element contains the matrix of row indices and
            the second of column indices.

        Notes
        -----

        As an example a DistributedMatrix defined globally as
        :math:`M_{ij} = i + j` can be created by::

            dm = DistributedMatrix((100, 100))
            rows, cols = dm.indices()
            dm.local_array[:] = rows + cols
        """

        ri = self.row_indices().reshape((-1, 1), order='F')
        ci = self.col_indices().reshape((1, -1), order='F')

        if full:
            ri, ci = np.broadcast_arrays(ri, ci)
            ri = np.asfortranarray(ri)
            ci = np.asfortranarray(ci)

        return (ri, ci)


    def local_diagonal_indices(self, allow_non_square=False):
        """Returns triple of 1D arrays (global_index, local_row_index, local_column_index).

        Each of these arrays has length equal to the number of elements on the global diagonal
        which are stored in the local matrix.  For each such element, global_index[i] is its
        position in the global diagonal, and (local_row_index[i], local_column_index[i]) gives
        its position in the local array.

        As an example of the use of these arrays, the global operation A_{ij} += i^2 delta_{ij}
        could be implemented with::

           (global_index, local_row_index, local_column_index) = A.local_diagonal_indices()
           A.local_array[local_row_index, local_column_index] += global_index**2
        """

        if not allow_non_square:
            self._chk_square("take the diagonal of")

        global_index = np.intersect1d(self.row_indices(), self.col_indices())

        if not self.context.is_active():
            return global_index, global_index, global_index

        (rank, local_row_index) = blockcyclic.localize_indices(global_index, self.block_shape[0], self.context.grid_shape[0])
        assert np.all(rank == self.context.grid_position[0])

        (rank, local_col_index) = blockcyclic.localize_indices(global_index, self.block_shape[1], self.context.grid_shape[1])
        assert np.all(rank == self.context.grid_position[1])

        return (global_index, local_row_index, local_col_index)


    ## Global array conversion

    @classmethod
    def from_global_array(cls, mat, rank=None, block_shape=None, num_blocks=None, context=None):

        r"""Create a DistributedMatrix directly from the global `array`.

        Parameters
        ----------
        mat : ndarray
            The global array to extract the local segments of.
        rank : integer
            Broadcast global matrix from given rank, to all ranks if set.
            Otherwise, if rank=None, assume all processes have a copy.
        block_shape: list of integers, optional
            The blocking size in [Br, Bc].
        num_blocks: list of integers, optional
            The number of blocks along each side.
        context : ProcessGrid, optional
            The process grid. If not set uses the default (recommended).

        Returns
        -------
        dm : DistributedMatrix
        """
        # Broadcast if rank is set.
        if rank is not None:
            context = _resolve_context(context)
            comm = context.mpi_comm

            # Double check that rank is valid.
            if rank < 0 or rank >= comm.size:
                raise PMatrixException("Invalid rank.")

            if comm.rank == rank:
                if mat.ndim != 2:
                    raise PMatrixException("Array must be 2d.")

                mat = np.asfortranarray(mat)
                mat_shape = mat.shape
                mat_dtype = mat.dtype.type
            else:
                mat_shape = None
                mat_dtype = None

            mat_shape = comm.bcast(mat_shape, root=rank)
            mat_dtype = comm.bcast(mat_dtype, root=rank)

            m = cls(mat_shape, dtype=mat_dtype, block_shape=block_shape, num_blocks=num_blocks, context=context)

            blockcyclic.scatter_matrix(mat, m.local_array, m.block_shape, m.context.grid_shape,
                                       m.context.all_grid_positions, comm, root=rank)

        else:
            if mat.ndim != 2:
                raise PMatrixException("Array must be 2d.")

            m = cls(mat.shape, dtype=mat.dtype.type, block_shape=block_shape, num_blocks=num_blocks, context=context)

            m.local_array[:] = blockcyclic.local_part(mat, m.block_shape, m.context.grid_shape,
                                                      m.context.grid_position)

        return m


    def to_global_array(self, rank=None):
        """Copy distributed data into a global array.

        This is mainly intended for testing. Would be a bad idea for larger problems.

        Parameters
        ----------
        rank : integer, optional
            If rank is None (default) then gather onto all nodes. If rank is
            set, then gather only onto one node.

        Returns
        -------
        matrix : np.ndarray
            The global matrix.
        """

        comm = self.context.mpi_comm

        bcast = False
        if rank is None:
            rank = 0
            bcast = True

        # Double check that rank is valid.
        if rank < 0 or rank >= comm.size:
            raise PMatrixException("Invalid rank.")

        global_array = blockcyclic.gather_matrix(self.local_array, self.global_shape, self.block_shape,
                                                 self.context.grid_shape, self.context.all_grid_positions,
                                                 comm, root=rank)

        # Distribute to all processes if requested
        if bcast:
            global_array = comm.bcast(global_array, root=rank)

        return global_array


    ## Arithmetic

    def _chk_square(self, action):
        if self.global_shape[0] != self.global_shape[1]:
            raise PMatrixException("Cannot %s a non-square matrix (has dimensions %i x %i)."
                                   % (action, self.global_shape[0], self.global_shape[1]))


    def _chk_same_shape(self, x, action):
        if not isinstance(x, DistributedMatrix):
            raise PMatrixException("Cannot %s a DistributedMatrix and a %s." % (action, type(x).__name__))

        if self.global_shape != x.global_shape:
            raise PMatrixException("Cannot %s matrices of different shapes (%i x %i and %i x %i)."
                                   % ((action,) + self.global_shape + x.global_shape))


    def __iadd__(self, x):
        self._chk_same_shape(x, "add")

        self.local_array[:] += x.local_array

        return self


    def __isub__(self, x):
        self._chk_same_shape(x, "subtract")

        self.local_array[:] -= x.local_array

        return self


    def __add__(self, x):
        self._chk_same_shape(x, "add")

        B = self.copy()
        B.local_array[:] += x.local_array

        return B


    def __sub__(self, x):
        self._chk_same_shape(x, "subtract")

        B = self.copy()
        B.local_array[:] -= x.local_array

        return B


    def __neg__(self):
        B = self.copy()
        np.negative(B.local_array, out=B.local_array)

        return B


    def __imul__(self, x):
        if not isinstance(x, Number):
            raise PMatrixException("Can only scale a DistributedMatrix in place by a scalar.")

        self.local_array[:] *= x

        return self


    def __itruediv__(self, x):
        if not isinstance(x, Number):
            raise PMatrixException("Can only divide a DistributedMatrix in place by a scalar.")

        self.local_array[:] /= x

        return self


    def __mul__(self, x):
        if isinstance(x, DistributedMatrix):
            self._chk_same_shape(x, "multiply elementwise")

            B = self.copy()
            B.local_array[:] *= x.local_array

            return B

        elif isinstance(x, Number):
            B = self.copy()
            B.local_array[:] *= x

            return B

        elif isinstance(x, np.ndarray):
            if x.ndim != 1 or x.size != self.global_shape[1]:
                raise PMatrixException("Cannot scale the columns of a %i x %i matrix by an array of shape %s."
                                       % (self.global_shape + (x.shape,)))

            B = self.copy()
            B.local_array[:] *= x[self.col_indices()][np.newaxis, :]

            return B
        else:
            raise PMatrixException('Unsupported type %s' % type(x))


    def __rmul__(self, x):
        if isinstance(x, Number):
            return self.__mul__(x)

        return NotImplemented


    def __truediv__(self, x):
        if not isinstance(x, Number):
            raise PMatrixException("Can only divide a DistributedMatrix by a scalar.")

        B = self.copy()
        B.local_array[:] /= x

        return B


    def __matmul__(self, x):
        return self.prod(x)


    def zeros(self):
        """Set every element to zero."""
        self.local_array[:] = 0


    def identity(self):
        """Set this matrix to the identity, discarding its previous contents."""
        self._chk_square("build an identity from")

        self.zeros()

        for i in range(self.global_shape[0]):
            self.set(i, i, 1)


    def dot(self, x):
        r"""The sum of the elementwise product, :math:`\sum_{ij} A_{ij} B_{ij}`.

        This is collective over the grid's communicator, and the result is
        returned on every process. For vectors this is the usual scalar
        product (without complex conjugation).
        """
        self._chk_same_shape(x, "take the dot product of")

        ret = np.array(np.sum(self.local_array * x.local_array),
                       dtype=np.result_type(self.dtype, x.dtype))
        self.context.mpi_comm.Allreduce(ret.copy(), ret, MPI.SUM)

        return ret[()]


    def squared_norm(self):
        r"""Squared Frobenius norm of the matrix, :math:`\sum_{ij} |A_{ij}|^2` (collective).

        This is ``real(self.dot(self.conj()))``. For complex matrices it is not
        the same as ``self.dot(self)``, which does not conjugate and is in
        general complex.
        """
        return np.real(self.dot(self.conj()))


    def norm(self):
        """Frobenius norm of the matrix (collective)."""
        return np.sqrt(self.squared_norm())


    def trace(self):
        """Returns global matrix trace (the trace is returned on all ranks)."""

        (g,r,c) = self.local_diagonal_indices()

        # Note: np.sum() returns 0 for length-zero array
        ret = np.array(np.sum(self.local_array[r,c]), dtype=self.dtype)
        self.context.mpi_comm.Allreduce(ret.copy(), ret, MPI.SUM)

        return ret[()]


    ## Operations dispatched to the backend

    def prod(self, x, trans_this='N', trans_that='N'):
        r"""Matrix product ``op(self) * op(x)``.

        Parameters
        ----------
        x : DistributedMatrix
            The right hand matrix. Must have the same dtype and be on a grid
            of the same shape.
        trans_this, trans_that : ['N', 'T', 'C']
            Whether we should use a transpose, rather than the matrix itself.
            Either, do nothing ('N'), normal transpose ('T'), or Hermitian
            transpose ('C').

        Returns
        -------
        C : DistributedMatrix
            A new matrix, with the blocking and grid of `self`.
        """

        from . import lowlevel as ll

        if trans_this not in ['N', 'T', 'C']:
            raise PMatrixException("Trans argument for the left matrix invalid")
        if trans_that not in ['N', 'T', 'C']:
            raise PMatrixException("Trans argument for the right matrix invalid")
        if not isinstance(x, DistributedMatrix):
            raise PMatrixException("Can only multiply by another DistributedMatrix.")
        if self.dtype != x.dtype:
            raise PMatrixException("Matrices must have same type")
        if self.context.grid_shape != x.context.grid_shape:
            raise PMatrixException("Matrices must be on process grids of the same shape (%s and %s)."
                                   % (self.context.grid_shape, x.context.grid_shape))

        m = self.global_shape[0] if trans_this == 'N' else self.global_shape[1]
        k = self.global_shape[1] if trans_this == 'N' else self.global_shape[0]
        n = x.global_shape[1] if trans_that == 'N' else x.global_shape[0]
        l = x.global_shape[0] if trans_that == 'N' else x.global_shape[1]

        if l != k:
            raise PMatrixException("Cannot multiply matrices with inner dimensions %i and %i." % (k, l))

        C = DistributedMatrix([m, n], dtype=self.dtype, block_shape=self.block_shape, context=self.context)

        args = [trans_this, trans_that, m, n, k, 1.0, self, x, 0.0, C]

        call_table = { 'S': (ll.psgemm, args),
                       'D': (ll.pdgemm, args),
                       'C': (ll.pcgemm, args),
                       'Z': (ll.pzgemm, args) }

        func, args = call_table[self.sc_dtype]
        info = func(*args)

        if info != 0:
            raise BackendException("%s failed with info = %d" % (func.name, info))

        return C


    def _tran(self, conjugate, alpha, beta, target):
        # target = beta * target + alpha * op(self)^T
        from . import lowlevel as ll

        args = [self.global_shape[1], self.global_shape[0], alpha, self, beta, target]

        if conjugate:
            call_table = {'C': (ll.pctranc, args),
                          'Z': (ll.pztranc, args)}
        else:
            call_table = {'S': (ll.pstran, args),
                          'D': (ll.pdtran, args),
                          'C': (ll.pctranu, args),
                          'Z': (ll.pztranu, args)}

        func, args = call_table[self.sc_dtype]
        info = func(*args)

        if info != 0:
            raise BackendException("%s failed with info = %d" % (func.name, info))

        return target


    def symmetrize(self):
        r"""Replace the matrix by :math:`(A + A^T) / 2`, in place.

        This is collective. Only square matrices can be symmetrized.
        """
        self._chk_square("symmetrize")

        # The transpose reads its source while it writes the target.
        snapshot = self.copy()

        snapshot._tran(False, 0.5, 0.5, self)

        return self


    def transpose(self):
        """Transpose the distributed matrix."""

        return self._tran(False, 1.0, 0.0, DistributedMatrix.empty_trans(self))


    @property
    def T(self):
        """Transpose the distributed matrix."""
        return self.transpose()


    def conj(self):
        """Complex conjugate the distributed matrix."""

        # if real
        if self.sc_dtype in ['S', 'D']:
            return self

        # if complex
        cj = DistributedMatrix.empty_like(self)
        cj.local_array[:] = self.local_array.conj()

        return cj


    @property
    def C(self):
        """Complex conjugate the distributed matrix."""
        return self.conj()


    def hconj(self):
        """Hermitian conjugate the distributed matrix, i.e., transpose
        and complex conjugate the distributed matrix."""

        # if real
        if self.sc_dtype in ['S', 'D']:
            return self.transpose()

        # if complex
        return self._tran(True, 1.0, 0.0, DistributedMatrix.empty_trans(self))


    @property
    def H(self):
        """Hermitian conjugate the distributed matrix, i.e., transpose
        and complex conjugate the distributed matrix."""
        return self.hconj()


    def diagonalize(self, num_eigenvalues=None):
        r"""Eigen-decomposition of a real symmetric or complex hermitian matrix.

        Only the upper triangle is read, and the matrix is not checked for
        symmetry. The contents of this matrix are unspecified afterwards.
        The matrix must be square and on a square process grid.

        Parameters
        ----------
        num_eigenvalues : integer, optional
            Only compute the lowest `num_eigenvalues` eigenpairs (clamped to
            the matrix size). By default the full spectrum is computed.

        Returns
        -------
        evals : np.ndarray
            The (real) eigenvalues in ascending order, as a global
            array on every process.
        evecs : DistributedMatrix
            The eigenvectors as columns, on the same grid as this matrix.
            This is always full size; when `num_eigenvalues` is set only the
            first `num_eigenvalues` columns are meaningful.
        """

        self._chk_square("diagonalize")

        if self.context.grid_shape[0] != self.context.grid_shape[1]:
            raise PMatrixException("Cannot diagonalize on a non-square process grid (%i x %i)."
                                   % self.context.grid_shape)

        if num_eigenvalues is None:
            return self._diagonalize_full()
        else:
            return self._diagonalize_partial(num_eigenvalues)


    def _diagonalize_full(self):
        from . import lowlevel as ll
        from . import util

        n = self.global_shape[0]

        evals = np.zeros(n, dtype=util.real_equiv(self.dtype))
        evecs = DistributedMatrix.empty_like(self)

        args = ['V', 'U', n, self, evals, evecs]

        call_table = {'S': (ll.pssyevd, ll.WorkArray('S', 'I')),
                      'D': (ll.pdsyevd, ll.WorkArray('D', 'I')),
                      'C': (ll.pcheevd, ll.WorkArray('C', 'S', 'I')),
                      'Z': (ll.pzheevd, ll.WorkArray('Z', 'D', 'I'))}

        func, work = call_table[self.sc_dtype]
        args = args + [work]

        sizes = func.plan(*args)
        info = func.execute(sizes, *args)

        if info != 0:
            raise BackendException("%s failed with info = %d" % (func.name, info))

        return evals, evecs


    def _diagonalize_partial(self, num_eigenvalues):
        from . import lowlevel as ll
        from . import util

        n = self.global_shape[0]

        if num_eigenvalues < 1:
            raise PMatrixException("Must ask for at least one eigenvalue (asked for %i)." % num_eigenvalues)

        k = min(int(num_eigenvalues), n)

        evals = np.zeros(n, dtype=util.real_equiv(self.dtype))

        # Only the first k columns are filled, but the backend needs a full
        # size matrix for them.
        evecs = DistributedMatrix.empty_like(self)

        args = ['V', 'I', 'U', n, self, 0.0, 0.0, 1, k, evals, evecs]

        call_table = {'S': (ll.pssyevr, ll.WorkArray('S', 'I')),
                      'D': (ll.pdsyevr, ll.WorkArray('D', 'I')),
                      'C': (ll.pcheevr, ll.WorkArray('C', 'S', 'I')),
                      'Z': (ll.pzheevr, ll.WorkArray('Z', 'D', 'I'))}

        func, work = call_table[self.sc_dtype]
        args = args + [work]

        sizes = func.plan(*args)

        # The integer workspace is not reliably sized by the query.
        sizes[-1] = max(sizes[-1], ll.evr_liwork(n, self.context.grid_shape))

        if self.context.is_head():
            logger.info("Computing the first %i eigenvalues and eigenvectors of a %i x %i matrix.", k, n, n)

        m, nz, info = func.execute(sizes, *args)

        if info != 0:
            raise BackendException("%s failed with info = %d" % (func.name, info))

        return evals[:m], evecs
