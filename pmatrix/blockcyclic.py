"""
=======================================================
Blockcyclic Utilities (:mod:`~pmatrix.blockcyclic`)
=======================================================

A set of utilities for calculating the packing in block cyclic matrix
distributions.

Everything in here is pure bookkeeping: given the global shape, the block
shape, the process grid shape and a grid position, each process can work out
independently which elements it stores and where. The only exceptions are
:func:`gather_matrix` and :func:`scatter_matrix` which move whole matrices
between the distributed and the global form.

Routines
========

.. autosummary::
    :toctree: generated/

    numrc
    indices_rc
    localize_indices
    globalize_indices

    num_c_blocks
    num_c_lblocks
    partial_last_block
    block_size_from_count

    local_part
    gather_matrix
    scatter_matrix

Classes
=======

.. autosummary::
    :toctree: generated/

    Layout
"""

import numpy as np


# Offset returned for elements which are not stored on this process.
NOT_LOCAL = -1


def ceildiv(x, y):
    """Round to ceiling division."""
    return ((int(x) - 1) // int(y) + 1)


def num_c_blocks(N, B):
    """Number of complete blocks globally.

    Parameters
    ----------
    N : integer
        Number of elements on the side.
    B : integer
        Block length.

    Returns
    -------
    num : integer
    """
    return int(N) // int(B)


def num_c_lblocks(N, B, p, P):
    """Number of complete blocks locally.

    Parameters
    ----------
    N : integer
        Number of elements on the side.
    B : integer
        Block length.
    p : integer
        Process index.
    P : integer
        Number of processes on the side.

    Returns
    -------
    num : integer
    """
    nbc = num_c_blocks(N, B)
    return nbc // P + int(1 if ((nbc % P) > p) else 0)


def partial_last_block(N, B, p, P):
    """Is the last local block partial?

    Parameters
    ----------
    N : integer
        Number of elements on the side.
    B : integer
        Block length.
    p : integer
        Process index.
    P : integer
        Number of processes on the side.

    Returns
    -------
    partial : boolean
    """
    return ((N % B > 0) and ((num_c_blocks(N, B) % P) == p))


def block_size_from_count(N, nblocks):
    """Block length which splits a side of `N` elements into `nblocks` blocks.

    The block count is clamped to ``[1, N]``, so that asking for more blocks
    than elements gives one element per block. When `N` does not divide
    evenly the last block is a partial one.

    Parameters
    ----------
    N : integer
        Number of elements on the side.
    nblocks : integer
        Requested number of blocks.

    Returns
    -------
    B : integer
        Block length, at least 1.

    Examples
    --------

    >>> block_size_from_count(8, 2)
    4

    >>> block_size_from_count(5, 2)
    3

    >>> block_size_from_count(3, 10)
    1
    """
    N = int(N)
    if N <= 0:
        return 1

    nblocks = min(max(int(nblocks), 1), N)

    return ceildiv(N, nblocks)


def numrc(N, B, p, P):
    """The number of rows/columns of the global array local to the process.

    Parameters
    ----------
    N : integer
        Number of elements on the side.
    B : integer
        Block length.
    p : integer
        Process index. A negative index marks a process outside the grid,
        which stores nothing.
    P : integer
        Number of processes on the side.

    Returns
    -------
    num : integer

    Examples
    --------

    >>> numrc(5, 2, 0, 2)
    3

    >>> numrc(5, 2, 1, 2)
    2
    """

    if p < 0:
        return 0

    # Number of complete blocks owned by the process.
    nbp = num_c_lblocks(N, B, p, P)

    # Number of entries of complete blocks owned by process.
    n = nbp * B

    # If this process owns an incomplete block, then add the number of entries.
    if partial_last_block(N, B, p, P):
        n += N % B

    return n


def indices_rc(N, B, p, P):
    """The indices of the global array local to the process.

    Parameters
    ----------
    N : integer
        Number of elements on the side.
    B : integer
        Block length.
    p : integer
        Process index.
    P : integer
        Number of processes on the side.

    Returns
    -------
    indices : np.ndarray[int]
        Indices of the side that are local to this process, in ascending
        order.

    Examples
    --------
    Short example:

    >>> indices_rc(5, 2, 0, 2)
    array([0, 1, 4])

    >>> indices_rc(5, 2, 1, 2)
    array([2, 3])
    """

    nt = numrc(N, B, p, P)

    ind = np.zeros(nt, dtype='int')

    if nt == 0:
        return ind

    nb = num_c_lblocks(N, B, p, P)

    ind[:(nb*B)] = ((np.arange(nb)[:, np.newaxis] * P + p)*B +
                    np.arange(B)[np.newaxis, :]).flatten()

    if (nb * B < nt):
        ind[(nb*B):] = (nb*P+p)*B + np.arange(nt - nb*B)

    return ind


def localize_indices(global_indices, B, P):
    """Given an array of "global indices", compute the (rank, local index) pair corresponding to each global index.

    Parameters
    ----------
    global_indices : integer-valued array
        Array of global indices
    B : integer
        Block length.
    P : integer
        Number of processes on the side.

    Returns
    -------
    rank : integer-valued array
        Array of ranks (between 0 and P)
    local_indices : integer-valued array
        Array of local indices
    """

    global_indices = np.array(global_indices)
    assert np.issubdtype(global_indices.dtype, np.integer)
    assert np.all(global_indices >= 0)
    assert B > 0
    assert P > 0

    t = global_indices // B
    u = t // P
    return (t-u*P, global_indices+B*(u-t))


def globalize_indices(local_indices, B, p, P):
    """Inverse of :func:`localize_indices` for the process with index `p`.

    Parameters
    ----------
    local_indices : integer-valued array
        Array of local indices.
    B : integer
        Block length.
    p : integer
        Process index.
    P : integer
        Number of processes on the side.

    Returns
    -------
    global_indices : integer-valued array
    """
    local_indices = np.array(local_indices)
    assert np.issubdtype(local_indices.dtype, np.integer)
    assert np.all(local_indices >= 0)

    return ((local_indices // B) * P + p) * B + local_indices % B


class Layout(object):
    r"""The block cyclic layout of a matrix as seen by one process.

    Parameters
    ----------
    global_shape : (nrows, ncols)
        Shape of the global matrix.
    block_shape : (brows, bcols)
        Blocking size for the distribution.
    grid_shape : (prows, pcols)
        Shape of the process grid.
    grid_position : (prow, pcol)
        Position of this process in the grid. ``(-1, -1)`` marks a process
        which is not part of the grid and stores nothing.

    Notes
    -----
    The local storage is column major with a leading dimension equal to the
    number of local rows, so the element at local row ``i`` and local column
    ``j`` lives at offset ``i + j * local_shape[0]``.
    """

    def __init__(self, global_shape, block_shape, grid_shape, grid_position):

        self._global_shape = tuple(int(n) for n in global_shape)
        self._block_shape = tuple(int(b) for b in block_shape)
        self._grid_shape = tuple(int(g) for g in grid_shape)
        self._grid_position = tuple(int(g) for g in grid_position)

        if min(self._block_shape) < 1:
            from .core import DeveloperException
            raise DeveloperException("Block shape must be positive (got %s)." % repr(self._block_shape))

        self._local_shape = tuple(map(numrc, self._global_shape, self._block_shape,
                                      self._grid_position, self._grid_shape))

    @property
    def global_shape(self):
        """Shape of the global matrix."""
        return self._global_shape

    @property
    def block_shape(self):
        """Blocking of the distribution."""
        return self._block_shape

    @property
    def grid_shape(self):
        """Shape of the process grid."""
        return self._grid_shape

    @property
    def grid_position(self):
        """Position of this process in the grid."""
        return self._grid_position

    @property
    def local_shape(self):
        """Shape of the local segment."""
        return self._local_shape

    @property
    def local_size(self):
        """Number of elements stored locally."""
        return self._local_shape[0] * self._local_shape[1]

    @property
    def leading_dim(self):
        """Leading dimension of the local storage (never less than one)."""
        return max(1, self._local_shape[0])

    def _chk_global(self, row, col):
        from .core import DeveloperException

        if not (0 <= row < self._global_shape[0] and 0 <= col < self._global_shape[1]):
            raise DeveloperException("Element (%i, %i) is out of bounds for a %i x %i matrix."
                                     % (row, col, self._global_shape[0], self._global_shape[1]))

    def owner(self, row, col):
        """Grid position of the process storing element `(row, col)`."""
        self._chk_global(row, col)

        return ((row // self._block_shape[0]) % self._grid_shape[0],
                (col // self._block_shape[1]) % self._grid_shape[1])

    def localize(self, row, col):
        """Local `(row, col)` of a global element, or `None` if it is not stored here."""
        if self.owner(row, col) != self._grid_position:
            return None

        (br, bc), (P, Q) = self._block_shape, self._grid_shape

        # Whole blocks already held along each side, plus the offset in the block.
        lrow = (row // (br * P)) * br + row % br
        lcol = (col // (bc * Q)) * bc + col % bc

        return lrow, lcol

    def is_local(self, row, col):
        """Is element `(row, col)` stored by this process?"""
        return self.localize(row, col) is not None

    def global_to_local(self, row, col):
        """Offset of element `(row, col)` in the local buffer.

        Returns
        -------
        index : integer
            Offset into the column major local buffer, or :data:`NOT_LOCAL`
            if the element is stored by another process.
        """
        lrc = self.localize(row, col)

        if lrc is None:
            return NOT_LOCAL

        return lrc[0] + lrc[1] * self._local_shape[0]

    def local_to_global(self, index):
        """Global `(row, col)` of the element at offset `index` of the local buffer."""
        from .core import DeveloperException

        if not (0 <= index < self.local_size):
            raise DeveloperException("Local index %i is out of bounds for %i local elements."
                                     % (index, self.local_size))

        lcol, lrow = divmod(int(index), self._local_shape[0])

        (br, bc), (P, Q) = self._block_shape, self._grid_shape
        prow, pcol = self._grid_position

        return (int(globalize_indices(lrow, br, prow, P)),
                int(globalize_indices(lcol, bc, pcol, Q)))

    def owned_row_indices(self):
        """Global indices of the rows stored here, ascending."""
        return indices_rc(self._global_shape[0], self._block_shape[0],
                          self._grid_position[0], self._grid_shape[0])

    def owned_col_indices(self):
        """Global indices of the columns stored here, ascending."""
        return indices_rc(self._global_shape[1], self._block_shape[1],
                          self._grid_position[1], self._grid_shape[1])

    def owned_elements(self):
        """Iterate over the global `(row, col)` of each local element, in storage order."""
        rows = self.owned_row_indices()
        for col in self.owned_col_indices():
            for row in rows:
                yield int(row), int(col)

    def for_position(self, grid_position):
        """The same distribution seen from another grid position."""
        return Layout(self._global_shape, self._block_shape, self._grid_shape, grid_position)

    def __eq__(self, other):
        return (isinstance(other, Layout) and
                self._global_shape == other._global_shape and
                self._block_shape == other._block_shape and
                self._grid_shape == other._grid_shape and
                self._grid_position == other._grid_position)

    def __ne__(self, other):
        return not self.__eq__(other)

    def __hash__(self):
        return hash((self._global_shape, self._block_shape, self._grid_shape, self._grid_position))

    def __repr__(self):
        return ("Layout(global_shape=%s, block_shape=%s, grid_shape=%s, grid_position=%s)"
                % (self._global_shape, self._block_shape, self._grid_shape, self._grid_position))


def local_part(global_array, block_shape, grid_shape, grid_position):
    """Extract the segment of a global array stored at `grid_position`.

    Returns
    -------
    local_array : np.ndarray
        Fortran ordered copy of the local segment.
    """
    ri, ci = map(indices_rc, global_array.shape, block_shape, grid_position, grid_shape)

    return np.asfortranarray(global_array[np.ix_(ri, ci)])


def gather_matrix(local_array, global_shape, block_shape, grid_shape, all_grid_positions, comm, root=0):
    """Assemble a block cyclic distributed matrix on a single process.

    This is collective over `comm`.

    Parameters
    ----------
    local_array : np.ndarray
        The local segment on this process.
    global_shape : (nrows, ncols)
        Shape of the global matrix.
    block_shape : (brows, bcols)
        Blocking size for distribution.
    grid_shape : (prows, pcols)
        The shape of the process grid.
    all_grid_positions : array_like
        Grid position of every rank in `comm`, ``(-1, -1)`` for ranks outside
        the grid.
    comm : mpi4py.MPI.Comm
        Communicator the matrix is distributed over.
    root : integer, optional
        Rank to assemble the matrix on.

    Returns
    -------
    global_array : np.ndarray or None
        The global matrix on `root`, `None` elsewhere.
    """

    pieces = comm.gather(np.asfortranarray(local_array), root=root)

    if comm.rank != root:
        return None

    global_array = np.zeros(global_shape, dtype=local_array.dtype, order='F')

    for pos, piece in zip(all_grid_positions, pieces):
        if pos[0] < 0:
            continue

        ri, ci = map(indices_rc, global_shape, block_shape, pos, grid_shape)
        global_array[np.ix_(ri, ci)] = piece

    return global_array


def scatter_matrix(global_array, local_array, block_shape, grid_shape, all_grid_positions, comm, root=0):
    """Distribute a global matrix held by `root` into the local segments.

    This is collective over `comm`. `local_array` is overwritten in place on
    every rank; `global_array` is only referenced on `root`.
    """

    pieces = None
    if comm.rank == root:
        pieces = [ local_part(global_array, block_shape, grid_shape, pos)
                   for pos in all_grid_positions ]

    local_array[:] = comm.scatter(pieces, root=root)
