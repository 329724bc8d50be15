"""
========================
pmatrix (:mod:`pmatrix`)
========================

.. currentmodule:: pmatrix

pmatrix is a python package for dense matrices distributed block cyclically
over a grid of MPI processes.
"""

from .core import *
from .routines import *
