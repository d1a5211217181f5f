"""
STATCUBE Cube Components

This module provides the cube build and read paths:
- Dimension resolution into join contracts
- Validation of fact values against support tables
- Assembly and atomic publication of cubes
- Paginated previews and dimension filters
"""

from .resolver import DimensionResolver, JoinContract
from .validator import LookupValidator
from .store import CubeStore
from .assembler import CubeAssembler
from .preview import PreviewService

__all__ = [
    'DimensionResolver',
    'JoinContract',
    'LookupValidator',
    'CubeStore',
    'CubeAssembler',
    'PreviewService'
]
