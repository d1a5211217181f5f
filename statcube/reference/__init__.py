"""
STATCUBE Reference Tables

Support tables joined by the cube:
- Date period reference tables generated from period rules
- Uploaded lookup and measure tables, normalized
- The fixed note code table
- Shared reference data filtered by category key
"""

from .date_reference import get_date_reference_table, date_reference_dataframe
from .lookup_tables import detect_lookup_extractor, normalize_lookup_table, make_cube_safe_string
from .reference_data import ReferenceDataCatalog

__all__ = [
    'get_date_reference_table',
    'date_reference_dataframe',
    'detect_lookup_extractor',
    'normalize_lookup_table',
    'make_cube_safe_string',
    'ReferenceDataCatalog'
]
