"""
STATCUBE Test Suite

This package contains all test modules for the STATCUBE engine:
- test_date_reference.py: Date/period reference generation
- test_lookup_tables.py: Lookup table detection and normalization
- test_resolver.py: Dimension resolution and join contracts
- test_validator.py: Lookup validation
- test_assembler.py: End to end cube builds
- test_preview.py: Paginated previews and filters
- test_core.py: Configuration, storage, store and translations
"""

__version__ = "1.0.0"
__author__ = "STATCUBE Development Team"
