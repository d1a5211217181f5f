"""
STATCUBE - Statistical cube construction and dimension matching engine

Builds bilingual, human readable cubes from uploaded statistical fact tables:
1. Reference - Date period tables, lookup tables, measures, note codes and reference data
2. Resolve - Classify every fact table column and decide how it joins
3. Validate - Check every observed code has a matching reference entry
4. Assemble - Load, validate and publish the raw and default views per language
5. Preview - Paginated, locale aware reads over the published cube

Version: 1.0.0
Author: STATCUBE Development Team
"""

__version__ = "1.0.0"
__author__ = "STATCUBE Development Team"
