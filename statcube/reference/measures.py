"""
STATCUBE Measure Formatting

Each row of a measure table declares how the data values recorded against it
are displayed: a format name and a number of decimal places. The default view
renders data values through one CASE expression with a branch per measure.
"""

import logging
from typing import Any, Dict, List

from ..core.database import quote_literal

logger = logging.getLogger(__name__)

MEASURE_TABLE = "measure"

DECIMAL_FORMATS = {"decimal", "float", "double", "long", "percentage"}
INTEGER_FORMATS = {"integer", "int"}
TEXT_FORMATS = {"string", "text", "date", "datetime", "time"}


def _as_number(value_expr: str) -> str:
    return f"TRY_CAST({value_expr} AS DOUBLE)"


def thousands_sql(value_expr: str) -> str:
    """Whole number with thousands separators: 1234567 -> '1,234,567'."""
    return f"format('{{:,}}', CAST(ROUND({_as_number(value_expr)}) AS BIGINT))"


def fixed_decimal_sql(value_expr: str, decimals: int) -> str:
    """
    Rounded to `decimals` places with thousands separators: 1234.5 -> '1,234.50'.

    The whole part goes through format('{:,}') and the fraction through printf,
    so the separators do not depend on the float formatting of the engine.
    """
    if decimals <= 0:
        return thousands_sql(value_expr)
    rounded = f"ROUND({_as_number(value_expr)}, {decimals})"
    whole = f"format('{{:,}}', CAST(floor(abs({rounded})) AS BIGINT))"
    fraction = f"substr(printf('%.{decimals}f', abs({rounded}) - floor(abs({rounded}))), 2)"
    sign = f"CASE WHEN {rounded} < 0 THEN '-' ELSE '' END"
    return f"{sign} || {whole} || {fraction}"


def format_value_sql(format_name: Any, decimals: Any, value_expr: str) -> str:
    """SQL rendering value_expr per a measure's declared format."""
    name = str(format_name or "").strip().lower()
    places = int(decimals) if decimals is not None else 0
    if name in DECIMAL_FORMATS:
        rendered = fixed_decimal_sql(value_expr, places)
    elif name in INTEGER_FORMATS:
        rendered = thousands_sql(value_expr)
    else:
        if name and name not in TEXT_FORMATS:
            logger.warning(f"Unknown measure format '{format_name}', values shown as text")
        return f"CAST({value_expr} AS VARCHAR)"
    # Values that are not numbers are shown as they are.
    return f"COALESCE({rendered}, CAST({value_expr} AS VARCHAR))"


def measure_case_sql(measure_formats: List[Dict[str, Any]], value_expr: str, reference_expr: str) -> str:
    """
    One CASE over the measure reference choosing each measure's format.

    Args:
        measure_formats: rows with reference, format and decimals
        value_expr: SQL for the raw data value
        reference_expr: SQL for the measure reference of the row
    """
    default = f"CAST({value_expr} AS VARCHAR)"
    if not measure_formats:
        return default
    branches = [
        f"WHEN {reference_expr} = {quote_literal(row['reference'])} "
        f"THEN {format_value_sql(row.get('format'), row.get('decimals'), value_expr)}"
        for row in sorted(measure_formats, key=lambda row: str(row["reference"]))
    ]
    return "CASE " + " ".join(branches) + f" ELSE {default} END"
