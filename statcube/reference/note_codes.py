"""
STATCUBE Note Codes

Footnote codes attached to observations, e.g. 'p' (provisional) or 'r'
(revised). A note codes cell holds a comma separated list such as "a,r".
The cube carries the fixed code table in every locale plus `all_notes`, one
row per distinct code list and language with the descriptions joined.
"""

import logging
from typing import Iterable, List, Optional

import pandas as pd

from ..core.database import quote_identifier
from ..core.i18n import SUPPORTED_LOCALES, CatalogTranslator, Translator, language_tag

logger = logging.getLogger(__name__)

NOTE_CODES = [
    ("a", "average"),
    ("b", "break_in_series"),
    ("c", "confidential"),
    ("e", "estimated"),
    ("f", "forecast"),
    ("k", "low_figure"),
    ("ns", "not_statistically_significant"),
    ("p", "provisional"),
    ("r", "revised"),
    ("s", "statistically_significant_at_level_1"),
    ("ss", "statistically_significant_at_level_2"),
    ("sss", "statistically_significant_at_level_3"),
    ("t", "total"),
    ("u", "low_reliability"),
    ("w", "not_recorded"),
    ("x", "missing_data"),
    ("z", "not_applicable"),
]

NOTE_CODES_TABLE = "note_codes"
ALL_NOTES_TABLE = "all_notes"

NOTE_CODES_SCHEMA = {
    "code": "VARCHAR",
    "language": "VARCHAR",
    "tag": "VARCHAR",
    "description": "VARCHAR",
    "notes": "VARCHAR",
}


def split_note_codes(value: Optional[str]) -> List[str]:
    """'a, r' -> ['a', 'r']"""
    if value is None:
        return []
    return [code for code in str(value).replace(" ", "").lower().split(",") if code]


def note_code_list_sql(expr: str) -> str:
    """SQL list of the individual codes in a note codes cell."""
    return f"string_split(replace(lower(CAST({expr} AS VARCHAR)), ' ', ''), ',')"


def note_codes_dataframe(locales: Iterable[str] = SUPPORTED_LOCALES,
                         translator: Optional[Translator] = None) -> pd.DataFrame:
    """The fixed note code table, one row per code and locale."""
    translator = translator or CatalogTranslator()
    records = []
    for locale in locales:
        for code, tag in NOTE_CODES:
            records.append({
                "code": code,
                "language": language_tag(locale),
                "tag": tag,
                "description": translator.translate(f"note_codes.{tag}", locale),
                "notes": None,
            })
    return pd.DataFrame(records, columns=list(NOTE_CODES_SCHEMA))


def all_notes_sql(notes_column: str, fact_table: str = "fact_table") -> str:
    """
    Build the statement creating all_notes.

    Each distinct note codes cell becomes one row per language, with the
    descriptions of its codes sorted and joined, e.g. "a,r" -> "Average, Revised".
    """
    column = quote_identifier(notes_column)
    return (
        f"CREATE TABLE {ALL_NOTES_TABLE} AS\n"
        f"SELECT cells.code AS code, nc.language AS language,\n"
        f"    array_to_string(list_sort(list_distinct(list(nc.description))), ', ') AS description\n"
        f"FROM (SELECT DISTINCT CAST({column} AS VARCHAR) AS code FROM {fact_table} WHERE {column} IS NOT NULL) AS cells\n"
        f"JOIN {NOTE_CODES_TABLE} AS nc ON list_contains({note_code_list_sql('cells.code')}, nc.code)\n"
        f"GROUP BY cells.code, nc.language"
    )


def annotate_value_sql(value_expr: str, notes_expr: str) -> str:
    """Append the note codes of a cell to its data value: '12.5 [p] [r]'."""
    codes = f"replace(replace(lower(CAST({notes_expr} AS VARCHAR)), ' ', ''), ',', '] [')"
    return (
        f"CASE WHEN {notes_expr} IS NULL OR trim(CAST({notes_expr} AS VARCHAR)) = '' THEN {value_expr} "
        f"ELSE concat_ws(' ', {value_expr}, '[' || {codes} || ']') END"
    )
