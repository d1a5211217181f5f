"""
STATCUBE Lookup Tables

Uploaded lookup tables come in two shapes:
- Legacy: one row per code, one description (and notes) column per language,
  e.g. description_en / description_cy
- Current: one row per code and language, with a lang column and single
  description / notes columns

Both are normalized into the lookup shape joined by the cube:
(<fact column>, language, description, notes, sort_order, hierarchy)
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Union

import numpy as np
import pandas as pd

from ..core.errors import LookupShapeError
from ..core.i18n import SUPPORTED_LOCALES, lang_code, language_tag
from ..core.models import LookupTableExtractor, MeasureExtractor

logger = logging.getLogger(__name__)

PROTECTED_HEADERS = ["decimal", "hierarchy", "format", "description", "sort", "notes", "type", "lang"]

LOOKUP_TABLE_SCHEMA = {
    "language": "VARCHAR",
    "description": "VARCHAR",
    "notes": "VARCHAR",
    "sort_order": "INTEGER",
    "hierarchy": "VARCHAR",
}

MEASURE_TABLE_SCHEMA = {
    "reference": "VARCHAR",
    "language": "VARCHAR",
    "description": "VARCHAR",
    "notes": "VARCHAR",
    "sort_order": "INTEGER",
    "format": "VARCHAR",
    "decimals": "INTEGER",
    "measure_type": "VARCHAR",
    "hierarchy": "VARCHAR",
}

AnyLookupExtractor = Union[LookupTableExtractor, MeasureExtractor]


def make_cube_safe_string(value: str) -> str:
    """Lower case, spaces to underscores, anything but letters and underscores removed."""
    return re.sub(r"[^a-z_]", "", value.lower().replace(" ", "_"))


def lookup_table_schema(column_name: str) -> Dict[str, str]:
    schema = {column_name: "VARCHAR"}
    schema.update(LOOKUP_TABLE_SCHEMA)
    return schema


def _language_suffix_locale(column: str, prefix: str, locales: Iterable[str]) -> Optional[str]:
    lowered = column.lower()
    if not lowered.startswith(prefix + "_"):
        return None
    suffix = lowered[len(prefix) + 1:]
    for locale in locales:
        if suffix in (lang_code(locale), language_tag(locale), language_tag(locale).replace("-", "_")):
            return locale
    return None


def detect_join_column(columns: List[str], fact_column: str) -> Optional[str]:
    """
    Pick the lookup column holding the fact table codes.

    Order of preference: a column starting with 'ref', then one containing
    'refcode', then one named like the fact column, then the only column that is
    not a description/notes/sort/... column.
    """
    for column in columns:
        if column.lower().startswith("ref"):
            return column
    for column in columns:
        if "refcode" in column.lower():
            return column
    for column in columns:
        if column == fact_column or column.lower() == fact_column.lower():
            return column
    candidates = [col for col in columns if not any(header in col.lower() for header in PROTECTED_HEADERS)]
    if len(candidates) == 1:
        return candidates[0]
    return None


def detect_lookup_extractor(df: pd.DataFrame, fact_column: str, locales: Iterable[str] = SUPPORTED_LOCALES,
                            measure: bool = False) -> AnyLookupExtractor:
    """
    Infer the extractor for an uploaded lookup table from its headers.

    Raises:
        LookupShapeError: no join column or no description column
    """
    locales = list(locales)
    columns = [str(col) for col in df.columns]
    join_column = detect_join_column(columns, fact_column)
    if join_column is None:
        raise LookupShapeError(fact_column, "errors.lookup_table_validation.missing_columns",
                               "unable to identify the column holding the codes",
                               params={"missing": ["reference"]})

    language_column = next((col for col in columns if col.lower() in ("lang", "language")), None)
    description_columns: Dict[str, str] = {}
    notes_columns: Dict[str, str] = {}
    is_legacy = False

    for column in columns:
        locale = _language_suffix_locale(column, "description", locales)
        if locale:
            description_columns[locale] = column
            is_legacy = True
        locale = _language_suffix_locale(column, "notes", locales)
        if locale:
            notes_columns[locale] = column

    if not is_legacy:
        description = next((col for col in columns if col.lower() == "description"), None)
        notes = next((col for col in columns if col.lower() == "notes"), None)
        for locale in locales:
            if description:
                description_columns[locale] = description
            if notes:
                notes_columns[locale] = notes

    if not description_columns:
        raise LookupShapeError(fact_column, "errors.lookup_table_validation.no_description_columns",
                               "no description column found")

    def first(prefix: str) -> Optional[str]:
        return next((col for col in columns if col.lower().startswith(prefix)), None)

    fields = dict(
        join_column=join_column,
        sort_column=first("sort"),
        hierarchy_column=first("hierarchy"),
        language_column=None if is_legacy else language_column,
        description_columns=description_columns,
        notes_columns=notes_columns,
        is_legacy_format=is_legacy,
    )
    if measure:
        return MeasureExtractor(
            format_column=first("format"),
            decimal_column=first("decimal"),
            measure_type_column=next((col for col in columns if col.lower() in ("type", "measure_type")), None),
            **fields
        )
    return LookupTableExtractor(**fields)


def _required_columns(extractor: AnyLookupExtractor) -> List[str]:
    required = [extractor.join_column]
    required.extend(extractor.description_columns.values())
    required.extend(extractor.notes_columns.values())
    for optional in (extractor.sort_column, extractor.hierarchy_column, extractor.language_column):
        if optional:
            required.append(optional)
    if isinstance(extractor, MeasureExtractor):
        for optional in (extractor.format_column, extractor.decimal_column, extractor.measure_type_column):
            if optional:
                required.append(optional)
    return list(dict.fromkeys(required))


def check_lookup_shape(df: pd.DataFrame, extractor: AnyLookupExtractor, column_name: str,
                       locales: Iterable[str] = SUPPORTED_LOCALES) -> None:
    """
    Fail before any value matching when the lookup table cannot be normalized.

    Raises:
        LookupShapeError
    """
    locales = list(locales)
    if not extractor.description_columns:
        raise LookupShapeError(column_name, "errors.lookup_table_validation.no_description_columns",
                               "no description column configured")

    if extractor.is_legacy_format:
        missing_config = []
        if not extractor.sort_column:
            missing_config.append("sort")
        for locale in locales:
            if locale not in extractor.description_columns:
                missing_config.append(f"description_{lang_code(locale)}")
            if locale not in extractor.notes_columns:
                missing_config.append(f"notes_{lang_code(locale)}")
        if missing_config:
            raise LookupShapeError(column_name, "errors.lookup_table_validation.missing_columns",
                                   f"legacy lookup tables need {', '.join(missing_config)}",
                                   params={"missing": missing_config})
    elif not extractor.language_column:
        raise LookupShapeError(column_name, "errors.lookup_table_validation.missing_columns",
                               "no language column configured", params={"missing": ["lang"]})

    missing = [col for col in _required_columns(extractor) if col not in df.columns]
    if missing:
        raise LookupShapeError(column_name, "errors.lookup_table_validation.missing_columns",
                               f"columns not found: {', '.join(missing)}", params={"missing": missing})


def _match_locale(value, locales: List[str]) -> Optional[str]:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    lowered = str(value).strip().lower()
    for locale in locales:
        if lowered in (language_tag(locale), lang_code(locale)) or lowered.split("-")[0] == lang_code(locale):
            return locale
    return None


def _frame_for_locale(df: pd.DataFrame, extractor: AnyLookupExtractor, key_name: str, locale: str) -> pd.DataFrame:
    frame = pd.DataFrame({key_name: df[extractor.join_column]})
    frame["language"] = language_tag(locale)
    frame["description"] = df[extractor.description_columns[locale]]
    notes_column = extractor.notes_columns.get(locale)
    frame["notes"] = df[notes_column] if notes_column else None
    frame["sort_order"] = df[extractor.sort_column] if extractor.sort_column else None
    frame["hierarchy"] = df[extractor.hierarchy_column] if extractor.hierarchy_column else None
    if isinstance(extractor, MeasureExtractor):
        frame["format"] = df[extractor.format_column] if extractor.format_column else None
        frame["decimals"] = df[extractor.decimal_column] if extractor.decimal_column else None
        frame["measure_type"] = df[extractor.measure_type_column] if extractor.measure_type_column else None
    return frame


def normalize_lookup_table(df: pd.DataFrame, extractor: AnyLookupExtractor, column_name: str,
                           locales: Iterable[str] = SUPPORTED_LOCALES, key_name: Optional[str] = None) -> pd.DataFrame:
    """
    Normalize an uploaded lookup or measure table.

    Args:
        df (pd.DataFrame): Uploaded table, values as strings
        extractor: Column mapping (legacy or current format)
        column_name (str): Fact table column the table describes
        key_name (str): Name of the key column in the output, defaults to column_name

    Returns:
        pd.DataFrame: one row per code and language

    Raises:
        LookupShapeError: missing columns, languages or duplicate codes
    """
    locales = list(locales)
    key_name = key_name or column_name
    check_lookup_shape(df, extractor, column_name, locales)
    df = df.reset_index(drop=True)

    if extractor.is_legacy_format:
        frames = [_frame_for_locale(df, extractor, key_name, locale) for locale in locales]
        normalized = pd.concat(frames, ignore_index=True)
    else:
        matched = df[extractor.language_column].map(lambda value: _match_locale(value, locales))
        unmatched = int(matched.isna().sum())
        if unmatched:
            logger.warning(f"Dropping {unmatched} lookup rows for {column_name} with an unsupported language")
        frames = []
        for locale in locales:
            subset = df[matched == locale]
            frames.append(_frame_for_locale(subset, extractor, key_name, locale))
        normalized = pd.concat(frames, ignore_index=True)

        keys = set(normalized[key_name].dropna().astype(str).str.strip())
        missing = []
        for locale in locales:
            present = set(normalized.loc[normalized["language"] == language_tag(locale), key_name]
                          .dropna().astype(str).str.strip())
            missing.extend(sorted(f"{key} ({lang_code(locale)})" for key in keys - present))
        if missing:
            raise LookupShapeError(column_name, "errors.lookup_table_validation.missing_languages",
                                   f"codes without a row in every language: {', '.join(missing[:10])}",
                                   params={"missing": missing})

    normalized[key_name] = normalized[key_name].map(lambda v: None if v is None else str(v).strip())
    normalized = normalized[normalized[key_name].notna() & (normalized[key_name] != "")]

    duplicated = normalized.duplicated([key_name, "language"], keep=False)
    if duplicated.any():
        duplicates = sorted(set(normalized.loc[duplicated, key_name]))
        raise LookupShapeError(column_name, "errors.lookup_table_validation.duplicate_keys",
                               f"duplicate codes: {', '.join(duplicates[:10])}", params={"duplicates": duplicates})

    normalized["sort_order"] = pd.to_numeric(normalized["sort_order"], errors="coerce").round().astype("Int64")
    if "decimals" in normalized.columns:
        normalized["decimals"] = pd.to_numeric(normalized["decimals"], errors="coerce").fillna(0).round().astype("Int64")
        normalized["format"] = normalized["format"].map(lambda v: str(v).strip().lower() if v is not None else None)
    normalized["hierarchy"] = np.where(normalized["hierarchy"].isna(), None, normalized["hierarchy"])

    logger.info(f"Normalized lookup table for {column_name}: {len(normalized)} rows")
    return normalized.reset_index(drop=True)
