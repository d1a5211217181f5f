"""
STATCUBE Date Reference Generator

Turns a date period extractor and the raw codes found in a fact table column
into the reference rows the cube joins against:
- Periodic years (calendar, financial, tax, academic, meteorological) broken
  down into quarters and/or months
- Points in time, one row per distinct day

Generation is pure and deterministic: no I/O, same input gives the same rows.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from ..core.errors import (
    UnknownDateFormat,
    UnknownMonthFormat,
    UnknownQuarterFormat,
    UnknownYearFormat,
    UnparseableDateError,
)
from ..core.i18n import SUPPORTED_LOCALES, CatalogTranslator, Translator, lang_code, language_tag
from ..core.models import DatePeriodExtractor, DateReferenceRow, DateType, PeriodKind

logger = logging.getLogger(__name__)

YEAR_START: Dict[PeriodKind, Tuple[int, int]] = {
    PeriodKind.CALENDAR: (1, 1),
    PeriodKind.FINANCIAL: (4, 1),
    PeriodKind.TAX: (4, 6),
    PeriodKind.ACADEMIC: (9, 1),
    PeriodKind.METEOROLOGICAL: (3, 1),
}

MONTH_ABBREVIATIONS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

MONTH_NAMES: Dict[str, List[str]] = {
    "en": ["January", "February", "March", "April", "May", "June", "July",
           "August", "September", "October", "November", "December"],
    "cy": ["Ionawr", "Chwefror", "Mawrth", "Ebrill", "Mai", "Mehefin", "Gorffennaf",
           "Awst", "Medi", "Hydref", "Tachwedd", "Rhagfyr"],
}

QUARTER_FORMATS = {
    "QX": "{year}Q{n}",
    "_QX": "{year}_Q{n}",
    "X": "{year}{n}",
    "_X": "{year}_{n}",
    "-X": "{year}-{n}",
}

# Case matters here: MMM and mMM differ only by case.
MONTH_FORMATS = ("MMM", "mMM", "mm")

POINT_IN_TIME_FORMATS = {
    "dd/MM/yyyy": "%d/%m/%Y",
    "dd/MM/yyyy hh:mm:ss": "%d/%m/%Y %H:%M:%S",
    "dd-MM-yyyy": "%d-%m-%Y",
    "yyyy-MM-dd": "%Y-%m-%d",
    "yyyyMMdd": "%Y%m%d",
    "DD/MM/YYYY": "%d/%m/%Y",
    "DD/MM/YYYY HH:MM:SS": "%d/%m/%Y %H:%M:%S",
    "DD-MM-YYYY": "%d-%m-%Y",
    "YYYY-MM-DD": "%Y-%m-%d",
    "YYYYMMDD": "%Y%m%d",
}

DATE_REFERENCE_SCHEMA = {
    "language": "VARCHAR",
    "description": "VARCHAR",
    "hierarchy": "VARCHAR",
    "date_type": "VARCHAR",
    "start_date": "TIMESTAMP",
    "end_date": "TIMESTAMP",
    "sort_order": "INTEGER",
}


def year_label(year_format: Optional[str], start_year: int) -> str:
    """
    Render the code of the year starting in start_year.

    Args:
        year_format (str): Year token; defaults to YYYY for every year type
        start_year (int): Calendar year in which the period starts

    Returns:
        str: e.g. '2023', '202324', '2023/24', '2023-2024'
    """
    if year_format is None:
        year_format = "YYYY"
    end_year = start_year + 1
    short_end = f"{end_year % 100:02d}"
    token = year_format.upper()

    if token == "YYYY":
        return f"{start_year}"
    if token == "YYYYYY":
        return f"{start_year}{short_end}"
    if token == "YYYY/YY":
        return f"{start_year}/{short_end}"
    if token == "YYYY-YY":
        return f"{start_year}-{short_end}"
    if token == "YYYYYYYY":
        return f"{start_year}{end_year}"
    if token == "YYYY/YYYY":
        return f"{start_year}/{end_year}"
    if token == "YYYY-YYYY":
        return f"{start_year}-{end_year}"
    raise UnknownYearFormat()


def quarter_code(quarter_format: str, year: str, quarter: int) -> str:
    template = QUARTER_FORMATS.get(quarter_format.upper())
    if template is None:
        raise UnknownQuarterFormat()
    return template.format(year=year, n=quarter)


def month_code(month_format: str, year: str, month: int) -> str:
    """Month codes use the calendar month number, whatever the year type."""
    if month_format == "MMM":
        return f"{year}{MONTH_ABBREVIATIONS[month - 1]}"
    if month_format == "mMM":
        return f"{year}{MONTH_ABBREVIATIONS[month - 1].lower()}"
    if month_format == "mm":
        return f"{year}{month:02d}"
    raise UnknownMonthFormat()


def _validate_formats(extractor: DatePeriodExtractor) -> None:
    if extractor.is_point_in_time:
        if extractor.date_format not in POINT_IN_TIME_FORMATS:
            raise UnknownDateFormat(str(extractor.date_format))
        return
    year_label(extractor.year_format, 2000)
    if extractor.quarter_format is not None:
        quarter_code(extractor.quarter_format, "2000", 1)
    if extractor.month_format is not None:
        month_code(extractor.month_format, "2000", 1)


def _year_range(raw_codes: Iterable) -> Optional[Tuple[int, int]]:
    years = []
    for code in raw_codes:
        if code is None:
            continue
        prefix = str(code).strip()[:4]
        if len(prefix) == 4 and prefix.isdigit():
            years.append(int(prefix))
    if not years:
        return None
    return min(years), max(years)


def _period_end(start: pd.Timestamp, months: int) -> pd.Timestamp:
    return start + pd.DateOffset(months=months) - pd.Timedelta(seconds=1)


def _row(code: str, start: pd.Timestamp, months: int, date_type: DateType,
         parent: Optional[str] = None) -> DateReferenceRow:
    return DateReferenceRow(
        date_code=code,
        start=start.to_pydatetime(),
        end=_period_end(start, months).to_pydatetime(),
        type=date_type,
        parent_code=parent
    )


def _periodic_rows(extractor: DatePeriodExtractor, raw_codes: Iterable) -> List[DateReferenceRow]:
    year_range = _year_range(raw_codes)
    if year_range is None:
        logger.warning("No four digit years found in the raw codes, date reference table is empty")
        return []

    start_month, start_day = YEAR_START[extractor.period_kind]
    fifth_quarter = extractor.quarter_format is not None and extractor.quarter_total_is_fifth_quarter
    rows: List[DateReferenceRow] = []

    for year in range(year_range[0], year_range[1] + 1):
        year_start = pd.Timestamp(year=year, month=start_month, day=start_day, tz="UTC")
        label = year_label(extractor.year_format, year)

        if fifth_quarter:
            year_parent = quarter_code(extractor.quarter_format, label, 5)
        else:
            rows.append(_row(label, year_start, 12, DateType.YEAR))
            year_parent = label

        if extractor.quarter_format is not None:
            for quarter in range(1, 5):
                quarter_start = year_start + pd.DateOffset(months=3 * (quarter - 1))
                code = quarter_code(extractor.quarter_format, label, quarter)
                rows.append(_row(code, quarter_start, 3, DateType.QUARTER, year_parent))
                if extractor.month_format is not None:
                    rows.extend(_month_rows(extractor.month_format, label, quarter_start, 3, code))
            if fifth_quarter:
                rows.append(_row(year_parent, year_start, 12, DateType.YEAR))
        elif extractor.month_format is not None:
            rows.extend(_month_rows(extractor.month_format, label, year_start, 12, year_parent))

    return rows


def _month_rows(month_format: str, label: str, first_month: pd.Timestamp, count: int,
                parent: str) -> List[DateReferenceRow]:
    rows = []
    for offset in range(count):
        month_start = first_month + pd.DateOffset(months=offset)
        rows.append(_row(month_code(month_format, label, month_start.month), month_start, 1, DateType.MONTH, parent))
    return rows


def _point_in_time_rows(extractor: DatePeriodExtractor, raw_codes: Iterable) -> List[DateReferenceRow]:
    strftime_format = POINT_IN_TIME_FORMATS[extractor.date_format]
    rows = []
    for code in raw_codes:
        if code is None or str(code).strip() == "":
            continue
        value = str(code).strip()
        try:
            parsed = pd.to_datetime(value, format=strftime_format)
        except (ValueError, TypeError):
            raise UnparseableDateError(extractor.date_format, value)
        day_start = parsed.normalize().tz_localize("UTC")
        rows.append(DateReferenceRow(
            date_code=str(code),
            start=day_start.to_pydatetime(),
            end=(day_start + pd.Timedelta(days=1) - pd.Timedelta(seconds=1)).to_pydatetime(),
            type=DateType.SPECIFIC_DAY
        ))
    return rows


def get_date_reference_table(extractor: DatePeriodExtractor, raw_codes: Iterable) -> List[DateReferenceRow]:
    """
    Generate the date reference rows for a date period dimension.

    Args:
        extractor (DatePeriodExtractor): The dimension's period rules
        raw_codes: The distinct values found in the fact table column

    Returns:
        List[DateReferenceRow]: rows unique by date_code, year -> quarters -> months within each year

    Raises:
        ConfigurationError: unknown year, quarter, month or date format
        UnparseableDateError: a point in time value does not match the date format
    """
    _validate_formats(extractor)
    codes = list(raw_codes)

    if extractor.is_point_in_time:
        rows = _point_in_time_rows(extractor, codes)
    else:
        rows = _periodic_rows(extractor, codes)

    unique_rows = []
    seen = set()
    for row in rows:
        if row.date_code in seen:
            continue
        seen.add(row.date_code)
        unique_rows.append(row)

    logger.info(f"Generated {len(unique_rows)} date reference rows ({extractor.period_kind.value})")
    return unique_rows


def _period_start_year(row: DateReferenceRow, period_kind: PeriodKind) -> int:
    start_month, start_day = YEAR_START[period_kind]
    if (row.start.month, row.start.day) >= (start_month, start_day):
        return row.start.year
    return row.start.year - 1


def year_description(start_year: int, period_kind: PeriodKind) -> str:
    if period_kind == PeriodKind.CALENDAR:
        return f"{start_year}"
    return f"{start_year}-{(start_year + 1) % 100:02d}"


def describe_row(row: DateReferenceRow, period_kind: PeriodKind, locale: str,
                 translator: Optional[Translator] = None) -> str:
    """Human readable description of a reference row in one locale."""
    if row.type == DateType.SPECIFIC_DAY:
        return row.start.strftime("%d/%m/%Y")

    year_desc = year_description(_period_start_year(row, period_kind), period_kind)
    if row.type == DateType.YEAR:
        return year_desc
    if row.type == DateType.QUARTER:
        start_month, _ = YEAR_START[period_kind]
        quarter = ((row.start.month - start_month) % 12) // 3 + 1
        translator = translator or CatalogTranslator()
        abbreviation = translator.translate("date_format.quarter_abbreviation", locale)
        return f"{abbreviation}{quarter} {year_desc}"

    names = MONTH_NAMES.get(lang_code(locale), MONTH_NAMES["en"])
    return f"{names[row.start.month - 1]} {row.start.year}"


def date_reference_dataframe(rows: List[DateReferenceRow], extractor: DatePeriodExtractor, column_name: str,
                             locales: Iterable[str] = SUPPORTED_LOCALES,
                             translator: Optional[Translator] = None) -> pd.DataFrame:
    """
    Expand reference rows into the per-locale lookup table joined by the cube.

    Returns:
        pd.DataFrame: columns (<column_name>, language, description, hierarchy,
        date_type, start_date, end_date, sort_order); timestamps are naive UTC
    """
    period_kind = PeriodKind.CALENDAR if extractor.is_point_in_time else extractor.period_kind
    records = []
    for sort_order, row in enumerate(rows):
        for locale in locales:
            records.append({
                column_name: row.date_code,
                "language": language_tag(locale),
                "description": describe_row(row, period_kind, locale, translator),
                "hierarchy": row.parent_code,
                "date_type": row.type.value,
                "start_date": row.start.replace(tzinfo=None),
                "end_date": row.end.replace(tzinfo=None),
                "sort_order": sort_order,
            })
    columns = [column_name, "language", "description", "hierarchy", "date_type", "start_date", "end_date",
               "sort_order"]
    return pd.DataFrame(records, columns=columns)


def date_reference_schema(column_name: str) -> Dict[str, str]:
    schema = {column_name: "VARCHAR"}
    schema.update(DATE_REFERENCE_SCHEMA)
    return schema
