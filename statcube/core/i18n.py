"""
STATCUBE Translation Boundary

The engine never formats user-facing text itself. Every user-facing string is a
translation key plus params, resolved through an injected Translator at the
boundary. CatalogTranslator ships a small English/Welsh catalog covering the
keys the engine emits; callers with their own string tables pass their own.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .errors import StatCubeError
from .models import CubeError, ErrorMessage, UserMessage

logger = logging.getLogger(__name__)

SUPPORTED_LOCALES = ["en-GB", "cy-GB"]


def lang_code(locale: str) -> str:
    """'cy-GB' -> 'cy'. Used for view suffixes."""
    return locale.lower().split('-')[0]


def language_tag(locale: str) -> str:
    """'cy-GB' -> 'cy-gb'. Used for language columns inside the cube."""
    return locale.lower()


class Translator(Protocol):
    def translate(self, key: str, lang: str, **params: Any) -> str:
        ...


DEFAULT_CATALOG: Dict[str, Dict[str, str]] = {
    "en": {
        "column_headers.data_values": "Data values",
        "column_headers.notes": "Notes",
        "column_headers.measure": "Measure",
        "date_format.quarter_abbreviation": "Q",
        "errors.page_size": "Page size must be between {min_page_size} and {max_page_size}",
        "errors.page_number_to_high": "Page number must be {page_number} or less",
        "errors.page_number_to_low": "Page number must be 1 or more",
        "errors.no_cube": "No cube has been built for this revision",
        "errors.source_assignment.too_many_data_values": "Only one column can contain data values",
        "errors.source_assignment.missing_data_values": "One column must contain data values",
        "errors.source_assignment.too_many_measure": "Only one column can contain the measure",
        "errors.source_assignment.too_many_footnotes": "Only one column can contain note codes",
        "errors.source_assignment.missing_dimensions": "At least one column must be a dimension",
        "errors.source_assignment.invalid_column_name": "Every column must have a unique name",
        "errors.dimension_validation.unmatched_values":
            "{count} values in {column} could not be matched to the lookup table",
        "errors.dimension_validation.unknown_reference_data_items":
            "{count} values in {column} are not known reference data items",
        "errors.dimension_validation.items_not_in_category":
            "{count} values in {column} are not in the selected reference data categories",
        "errors.dimension_validation.invalid_numeric": "{count} values in {column} are not numbers",
        "errors.measure_validation.unmatched_values":
            "{count} values in {column} could not be matched to the measure table",
        "errors.note_codes.unknown_codes": "{count} note codes in {column} are not recognised",
        "errors.lookup_table_validation.missing_columns": "The lookup table for {column} is missing columns",
        "errors.lookup_table_validation.no_description_columns":
            "The lookup table for {column} has no description column",
        "errors.lookup_table_validation.missing_languages":
            "The lookup table for {column} is missing descriptions in some languages",
        "errors.lookup_table_validation.duplicate_keys": "The lookup table for {column} contains duplicate codes",
        "errors.lookup_table_validation.no_lookup_table": "No lookup table has been uploaded for {column}",
        "errors.fact_table_validation.missing_column": "The data table has no column {column}",
        "errors.date_format.unknown_year_format": "Unknown year format",
        "errors.date_format.unknown_quarter_format": "Unknown quarter format",
        "errors.date_format.unknown_month_format": "Unknown month format",
        "errors.date_format.unknown_date_format": "Unknown Date Format. Format given: {format}",
        "errors.date_format.unparseable_date": "Unable to parse date based on supplied format of {format}.",
        "errors.storage.unavailable": "The uploaded files could not be read, please try again",
        "errors.cube_builder.engine_failure": "Something went wrong building the cube",
        "errors.cube_builder.build_in_progress": "This revision is already being built",
        "errors.cube_builder.unknown": "Something went wrong building the cube",
        "note_codes.average": "Average",
        "note_codes.break_in_series": "Break in series",
        "note_codes.confidential": "Confidential information",
        "note_codes.estimated": "Estimated",
        "note_codes.forecast": "Forecast",
        "note_codes.low_figure": "Low figure",
        "note_codes.not_statistically_significant": "Not statistically significant",
        "note_codes.provisional": "Provisional",
        "note_codes.revised": "Revised",
        "note_codes.statistically_significant_at_level_1": "Statistically significant at level 1",
        "note_codes.statistically_significant_at_level_2": "Statistically significant at level 2",
        "note_codes.statistically_significant_at_level_3": "Statistically significant at level 3",
        "note_codes.total": "Total",
        "note_codes.low_reliability": "Low reliability",
        "note_codes.not_recorded": "Not recorded",
        "note_codes.missing_data": "Missing data",
        "note_codes.not_applicable": "Not applicable",
    },
    "cy": {
        "column_headers.data_values": "Gwerthoedd data",
        "column_headers.notes": "Nodiadau",
        "column_headers.measure": "Mesur",
        "date_format.quarter_abbreviation": "Ch",
        "errors.page_size": "Rhaid i faint y dudalen fod rhwng {min_page_size} a {max_page_size}",
        "errors.page_number_to_high": "Rhaid i rif y dudalen fod yn {page_number} neu lai",
        "errors.page_number_to_low": "Rhaid i rif y dudalen fod yn 1 neu fwy",
        "errors.no_cube": "Nid oes ciwb wedi'i adeiladu ar gyfer y diwygiad hwn",
        "errors.source_assignment.too_many_data_values": "Dim ond un golofn all gynnwys gwerthoedd data",
        "errors.source_assignment.missing_data_values": "Rhaid i un golofn gynnwys gwerthoedd data",
        "errors.source_assignment.too_many_measure": "Dim ond un golofn all gynnwys y mesur",
        "errors.source_assignment.too_many_footnotes": "Dim ond un golofn all gynnwys codau nodiadau",
        "errors.source_assignment.missing_dimensions": "Rhaid i o leiaf un golofn fod yn ddimensiwn",
        "errors.source_assignment.invalid_column_name": "Rhaid i bob colofn gael enw unigryw",
        "errors.dimension_validation.unmatched_values":
            "Nid oedd modd paru {count} o werthoedd yn {column} gyda'r tabl chwilio",
        "errors.dimension_validation.unknown_reference_data_items":
            "Nid yw {count} o werthoedd yn {column} yn eitemau data cyfeirio hysbys",
        "errors.dimension_validation.items_not_in_category":
            "Nid yw {count} o werthoedd yn {column} yn y categorïau data cyfeirio a ddewiswyd",
        "errors.dimension_validation.invalid_numeric": "Nid yw {count} o werthoedd yn {column} yn rhifau",
        "errors.measure_validation.unmatched_values":
            "Nid oedd modd paru {count} o werthoedd yn {column} gyda'r tabl mesur",
        "errors.note_codes.unknown_codes": "Nid yw {count} o godau nodiadau yn {column} yn cael eu hadnabod",
        "errors.lookup_table_validation.missing_columns": "Mae colofnau ar goll o'r tabl chwilio ar gyfer {column}",
        "errors.lookup_table_validation.no_description_columns":
            "Nid oes colofn disgrifiad yn y tabl chwilio ar gyfer {column}",
        "errors.lookup_table_validation.missing_languages":
            "Mae disgrifiadau ar goll mewn rhai ieithoedd yn y tabl chwilio ar gyfer {column}",
        "errors.lookup_table_validation.duplicate_keys": "Mae codau dyblyg yn y tabl chwilio ar gyfer {column}",
        "errors.lookup_table_validation.no_lookup_table": "Nid oes tabl chwilio wedi'i lwytho i fyny ar gyfer {column}",
        "errors.fact_table_validation.missing_column": "Nid oes colofn {column} yn y tabl data",
        "errors.date_format.unknown_year_format": "Fformat blwyddyn anhysbys",
        "errors.date_format.unknown_quarter_format": "Fformat chwarter anhysbys",
        "errors.date_format.unknown_month_format": "Fformat mis anhysbys",
        "errors.date_format.unknown_date_format": "Fformat dyddiad anhysbys. Fformat a roddwyd: {format}",
        "errors.date_format.unparseable_date": "Methu dosrannu dyddiad yn seiliedig ar y fformat {format}.",
        "errors.storage.unavailable": "Nid oedd modd darllen y ffeiliau a lanlwythwyd, rhowch gynnig arall arni",
        "errors.cube_builder.engine_failure": "Aeth rhywbeth o'i le wrth adeiladu'r ciwb",
        "errors.cube_builder.build_in_progress": "Mae'r diwygiad hwn eisoes yn cael ei adeiladu",
        "errors.cube_builder.unknown": "Aeth rhywbeth o'i le wrth adeiladu'r ciwb",
        "note_codes.average": "Cyfartaledd",
        "note_codes.break_in_series": "Toriad yn y gyfres",
        "note_codes.confidential": "Gwybodaeth gyfrinachol",
        "note_codes.estimated": "Amcangyfrif",
        "note_codes.forecast": "Rhagolwg",
        "note_codes.low_figure": "Ffigur isel",
        "note_codes.not_statistically_significant": "Ddim yn ystadegol arwyddocaol",
        "note_codes.provisional": "Dros dro",
        "note_codes.revised": "Diwygiedig",
        "note_codes.statistically_significant_at_level_1": "Ystadegol arwyddocaol ar lefel 1",
        "note_codes.statistically_significant_at_level_2": "Ystadegol arwyddocaol ar lefel 2",
        "note_codes.statistically_significant_at_level_3": "Ystadegol arwyddocaol ar lefel 3",
        "note_codes.total": "Cyfanswm",
        "note_codes.low_reliability": "Dibynadwyedd isel",
        "note_codes.not_recorded": "Heb ei gofnodi",
        "note_codes.missing_data": "Data ar goll",
        "note_codes.not_applicable": "Amherthnasol",
    }
}


class CatalogTranslator:
    """Translator backed by an in-memory catalog of str.format templates."""

    def __init__(self, catalog: Optional[Dict[str, Dict[str, str]]] = None, fallback_lang: str = "en"):
        self.catalog = catalog if catalog is not None else DEFAULT_CATALOG
        self.fallback_lang = fallback_lang

    def translate(self, key: str, lang: str, **params: Any) -> str:
        lang = lang_code(lang)
        template = self.catalog.get(lang, {}).get(key)
        if template is None:
            template = self.catalog.get(self.fallback_lang, {}).get(key)
        if template is None:
            logger.debug(f"No translation for {key} ({lang})")
            return key
        try:
            return template.format(**params)
        except (KeyError, IndexError):
            logger.warning(f"Missing params for translation {key}: {params}")
            return template


def user_messages(translator: Translator, key: str, params: Dict[str, Any],
                  locales: Iterable[str] = SUPPORTED_LOCALES) -> List[UserMessage]:
    """Render one key into a message per locale."""
    return [UserMessage(lang=locale, message=translator.translate(key, locale, **params)) for locale in locales]


def cube_error(translator: Translator, field: str, key: str, params: Optional[Dict[str, Any]] = None,
               locales: Iterable[str] = SUPPORTED_LOCALES) -> CubeError:
    """Build one entry of the bilingual error wire shape."""
    params = params or {}
    return CubeError(
        field=field,
        user_message=user_messages(translator, key, params, locales),
        message=ErrorMessage(key=key, params=params)
    )


def errors_from_exception(translator: Translator, error: StatCubeError,
                          locales: Iterable[str] = SUPPORTED_LOCALES) -> List[CubeError]:
    """Render an engine exception into wire-shape errors, one per violated key."""
    violations = getattr(error, "violations", None) or [error.key]
    return [cube_error(translator, error.field, key, error.params, locales) for key in violations]
