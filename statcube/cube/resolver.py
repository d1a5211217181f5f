"""
STATCUBE Dimension Resolver

Classifies every fact table column and decides how the cube views join and
display it. The resolver is pure: it reads the revision configuration (and
the distinct codes of date columns) and produces one JoinContract per column.

Join clauses carry a #LANG# placeholder, replaced per view by the language tag
literal so the same contract serves every locale.
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..core.database import quote_identifier, quote_literal
from ..core.errors import ClassificationError, LookupShapeError
from ..core.i18n import SUPPORTED_LOCALES, CatalogTranslator, Translator, language_tag
from ..core.models import (
    DatePeriodExtractor,
    DateReferenceRow,
    DimensionConfig,
    DimensionExtractor,
    DimensionType,
    FactTableColumn,
    FactTableColumnType,
    LookupTableExtractor,
    MeasureExtractor,
    NoteCodesExtractor,
    NumberType,
    NumericExtractor,
    RawExtractor,
    ReferenceDataExtractor,
    RevisionConfig,
    TextExtractor,
)
from ..reference.date_reference import get_date_reference_table
from ..reference.lookup_tables import make_cube_safe_string
from ..reference.measures import MEASURE_TABLE
from ..reference.note_codes import ALL_NOTES_TABLE

logger = logging.getLogger(__name__)

FACT_TABLE = "fact_table"
LANG_PLACEHOLDER = "#LANG#"

# Names the cube uses for its own tables.
RESERVED_TABLES = {FACT_TABLE, MEASURE_TABLE, ALL_NOTES_TABLE, "note_codes", "filter_table", "metadata",
                   "build_log", "reference_data_all", "reference_data_info", "hierarchy", "categories",
                   "category_info", "category_keys", "category_key_info"}

DIMENSION_ROLES = (FactTableColumnType.DIMENSION, FactTableColumnType.TIME)
VIEW_ROLES = DIMENSION_ROLES + (FactTableColumnType.MEASURE, FactTableColumnType.DATA_VALUES,
                                FactTableColumnType.NOTE_CODES)


class JoinContract(BaseModel):
    """How one fact table column is joined, displayed and sorted in the cube views."""
    fact_column: str = Field(..., description="Fact table column")
    column_type: FactTableColumnType = Field(..., description="Semantic role of the column")
    kind: Optional[DimensionType] = Field(None, description="Extractor variant, None for data values")
    support_table: Optional[str] = Field(None, description="Table the column joins to")
    join_clause: Optional[str] = Field(None, description="JOIN clause with a #LANG# placeholder")
    raw_expr: str = Field(..., description="Untransformed value, used by the raw views")
    display_expr_by_locale: Dict[str, str] = Field(default_factory=dict, description="Default view expression")
    notes_expr_by_locale: Optional[Dict[str, str]] = Field(None, description="Notes expression per locale")
    sort_expr: Optional[str] = Field(None, description="ORDER BY expression")
    column_names: Dict[str, str] = Field(default_factory=dict, description="Localized column header")
    key_column: Optional[str] = Field(None, description="Key column of the support table")
    extractor: Optional[DimensionExtractor] = None
    reference_rows: Optional[List[DateReferenceRow]] = None
    lookup_table_file: Optional[str] = None

    def join_for(self, locale: str) -> Optional[str]:
        if self.join_clause is None:
            return None
        return self.join_clause.replace(LANG_PLACEHOLDER, quote_literal(language_tag(locale)))

    def display_for(self, locale: str) -> str:
        return self.display_expr_by_locale.get(locale, self.raw_expr)


def fact_column_sql(column_name: str) -> str:
    return f"{FACT_TABLE}.{quote_identifier(column_name)}"


def fact_key_sql(column_name: str) -> str:
    """Fact value as text, the form every join key is compared in."""
    return f"CAST({fact_column_sql(column_name)} AS VARCHAR)"


def dedupe_names(names: List[str]) -> List[str]:
    """Suffix repeated names with _1, _2, ... keeping the first occurrence as is."""
    seen: Dict[str, int] = {}
    taken = set(names)
    result = []
    for name in names:
        if name not in seen:
            seen[name] = 0
            result.append(name)
            continue
        while True:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
            if candidate not in taken:
                break
        taken.add(candidate)
        result.append(candidate)
    return result


class DimensionResolver:
    """Produces the join contracts of a revision."""

    def __init__(self, locales: Iterable[str] = SUPPORTED_LOCALES, translator: Optional[Translator] = None):
        self.locales = list(locales)
        self.translator = translator or CatalogTranslator()

    def validate_source_assignment(self, columns: List[FactTableColumn]) -> None:
        """
        Check the column roles before anything is resolved.

        Raises:
            ClassificationError: carrying every violated rule
        """
        roles = Counter(col.column_type for col in columns)
        violations = []

        if roles[FactTableColumnType.DATA_VALUES] > 1:
            violations.append("errors.source_assignment.too_many_data_values")
        if roles[FactTableColumnType.DATA_VALUES] == 0:
            violations.append("errors.source_assignment.missing_data_values")
        if roles[FactTableColumnType.MEASURE] > 1:
            violations.append("errors.source_assignment.too_many_measure")
        if roles[FactTableColumnType.NOTE_CODES] > 1:
            violations.append("errors.source_assignment.too_many_footnotes")
        if sum(roles[role] for role in DIMENSION_ROLES) == 0:
            violations.append("errors.source_assignment.missing_dimensions")

        names = [str(col.column_name or "").strip().lower() for col in columns]
        if any(not name for name in names) or len(set(names)) != len(names):
            violations.append("errors.source_assignment.invalid_column_name")

        if violations:
            logger.warning(f"Source assignment rejected: {', '.join(violations)}")
            raise ClassificationError(violations)

    def resolve(self, revision: RevisionConfig,
                raw_codes: Optional[Dict[str, List[str]]] = None) -> List[JoinContract]:
        """
        Resolve every column shown in the views, in fact table order.

        Args:
            revision: Materialized revision configuration
            raw_codes: Distinct values of each date period column, used to generate its reference rows

        Returns:
            List[JoinContract]: dimensions, measure, data values and note codes

        Raises:
            ClassificationError: invalid column roles
            ConfigurationError: unknown date formats
        """
        self.validate_source_assignment(revision.fact_table_columns)
        raw_codes = raw_codes or {}
        support_tables: List[str] = []
        contracts = []

        for column in revision.fact_table_columns:
            if column.column_type not in VIEW_ROLES:
                logger.debug(f"Column {column.column_name} ({column.column_type.value}) is not shown in the views")
                continue
            dimension = revision.dimension_for(column.column_name) or DimensionConfig(
                fact_table_column=column.column_name
            )
            contract = self._resolve_column(column, dimension, raw_codes.get(column.column_name, []), support_tables)
            contracts.append(contract)

        self._assign_column_names(contracts, revision)
        logger.info(f"Resolved {len(contracts)} columns for revision {revision.revision_id}")
        return contracts

    def _support_table(self, column_name: str, taken: List[str]) -> str:
        base = f"{make_cube_safe_string(column_name)}_lookup"
        name = base
        suffix = 0
        while name in taken or name in RESERVED_TABLES:
            suffix += 1
            name = f"{base}_{suffix}"
        taken.append(name)
        return name

    def _resolve_column(self, column: FactTableColumn, dimension: DimensionConfig, codes: List[str],
                        support_tables: List[str]) -> JoinContract:
        name = column.column_name
        if column.column_type == FactTableColumnType.DATA_VALUES:
            return JoinContract(fact_column=name, column_type=column.column_type, raw_expr=fact_column_sql(name))
        if column.column_type == FactTableColumnType.NOTE_CODES:
            return self._note_codes(column, dimension)
        if column.column_type == FactTableColumnType.MEASURE:
            if dimension.extractor is None and dimension.lookup_table_file is None:
                return self._raw(column, RawExtractor())
            return self._measure(column, dimension)

        extractor = dimension.extractor
        if extractor is None:
            if dimension.lookup_table_file:
                raise LookupShapeError(name, "errors.lookup_table_validation.no_description_columns",
                                       "lookup table attached without a column mapping")
            extractor = RawExtractor()

        if isinstance(extractor, RawExtractor):
            return self._raw(column, extractor)
        if isinstance(extractor, TextExtractor):
            return self._text(column, extractor)
        if isinstance(extractor, NumericExtractor):
            return self._numeric(column, extractor)
        if isinstance(extractor, DatePeriodExtractor):
            return self._date_period(column, extractor, codes, self._support_table(name, support_tables))
        if isinstance(extractor, LookupTableExtractor):
            return self._lookup_table(column, dimension, extractor, self._support_table(name, support_tables))
        if isinstance(extractor, ReferenceDataExtractor):
            return self._reference_data(column, extractor, self._support_table(name, support_tables))
        if isinstance(extractor, MeasureExtractor):
            return self._measure(column, dimension)
        if isinstance(extractor, NoteCodesExtractor):
            return self._note_codes(column, dimension)
        raise TypeError(f"Unhandled dimension extractor {type(extractor).__name__}")

    def _raw(self, column: FactTableColumn, extractor: RawExtractor) -> JoinContract:
        expr = fact_column_sql(column.column_name)
        return JoinContract(
            fact_column=column.column_name,
            column_type=column.column_type,
            kind=DimensionType.RAW,
            raw_expr=expr,
            display_expr_by_locale={locale: expr for locale in self.locales},
            sort_expr=expr,
            extractor=extractor
        )

    def _text(self, column: FactTableColumn, extractor: TextExtractor) -> JoinContract:
        expr = fact_key_sql(column.column_name)
        return JoinContract(
            fact_column=column.column_name,
            column_type=column.column_type,
            kind=DimensionType.TEXT,
            raw_expr=fact_column_sql(column.column_name),
            display_expr_by_locale={locale: expr for locale in self.locales},
            sort_expr=expr,
            extractor=extractor
        )

    def _numeric(self, column: FactTableColumn, extractor: NumericExtractor) -> JoinContract:
        number = f"TRY_CAST({fact_column_sql(column.column_name)} AS DOUBLE)"
        if extractor.number_type == NumberType.DECIMAL:
            display = f"printf('%.{extractor.decimal_places}f', {number})"
        else:
            display = f"CAST(ROUND({number}) AS INTEGER)"
        return JoinContract(
            fact_column=column.column_name,
            column_type=column.column_type,
            kind=DimensionType.NUMERIC,
            raw_expr=fact_column_sql(column.column_name),
            display_expr_by_locale={locale: display for locale in self.locales},
            sort_expr=number,
            extractor=extractor
        )

    def _lookup_join(self, column_name: str, table: str, key_column: str) -> str:
        table_sql = quote_identifier(table)
        return (
            f"LEFT JOIN {table_sql} ON {fact_key_sql(column_name)} = {table_sql}.{quote_identifier(key_column)} "
            f"AND {table_sql}.language = {LANG_PLACEHOLDER}"
        )

    def _described(self, column: FactTableColumn, kind: DimensionType, table: str, key_column: str,
                   sort_expr: str, extractor, with_notes: bool = True) -> JoinContract:
        table_sql = quote_identifier(table)
        return JoinContract(
            fact_column=column.column_name,
            column_type=column.column_type,
            kind=kind,
            support_table=table,
            join_clause=self._lookup_join(column.column_name, table, key_column),
            raw_expr=fact_column_sql(column.column_name),
            display_expr_by_locale={locale: f"{table_sql}.description" for locale in self.locales},
            notes_expr_by_locale={locale: f"{table_sql}.notes" for locale in self.locales} if with_notes else None,
            sort_expr=sort_expr,
            key_column=key_column,
            extractor=extractor
        )

    def _date_period(self, column: FactTableColumn, extractor: DatePeriodExtractor, codes: List[str],
                     table: str) -> JoinContract:
        rows = get_date_reference_table(extractor, sorted(str(code) for code in codes if code is not None))
        table_sql = quote_identifier(table)
        contract = self._described(column, DimensionType.DATE_PERIOD, table, column.column_name,
                                   f"{table_sql}.end_date, {table_sql}.sort_order", extractor, with_notes=False)
        contract.reference_rows = rows
        return contract

    def _lookup_table(self, column: FactTableColumn, dimension: DimensionConfig, extractor: LookupTableExtractor,
                      table: str) -> JoinContract:
        if not dimension.lookup_table_file:
            raise LookupShapeError(column.column_name, "errors.lookup_table_validation.no_lookup_table",
                                   "no lookup table file attached")
        table_sql = quote_identifier(table)
        contract = self._described(column, DimensionType.LOOKUP_TABLE, table, column.column_name,
                                   f"{table_sql}.sort_order, {table_sql}.description", extractor)
        contract.lookup_table_file = dimension.lookup_table_file
        return contract

    def _reference_data(self, column: FactTableColumn, extractor: ReferenceDataExtractor,
                        table: str) -> JoinContract:
        table_sql = quote_identifier(table)
        return self._described(column, DimensionType.REFERENCE_DATA, table, column.column_name,
                               f"{table_sql}.sort_order, {table_sql}.description", extractor)

    def _measure(self, column: FactTableColumn, dimension: DimensionConfig) -> JoinContract:
        extractor = dimension.extractor if isinstance(dimension.extractor, MeasureExtractor) else None
        contract = self._described(column, DimensionType.MEASURE, MEASURE_TABLE, "reference",
                                   f"{MEASURE_TABLE}.sort_order, {MEASURE_TABLE}.reference", extractor)
        contract.lookup_table_file = dimension.lookup_table_file
        return contract

    def _note_codes(self, column: FactTableColumn, dimension: DimensionConfig) -> JoinContract:
        expr = f"{ALL_NOTES_TABLE}.description"
        return JoinContract(
            fact_column=column.column_name,
            column_type=FactTableColumnType.NOTE_CODES,
            kind=DimensionType.NOTE_CODES,
            support_table=ALL_NOTES_TABLE,
            join_clause=(
                f"LEFT JOIN {ALL_NOTES_TABLE} ON {ALL_NOTES_TABLE}.code = {fact_key_sql(column.column_name)} "
                f"AND {ALL_NOTES_TABLE}.language = {LANG_PLACEHOLDER}"
            ),
            raw_expr=fact_column_sql(column.column_name),
            display_expr_by_locale={locale: expr for locale in self.locales},
            notes_expr_by_locale={locale: expr for locale in self.locales},
            key_column="code",
            extractor=NoteCodesExtractor()
        )

    def _header(self, contract: JoinContract, dimension: Optional[DimensionConfig], locale: str) -> str:
        if contract.column_type == FactTableColumnType.DATA_VALUES:
            return self.translator.translate("column_headers.data_values", locale)
        if contract.column_type == FactTableColumnType.NOTE_CODES:
            return self.translator.translate("column_headers.notes", locale)
        if dimension is not None and dimension.names.get(locale):
            return dimension.names[locale]
        if contract.column_type == FactTableColumnType.MEASURE and contract.kind == DimensionType.MEASURE:
            return self.translator.translate("column_headers.measure", locale)
        return contract.fact_column

    def _assign_column_names(self, contracts: List[JoinContract], revision: RevisionConfig) -> None:
        for locale in self.locales:
            headers = [self._header(c, revision.dimension_for(c.fact_column), locale) for c in contracts]
            for contract, header in zip(contracts, dedupe_names(headers)):
                contract.column_names[locale] = header
