"""
STATCUBE View Builder

Composes the SQL of the cube views from the resolved join contracts:
- raw_view_<lang>: untransformed codes and values under localized headers
- default_view_<lang>: descriptions for every dimension, formatted data
  values annotated with their note codes, footnote text

The SQL depends only on the contracts and the measure formats, never on the
build, so unchanged inputs give byte identical views.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..core.database import quote_identifier, quote_literal
from ..core.i18n import SUPPORTED_LOCALES, lang_code, language_tag
from ..core.models import DimensionType, FactTableColumnType, ViewType
from ..reference.measures import measure_case_sql
from ..reference.note_codes import annotate_value_sql
from .resolver import DIMENSION_ROLES, FACT_TABLE, JoinContract, fact_key_sql

logger = logging.getLogger(__name__)

FILTER_TABLE = "filter_table"

FILTER_TABLE_SCHEMA = {
    "reference": "VARCHAR",
    "language": "VARCHAR",
    "fact_table_column": "VARCHAR",
    "dimension_name": "VARCHAR",
    "description": "VARCHAR",
    "hierarchy": "VARCHAR",
}

FILTERED_KINDS = (DimensionType.LOOKUP_TABLE, DimensionType.DATE_PERIOD, DimensionType.REFERENCE_DATA,
                  DimensionType.MEASURE)


def view_name(view_type: ViewType, locale: str) -> str:
    """'default', 'cy-GB' -> 'default_view_cy'"""
    return f"{ViewType(view_type).value}_view_{lang_code(locale)}"


class ViewBuilder:
    """Builds the view and filter statements of one cube."""

    def __init__(self, contracts: List[JoinContract], locales=SUPPORTED_LOCALES,
                 measure_formats: Optional[List[Dict[str, Any]]] = None):
        self.contracts = contracts
        self.locales = list(locales)
        self.measure_formats = measure_formats or []

    def _contract(self, column_type: FactTableColumnType) -> Optional[JoinContract]:
        return next((c for c in self.contracts if c.column_type == column_type), None)

    def data_values_expr(self, contract: JoinContract) -> str:
        """Data value formatted per its measure and annotated with its note codes."""
        measure = self._contract(FactTableColumnType.MEASURE)
        if measure is not None and measure.kind == DimensionType.MEASURE:
            value = measure_case_sql(self.measure_formats, contract.raw_expr, fact_key_sql(measure.fact_column))
        else:
            value = f"CAST({contract.raw_expr} AS VARCHAR)"
        notes = self._contract(FactTableColumnType.NOTE_CODES)
        if notes is not None:
            value = annotate_value_sql(value, notes.raw_expr)
        return value

    def _column_expr(self, contract: JoinContract, view_type: ViewType, locale: str) -> str:
        if view_type == ViewType.RAW:
            return contract.raw_expr
        if contract.column_type == FactTableColumnType.DATA_VALUES:
            return self.data_values_expr(contract)
        return contract.display_for(locale)

    def columns(self, locale: str) -> List[Dict[str, Any]]:
        """Header metadata of a view, stored alongside its SQL."""
        return [
            {"index": index, "name": contract.column_names.get(locale, contract.fact_column),
             "source_type": contract.column_type.value}
            for index, contract in enumerate(self.contracts)
        ]

    def select_sql(self, view_type: ViewType, locale: str) -> str:
        selects = [
            f"{self._column_expr(c, view_type, locale)} AS {quote_identifier(c.column_names.get(locale, c.fact_column))}"
            for c in self.contracts
        ]
        joins = [c.join_for(locale) for c in self.contracts if c.join_clause]
        orders = [
            c.sort_expr for c in self.contracts
            if c.sort_expr and c.column_type in DIMENSION_ROLES + (FactTableColumnType.MEASURE,)
        ]
        orders.append(f"{FACT_TABLE}.rowid")

        lines = ["SELECT", "    " + ",\n    ".join(selects), f"FROM {FACT_TABLE}"]
        lines.extend(joins)
        lines.append("ORDER BY " + ", ".join(orders))
        return "\n".join(lines)

    def create_view_sql(self, view_type: ViewType, locale: str) -> str:
        return f"CREATE VIEW {view_name(view_type, locale)} AS\n{self.select_sql(view_type, locale)}"

    def views(self) -> List[Tuple[str, str, List[Dict[str, Any]]]]:
        """(name, create statement, columns) for every view, raw then default per locale."""
        result = []
        for locale in self.locales:
            for view_type in (ViewType.RAW, ViewType.DEFAULT):
                result.append((view_name(view_type, locale), self.create_view_sql(view_type, locale),
                               self.columns(locale)))
        return result

    def filter_table_sql(self, contract: JoinContract, locale: str) -> Optional[str]:
        """Statement adding one dimension's values in one locale to filter_table."""
        if contract.column_type not in DIMENSION_ROLES + (FactTableColumnType.MEASURE,):
            return None
        tag = quote_literal(language_tag(locale))
        fact_column = quote_literal(contract.fact_column)
        name = quote_literal(contract.column_names.get(locale, contract.fact_column))

        if contract.kind in FILTERED_KINDS and contract.support_table:
            table = quote_identifier(contract.support_table)
            key = f"l.{quote_identifier(contract.key_column or contract.fact_column)}"
            return (
                f"INSERT INTO {FILTER_TABLE}\n"
                f"SELECT CAST({key} AS VARCHAR), l.language, {fact_column}, {name}, l.description, "
                f"CAST(l.hierarchy AS VARCHAR)\n"
                f"FROM {table} AS l\n"
                f"WHERE l.language = {tag}\n"
                f"    AND CAST({key} AS VARCHAR) IN (SELECT {fact_key_sql(contract.fact_column)} FROM {FACT_TABLE})\n"
                f"ORDER BY l.sort_order NULLS LAST, 1"
            )

        display = contract.display_for(locale)
        return (
            f"INSERT INTO {FILTER_TABLE}\n"
            f"SELECT DISTINCT {fact_key_sql(contract.fact_column)}, {tag}, {fact_column}, {name}, "
            f"CAST({display} AS VARCHAR), NULL\n"
            f"FROM {FACT_TABLE}\n"
            f"WHERE {contract.raw_expr} IS NOT NULL\n"
            f"ORDER BY 1"
        )

    def filter_statements(self) -> List[str]:
        statements = []
        for contract in self.contracts:
            for locale in self.locales:
                statement = self.filter_table_sql(contract, locale)
                if statement:
                    statements.append(statement)
        return statements
