"""
STATCUBE Lookup Validator

Runs inside a staging cube once the fact table and support tables are loaded,
before any view is created. Every fact value of a joined column must have a
matching key in its support table; numeric dimensions must hold numbers.
Keys no fact row uses are reported as warnings only.
"""

import logging
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from ..core.database import DatabaseManager, quote_identifier
from ..core.errors import UnmatchedValuesError, ValidationError
from ..core.models import DimensionType
from ..reference.note_codes import NOTE_CODES_TABLE, note_code_list_sql
from ..reference.reference_data import ALL_ITEMS_TABLE
from .resolver import FACT_TABLE, JoinContract

logger = logging.getLogger(__name__)

MAX_REPORTED_VALUES = 500

JOINED_KINDS = (DimensionType.LOOKUP_TABLE, DimensionType.DATE_PERIOD, DimensionType.REFERENCE_DATA,
                DimensionType.MEASURE)


class ValidationReport(BaseModel):
    """Outcome of validating one staging cube."""
    errors: List[Any] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class LookupValidator:
    """Checks fact values against the support tables of their columns."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def validate(self, contracts: List[JoinContract]) -> ValidationReport:
        """
        Validate every contract, raising the first failure.

        Raises:
            ValidationError
        """
        report = self.check_all(contracts)
        if report.errors:
            raise report.errors[0]
        return report

    def check_all(self, contracts: List[JoinContract]) -> ValidationReport:
        """Validate every contract, collecting all failures."""
        report = ValidationReport()
        for contract in contracts:
            error = self.check(contract, report)
            if error is not None:
                logger.warning(f"Validation failed for {contract.fact_column}: {error}")
                report.errors.append(error)
        logger.info(f"Validated {len(contracts)} columns: {len(report.errors)} errors, "
                    f"{len(report.warnings)} warnings")
        return report

    def check(self, contract: JoinContract, report: Optional[ValidationReport] = None) -> Optional[ValidationError]:
        if contract.kind == DimensionType.NUMERIC:
            return self._check_numeric(contract)
        if contract.kind == DimensionType.NOTE_CODES:
            return self._check_note_codes(contract)
        if contract.kind == DimensionType.REFERENCE_DATA:
            error = self._check_reference_items(contract)
            if error is not None:
                return error
        if contract.kind in JOINED_KINDS and contract.support_table:
            return self._check_joined(contract, report)
        return None

    def _fact_key(self, contract: JoinContract) -> str:
        return f"CAST(f.{quote_identifier(contract.fact_column)} AS VARCHAR)"

    def _distinct_values(self, query: str) -> List[str]:
        return [row["value"] for row in self.db.execute_query(query)]

    def _unmatched(self, contract: JoinContract, table: str, key_column: str, extra: str = "") -> List[str]:
        fact_key = self._fact_key(contract)
        key = f"l.{quote_identifier(key_column)}"
        return self._distinct_values(f"""
            SELECT DISTINCT {fact_key} AS value
            FROM {FACT_TABLE} AS f
            LEFT JOIN {quote_identifier(table)} AS l ON {fact_key} = {key} {extra}
            WHERE {key} IS NULL AND f.{quote_identifier(contract.fact_column)} IS NOT NULL
            ORDER BY value
        """)

    def _error(self, contract: JoinContract, values: List[str], key: str) -> UnmatchedValuesError:
        return UnmatchedValuesError(contract.fact_column, values[:MAX_REPORTED_VALUES], key=key, total=len(values))

    def _check_joined(self, contract: JoinContract, report: Optional[ValidationReport]) -> Optional[ValidationError]:
        key_column = contract.key_column or contract.fact_column
        unmatched = self._unmatched(contract, contract.support_table, key_column)
        if unmatched:
            if contract.kind == DimensionType.MEASURE:
                key = "errors.measure_validation.unmatched_values"
            elif contract.kind == DimensionType.REFERENCE_DATA:
                key = "errors.dimension_validation.items_not_in_category"
            else:
                key = "errors.dimension_validation.unmatched_values"
            return self._error(contract, unmatched, key)

        if report is not None and contract.kind != DimensionType.DATE_PERIOD:
            unused = self.db.execute_query(f"""
                SELECT COUNT(DISTINCT l.{quote_identifier(key_column)}) AS n
                FROM {quote_identifier(contract.support_table)} AS l
                WHERE l.{quote_identifier(key_column)} NOT IN (
                    SELECT {self._fact_key(contract)} FROM {FACT_TABLE} AS f
                    WHERE f.{quote_identifier(contract.fact_column)} IS NOT NULL
                )
            """)[0]["n"]
            if unused:
                message = f"{unused} lookup keys for {contract.fact_column} are not used by the fact table"
                logger.warning(message)
                report.warnings.append(message)
        return None

    def _check_reference_items(self, contract: JoinContract) -> Optional[ValidationError]:
        if not self.db.table_exists(ALL_ITEMS_TABLE):
            return None
        unknown = self._unmatched(contract, ALL_ITEMS_TABLE, "item_id")
        if unknown:
            return self._error(contract, unknown, "errors.dimension_validation.unknown_reference_data_items")
        return None

    def _check_numeric(self, contract: JoinContract) -> Optional[ValidationError]:
        column = f"f.{quote_identifier(contract.fact_column)}"
        invalid = self._distinct_values(f"""
            SELECT DISTINCT CAST({column} AS VARCHAR) AS value
            FROM {FACT_TABLE} AS f
            WHERE {column} IS NOT NULL AND TRY_CAST({column} AS DOUBLE) IS NULL
            ORDER BY value
        """)
        if invalid:
            return self._error(contract, invalid, "errors.dimension_validation.invalid_numeric")
        return None

    def _check_note_codes(self, contract: JoinContract) -> Optional[ValidationError]:
        codes = note_code_list_sql(f"f.{quote_identifier(contract.fact_column)}")
        unknown = self._distinct_values(f"""
            SELECT DISTINCT code AS value
            FROM (SELECT unnest({codes}) AS code FROM {FACT_TABLE} AS f
                  WHERE f.{quote_identifier(contract.fact_column)} IS NOT NULL) AS cells
            WHERE code <> '' AND code NOT IN (SELECT code FROM {NOTE_CODES_TABLE})
            ORDER BY value
        """)
        if unknown:
            return self._error(contract, unknown, "errors.note_codes.unknown_codes")
        return None
