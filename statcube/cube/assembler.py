"""
STATCUBE Cube Assembler

Builds the cube of one revision:
1. Take the revision build lock, or reject the request
2. Load the fact table and every support table into a fresh staging file
3. Validate fact values against the support tables
4. Create the raw and default views per locale, filter table and metadata
5. Swap the staging file in as the revision's current cube

Failures never escape build_cube: they come back as a BuildResult, and the
previously published cube keeps serving previews.
"""

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

import pandas as pd

from ..core.build_log import BUILD_LOG_COLUMNS
from ..core.config import Config
from ..core.database import DatabaseManager, quote_identifier
from ..core.errors import BuildInProgressError, StatCubeError, StorageError, ValidationError
from ..core.i18n import CatalogTranslator, Translator, cube_error, errors_from_exception
from ..core.logger import Logger, get_build_log_handler
from ..core.models import (
    BuildResult,
    CubeBuildStatus,
    DatePeriodExtractor,
    DimensionType,
    FactTableColumnType,
    LookupTableExtractor,
    MeasureExtractor,
    ReferenceDataExtractor,
    RevisionConfig,
)
from ..core.storage import Storage, load_buffer_with_retry, read_table_buffer
from ..reference.date_reference import date_reference_dataframe, date_reference_schema
from ..reference.lookup_tables import (
    MEASURE_TABLE_SCHEMA,
    detect_lookup_extractor,
    lookup_table_schema,
    normalize_lookup_table,
)
from ..reference.measures import MEASURE_TABLE
from ..reference.note_codes import (
    NOTE_CODES_SCHEMA,
    NOTE_CODES_TABLE,
    all_notes_sql,
    note_code_list_sql,
    note_codes_dataframe,
)
from ..reference.reference_data import ReferenceDataCatalog
from .resolver import FACT_TABLE, DimensionResolver, JoinContract
from .store import CubeStore
from .validator import LookupValidator
from .views import FILTER_TABLE, FILTER_TABLE_SCHEMA, ViewBuilder

METADATA_TABLE = "metadata"
BUILD_LOG_TABLE = "build_log"

BUILD_LOG_SCHEMA = {column: "VARCHAR" for column in BUILD_LOG_COLUMNS}
BUILD_LOG_SCHEMA["timestamp"] = "TIMESTAMP"


class MetadataStore(Protocol):
    def get_revision(self, revision_id: str) -> RevisionConfig:
        ...

    def update_build_status(self, revision_id: str, status: CubeBuildStatus, timestamp: datetime) -> None:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CubeAssembler:
    """
    Orchestrates cube builds.

    Collaborators:
        metadata_store: reads revisions, records build status
        storage: uploaded fact and lookup tables, under the dataset id directory
        reference_data: shared reference data tables, read from storage under
            reference_data.directory when not given
        store: cube files and build locks
    """

    def __init__(self, metadata_store: MetadataStore, storage: Storage, config: Optional[Config] = None,
                 translator: Optional[Translator] = None, reference_data: Optional[ReferenceDataCatalog] = None,
                 store: Optional[CubeStore] = None):
        self.metadata_store = metadata_store
        self.storage = storage
        self.config = config or Config()
        self.locales = self.config.locales
        self.translator = translator or CatalogTranslator()
        self.reference_data = reference_data
        self.store = store or CubeStore(self.config)
        self.resolver = DimensionResolver(self.locales, self.translator)
        self.logger = Logger("statcube.assembler", config=self.config)
        self.build_log = get_build_log_handler()

    def build_cube(self, revision_id: str) -> BuildResult:
        """
        Build and publish the cube of a revision.

        Args:
            revision_id (str): Revision to build

        Returns:
            BuildResult: completed, failed (with errors and retryable flag) or rejected
        """
        started_at = _now()
        build_id = uuid.uuid4().hex
        try:
            with self.store.build_lock(revision_id):
                return self._build_locked(revision_id, build_id, started_at)
        except BuildInProgressError as e:
            self.logger.warning(f"Rejected build of revision {revision_id}: {e}")
            return BuildResult(
                revision_id=revision_id,
                build_id=build_id,
                status=CubeBuildStatus.REJECTED,
                started_at=started_at,
                finished_at=_now(),
                errors=errors_from_exception(self.translator, e, self.locales)
            )

    def _build_locked(self, revision_id: str, build_id: str, started_at: datetime) -> BuildResult:
        ctx = {"build_id": build_id, "revision_id": revision_id}
        clock = time.monotonic()
        self._record_status(revision_id, CubeBuildStatus.BUILDING, started_at)
        self.logger.info(f"Starting cube build {build_id} for revision {revision_id}", **ctx)

        db: Optional[DatabaseManager] = None
        path: Optional[str] = None
        revision: Optional[RevisionConfig] = None
        try:
            path = self.store.build_path(revision_id, build_id)
            db = DatabaseManager(path, config=self.config)
            revision = self.metadata_store.get_revision(revision_id)
            fact_count, warnings = self._assemble(db, revision, build_id, started_at, ctx)
            db.close()
            self.store.swap_in(revision_id, path)
        except StatCubeError as e:
            self.logger.error(f"Cube build {build_id} failed: {e}", phase="failed", **ctx)
            return self._failed(db, path, revision_id, revision, build_id, started_at, clock,
                                errors_from_exception(self.translator, e, self.locales),
                                retryable=isinstance(e, StorageError))
        except _ValidationFailed as e:
            return self._failed(db, path, revision_id, revision, build_id, started_at, clock, e.errors,
                                warnings=e.warnings)
        except Exception as e:
            self.logger.error(f"Unexpected failure in cube build {build_id}: {e}", exc_info=True,
                              phase="failed", **ctx)
            return self._failed(db, path, revision_id, revision, build_id, started_at, clock,
                                [cube_error(self.translator, "cube", "errors.cube_builder.unknown", {}, self.locales)])

        finished_at = _now()
        self._record_status(revision_id, CubeBuildStatus.COMPLETED, finished_at)
        self.logger.info(f"Cube build {build_id} completed: {fact_count} rows", phase="complete", **ctx)
        return BuildResult(
            revision_id=revision_id,
            dataset_id=revision.dataset_id,
            build_id=build_id,
            status=CubeBuildStatus.COMPLETED,
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=round(time.monotonic() - clock, 3),
            fact_count=fact_count,
            warnings=warnings,
            log=self.build_log.drain(build_id)
        )

    def _record_status(self, revision_id: str, status: CubeBuildStatus, timestamp: datetime) -> None:
        try:
            self.metadata_store.update_build_status(revision_id, status, timestamp)
        except Exception as e:
            self.logger.error(f"Unable to record {status.value} status for revision {revision_id}: {e}")

    def _failed(self, db: Optional[DatabaseManager], path: Optional[str], revision_id: str,
                revision: Optional[RevisionConfig], build_id: str, started_at: datetime, clock: float,
                errors: List[Any], retryable: bool = False, warnings: Optional[List[str]] = None) -> BuildResult:
        if db is not None:
            db.close()
        if path is not None:
            self.store.discard(path)
        finished_at = _now()
        self._record_status(revision_id, CubeBuildStatus.FAILED, finished_at)
        return BuildResult(
            revision_id=revision_id,
            dataset_id=revision.dataset_id if revision else None,
            build_id=build_id,
            status=CubeBuildStatus.FAILED,
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=round(time.monotonic() - clock, 3),
            errors=errors,
            warnings=warnings or [],
            retryable=retryable,
            log=self.build_log.drain(build_id)
        )

    def _assemble(self, db: DatabaseManager, revision: RevisionConfig, build_id: str, started_at: datetime,
                  ctx: Dict[str, str]) -> Tuple[int, List[str]]:
        self.resolver.validate_source_assignment(revision.fact_table_columns)

        self.logger.log_phase_start("load", **ctx)
        fact_count = self._load_fact_table(db, revision, ctx)
        revision, lookup_frames = self._load_lookup_tables(revision, ctx)
        raw_codes = self._date_codes(db, revision)
        self.logger.log_phase_complete("load", **ctx)

        self.logger.log_phase_start("resolve", **ctx)
        contracts = self.resolver.resolve(revision, raw_codes)
        self._load_support_tables(db, contracts, lookup_frames, ctx)
        self.logger.log_phase_complete("resolve", **ctx)

        self.logger.log_phase_start("validate", **ctx)
        report = LookupValidator(db).check_all(contracts)
        if not report.valid:
            errors = []
            for error in report.errors:
                errors.extend(errors_from_exception(self.translator, error, self.locales))
            self.logger.error(f"Validation failed with {len(report.errors)} errors", phase="validate", **ctx)
            raise _ValidationFailed(errors, report.warnings)
        if any(c.kind == DimensionType.REFERENCE_DATA for c in contracts):
            ReferenceDataCatalog.drop_all_items(db)
        self.logger.log_phase_complete("validate", **ctx)

        self.logger.log_phase_start("views", **ctx)
        builder = ViewBuilder(contracts, self.locales, self._measure_formats(db, contracts))
        db.create_table(FILTER_TABLE, FILTER_TABLE_SCHEMA)
        db.execute_script(builder.filter_statements())
        metadata: Dict[str, str] = {}
        for name, statement, columns in builder.views():
            db.execute_command(statement)
            metadata[name] = statement
            metadata[f"{name}_columns"] = json.dumps(columns)
            self.logger.info(f"Created view {name}", table_name=name, **ctx)
        self.logger.log_phase_complete("views", **ctx)

        metadata.update({
            "revision": revision.revision_id,
            "dataset_id": revision.dataset_id,
            "build_id": build_id,
            "build_start": started_at.isoformat(),
            "build_finished": _now().isoformat(),
            "build_status": CubeBuildStatus.COMPLETED.value,
            "fact_count": str(fact_count),
            "lookup_tables": json.dumps(sorted(c.support_table for c in contracts if c.support_table)),
            "note_codes": json.dumps(self._used_note_codes(db, contracts)),
        })
        db.create_table(METADATA_TABLE, {"key": "VARCHAR", "value": "VARCHAR"})
        db.insert_rows(METADATA_TABLE, ["key", "value"], [[k, metadata[k]] for k in sorted(metadata)])

        self.logger.info(f"Cube {build_id} ready to publish", phase="publish", **ctx)
        entries = self.build_log.peek(build_id)
        db.create_table(BUILD_LOG_TABLE, BUILD_LOG_SCHEMA)
        rows = []
        for entry in entries:
            row = [entry[column] for column in BUILD_LOG_COLUMNS]
            row[0] = entry["timestamp"].replace(tzinfo=None)
            rows.append(row)
        db.insert_rows(BUILD_LOG_TABLE, BUILD_LOG_COLUMNS, rows)
        return fact_count, report.warnings

    def _load_fact_table(self, db: DatabaseManager, revision: RevisionConfig, ctx: Dict[str, str]) -> int:
        data = load_buffer_with_retry(self.storage, revision.fact_table_file, revision.dataset_id, self.config)
        df = read_table_buffer(data, revision.fact_table_file)

        columns = {}
        for column in revision.fact_table_columns:
            if column.column_name in df.columns:
                series = df[column.column_name]
            elif 0 <= column.column_index < len(df.columns):
                series = df.iloc[:, column.column_index]
            else:
                raise ValidationError(f"Fact table has no column {column.column_name}",
                                      key="errors.fact_table_validation.missing_column",
                                      params={"column": column.column_name}, field=column.column_name)
            columns[column.column_name] = series.reset_index(drop=True)

        fact = pd.DataFrame(columns)
        schema = {c.column_name: c.column_datatype or "VARCHAR" for c in revision.fact_table_columns}
        count = db.load_dataframe(FACT_TABLE, fact, schema=schema)
        self.logger.info(f"Loaded fact table {revision.fact_table_file}", table_name=FACT_TABLE,
                         row_count=count, **ctx)
        return count

    def _load_lookup_tables(self, revision: RevisionConfig,
                            ctx: Dict[str, str]) -> Tuple[RevisionConfig, Dict[str, pd.DataFrame]]:
        """Read and normalize uploaded lookup and measure tables, inferring missing column mappings."""
        frames: Dict[str, pd.DataFrame] = {}
        dimensions = []
        for dimension in revision.dimensions:
            column = next((c for c in revision.fact_table_columns
                           if c.column_name == dimension.fact_table_column), None)
            extractor = dimension.extractor
            is_measure = isinstance(extractor, MeasureExtractor) or (
                column is not None and column.column_type == FactTableColumnType.MEASURE)
            uses_lookup = extractor is None or isinstance(extractor, (LookupTableExtractor, MeasureExtractor))
            if column is None or not dimension.lookup_table_file or not uses_lookup:
                dimensions.append(dimension)
                continue

            name = dimension.fact_table_column
            data = load_buffer_with_retry(self.storage, dimension.lookup_table_file, revision.dataset_id, self.config)
            df = read_table_buffer(data, dimension.lookup_table_file)
            if extractor is None:
                extractor = detect_lookup_extractor(df, name, self.locales, measure=is_measure)
                self.logger.info(f"Detected {extractor.type} mapping for {name}", column=name, **ctx)
            frames[name] = normalize_lookup_table(df, extractor, name, self.locales,
                                                  key_name="reference" if is_measure else name)
            dimensions.append(dimension.model_copy(update={"extractor": extractor}))
        return revision.model_copy(update={"dimensions": dimensions}), frames

    def _date_codes(self, db: DatabaseManager, revision: RevisionConfig) -> Dict[str, List[str]]:
        codes = {}
        for dimension in revision.dimensions:
            if not isinstance(dimension.extractor, DatePeriodExtractor):
                continue
            column = quote_identifier(dimension.fact_table_column)
            rows = db.execute_query(
                f"SELECT DISTINCT CAST({column} AS VARCHAR) AS code FROM {FACT_TABLE} "
                f"WHERE {column} IS NOT NULL ORDER BY code"
            )
            codes[dimension.fact_table_column] = [row["code"] for row in rows]
        return codes

    def _load_support_tables(self, db: DatabaseManager, contracts: List[JoinContract],
                             lookup_frames: Dict[str, pd.DataFrame], ctx: Dict[str, str]) -> None:
        catalog: Optional[ReferenceDataCatalog] = None
        for contract in contracts:
            name = contract.fact_column
            if contract.kind == DimensionType.DATE_PERIOD:
                df = date_reference_dataframe(contract.reference_rows or [], contract.extractor, name,
                                              self.locales, self.translator)
                db.load_dataframe(contract.support_table, df, schema=date_reference_schema(name))
            elif contract.kind == DimensionType.LOOKUP_TABLE:
                db.load_dataframe(contract.support_table, lookup_frames[name], schema=lookup_table_schema(name))
            elif contract.kind == DimensionType.MEASURE:
                df = lookup_frames.get(name)
                if df is None:
                    df = pd.DataFrame(columns=list(MEASURE_TABLE_SCHEMA))
                db.load_dataframe(MEASURE_TABLE, df, schema=MEASURE_TABLE_SCHEMA)
            elif contract.kind == DimensionType.REFERENCE_DATA:
                if catalog is None:
                    catalog = self._reference_catalog()
                    catalog.load_into(db)
                extractor: ReferenceDataExtractor = contract.extractor
                catalog.build_lookup(db, name, contract.support_table, extractor.category_keys,
                                                 self.locales)
            elif contract.kind == DimensionType.NOTE_CODES:
                db.load_dataframe(NOTE_CODES_TABLE, note_codes_dataframe(self.locales, self.translator),
                                  schema=NOTE_CODES_SCHEMA)
                db.execute_command(all_notes_sql(name, FACT_TABLE))
            else:
                continue
            self.logger.info(f"Loaded support table {contract.support_table} for {name}",
                             table_name=contract.support_table, column=name, **ctx)

    def _reference_catalog(self) -> ReferenceDataCatalog:
        if self.reference_data is not None:
            return self.reference_data
        return ReferenceDataCatalog.from_storage(self.storage, self.config.get("reference_data.directory"),
                                                 self.config)

    def _measure_formats(self, db: DatabaseManager, contracts: List[JoinContract]) -> List[Dict[str, Any]]:
        if not any(c.kind == DimensionType.MEASURE for c in contracts):
            return []
        return db.execute_query(
            f"SELECT reference, min(format) AS format, max(decimals) AS decimals FROM {MEASURE_TABLE} "
            f"GROUP BY reference ORDER BY reference"
        )

    def _used_note_codes(self, db: DatabaseManager, contracts: List[JoinContract]) -> List[str]:
        notes = next((c for c in contracts if c.kind == DimensionType.NOTE_CODES), None)
        if notes is None:
            return []
        codes = note_code_list_sql(quote_identifier(notes.fact_column))
        rows = db.execute_query(
            f"SELECT DISTINCT code FROM (SELECT unnest({codes}) AS code FROM {FACT_TABLE}) AS cells "
            f"WHERE code IS NOT NULL AND code <> '' ORDER BY code"
        )
        return [row["code"] for row in rows]


class _ValidationFailed(Exception):
    """Carries every validation error of a build back to build_cube."""

    def __init__(self, errors: List[Any], warnings: List[str]):
        super().__init__(f"{len(errors)} validation errors")
        self.errors = errors
        self.warnings = warnings
