"""
Tests for STATCUBE Cube Assembler

This module builds cubes end to end from the sample revision held in the
in-memory storage and metadata store fakes.
"""

import json
import os
import threading

import pytest

from statcube.core.database import DatabaseManager
from statcube.core.models import (
    CubeBuildStatus,
    DatePeriodExtractor,
    DimensionConfig,
    FactTableColumn,
    LookupTableExtractor,
    ReferenceDataExtractor,
)
from statcube.cube.assembler import CubeAssembler
from statcube.cube.store import CubeStore
from statcube.reference.reference_data import REFERENCE_DATA_SCHEMAS

from tests.conftest import AREA_CSV


@pytest.fixture
def assembler(metadata_store, storage, config, cube_store):
    return CubeAssembler(metadata_store, storage, config=config, store=cube_store)


REFERENCE_ITEMS_CSV = """item_id,version_no,sort_order,category_key
W1,1,1,Wales
W2,1,2,Wales
E1,1,3,England
"""

REFERENCE_INFO_CSV = """item_id,version_no,category_key,lang,description,notes
W1,1,Wales,en-gb,Cardiff,
W1,1,Wales,cy-gb,Caerdydd,
W2,1,Wales,en-gb,Swansea,
W2,1,Wales,cy-gb,Abertawe,
E1,1,England,en-gb,Bristol,
E1,1,England,cy-gb,Bryste,
"""


def add_reference_data(storage):
    """Shared tables under reference-data; the ones not needed here hold only a header."""
    for name, schema in REFERENCE_DATA_SCHEMAS.items():
        storage.files[("reference-data", f"{name}.csv")] = (",".join(schema) + "\n").encode("utf-8")
    storage.files[("reference-data", "reference_data.csv")] = REFERENCE_ITEMS_CSV.encode("utf-8")
    storage.files[("reference-data", "reference_data_info.csv")] = REFERENCE_INFO_CSV.encode("utf-8")


def use_reference_data_for_area(revision):
    revision.dimensions[0] = DimensionConfig(fact_table_column="Area", names={"en-GB": "Area", "cy-GB": "Ardal"},
                                             extractor=ReferenceDataExtractor(category_keys=[]))


def query(cube_store, config, sql):
    with DatabaseManager(cube_store.current_path("rev1"), read_only=True, config=config) as db:
        return db.execute_rows(sql)["rows"]


def metadata(cube_store, config):
    return {key: value for key, value in query(cube_store, config, "SELECT key, value FROM metadata")}


class TestSuccessfulBuild:
    """Test cases for a clean build of the sample revision."""

    def test_build_completes(self, assembler, metadata_store):
        """Test the result and the recorded statuses."""
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.COMPLETED
        assert result.succeeded
        assert result.dataset_id == "ds1"
        assert result.fact_count == 6
        assert result.errors == []
        assert result.log
        assert metadata_store.statuses("rev1") == [CubeBuildStatus.BUILDING, CubeBuildStatus.COMPLETED]

    def test_unused_lookup_key_is_a_warning(self, assembler):
        """Test the area W in the lookup but not in the data."""
        result = assembler.build_cube("rev1")
        assert result.warnings == ["1 lookup keys for Area are not used by the fact table"]

    def test_default_view(self, assembler, cube_store, config):
        """Test descriptions, formatted values and footnotes."""
        assembler.build_cube("rev1")
        rows = query(cube_store, config, "SELECT * FROM default_view_en")
        assert len(rows) == 6
        assert rows[0] == ["Cardiff", "2023-24", "Count", "1,235 [p]", "Provisional"]
        swansea = [row for row in rows if row[0] == "Swansea" and row[1] == "2023-24"][0]
        assert swansea[2:] == ["Rate", "12.35 [a] [r]", "Average, Revised"]
        assert [row[0] for row in rows] == ["Cardiff", "Cardiff", "Swansea", "Swansea", "Bristol", "Bristol"]

    def test_welsh_view(self, assembler, cube_store, config):
        assembler.build_cube("rev1")
        rows = query(cube_store, config, "SELECT * FROM default_view_cy")
        assert rows[0][0] == "Caerdydd"
        assert rows[0][2] == "Cyfrif"
        assert rows[0][4] == "Dros dro"

    def test_raw_view(self, assembler, cube_store, config):
        """Test the raw view keeps codes and values untouched."""
        assembler.build_cube("rev1")
        rows = query(cube_store, config, "SELECT * FROM raw_view_en")
        assert rows[0] == ["W1", "202324", "count", "1234.5", "p"]

    def test_metadata(self, assembler, cube_store, config):
        """Test the metadata written into the cube."""
        result = assembler.build_cube("rev1")
        meta = metadata(cube_store, config)
        assert meta["revision"] == "rev1"
        assert meta["dataset_id"] == "ds1"
        assert meta["build_id"] == result.build_id
        assert meta["fact_count"] == "6"
        assert meta["build_status"] == "completed"
        assert json.loads(meta["lookup_tables"]) == ["all_notes", "area_lookup", "measure", "year_lookup"]
        assert json.loads(meta["note_codes"]) == ["a", "p", "r"]
        assert [c["name"] for c in json.loads(meta["default_view_cy_columns"])] == [
            "Ardal", "Blwyddyn", "Mesur", "Gwerthoedd data", "Nodiadau"
        ]

    def test_build_log_table(self, assembler, cube_store, config):
        """Test the build log is written into the cube."""
        result = assembler.build_cube("rev1")
        rows = query(cube_store, config, "SELECT DISTINCT build_id FROM build_log")
        assert rows == [[result.build_id]]

    def test_reference_tables_kept(self, assembler, cube_store, config):
        """Test the support tables are available inside the cube."""
        assembler.build_cube("rev1")
        with DatabaseManager(cube_store.current_path("rev1"), read_only=True, config=config) as db:
            tables = set(db.get_tables())
        assert {"fact_table", "area_lookup", "year_lookup", "measure", "note_codes", "all_notes",
                "filter_table", "metadata", "build_log"} <= tables
        assert "reference_data_all" not in tables


class TestRebuilds:
    """Test cases for building a revision more than once."""

    def test_rebuild_is_idempotent(self, assembler, cube_store, config):
        """Test unchanged inputs give the same views and rows."""
        first = assembler.build_cube("rev1")
        first_meta = metadata(cube_store, config)
        first_rows = query(cube_store, config, "SELECT * FROM default_view_en")

        second = assembler.build_cube("rev1")
        second_meta = metadata(cube_store, config)
        second_rows = query(cube_store, config, "SELECT * FROM default_view_en")

        assert first.build_id != second.build_id
        for name in ("default_view_en", "default_view_cy", "raw_view_en", "raw_view_cy"):
            assert first_meta[name] == second_meta[name]
        assert first_rows == second_rows

    def test_previous_cube_discarded(self, assembler, cube_store):
        """Test only the serving file is left after a rebuild."""
        assembler.build_cube("rev1")
        second = assembler.build_cube("rev1")
        files = [name for name in os.listdir(cube_store.revision_dir("rev1")) if name.endswith(".duckdb")]
        assert files == [f"{second.build_id}.duckdb"]

    def test_rejected_while_building(self, assembler, cube_store, metadata_store):
        """Test a second build of the same revision is rejected."""
        with cube_store.build_lock("rev1"):
            result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.REJECTED
        assert result.errors[0].message.key == "errors.cube_builder.build_in_progress"
        assert metadata_store.statuses("rev1") == []
        assert cube_store.current_path("rev1") is None

    def test_queued_while_building(self, metadata_store, storage, config):
        """Test a second build waits for the running one when lock_timeout is set."""
        config.set("cube.lock_timeout", 5)
        store = CubeStore(config)
        assembler = CubeAssembler(metadata_store, storage, config=config, store=store)
        holding = threading.Event()
        release = threading.Event()

        def hold_lock():
            with store.build_lock("rev1"):
                holding.set()
                release.wait(5)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        assert holding.wait(5)
        timer = threading.Timer(0.2, release.set)
        timer.start()
        try:
            result = assembler.build_cube("rev1")
        finally:
            release.set()
            holder.join(5)
        assert result.status == CubeBuildStatus.COMPLETED
        assert metadata_store.statuses("rev1") == [CubeBuildStatus.BUILDING, CubeBuildStatus.COMPLETED]
        assert store.current_path("rev1").endswith(f"{result.build_id}.duckdb")


class TestFailedBuilds:
    """Test cases for builds that do not publish a cube."""

    def test_unmatched_lookup_values(self, assembler, storage, cube_store, metadata_store):
        """Test a fact code missing from the lookup fails the build."""
        area = "\n".join(line for line in AREA_CSV.splitlines() if not line.startswith("E1"))
        storage.files[("ds1", "area.csv")] = area.encode("utf-8")
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.FAILED
        assert result.retryable is False
        error = result.errors[0]
        assert error.field == "Area"
        assert error.message.key == "errors.dimension_validation.unmatched_values"
        assert error.message.params["values"] == ["E1"]
        assert [m.lang for m in error.user_message] == ["en-GB", "cy-GB"]
        assert cube_store.current_path("rev1") is None
        assert not [name for name in os.listdir(cube_store.revision_dir("rev1")) if name.endswith(".duckdb")]
        assert metadata_store.statuses("rev1") == [CubeBuildStatus.BUILDING, CubeBuildStatus.FAILED]

    def test_previous_cube_still_served(self, assembler, storage, cube_store, config):
        """Test a failed rebuild leaves the published cube in place."""
        first = assembler.build_cube("rev1")
        storage.files[("ds1", "area.csv")] = b"refcode,lang,description\nW1,en-GB,Cardiff\nW1,cy-GB,Caerdydd\n"
        second = assembler.build_cube("rev1")
        assert second.status == CubeBuildStatus.FAILED
        assert cube_store.current_path("rev1").endswith(f"{first.build_id}.duckdb")
        assert len(query(cube_store, config, "SELECT * FROM default_view_en")) == 6

    def test_missing_fact_table_is_retryable(self, assembler, storage):
        """Test a storage failure is reported as retryable once retries run out."""
        del storage.files[("ds1", "data.csv")]
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.FAILED
        assert result.retryable is True
        assert result.errors[0].message.key == "errors.storage.unavailable"
        assert storage.loads.count(("ds1", "data.csv")) == 3

    def test_transient_storage_failure_retried(self, assembler, storage):
        """Test loads are retried before giving up."""
        storage.failures_remaining = 2
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.COMPLETED
        assert storage.loads.count(("ds1", "data.csv")) == 3

    def test_invalid_source_assignment(self, assembler, sample_revision):
        """Test every column role violation comes back as an error."""
        sample_revision.fact_table_columns.append(
            FactTableColumn(column_name="Other", column_index=5, column_type="data_values")
        )
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.FAILED
        assert [e.message.key for e in result.errors] == ["errors.source_assignment.too_many_data_values"]

    def test_unknown_year_format(self, assembler, sample_revision):
        """Test a bad date configuration fails with a bilingual message."""
        sample_revision.dimensions[1] = DimensionConfig(
            fact_table_column="Year",
            extractor=DatePeriodExtractor(period_kind="financial", year_format="YY")
        )
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.FAILED
        error = result.errors[0]
        assert error.message.key == "errors.date_format.unknown_year_format"
        assert error.user_message[0].message == "Unknown year format"
        assert error.user_message[1].message == "Fformat blwyddyn anhysbys"

    def test_lookup_mapping_without_file(self, assembler, sample_revision):
        """Test a lookup dimension with nothing uploaded names the column."""
        sample_revision.dimensions[0] = DimensionConfig(
            fact_table_column="Area",
            extractor=LookupTableExtractor(join_column="refcode", language_column="lang",
                                           description_columns={"en-GB": "description", "cy-GB": "description"})
        )
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.FAILED
        assert result.retryable is False
        error = result.errors[0]
        assert error.field == "Area"
        assert error.message.key == "errors.lookup_table_validation.no_lookup_table"
        assert error.user_message[0].message == "No lookup table has been uploaded for Area"

    def test_missing_fact_column(self, assembler, sample_revision):
        """Test a configured column absent from the data table."""
        sample_revision.fact_table_columns.append(
            FactTableColumn(column_name="Sex", column_index=9, column_type="dimension")
        )
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.FAILED
        assert result.errors[0].message.key == "errors.fact_table_validation.missing_column"


class TestReferenceDataBuilds:
    """Test cases for dimensions joined to the shared reference data."""

    def test_reference_data_read_from_storage(self, assembler, storage, sample_revision, cube_store, config):
        """Test the shared tables are read from reference-data when no catalog is given."""
        add_reference_data(storage)
        use_reference_data_for_area(sample_revision)
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.COMPLETED
        assert ("reference-data", "reference_data.csv") in storage.loads
        rows = query(cube_store, config, "SELECT * FROM default_view_cy")
        assert [row[0] for row in rows[::2]] == ["Caerdydd", "Abertawe", "Bryste"]

    def test_unavailable_reference_data_is_retryable(self, assembler, storage, sample_revision, cube_store):
        """Test a storage failure on the shared tables is not reported as unknown items."""
        use_reference_data_for_area(sample_revision)
        result = assembler.build_cube("rev1")
        assert result.status == CubeBuildStatus.FAILED
        assert result.retryable is True
        assert result.errors[0].message.key == "errors.storage.unavailable"
        assert storage.loads.count(("reference-data", "categories.csv")) == 3
        assert cube_store.current_path("rev1") is None
