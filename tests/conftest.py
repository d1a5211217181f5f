"""
Pytest configuration for STATCUBE test suite.

This module provides shared fixtures and fakes for all tests:
- In-memory storage and metadata store collaborators
- A configuration writing cubes under the test's tmp_path
- A sample revision with lookup, date, measure, data value and note code columns
"""

import pytest
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Tuple

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from statcube.core.config import Config
from statcube.core.errors import StorageError
from statcube.core.models import (
    CubeBuildStatus,
    DatePeriodExtractor,
    DimensionConfig,
    FactTableColumn,
    RevisionConfig,
)
from statcube.cube.store import CubeStore

FACT_CSV = """Area,Year,Measure,Data,Notes
W1,202324,count,1234.5,p
W1,202425,count,2000,
W2,202324,rate,12.3456,"a,r"
W2,202425,rate,7,
E1,202324,count,5,
E1,202425,rate,0.5,r
"""

AREA_CSV = """refcode,lang,description,notes,sort_order,hierarchy
W1,en-GB,Cardiff,,1,W
W1,cy-GB,Caerdydd,,1,W
W2,en-GB,Swansea,,2,W
W2,cy-GB,Abertawe,,2,W
E1,en-GB,Bristol,,3,
E1,cy-GB,Bryste,,3,
W,en-GB,Wales,,0,
W,cy-GB,Cymru,,0,
"""

MEASURE_CSV = """reference,description_en,description_cy,notes_en,notes_cy,sort,format,decimals
count,Count,Cyfrif,,,1,integer,0
rate,Rate,Cyfradd,,,2,decimal,2
"""


class InMemoryStorage:
    """Storage fake keyed by (directory, name)."""

    def __init__(self, files: Dict[Tuple[str, str], bytes] = None):
        self.files = dict(files or {})
        self.loads: List[Tuple[str, str]] = []
        self.failures_remaining = 0

    def load_buffer(self, name: str, directory: str) -> bytes:
        self.loads.append((directory, name))
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise StorageError(f"Transient failure reading {name}", name=name, directory=directory)
        try:
            return self.files[(directory, name)]
        except KeyError:
            raise StorageError(f"{directory}/{name} not found", name=name, directory=directory)

    def save_buffer(self, name: str, directory: str, data: bytes) -> bool:
        self.files[(directory, name)] = data
        return True


class InMemoryMetadataStore:
    """Metadata store fake recording every build status update."""

    def __init__(self, revisions: Dict[str, RevisionConfig] = None):
        self.revisions = dict(revisions or {})
        self.status_updates: List[Tuple[str, CubeBuildStatus, datetime]] = []
        self._lock = threading.Lock()

    def get_revision(self, revision_id: str) -> RevisionConfig:
        return self.revisions[revision_id]

    def update_build_status(self, revision_id: str, status: CubeBuildStatus, timestamp: datetime) -> None:
        with self._lock:
            self.status_updates.append((revision_id, status, timestamp))

    def statuses(self, revision_id: str) -> List[CubeBuildStatus]:
        return [status for rid, status, _ in self.status_updates if rid == revision_id]


@pytest.fixture(scope="session")
def project_root_path():
    """Return the project root path."""
    return project_root


@pytest.fixture
def config(tmp_path):
    """Configuration with cubes under tmp_path and fast storage retries."""
    config = Config(config_file=str(tmp_path / "config.json"))
    config.set("cube.directory", str(tmp_path / "cubes"))
    config.set("storage.directory", str(tmp_path / "storage"))
    config.set("storage.timeout", 5)
    config.set("storage.retries", 3)
    config.set("storage.backoff_min", 0)
    config.set("storage.backoff_max", 0)
    config.set("engine.threads", 1)
    return config


@pytest.fixture
def cube_store(config):
    return CubeStore(config)


@pytest.fixture
def fact_columns():
    return [
        FactTableColumn(column_name="Area", column_index=0, column_type="dimension"),
        FactTableColumn(column_name="Year", column_index=1, column_type="time"),
        FactTableColumn(column_name="Measure", column_index=2, column_type="measure"),
        FactTableColumn(column_name="Data", column_index=3, column_type="data_values"),
        FactTableColumn(column_name="Notes", column_index=4, column_type="note_codes"),
    ]


@pytest.fixture
def sample_revision(fact_columns):
    """Revision of dataset ds1 with an area lookup, financial years and a measure table."""
    return RevisionConfig(
        revision_id="rev1",
        dataset_id="ds1",
        fact_table_file="data.csv",
        fact_table_columns=fact_columns,
        dimensions=[
            DimensionConfig(fact_table_column="Area", names={"en-GB": "Area", "cy-GB": "Ardal"},
                            lookup_table_file="area.csv"),
            DimensionConfig(fact_table_column="Year", names={"en-GB": "Year", "cy-GB": "Blwyddyn"},
                            extractor=DatePeriodExtractor(period_kind="financial", year_format="YYYYYY")),
            DimensionConfig(fact_table_column="Measure", lookup_table_file="measure.csv"),
        ]
    )


@pytest.fixture
def storage():
    return InMemoryStorage({
        ("ds1", "data.csv"): FACT_CSV.encode("utf-8"),
        ("ds1", "area.csv"): AREA_CSV.encode("utf-8"),
        ("ds1", "measure.csv"): MEASURE_CSV.encode("utf-8"),
    })


@pytest.fixture
def metadata_store(sample_revision):
    return InMemoryMetadataStore({sample_revision.revision_id: sample_revision})
