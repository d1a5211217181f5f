"""
Tests for STATCUBE Core

This module contains tests for configuration, storage access, the cube store,
build logging and translations.
"""

import logging
import os
import threading
from unittest.mock import Mock, patch

import pytest

from statcube.core.build_log import BuildLogHandler
from statcube.core.config import Config
from statcube.core.errors import BuildInProgressError, StorageError, UnmatchedValuesError
from statcube.core.i18n import CatalogTranslator, cube_error, errors_from_exception
from statcube.core.logger import Logger
from statcube.core.storage import FileSystemStorage, decode_buffer, load_buffer_with_retry, read_table_buffer
from statcube.cube.store import CubeStore


class TestConfig:
    """Test cases for configuration."""

    def test_defaults(self, tmp_path):
        config = Config(config_file=str(tmp_path / "missing.json"))
        assert config.get("preview.max_page_size") == 500
        assert config.get("cube.lock_timeout") == 0
        assert config.get("no.such.key", "fallback") == "fallback"
        assert config.locales == ["en-GB", "cy-GB"]

    def test_file_layered_over_defaults(self, tmp_path):
        """Test a saved file overrides single keys only."""
        path = str(tmp_path / "config.json")
        config = Config(config_file=path)
        config.set("preview.max_page_size", 50)
        assert config.save()

        reloaded = Config(config_file=path)
        assert reloaded.get("preview.max_page_size") == 50
        assert reloaded.get("preview.min_page_size") == 5


class TestStorage:
    """Test cases for reading uploaded buffers."""

    def test_filesystem_round_trip(self, tmp_path):
        storage = FileSystemStorage(root=str(tmp_path))
        storage.save_buffer("data.csv", "ds1", b"a,b\n1,2\n")
        assert storage.load_buffer("data.csv", "ds1") == b"a,b\n1,2\n"
        with pytest.raises(StorageError):
            storage.load_buffer("other.csv", "ds1")

    def test_read_csv_as_strings(self):
        """Test values stay text and blanks become None."""
        df = read_table_buffer(b"Area,Value\nW1,001\nW2,\n", "data.csv")
        assert list(df["Value"]) == ["001", None]

    def test_read_tsv(self):
        df = read_table_buffer(b"Area\tValue\nW1\t1\n", "data.tsv")
        assert list(df.columns) == ["Area", "Value"]

    def test_decode_bom(self):
        assert decode_buffer(b"\xef\xbb\xbfAra") == "Ara"

    @patch("statcube.core.storage.chardet.detect", return_value={"encoding": None, "confidence": 0})
    def test_decode_fallback_encodings(self, mock_detect):
        """Test undetected buffers fall back through the known encodings."""
        assert decode_buffer("Ynys Môn".encode("latin1")) == "Ynys Môn"
        mock_detect.assert_called_once()

    def test_retry_gives_up(self, config):
        """Test retries stop after storage.retries attempts."""
        storage = Mock()
        storage.load_buffer.side_effect = StorageError("down", name="data.csv", directory="ds1")
        with pytest.raises(StorageError):
            load_buffer_with_retry(storage, "data.csv", "ds1", config)
        assert storage.load_buffer.call_count == 3

    def test_os_errors_become_storage_errors(self, config):
        storage = Mock()
        storage.load_buffer.side_effect = [OSError("reset"), b"ok"]
        assert load_buffer_with_retry(storage, "data.csv", "ds1", config) == b"ok"

    def test_load_timeout(self, config):
        """Test a hung load is abandoned after storage.timeout seconds."""
        config.set("storage.timeout", 0.05)
        config.set("storage.retries", 1)
        release = threading.Event()
        storage = Mock()
        storage.load_buffer.side_effect = lambda name, directory: release.wait(5)
        try:
            with pytest.raises(StorageError) as exc:
                load_buffer_with_retry(storage, "data.csv", "ds1", config)
            assert "Timed out" in str(exc.value)
        finally:
            release.set()


class TestCubeStore:
    """Test cases for cube files and build locks."""

    def test_swap_in(self, cube_store):
        """Test the pointer follows the last swapped in file."""
        first = cube_store.build_path("rev1", "a")
        open(first, "w").close()
        assert cube_store.current_path("rev1") is None
        assert cube_store.swap_in("rev1", first) is None
        assert cube_store.current_path("rev1") == first

        second = cube_store.build_path("rev1", "b")
        open(second, "w").close()
        assert cube_store.swap_in("rev1", second) == first
        assert cube_store.current_path("rev1") == second
        assert not os.path.exists(first)

    def test_keep_previous(self, config):
        config.set("cube.keep_previous", True)
        store = CubeStore(config)
        first = store.build_path("rev1", "a")
        open(first, "w").close()
        store.swap_in("rev1", first)
        second = store.build_path("rev1", "b")
        open(second, "w").close()
        store.swap_in("rev1", second)
        assert os.path.exists(first)

    def test_lock_rejects_second_holder(self, cube_store):
        with cube_store.build_lock("rev1"):
            assert cube_store.is_building("rev1")
            with pytest.raises(BuildInProgressError):
                with cube_store.build_lock("rev1"):
                    pass
        assert not cube_store.is_building("rev1")

    def test_locks_are_per_revision(self, cube_store):
        with cube_store.build_lock("rev1"):
            with cube_store.build_lock("rev2"):
                assert cube_store.is_building("rev2")

    def test_invalid_revision_id(self, cube_store):
        with pytest.raises(ValueError):
            cube_store.revision_dir("../etc")

    def test_delete_revision(self, cube_store):
        path = cube_store.build_path("rev1", "a")
        open(path, "w").close()
        cube_store.swap_in("rev1", path)
        assert cube_store.delete_revision("rev1")
        assert cube_store.current_path("rev1") is None
        assert not cube_store.delete_revision("rev1")


class TestBuildLog:
    """Test cases for per-build log capture."""

    def test_records_routed_by_build_id(self, config):
        logger = Logger("statcube.test", config=config)
        logger.info("first", build_id="b1", phase="load", table_name="fact_table")
        logger.info("second", build_id="b2")
        logger.info("console only")

        entries = logger.build_log.drain("b1")
        assert [e["message"] for e in entries] == ["first"]
        assert entries[0]["phase"] == "load"
        assert '"table_name": "fact_table"' in entries[0]["metadata"]
        assert logger.build_log.drain("b1") == []
        assert [e["message"] for e in logger.build_log.drain("b2")] == ["second"]

    def test_buffer_capped(self):
        handler = BuildLogHandler(max_entries=2)
        for i in range(3):
            record = logging.LogRecord("statcube.test", logging.INFO, __file__, 1, str(i), None, None)
            record.build_id = "b1"
            handler.emit(record)
        assert len(handler.peek("b1")) == 2


class TestTranslations:
    """Test cases for the bilingual error shape."""

    def test_cube_error(self):
        error = cube_error(CatalogTranslator(), "page_number", "errors.page_number_to_high", {"page_number": 4})
        assert error.message.key == "errors.page_number_to_high"
        assert [m.message for m in error.user_message] == [
            "Page number must be 4 or less",
            "Rhaid i rif y dudalen fod yn 4 neu lai",
        ]

    def test_unknown_key_falls_back_to_key(self):
        assert CatalogTranslator().translate("errors.not_there", "cy-GB") == "errors.not_there"

    def test_errors_from_exception(self):
        """Test the exception params reach the messages."""
        errors = errors_from_exception(CatalogTranslator(), UnmatchedValuesError("Area", ["X1", "X2"]))
        assert errors[0].field == "Area"
        assert errors[0].message.params["count"] == 2

    def test_fallback_language(self):
        translator = CatalogTranslator(catalog={"en": {"k": "English"}})
        assert translator.translate("k", "cy-GB") == "English"
