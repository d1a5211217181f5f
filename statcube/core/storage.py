"""
STATCUBE Storage Access

The engine reads uploaded fact and lookup tables through a storage
collaborator exposing exactly load_buffer/save_buffer. This module provides:
- The Storage protocol and a local filesystem implementation
- Retry with exponential backoff and a per-call timeout for loads
- Decoding of uploaded buffers (CSV, parquet, JSON) into DataFrames
"""

import io
import os
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Optional, Protocol

import chardet
import pandas as pd
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Config
from .errors import StorageError

logger = logging.getLogger(__name__)

FALLBACK_ENCODINGS = ['utf-8', 'latin1', 'windows-1252']

_io_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="statcube-storage")


class Storage(Protocol):
    def load_buffer(self, name: str, directory: str) -> bytes:
        ...

    def save_buffer(self, name: str, directory: str, data: bytes) -> bool:
        ...


class FileSystemStorage:
    """Storage backed by a local directory tree: <root>/<directory>/<name>."""

    def __init__(self, root: Optional[str] = None, config: Optional[Config] = None):
        self.config = config or Config()
        self.root = root or self.config.get("storage.directory", "storage")

    def _path(self, name: str, directory: str) -> str:
        return os.path.join(self.root, directory, name)

    def load_buffer(self, name: str, directory: str) -> bytes:
        path = self._path(name, directory)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Unable to read {path}: {e}", name=name, directory=directory)

    def save_buffer(self, name: str, directory: str, data: bytes) -> bool:
        path = self._path(name, directory)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(data)
            return True
        except OSError as e:
            raise StorageError(f"Unable to write {path}: {e}", name=name, directory=directory)


def load_buffer_with_retry(storage: Storage, name: str, directory: str, config: Optional[Config] = None) -> bytes:
    """
    Load a buffer, retrying transient failures with exponential backoff.

    Each attempt is bounded by storage.timeout seconds. Raises StorageError once
    the retries are exhausted.
    """
    config = config or Config()
    timeout = config.get("storage.timeout", 60)
    attempts = max(1, int(config.get("storage.retries", 3)))
    wait = wait_exponential(multiplier=config.get("storage.backoff_min", 0.5),
                            max=config.get("storage.backoff_max", 8))

    def attempt() -> bytes:
        future = _io_pool.submit(storage.load_buffer, name, directory)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise StorageError(f"Timed out after {timeout}s loading {directory}/{name}",
                               name=name, directory=directory)
        except StorageError:
            raise
        except OSError as e:
            raise StorageError(f"Unable to load {directory}/{name}: {e}", name=name, directory=directory)

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait,
        retry=retry_if_exception_type(StorageError),
        reraise=True,
        before_sleep=lambda state: logger.warning(
            f"Retrying load of {directory}/{name} (attempt {state.attempt_number}): {state.outcome.exception()}"
        )
    )
    return retrying(attempt)


def decode_buffer(data: bytes) -> str:
    """Detect the encoding of a text buffer and decode it."""
    if data.startswith(b'\xef\xbb\xbf'):
        return data[3:].decode('utf-8')

    detected = chardet.detect(data[:100000])
    encoding = detected.get('encoding') or 'utf-8'
    confidence = detected.get('confidence') or 0
    logger.debug(f"Detected encoding: {encoding} (confidence: {confidence:.2f})")

    for candidate in ['utf-8', encoding] + [e for e in FALLBACK_ENCODINGS if e not in ('utf-8', encoding)]:
        try:
            return data.decode(candidate)
        except (UnicodeDecodeError, LookupError):
            logger.debug(f"Failed to decode with {candidate}")

    logger.warning("All encodings failed, using utf-8 with error replacement")
    return data.decode('utf-8', errors='replace')


def read_table_buffer(data: bytes, name: str) -> pd.DataFrame:
    """
    Read an uploaded table into a DataFrame of strings.

    Args:
        data (bytes): File content
        name (str): File name; the extension selects the parser

    Returns:
        pd.DataFrame: one column per file column, values as strings, blanks as None
    """
    extension = os.path.splitext(name)[1].lower()
    if extension == '.parquet':
        df = pd.read_parquet(io.BytesIO(data))
        df = df.astype(object).where(df.notna(), None)
        return df.apply(lambda col: col.map(lambda v: None if v is None else str(v)))
    if extension in ('.json', '.jsonl'):
        df = pd.read_json(io.StringIO(decode_buffer(data)), lines=extension == '.jsonl', dtype=False)
        df = df.astype(object).where(df.notna(), None)
        return df.apply(lambda col: col.map(lambda v: None if v is None else str(v)))

    separator = '\t' if extension == '.tsv' else ','
    df = pd.read_csv(io.StringIO(decode_buffer(data)), sep=separator, dtype=str, keep_default_na=False)
    df.columns = [str(col).strip() for col in df.columns]
    df = df.astype(object)
    return df.where(df != '', None)
