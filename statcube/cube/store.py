"""
STATCUBE Cube Store

Arena of cube files by revision id:

    <cube.directory>/<revision_id>/<build_id>.duckdb   one file per build
    <cube.directory>/<revision_id>/CURRENT             name of the serving build

A build writes a fresh file and only becomes visible when CURRENT is replaced
with os.replace, so readers always see a complete cube. Builds of the same
revision are serialized by a per-revision lock.
"""

import os
import shutil
import threading
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from ..core.config import Config
from ..core.errors import BuildInProgressError

logger = logging.getLogger(__name__)

CURRENT_POINTER = "CURRENT"
CUBE_EXTENSION = ".duckdb"


class CubeStore:
    """Cube files, the serving pointer and the build locks of every revision."""

    def __init__(self, config: Optional[Config] = None, directory: Optional[str] = None):
        self.config = config or Config()
        self.directory = directory or self.config.get("cube.directory", "cubes")
        self.lock_timeout = self.config.get("cube.lock_timeout", 0) or 0
        self.keep_previous = bool(self.config.get("cube.keep_previous", False))
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def revision_dir(self, revision_id: str) -> str:
        if not revision_id or os.sep in revision_id or revision_id in (".", "..") or "/" in revision_id:
            raise ValueError(f"Invalid revision id: {revision_id!r}")
        return os.path.join(self.directory, revision_id)

    def build_path(self, revision_id: str, build_id: str) -> str:
        """Path of a new staging file, creating the revision directory."""
        directory = self.revision_dir(revision_id)
        os.makedirs(directory, exist_ok=True)
        return os.path.join(directory, f"{build_id}{CUBE_EXTENSION}")

    def _lock_for(self, revision_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(revision_id, threading.Lock())

    @contextmanager
    def build_lock(self, revision_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the exclusive build lock of a revision.

        Waits up to timeout seconds (cube.lock_timeout by default, 0 meaning
        do not wait).

        Raises:
            BuildInProgressError: the lock is held by another build
        """
        timeout = self.lock_timeout if timeout is None else timeout
        lock = self._lock_for(revision_id)
        acquired = lock.acquire(timeout=timeout) if timeout > 0 else lock.acquire(blocking=False)
        if not acquired:
            raise BuildInProgressError(revision_id)
        try:
            yield
        finally:
            lock.release()

    def is_building(self, revision_id: str) -> bool:
        return self._lock_for(revision_id).locked()

    def current_path(self, revision_id: str) -> Optional[str]:
        """Path of the serving cube file, None if the revision has no cube."""
        pointer = os.path.join(self.revision_dir(revision_id), CURRENT_POINTER)
        try:
            with open(pointer, "r") as f:
                name = f.read().strip()
        except FileNotFoundError:
            return None
        if not name:
            return None
        path = os.path.join(self.revision_dir(revision_id), name)
        return path if os.path.exists(path) else None

    def swap_in(self, revision_id: str, path: str) -> Optional[str]:
        """
        Make a fully built cube file the serving one.

        Returns:
            str: path of the cube file it replaced, if any
        """
        directory = self.revision_dir(revision_id)
        previous = self.current_path(revision_id)
        pointer = os.path.join(directory, CURRENT_POINTER)
        tmp_pointer = f"{pointer}.{os.path.basename(path)}.tmp"
        with open(tmp_pointer, "w") as f:
            f.write(os.path.basename(path))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_pointer, pointer)
        logger.info(f"Revision {revision_id} now serving {os.path.basename(path)}")

        if previous and os.path.abspath(previous) != os.path.abspath(path) and not self.keep_previous:
            self.discard(previous)
        return previous

    def discard(self, path: str) -> None:
        """Remove a cube file and its write-ahead log."""
        for candidate in (path, f"{path}.wal"):
            try:
                os.remove(candidate)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Unable to remove {candidate}: {e}")

    def delete_revision(self, revision_id: str) -> bool:
        """
        Tear down every cube of a revision. Waits for a running build to finish.

        Returns:
            bool: True if anything was removed
        """
        directory = self.revision_dir(revision_id)
        with self._lock_for(revision_id):
            if not os.path.isdir(directory):
                return False
            shutil.rmtree(directory)
        with self._locks_guard:
            self._locks.pop(revision_id, None)
        logger.info(f"Deleted cubes of revision {revision_id}")
        return True
