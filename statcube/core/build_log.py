"""
STATCUBE Build Log Handler

Logging handler that captures the records emitted during a cube build so they
can be written into the cube's build_log table and returned with the build
result. Records are routed by the `build_id` extra; records without one are
ignored by this handler and only reach the console.
"""

import json
import logging
import threading
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List

BUILD_LOG_COLUMNS = [
    'timestamp', 'logger_name', 'log_level', 'message', 'phase',
    'build_id', 'revision_id', 'error_type', 'error_traceback', 'metadata'
]


class BuildLogHandler(logging.Handler):
    """Buffers log records per build, keyed by the build_id extra."""

    def __init__(self, max_entries: int = 10000):
        super().__init__()
        self.buffer: Dict[str, List[Dict[str, Any]]] = {}
        self.max_entries = max_entries
        self._buffer_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        build_id = getattr(record, 'build_id', None)
        if not build_id:
            return
        try:
            entry = self._format_log_record(record)
        except Exception:
            self.handleError(record)
            return
        with self._buffer_lock:
            entries = self.buffer.setdefault(build_id, [])
            if len(entries) < self.max_entries:
                entries.append(entry)

    def _format_log_record(self, record: logging.LogRecord) -> Dict[str, Any]:
        """Format a log record for insertion into the build_log table."""
        metadata_dict = {}
        for attr in ('table_name', 'column', 'statement_count', 'row_count'):
            if hasattr(record, attr):
                metadata_dict[attr] = getattr(record, attr)

        error_type = None
        error_traceback = None
        if record.exc_info:
            error_type = record.exc_info[0].__name__ if record.exc_info[0] else None
            error_traceback = ''.join(traceback.format_exception(*record.exc_info))

        return {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc),
            'logger_name': record.name,
            'log_level': record.levelname,
            'message': record.getMessage(),
            'phase': getattr(record, 'phase', ''),
            'build_id': getattr(record, 'build_id', ''),
            'revision_id': getattr(record, 'revision_id', ''),
            'error_type': error_type or '',
            'error_traceback': error_traceback or '',
            'metadata': json.dumps(metadata_dict, default=str) if metadata_dict else ''
        }

    def peek(self, build_id: str) -> List[Dict[str, Any]]:
        """Copy of the buffered entries for a build."""
        with self._buffer_lock:
            return list(self.buffer.get(build_id, []))

    def drain(self, build_id: str) -> List[Dict[str, Any]]:
        """Remove and return the buffered entries for a build."""
        with self._buffer_lock:
            return self.buffer.pop(build_id, [])

    def close(self) -> None:
        with self._buffer_lock:
            self.buffer.clear()
        super().close()
