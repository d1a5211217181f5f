"""
STATCUBE Error Taxonomy

Exception hierarchy:
- StatCubeError: base for all engine errors, carries a translation key and params
- ConfigurationError: bad extractor configuration (unknown year/quarter/month/date format)
- ClassificationError: fact table columns break the source assignment rules
- ValidationError: data does not satisfy the configuration (unmatched values, lookup shape)
- StorageError: transient I/O failure, retryable
- EngineError: SQL or schema failure inside the analytical engine, fatal
- BuildInProgressError: another build holds the revision lock
"""

from typing import Any, Dict, List, Optional


class StatCubeError(Exception):
    """Base exception for all cube engine errors."""

    key = "errors.cube_builder.unknown"

    def __init__(self, message: str, key: Optional[str] = None, params: Optional[Dict[str, Any]] = None,
                 field: str = "cube"):
        super().__init__(message)
        self.message = message
        if key:
            self.key = key
        self.params = params or {}
        self.field = field


class ConfigurationError(StatCubeError):
    """Raised when an extractor carries a format the engine does not understand."""

    key = "errors.configuration"


class UnknownYearFormat(ConfigurationError):

    def __init__(self):
        super().__init__("Unknown year format", key="errors.date_format.unknown_year_format",
                         field="year_format")


class UnknownQuarterFormat(ConfigurationError):

    def __init__(self):
        super().__init__("Unknown quarter format", key="errors.date_format.unknown_quarter_format",
                         field="quarter_format")


class UnknownMonthFormat(ConfigurationError):

    def __init__(self):
        super().__init__("Unknown month format", key="errors.date_format.unknown_month_format",
                         field="month_format")


class UnknownDateFormat(ConfigurationError):

    def __init__(self, given: str):
        super().__init__(f"Unknown Date Format. Format given: {given}",
                         key="errors.date_format.unknown_date_format",
                         params={"format": given}, field="date_format")
        self.given = given


class ClassificationError(StatCubeError):
    """Raised when the fact table column roles break the cardinality rules."""

    key = "errors.source_assignment"

    def __init__(self, violations: List[str], params: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Invalid source assignment: {', '.join(violations)}",
            key=violations[0] if violations else self.key,
            params=params,
            field="source_assignment"
        )
        self.violations = violations


class ValidationError(StatCubeError):
    """Raised when data does not satisfy the configuration."""

    key = "errors.validation"


class UnparseableDateError(ValidationError):

    def __init__(self, date_format: str, value: Optional[str] = None):
        super().__init__(f"Unable to parse date based on supplied format of {date_format}.",
                         key="errors.date_format.unparseable_date",
                         params={"format": date_format, "value": value}, field="date_format")


class UnmatchedValuesError(ValidationError):
    """Raised when fact table values have no entry in the attached lookup or reference table."""

    def __init__(self, column: str, values: List[Any], key: str = "errors.dimension_validation.unmatched_values",
                 total: Optional[int] = None):
        self.column = column
        self.values = list(values)
        self.total = total if total is not None else len(self.values)
        shown = ", ".join(str(v) for v in self.values[:10])
        super().__init__(
            f"{self.total} value(s) in column '{column}' could not be matched: {shown}",
            key=key,
            params={"column": column, "count": self.total, "values": self.values},
            field=column
        )


class LookupShapeError(ValidationError):
    """Raised when an uploaded lookup table is missing required columns or rows."""

    def __init__(self, column: str, key: str, detail: str, params: Optional[Dict[str, Any]] = None):
        merged = {"column": column}
        merged.update(params or {})
        super().__init__(f"Lookup table for '{column}' is invalid: {detail}", key=key, params=merged,
                         field=column)


class StorageError(StatCubeError):
    """Raised when a buffer cannot be read from or written to storage. Retryable."""

    key = "errors.storage"

    def __init__(self, message: str, name: Optional[str] = None, directory: Optional[str] = None):
        super().__init__(message, key="errors.storage.unavailable",
                         params={"name": name, "directory": directory}, field="storage")


class EngineError(StatCubeError):
    """Raised when a statement fails inside the analytical engine. Not retryable."""

    key = "errors.cube_builder.engine_failure"

    def __init__(self, message: str, statement: Optional[str] = None):
        super().__init__(message, key="errors.cube_builder.engine_failure", field="cube")
        self.statement = statement


class BuildInProgressError(StatCubeError):
    """Raised when another build currently holds the revision lock."""

    def __init__(self, revision_id: str):
        super().__init__(f"A build is already running for revision {revision_id}",
                         key="errors.cube_builder.build_in_progress",
                         params={"revision_id": revision_id}, field="cube")
