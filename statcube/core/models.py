"""
STATCUBE Data Models

This module provides Pydantic models for the cube engine:
- Fact table column descriptors and dimension extractor configuration
- Revision configuration read from the metadata store
- Date reference rows, build results and preview pages
- The bilingual error wire shape
"""

from pydantic import BaseModel, Field, validator
from typing import Dict, List, Any, Optional, Union, Literal, Annotated
from datetime import datetime
from enum import Enum


class FactTableColumnType(str, Enum):
    """Semantic role of a fact table column."""
    DATA_VALUES = "data_values"
    DIMENSION = "dimension"
    MEASURE = "measure"
    NOTE_CODES = "note_codes"
    TIME = "time"
    LINE_NUMBER = "line_number"
    IGNORE = "ignore"
    UNKNOWN = "unknown"


class DimensionType(str, Enum):
    """Dimension extractor variants."""
    RAW = "raw"
    TEXT = "text"
    NUMERIC = "numeric"
    DATE_PERIOD = "date_period"
    LOOKUP_TABLE = "lookup_table"
    REFERENCE_DATA = "reference_data"
    NOTE_CODES = "note_codes"
    MEASURE = "measure"


class PeriodKind(str, Enum):
    """How the raw codes of a date dimension are interpreted."""
    CALENDAR = "calendar"
    FINANCIAL = "financial"
    TAX = "tax"
    ACADEMIC = "academic"
    METEOROLOGICAL = "meteorological"
    POINT_IN_TIME = "point_in_time"


class DateType(str, Enum):
    """Granularity of a date reference row."""
    YEAR = "year"
    QUARTER = "quarter"
    MONTH = "month"
    SPECIFIC_DAY = "specific_day"


class NumberType(str, Enum):
    INTEGER = "integer"
    DECIMAL = "decimal"


class CubeBuildStatus(str, Enum):
    """Build lifecycle states written to the metadata store."""
    QUEUED = "queued"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class ViewType(str, Enum):
    DEFAULT = "default"
    RAW = "raw"


# Dimension extractors
class RawExtractor(BaseModel):
    """Pass the fact table value through untouched."""
    type: Literal["raw"] = "raw"


class TextExtractor(BaseModel):
    """Render the fact table value as text."""
    type: Literal["text"] = "text"


class NumericExtractor(BaseModel):
    """Render the fact table value as an integer or a fixed-point decimal."""
    type: Literal["numeric"] = "numeric"
    number_type: NumberType = Field(NumberType.INTEGER, description="Integer or decimal")
    decimal_places: int = Field(0, ge=0, description="Decimal places for decimal numbers")


class DatePeriodExtractor(BaseModel):
    """Declarative rules turning raw period codes into a date reference table."""
    type: Literal["date_period"] = "date_period"
    period_kind: PeriodKind = Field(PeriodKind.CALENDAR, description="Year type or point in time")
    year_format: Optional[str] = Field(None, description="Year token, e.g. YYYY or YYYYYY")
    quarter_format: Optional[str] = Field(None, description="Quarter token, e.g. QX")
    month_format: Optional[str] = Field(None, description="Month token, e.g. MMM")
    date_format: Optional[str] = Field(None, description="Point in time format, e.g. yyyyMMdd")
    quarter_total_is_fifth_quarter: bool = Field(False, description="Annual total coded as Q5")

    @property
    def is_point_in_time(self) -> bool:
        return self.period_kind == PeriodKind.POINT_IN_TIME


class _LookupColumns(BaseModel):
    join_column: str = Field(..., description="Lookup column holding the fact table codes")
    sort_column: Optional[str] = Field(None, description="Sort order column")
    hierarchy_column: Optional[str] = Field(None, description="Parent code column")
    language_column: Optional[str] = Field(None, description="Language column (new format only)")
    description_columns: Dict[str, str] = Field(default_factory=dict, description="Locale to description column")
    notes_columns: Dict[str, str] = Field(default_factory=dict, description="Locale to notes column")
    is_legacy_format: bool = Field(False, description="One description column per language")


class LookupTableExtractor(_LookupColumns):
    """Join the dimension to an uploaded lookup table."""
    type: Literal["lookup_table"] = "lookup_table"


class MeasureExtractor(_LookupColumns):
    """Join the measure column to an uploaded measure table carrying display formats."""
    type: Literal["measure"] = "measure"
    format_column: Optional[str] = Field(None, description="Display format column")
    decimal_column: Optional[str] = Field(None, description="Decimal places column")
    measure_type_column: Optional[str] = Field(None, description="Measure type column")


class ReferenceDataExtractor(BaseModel):
    """Join the dimension to the shared reference data, filtered by category key."""
    type: Literal["reference_data"] = "reference_data"
    category_keys: List[str] = Field(default_factory=list, description="Category keys to match against")


class NoteCodesExtractor(BaseModel):
    """Expand comma separated note codes into footnote text."""
    type: Literal["note_codes"] = "note_codes"


DimensionExtractor = Annotated[
    Union[
        RawExtractor,
        TextExtractor,
        NumericExtractor,
        DatePeriodExtractor,
        LookupTableExtractor,
        ReferenceDataExtractor,
        NoteCodesExtractor,
        MeasureExtractor,
    ],
    Field(discriminator="type")
]


# Revision configuration
class FactTableColumn(BaseModel):
    """Fact table column descriptor."""
    column_name: str = Field(..., description="Column name in the fact table")
    column_index: int = Field(..., description="Position in the uploaded file")
    column_datatype: str = Field("VARCHAR", description="Engine datatype")
    column_type: FactTableColumnType = Field(FactTableColumnType.UNKNOWN, description="Semantic role")


class DimensionConfig(BaseModel):
    """Per-column dimension configuration."""
    fact_table_column: str = Field(..., description="Fact table column this dimension describes")
    extractor: Optional[DimensionExtractor] = Field(None, description="How to interpret the raw codes")
    names: Dict[str, str] = Field(default_factory=dict, description="Locale to display name")
    lookup_table_file: Optional[str] = Field(None, description="Uploaded lookup table file name")

    def name_for(self, locale: str) -> str:
        return self.names.get(locale) or self.fact_table_column


class RevisionConfig(BaseModel):
    """Fully materialized revision as read from the metadata store."""
    revision_id: str = Field(..., description="Revision ID")
    dataset_id: str = Field(..., description="Dataset ID, also the storage directory")
    fact_table_file: str = Field(..., description="Uploaded fact table file name")
    fact_table_columns: List[FactTableColumn] = Field(..., description="Fact table column descriptors")
    dimensions: List[DimensionConfig] = Field(default_factory=list, description="Dimension configuration")

    @validator("fact_table_columns")
    def sort_columns(cls, value):
        return sorted(value, key=lambda col: col.column_index)

    def dimension_for(self, column_name: str) -> Optional[DimensionConfig]:
        for dimension in self.dimensions:
            if dimension.fact_table_column == column_name:
                return dimension
        return None


# Date reference rows
class DateReferenceRow(BaseModel):
    """One generated period in a date reference table."""
    date_code: str = Field(..., description="Code as it appears in the fact table")
    start: datetime = Field(..., description="Period start (UTC)")
    end: datetime = Field(..., description="Period end (UTC), inclusive to the second")
    type: DateType = Field(..., description="Period granularity")
    parent_code: Optional[str] = Field(None, description="Enclosing period code")


# Bilingual error wire shape
class UserMessage(BaseModel):
    lang: str
    message: str


class ErrorMessage(BaseModel):
    key: str
    params: Dict[str, Any] = Field(default_factory=dict)


class CubeError(BaseModel):
    """One bilingual error entry."""
    field: str
    user_message: List[UserMessage] = Field(default_factory=list)
    message: ErrorMessage


class ViewErrorResponse(BaseModel):
    """Error response returned instead of a preview page."""
    status: int
    dataset_id: Optional[str] = None
    errors: List[CubeError] = Field(default_factory=list)
    extension: Optional[Dict[str, Any]] = None


# Build results
class BuildResult(BaseModel):
    """Outcome of one cube build. Failures are reported here, never raised."""
    revision_id: str
    dataset_id: Optional[str] = None
    build_id: Optional[str] = None
    status: CubeBuildStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    fact_count: Optional[int] = None
    errors: List[CubeError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    retryable: bool = False
    log: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == CubeBuildStatus.COMPLETED


# Preview
class ColumnHeader(BaseModel):
    index: int
    name: str
    source_type: FactTableColumnType


class PageInfo(BaseModel):
    total_records: int
    start_record: int
    end_record: int


class PreviewPage(BaseModel):
    """One page of an assembled cube view."""
    dataset_id: Optional[str] = None
    current_page: int
    page_info: PageInfo
    page_size: int
    total_pages: int
    headers: List[ColumnHeader]
    data: List[List[Any]]


class FilterValue(BaseModel):
    reference: str
    description: Optional[str] = None
    children: Optional[List["FilterValue"]] = None


class FilterTable(BaseModel):
    """Values of one dimension arranged by hierarchy."""
    fact_table_column: str
    column_name: str
    values: List[FilterValue]
