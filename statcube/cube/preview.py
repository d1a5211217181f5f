"""
STATCUBE Cube Preview Service

Paginated, locale aware reads over the published cube of a revision. Opens
the current cube file read only, so previews never wait for a build and
always see the last complete cube.
"""

import json
import math
from typing import Any, Dict, List, Optional, Union

from ..core.config import Config
from ..core.database import DatabaseManager, quote_identifier
from ..core.errors import EngineError
from ..core.i18n import CatalogTranslator, Translator, cube_error, lang_code, language_tag
from ..core.logger import Logger
from ..core.models import (
    ColumnHeader,
    CubeError,
    FilterTable,
    FilterValue,
    PageInfo,
    PreviewPage,
    ViewErrorResponse,
    ViewType,
)
from .store import CubeStore
from .views import FILTER_TABLE, view_name


class PreviewService:
    """Read path over assembled cubes."""

    def __init__(self, store: Optional[CubeStore] = None, config: Optional[Config] = None,
                 translator: Optional[Translator] = None):
        self.config = config or Config()
        self.store = store or CubeStore(self.config)
        self.translator = translator or CatalogTranslator()
        self.locales = self.config.locales
        self.min_page_size = int(self.config.get("preview.min_page_size", 5))
        self.max_page_size = int(self.config.get("preview.max_page_size", 500))
        self.default_page_size = int(self.config.get("preview.default_page_size", 100))
        self.logger = Logger("statcube.preview", config=self.config)

    def view_error_response(self, status: int, errors: List[CubeError],
                            dataset_id: Optional[str] = None) -> ViewErrorResponse:
        return ViewErrorResponse(status=status, dataset_id=dataset_id, errors=errors)

    def _no_cube(self, revision_id: str) -> ViewErrorResponse:
        self.logger.warning(f"No cube available for revision {revision_id}")
        return self.view_error_response(
            404, [cube_error(self.translator, "revision", "errors.no_cube", {"revision_id": revision_id},
                             self.locales)]
        )

    def _locale(self, locale: str) -> str:
        for supported in self.locales:
            if lang_code(supported) == lang_code(locale):
                return supported
        self.logger.warning(f"Unsupported locale {locale}, using {self.locales[0]}")
        return self.locales[0]

    def _open(self, revision_id: str) -> Optional[DatabaseManager]:
        """Open the current cube read only. Retries once if a swap removed the file in between."""
        for _ in range(2):
            path = self.store.current_path(revision_id)
            if path is None:
                return None
            db = DatabaseManager(path, read_only=True, config=self.config)
            try:
                db.get_connection()
                return db
            except EngineError as e:
                self.logger.warning(f"Unable to open cube {path}, retrying: {e}")
        return None

    def _metadata(self, db: DatabaseManager) -> Dict[str, str]:
        rows = db.execute_query("SELECT key, value FROM metadata")
        return {row["key"]: row["value"] for row in rows}

    def validate_page(self, page_number: int, page_size: int, fact_count: int) -> List[CubeError]:
        """
        Check the requested page against the cube size.

        Returns:
            List[CubeError]: one entry per offending parameter, empty when valid
        """
        errors = []
        if page_size < self.min_page_size or page_size > self.max_page_size:
            errors.append(cube_error(self.translator, "page_size", "errors.page_size",
                                     {"max_page_size": self.max_page_size, "min_page_size": self.min_page_size},
                                     self.locales))
        if page_number < 1:
            errors.append(cube_error(self.translator, "page_number", "errors.page_number_to_low", {},
                                     self.locales))
        elif not errors:
            total_pages = max(1, math.ceil(fact_count / page_size))
            if page_number > total_pages:
                errors.append(cube_error(self.translator, "page_number", "errors.page_number_to_high",
                                         {"page_number": total_pages}, self.locales))
        return errors

    def get_preview(self, revision_id: str, page_number: int = 1, page_size: Optional[int] = None,
                    locale: str = "en-GB", view: Union[ViewType, str] = ViewType.DEFAULT
                    ) -> Union[PreviewPage, ViewErrorResponse]:
        """
        Read one page of a cube view.

        Args:
            revision_id (str): Revision whose current cube is read
            page_number (int): 1-based page
            page_size (int): Rows per page, preview.default_page_size when omitted
            locale (str): Locale of the view
            view: default or raw

        Returns:
            PreviewPage, or ViewErrorResponse (404 without a cube, 400 for bad page parameters)
        """
        page_size = self.default_page_size if page_size is None else page_size
        locale = self._locale(locale)
        db = self._open(revision_id)
        if db is None:
            return self._no_cube(revision_id)

        with db:
            metadata = self._metadata(db)
            dataset_id = metadata.get("dataset_id")
            fact_count = int(metadata.get("fact_count", 0))

            errors = self.validate_page(page_number, page_size, fact_count)
            if errors:
                self.logger.info(f"Rejected preview of {revision_id}: page {page_number}, size {page_size}")
                return self.view_error_response(400, errors, dataset_id)

            name = view_name(ViewType(view), locale)
            columns = json.loads(metadata.get(f"{name}_columns", "[]"))
            offset = (page_number - 1) * page_size
            result = db.execute_rows(f"SELECT * FROM {quote_identifier(name)} LIMIT ? OFFSET ?",
                                     [page_size, offset])

        rows = result["rows"]
        headers = [ColumnHeader(**column) for column in columns]
        if not headers:
            headers = [ColumnHeader(index=i, name=c, source_type="unknown") for i, c in enumerate(result["columns"])]

        return PreviewPage(
            dataset_id=dataset_id,
            current_page=page_number,
            page_info=PageInfo(
                total_records=fact_count,
                start_record=offset + 1 if rows else 0,
                end_record=offset + len(rows)
            ),
            page_size=page_size,
            total_pages=max(1, math.ceil(fact_count / page_size)),
            headers=headers,
            data=rows
        )

    def get_filters(self, revision_id: str, locale: str = "en-GB") -> Union[List[FilterTable], ViewErrorResponse]:
        """
        Values of every dimension in one locale, arranged by hierarchy.

        Returns:
            List[FilterTable] in fact table column order, or a 404 ViewErrorResponse without a cube
        """
        locale = self._locale(locale)
        db = self._open(revision_id)
        if db is None:
            return self._no_cube(revision_id)

        with db:
            rows = db.execute_query(
                f"SELECT reference, fact_table_column, dimension_name, description, hierarchy "
                f"FROM {FILTER_TABLE} WHERE language = ? ORDER BY rowid",
                [language_tag(locale)]
            )

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        names: Dict[str, str] = {}
        for row in rows:
            grouped.setdefault(row["fact_table_column"], []).append(row)
            names[row["fact_table_column"]] = row["dimension_name"]

        return [
            FilterTable(fact_table_column=column, column_name=names[column], values=build_hierarchy(values))
            for column, values in grouped.items()
        ]


def build_hierarchy(rows: List[Dict[str, Any]]) -> List[FilterValue]:
    """
    Nest filter rows under their parents.

    Rows whose parent is missing or unknown become roots; input order is kept
    at every level.
    """
    nodes: Dict[str, FilterValue] = {}
    for row in rows:
        reference = row["reference"]
        if reference not in nodes:
            nodes[reference] = FilterValue(reference=reference, description=row.get("description"))

    roots: List[FilterValue] = []
    placed = set()
    for row in rows:
        reference = row["reference"]
        if reference in placed:
            continue
        placed.add(reference)
        node = nodes[reference]
        parent = nodes.get(row.get("hierarchy")) if row.get("hierarchy") else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            if parent.children is None:
                parent.children = []
            parent.children.append(node)
    return roots
