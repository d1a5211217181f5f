"""
STATCUBE Reference Data

Shared, dataset independent classifications (geographies, age bands, ...).
Items are versioned and grouped under category keys; descriptions are held per
language in reference_data_info and parents in hierarchy.

Every cube gets a copy of the shared tables. Dimensions using reference data
join a per-column lookup built from the items of their category keys.
"""

import logging
from typing import Dict, Iterable, List, Optional

import pandas as pd

from ..core.config import Config
from ..core.database import DatabaseManager, quote_identifier, quote_literal
from ..core.i18n import SUPPORTED_LOCALES, language_tag
from ..core.storage import Storage, load_buffer_with_retry, read_table_buffer

logger = logging.getLogger(__name__)

ALL_ITEMS_TABLE = "reference_data_all"

REFERENCE_DATA_SCHEMAS: Dict[str, Dict[str, str]] = {
    "categories": {
        "category": "VARCHAR",
    },
    "category_info": {
        "category": "VARCHAR",
        "lang": "VARCHAR",
        "description": "VARCHAR",
        "notes": "VARCHAR",
    },
    "category_keys": {
        "category_key": "VARCHAR",
        "category": "VARCHAR",
    },
    "category_key_info": {
        "category_key": "VARCHAR",
        "lang": "VARCHAR",
        "description": "VARCHAR",
        "notes": "VARCHAR",
    },
    "reference_data": {
        "item_id": "VARCHAR",
        "version_no": "INTEGER",
        "sort_order": "INTEGER",
        "category_key": "VARCHAR",
        "validity_start": "DATE",
        "validity_end": "DATE",
    },
    "reference_data_info": {
        "item_id": "VARCHAR",
        "version_no": "INTEGER",
        "category_key": "VARCHAR",
        "lang": "VARCHAR",
        "description": "VARCHAR",
        "notes": "VARCHAR",
    },
    "hierarchy": {
        "item_id": "VARCHAR",
        "version_no": "INTEGER",
        "category_key": "VARCHAR",
        "parent_id": "VARCHAR",
        "parent_version": "INTEGER",
        "parent_category": "VARCHAR",
    },
}


class ReferenceDataCatalog:
    """In-memory copy of the shared reference data tables."""

    def __init__(self, tables: Optional[Dict[str, pd.DataFrame]] = None):
        self.tables: Dict[str, pd.DataFrame] = {}
        for name, schema in REFERENCE_DATA_SCHEMAS.items():
            df = (tables or {}).get(name)
            self.tables[name] = df if df is not None else pd.DataFrame(columns=list(schema))

    @classmethod
    def from_storage(cls, storage: Storage, directory: str = "reference-data",
                     config: Optional[Config] = None) -> "ReferenceDataCatalog":
        """
        Read <table>.csv for every shared table from storage.

        Raises:
            StorageError: a table is missing or storage stayed unavailable after retries
        """
        tables = {}
        for name in REFERENCE_DATA_SCHEMAS:
            file_name = f"{name}.csv"
            data = load_buffer_with_retry(storage, file_name, directory, config)
            tables[name] = read_table_buffer(data, file_name)
        logger.info(f"Read shared reference data from {directory}: {len(tables['reference_data'])} items")
        return cls(tables)

    def load_into(self, db: DatabaseManager) -> None:
        """Copy the shared tables into a cube; items go to reference_data_all."""
        for name, schema in REFERENCE_DATA_SCHEMAS.items():
            table_name = ALL_ITEMS_TABLE if name == "reference_data" else name
            db.load_dataframe(table_name, self.tables[name], schema=schema, replace=True)

    def build_lookup(self, db: DatabaseManager, column_name: str, table_name: str,
                     category_keys: List[str], locales: Iterable[str] = SUPPORTED_LOCALES) -> int:
        """
        Create the lookup joined by one reference data dimension.

        Only items under category_keys are included. When an item appears in
        several keys or versions the first key and the latest version win.

        Returns:
            int: rows in the lookup
        """
        languages = ", ".join(quote_literal(language_tag(locale)) for locale in locales)
        key_filter = ""
        if category_keys:
            key_filter = "AND rd.category_key IN (" + ", ".join(quote_literal(k) for k in sorted(category_keys)) + ")"

        db.execute_command(f"""
            CREATE TABLE {quote_identifier(table_name)} AS
            SELECT
                rd.item_id AS {quote_identifier(column_name)},
                lower(rdi.lang) AS language,
                rdi.description AS description,
                rdi.notes AS notes,
                rd.sort_order AS sort_order,
                h.parent_id AS hierarchy,
                rd.category_key AS category_key
            FROM {ALL_ITEMS_TABLE} AS rd
            JOIN reference_data_info AS rdi
                ON rdi.item_id = rd.item_id
                AND rdi.version_no = rd.version_no
                AND rdi.category_key = rd.category_key
            LEFT JOIN hierarchy AS h
                ON h.item_id = rd.item_id
                AND h.version_no = rd.version_no
                AND h.category_key = rd.category_key
            WHERE lower(rdi.lang) IN ({languages}) {key_filter}
            QUALIFY row_number() OVER (
                PARTITION BY rd.item_id, lower(rdi.lang)
                ORDER BY rd.category_key, rd.version_no DESC, h.parent_id NULLS FIRST
            ) = 1
        """)
        rows = db.execute_query(f"SELECT COUNT(*) AS n FROM {quote_identifier(table_name)}")[0]["n"]
        logger.info(f"Built reference data lookup {table_name} for {column_name}: {rows} rows")
        return rows

    @staticmethod
    def drop_all_items(db: DatabaseManager) -> None:
        """The full item list is only needed while validating."""
        db.drop_table(ALL_ITEMS_TABLE)
