"""
STATCUBE Database Manager

This module provides access to the embedded analytical engine. Every cube is
its own DuckDB database file; a DatabaseManager wraps one of them with a small
unified interface for queries, commands and DataFrame loading.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List, Any, Optional, Iterator

import duckdb
import pandas as pd

from .config import Config
from .errors import EngineError
from .logger import Logger


def quote_identifier(name: str) -> str:
    """Quote an identifier for the engine."""
    return '"' + str(name).replace('"', '""') + '"'


def quote_literal(value: Any) -> str:
    """Quote a literal for the engine."""
    if value is None:
        return "NULL"
    return "'" + str(value).replace("'", "''") + "'"


class DatabaseManager:
    """
    Database manager for one cube file.

    Provides a unified interface for engine operations used by the build and
    preview paths. Statement failures are logged with the full statement and
    raised as EngineError.
    """

    def __init__(self, database: str = ":memory:", read_only: bool = False, config: Optional[Config] = None):
        """Initialize the database manager."""
        self.database = database
        self.read_only = read_only
        self.config = config or Config()
        self.logger = Logger("statcube.database", config=self.config)
        self.statement_timeout = self.config.get("engine.statement_timeout", 300)
        self._connection = None

    def get_connection(self) -> Any:
        """
        Get the engine connection, opening it on first use.

        Returns:
            Any: DuckDB connection object
        """
        if self._connection is None:
            try:
                engine_config = {}
                if self.config.get("engine.threads"):
                    engine_config["threads"] = self.config.get("engine.threads")
                if self.config.get("engine.memory_limit"):
                    engine_config["memory_limit"] = self.config.get("engine.memory_limit")
                self._connection = duckdb.connect(self.database, read_only=self.read_only, config=engine_config)
            except duckdb.Error as e:
                self.logger.error(f"Error opening cube database {self.database}: {e}")
                raise EngineError(f"Unable to open cube database: {e}")
        return self._connection

    @contextmanager
    def _statement_timeout(self, statement: str) -> Iterator[None]:
        conn = self.get_connection()
        timer = None
        timed_out = threading.Event()
        if self.statement_timeout:
            def interrupt():
                timed_out.set()
                conn.interrupt()
            timer = threading.Timer(self.statement_timeout, interrupt)
            timer.daemon = True
            timer.start()
        try:
            yield
        except duckdb.Error as e:
            if timed_out.is_set():
                self.logger.error(f"Statement timed out after {self.statement_timeout}s:\n{statement}")
                raise EngineError(f"Statement timed out after {self.statement_timeout}s", statement=statement)
            self.logger.error(f"Statement failed: {e}\n{statement}")
            raise EngineError(str(e), statement=statement)
        finally:
            if timer is not None:
                timer.cancel()

    def execute_query(self, query: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute a SQL query.

        Args:
            query (str): SQL query to execute
            params (list): Optional positional parameters

        Returns:
            List[Dict[str, Any]]: Query results, one dict per row
        """
        with self._statement_timeout(query):
            cursor = self.get_connection().execute(query, params or [])
            if cursor.description is None:
                return []
            columns = [col[0] for col in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def execute_rows(self, query: str, params: Optional[List[Any]] = None) -> Dict[str, Any]:
        """
        Execute a SQL query keeping column order and row tuples.

        Returns:
            Dict with 'columns' and 'rows'
        """
        with self._statement_timeout(query):
            cursor = self.get_connection().execute(query, params or [])
            columns = [col[0] for col in cursor.description] if cursor.description else []
            return {"columns": columns, "rows": [list(row) for row in cursor.fetchall()]}

    def execute_command(self, command: str, params: Optional[List[Any]] = None) -> bool:
        """
        Execute a DDL or DML statement.

        Args:
            command (str): Statement to execute

        Returns:
            bool: True once the statement has run
        """
        with self._statement_timeout(command):
            self.get_connection().execute(command, params or [])
        self.logger.debug(f"Command executed successfully: {command[:100]}")
        return True

    def execute_script(self, statements: List[str]) -> int:
        """Execute statements in order, stopping at the first failure."""
        for statement in statements:
            self.execute_command(statement)
        return len(statements)

    def load_dataframe(self, table_name: str, df: pd.DataFrame, schema: Optional[Dict[str, str]] = None,
                       replace: bool = False) -> int:
        """
        Create a table from a DataFrame.

        Args:
            table_name (str): Name of the table to create
            df (pd.DataFrame): Rows to load
            schema (Dict[str, str]): Optional column name to engine type; columns are cast
                and created in this order, missing DataFrame columns load as NULL
            replace (bool): Replace an existing table

        Returns:
            int: Number of rows loaded
        """
        conn = self.get_connection()
        view_name = f"_load_{table_name}"
        create = "CREATE OR REPLACE TABLE" if replace else "CREATE TABLE"
        if schema:
            select = ", ".join(
                f"CAST({quote_identifier(col) if col in df.columns else 'NULL'} AS {col_type}) "
                f"AS {quote_identifier(col)}"
                for col, col_type in schema.items()
            )
        else:
            select = "*"
        statement = f"{create} {quote_identifier(table_name)} AS SELECT {select} FROM {quote_identifier(view_name)}"
        conn.register(view_name, df)
        try:
            self.execute_command(statement)
        finally:
            conn.unregister(view_name)
        self.logger.info(f"Loaded {len(df)} rows into {table_name}", table_name=table_name, row_count=len(df))
        return len(df)

    def create_table(self, table_name: str, schema: Dict[str, str]) -> bool:
        """
        Create a new table.

        Args:
            table_name (str): Name of the table to create
            schema (Dict[str, str]): Column name to engine type

        Returns:
            bool: True if table created successfully
        """
        columns = [f"{quote_identifier(col_name)} {col_type}" for col_name, col_type in schema.items()]
        return self.execute_command(f"CREATE TABLE {quote_identifier(table_name)} ({', '.join(columns)})")

    def insert_rows(self, table_name: str, columns: List[str], rows: List[List[Any]]) -> int:
        """Insert rows with bound parameters."""
        if not rows:
            return 0
        placeholders = ", ".join("?" for _ in columns)
        column_list = ", ".join(quote_identifier(col) for col in columns)
        statement = f"INSERT INTO {quote_identifier(table_name)} ({column_list}) VALUES ({placeholders})"
        with self._statement_timeout(statement):
            self.get_connection().executemany(statement, rows)
        return len(rows)

    def drop_table(self, table_name: str) -> bool:
        """Drop a table if it exists."""
        return self.execute_command(f"DROP TABLE IF EXISTS {quote_identifier(table_name)}")

    def table_exists(self, table_name: str) -> bool:
        """Check if a table or view exists."""
        result = self.execute_query(
            "SELECT COUNT(*) AS n FROM information_schema.tables WHERE table_name = ?", [table_name]
        )
        return bool(result and result[0]["n"])

    def get_tables(self) -> List[str]:
        """Get list of tables and views in the cube."""
        result = self.execute_query(
            "SELECT table_name FROM information_schema.tables ORDER BY table_name"
        )
        return [row["table_name"] for row in result]

    def close(self) -> None:
        """Close the engine connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "DatabaseManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
