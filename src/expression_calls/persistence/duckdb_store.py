"""DuckDB-based storage for basic call evidence, ontology relations and computed calls."""

from pathlib import Path
from typing import Optional

import duckdb
import polars as pl
import structlog
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)


class CallStore:
    """
    DuckDB-based storage for the call engine.

    Holds imported evidence and relation tables as well as computed call
    tables, each registered in a _checkpoints metadata table.
    """

    def __init__(self, db_path: Path, read_only: bool = False, max_retries: int = 3):
        """
        Initialize CallStore with a DuckDB database.

        Args:
            db_path: Path to DuckDB database file. Parent directories
                     are created automatically.
            read_only: Open the database read-only. The file must exist.
            max_retries: Connection attempts while another process holds
                         the database lock
        """
        self.db_path = Path(db_path)
        self.read_only = read_only
        if read_only and not self.db_path.exists():
            raise FileNotFoundError(f"DuckDB store not found: {self.db_path}")
        if not read_only:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.conn = self._connect(max_retries)

        if not read_only:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS _checkpoints (
                    table_name VARCHAR PRIMARY KEY,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    row_count INTEGER,
                    description VARCHAR
                )
            """)

    def _connect(self, max_retries: int) -> duckdb.DuckDBPyConnection:
        retrying = Retrying(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
            retry=retry_if_exception_type(duckdb.IOException),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "duckdb_connect_retry",
                        db_path=str(self.db_path),
                        attempt=attempt.retry_state.attempt_number,
                    )
                return duckdb.connect(str(self.db_path), read_only=self.read_only)

    def save_dataframe(
        self,
        df: pl.DataFrame,
        table_name: str,
        description: str = "",
        replace: bool = True
    ) -> None:
        """
        Save a polars DataFrame to DuckDB as a table.

        Args:
            df: Polars DataFrame to save
            table_name: Name for the DuckDB table
            description: Optional description for checkpoint metadata
            replace: If True, replace existing table; if False, append
        """
        if not isinstance(df, pl.DataFrame):
            raise ValueError("df must be polars.DataFrame")

        if replace or not self.has_table(table_name):
            self.conn.execute(f"CREATE OR REPLACE TABLE {table_name} AS SELECT * FROM df")
        else:
            self.conn.execute(f"INSERT INTO {table_name} SELECT * FROM df")

        row_count = self.conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]
        self.conn.execute("""
            INSERT OR REPLACE INTO _checkpoints (table_name, row_count, description, created_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        """, [table_name, row_count, description])

        logger.info("table_saved", table_name=table_name, row_count=row_count, replace=replace)

    def load_dataframe(self, table_name: str) -> Optional[pl.DataFrame]:
        """
        Load a table as a polars DataFrame.

        Returns:
            DataFrame or None if table doesn't exist
        """
        try:
            return self.conn.execute(f"SELECT * FROM {table_name}").pl()
        except duckdb.CatalogException:
            return None

    def has_table(self, table_name: str) -> bool:
        result = self.conn.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?",
            [table_name]
        ).fetchone()
        return result[0] > 0

    def has_checkpoint(self, table_name: str) -> bool:
        """
        Check if a checkpoint exists.

        Args:
            table_name: Name of the table to check

        Returns:
            True if checkpoint exists, False otherwise
        """
        if not self.has_table("_checkpoints"):
            return False
        result = self.conn.execute(
            "SELECT COUNT(*) FROM _checkpoints WHERE table_name = ?",
            [table_name]
        ).fetchone()
        return result[0] > 0

    def list_checkpoints(self) -> list[dict]:
        """
        List all checkpoints with metadata.

        Returns:
            List of checkpoint metadata dicts with keys:
            table_name, created_at, row_count, description
        """
        if not self.has_table("_checkpoints"):
            return []
        result = self.conn.execute("""
            SELECT table_name, created_at, row_count, description
            FROM _checkpoints
            ORDER BY created_at DESC, table_name
        """).fetchall()

        return [
            {
                "table_name": row[0],
                "created_at": row[1],
                "row_count": row[2],
                "description": row[3],
            }
            for row in result
        ]

    def delete_checkpoint(self, table_name: str) -> None:
        """Drop a table and its checkpoint metadata."""
        self.conn.execute(f"DROP TABLE IF EXISTS {table_name}")
        self.conn.execute(
            "DELETE FROM _checkpoints WHERE table_name = ?",
            [table_name]
        )

    def export_parquet(self, table_name: str, output_path: Path) -> None:
        """
        Export a table to Parquet format.

        Args:
            table_name: Name of the table to export
            output_path: Path to output Parquet file
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn.execute(
            f"COPY {table_name} TO '{output_path}' (FORMAT PARQUET)"
        )

    def execute_query(
        self,
        query: str,
        params: Optional[list] = None
    ) -> pl.DataFrame:
        """
        Execute arbitrary SQL query and return polars DataFrame.

        Args:
            query: SQL query to execute
            params: Optional query parameters

        Returns:
            Query results as polars DataFrame
        """
        if params:
            result = self.conn.execute(query, params)
        else:
            result = self.conn.execute(query)
        return result.pl()

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @classmethod
    def from_config(cls, config: "EngineConfig", read_only: Optional[bool] = None) -> "CallStore":
        """
        Create CallStore from an EngineConfig.

        Args:
            config: EngineConfig instance
            read_only: Override config.storage.read_only (e.g. when importing)

        Returns:
            CallStore instance
        """
        if read_only is None:
            read_only = config.storage.read_only
        return cls(
            config.duckdb_path,
            read_only=read_only,
            max_retries=config.storage.max_retries,
        )
