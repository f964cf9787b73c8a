"""PostgreSQL database writer for the cluster cost fact tables."""

import json
from typing import Dict, List

import numpy as np
import pandas as pd
import psycopg2
import psycopg2.extensions
from psycopg2.extras import execute_values

from .utils import PerformanceTimer, get_logger

CLUSTER_STATE_TABLE = "cluster_state_fact"
JOB_RUN_COST_TABLE = "job_run_cost_potential_fact"

# dict/list columns stored as JSONB
JSON_COLUMNS = ["custom_tags"]
# list columns stored as arrays
ARRAY_COLUMNS = ["running_days"]


def _is_null(value) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict, np.ndarray)):
        return False
    return bool(pd.isna(value))


def _to_json(value):
    if _is_null(value):
        return None
    if isinstance(value, str):
        try:
            json.loads(value)
            return value
        except ValueError:
            return json.dumps({"raw": value})
    if isinstance(value, np.ndarray):
        value = value.tolist()
    return json.dumps(value, default=str)


def _to_array(value):
    if _is_null(value):
        return None
    return list(value)


class DatabaseWriter:
    """Append cluster cost facts to PostgreSQL."""

    def __init__(self, config: Dict):
        """Initialize database writer.

        Args:
            config: Configuration dictionary with postgresql section
        """
        self.config = config
        self.logger = get_logger("db_writer")

        pg_config = config['postgresql']
        self.host = pg_config['host']
        self.port = pg_config['port']
        self.database = pg_config['database']
        self.user = pg_config['user']
        self.password = pg_config['password']
        self.schema = pg_config['schema']

        self.connection = None
        self.logger.info(
            "Initialized database writer",
            host=self.host,
            database=self.database,
            schema=self.schema
        )

    def connect(self):
        """Establish database connection."""
        try:
            self.connection = psycopg2.connect(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password
            )
            self.logger.info("Database connection established")
        except Exception as e:
            self.logger.error("Failed to connect to database", error=str(e))
            raise

    def disconnect(self):
        """Close database connection.

        Note: psycopg2 rolls back on close() without commit(), so a pending
        transaction is committed first.
        """
        if self.connection:
            if self.connection.status == psycopg2.extensions.STATUS_IN_TRANSACTION:
                self.logger.info("Committing pending transaction before disconnect...")
                self.connection.commit()
            self.connection.close()
            self.logger.info("Database connection closed")

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

    @staticmethod
    def prepare_rows(df: pd.DataFrame) -> List[tuple]:
        """Convert a fact DataFrame to insert tuples (NaN -> NULL, dicts -> JSON)."""
        # Plain Python lists per column; the string dtype would turn None back into NaN
        columns = []
        for col in df.columns:
            values = df[col].astype(object).tolist()
            if col in JSON_COLUMNS:
                values = [_to_json(v) for v in values]
            elif col in ARRAY_COLUMNS:
                values = [_to_array(v) for v in values]
            else:
                values = [None if _is_null(v) else v for v in values]
            columns.append(values)

        return list(zip(*columns))

    def write_fact_table(
        self,
        df: pd.DataFrame,
        table: str,
        batch_size: int = 1000,
        truncate: bool = False
    ) -> int:
        """Append a fact table with batch INSERT.

        Args:
            df: Fact rows
            table: Table name (without schema)
            batch_size: Number of rows per batch insert
            truncate: Whether to truncate table first (for testing)

        Returns:
            Number of rows inserted
        """
        table_name = f"{self.schema}.{table}"

        if df.empty:
            self.logger.info(f"No rows to write to {table_name}")
            return 0

        with PerformanceTimer(f"Write {len(df)} rows to {table_name}", self.logger):
            try:
                if truncate:
                    self._truncate_table(table_name)

                columns = df.columns.tolist()
                data = self.prepare_rows(df)
                insert_query = f"INSERT INTO {table_name} ({', '.join(columns)}) VALUES %s"

                total_inserted = 0
                with self.connection.cursor() as cursor:
                    for i in range(0, len(data), batch_size):
                        batch = data[i:i + batch_size]
                        execute_values(cursor, insert_query, batch, page_size=batch_size)
                        total_inserted += len(batch)

                        if (i // batch_size + 1) % 10 == 0:
                            self.logger.debug(f"Inserted {total_inserted}/{len(data)} rows")

                self.connection.commit()

                self.logger.info(
                    f"✓ Inserted {total_inserted} rows",
                    table=table_name,
                    batches=(len(data) + batch_size - 1) // batch_size
                )
                return total_inserted

            except Exception as e:
                self.connection.rollback()
                self.logger.error(
                    "Failed to write fact table",
                    table=table_name,
                    error=str(e),
                    rows=len(df)
                )
                raise

    def write_cluster_state_facts(self, df: pd.DataFrame, batch_size: int = 1000) -> int:
        """Append state slices to cluster_state_fact."""
        return self.write_fact_table(df, CLUSTER_STATE_TABLE, batch_size=batch_size)

    def write_job_run_cost_facts(self, df: pd.DataFrame, batch_size: int = 1000) -> int:
        """Append run facts to job_run_cost_potential_fact."""
        return self.write_fact_table(df, JOB_RUN_COST_TABLE, batch_size=batch_size)

    def _truncate_table(self, table_name: str):
        """Truncate a table (for testing).

        Args:
            table_name: Full table name (schema.table)
        """
        self.logger.warning(f"Truncating table: {table_name}")

        try:
            with self.connection.cursor() as cursor:
                cursor.execute(f"TRUNCATE TABLE {table_name}")
            self.connection.commit()
            self.logger.info(f"Truncated table: {table_name}")
        except Exception as e:
            self.connection.rollback()
            self.logger.error(f"Failed to truncate table: {table_name}", error=str(e))
            raise

    def test_connectivity(self) -> bool:
        """Test database connectivity.

        Returns:
            True if connection successful
        """
        try:
            with self.connection.cursor() as cursor:
                cursor.execute("SELECT 1")
                result = cursor.fetchone()
                if result and result[0] == 1:
                    self.logger.info("Database connectivity test: SUCCESS")
                    return True
        except Exception as e:
            self.logger.error("Database connectivity test: FAILED", error=str(e))
            return False
        return False
