"""Parquet reader for the cleaned cluster, price and job run tables.

Tables live either on local disk or in S3/MinIO (boto3, aligned with Koku's
pattern). A table is a single ``<table>.parquet`` file or a directory of
parquet part files.
"""

import io
from pathlib import Path
from typing import Dict, List, Optional

import boto3
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .utils import PerformanceTimer, format_bytes, get_logger

DEFAULT_TABLES = {
    "events": "cluster_events",
    "price_catalog": "instance_details",
    "cluster_spec": "cluster_spec",
    "cluster_snapshot": "cluster_snapshot",
    "job_runs": "job_runs",
    "spark_jobs": "spark_jobs",
    "spark_tasks": "spark_tasks",
}

REQUIRED_TABLES = ["events", "price_catalog", "job_runs"]


class ParquetReader:
    """Read the pipeline input tables from a local directory or S3."""

    def __init__(self, config: Dict):
        """Initialize Parquet reader.

        Args:
            config: Configuration dictionary with input (and for S3, s3) section
        """
        self.config = config
        self.logger = get_logger("parquet_reader")

        input_config = config.get("input", {})
        self.source = input_config.get("source", "local")
        self.base_path = str(input_config.get("base_path", "data/input")).rstrip("/")
        self.tables = {**DEFAULT_TABLES, **(input_config.get("tables") or {})}

        if self.source not in ("local", "s3"):
            raise ValueError(f"Unsupported input source: {self.source} (expected 'local' or 's3')")

        self._s3_resource = None
        if self.source == "s3":
            s3_config = config["s3"]
            self.endpoint = s3_config.get("endpoint")
            self.bucket = s3_config["bucket"]
            self.access_key = s3_config.get("access_key")
            self.secret_key = s3_config.get("secret_key")
            self.verify_ssl = s3_config.get("verify_ssl", False)
            self.region = s3_config.get("region", "us-east-1")

        self.logger.info(f"Initialized Parquet reader (source={self.source}, base_path={self.base_path})")

    @property
    def s3_resource(self):
        """Lazy-load boto3 S3 resource."""
        if self._s3_resource is None:
            self._s3_resource = boto3.resource(
                "s3",
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                endpoint_url=self.endpoint,
                region_name=self.region,
                verify=self.verify_ssl,
            )
        return self._s3_resource

    def list_parquet_files(self, table: str) -> List[str]:
        """List the parquet files backing a table.

        Args:
            table: Logical table name (key of input.tables)

        Returns:
            Local paths or S3 keys, sorted
        """
        table_name = self.tables[table]

        if self.source == "local":
            single_file = Path(self.base_path) / f"{table_name}.parquet"
            if single_file.is_file():
                return [str(single_file)]
            table_dir = Path(self.base_path) / table_name
            if not table_dir.is_dir():
                return []
            return sorted(str(p) for p in table_dir.rglob("*.parquet"))

        prefix = f"{self.base_path}/{table_name}" if self.base_path else table_name
        try:
            bucket = self.s3_resource.Bucket(self.bucket)
            files = sorted(
                obj.key
                for obj in bucket.objects.filter(Prefix=prefix)
                if obj.key.endswith(".parquet")
            )
            self.logger.info(f"Found {len(files)} Parquet files (prefix={prefix})")
            return files
        except Exception as e:
            self.logger.error(f"Failed to list Parquet files (prefix={prefix}, error={e})")
            raise

    def read_parquet_file(self, path: str, columns: Optional[List[str]] = None) -> pd.DataFrame:
        """Read a single parquet file (local path or S3 key)."""
        if self.source == "local":
            table = pq.read_table(path, columns=columns)
        else:
            obj = self.s3_resource.Object(self.bucket, path)
            data = obj.get()["Body"].read()
            table = pq.ParquetFile(io.BytesIO(data)).read(columns=columns)
        return table.to_pandas()

    def read_table(self, table: str, columns: Optional[List[str]] = None) -> Optional[pd.DataFrame]:
        """Read every part of a table into one DataFrame.

        Args:
            table: Logical table name (events, price_catalog, job_runs, ...)
            columns: Columns to read (None = all)

        Returns:
            DataFrame, or None when the table has no files
        """
        if table not in self.tables:
            raise ValueError(f"Unknown input table: {table}")

        with PerformanceTimer(f"Read table: {self.tables[table]}", self.logger):
            files = self.list_parquet_files(table)
            if not files:
                self.logger.warning(f"No parquet files for table {self.tables[table]}")
                return None

            dfs = [self.read_parquet_file(f, columns) for f in files]
            df = pd.concat(dfs, ignore_index=True) if len(dfs) > 1 else dfs[0]

            self.logger.info(
                f"Loaded {len(df)} rows from {self.tables[table]} "
                f"(files={len(files)}, memory={format_bytes(df.memory_usage(deep=True).sum())})"
            )
            return df

    def read_inputs(self) -> Dict[str, Optional[pd.DataFrame]]:
        """Read all configured tables; optional tables may come back as None.

        Raises:
            FileNotFoundError: A required table (events, price catalog, job runs) is missing
        """
        inputs = {name: self.read_table(name) for name in self.tables}
        missing = [name for name in REQUIRED_TABLES if inputs.get(name) is None]
        if missing:
            raise FileNotFoundError(f"Required input tables not found under {self.base_path}: {missing}")
        return inputs

    def test_connectivity(self) -> bool:
        """Test that the input location is reachable.

        Returns:
            True if the base path (local) or bucket (S3) can be accessed
        """
        if self.source == "local":
            ok = Path(self.base_path).is_dir()
            if ok:
                self.logger.info(f"Input path check: SUCCESS (path={self.base_path})")
            else:
                self.logger.error(f"Input path check: FAILED (path={self.base_path})")
            return ok

        try:
            bucket = self.s3_resource.Bucket(self.bucket)
            _ = bucket.creation_date
            self.logger.info(f"S3 connectivity test: SUCCESS (bucket={self.bucket})")
            return True
        except Exception as e:
            self.logger.error(f"S3 connectivity test: FAILED (bucket={self.bucket}, error={e})")
            return False


def write_parquet(df: pd.DataFrame, path: Path) -> Path:
    """Write a DataFrame to a local parquet file, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pq.write_table(pa.Table.from_pandas(df, preserve_index=False), path)
    return path
