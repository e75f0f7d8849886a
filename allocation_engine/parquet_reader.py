"""Load pod/node metric exports from S3 parquet files.

Uses boto3 for S3 access and pyarrow for decoding. The result is a
FrameMetricsStore that serves allocation queries in memory.
"""

import io
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
import pandas as pd
import pyarrow.parquet as pq
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageQueryFailure
from .metrics_store import FrameMetricsStore
from .utils import PerformanceTimer, format_bytes, get_logger, log_memory_usage, parse_bool

POD_METRIC_COLUMNS = [
    "time",
    "tenant_id",
    "cluster_name",
    "namespace",
    "pod_name",
    "node_name",
    "cpu_millicores",
    "memory_bytes",
    "cpu_request_millicores",
    "memory_request_bytes",
    "labels",
]

NODE_METRIC_COLUMNS = [
    "time",
    "tenant_id",
    "cluster_name",
    "node_name",
    "instance_type",
    "cpu_capacity",
    "memory_capacity",
    "hourly_cost_usd",
]


class ParquetReader:
    """Read metric parquet files from S3/MinIO using boto3."""

    def __init__(self, config: Dict):
        """Initialize Parquet reader with S3 configuration.

        Args:
            config: Configuration dictionary with s3 section
        """
        self.config = config
        self.logger = get_logger("parquet_reader")

        s3_config = config["s3"]
        self.endpoint = s3_config.get("endpoint")
        self.bucket = s3_config["bucket"]
        self.access_key = s3_config.get("access_key")
        self.secret_key = s3_config.get("secret_key")
        self.verify_ssl = s3_config.get("verify_ssl", True)
        self.region = s3_config.get("region", "us-east-1")
        self.pod_metrics_prefix = s3_config.get("pod_metrics_prefix", "metrics/tenant={tenant_id}/pod_metrics/")
        self.node_metrics_prefix = s3_config.get("node_metrics_prefix", "metrics/tenant={tenant_id}/node_metrics/")
        self.max_workers = int(s3_config.get("parallel_readers", 4))

        self._s3_resource = None
        self.logger.info("Initialized Parquet reader", endpoint=self.endpoint, bucket=self.bucket)

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

    def list_parquet_files(self, s3_prefix: str) -> List[str]:
        """List all Parquet files under an S3 prefix.

        Raises:
            StorageQueryFailure: If listing fails
        """
        try:
            bucket = self.s3_resource.Bucket(self.bucket)
            files = [obj.key for obj in bucket.objects.filter(Prefix=s3_prefix) if obj.key.endswith(".parquet")]
        except (BotoCoreError, ClientError) as e:
            self.logger.error("Failed to list Parquet files", prefix=s3_prefix, error=str(e))
            raise StorageQueryFailure(f"failed to list s3://{self.bucket}/{s3_prefix}: {e}") from e

        self.logger.info("Found Parquet files", prefix=s3_prefix, count=len(files))
        return files

    def read_parquet_file(self, s3_key: str, columns: Optional[List[str]] = None) -> pd.DataFrame:
        """Read a single Parquet file from S3.

        Args:
            s3_key: S3 object key (without s3:// prefix)
            columns: Columns to read (None = all columns)

        Raises:
            StorageQueryFailure: If the object cannot be fetched or decoded
        """
        with PerformanceTimer(f"Read parquet: {Path(s3_key).name}", self.logger):
            try:
                data = self.s3_resource.Object(self.bucket, s3_key).get()["Body"].read()
                parquet_file = pq.ParquetFile(io.BytesIO(data))
                available = set(parquet_file.schema_arrow.names)
                wanted = [column for column in columns if column in available] if columns else None
                df = parquet_file.read(columns=wanted).to_pandas()
            except (BotoCoreError, ClientError, OSError, ValueError) as e:
                self.logger.error("Failed to read Parquet file", file=s3_key, error=str(e))
                raise StorageQueryFailure(f"failed to read s3://{self.bucket}/{s3_key}: {e}") from e

        self.logger.debug(
            "Loaded Parquet file",
            file=Path(s3_key).name,
            rows=len(df),
            memory=format_bytes(df.memory_usage(deep=True).sum()),
        )
        return df

    def read_prefix(self, s3_prefix: str, columns: Optional[List[str]] = None) -> pd.DataFrame:
        """Read and concatenate every parquet file under a prefix in parallel."""
        files = self.list_parquet_files(s3_prefix)
        if not files:
            return pd.DataFrame(columns=columns or [])

        frames = []
        with PerformanceTimer(f"Parallel read ({len(files)} files)", self.logger):
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                future_to_file = {executor.submit(self.read_parquet_file, key, columns): key for key in files}
                for future in as_completed(future_to_file):
                    df = future.result()
                    if not df.empty:
                        frames.append(df)

        if not frames:
            return pd.DataFrame(columns=columns or [])
        combined = pd.concat(frames, ignore_index=True)
        self.logger.info("Combined Parquet files", prefix=s3_prefix, files=len(frames), rows=len(combined))
        return combined

    def load_metrics_store(self, tenant_id: Any) -> FrameMetricsStore:
        """Load a tenant's pod and node metrics into an in-memory store."""
        pod_metrics = self.read_prefix(self.pod_metrics_prefix.format(tenant_id=tenant_id), POD_METRIC_COLUMNS)
        node_metrics = self.read_prefix(self.node_metrics_prefix.format(tenant_id=tenant_id), NODE_METRIC_COLUMNS)
        log_memory_usage(self.logger, "after loading metrics")

        allocation_config = self.config.get("allocation", {}) or {}
        return FrameMetricsStore(
            pod_metrics,
            node_metrics,
            require_label_key=parse_bool(allocation_config.get("require_label_key", False)),
        )
