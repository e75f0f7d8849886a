"""Metrics store contracts and an in-memory pandas implementation.

Stores return pandas DataFrames. ``query_grouped`` rows carry:

    name, cluster, namespace, node,
    cpu_cores_usage, cpu_cores_request,
    memory_bytes_usage, memory_bytes_request, pod_count

CPU is already converted from millicores to cores. Samples of the
``__aggregate__`` pseudo-pod are never included.
"""

from typing import Any, List, Optional

import numpy as np
import pandas as pd

from .dimensions import Dimension, DimensionKind, Filter, FilterKind, controller_name, label_keys
from .errors import StorageQueryFailure
from .models import UNALLOCATED_NAME, TimeWindow
from .utils import PerformanceTimer, as_label_dict, convert_millicores_to_cores, get_logger

AGGREGATE_POD = "__aggregate__"

GROUPED_COLUMNS = [
    "name",
    "cluster",
    "namespace",
    "node",
    "cpu_cores_usage",
    "cpu_cores_request",
    "memory_bytes_usage",
    "memory_bytes_request",
    "pod_count",
]
CLUSTER_USAGE_COLUMNS = ["cluster_name", "total_cpu_used"]
NODE_CAPACITY_COLUMNS = ["cluster_name", "avg_cpu_capacity", "avg_memory_capacity", "avg_hourly_cost"]

POD_NUMERIC_COLUMNS = ["cpu_millicores", "memory_bytes", "cpu_request_millicores", "memory_request_bytes"]
NODE_NUMERIC_COLUMNS = ["cpu_capacity", "memory_capacity", "hourly_cost_usd"]


class MetricsStore:
    """Grouped pod usage queries."""

    def query_grouped(
        self,
        tenant_id: Any,
        window: TimeWindow,
        dimensions: List[Dimension],
        filters: List[Filter],
    ) -> pd.DataFrame:
        """Average usage/requests per group for one window.

        Raises:
            StorageQueryFailure: If the query fails
        """
        raise NotImplementedError

    def cluster_cpu_usage(self, tenant_id: Any, window: TimeWindow) -> pd.DataFrame:
        """Sum of pod CPU (cores) per cluster: cluster_name, total_cpu_used."""
        raise NotImplementedError


class NodeCapacityStore:
    """Node capacity and cost queries."""

    def avg_capacity_and_cost(self, tenant_id: Any, window: TimeWindow) -> pd.DataFrame:
        """Per cluster: avg_cpu_capacity, avg_memory_capacity, avg_hourly_cost."""
        raise NotImplementedError


def empty_frame(columns: List[str]) -> pd.DataFrame:
    return pd.DataFrame({column: [] for column in columns})


def _prepare_pod_metrics(pod_metrics: Optional[pd.DataFrame]) -> pd.DataFrame:
    if pod_metrics is None or pod_metrics.empty:
        return pd.DataFrame(columns=["time", "tenant_id", "cluster_name", "namespace", "pod_name", "node_name"]
                            + POD_NUMERIC_COLUMNS + ["labels"])
    df = pod_metrics.copy()
    df["time"] = pd.to_datetime(df["time"], utc=True)
    for column in POD_NUMERIC_COLUMNS:
        if column not in df.columns:
            df[column] = 0.0
        df[column] = pd.to_numeric(df[column], errors="coerce").fillna(0.0)
    for column in ("cluster_name", "namespace", "pod_name", "node_name"):
        df[column] = df[column].fillna("").astype(str)
    if "labels" not in df.columns:
        df["labels"] = [{} for _ in range(len(df))]
    df["labels"] = df["labels"].map(as_label_dict)
    return df


def _prepare_node_metrics(node_metrics: Optional[pd.DataFrame]) -> pd.DataFrame:
    if node_metrics is None or node_metrics.empty:
        return pd.DataFrame(columns=["time", "tenant_id", "cluster_name", "node_name"] + NODE_NUMERIC_COLUMNS)
    df = node_metrics.copy()
    df["time"] = pd.to_datetime(df["time"], utc=True)
    for column in NODE_NUMERIC_COLUMNS:
        if column not in df.columns:
            df[column] = 0.0
        df[column] = pd.to_numeric(df[column], errors="coerce").fillna(0.0)
    df["cluster_name"] = df["cluster_name"].fillna("").astype(str)
    return df


class FrameMetricsStore(MetricsStore, NodeCapacityStore):
    """Metrics store over in-memory ``pod_metrics`` / ``node_metrics`` frames.

    Used for tests and for parquet exports loaded from S3.
    """

    def __init__(
        self,
        pod_metrics: Optional[pd.DataFrame] = None,
        node_metrics: Optional[pd.DataFrame] = None,
        require_label_key: bool = False,
    ):
        """Initialize store.

        Args:
            pod_metrics: Pod samples (time, tenant_id, cluster_name, namespace,
                pod_name, node_name, cpu_millicores, memory_bytes,
                cpu_request_millicores, memory_request_bytes, labels)
            node_metrics: Node samples (time, tenant_id, cluster_name, node_name,
                instance_type, cpu_capacity, memory_capacity, hourly_cost_usd)
            require_label_key: Only include samples that carry every label key
                used for grouping
        """
        self.logger = get_logger("metrics_store")
        self.pod_metrics = _prepare_pod_metrics(pod_metrics)
        self.node_metrics = _prepare_node_metrics(node_metrics)
        self.require_label_key = require_label_key
        self.logger.info(
            "Initialized in-memory metrics store",
            pod_rows=len(self.pod_metrics),
            node_rows=len(self.node_metrics),
        )

    @staticmethod
    def _in_window(df: pd.DataFrame, tenant_id: Any, window: TimeWindow) -> pd.DataFrame:
        start = pd.Timestamp(window.start)
        end = pd.Timestamp(window.end)
        mask = (df["time"] >= start) & (df["time"] < end)
        if "tenant_id" in df.columns:
            mask &= df["tenant_id"].astype(str) == str(tenant_id)
        return df[mask]

    def _pods(self, tenant_id: Any, window: TimeWindow) -> pd.DataFrame:
        df = self._in_window(self.pod_metrics, tenant_id, window)
        return df[df["pod_name"] != AGGREGATE_POD]

    @staticmethod
    def _filter_mask(df: pd.DataFrame, query_filter: Filter) -> pd.Series:
        values = list(query_filter.values)
        if query_filter.kind == FilterKind.NAMESPACE:
            return df["namespace"].isin(values)
        if query_filter.kind == FilterKind.CLUSTER:
            return df["cluster_name"].isin(values)
        if query_filter.kind == FilterKind.NODE:
            return df["node_name"].isin(values)
        if query_filter.kind == FilterKind.POD:
            mask = pd.Series(False, index=df.index)
            for value in values:
                mask |= df["pod_name"].str.contains(value, regex=False)
            return mask
        key = query_filter.label_key
        return df["labels"].map(lambda labels: labels.get(key) in values).astype(bool)

    @staticmethod
    def _dimension_values(df: pd.DataFrame, dimension: Dimension) -> pd.Series:
        if dimension.kind == DimensionKind.CLUSTER:
            return df["cluster_name"]
        if dimension.kind == DimensionKind.NODE:
            return df["node_name"]
        if dimension.kind == DimensionKind.POD:
            return df["namespace"] + "/" + df["pod_name"]
        if dimension.kind == DimensionKind.CONTROLLER:
            return df["pod_name"].map(controller_name)
        if dimension.kind == DimensionKind.LABEL:
            key = dimension.label_key
            return df["labels"].map(lambda labels: str(labels.get(key, UNALLOCATED_NAME)))
        return df["namespace"]

    def query_grouped(self, tenant_id, window, dimensions, filters):
        with PerformanceTimer(f"Grouped pod query ({','.join(str(d) for d in dimensions)})", self.logger):
            try:
                df = self._pods(tenant_id, window)
                for query_filter in filters:
                    df = df[self._filter_mask(df, query_filter)]
                if self.require_label_key:
                    for key in label_keys(dimensions):
                        df = df[df["labels"].map(lambda labels: key in labels).astype(bool)]
                if df.empty:
                    return empty_frame(GROUPED_COLUMNS)

                parts = pd.concat(
                    [self._dimension_values(df, dimension) for dimension in dimensions],
                    axis=1,
                    ignore_index=True,
                ).astype(str)
                df = df.assign(name=parts.apply(lambda row: "/".join(row), axis=1))
                grouped = (
                    df.groupby(["name", "cluster_name", "namespace", "node_name"], sort=False)
                    .agg(
                        cpu_cores_usage=("cpu_millicores", "mean"),
                        cpu_cores_request=("cpu_request_millicores", "mean"),
                        memory_bytes_usage=("memory_bytes", "mean"),
                        memory_bytes_request=("memory_request_bytes", "mean"),
                        pod_count=("pod_name", "nunique"),
                    )
                    .reset_index()
                    .rename(columns={"cluster_name": "cluster", "node_name": "node"})
                )
            except (KeyError, TypeError, ValueError) as e:
                raise StorageQueryFailure(f"grouped pod query failed: {e}") from e

        grouped["cpu_cores_usage"] = convert_millicores_to_cores(grouped["cpu_cores_usage"])
        grouped["cpu_cores_request"] = convert_millicores_to_cores(grouped["cpu_cores_request"])
        grouped = grouped.sort_values("cpu_cores_usage", ascending=False, kind="stable")
        return grouped[GROUPED_COLUMNS].reset_index(drop=True)

    def cluster_cpu_usage(self, tenant_id, window):
        try:
            df = self._pods(tenant_id, window)
            if df.empty:
                return empty_frame(CLUSTER_USAGE_COLUMNS)
            usage = df.groupby("cluster_name", sort=True)["cpu_millicores"].sum().reset_index()
        except (KeyError, TypeError, ValueError) as e:
            raise StorageQueryFailure(f"cluster usage query failed: {e}") from e
        usage["total_cpu_used"] = convert_millicores_to_cores(usage["cpu_millicores"])
        return usage[CLUSTER_USAGE_COLUMNS]

    def avg_capacity_and_cost(self, tenant_id, window):
        try:
            df = self._in_window(self.node_metrics, tenant_id, window)
            if df.empty:
                return empty_frame(NODE_CAPACITY_COLUMNS)
            capacity = (
                df.groupby("cluster_name", sort=True)
                .agg(
                    avg_cpu_capacity=("cpu_capacity", "mean"),
                    avg_memory_capacity=("memory_capacity", "mean"),
                    avg_hourly_cost=("hourly_cost_usd", "mean"),
                )
                .reset_index()
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageQueryFailure(f"node capacity query failed: {e}") from e
        return capacity.replace([np.inf, -np.inf], 0.0).fillna(0.0)

