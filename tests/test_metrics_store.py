"""Tests for the in-memory pandas metrics store."""

from datetime import datetime, timezone

import pytest

from allocation_engine.dimensions import parse_aggregate, parse_filters
from allocation_engine.errors import StorageQueryFailure
from allocation_engine.metrics_store import GROUPED_COLUMNS, FrameMetricsStore
from allocation_engine.models import TimeWindow

GIB = 2 ** 30
TODAY = TimeWindow(datetime(2024, 1, 10, tzinfo=timezone.utc), datetime(2024, 1, 10, 12, tzinfo=timezone.utc))


def grouped(store, aggregate="namespace", filters=None, tenant="1", window=TODAY):
    return store.query_grouped(tenant, window, parse_aggregate(aggregate), parse_filters(filters or []))


class TestQueryGrouped:
    """Tests for grouped metric queries."""

    def test_namespace_rows_split_by_node(self, metrics_store):
        """Test rows are split per node."""
        rows = grouped(metrics_store)
        assert list(rows.columns) == GROUPED_COLUMNS
        # web spans node-a and node-b; batch runs on node-a
        assert sorted(zip(rows["name"], rows["node"])) == [
            ("batch", "node-a"),
            ("web", "node-a"),
            ("web", "node-b"),
        ]

    def test_averages_and_unit_conversion(self, metrics_store):
        """Test averages and millicore and byte conversion."""
        rows = grouped(metrics_store, "pod")
        web = rows[rows["name"] == "web/web-7d4b9c8f6d-x2x7k"].iloc[0]
        assert web["cpu_cores_usage"] == pytest.approx(0.5)
        assert web["cpu_cores_request"] == pytest.approx(1.0)
        assert web["memory_bytes_usage"] == pytest.approx(1 * GIB)
        assert web["memory_bytes_request"] == pytest.approx(2 * GIB)
        assert web["pod_count"] == 1
        assert web["cluster"] == "prod-east"

    def test_excludes_aggregate_pod_other_tenants_and_out_of_window(self, metrics_store):
        """Test aggregate pods, other tenants and other windows are excluded."""
        rows = grouped(metrics_store, "pod")
        assert "web/__aggregate__" not in set(rows["name"])
        assert "web/other-tenant-pod" not in set(rows["name"])
        # The 9-core sample from the previous day would dominate the average
        assert rows["cpu_cores_usage"].max() == pytest.approx(2.0)

    def test_sorted_by_cpu_usage_desc(self, metrics_store):
        """Test rows are sorted by CPU usage, highest first."""
        rows = grouped(metrics_store, "pod")
        assert list(rows["cpu_cores_usage"]) == sorted(rows["cpu_cores_usage"], reverse=True)

    def test_controller_dimension(self, metrics_store):
        """Test the controller dimension."""
        assert set(grouped(metrics_store, "controller")["name"]) == {"web", "api", "batch-job-1"}

    def test_multi_dimension_name(self, metrics_store):
        """Test multi dimension names."""
        assert set(grouped(metrics_store, "cluster,namespace")["name"]) == {"prod-east/web", "prod-east/batch"}

    def test_label_dimension_defaults_unallocated(self, metrics_store):
        """Test samples without the label are __unallocated__."""
        rows = grouped(metrics_store, "label:team")
        assert set(rows["name"]) == {"a", "__unallocated__"}

    def test_require_label_key_drops_unlabeled(self, pod_metrics, node_metrics):
        """Test require_label_key drops unlabeled samples."""
        store = FrameMetricsStore(pod_metrics, node_metrics, require_label_key=True)
        assert set(grouped(store, "label:team")["name"]) == {"a"}

    def test_half_open_window(self, metrics_store):
        """Test the window end is exclusive."""
        window = TimeWindow(
            datetime(2024, 1, 10, 1, tzinfo=timezone.utc), datetime(2024, 1, 10, 2, tzinfo=timezone.utc)
        )
        rows = grouped(metrics_store, "pod", window=window)
        # Only the 01:00 samples; 02:00 belongs to the next window
        web = rows[rows["name"] == "web/web-7d4b9c8f6d-x2x7k"].iloc[0]
        assert web["cpu_cores_usage"] == pytest.approx(0.5)
        assert len(rows) == 3

    def test_empty_result_has_columns(self, metrics_store):
        """Test an empty result keeps the grouped columns."""
        rows = grouped(metrics_store, tenant="404")
        assert rows.empty
        assert list(rows.columns) == GROUPED_COLUMNS


class TestFilters:
    """Tests for filter evaluation."""

    def test_namespace_or(self, metrics_store):
        """Test namespace values are alternatives."""
        assert set(grouped(metrics_store, filters=["namespace:web,batch"])["name"]) == {"web", "batch"}

    def test_filters_are_anded(self, metrics_store):
        """Test separate filters must all match."""
        rows = grouped(metrics_store, filters=["namespace:web", "node:node-b"])
        assert list(rows["name"]) == ["web"]
        assert list(rows["node"]) == ["node-b"]

    def test_pod_substring(self, metrics_store):
        """Test pod filters match by substring."""
        assert set(grouped(metrics_store, "pod", filters=["pod:job"])["name"]) == {"batch/batch-job-1"}

    def test_label_equality(self, metrics_store):
        """Test label filters match by equality."""
        rows = grouped(metrics_store, "pod", filters=["label:app=web"])
        assert list(rows["name"]) == ["web/web-7d4b9c8f6d-x2x7k"]

    def test_cluster_no_match(self, metrics_store):
        """Test a filter matching nothing gives no rows."""
        assert grouped(metrics_store, filters=["cluster:prod-west"]).empty


class TestCapacityAndUsage:
    """Tests for cluster usage and node capacity."""

    def test_cluster_cpu_usage_sums_samples(self, metrics_store):
        """Test cluster CPU usage sums samples."""
        usage = metrics_store.cluster_cpu_usage("1", TODAY)
        # (0.5 + 2 + 0.25) cores x 2 samples
        assert usage.iloc[0]["cluster_name"] == "prod-east"
        assert usage.iloc[0]["total_cpu_used"] == pytest.approx(5.5)

    def test_avg_capacity_and_cost(self, metrics_store):
        """Test average capacity and hourly cost."""
        capacity = metrics_store.avg_capacity_and_cost("1", TODAY)
        row = capacity.iloc[0]
        assert row["avg_cpu_capacity"] == pytest.approx(8.0)
        assert row["avg_hourly_cost"] == pytest.approx(0.4)

    def test_empty_store(self):
        """Test an empty store returns empty frames."""
        store = FrameMetricsStore()
        assert store.cluster_cpu_usage("1", TODAY).empty
        assert store.avg_capacity_and_cost("1", TODAY).empty
        assert grouped(store).empty

    def test_missing_column_is_storage_failure(self, metrics_store):
        """Test a missing column is a StorageQueryFailure."""
        metrics_store.pod_metrics = metrics_store.pod_metrics.drop(columns=["namespace"])
        with pytest.raises(StorageQueryFailure):
            grouped(metrics_store)
