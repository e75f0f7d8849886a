"""
Shared pytest fixtures for all tests.

Provides a fixed clock, a base configuration and small pod/node metric
frames covering one tenant and cluster on 2024-01-10.
"""

from datetime import datetime, timezone

import pandas as pd
import pytest

from allocation_engine.metrics_store import FrameMetricsStore
from allocation_engine.models import DefaultRates
from allocation_engine.pricing import PricingResolver
from allocation_engine.utils import setup_logging

GIB = 2 ** 30

# Wednesday; "today" is [2024-01-10T00:00Z, 2024-01-10T12:00Z)
NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Route structlog through stdlib logging so stdout carries only CLI output."""
    setup_logging(level="INFO", log_format="console")


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def base_config():
    """Configuration with defaults only (no pricing configs)."""
    return {
        "logging": {"level": "INFO", "format": "console"},
        "allocation": {"default_limit": 1000, "strict_aggregate": False, "require_label_key": False},
        "pricing": {
            "provider": "custom",
            "cache_ttl_seconds": 3600,
            "default_rates": {"cpu_per_core_hour": 0.031611, "memory_per_gb_hour": 0.004237},
        },
        "postgresql": {
            "host": "db.local",
            "port": 5432,
            "database": "costs",
            "user": "cost",
            "password": "secret",
        },
        "s3": {
            "endpoint": "http://localhost:9000",
            "bucket": "test-bucket",
            "access_key": "testkey",
            "secret_key": "testsecret",
            "region": "us-east-1",
            "verify_ssl": False,
            "parallel_readers": 2,
            "pod_metrics_prefix": "metrics/tenant={tenant_id}/pod_metrics/",
            "node_metrics_prefix": "metrics/tenant={tenant_id}/node_metrics/",
        },
    }


@pytest.fixture
def pod_metrics():
    """Pod samples at 01:00 and 02:00 on 2024-01-10 for tenant 1.

    - web-7d4b9c8f6d-x2x7k (web, node-a): 0.5 cores used / 1 requested,
      1 GiB used / 2 GiB requested, team=a
    - api-5f6d7c8b9a-abcde (web, node-b): 2 cores used / 1 requested,
      2 GiB used / 1 GiB requested, team=a (JSON string labels)
    - batch-job-1 (batch, node-a): 0.25 cores, 0.5 GiB, nothing requested,
      no labels

    Plus rows that must never be counted: the __aggregate__ pseudo-pod,
    another tenant, and a sample from the previous day.
    """
    times = ["2024-01-10T01:00:00Z", "2024-01-10T02:00:00Z"]
    rows = []
    for time in times:
        rows.append(("1", "prod-east", "web", "web-7d4b9c8f6d-x2x7k", "node-a", 500, 1 * GIB, 1000, 2 * GIB,
                     {"team": "a", "app": "web"}, time))
        rows.append(("1", "prod-east", "web", "api-5f6d7c8b9a-abcde", "node-b", 2000, 2 * GIB, 1000, 1 * GIB,
                     '{"team": "a"}', time))
        rows.append(("1", "prod-east", "batch", "batch-job-1", "node-a", 250, 0.5 * GIB, 0, 0, None, time))
    rows.append(("1", "prod-east", "web", "__aggregate__", "node-a", 99999, 99 * GIB, 0, 0, None, times[0]))
    rows.append(("2", "prod-east", "web", "other-tenant-pod", "node-a", 8000, 8 * GIB, 0, 0, None, times[0]))
    rows.append(("1", "prod-east", "web", "web-7d4b9c8f6d-x2x7k", "node-a", 9000, 9 * GIB, 0, 0, None,
                 "2024-01-09T10:00:00Z"))

    columns = [
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
        "time",
    ]
    return pd.DataFrame(rows, columns=columns)


@pytest.fixture
def node_metrics():
    """Two 8-core nodes costing $0.40/hour each in prod-east."""
    return pd.DataFrame(
        {
            "time": ["2024-01-10T01:00:00Z", "2024-01-10T01:00:00Z", "2024-01-10T02:00:00Z", "2024-01-10T02:00:00Z"],
            "tenant_id": ["1", "1", "1", "1"],
            "cluster_name": ["prod-east"] * 4,
            "node_name": ["node-a", "node-b", "node-a", "node-b"],
            "instance_type": ["m5.2xlarge"] * 4,
            "cpu_capacity": [8.0, 8.0, 8.0, 8.0],
            "memory_capacity": [32.0 * GIB] * 4,
            "hourly_cost_usd": [0.4, 0.4, 0.4, 0.4],
        }
    )


@pytest.fixture
def metrics_store(pod_metrics, node_metrics):
    return FrameMetricsStore(pod_metrics, node_metrics)


@pytest.fixture
def default_rates():
    return DefaultRates()


@pytest.fixture
def resolver(default_rates):
    """Resolver without a pricing store: always the default rates."""
    return PricingResolver(default_rates=default_rates)
