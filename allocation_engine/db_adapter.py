"""TimescaleDB / PostgreSQL stores.

Metric queries run against the ``pod_metrics`` and ``node_metrics``
hypertables; pricing lookups against ``pricing_configs``,
``pricing_rates``, ``cluster_pricing`` and ``node_pricing``.

Connection settings come from the ``postgresql`` config section, with
DATABASE_* / POSTGRES_* environment variables as fallback.
"""

import os
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import psycopg2

from .dimensions import Dimension, DimensionKind, Filter, FilterKind, label_keys
from .errors import PricingResolutionFailure, StorageQueryFailure
from .metrics_store import (
    AGGREGATE_POD,
    CLUSTER_USAGE_COLUMNS,
    GROUPED_COLUMNS,
    NODE_CAPACITY_COLUMNS,
    MetricsStore,
    NodeCapacityStore,
)
from .models import (
    UNALLOCATED_NAME,
    CloudProvider,
    NodePricingRecord,
    PricingConfigRecord,
    PricingRateRecord,
    PricingTier,
    ResourceType,
    TimeWindow,
)
from .pricing import PricingStore
from .utils import PerformanceTimer, get_logger, parse_bool, safe_float

CONTROLLER_REGEX = "-[a-z0-9]{5,10}(-[a-z0-9]{5})?$"


def _tier(value: Optional[str]) -> PricingTier:
    try:
        return PricingTier(value or PricingTier.ON_DEMAND.value)
    except ValueError:
        return PricingTier.ON_DEMAND


def get_db_config(config: Optional[Dict] = None) -> Dict[str, str]:
    """Resolve connection settings from config, then environment variables."""
    pg_config = (config or {}).get("postgresql", {}) or {}
    return {
        "host": pg_config.get("host") or os.getenv("DATABASE_HOST", os.getenv("POSTGRES_HOST", "localhost")),
        "port": str(pg_config.get("port") or os.getenv("DATABASE_PORT", os.getenv("POSTGRES_PORT", "5432"))),
        "database": pg_config.get("database") or os.getenv("DATABASE_NAME", os.getenv("POSTGRES_DB", "costs")),
        "user": pg_config.get("user") or os.getenv("DATABASE_USER", os.getenv("POSTGRES_USER", "postgres")),
        "password": pg_config.get("password") or os.getenv("DATABASE_PASSWORD", os.getenv("POSTGRES_PASSWORD", "")),
    }


class PostgresConnection:
    """psycopg2 connection lifecycle shared by the stores."""

    def __init__(self, config: Dict, logger_name: str):
        self.config = config
        self.logger = get_logger(logger_name)
        self.db_config = get_db_config(config)
        self.connection = None

    def connect(self):
        """Establish database connection."""
        try:
            self.connection = psycopg2.connect(
                host=self.db_config["host"],
                port=self.db_config["port"],
                database=self.db_config["database"],
                user=self.db_config["user"],
                password=self.db_config["password"],
            )
            self.logger.info(
                "Database connection established",
                host=self.db_config["host"],
                database=self.db_config["database"],
            )
        except psycopg2.Error as e:
            self.logger.error("Failed to connect to database", error=str(e))
            raise StorageQueryFailure(f"database connection failed: {e}") from e

    def disconnect(self):
        """Close database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None
            self.logger.info("Database connection closed")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    def _ensure_connection(self):
        if self.connection is None:
            self.connect()
        return self.connection


def _dimension_expression(dimension: Dimension) -> Tuple[str, List[Any]]:
    if dimension.kind == DimensionKind.CLUSTER:
        return "cluster_name", []
    if dimension.kind == DimensionKind.NODE:
        return "node_name", []
    if dimension.kind == DimensionKind.POD:
        return "CONCAT(namespace, '/', pod_name)", []
    if dimension.kind == DimensionKind.CONTROLLER:
        return f"REGEXP_REPLACE(pod_name, '{CONTROLLER_REGEX}', '')", []
    if dimension.kind == DimensionKind.LABEL:
        return f"COALESCE(labels->>%s, '{UNALLOCATED_NAME}')", [dimension.label_key]
    return "namespace", []


def _filter_clause(query_filter: Filter) -> Tuple[str, List[Any]]:
    values = list(query_filter.values)
    placeholders = ", ".join(["%s"] * len(values))
    if query_filter.kind == FilterKind.NAMESPACE:
        return f"namespace IN ({placeholders})", values
    if query_filter.kind == FilterKind.CLUSTER:
        return f"cluster_name IN ({placeholders})", values
    if query_filter.kind == FilterKind.NODE:
        return f"node_name IN ({placeholders})", values
    if query_filter.kind == FilterKind.POD:
        clause = " OR ".join(["pod_name LIKE %s"] * len(values))
        return f"({clause})", [f"%{value}%" for value in values]
    return f"labels->>%s IN ({placeholders})", [query_filter.label_key] + values


def build_grouped_query(
    tenant_id: Any,
    window: TimeWindow,
    dimensions: List[Dimension],
    filters: List[Filter],
    require_label_key: bool = False,
) -> Tuple[str, List[Any]]:
    """Build the grouped pod_metrics query and its parameters.

    Label keys and filter values are always bound as parameters.
    """
    select_parts, select_params = [], []
    for dimension in dimensions:
        expression, params = _dimension_expression(dimension)
        select_parts.append(expression)
        select_params.extend(params)

    if len(select_parts) == 1:
        name_expression = select_parts[0]
    else:
        name_expression = "CONCAT(" + ", '/', ".join(select_parts) + ")"

    where = [
        "tenant_id = %s",
        "time >= %s",
        "time < %s",
        "pod_name != %s",
    ]
    where_params: List[Any] = [tenant_id, window.start, window.end, AGGREGATE_POD]

    if require_label_key:
        for key in label_keys(dimensions):
            where.append("labels ? %s")
            where_params.append(key)

    for query_filter in filters:
        clause, params = _filter_clause(query_filter)
        where.append(clause)
        where_params.extend(params)

    where_sql = " AND ".join(where)
    query = f"""
        SELECT
            {name_expression} AS name,
            cluster_name AS cluster,
            namespace,
            node_name AS node,
            AVG(cpu_millicores) / 1000.0 AS cpu_cores_usage,
            AVG(cpu_request_millicores) / 1000.0 AS cpu_cores_request,
            AVG(memory_bytes) AS memory_bytes_usage,
            AVG(memory_request_bytes) AS memory_bytes_request,
            COUNT(DISTINCT pod_name) AS pod_count
        FROM pod_metrics
        WHERE {where_sql}
        GROUP BY 1, cluster_name, namespace, node_name
        ORDER BY cpu_cores_usage DESC
    """
    return query, select_params + where_params


CLUSTER_USAGE_QUERY = """
    SELECT
        cluster_name,
        SUM(cpu_millicores) / 1000.0 AS total_cpu_used
    FROM pod_metrics
    WHERE tenant_id = %s AND time >= %s AND time < %s
        AND pod_name != %s
    GROUP BY cluster_name
    ORDER BY cluster_name
"""

NODE_CAPACITY_QUERY = """
    SELECT
        cluster_name,
        AVG(cpu_capacity) AS avg_cpu_capacity,
        AVG(memory_capacity) AS avg_memory_capacity,
        AVG(hourly_cost_usd) AS avg_hourly_cost
    FROM node_metrics
    WHERE tenant_id = %s AND time >= %s AND time < %s
    GROUP BY cluster_name
    ORDER BY cluster_name
"""


class TimescaleMetricsStore(PostgresConnection, MetricsStore, NodeCapacityStore):
    """Metrics store over the TimescaleDB hypertables."""

    def __init__(self, config: Dict):
        super().__init__(config, "timescale_store")
        allocation_config = config.get("allocation", {}) or {}
        self.require_label_key = parse_bool(allocation_config.get("require_label_key", False))

    def _read(self, description: str, query: str, params: List[Any], columns: List[str]) -> pd.DataFrame:
        connection = self._ensure_connection()
        with PerformanceTimer(description, self.logger):
            try:
                df = pd.read_sql(query, connection, params=params)
            except (psycopg2.Error, pd.errors.DatabaseError) as e:
                self.logger.error(f"{description} failed", error=str(e))
                raise StorageQueryFailure(f"{description} failed: {e}") from e
        if df.empty:
            return pd.DataFrame({column: [] for column in columns})
        return df[columns]

    def query_grouped(self, tenant_id, window, dimensions, filters):
        query, params = build_grouped_query(tenant_id, window, dimensions, filters, self.require_label_key)
        return self._read("Grouped pod query", query, params, GROUPED_COLUMNS)

    def cluster_cpu_usage(self, tenant_id, window):
        params = [tenant_id, window.start, window.end, AGGREGATE_POD]
        return self._read("Cluster CPU usage query", CLUSTER_USAGE_QUERY, params, CLUSTER_USAGE_COLUMNS)

    def avg_capacity_and_cost(self, tenant_id, window):
        params = [tenant_id, window.start, window.end]
        return self._read("Node capacity query", NODE_CAPACITY_QUERY, params, NODE_CAPACITY_COLUMNS)


class PostgresPricingStore(PostgresConnection, PricingStore):
    """Pricing store over the pricing tables."""

    def __init__(self, config: Dict):
        super().__init__(config, "postgres_pricing_store")

    def _fetch(self, query: str, params: Tuple) -> List[Tuple]:
        try:
            connection = self._ensure_connection()
            with connection.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchall()
        except (psycopg2.Error, StorageQueryFailure) as e:
            raise PricingResolutionFailure(f"pricing lookup failed: {e}") from e

    def get_cluster_config_id(self, tenant_id, cluster):
        rows = self._fetch(
            "SELECT config_id FROM cluster_pricing WHERE tenant_id = %s AND cluster_name = %s LIMIT 1",
            (tenant_id, cluster),
        )
        return int(rows[0][0]) if rows else None

    def get_default_config_id(self, tenant_id):
        rows = self._fetch(
            "SELECT id FROM pricing_configs WHERE tenant_id = %s AND is_default = true ORDER BY id LIMIT 1",
            (tenant_id,),
        )
        return int(rows[0][0]) if rows else None

    def get_config(self, config_id, as_of):
        rows = self._fetch(
            "SELECT id, tenant_id, name, provider, region, is_default FROM pricing_configs WHERE id = %s",
            (config_id,),
        )
        if not rows:
            return None
        config_row = rows[0]

        rate_rows = self._fetch(
            """
            SELECT resource_type, cost_per_unit, pricing_tier, instance_family, unit,
                   effective_from, effective_to
            FROM pricing_rates
            WHERE config_id = %s
                AND effective_from <= %s
                AND (effective_to IS NULL OR effective_to >= %s)
            ORDER BY id
            """,
            (config_id, as_of, as_of),
        )
        rates = []
        for resource_type, cost, tier, family, unit, effective_from, effective_to in rate_rows:
            try:
                rates.append(
                    PricingRateRecord(
                        resource_type=ResourceType(resource_type),
                        cost_per_unit=safe_float(cost),
                        pricing_tier=_tier(tier),
                        instance_family=family or "",
                        unit=unit or "",
                        effective_from=effective_from,
                        effective_to=effective_to,
                    )
                )
            except ValueError:
                self.logger.warning("Skipping rate with unknown resource type", resource_type=resource_type)

        return PricingConfigRecord(
            config_id=int(config_row[0]),
            tenant_id=config_row[1],
            name=config_row[2] or "",
            provider=CloudProvider.parse(config_row[3]),
            region=config_row[4] or "",
            is_default=bool(config_row[5]),
            rates=rates,
        )

    def get_node_overrides(self, tenant_id, cluster):
        rows = self._fetch(
            """
            SELECT node_name, instance_type, pricing_tier, hourly_cost_override
            FROM node_pricing
            WHERE tenant_id = %s AND cluster_name = %s
            """,
            (tenant_id, cluster),
        )
        return [
            NodePricingRecord(
                node_name=node_name,
                cluster_name=cluster,
                instance_type=instance_type or "",
                pricing_tier=_tier(tier),
                hourly_cost_override=safe_float(hourly) if hourly is not None else None,
            )
            for node_name, instance_type, tier, hourly in rows
        ]
