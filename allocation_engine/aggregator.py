"""Aggregate grouped pod metrics into priced allocations."""

from typing import Any, Dict, List, Optional

import pandas as pd

from .dimensions import Dimension, Filter
from .metrics_store import MetricsStore
from .models import UNALLOCATED_NAME, Allocation, AllocationProperties, TimeWindow
from .pricing import PricingResolver
from .utils import (
    PerformanceTimer,
    calculate_effective_usage,
    calculate_efficiency,
    convert_bytes_to_gigabytes,
    get_logger,
    safe_float,
)


class AllocationAggregator:
    """Turn grouped usage rows into named Allocation records.

    Billing uses the greater of request and usage for each resource.
    Rows that resolve to the same name are summed with
    ``Allocation.accumulate``.
    """

    def __init__(self, config: Dict, metrics_store: MetricsStore, pricing: PricingResolver):
        """Initialize aggregator.

        Args:
            config: Configuration dictionary
            metrics_store: Store answering grouped pod queries
            pricing: Resolver for CPU/memory unit rates
        """
        self.config = config
        self.metrics_store = metrics_store
        self.pricing = pricing
        self.logger = get_logger("aggregator")

    def query_allocations(
        self,
        tenant_id: Any,
        window: TimeWindow,
        dimensions: List[Dimension],
        filters: Optional[List[Filter]] = None,
    ) -> Dict[str, Allocation]:
        """Query and price allocations for one window.

        Args:
            tenant_id: Tenant identifier
            window: Step window
            dimensions: Parsed aggregate dimensions
            filters: Parsed filter predicates

        Returns:
            Allocations keyed by name

        Raises:
            StorageQueryFailure: If the metrics store query fails
        """
        with PerformanceTimer(f"Aggregate allocations {window.start.isoformat()}", self.logger):
            rows = self.metrics_store.query_grouped(tenant_id, window, dimensions, filters or [])
            allocations = self.build_allocations(tenant_id, window, rows)

        self.logger.info(
            "Aggregated allocations",
            window_start=window.start.isoformat(),
            rows=len(rows),
            allocations=len(allocations),
        )
        return allocations

    def build_allocations(self, tenant_id: Any, window: TimeWindow, rows: pd.DataFrame) -> Dict[str, Allocation]:
        results: Dict[str, Allocation] = {}
        for row in rows.to_dict("records"):
            allocation = self.build_allocation(tenant_id, window, row)
            existing = results.get(allocation.name)
            if existing is None:
                results[allocation.name] = allocation
            else:
                existing.accumulate(allocation)
        return results

    def build_allocation(self, tenant_id: Any, window: TimeWindow, row: Dict[str, Any]) -> Allocation:
        """Price a single grouped row."""
        name = str(row.get("name") or "") or UNALLOCATED_NAME
        cluster = str(row.get("cluster") or "")
        node = str(row.get("node") or "")

        cpu_usage = safe_float(row.get("cpu_cores_usage"))
        cpu_request = safe_float(row.get("cpu_cores_request"))
        ram_usage = safe_float(row.get("memory_bytes_usage"))
        ram_request = safe_float(row.get("memory_bytes_request"))

        effective_cpu = calculate_effective_usage(cpu_usage, cpu_request)
        effective_ram = calculate_effective_usage(ram_usage, ram_request)

        hours = window.duration_hours
        cpu_core_hours = effective_cpu * hours
        ram_byte_hours = effective_ram * hours

        rate = self.pricing.effective_rates(tenant_id, cluster, node, window.start)
        cpu_cost = cpu_core_hours * rate.cpu_per_core_hour
        ram_cost = convert_bytes_to_gigabytes(ram_byte_hours) * rate.memory_per_gb_hour

        cpu_efficiency = calculate_efficiency(cpu_usage, cpu_request)
        ram_efficiency = calculate_efficiency(ram_usage, ram_request)

        return Allocation(
            name=name,
            window=TimeWindow(window.start, window.end),
            properties=AllocationProperties(
                cluster=cluster,
                namespace=str(row.get("namespace") or ""),
                node=node,
            ),
            minutes=window.minutes,
            cpu_cores=effective_cpu,
            cpu_core_request_avg=cpu_request,
            cpu_core_usage_avg=cpu_usage,
            cpu_core_hours=cpu_core_hours,
            cpu_cost=cpu_cost,
            cpu_efficiency=cpu_efficiency,
            ram_bytes=effective_ram,
            ram_byte_request_avg=ram_request,
            ram_byte_usage_avg=ram_usage,
            ram_byte_hours=ram_byte_hours,
            ram_cost=ram_cost,
            ram_efficiency=ram_efficiency,
            total_cost=cpu_cost + ram_cost,
            total_efficiency=(cpu_efficiency + ram_efficiency) / 2,
            pod_count=int(safe_float(row.get("pod_count"))),
        )
