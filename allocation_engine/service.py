"""Allocation query orchestration.

parse window -> plan steps -> per step: aggregate, add idle cost ->
merge steps when accumulating -> paginate.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .aggregator import AllocationAggregator
from .dimensions import parse_aggregate, parse_filters
from .idle import IdleCostCalculator, apply_idle
from .metrics_store import MetricsStore, NodeCapacityStore
from .models import DEFAULT_LIMIT, IDLE_NAME, AllocationParams, AllocationResponse, AllocationSet
from .pricing import PricingResolver
from .set_ops import merge_allocation_sets, paginate_sets
from .step_planner import calculate_steps
from .utils import PerformanceTimer, get_logger, parse_bool
from .window_parser import parse_window


class AllocationService:
    """Compute allocation sets for a tenant."""

    def __init__(
        self,
        config: Dict,
        metrics_store: MetricsStore,
        capacity_store: Optional[NodeCapacityStore] = None,
        pricing: Optional[PricingResolver] = None,
    ):
        """Initialize service.

        Args:
            config: Configuration dictionary (uses the allocation section)
            metrics_store: Pod metrics store
            capacity_store: Node capacity store; defaults to metrics_store when
                it implements NodeCapacityStore
            pricing: Pricing resolver; built from config when omitted
        """
        self.config = config
        self.logger = get_logger("allocation_service")

        allocation_config = config.get("allocation", {}) or {}
        self.default_limit = int(allocation_config.get("default_limit", DEFAULT_LIMIT))
        self.strict_aggregate = parse_bool(allocation_config.get("strict_aggregate", False))

        if capacity_store is None and isinstance(metrics_store, NodeCapacityStore):
            capacity_store = metrics_store

        self.metrics_store = metrics_store
        self.capacity_store = capacity_store
        self.pricing = pricing or PricingResolver.from_config(config)
        self.aggregator = AllocationAggregator(config, metrics_store, self.pricing)
        self.idle_calculator = (
            IdleCostCalculator(config, metrics_store, capacity_store) if capacity_store is not None else None
        )

    def get_allocations(
        self, tenant_id: Any, params: AllocationParams, now: Optional[datetime] = None
    ) -> AllocationResponse:
        """Run an allocation query.

        Args:
            tenant_id: Tenant identifier
            params: Query parameters
            now: Reference instant for relative windows (defaults to now, UTC)

        Returns:
            AllocationResponse with one set per step (one set when accumulating)

        Raises:
            InvalidWindowFormat: Unparseable window (before any query)
            InvalidAggregateDimension: Empty label key or strict-mode unknown dimension
            StorageQueryFailure: Metrics store failure (no partial result)
        """
        params = params.with_defaults(self.default_limit)

        window = parse_window(params.window, now)
        dimensions = parse_aggregate(params.aggregate, strict=self.strict_aggregate)
        filters = parse_filters(params.filters)
        steps = calculate_steps(window.start, window.end, params.step, params.accumulate)

        self.logger.info(
            "Computing allocations",
            tenant_id=tenant_id,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            aggregate=[str(d) for d in dimensions],
            steps=len(steps),
            idle=params.idle,
            share_idle=params.share_idle,
        )

        sets: List[AllocationSet] = []
        with PerformanceTimer("Allocation query", self.logger):
            for step in steps:
                allocations = self.aggregator.query_allocations(tenant_id, step, dimensions, filters)
                allocation_set = AllocationSet(window=step, allocations=allocations)
                if params.idle:
                    apply_idle(allocation_set, self._idle_cost(tenant_id, step), params.share_idle)
                allocation_set.recompute_total()
                sets.append(allocation_set)

        if params.accumulate == "true" and len(sets) > 1:
            sets = [merge_allocation_sets(sets, window)]

        sets = paginate_sets(sets, params.offset, params.limit)
        return AllocationResponse(code=200, status="success", data=sets)

    def _idle_cost(self, tenant_id, step) -> float:
        if self.idle_calculator is None:
            self.logger.warning("No node capacity store configured, idle cost set to 0")
            return 0.0
        return self.idle_calculator.calculate(tenant_id, step)

    def get_allocation_summary(
        self, tenant_id: Any, params: AllocationParams, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Condensed, always-accumulated view of an allocation query.

        Returns:
            {items, totalCost, totalCPUCost, totalRAMCost, window, aggregate}
        """
        summary_params = AllocationParams(
            window=params.window,
            aggregate=params.aggregate,
            accumulate="true",
            idle=params.idle,
            share_idle=params.share_idle,
            filters=list(params.filters),
        )
        response = self.get_allocations(tenant_id, summary_params, now)

        items = []
        total_cost = total_cpu_cost = total_ram_cost = 0.0
        if response.data:
            allocations = response.data[0].allocations
            for name in sorted(allocations):
                allocation = allocations[name]
                items.append(
                    {
                        "name": name,
                        "cpuCoreHours": allocation.cpu_core_hours,
                        "cpuCost": allocation.cpu_cost,
                        "ramByteHours": allocation.ram_byte_hours,
                        "ramCost": allocation.ram_cost,
                        "totalCost": allocation.total_cost,
                        "totalEfficiency": allocation.total_efficiency,
                    }
                )
                total_cost += allocation.total_cost
                total_cpu_cost += allocation.cpu_cost
                total_ram_cost += allocation.ram_cost

        return {
            "items": items,
            "totalCost": total_cost,
            "totalCPUCost": total_cpu_cost,
            "totalRAMCost": total_ram_cost,
            "window": summary_params.window,
            "aggregate": summary_params.aggregate,
        }

    def get_allocation_topline(
        self, tenant_id: Any, params: AllocationParams, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Tenant-wide totals at cluster level.

        Filters are not applied. Idle cost still on the set is added to
        ``totalCost`` and reported as ``totalIdleCost``.
        """
        topline_params = AllocationParams(
            window=params.window,
            aggregate="cluster",
            accumulate="true",
            idle=params.idle,
            share_idle=params.share_idle,
        )
        response = self.get_allocations(tenant_id, topline_params, now)

        totals = {
            "totalCost": 0.0,
            "totalCPUCost": 0.0,
            "totalRAMCost": 0.0,
            "totalIdleCost": 0.0,
            "totalCPUCoreHours": 0.0,
            "totalRAMByteHours": 0.0,
            "avgEfficiency": 0.0,
            "allocationCount": 0,
            "window": topline_params.window,
        }
        if not response.data:
            return totals

        allocation_set = response.data[0]
        efficiency_sum = 0.0
        for allocation in allocation_set.allocations.values():
            if allocation.name == IDLE_NAME:
                continue
            totals["totalCost"] += allocation.total_cost
            totals["totalCPUCost"] += allocation.cpu_cost
            totals["totalRAMCost"] += allocation.ram_cost
            totals["totalCPUCoreHours"] += allocation.cpu_core_hours
            totals["totalRAMByteHours"] += allocation.ram_byte_hours
            efficiency_sum += allocation.total_efficiency
            totals["allocationCount"] += 1

        totals["totalIdleCost"] = allocation_set.idle_cost
        totals["totalCost"] += allocation_set.idle_cost
        if totals["allocationCount"]:
            totals["avgEfficiency"] = efficiency_sum / totals["allocationCount"]
        return totals
