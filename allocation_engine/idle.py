"""Idle capacity cost: computation and distribution."""

from typing import Any, Dict

import numpy as np
import pandas as pd

from .errors import StorageQueryFailure
from .metrics_store import MetricsStore, NodeCapacityStore
from .models import IDLE_NAME, Allocation, AllocationSet, TimeWindow
from .utils import PerformanceTimer, get_logger

SHARE_EVEN = "true"
SHARE_WEIGHTED = "weighted"
SHARE_MODES = (SHARE_EVEN, SHARE_WEIGHTED)

logger = get_logger("idle")


class IdleCostCalculator:
    """Cost of provisioned node capacity not consumed by pods.

    Per cluster::

        idle_per_hour = (1 - min(used_cpu / avg_cpu_capacity, 1)) * avg_hourly_cost

    Clusters with no capacity contribute nothing. The hourly figure is
    multiplied by the window duration (at least one hour).
    """

    def __init__(self, config: Dict, metrics_store: MetricsStore, capacity_store: NodeCapacityStore):
        """Initialize calculator.

        Args:
            config: Configuration dictionary
            metrics_store: Source of per-cluster pod CPU usage
            capacity_store: Source of per-cluster node capacity and cost
        """
        self.config = config
        self.metrics_store = metrics_store
        self.capacity_store = capacity_store
        self.logger = get_logger("idle_cost")

    def calculate(self, tenant_id: Any, window: TimeWindow) -> float:
        """Idle cost for one window.

        Capacity store failures are logged and count as no idle cost.
        Pod usage failures propagate as StorageQueryFailure.
        """
        with PerformanceTimer("Idle cost", self.logger):
            try:
                capacity = self.capacity_store.avg_capacity_and_cost(tenant_id, window)
            except StorageQueryFailure as e:
                self.logger.warning("Node capacity query failed, idle cost set to 0", error=str(e))
                return 0.0

            usage = self.metrics_store.cluster_cpu_usage(tenant_id, window)
            idle_per_hour = self.idle_cost_per_hour(capacity, usage)

        idle_cost = idle_per_hour * window.duration_hours
        self.logger.info(
            "Calculated idle cost",
            window_start=window.start.isoformat(),
            idle_per_hour=round(idle_per_hour, 6),
            idle_cost=round(idle_cost, 6),
        )
        return idle_cost

    @staticmethod
    def idle_cost_per_hour(capacity: pd.DataFrame, usage: pd.DataFrame) -> float:
        """Sum the hourly idle cost over clusters (left join capacity -> usage)."""
        if capacity.empty:
            return 0.0

        merged = pd.merge(
            capacity[["cluster_name", "avg_cpu_capacity", "avg_hourly_cost"]],
            usage[["cluster_name", "total_cpu_used"]],
            on="cluster_name",
            how="left",
        )
        cpu_capacity = merged["avg_cpu_capacity"].fillna(0.0).to_numpy(dtype=float)
        used = merged["total_cpu_used"].fillna(0.0).to_numpy(dtype=float)
        hourly_cost = merged["avg_hourly_cost"].fillna(0.0).to_numpy(dtype=float)

        has_capacity = cpu_capacity > 0
        utilization = np.divide(used, cpu_capacity, out=np.zeros_like(used), where=has_capacity)
        idle = np.where(has_capacity, (1.0 - np.minimum(utilization, 1.0)) * hourly_cost, 0.0)
        return float(idle.sum())


def distribute_idle_cost(allocations: Dict[str, Allocation], idle_cost: float, method: str) -> bool:
    """Fold idle cost into allocations' total cost.

    Args:
        allocations: Allocations to receive the idle cost
        idle_cost: Amount to distribute
        method: "weighted" (proportional to total cost) or even split

    Returns:
        True if idle cost is fully accounted for (distributed, or nothing to
        distribute); False when it could not be distributed
    """
    if idle_cost <= 0:
        return True
    if not allocations:
        return False

    if method == SHARE_WEIGHTED:
        total = sum(allocation.total_cost for allocation in allocations.values())
        if total <= 0:
            return False
        for allocation in allocations.values():
            allocation.total_cost += allocation.total_cost / total * idle_cost
        return True

    share = idle_cost / len(allocations)
    for allocation in allocations.values():
        allocation.total_cost += share
    return True


def idle_allocation(window: TimeWindow, idle_cost: float) -> Allocation:
    return Allocation(
        name=IDLE_NAME,
        window=TimeWindow(window.start, window.end),
        minutes=window.minutes,
        total_cost=idle_cost,
    )


def apply_idle(allocation_set: AllocationSet, idle_cost: float, share_idle: str = ""):
    """Apply a window's idle cost to its allocation set.

    When sharing, idle cost is folded into the allocations and the set's
    ``idle_cost`` is cleared. Otherwise, or when it cannot be shared (no
    allocations, or weighted with zero total cost), it stays on the set and
    appears as an ``__idle__`` line item.
    """
    if share_idle in SHARE_MODES:
        if distribute_idle_cost(allocation_set.allocations, idle_cost, share_idle):
            allocation_set.idle_cost = 0.0
            allocation_set.recompute_total()
            return
        logger.warning(
            "Idle cost could not be shared, reporting it separately",
            method=share_idle,
            idle_cost=idle_cost,
            allocations=len(allocation_set),
        )

    allocation_set.idle_cost = idle_cost
    allocation_set.allocations[IDLE_NAME] = idle_allocation(allocation_set.window, idle_cost)
    allocation_set.recompute_total()
