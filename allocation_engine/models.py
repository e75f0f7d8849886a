"""Allocation data model (OpenCost-compatible response shape).

All objects here are request-scoped: they are built fresh for every
allocation query and never persisted.
"""

import copy
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .utils import format_timestamp

UNALLOCATED_NAME = "__unallocated__"
IDLE_NAME = "__idle__"

DEFAULT_LIMIT = 1000

# Numeric fields summed when two allocations share a name. Averages and
# efficiencies are deliberately absent: they keep the first row's value.
ACCUMULATED_FIELDS = (
    "cpu_cores",
    "cpu_core_hours",
    "cpu_cost",
    "ram_bytes",
    "ram_byte_hours",
    "ram_cost",
    "total_cost",
    "pod_count",
)


@dataclass
class TimeWindow:
    """Half-open [start, end) time range."""

    start: datetime
    end: datetime

    @property
    def duration_hours(self) -> float:
        """Duration used for rate math, clamped to 1h when not positive."""
        hours = (self.end - self.start).total_seconds() / 3600.0
        return hours if hours > 0 else 1.0

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60.0

    def to_dict(self) -> Dict[str, str]:
        return {"start": format_timestamp(self.start), "end": format_timestamp(self.end)}


@dataclass
class AllocationProperties:
    """Dimensional properties of an allocation."""

    cluster: str = ""
    node: str = ""
    namespace: str = ""
    pod: str = ""
    container: str = ""
    controller: str = ""
    controller_kind: str = ""
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "cluster": self.cluster,
            "node": self.node,
            "namespace": self.namespace,
            "pod": self.pod,
            "container": self.container,
            "controller": self.controller,
            "controllerKind": self.controller_kind,
            "labels": dict(self.labels),
        }
        # omitempty
        return {key: value for key, value in result.items() if value}


@dataclass
class Allocation:
    """Cost and usage summary for one named bucket over a window."""

    name: str
    window: TimeWindow
    properties: AllocationProperties = field(default_factory=AllocationProperties)
    minutes: float = 0.0

    # CPU
    cpu_cores: float = 0.0
    cpu_core_request_avg: float = 0.0
    cpu_core_usage_avg: float = 0.0
    cpu_core_hours: float = 0.0
    cpu_cost: float = 0.0
    cpu_efficiency: float = 0.0

    # RAM
    ram_bytes: float = 0.0
    ram_byte_request_avg: float = 0.0
    ram_byte_usage_avg: float = 0.0
    ram_byte_hours: float = 0.0
    ram_cost: float = 0.0
    ram_efficiency: float = 0.0

    total_cost: float = 0.0
    total_efficiency: float = 0.0
    pod_count: int = 0

    @property
    def start(self) -> datetime:
        return self.window.start

    @property
    def end(self) -> datetime:
        return self.window.end

    def accumulate(self, other: "Allocation", include_minutes: bool = False) -> "Allocation":
        """Add another allocation's numeric fields into this one.

        Used both when several query rows map to the same name and when
        step results are merged. Efficiency is never recomputed.

        Args:
            other: Allocation to fold in
            include_minutes: Also add ``minutes`` (cross-window merges)

        Returns:
            self
        """
        for name in ACCUMULATED_FIELDS:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        if include_minutes:
            self.minutes += other.minutes
        return self

    def copy_for_window(self, window: TimeWindow) -> "Allocation":
        """Copy this allocation re-stamped to a different window."""
        return replace(
            self,
            window=TimeWindow(window.start, window.end),
            properties=copy.deepcopy(self.properties),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "properties": self.properties.to_dict(),
            "window": self.window.to_dict(),
            "start": format_timestamp(self.start),
            "end": format_timestamp(self.end),
            "minutes": self.minutes,
            "cpuCores": self.cpu_cores,
            "cpuCoreRequestAverage": self.cpu_core_request_avg,
            "cpuCoreUsageAverage": self.cpu_core_usage_avg,
            "cpuCoreHours": self.cpu_core_hours,
            "cpuCost": self.cpu_cost,
            "cpuEfficiency": self.cpu_efficiency,
            "ramBytes": self.ram_bytes,
            "ramByteRequestAverage": self.ram_byte_request_avg,
            "ramByteUsageAverage": self.ram_byte_usage_avg,
            "ramByteHours": self.ram_byte_hours,
            "ramCost": self.ram_cost,
            "ramEfficiency": self.ram_efficiency,
            "totalCost": self.total_cost,
            "totalEfficiency": self.total_efficiency,
        }
        if self.pod_count:
            result["podCount"] = self.pod_count
        return result


@dataclass
class AllocationSet:
    """Allocations for one time window, keyed by name."""

    window: TimeWindow
    allocations: Dict[str, Allocation] = field(default_factory=dict)
    total_cost: float = 0.0
    # Non-zero only while idle cost is undistributed
    idle_cost: float = 0.0

    def __len__(self) -> int:
        return len(self.allocations)

    def names(self) -> List[str]:
        return sorted(self.allocations)

    def recompute_total(self) -> float:
        self.total_cost = sum(alloc.total_cost for alloc in self.allocations.values())
        return self.total_cost

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "allocations": {name: alloc.to_dict() for name, alloc in self.allocations.items()},
            "window": self.window.to_dict(),
            "totalCost": self.total_cost,
        }
        if self.idle_cost:
            result["idleCost"] = self.idle_cost
        return result


@dataclass
class AllocationParams:
    """Query configuration for an allocation request."""

    window: str = "24h"
    aggregate: str = "namespace"
    step: str = ""
    accumulate: str = "true"
    idle: bool = False
    share_idle: str = ""
    filters: List[str] = field(default_factory=list)
    offset: int = 0
    limit: int = 0

    def with_defaults(self, default_limit: int = DEFAULT_LIMIT) -> "AllocationParams":
        """Return a copy with service defaults applied (limit, accumulate)."""
        return replace(
            self,
            filters=list(self.filters),
            limit=self.limit if self.limit > 0 else default_limit,
            accumulate=self.accumulate or "true",
        )


@dataclass
class AllocationResponse:
    code: int
    status: str
    data: List[AllocationSet] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "status": self.status,
            "data": [allocation_set.to_dict() for allocation_set in self.data],
        }


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


class CloudProvider(str, Enum):
    AWS = "aws"
    GCP = "gcp"
    AZURE = "azure"
    OCI = "oci"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CloudProvider":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.CUSTOM


class PricingTier(str, Enum):
    ON_DEMAND = "on_demand"
    SPOT = "spot"
    PREEMPTIBLE = "preemptible"
    RESERVED_1YR = "reserved_1yr"
    RESERVED_3YR = "reserved_3yr"


class ResourceType(str, Enum):
    CPU = "cpu"
    MEMORY = "memory"
    GPU = "gpu"
    STORAGE = "storage"
    NETWORK = "network"


@dataclass(frozen=True)
class PricingRate:
    """Unit rates applied to an allocation row."""

    cpu_per_core_hour: float
    memory_per_gb_hour: float


@dataclass(frozen=True)
class DefaultRates:
    """Fallback rates used whenever pricing cannot be resolved.

    Injected into the pricing resolver so tenants or deployments can
    override them through configuration.
    """

    cpu_per_core_hour: float = 0.031611
    memory_per_gb_hour: float = 0.004237

    @classmethod
    def from_config(cls, config: Optional[Dict]) -> "DefaultRates":
        rates = (config or {}).get("pricing", {}).get("default_rates", {}) or {}
        defaults = cls()
        return cls(
            cpu_per_core_hour=float(rates.get("cpu_per_core_hour", defaults.cpu_per_core_hour)),
            memory_per_gb_hour=float(rates.get("memory_per_gb_hour", defaults.memory_per_gb_hour)),
        )

    def as_rate(self) -> PricingRate:
        return PricingRate(self.cpu_per_core_hour, self.memory_per_gb_hour)


# Provider list prices ($/core-hour, $/GB-hour). The custom provider has no
# entry here; it resolves to the injected DefaultRates.
PROVIDER_DEFAULT_RATES: Dict[CloudProvider, Dict[str, float]] = {
    CloudProvider.AWS: {
        "cpu_on_demand": 0.0425,
        "cpu_spot": 0.0128,
        "cpu_reserved_1yr": 0.0270,
        "cpu_reserved_3yr": 0.0180,
        "memory_on_demand": 0.0053,
        "memory_spot": 0.0016,
        "memory_reserved": 0.0034,
    },
    CloudProvider.GCP: {
        "cpu_on_demand": 0.0350,
        "cpu_spot": 0.0105,
        "cpu_committed_1yr": 0.0220,
        "cpu_committed_3yr": 0.0150,
        "memory_on_demand": 0.0047,
        "memory_spot": 0.0014,
    },
    CloudProvider.AZURE: {
        "cpu_on_demand": 0.0420,
        "cpu_spot": 0.0126,
        "cpu_reserved_1yr": 0.0265,
        "cpu_reserved_3yr": 0.0175,
        "memory_on_demand": 0.0052,
        "memory_spot": 0.0016,
    },
    CloudProvider.OCI: {
        "cpu_on_demand": 0.0250,
        "cpu_preemptible": 0.0063,
        "memory_on_demand": 0.0015,
        "memory_preemptible": 0.0004,
    },
}


def provider_default_rate(
    provider: CloudProvider,
    resource: ResourceType,
    defaults: DefaultRates,
    tier: PricingTier = PricingTier.ON_DEMAND,
) -> float:
    """Look up a provider list price, falling back to on-demand, then to defaults."""
    rates = PROVIDER_DEFAULT_RATES.get(provider, {})
    for key in (f"{resource.value}_{tier.value}", f"{resource.value}_on_demand"):
        if key in rates:
            return rates[key]
    if resource == ResourceType.MEMORY:
        return defaults.memory_per_gb_hour
    return defaults.cpu_per_core_hour


@dataclass
class InstancePrice:
    """Pricing for an instance family or a specific node."""

    instance_type: str = ""
    cpu_per_core_hour: float = 0.0
    memory_per_gb_hour: float = 0.0
    hourly_cost: float = 0.0


@dataclass
class EffectivePricing:
    """Resolved pricing for one tenant/cluster at a point in time."""

    cpu_per_core_hour: float = 0.0
    memory_per_gb_hour: float = 0.0
    provider: CloudProvider = CloudProvider.CUSTOM
    region: str = ""
    gpu_per_hour: Dict[str, float] = field(default_factory=dict)
    storage_per_gb_month: float = 0.0
    # Keyed by instance family or node name
    instance_pricing: Dict[str, InstancePrice] = field(default_factory=dict)

    def rate_for_node(self, node: str) -> PricingRate:
        """Cluster rates with per-node overrides applied where positive."""
        cpu_rate = self.cpu_per_core_hour
        memory_rate = self.memory_per_gb_hour
        node_price = self.instance_pricing.get(node) if node else None
        if node_price is not None:
            if node_price.cpu_per_core_hour > 0:
                cpu_rate = node_price.cpu_per_core_hour
            if node_price.memory_per_gb_hour > 0:
                memory_rate = node_price.memory_per_gb_hour
        return PricingRate(cpu_rate, memory_rate)


@dataclass
class PricingRateRecord:
    """A configured rate row (pricing_rates)."""

    resource_type: ResourceType
    cost_per_unit: float
    pricing_tier: PricingTier = PricingTier.ON_DEMAND
    instance_family: str = ""
    unit: str = ""
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None

    def is_active(self, as_of: date) -> bool:
        if self.effective_from is not None and self.effective_from > as_of:
            return False
        if self.effective_to is not None and self.effective_to < as_of:
            return False
        return True


@dataclass
class PricingConfigRecord:
    """A pricing configuration (pricing_configs) with its active rates."""

    config_id: int
    tenant_id: int
    name: str = ""
    provider: CloudProvider = CloudProvider.CUSTOM
    region: str = ""
    is_default: bool = False
    rates: List[PricingRateRecord] = field(default_factory=list)


@dataclass
class NodePricingRecord:
    """Node-level pricing override (node_pricing)."""

    node_name: str
    cluster_name: str = ""
    instance_type: str = ""
    pricing_tier: PricingTier = PricingTier.ON_DEMAND
    hourly_cost_override: Optional[float] = None
