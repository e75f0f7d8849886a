"""Pricing resolution: cluster/node rates with a shared TTL cache.

Resolution order for a (tenant, cluster, day):

1. Cached EffectivePricing, if still fresh.
2. The cluster's assigned pricing config, else the tenant's default
   config, else provider list prices (the custom provider resolves to
   the injected DefaultRates).
3. Rates active on that day are folded into an EffectivePricing, and
   node overrides are applied on top.

Any failure along the way yields DefaultRates and a warning; callers
never see a pricing error.
"""

import itertools
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import PricingResolutionFailure
from .models import (
    CloudProvider,
    DefaultRates,
    EffectivePricing,
    InstancePrice,
    NodePricingRecord,
    PricingConfigRecord,
    PricingRate,
    PricingRateRecord,
    PricingTier,
    ResourceType,
    provider_default_rate,
)
from .utils import get_logger

DEFAULT_CACHE_TTL_SECONDS = 3600.0
DEFAULT_CACHE_MAX_SIZE = 1024


class ReadWriteLock:
    """Many concurrent readers or one exclusive writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PricingCache:
    """Thread-safe TTL cache of EffectivePricing keyed by "tenant:cluster:date".

    Reads share the lock; expired entries are dropped on the miss that
    finds them and swept on every ``set``. Past ``max_size`` the least
    recently used entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max_size = max(int(max_size), 1)
        self._clock = clock
        self._entries: Dict[str, Tuple[EffectivePricing, float]] = {}
        self._last_used: Dict[str, int] = {}
        self._ticks = itertools.count()
        self._lock = ReadWriteLock()
        # Guards hit/miss counters and recency, which readers update concurrently
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[EffectivePricing]:
        """Return the cached pricing, or None on miss or expiry."""
        with self._lock.read():
            entry = self._entries.get(key)
            fresh = entry is not None and self._clock() < entry[1]
            with self._stats_lock:
                if fresh:
                    self._hits += 1
                    self._last_used[key] = next(self._ticks)
                else:
                    self._misses += 1
        if fresh:
            return entry[0]

        if entry is not None:
            with self._lock.write():
                current = self._entries.get(key)
                if current is not None and self._clock() >= current[1]:
                    self._remove(key)
        return None

    def set(self, key: str, pricing: EffectivePricing):
        with self._lock.write():
            now = self._clock()
            self._entries[key] = (pricing, now + self._ttl)
            self._last_used[key] = next(self._ticks)

            for stale in [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]:
                self._remove(stale)
            while len(self._entries) > self._max_size:
                self._remove(min(self._entries, key=self._last_used.__getitem__))

    def _remove(self, key: str):
        # Caller holds the write lock
        del self._entries[key]
        self._last_used.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix.

        Returns:
            Number of entries removed
        """
        with self._lock.write():
            stale = [key for key in self._entries if key.startswith(prefix)]
            for key in stale:
                self._remove(key)
        return len(stale)

    def clear(self):
        with self._lock.write():
            self._entries.clear()
            self._last_used.clear()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    @property
    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        total = hits + misses
        return {
            "size": len(self),
            "max_size": self._max_size,
            "hits": hits,
            "misses": misses,
            "hit_rate": hits / total if total > 0 else 0.0,
        }


def cache_key(tenant_id: Any, cluster: str, as_of: datetime) -> str:
    return f"{tenant_id}:{cluster}:{as_of.strftime('%Y-%m-%d')}"


class PricingStore:
    """Source of pricing configuration.

    Implementations should raise PricingResolutionFailure on backend errors.
    """

    def get_cluster_config_id(self, tenant_id: Any, cluster: str) -> Optional[int]:
        raise NotImplementedError

    def get_default_config_id(self, tenant_id: Any) -> Optional[int]:
        raise NotImplementedError

    def get_config(self, config_id: int, as_of: date) -> Optional[PricingConfigRecord]:
        """Load a config with only the rates active on ``as_of``."""
        raise NotImplementedError

    def get_node_overrides(self, tenant_id: Any, cluster: str) -> List[NodePricingRecord]:
        raise NotImplementedError


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value), "%Y-%m-%d").date()


class ConfigPricingStore(PricingStore):
    """Pricing store backed by the ``pricing`` section of config.yaml.

    Expected layout::

        pricing:
          configs:
            - {id: 1, tenant_id: 1, provider: aws, is_default: true,
               rates: [{resource_type: cpu, cost_per_unit: 0.04}]}
          clusters:
            - {tenant_id: 1, cluster_name: prod, config_id: 1}
          nodes:
            - {tenant_id: 1, cluster_name: prod, node_name: n1, hourly_cost_override: 0.5}
    """

    def __init__(self, config: Dict):
        pricing_config = config.get("pricing", {}) or {}
        self.logger = get_logger("pricing_store")
        try:
            self.configs = {
                int(item["id"]): self._parse_config(item) for item in pricing_config.get("configs", []) or []
            }
        except (KeyError, TypeError, ValueError) as e:
            raise PricingResolutionFailure(f"invalid pricing configuration: {e}") from e
        self.clusters = pricing_config.get("clusters", []) or []
        self.nodes = pricing_config.get("nodes", []) or []
        self.logger.info(
            "Loaded pricing configuration",
            configs=len(self.configs),
            clusters=len(self.clusters),
            nodes=len(self.nodes),
        )

    @staticmethod
    def _parse_config(item: Dict) -> PricingConfigRecord:
        rates = [
            PricingRateRecord(
                resource_type=ResourceType(str(rate["resource_type"]).lower()),
                cost_per_unit=float(rate["cost_per_unit"]),
                pricing_tier=PricingTier(rate.get("pricing_tier", PricingTier.ON_DEMAND.value)),
                instance_family=rate.get("instance_family", "") or "",
                unit=rate.get("unit", "") or "",
                effective_from=_as_date(rate.get("effective_from")),
                effective_to=_as_date(rate.get("effective_to")),
            )
            for rate in item.get("rates", []) or []
        ]
        return PricingConfigRecord(
            config_id=int(item["id"]),
            tenant_id=item.get("tenant_id"),
            name=item.get("name", "") or "",
            provider=CloudProvider.parse(item.get("provider")),
            region=item.get("region", "") or "",
            is_default=bool(item.get("is_default", False)),
            rates=rates,
        )

    def get_cluster_config_id(self, tenant_id, cluster):
        for entry in self.clusters:
            if str(entry.get("tenant_id")) == str(tenant_id) and entry.get("cluster_name") == cluster:
                return int(entry["config_id"])
        return None

    def get_default_config_id(self, tenant_id):
        for record in self.configs.values():
            if str(record.tenant_id) == str(tenant_id) and record.is_default:
                return record.config_id
        return None

    def get_config(self, config_id, as_of):
        record = self.configs.get(config_id)
        if record is None:
            return None
        return PricingConfigRecord(
            config_id=record.config_id,
            tenant_id=record.tenant_id,
            name=record.name,
            provider=record.provider,
            region=record.region,
            is_default=record.is_default,
            rates=[rate for rate in record.rates if rate.is_active(as_of)],
        )

    def get_node_overrides(self, tenant_id, cluster):
        overrides = []
        for entry in self.nodes:
            if str(entry.get("tenant_id")) != str(tenant_id) or entry.get("cluster_name") != cluster:
                continue
            hourly = entry.get("hourly_cost_override")
            overrides.append(
                NodePricingRecord(
                    node_name=entry["node_name"],
                    cluster_name=cluster,
                    instance_type=entry.get("instance_type", "") or "",
                    pricing_tier=PricingTier(entry.get("pricing_tier", PricingTier.ON_DEMAND.value)),
                    hourly_cost_override=float(hourly) if hourly is not None else None,
                )
            )
        return overrides


def build_effective_pricing(config: PricingConfigRecord, defaults: DefaultRates) -> EffectivePricing:
    """Fold a config's active rates into an EffectivePricing.

    Instance-family CPU/memory rates land in ``instance_pricing``; generic
    CPU/memory rates prefer the on-demand tier. Missing generic rates fall
    back to the provider's list price.
    """
    pricing = EffectivePricing(provider=config.provider, region=config.region)

    for rate in config.rates:
        if rate.resource_type == ResourceType.GPU:
            pricing.gpu_per_hour[rate.instance_family or "default"] = rate.cost_per_unit
        elif rate.resource_type == ResourceType.STORAGE:
            pricing.storage_per_gb_month = rate.cost_per_unit
        elif rate.instance_family:
            instance = pricing.instance_pricing.setdefault(
                rate.instance_family, InstancePrice(instance_type=rate.instance_family)
            )
            if rate.resource_type == ResourceType.CPU:
                instance.cpu_per_core_hour = rate.cost_per_unit
            elif rate.resource_type == ResourceType.MEMORY:
                instance.memory_per_gb_hour = rate.cost_per_unit
        elif rate.resource_type == ResourceType.CPU:
            if pricing.cpu_per_core_hour == 0 or rate.pricing_tier == PricingTier.ON_DEMAND:
                pricing.cpu_per_core_hour = rate.cost_per_unit
        elif rate.resource_type == ResourceType.MEMORY:
            if pricing.memory_per_gb_hour == 0 or rate.pricing_tier == PricingTier.ON_DEMAND:
                pricing.memory_per_gb_hour = rate.cost_per_unit

    if pricing.cpu_per_core_hour == 0:
        pricing.cpu_per_core_hour = provider_default_rate(config.provider, ResourceType.CPU, defaults)
    if pricing.memory_per_gb_hour == 0:
        pricing.memory_per_gb_hour = provider_default_rate(config.provider, ResourceType.MEMORY, defaults)
    return pricing


def apply_node_overrides(pricing: EffectivePricing, overrides: List[NodePricingRecord]):
    """Register node-specific pricing under the node's name."""
    for node in overrides:
        if node.hourly_cost_override is not None and node.hourly_cost_override > 0:
            pricing.instance_pricing[node.node_name] = InstancePrice(
                instance_type=node.instance_type,
                hourly_cost=node.hourly_cost_override,
            )
        elif node.instance_type and node.instance_type in pricing.instance_pricing:
            pricing.instance_pricing[node.node_name] = pricing.instance_pricing[node.instance_type]


class PricingResolver:
    """Resolve CPU/memory unit rates for a tenant, cluster and node."""

    def __init__(
        self,
        default_rates: Optional[DefaultRates] = None,
        store: Optional[PricingStore] = None,
        cache: Optional[PricingCache] = None,
        provider: CloudProvider = CloudProvider.CUSTOM,
    ):
        """Initialize resolver.

        Args:
            default_rates: Fallback rates (never global state)
            store: Pricing configuration source; None means defaults only
            cache: Shared pricing cache
            provider: Provider whose list prices apply when a tenant has no config
        """
        self.default_rates = default_rates or DefaultRates()
        self.store = store
        self.cache = cache if cache is not None else PricingCache()
        self.provider = provider
        self.logger = get_logger("pricing")

    @classmethod
    def from_config(cls, config: Dict, store: Optional[PricingStore] = None) -> "PricingResolver":
        pricing_config = config.get("pricing", {}) or {}
        ttl = float(pricing_config.get("cache_ttl_seconds", DEFAULT_CACHE_TTL_SECONDS))
        max_size = int(pricing_config.get("cache_max_size", DEFAULT_CACHE_MAX_SIZE))
        return cls(
            default_rates=DefaultRates.from_config(config),
            store=store,
            cache=PricingCache(ttl_seconds=ttl, max_size=max_size),
            provider=CloudProvider.parse(pricing_config.get("provider", CloudProvider.CUSTOM.value)),
        )

    def system_defaults(self, provider: Optional[CloudProvider] = None) -> EffectivePricing:
        provider = provider or self.provider
        return EffectivePricing(
            cpu_per_core_hour=provider_default_rate(provider, ResourceType.CPU, self.default_rates),
            memory_per_gb_hour=provider_default_rate(provider, ResourceType.MEMORY, self.default_rates),
            provider=provider,
        )

    def resolve_pricing(self, tenant_id: Any, cluster: str, as_of: datetime) -> EffectivePricing:
        """Resolve (and cache) the effective pricing for a cluster on a day.

        Raises:
            PricingResolutionFailure: If the pricing store fails
        """
        key = cache_key(tenant_id, cluster, as_of)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        # Resolved outside the cache lock; only the store mutation is exclusive
        pricing = self._load_pricing(tenant_id, cluster, as_of)
        self.cache.set(key, pricing)
        return pricing

    def _load_pricing(self, tenant_id, cluster, as_of) -> EffectivePricing:
        if self.store is None:
            return self.system_defaults()

        config_id = self.store.get_cluster_config_id(tenant_id, cluster)
        if config_id is None:
            config_id = self.store.get_default_config_id(tenant_id)
        if config_id is None:
            self.logger.debug("No pricing config, using system defaults", tenant_id=tenant_id, cluster=cluster)
            return self.system_defaults()

        config = self.store.get_config(config_id, as_of.date())
        if config is None:
            self.logger.warning("Pricing config not found, using system defaults", config_id=config_id)
            return self.system_defaults()

        pricing = build_effective_pricing(config, self.default_rates)
        apply_node_overrides(pricing, self.store.get_node_overrides(tenant_id, cluster))
        return pricing

    def effective_rates(self, tenant_id: Any, cluster: str, node: str, as_of: datetime) -> PricingRate:
        """Return the CPU/memory rates for a node. Never raises.

        Args:
            tenant_id: Tenant identifier
            cluster: Cluster name
            node: Node name (node-level per-unit rates take precedence)
            as_of: Instant the rates must be valid at

        Returns:
            PricingRate
        """
        try:
            pricing = self.resolve_pricing(tenant_id, cluster, as_of)
        except Exception as e:
            self.logger.warning(
                "Pricing resolution failed, using default rates",
                tenant_id=tenant_id,
                cluster=cluster,
                error=str(e),
            )
            return self.default_rates.as_rate()
        return pricing.rate_for_node(node)

    def invalidate_tenant(self, tenant_id: Any) -> int:
        """Drop every cached entry for a tenant (after a pricing change)."""
        removed = self.cache.invalidate_prefix(f"{tenant_id}:")
        self.logger.info("Invalidated pricing cache", tenant_id=tenant_id, entries=removed)
        return removed
