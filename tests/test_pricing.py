"""Tests for pricing resolution and the pricing cache."""

import threading
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from allocation_engine.errors import PricingResolutionFailure
from allocation_engine.models import (
    CloudProvider,
    DefaultRates,
    EffectivePricing,
    NodePricingRecord,
    PricingConfigRecord,
    PricingRateRecord,
    PricingTier,
    ResourceType,
)
from allocation_engine.pricing import (
    ConfigPricingStore,
    PricingCache,
    PricingResolver,
    ReadWriteLock,
    apply_node_overrides,
    build_effective_pricing,
    cache_key,
)

AS_OF = datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable stand-in for time.monotonic."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def pricing_config():
    return {
        "pricing": {
            "provider": "custom",
            "cache_ttl_seconds": 60,
            "default_rates": {"cpu_per_core_hour": 0.031611, "memory_per_gb_hour": 0.004237},
            "configs": [
                {
                    "id": 1,
                    "tenant_id": 1,
                    "name": "aws-default",
                    "provider": "aws",
                    "region": "us-east-1",
                    "is_default": True,
                    "rates": [
                        {"resource_type": "cpu", "cost_per_unit": 0.05, "pricing_tier": "on_demand"},
                        {"resource_type": "cpu", "cost_per_unit": 0.02, "pricing_tier": "spot"},
                        {"resource_type": "cpu", "cost_per_unit": 0.07, "instance_family": "c5"},
                        {"resource_type": "memory", "cost_per_unit": 0.006, "instance_family": "c5"},
                        {"resource_type": "gpu", "cost_per_unit": 2.5},
                        {"resource_type": "storage", "cost_per_unit": 0.1},
                        {
                            "resource_type": "memory",
                            "cost_per_unit": 0.9,
                            "effective_from": "2025-01-01",
                        },
                    ],
                },
                {
                    "id": 2,
                    "tenant_id": 1,
                    "name": "gcp-batch",
                    "provider": "gcp",
                    "rates": [],
                },
            ],
            "clusters": [{"tenant_id": 1, "cluster_name": "batch", "config_id": 2}],
            "nodes": [
                {"tenant_id": 1, "cluster_name": "prod-east", "node_name": "node-a", "instance_type": "c5"},
                {"tenant_id": 1, "cluster_name": "prod-east", "node_name": "node-gpu", "hourly_cost_override": 3.06},
            ],
        }
    }


class TestPricingCache:
    """Tests for the TTL/LRU pricing cache."""

    def test_get_set(self):
        """Test a stored entry is returned and other keys miss."""
        cache = PricingCache()
        pricing = EffectivePricing(cpu_per_core_hour=1.0)
        cache.set("1:prod:2024-01-10", pricing)
        assert cache.get("1:prod:2024-01-10") is pricing
        assert cache.get("1:other:2024-01-10") is None

    def test_entries_expire(self):
        """Test entries stop being served once their TTL elapses."""
        clock = FakeClock()
        cache = PricingCache(ttl_seconds=10, clock=clock)
        cache.set("k", EffectivePricing())
        clock.now = 9.9
        assert cache.get("k") is not None
        clock.now = 10.0
        assert cache.get("k") is None

    def test_expired_entry_removed_on_get(self):
        """Test the miss that finds an expired entry deletes it."""
        clock = FakeClock()
        cache = PricingCache(ttl_seconds=10, clock=clock)
        cache.set("k", EffectivePricing())
        clock.now = 11.0
        assert len(cache) == 1
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_set_sweeps_expired_entries(self):
        """Test keys that are never read again do not accumulate."""
        clock = FakeClock()
        cache = PricingCache(ttl_seconds=10, clock=clock)
        for day in range(30):
            cache.set(f"1:prod:2024-01-{day + 1:02d}", EffectivePricing())
            clock.now += 60
        assert len(cache) == 1

    def test_max_size_evicts_least_recently_used(self):
        """Test the least recently used entry is evicted past max_size."""
        cache = PricingCache(max_size=2)
        cache.set("a", EffectivePricing())
        cache.set("b", EffectivePricing())
        assert cache.get("a") is not None
        cache.set("c", EffectivePricing())

        assert len(cache) == 2
        assert cache.get("b") is None
        assert cache.get("a") is not None
        assert cache.get("c") is not None

    def test_size_stays_bounded(self):
        """Test the cache never grows past max_size."""
        cache = PricingCache(max_size=5)
        for i in range(100):
            cache.set(f"1:c:{i}", EffectivePricing())
        assert len(cache) == 5
        assert cache.stats["size"] == 5
        assert cache.stats["max_size"] == 5

    def test_invalidate_prefix_is_tenant_scoped(self):
        """Test prefix invalidation only drops the tenant's own keys."""
        cache = PricingCache()
        for key in ("1:prod:2024-01-10", "1:dev:2024-01-10", "12:prod:2024-01-10", "2:prod:2024-01-10"):
            cache.set(key, EffectivePricing())
        assert cache.invalidate_prefix("1:") == 2
        assert cache.get("12:prod:2024-01-10") is not None
        assert len(cache) == 2

    def test_clear(self):
        """Test clear empties the cache."""
        cache = PricingCache()
        cache.set("k", EffectivePricing())
        cache.clear()
        assert len(cache) == 0

    def test_stats(self):
        """Test hit and miss counters."""
        cache = PricingCache()
        cache.get("missing")
        cache.set("k", EffectivePricing())
        cache.get("k")
        assert cache.stats["hits"] == 1
        assert cache.stats["misses"] == 1
        assert cache.stats["hit_rate"] == 0.5

    def test_stats_exact_under_concurrent_reads(self):
        """Test no hit or miss is lost when many readers run at once."""
        cache = PricingCache()
        cache.set("k", EffectivePricing())
        barrier = threading.Barrier(8)

        def reader():
            barrier.wait()
            for _ in range(500):
                cache.get("k")
                cache.get("missing")

        threads = [threading.Thread(target=reader) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert cache.stats["hits"] == 4000
        assert cache.stats["misses"] == 4000

    def test_concurrent_access(self):
        """Test concurrent set, get and invalidate leave a consistent cache."""
        cache = PricingCache()
        errors = []

        def worker(n):
            try:
                for i in range(200):
                    cache.set(f"{n}:c:{i}", EffectivePricing(cpu_per_core_hour=i))
                    cache.get(f"{n}:c:{i}")
                cache.invalidate_prefix(f"{n}:")
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(cache) == 0


class TestReadWriteLock:
    """Tests for the reader/writer lock."""

    def test_readers_share(self):
        """Test the read lock is re-entrant across readers."""
        lock = ReadWriteLock()
        with lock.read():
            with lock.read():
                pass

    def test_writer_after_readers(self):
        """Test a writer acquires once readers release."""
        lock = ReadWriteLock()
        with lock.read():
            pass
        with lock.write():
            pass


class TestBuildEffectivePricing:
    """Tests for building effective pricing from a config."""

    def _config(self, rates, provider=CloudProvider.AWS):
        return PricingConfigRecord(config_id=1, tenant_id=1, provider=provider, rates=rates)

    def test_on_demand_preferred(self, default_rates):
        """Test the on-demand rate wins over other tiers."""
        rates = [
            PricingRateRecord(ResourceType.CPU, 0.05, PricingTier.ON_DEMAND),
            PricingRateRecord(ResourceType.CPU, 0.02, PricingTier.SPOT),
        ]
        assert build_effective_pricing(self._config(rates), default_rates).cpu_per_core_hour == 0.05

    def test_first_non_on_demand_used_when_alone(self, default_rates):
        """Test a lone non on-demand rate is used."""
        rates = [PricingRateRecord(ResourceType.CPU, 0.02, PricingTier.SPOT)]
        assert build_effective_pricing(self._config(rates), default_rates).cpu_per_core_hour == 0.02

    def test_missing_rates_use_provider_defaults(self, default_rates):
        """Test missing rates use the provider defaults."""
        pricing = build_effective_pricing(self._config([], CloudProvider.GCP), default_rates)
        assert pricing.cpu_per_core_hour == 0.0350
        assert pricing.memory_per_gb_hour == 0.0047

    def test_instance_family_gpu_and_storage(self, default_rates):
        """Test instance family, GPU and storage rates."""
        rates = [
            PricingRateRecord(ResourceType.CPU, 0.07, instance_family="c5"),
            PricingRateRecord(ResourceType.MEMORY, 0.006, instance_family="c5"),
            PricingRateRecord(ResourceType.GPU, 2.5),
            PricingRateRecord(ResourceType.GPU, 3.1, instance_family="p3"),
            PricingRateRecord(ResourceType.STORAGE, 0.1),
        ]
        pricing = build_effective_pricing(self._config(rates), default_rates)
        assert pricing.instance_pricing["c5"].cpu_per_core_hour == 0.07
        assert pricing.instance_pricing["c5"].memory_per_gb_hour == 0.006
        assert pricing.gpu_per_hour == {"default": 2.5, "p3": 3.1}
        assert pricing.storage_per_gb_month == 0.1
        # Instance rates do not replace the generic rate
        assert pricing.cpu_per_core_hour == 0.0425

    def test_node_overrides(self, default_rates):
        """Test node overrides by instance type and hourly cost."""
        pricing = build_effective_pricing(
            self._config([PricingRateRecord(ResourceType.CPU, 0.07, instance_family="c5")]), default_rates
        )
        apply_node_overrides(
            pricing,
            [
                NodePricingRecord(node_name="node-a", instance_type="c5"),
                NodePricingRecord(node_name="node-b", instance_type="m5"),
                NodePricingRecord(node_name="node-gpu", instance_type="p3", hourly_cost_override=3.06),
                NodePricingRecord(node_name="node-zero", hourly_cost_override=0.0),
            ],
        )
        assert pricing.instance_pricing["node-a"].cpu_per_core_hour == 0.07
        assert "node-b" not in pricing.instance_pricing
        assert pricing.instance_pricing["node-gpu"].hourly_cost == 3.06
        assert "node-zero" not in pricing.instance_pricing


class TestConfigPricingStore:
    """Tests for the config backed pricing store."""

    def test_lookups(self, pricing_config):
        """Test cluster and default config lookups."""
        store = ConfigPricingStore(pricing_config)
        assert store.get_cluster_config_id(1, "batch") == 2
        assert store.get_cluster_config_id("1", "prod-east") is None
        assert store.get_default_config_id(1) == 1
        assert store.get_default_config_id(99) is None

    def test_get_config_filters_inactive_rates(self, pricing_config):
        """Test rates outside their effective range are dropped."""
        store = ConfigPricingStore(pricing_config)
        config = store.get_config(1, date(2024, 1, 10))
        assert config.provider == CloudProvider.AWS
        assert all(rate.cost_per_unit != 0.9 for rate in config.rates)
        assert len(store.get_config(1, date(2025, 6, 1)).rates) == 7

    def test_node_overrides(self, pricing_config):
        """Test node overrides for a cluster."""
        overrides = ConfigPricingStore(pricing_config).get_node_overrides(1, "prod-east")
        assert [o.node_name for o in overrides] == ["node-a", "node-gpu"]
        assert overrides[1].hourly_cost_override == 3.06

    def test_invalid_config_raises(self):
        """Test an invalid rate raises PricingResolutionFailure."""
        with pytest.raises(PricingResolutionFailure):
            ConfigPricingStore({"pricing": {"configs": [{"id": 1, "rates": [{"resource_type": "cpu"}]}]}})


class TestPricingResolver:
    """Tests for PricingResolver."""

    def test_no_store_uses_default_rates(self, resolver):
        """Test default rates apply without a store."""
        rate = resolver.effective_rates(1, "prod-east", "node-a", AS_OF)
        assert rate.cpu_per_core_hour == 0.031611
        assert rate.memory_per_gb_hour == 0.004237

    def test_default_config_and_node_family_rates(self, pricing_config):
        """Test the default config and node family rates."""
        resolver = PricingResolver.from_config(pricing_config, store=ConfigPricingStore(pricing_config))
        assert resolver.effective_rates(1, "prod-east", "node-x", AS_OF).cpu_per_core_hour == 0.05
        node_rate = resolver.effective_rates(1, "prod-east", "node-a", AS_OF)
        assert node_rate.cpu_per_core_hour == 0.07
        assert node_rate.memory_per_gb_hour == 0.006
        # Hourly override carries no per-unit rates
        assert resolver.effective_rates(1, "prod-east", "node-gpu", AS_OF).cpu_per_core_hour == 0.05

    def test_cluster_assignment_wins(self, pricing_config):
        """Test a cluster assignment wins over the default config."""
        resolver = PricingResolver.from_config(pricing_config, store=ConfigPricingStore(pricing_config))
        rate = resolver.effective_rates(1, "batch", "", AS_OF)
        assert rate.cpu_per_core_hour == 0.0350

    def test_tenant_without_config_gets_provider_defaults(self, pricing_config):
        """Test tenants without a config get provider defaults."""
        pricing_config["pricing"]["provider"] = "azure"
        resolver = PricingResolver.from_config(pricing_config, store=ConfigPricingStore(pricing_config))
        assert resolver.effective_rates(7, "c", "n", AS_OF).cpu_per_core_hour == 0.0420

    def test_store_failure_falls_back_to_defaults(self):
        """Test store failures fall back to default rates."""
        store = MagicMock()
        store.get_cluster_config_id.side_effect = PricingResolutionFailure("db down")
        resolver = PricingResolver(DefaultRates(cpu_per_core_hour=0.1, memory_per_gb_hour=0.01), store=store)
        rate = resolver.effective_rates(1, "prod", "node", AS_OF)
        assert rate.cpu_per_core_hour == 0.1
        assert rate.memory_per_gb_hour == 0.01

    def test_missing_config_falls_back_to_system_defaults(self):
        """Test a missing config falls back to system defaults."""
        store = MagicMock()
        store.get_cluster_config_id.return_value = 5
        store.get_config.return_value = None
        resolver = PricingResolver(store=store)
        assert resolver.effective_rates(1, "prod", "node", AS_OF).cpu_per_core_hour == 0.031611

    def test_results_cached_per_day(self, pricing_config):
        """Test pricing is cached per tenant, cluster and day."""
        store = MagicMock(wraps=ConfigPricingStore(pricing_config))
        resolver = PricingResolver.from_config(pricing_config, store=store)
        resolver.effective_rates(1, "prod-east", "node-a", AS_OF)
        resolver.effective_rates(1, "prod-east", "node-b", AS_OF.replace(hour=23))
        assert store.get_config.call_count == 1

        resolver.effective_rates(1, "prod-east", "node-a", datetime(2024, 1, 11, tzinfo=timezone.utc))
        assert store.get_config.call_count == 2

    def test_invalidate_tenant(self, pricing_config):
        """Test invalidate_tenant forces a reload."""
        store = MagicMock(wraps=ConfigPricingStore(pricing_config))
        resolver = PricingResolver.from_config(pricing_config, store=store)
        resolver.effective_rates(1, "prod-east", "node-a", AS_OF)
        assert resolver.invalidate_tenant(1) == 1
        resolver.effective_rates(1, "prod-east", "node-a", AS_OF)
        assert store.get_config.call_count == 2

    def test_cache_size_from_config(self, pricing_config):
        """Test cache_max_size is read from config."""
        pricing_config["pricing"]["cache_max_size"] = 3
        resolver = PricingResolver.from_config(pricing_config)
        assert resolver.cache.stats["max_size"] == 3

    def test_cache_key(self):
        """Test the cache key format."""
        assert cache_key(1, "prod", AS_OF) == "1:prod:2024-01-10"
