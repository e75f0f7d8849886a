"""
Kubernetes cost allocation engine.

Turns per-pod usage/request samples into priced, dimensionally grouped
allocation sets over arbitrary time windows.

Usage:
    from allocation_engine import AllocationService, AllocationParams, FrameMetricsStore

    service = AllocationService(config, FrameMetricsStore(pod_metrics, node_metrics))
    response = service.get_allocations(tenant_id, AllocationParams(window="7d", aggregate="namespace"))
"""

from .api import handle_allocation_request, params_from_query
from .metrics_store import FrameMetricsStore
from .models import AllocationParams, AllocationResponse, DefaultRates
from .pricing import PricingResolver
from .service import AllocationService

__all__ = [
    'AllocationService',
    'AllocationParams',
    'AllocationResponse',
    'DefaultRates',
    'FrameMetricsStore',
    'PricingResolver',
    'handle_allocation_request',
    'params_from_query',
]

__version__ = '1.0.0'
