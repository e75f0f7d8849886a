"""Translate query parameters into allocation requests and responses.

Query mappings may hold plain strings or lists of strings (as produced by
``urllib.parse.parse_qs``); repeated ``filter`` parameters need the list
form.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import AllocationError
from .models import AllocationParams
from .service import AllocationService
from .utils import get_logger

logger = get_logger("api")

VIEWS = ("allocation", "summary", "topline")

LEGACY_FILTERS = (
    ("filterNamespaces", "namespace"),
    ("filterClusters", "cluster"),
    ("filterNodes", "node"),
)


def _values(query: Mapping[str, Any], key: str) -> List[str]:
    value = query.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


def _first(query: Mapping[str, Any], key: str, default: str = "") -> str:
    values = _values(query, key)
    return values[0] if values else default


def _int(query: Mapping[str, Any], key: str) -> int:
    raw = _first(query, key)
    try:
        return int(raw)
    except ValueError:
        return 0


def params_from_query(query: Mapping[str, Any]) -> AllocationParams:
    """Build AllocationParams from request query parameters.

    ``includeIdle`` overrides ``idle``. The legacy filterNamespaces,
    filterClusters, filterNodes and filterLabels parameters are used only
    when no ``filter`` is given. Unparseable offset/limit are ignored.
    """
    params = AllocationParams(
        window=_first(query, "window", "24h"),
        aggregate=_first(query, "aggregate", "namespace"),
        step=_first(query, "step"),
        accumulate=_first(query, "accumulate", "true"),
        share_idle=_first(query, "shareIdle"),
        offset=_int(query, "offset"),
        limit=_int(query, "limit"),
    )

    for key in ("idle", "includeIdle"):
        raw = _first(query, key)
        if raw:
            params.idle = raw in ("true", "1")

    filters = [value for value in _values(query, "filter") if value]
    if not filters:
        for key, kind in LEGACY_FILTERS:
            raw = _first(query, key)
            if raw:
                filters.append(f"{kind}:{raw}")
        labels = _first(query, "filterLabels")
        if labels:
            filters.append(f"label:{labels}")
    params.filters = filters
    return params


def error_body(status: int, message: str) -> Dict[str, Any]:
    return {"code": status, "status": "error", "message": message}


def handle_allocation_request(
    service: AllocationService,
    tenant_id: Optional[Any],
    query: Mapping[str, Any],
    view: str = "allocation",
) -> Tuple[int, Dict[str, Any]]:
    """Serve an allocation request.

    Args:
        service: Allocation service
        tenant_id: Authenticated tenant, or None
        query: Query parameters
        view: "allocation", "summary" or "topline"

    Returns:
        (http_status, body)
    """
    if tenant_id is None or tenant_id == "":
        return 401, error_body(401, "no tenant context")
    if view not in VIEWS:
        return 404, error_body(404, f"unknown allocation view: {view}")

    params = params_from_query(query)
    try:
        if view == "summary":
            data = service.get_allocation_summary(tenant_id, params)
        elif view == "topline":
            data = service.get_allocation_topline(tenant_id, params)
        else:
            return 200, service.get_allocations(tenant_id, params).to_dict()
    except AllocationError as e:
        logger.error("Allocation request failed", view=view, tenant_id=tenant_id, error=str(e))
        return e.http_status, error_body(e.http_status, str(e))

    return 200, {"code": 200, "status": "success", "data": data}
