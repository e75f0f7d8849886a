"""Grouping dimensions and filter predicates.

Aggregate and filter strings are resolved once, at parse time, into
closed value types so that the stores never compare raw strings.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from .errors import InvalidAggregateDimension
from .models import UNALLOCATED_NAME
from .utils import get_logger

logger = get_logger("dimensions")

LABEL_PREFIX = "label:"

# Generated ReplicaSet / Job hash suffixes, e.g. "web-7d4b9c8f6d-x2x7k"
CONTROLLER_SUFFIX = re.compile(r"-[a-z0-9]{5,10}(-[a-z0-9]{5})?$")


class DimensionKind(Enum):
    CLUSTER = "cluster"
    NAMESPACE = "namespace"
    NODE = "node"
    POD = "pod"
    CONTROLLER = "controller"
    LABEL = "label"


@dataclass(frozen=True)
class Dimension:
    """One grouping dimension. ``label_key`` is set only for LABEL."""

    kind: DimensionKind
    label_key: str = ""

    def __str__(self) -> str:
        if self.kind == DimensionKind.LABEL:
            return f"{LABEL_PREFIX}{self.label_key}"
        return self.kind.value


NAMESPACE = Dimension(DimensionKind.NAMESPACE)


def controller_name(pod_name: str) -> str:
    """Strip generated hash suffixes from a pod name."""
    return CONTROLLER_SUFFIX.sub("", pod_name or "")


def parse_dimension(token: str, strict: bool = False) -> Dimension:
    """Resolve a single aggregate token.

    Args:
        token: Dimension name or "label:<key>"
        strict: Raise on unknown names instead of defaulting to namespace

    Returns:
        Dimension

    Raises:
        InvalidAggregateDimension: Empty label key, or unknown name in strict mode
    """
    token = token.strip()
    if token.lower().startswith(LABEL_PREFIX):
        key = token[len(LABEL_PREFIX):].strip()
        if not key:
            raise InvalidAggregateDimension(token, "label key is empty")
        return Dimension(DimensionKind.LABEL, key)

    name = token.lower()
    for kind in DimensionKind:
        if kind != DimensionKind.LABEL and kind.value == name:
            return Dimension(kind)

    if strict:
        raise InvalidAggregateDimension(token)
    logger.warning("Unknown aggregate dimension, defaulting to namespace", token=token)
    return NAMESPACE


def parse_aggregate(aggregate: Optional[str], strict: bool = False) -> List[Dimension]:
    """Parse a comma-separated aggregate expression.

    Args:
        aggregate: e.g. "cluster,namespace" or "label:team"
        strict: Reject unknown dimension names

    Returns:
        Ordered list of dimensions, [namespace] when empty
    """
    tokens = [token for token in (aggregate or "").split(",") if token.strip()]
    if not tokens:
        return [NAMESPACE]
    return [parse_dimension(token, strict) for token in tokens]


def label_keys(dimensions: Iterable[Dimension]) -> List[str]:
    return [dimension.label_key for dimension in dimensions if dimension.kind == DimensionKind.LABEL]


def allocation_name(values: Iterable[str]) -> str:
    """Join dimension values into an allocation name."""
    name = "/".join(str(value) for value in values)
    return name or UNALLOCATED_NAME


class FilterKind(Enum):
    NAMESPACE = "namespace"
    CLUSTER = "cluster"
    NODE = "node"
    POD = "pod"
    LABEL = "label"


@dataclass(frozen=True)
class Filter:
    """A filter predicate. Multiple values are OR-ed together.

    POD matches by substring; every other kind by equality. LABEL compares
    ``labels[label_key]`` against the values.
    """

    kind: FilterKind
    values: Tuple[str, ...]
    label_key: str = ""


def _split_values(raw: str) -> Tuple[str, ...]:
    return tuple(value.strip() for value in raw.split(",") if value.strip())


def parse_filter(expression: str) -> Optional[Filter]:
    """Parse "dim:value[,value]" or "label:key=value[,value]".

    Returns:
        Filter, or None if the expression is malformed
    """
    kind_name, sep, raw_value = expression.partition(":")
    if not sep:
        return None
    try:
        kind = FilterKind(kind_name.strip().lower())
    except ValueError:
        return None

    if kind == FilterKind.LABEL:
        key, sep, raw_value = raw_value.partition("=")
        key = key.strip()
        values = _split_values(raw_value)
        if not sep or not key or not values:
            return None
        return Filter(kind, values, key)

    values = _split_values(raw_value)
    if not values:
        return None
    return Filter(kind, values)


def parse_filters(expressions: Iterable[str]) -> List[Filter]:
    """Parse filter expressions, skipping malformed ones with a warning."""
    filters = []
    for expression in expressions or []:
        parsed = parse_filter(expression)
        if parsed is None:
            logger.warning("Skipping malformed filter", filter=expression)
            continue
        filters.append(parsed)
    return filters
