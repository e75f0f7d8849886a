"""Operations over lists of AllocationSets: merging and pagination."""

from typing import List

from .models import AllocationSet, TimeWindow


def merge_allocation_sets(sets: List[AllocationSet], window: TimeWindow) -> AllocationSet:
    """Collapse per-step sets into one set spanning ``window``.

    Allocations sharing a name are summed (minutes included); the first
    occurrence is copied and re-stamped to the overall window. Idle cost
    is summed across steps and total cost recomputed from the allocations.
    """
    merged = AllocationSet(window=TimeWindow(window.start, window.end))
    for allocation_set in sets:
        merged.idle_cost += allocation_set.idle_cost
        for name, allocation in allocation_set.allocations.items():
            existing = merged.allocations.get(name)
            if existing is None:
                merged.allocations[name] = allocation.copy_for_window(merged.window)
            else:
                existing.accumulate(allocation, include_minutes=True)
    merged.recompute_total()
    return merged


def paginate_set(allocation_set: AllocationSet, offset: int, limit: int) -> AllocationSet:
    """Return the name-sorted slice [offset, offset + limit) of a set.

    Offsets past the end yield an empty set. ``total_cost`` and
    ``idle_cost`` describe the whole set and are left unchanged.
    """
    names = allocation_set.names()
    start = min(max(offset, 0), len(names))
    end = len(names) if limit <= 0 else min(start + limit, len(names))
    return AllocationSet(
        window=allocation_set.window,
        allocations={name: allocation_set.allocations[name] for name in names[start:end]},
        total_cost=allocation_set.total_cost,
        idle_cost=allocation_set.idle_cost,
    )


def paginate_sets(sets: List[AllocationSet], offset: int, limit: int) -> List[AllocationSet]:
    if offset <= 0 and limit <= 0:
        return sets
    return [paginate_set(allocation_set, offset, limit) for allocation_set in sets]
