"""Exceptions raised by the allocation engine.

Client errors (bad window, bad aggregate) are raised before any store is
queried. Storage failures abort the whole request. Pricing failures never
leave the pricing resolver, which falls back to default rates instead.
"""

from typing import Optional


class AllocationError(Exception):
    """Base class for allocation engine errors."""

    http_status = 500


class InvalidWindowFormat(AllocationError):
    """Window expression did not match any accepted grammar."""

    http_status = 400

    def __init__(self, window: str, reason: Optional[str] = None):
        self.window = window
        self.reason = reason
        message = f"unrecognized window format: {window}"
        if reason:
            message = f"invalid window {window!r}: {reason}"
        super().__init__(message)


class InvalidAggregateDimension(AllocationError):
    """Aggregate token could not be mapped to a grouping dimension."""

    http_status = 400

    def __init__(self, token: str, reason: Optional[str] = None):
        self.token = token
        message = f"unrecognized aggregate dimension: {token}"
        if reason:
            message = f"invalid aggregate dimension {token!r}: {reason}"
        super().__init__(message)


class StorageQueryFailure(AllocationError):
    """Metrics store query failed; no partial results are returned."""

    http_status = 500


class PricingResolutionFailure(AllocationError):
    """Pricing lookup failed. Handled inside the resolver."""
