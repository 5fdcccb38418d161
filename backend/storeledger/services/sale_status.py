"""
Derived sale status.

A sale's status is a pure function of its total and the sum of its refunds;
it is never stored as independently settable state.
"""

from __future__ import annotations

SALE_STATUS_ACTIVE = "active"
SALE_STATUS_PARTIALLY_REFUNDED = "partially_refunded"
SALE_STATUS_REFUNDED = "refunded"

# Position along the only allowed path; status never moves to a lower rank.
STATUS_RANK = {
    SALE_STATUS_ACTIVE: 0,
    SALE_STATUS_PARTIALLY_REFUNDED: 1,
    SALE_STATUS_REFUNDED: 2,
}

SALE_STATUSES = tuple(STATUS_RANK)
REFUNDABLE_STATUSES = (SALE_STATUS_ACTIVE, SALE_STATUS_PARTIALLY_REFUNDED)


def sale_status_for(total_cents: int, refunded_cents: int) -> str:
    if refunded_cents <= 0:
        return SALE_STATUS_ACTIVE
    if refunded_cents >= total_cents:
        return SALE_STATUS_REFUNDED
    return SALE_STATUS_PARTIALLY_REFUNDED


def is_forward(current: str, new: str) -> bool:
    """True when new is current or later along active -> partially_refunded -> refunded."""
    return STATUS_RANK[new] >= STATUS_RANK[current]
