"""
Payment record lifecycle
---
State machine for PaymentRecord.status plus the mapping from Stripe
subscription objects to record columns.

    incomplete ─┬─> trialing | active ──> past_due ──> active
                │        │                   │
                │        └────────> canceled <┘      (terminal)
                └─> incomplete_expired               (terminal)

``unpaid`` and ``paused`` are stored as Stripe reports them. A record in a
terminal status keeps it no matter what arrives later.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from src.db.payment_tables import PaymentRecordRow
from src.db.repository import PaymentRepository
from src.models import BillingInterval, PaymentStatus, TERMINAL_STATUSES
from src.services.stripe_client import first_price_id

logger = logging.getLogger(__name__)


def ts_to_dt(ts: int | str | None) -> Optional[datetime]:
    """Convert a unix-seconds Stripe timestamp to an aware datetime."""
    if ts in (None, ""):
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def parse_status(raw: Optional[str]) -> PaymentStatus:
    try:
        return PaymentStatus(raw)
    except ValueError:
        logger.warning("Unknown Stripe subscription status %r, treating as incomplete", raw)
        return PaymentStatus.INCOMPLETE


def is_terminal(status: str | PaymentStatus) -> bool:
    return PaymentStatus(status) in TERMINAL_STATUSES


def next_status(current: str | PaymentStatus, incoming: str | PaymentStatus) -> PaymentStatus:
    """Status after applying ``incoming``. Terminal statuses are absorbing."""
    current = PaymentStatus(current)
    if current in TERMINAL_STATUSES and PaymentStatus(incoming) != current:
        logger.info("Ignoring status %s for record already %s", incoming, current.value)
        return current
    return PaymentStatus(incoming)


def is_stale(record: PaymentRecordRow, event_created: Optional[int]) -> bool:
    """An event older than the newest one already applied to this record."""
    if not event_created or record.last_event_at is None:
        return False
    return event_created < record.last_event_at


def subscription_price_id(subscription: dict[str, Any]) -> Optional[str]:
    return first_price_id(subscription)


def subscription_interval(subscription: dict[str, Any]) -> BillingInterval:
    items = (subscription.get("items") or {}).get("data") or []
    for item in items:
        price = item.get("price") if isinstance(item.get("price"), dict) else {}
        recurring = price.get("recurring") or (item.get("plan") or {})
        interval = recurring.get("interval")
        if interval in (BillingInterval.MONTH.value, BillingInterval.YEAR.value):
            return BillingInterval(interval)
    return BillingInterval.NONE


def subscription_snapshot(subscription: dict[str, Any]) -> dict[str, Any]:
    """Record columns carried by a Stripe subscription object.

    Newer API versions moved the current period onto the subscription items,
    so fall back to the first item when the top-level fields are absent.
    """
    first_item = ((subscription.get("items") or {}).get("data") or [{}])[0]
    period_start = subscription.get("current_period_start") or first_item.get("current_period_start")
    period_end = subscription.get("current_period_end") or first_item.get("current_period_end")
    return {
        "status": parse_status(subscription.get("status")).value,
        "period_start": ts_to_dt(period_start),
        "period_end": ts_to_dt(period_end),
        "trial_start": ts_to_dt(subscription.get("trial_start")),
        "trial_end": ts_to_dt(subscription.get("trial_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
    }


async def refresh_from_subscription(
    repo: PaymentRepository,
    record: PaymentRecordRow,
    subscription: dict[str, Any],
    event_created: Optional[int],
    **extra: Any,
) -> Optional[PaymentRecordRow]:
    """Apply a subscription snapshot to ``record``.

    Returns the updated record, or None when the event is stale and nothing
    was written. ``extra`` carries additional columns such as a new price id.
    """
    if is_stale(record, event_created):
        logger.info(
            "Skipping stale refresh for %s (event %s < last %s)",
            record.id, event_created, record.last_event_at,
        )
        return None

    fields = subscription_snapshot(subscription)
    fields["status"] = next_status(record.status, fields["status"]).value
    fields.update(extra)
    if event_created:
        fields["last_event_at"] = max(event_created, record.last_event_at or 0)

    previous = record.status
    updated = await repo.update(record.id, **fields)
    if previous != updated.status:
        logger.info("Payment record %s: %s -> %s", record.id, previous, updated.status)
    return updated


async def mark_canceled(
    repo: PaymentRepository, record: PaymentRecordRow, event_created: Optional[int]
) -> PaymentRecordRow:
    """Deletion always wins, even over a newer refresh."""
    fields: dict[str, Any] = {"status": next_status(record.status, PaymentStatus.CANCELED).value}
    if event_created:
        fields["last_event_at"] = max(event_created, record.last_event_at or 0)
    updated = await repo.update(record.id, **fields)
    logger.info("Payment record %s canceled", record.id)
    return updated
