"""Payment repository: async CRUD for payment records and the webhook event log."""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.payment_tables import PaymentEventRow, PaymentRecordRow
from src.db.tables import utcnow

logger = logging.getLogger(__name__)

# Columns a lifecycle event may change on an existing record
UPDATABLE_FIELDS = frozenset({
    "price_id", "billing_interval", "status", "subscription_id",
    "period_start", "period_end", "trial_start", "trial_end",
    "cancel_at_period_end", "last_event_at",
})


def dialect_insert(session: AsyncSession):
    """Dialect-specific ``insert`` that supports ON CONFLICT DO NOTHING."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect: {dialect}")
    return insert


async def insert_if_absent(
    session: AsyncSession, model, values: dict[str, Any], conflict_columns: list[str]
) -> bool:
    """INSERT … ON CONFLICT DO NOTHING RETURNING. True if a row was inserted.

    Python-side column defaults still apply because this goes through Core.
    """
    insert = dialect_insert(session)
    table = model.__table__
    stmt = (
        insert(table)
        .values(**values)
        .on_conflict_do_nothing(index_elements=conflict_columns)
        .returning(table.c[conflict_columns[0]])
    )
    result = await session.execute(stmt)
    return result.first() is not None


class PaymentRepository:
    """Record store for PaymentRecord + PaymentEvent, bound to one unit of work."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Payment records ──────────────────────────────────────────────────────

    async def find_by_id(self, record_id: str, *, for_update: bool = False) -> Optional[PaymentRecordRow]:
        stmt = select(PaymentRecordRow).where(PaymentRecordRow.id == record_id)
        return await self._one(stmt, for_update)

    async def find_by_subscription_id(
        self, subscription_id: str, *, for_update: bool = False
    ) -> Optional[PaymentRecordRow]:
        stmt = select(PaymentRecordRow).where(PaymentRecordRow.subscription_id == subscription_id)
        return await self._one(stmt, for_update)

    async def find_entitled_user_ids(self, statuses: set[str]) -> set[str]:
        """User ids with at least one subscription in one of ``statuses``."""
        result = await self.session.execute(
            select(PaymentRecordRow.user_id)
            .where(PaymentRecordRow.kind == "subscription")
            .where(PaymentRecordRow.status.in_(statuses))
            .distinct()
        )
        return set(result.scalars().all())

    async def create_if_absent(self, values: dict[str, Any]) -> tuple[PaymentRecordRow, bool]:
        """Insert a record keyed by its provider id unless one already exists.

        The primary key is the guarantee; a concurrent duplicate delivery
        simply inserts nothing. Returns (record, created).
        """
        now = utcnow()
        created = await insert_if_absent(
            self.session,
            PaymentRecordRow,
            {"created_at": now, "updated_at": now, **values},
            ["id"],
        )
        record = await self.find_by_id(values["id"])
        if created:
            logger.info("Payment record created: %s (%s)", record.id, record.kind)
        return record, created

    async def update(self, record_id: str, **fields: Any) -> Optional[PaymentRecordRow]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update payment record fields: {sorted(unknown)}")
        if fields:
            await self.session.execute(
                update(PaymentRecordRow.__table__)
                .where(PaymentRecordRow.__table__.c.id == record_id)
                .values(updated_at=utcnow(), **fields)
            )
        return await self.find_by_id(record_id)

    # ── Events ───────────────────────────────────────────────────────────────

    async def is_event_processed(self, provider_event_id: str) -> bool:
        result = await self.session.execute(
            select(PaymentEventRow.id).where(PaymentEventRow.provider_event_id == provider_event_id)
        )
        return result.first() is not None

    async def claim_event(self, provider_event_id: str, event_type: str, raw_payload: Optional[dict]) -> bool:
        """Insert the event row first thing in the unit of work.

        False means another delivery already holds this event id. On
        PostgreSQL a concurrent claimer blocks here until the first commits.
        """
        return await insert_if_absent(
            self.session,
            PaymentEventRow,
            {
                "provider_event_id": provider_event_id,
                "event_type": event_type,
                "raw_payload": raw_payload,
                "created_at": utcnow(),
            },
            ["provider_event_id"],
        )

    async def tag_event(self, provider_event_id: str, payment_record_id: Optional[str]) -> None:
        if payment_record_id is None:
            return
        await self.session.execute(
            update(PaymentEventRow.__table__)
            .where(PaymentEventRow.__table__.c.provider_event_id == provider_event_id)
            .values(payment_record_id=payment_record_id)
        )

    async def events_for_record(self, payment_record_id: str) -> list[PaymentEventRow]:
        result = await self.session.execute(
            select(PaymentEventRow)
            .where(PaymentEventRow.payment_record_id == payment_record_id)
            .order_by(PaymentEventRow.created_at)
        )
        return list(result.scalars().all())

    async def _one(self, stmt, for_update: bool) -> Optional[PaymentRecordRow]:
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
