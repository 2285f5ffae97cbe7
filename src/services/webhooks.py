"""
Stripe Webhook Processor
---
Turns at-least-once, possibly out-of-order Stripe deliveries into
exactly-once record and ledger changes.

One delivery = one unit of work:
1. verify signature + decode
2. claim the event id (INSERT … ON CONFLICT DO NOTHING on payment_event)
3. dispatch to the handler for the event type
4. tag the event row with the affected record, commit everything together

Handled:
- checkout.session.completed → create subscription / one-time record, first period credits + bonus
- customer.subscription.created → refresh record
- customer.subscription.updated → refresh record, upgrade credits on tier increase
- customer.subscription.deleted → cancel record
- invoice.paid → renewal credits (not for the first invoice)
- invoice.payment_succeeded / invoice.payment_failed → audit only
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.db.credit_tables import CreditDeadLetterRow
from src.db.payment_tables import PaymentRecordRow
from src.db.repository import PaymentRepository
from src.models import BillingInterval, DeadLetterStatus, PaymentKind, PaymentStatus, TransactionSource
from src.services import lifecycle
from src.services.credits import CreditLedger
from src.services.errors import (
    BillingError,
    DuplicateEvent,
    PlanNotFound,
    ProviderError,
    RecordNotFound,
    SignatureInvalid,
    StorageFailure,
)
from src.services.plan_change import PlanChangeDetector
from src.services.plans import PlanCatalog
from src.services.stripe_client import StripeClient, StripeEvent, decode_event, first_price_id, verify_signature

logger = logging.getLogger(__name__)

# Outcomes reported back to the route and the logs
PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
NO_RECORD = "no_record"
INVALID = "invalid_signature"
FAILED = "failed"


@dataclass
class WebhookResult:
    status_code: int
    outcome: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    record_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": self.status_code == 200, "outcome": self.outcome}
        if self.event_id:
            body["event_id"] = self.event_id
        if self.error:
            body["error"] = self.error
        return body


@dataclass
class _Delivery:
    """Per-delivery state handed to each handler."""
    event: StripeEvent
    session: AsyncSession
    repo: PaymentRepository
    ledger: CreditLedger
    record_id: Optional[str] = None
    dead_letters: list[str] = field(default_factory=list)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    sub_id = _id_of(invoice.get("subscription"))
    if sub_id:
        return sub_id
    # 2025 API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _id_of(details.get("subscription"))


class WebhookProcessor:
    """Stateless between deliveries; safe to share across requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        stripe_client: StripeClient,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.stripe = stripe_client
        self.detector = PlanChangeDetector(catalog)
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE

        self._handlers: dict[str, Callable[[_Delivery], Awaitable[str]]] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_created,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_succeeded": self._invoice_audit,
            "invoice.payment_failed": self._invoice_audit,
        }

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        try:
            verify_signature(payload, signature, self.webhook_secret, self.tolerance)
            event = decode_event(payload)
        except SignatureInvalid as exc:
            logger.warning("Rejected Stripe webhook: %s", exc.message)
            return WebhookResult(400, INVALID, error=exc.message)

        log_extra = {"event_id": event.id, "event_type": event.type}
        logger.info("Stripe webhook: %s", event.type, extra=log_extra)

        try:
            result = await self._process(event)
        except DuplicateEvent:
            logger.info("Stripe event %s already processed", event.id, extra=log_extra)
            return WebhookResult(200, DUPLICATE, event.id, event.type)
        except (StorageFailure, ProviderError) as exc:
            logger.error("Stripe event %s failed: %s", event.id, exc.message, extra=log_extra)
            return WebhookResult(exc.http_status, FAILED, event.id, event.type, error=exc.code)

        logger.info("Stripe event %s: %s", event.id, result.outcome, extra=log_extra)
        return result

    async def _process(self, event: StripeEvent) -> WebhookResult:
        async with self.session_factory() as session:
            repo = PaymentRepository(session)
            try:
                # Fast path; the claim below is the real guard
                if await repo.is_event_processed(event.id):
                    raise DuplicateEvent(event.id)

                if not await repo.claim_event(event.id, event.type, event.raw):
                    await session.rollback()
                    raise DuplicateEvent(event.id)

                delivery = _Delivery(event, session, repo, CreditLedger(session))
                outcome = await self._dispatch(delivery)
                await repo.tag_event(event.id, delivery.record_id)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if await repo.is_event_processed(event.id):
                    logger.info("Event %s committed by a concurrent delivery", event.id)
                    raise DuplicateEvent(event.id) from exc
                raise StorageFailure(f"Integrity error processing {event.id}: {exc.orig}") from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageFailure(f"Database error processing {event.id}: {exc}") from exc
            except BillingError:
                await session.rollback()
                raise

        return WebhookResult(200, outcome, event.id, event.type, record_id=delivery.record_id)

    async def _dispatch(self, delivery: _Delivery) -> str:
        handler = self._handlers.get(delivery.event.type)
        if handler is None:
            logger.info("Unhandled Stripe event type: %s", delivery.event.type)
            return IGNORED
        try:
            return await handler(delivery)
        except RecordNotFound as exc:
            logger.warning(
                "%s for unknown record %s, acknowledging", delivery.event.type, exc.record_id,
                extra={"event_id": delivery.event.id},
            )
            return NO_RECORD

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def _checkout_completed(self, d: _Delivery) -> str:
        session_obj = d.event.object
        user_id = (session_obj.get("metadata") or {}).get("userId") or session_obj.get("client_reference_id")
        if not user_id:
            logger.error("Checkout session %s has no userId", session_obj.get("id"))
            return IGNORED

        mode = session_obj.get("mode")
        if mode == "subscription":
            return await self._checkout_subscription(d, session_obj, user_id)
        if mode == "payment":
            return await self._checkout_payment(d, session_obj, user_id)
        logger.info("Ignoring checkout session %s in mode %s", session_obj.get("id"), mode)
        return IGNORED

    async def _checkout_subscription(self, d: _Delivery, session_obj: dict, user_id: str) -> str:
        sub_id = _id_of(session_obj.get("subscription"))
        if not sub_id:
            logger.error("Subscription checkout %s has no subscription id", session_obj.get("id"))
            return IGNORED

        existing = await d.repo.find_by_id(sub_id)
        if existing is not None:
            logger.info("Payment record already exists for subscription %s", sub_id)
            d.record_id = existing.id
            return PROCESSED

        subscription = await self.stripe.retrieve_subscription(sub_id)
        price_id = lifecycle.subscription_price_id(subscription)
        if not price_id:
            logger.error("Subscription %s has no price", sub_id)
            return IGNORED

        interval = lifecycle.subscription_interval(subscription)
        plan = None
        try:
            plan, plan_interval = self.catalog.resolve(price_id)
            if interval == BillingInterval.NONE:
                interval = plan_interval
        except PlanNotFound as exc:
            logger.error("%s; creating record without credits", exc.message)

        record, created = await d.repo.create_if_absent({
            "id": sub_id,
            "price_id": price_id,
            "kind": PaymentKind.SUBSCRIPTION.value,
            "billing_interval": interval.value,
            "user_id": user_id,
            "customer_id": _id_of(session_obj.get("customer")),
            "subscription_id": sub_id,
            "last_event_at": d.event.created or None,
            **lifecycle.subscription_snapshot(subscription),
        })
        d.record_id = record.id

        if created and plan is not None:
            # The subscription_create invoice grants nothing, so the first period is paid here
            metadata = {"subscription_id": sub_id, "plan_id": plan.id, "interval": interval.value}
            await self._post_credit(
                d,
                user_id=record.user_id,
                amount=plan.credits_for(interval),
                description=f"{plan.name} subscription credits",
                reference_id=f"{sub_id}_subscribe",
                metadata=metadata,
            )
            await self._post_credit(
                d,
                user_id=record.user_id,
                amount=plan.credit_grants.on_subscribe,
                description=f"{plan.name} subscription bonus",
                reference_id=f"{sub_id}_subscribe_bonus",
                metadata=metadata,
            )
        return PROCESSED

    async def _checkout_payment(self, d: _Delivery, session_obj: dict, user_id: str) -> str:
        payment_id = _id_of(session_obj.get("payment_intent")) or session_obj.get("id")
        existing = await d.repo.find_by_id(payment_id)
        if existing is not None:
            logger.info("Payment record already exists for payment %s", payment_id)
            d.record_id = existing.id
            return PROCESSED

        full_session = await self.stripe.retrieve_checkout_session(session_obj["id"])
        price_id = first_price_id(full_session)
        if not price_id:
            logger.error("Checkout session %s has no line item price", session_obj.get("id"))
            return IGNORED

        record, _ = await d.repo.create_if_absent({
            "id": payment_id,
            "price_id": price_id,
            "kind": PaymentKind.ONE_TIME.value,
            "billing_interval": BillingInterval.NONE.value,
            "user_id": user_id,
            "customer_id": _id_of(session_obj.get("customer")),
            "subscription_id": None,
            "status": PaymentStatus.ACTIVE.value,
            "last_event_at": d.event.created or None,
        })
        d.record_id = record.id
        return PROCESSED

    # =========================================================================
    # SUBSCRIPTION LIFECYCLE
    # =========================================================================

    async def _load_subscription_record(self, d: _Delivery, sub_id: Optional[str]) -> PaymentRecordRow:
        record = await d.repo.find_by_subscription_id(sub_id, for_update=True) if sub_id else None
        if record is None:
            raise RecordNotFound(sub_id or "<missing>")
        d.record_id = record.id
        return record

    async def _subscription_created(self, d: _Delivery) -> str:
        subscription = d.event.object
        record = await self._load_subscription_record(d, subscription.get("id"))
        await lifecycle.refresh_from_subscription(d.repo, record, subscription, d.event.created)
        return PROCESSED

    async def _subscription_updated(self, d: _Delivery) -> str:
        subscription = d.event.object
        record = await self._load_subscription_record(d, subscription.get("id"))

        extra: dict[str, Any] = {}
        new_price_id = lifecycle.subscription_price_id(subscription)
        if (
            new_price_id
            and new_price_id != record.price_id
            and not lifecycle.is_stale(record, d.event.created)
        ):
            interval = lifecycle.subscription_interval(subscription)
            if not lifecycle.is_terminal(record.status):
                await self._apply_plan_change(d, record, new_price_id)
            if interval == BillingInterval.NONE:
                try:
                    interval = self.catalog.interval_for(new_price_id)
                except PlanNotFound:
                    interval = BillingInterval(record.billing_interval)
            extra = {"price_id": new_price_id, "billing_interval": interval.value}

        await lifecycle.refresh_from_subscription(d.repo, record, subscription, d.event.created, **extra)
        return PROCESSED

    async def _apply_plan_change(self, d: _Delivery, record: PaymentRecordRow, new_price_id: str) -> None:
        try:
            change = self.detector.detect(record.price_id, new_price_id)
        except PlanNotFound as exc:
            logger.error("Plan change on %s skipped: %s", record.id, exc.message)
            return
        if not change.is_upgrade:
            return

        logger.info(
            "Upgrade %s: %s -> %s (+%d, bonus %d)",
            record.id, change.old_plan.id, change.new_plan.id, change.credit_delta, change.immediate_credits,
        )
        metadata = {
            "subscription_id": record.id,
            "from_plan": change.old_plan.id,
            "to_plan": change.new_plan.id,
            "interval": change.interval.value,
        }
        await self._post_credit(
            d,
            user_id=record.user_id,
            amount=change.credit_delta,
            description=f"Upgrade {change.old_plan.name} to {change.new_plan.name}",
            reference_id=f"upgrade_{record.id}_{d.event.id}",
            metadata=metadata,
        )
        await self._post_credit(
            d,
            user_id=record.user_id,
            amount=change.immediate_credits,
            description=f"{change.new_plan.name} upgrade bonus",
            reference_id=f"upgrade_bonus_{record.id}_{d.event.id}",
            metadata=metadata,
        )

    async def _subscription_deleted(self, d: _Delivery) -> str:
        record = await self._load_subscription_record(d, d.event.object.get("id"))
        await lifecycle.mark_canceled(d.repo, record, d.event.created)
        return PROCESSED

    # =========================================================================
    # INVOICES
    # =========================================================================

    async def _invoice_record(self, d: _Delivery) -> Optional[PaymentRecordRow]:
        sub_id = _invoice_subscription_id(d.event.object)
        if not sub_id:
            logger.info("Invoice %s is not for a subscription", d.event.object.get("id"))
            return None
        record = await d.repo.find_by_subscription_id(sub_id)
        if record is None:
            raise RecordNotFound(sub_id)
        d.record_id = record.id
        return record

    async def _invoice_audit(self, d: _Delivery) -> str:
        record = await self._invoice_record(d)
        if record is None:
            return IGNORED
        if d.event.type == "invoice.payment_failed":
            logger.warning("Invoice payment failed for subscription %s", record.id)
        return PROCESSED

    async def _invoice_paid(self, d: _Delivery) -> str:
        invoice = d.event.object
        record = await self._invoice_record(d)
        if record is None:
            return IGNORED

        billing_reason = invoice.get("billing_reason")
        if billing_reason == "subscription_create":
            # Initial credits were granted at checkout
            logger.info("Invoice %s opened subscription %s, no renewal credits", invoice.get("id"), record.id)
            return PROCESSED

        try:
            plan = self.catalog.by_price_id(record.price_id)
        except PlanNotFound as exc:
            logger.error("Renewal credits for %s skipped: %s", record.id, exc.message)
            return PROCESSED

        await self._post_credit(
            d,
            user_id=record.user_id,
            amount=plan.credits_for(record.billing_interval),
            description=f"{plan.name} renewal credits",
            reference_id=f"{record.id}_{invoice.get('id')}",
            metadata={
                "subscription_id": record.id,
                "invoice_id": invoice.get("id"),
                "plan_id": plan.id,
                "billing_reason": billing_reason,
            },
        )
        return PROCESSED

    # =========================================================================
    # CREDIT POSTING
    # =========================================================================

    async def _post_credit(
        self,
        d: _Delivery,
        *,
        user_id: str,
        amount: int,
        description: str,
        reference_id: str,
        metadata: dict[str, Any],
    ) -> None:
        """Grant credits; on failure record a dead letter instead of failing the delivery."""
        if amount <= 0:
            return
        try:
            await d.ledger.earn(
                user_id,
                amount,
                TransactionSource.SUBSCRIPTION,
                description=description,
                reference_id=reference_id,
                metadata={**metadata, "provider_event_id": d.event.id},
            )
        except (BillingError, SQLAlchemyError) as exc:
            # The ledger's savepoint has already been rolled back
            logger.error(
                "Credit grant %s failed, dead-lettering: %s", reference_id, exc,
                extra={"event_id": d.event.id, "user_id": user_id, "reference_id": reference_id},
            )
            letter = CreditDeadLetterRow(
                user_id=user_id,
                amount=amount,
                source=TransactionSource.SUBSCRIPTION.value,
                description=description,
                reference_id=reference_id,
                metadata_=metadata,
                provider_event_id=d.event.id,
                error=str(exc)[:2000],
                attempts=0,
                status=DeadLetterStatus.PENDING.value,
            )
            d.session.add(letter)
            await d.session.flush()
            d.dead_letters.append(letter.id)
