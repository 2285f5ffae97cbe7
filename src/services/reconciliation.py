"""
Credit reconciliation jobs
---
- retry_dead_letters: re-post credit grants that failed inside a webhook
- grant_monthly_free_credits: free-plan allowance once per calendar month
- audit_credit_accounts: verify every account against its transaction log

Each job takes a session factory so it can run from the scheduler, an admin
route or a test against any engine.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.db.credit_tables import CreditAccountRow, CreditDeadLetterRow, CreditTransactionRow
from src.db.repository import PaymentRepository
from src.db.tables import utcnow
from src.models import ENTITLED_STATUSES, DeadLetterStatus, TransactionSource, signed_delta
from src.services.credits import CreditLedger
from src.services.errors import BillingError
from src.services.plans import PlanCatalog

logger = logging.getLogger(__name__)


async def retry_dead_letters(
    session_factory: async_sessionmaker[AsyncSession],
    max_attempts: Optional[int] = None,
    batch_size: int = 100,
) -> dict:
    """Re-post pending dead letters, one transaction per letter.

    The ledger's reference-id dedupe makes a retry of an already-applied
    grant a no-op, so letters are safe to replay.
    """
    max_attempts = max_attempts or settings.DEAD_LETTER_MAX_ATTEMPTS
    summary = {"resolved": 0, "retrying": 0, "failed": 0}

    async with session_factory() as session:
        result = await session.execute(
            select(CreditDeadLetterRow.id)
            .where(CreditDeadLetterRow.status == DeadLetterStatus.PENDING.value)
            .order_by(CreditDeadLetterRow.created_at)
            .limit(batch_size)
        )
        letter_ids = list(result.scalars().all())

    for letter_id in letter_ids:
        async with session_factory() as session:
            letter = await session.get(CreditDeadLetterRow, letter_id)
            if letter is None or letter.status != DeadLetterStatus.PENDING.value:
                continue
            try:
                posted = await CreditLedger(session).earn(
                    letter.user_id,
                    letter.amount,
                    TransactionSource(letter.source),
                    description=letter.description,
                    reference_id=letter.reference_id,
                    metadata={**(letter.metadata_ or {}), "dead_letter_id": letter.id},
                )
            except BillingError as exc:
                letter.attempts += 1
                letter.error = str(exc)[:2000]
                if letter.attempts >= max_attempts:
                    letter.status = DeadLetterStatus.FAILED.value
                    summary["failed"] += 1
                    logger.error(
                        "Dead letter %s gave up after %d attempts: %s", letter.id, letter.attempts, exc,
                        extra={"user_id": letter.user_id, "reference_id": letter.reference_id},
                    )
                else:
                    summary["retrying"] += 1
                    logger.warning("Dead letter %s retry %d failed: %s", letter.id, letter.attempts, exc)
            else:
                letter.attempts += 1
                letter.status = DeadLetterStatus.RESOLVED.value
                letter.error = None
                summary["resolved"] += 1
                logger.info(
                    "Dead letter %s resolved%s", letter.id, " (already applied)" if posted.duplicate else "",
                    extra={"user_id": letter.user_id, "reference_id": letter.reference_id},
                )
            letter.updated_at = utcnow()
            await session.commit()

    if letter_ids:
        logger.info("Dead letter retry: %s", summary)
    return summary


async def grant_monthly_free_credits(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: PlanCatalog,
    now: Optional[datetime] = None,
) -> dict:
    """Give every non-subscriber with an account the free plan's monthly credits.

    Keyed by ``free_{YYYY-MM}``, so running twice in a month grants once.
    Each user is granted in its own transaction; a failure is logged, counted
    and left for the next run instead of rolling back everyone else.
    """
    now = now or utcnow()
    month = now.strftime("%Y-%m")
    free_plan = catalog.free_plan
    amount = free_plan.credits_for(None)
    summary: dict = {
        "month": month, "granted": 0, "already_granted": 0, "subscribers": 0, "failed": 0, "errors": [],
    }
    if amount <= 0:
        return summary

    async with session_factory() as session:
        subscribers = await PaymentRepository(session).find_entitled_user_ids(
            {s.value for s in ENTITLED_STATUSES}
        )
        result = await session.execute(select(CreditAccountRow.user_id).order_by(CreditAccountRow.user_id))
        user_ids = list(result.scalars().all())

    for user_id in user_ids:
        if user_id in subscribers:
            summary["subscribers"] += 1
            continue
        async with session_factory() as session:
            try:
                posted = await CreditLedger(session).earn(
                    user_id,
                    amount,
                    TransactionSource.BONUS,
                    description=f"{free_plan.name} monthly credits ({month})",
                    reference_id=f"free_{month}",
                    metadata={"type": "monthly_free", "month": month, "plan_id": free_plan.id},
                )
                await session.commit()
            except (BillingError, SQLAlchemyError) as exc:
                await session.rollback()
                summary["failed"] += 1
                summary["errors"].append({"user_id": user_id, "error": str(exc)[:500]})
                logger.error("Monthly free credits for %s failed: %s", user_id, exc, extra={"user_id": user_id})
                continue
        summary["already_granted" if posted.duplicate else "granted"] += 1

    logger.info("Monthly free credits: %s", summary)
    return summary


async def audit_credit_accounts(session_factory: async_sessionmaker[AsyncSession]) -> list[dict]:
    """Return one entry per account whose balance disagrees with its history."""
    discrepancies: list[dict] = []

    async with session_factory() as session:
        accounts = (await session.execute(select(CreditAccountRow))).scalars().all()
        totals = await session.execute(
            select(
                CreditTransactionRow.user_id,
                CreditTransactionRow.type,
                func.sum(CreditTransactionRow.amount),
            ).group_by(CreditTransactionRow.user_id, CreditTransactionRow.type)
        )
        replayed: dict[str, int] = {}
        for user_id, tx_type, amount in totals.all():
            replayed[user_id] = replayed.get(user_id, 0) + signed_delta(tx_type, int(amount or 0))

    for account in accounts:
        problems = []
        if account.balance != account.total_earned - account.total_spent:
            problems.append("balance != total_earned - total_spent")
        if account.frozen_balance < 0 or account.frozen_balance > account.balance:
            problems.append("frozen_balance out of range")
        expected = replayed.get(account.user_id, 0)
        if expected != account.balance:
            problems.append(f"transaction replay gives {expected}")
        if problems:
            entry = {
                "user_id": account.user_id,
                "balance": account.balance,
                "total_earned": account.total_earned,
                "total_spent": account.total_spent,
                "frozen_balance": account.frozen_balance,
                "replayed_balance": expected,
                "problems": problems,
            }
            discrepancies.append(entry)
            logger.error("Ledger audit mismatch for %s: %s", account.user_id, problems,
                         extra={"user_id": account.user_id})

    logger.info("Ledger audit: %d accounts, %d discrepancies", len(accounts), len(discrepancies))
    return discrepancies
