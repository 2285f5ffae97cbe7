"""
Credit Ledger

The only component allowed to change credit balances. Every operation:
- runs inside a SAVEPOINT of the caller's unit of work
- changes the account with one conditional UPDATE … RETURNING, so two
  concurrent postings for the same user never read the same starting balance
- appends exactly one CreditTransaction whose balance_after is the value the
  UPDATE returned
- is idempotent per (user_id, type, reference_id) when a reference id is given

Usage:
    async with async_session() as session:
        ledger = CreditLedger(session)
        await ledger.earn("user-1", 500, TransactionSource.SUBSCRIPTION,
                          reference_id="sub_1_inv_2")
        await session.commit()
"""
from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.credit_tables import CreditAccountRow, CreditTransactionRow
from src.db.repository import insert_if_absent
from src.db.tables import utcnow
from src.models import TransactionSource, TransactionType
from src.services.errors import AccountNotFound, InsufficientBalance, StorageFailure
from src.services.plans import PlanCatalog

logger = logging.getLogger(__name__)

_accounts = CreditAccountRow.__table__


@dataclass(frozen=True)
class LedgerResult:
    transaction: CreditTransactionRow
    duplicate: bool = False

    @property
    def balance_after(self) -> int:
        return self.transaction.balance_after


def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError("Credit amounts must be integers")
    if amount <= 0:
        raise ValueError("Amount must be positive")
    return amount


class CreditLedger:
    """Credit account + append-only transaction log, bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def create_account(self, user_id: str) -> CreditAccountRow:
        """Create a zero-balance account unless one exists. Safe to call repeatedly."""
        async with self._atomic("create_account", user_id):
            now = utcnow()
            created = await insert_if_absent(
                self.session,
                CreditAccountRow,
                {
                    "id": str(uuid.uuid4()),
                    "user_id": user_id,
                    "balance": 0,
                    "total_earned": 0,
                    "total_spent": 0,
                    "frozen_balance": 0,
                    "created_at": now,
                    "updated_at": now,
                },
                ["user_id"],
            )
        if created:
            logger.info("Credit account created", extra={"user_id": user_id})
        return await self.get_account(user_id)

    async def get_account(self, user_id: str) -> Optional[CreditAccountRow]:
        result = await self.session.execute(
            select(CreditAccountRow)
            .where(CreditAccountRow.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def has_enough(self, user_id: str, amount: int) -> bool:
        account = await self.get_account(user_id)
        if account is None:
            return False
        return account.balance - account.frozen_balance >= amount

    async def get_transactions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[CreditTransactionRow]:
        """Newest first."""
        result = await self.session.execute(
            select(CreditTransactionRow)
            .where(CreditTransactionRow.user_id == user_id)
            .order_by(CreditTransactionRow.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def find_by_reference(
        self, user_id: str, tx_type: TransactionType, reference_id: Optional[str]
    ) -> Optional[CreditTransactionRow]:
        if not reference_id:
            return None
        result = await self.session.execute(
            select(CreditTransactionRow).where(
                CreditTransactionRow.user_id == user_id,
                CreditTransactionRow.type == tx_type.value,
                CreditTransactionRow.reference_id == reference_id,
            )
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # BALANCE CHANGES
    # =========================================================================

    async def earn(
        self,
        user_id: str,
        amount: int,
        source: TransactionSource,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerResult:
        """Add credits, creating the account on first use."""
        amount = _require_positive(amount)
        return await self._credit(
            TransactionType.EARN, user_id, amount, amount, source, description, reference_id, metadata,
        )

    async def refund(
        self,
        user_id: str,
        amount: int,
        source: TransactionSource,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerResult:
        amount = _require_positive(amount)
        return await self._credit(
            TransactionType.REFUND, user_id, amount, amount, source,
            f"Refund: {description or ''}".strip(), reference_id, metadata,
        )

    async def spend(
        self,
        user_id: str,
        amount: int,
        source: TransactionSource,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerResult:
        """Remove credits. Raises InsufficientBalance if available < amount."""
        amount = _require_positive(amount)
        return await self._debit(
            TransactionType.SPEND, user_id, amount, amount, source, description, reference_id, metadata,
        )

    async def admin_adjust(
        self,
        user_id: str,
        amount: int,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerResult:
        """Signed adjustment. Positive credits the user, negative debits them."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValueError("Adjustment must be a non-zero integer")
        description = f"Admin adjustment: {description or 'Credit adjustment'}"
        if amount > 0:
            return await self._credit(
                TransactionType.ADMIN_ADJUST, user_id, amount, amount,
                TransactionSource.ADMIN, description, reference_id, metadata,
            )
        return await self._debit(
            TransactionType.ADMIN_ADJUST, user_id, -amount, amount,
            TransactionSource.ADMIN, description, reference_id, metadata,
        )

    async def freeze(
        self, user_id: str, amount: int, description: Optional[str] = None, reference_id: Optional[str] = None,
    ) -> LedgerResult:
        """Hold credits so they can't be spent. Balance is unchanged."""
        amount = _require_positive(amount)
        available = _accounts.c.balance - _accounts.c.frozen_balance
        return await self._move_frozen(
            TransactionType.FREEZE, user_id, amount,
            condition=available >= amount,
            frozen_value=_accounts.c.frozen_balance + amount,
            description=description or "Credits frozen",
            reference_id=reference_id,
        )

    async def unfreeze(
        self, user_id: str, amount: int, description: Optional[str] = None, reference_id: Optional[str] = None,
    ) -> LedgerResult:
        amount = _require_positive(amount)
        return await self._move_frozen(
            TransactionType.UNFREEZE, user_id, amount,
            condition=_accounts.c.frozen_balance >= amount,
            frozen_value=_accounts.c.frozen_balance - amount,
            description=description or "Credits unfrozen",
            reference_id=reference_id,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _credit(
        self, tx_type, user_id, magnitude, stored_amount, source, description, reference_id, metadata,
    ) -> LedgerResult:
        existing = await self.find_by_reference(user_id, tx_type, reference_id)
        if existing is not None:
            return self._duplicate(existing)

        try:
            async with self._atomic(tx_type.value, user_id):
                await self.create_account(user_id)
                result = await self.session.execute(
                    update(_accounts)
                    .where(_accounts.c.user_id == user_id)
                    .values(
                        balance=_accounts.c.balance + magnitude,
                        total_earned=_accounts.c.total_earned + magnitude,
                        updated_at=utcnow(),
                    )
                    .returning(_accounts.c.balance)
                )
                new_balance = result.scalar_one()
                tx = await self._append(
                    tx_type, user_id, stored_amount, source, description, reference_id, new_balance, metadata,
                )
        except IntegrityError:
            return await self._lost_race(tx_type, user_id, reference_id)

        logger.info(
            "[CREDITS] +%d %s for %s, balance=%d", magnitude, tx_type.value, user_id, new_balance,
            extra={"user_id": user_id, "reference_id": reference_id},
        )
        return LedgerResult(tx)

    async def _debit(
        self, tx_type, user_id, magnitude, stored_amount, source, description, reference_id, metadata,
    ) -> LedgerResult:
        existing = await self.find_by_reference(user_id, tx_type, reference_id)
        if existing is not None:
            return self._duplicate(existing)

        available = _accounts.c.balance - _accounts.c.frozen_balance
        try:
            async with self._atomic(tx_type.value, user_id):
                result = await self.session.execute(
                    update(_accounts)
                    .where(_accounts.c.user_id == user_id, available >= magnitude)
                    .values(
                        balance=_accounts.c.balance - magnitude,
                        total_spent=_accounts.c.total_spent + magnitude,
                        updated_at=utcnow(),
                    )
                    .returning(_accounts.c.balance)
                )
                new_balance = result.scalar_one_or_none()
                if new_balance is None:
                    await self._raise_unavailable(user_id, magnitude)
                tx = await self._append(
                    tx_type, user_id, stored_amount, source, description, reference_id, new_balance, metadata,
                )
        except IntegrityError:
            return await self._lost_race(tx_type, user_id, reference_id)

        logger.info(
            "[CREDITS] -%d %s for %s, balance=%d", magnitude, tx_type.value, user_id, new_balance,
            extra={"user_id": user_id, "reference_id": reference_id},
        )
        return LedgerResult(tx)

    async def _move_frozen(
        self, tx_type, user_id, amount, *, condition, frozen_value, description, reference_id,
    ) -> LedgerResult:
        existing = await self.find_by_reference(user_id, tx_type, reference_id)
        if existing is not None:
            return self._duplicate(existing)

        try:
            async with self._atomic(tx_type.value, user_id):
                result = await self.session.execute(
                    update(_accounts)
                    .where(_accounts.c.user_id == user_id, condition)
                    .values(frozen_balance=frozen_value, updated_at=utcnow())
                    .returning(_accounts.c.balance)
                )
                balance = result.scalar_one_or_none()
                if balance is None:
                    await self._raise_unavailable(user_id, amount, frozen=tx_type == TransactionType.UNFREEZE)
                tx = await self._append(
                    tx_type, user_id, amount, TransactionSource.ADMIN, description, reference_id, balance, None,
                )
        except IntegrityError:
            return await self._lost_race(tx_type, user_id, reference_id)

        logger.info("[CREDITS] %s %d for %s", tx_type.value, amount, user_id, extra={"user_id": user_id})
        return LedgerResult(tx)

    async def _append(
        self, tx_type, user_id, amount, source, description, reference_id, balance_after, metadata,
    ) -> CreditTransactionRow:
        tx = CreditTransactionRow(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=tx_type.value,
            amount=amount,
            source=TransactionSource(source).value,
            description=description,
            reference_id=reference_id,
            balance_after=balance_after,
            metadata_=metadata,
            created_at=utcnow(),
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def _raise_unavailable(self, user_id: str, amount: int, frozen: bool = False) -> None:
        account = await self.get_account(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        have = account.frozen_balance if frozen else account.balance - account.frozen_balance
        raise InsufficientBalance(user_id, required=amount, available=have)

    async def _lost_race(self, tx_type, user_id, reference_id) -> LedgerResult:
        """A concurrent posting inserted the same reference id first."""
        existing = await self.find_by_reference(user_id, tx_type, reference_id)
        if existing is None:
            raise StorageFailure(
                f"Integrity error posting {tx_type.value} for {user_id}",
                {"user_id": user_id, "reference_id": reference_id},
            )
        return self._duplicate(existing)

    @staticmethod
    def _duplicate(existing: CreditTransactionRow) -> LedgerResult:
        logger.info(
            "[CREDITS] Duplicate %s ignored (reference %s)", existing.type, existing.reference_id,
            extra={"user_id": existing.user_id, "reference_id": existing.reference_id},
        )
        return LedgerResult(existing, duplicate=True)

    @asynccontextmanager
    async def _atomic(self, operation: str, user_id: str):
        """SAVEPOINT around one ledger operation; storage errors become StorageFailure."""
        try:
            async with self.session.begin_nested():
                yield
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("[CREDITS] %s failed for %s: %s", operation, user_id, exc, exc_info=True)
            raise StorageFailure(
                f"Ledger {operation} failed: {exc}", {"user_id": user_id, "operation": operation},
            ) from exc


async def initialize_account(ledger: CreditLedger, catalog: PlanCatalog, user_id: str) -> dict:
    """Create the user's account and grant the signup bonus exactly once."""
    account = await ledger.create_account(user_id)
    bonus = catalog.free_plan.credit_grants.on_signup
    granted = 0
    if bonus > 0:
        result = await ledger.earn(
            user_id,
            bonus,
            TransactionSource.BONUS,
            description="Signup bonus",
            reference_id=f"signup_{user_id}",
            metadata={"type": "signup_bonus", "plan_id": catalog.free_plan.id},
        )
        granted = 0 if result.duplicate else bonus
        account = await ledger.get_account(user_id)
    return {"account": account, "signup_credits_granted": granted}
