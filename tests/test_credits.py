"""Tests for the credit ledger: balances, dedupe, freeze, invariants."""
import asyncio

import pytest
from sqlalchemy import func, select
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from src.db.credit_tables import CreditTransactionRow
from src.models import TransactionSource, TransactionType, signed_delta
from src.services.credits import CreditLedger, initialize_account
from src.services.errors import AccountNotFound, InsufficientBalance, StorageFailure
from tests.conftest import TestSession, make_catalog


async def _tx_count(session, user_id: str) -> int:
    result = await session.execute(
        select(func.count(CreditTransactionRow.id)).where(CreditTransactionRow.user_id == user_id)
    )
    return result.scalar()


@pytest.mark.asyncio
async def test_create_account_is_idempotent():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        first = await ledger.create_account("u1")
        second = await ledger.create_account("u1")
        await session.commit()
    assert first.id == second.id
    assert second.balance == 0
    assert second.frozen_balance == 0


@pytest.mark.asyncio
async def test_earn_creates_account_and_appends_transaction():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        result = await ledger.earn("u1", 100, TransactionSource.SUBSCRIPTION, "Pro credits", "sub_1_inv_1")
        await session.commit()
        account = await ledger.get_account("u1")

    assert not result.duplicate
    assert result.transaction.type == "earn"
    assert result.transaction.amount == 100
    assert result.balance_after == 100
    assert account.balance == 100
    assert account.total_earned == 100
    assert account.total_spent == 0


@pytest.mark.asyncio
async def test_earn_same_reference_twice_is_duplicate():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        first = await ledger.earn("u1", 100, TransactionSource.SUBSCRIPTION, reference_id="ref-1")
        second = await ledger.earn("u1", 100, TransactionSource.SUBSCRIPTION, reference_id="ref-1")
        await session.commit()
        account = await ledger.get_account("u1")
        count = await _tx_count(session, "u1")

    assert second.duplicate
    assert second.transaction.id == first.transaction.id
    assert account.balance == 100
    assert count == 1


@pytest.mark.asyncio
async def test_same_reference_different_type_is_not_duplicate():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 100, TransactionSource.SUBSCRIPTION, reference_id="order-1")
        result = await ledger.spend("u1", 30, TransactionSource.API_CALL, reference_id="order-1")
        await session.commit()
    assert not result.duplicate
    assert result.balance_after == 70


@pytest.mark.asyncio
async def test_unreferenced_entries_never_dedupe():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 10, TransactionSource.BONUS)
        await ledger.earn("u1", 10, TransactionSource.BONUS)
        await session.commit()
        account = await ledger.get_account("u1")
    assert account.balance == 20


@pytest.mark.asyncio
async def test_earn_rejects_non_positive_amount():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        with pytest.raises(ValueError):
            await ledger.earn("u1", 0, TransactionSource.BONUS)
        with pytest.raises(ValueError):
            await ledger.earn("u1", -5, TransactionSource.BONUS)


@pytest.mark.asyncio
async def test_spend_reduces_balance():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 100, TransactionSource.SUBSCRIPTION)
        result = await ledger.spend("u1", 40, TransactionSource.API_CALL, "image generation")
        await session.commit()
        account = await ledger.get_account("u1")

    assert result.transaction.type == "spend"
    assert result.transaction.amount == 40
    assert result.balance_after == 60
    assert account.total_spent == 40
    assert account.balance == account.total_earned - account.total_spent


@pytest.mark.asyncio
async def test_spend_respects_frozen_balance():
    """balance=100, frozen=40 → available 60; spend 70 fails, spend 50 succeeds."""
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 100, TransactionSource.SUBSCRIPTION)
        await ledger.freeze("u1", 40)
        await session.commit()

        assert await ledger.has_enough("u1", 60)
        assert not await ledger.has_enough("u1", 61)

        with pytest.raises(InsufficientBalance) as exc:
            await ledger.spend("u1", 70, TransactionSource.API_CALL)
        assert exc.value.details["available"] == 60
        assert exc.value.details["shortfall"] == 10

        result = await ledger.spend("u1", 50, TransactionSource.API_CALL)
        await session.commit()
        account = await ledger.get_account("u1")
        count = await _tx_count(session, "u1")

    assert result.balance_after == 50
    assert account.balance == 50
    assert account.frozen_balance == 40
    # earn + freeze + one successful spend
    assert count == 3


@pytest.mark.asyncio
async def test_failed_spend_appends_nothing():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 10, TransactionSource.BONUS)
        with pytest.raises(InsufficientBalance):
            await ledger.spend("u1", 11, TransactionSource.API_CALL)
        await session.commit()
        account = await ledger.get_account("u1")
        count = await _tx_count(session, "u1")
    assert account.balance == 10
    assert count == 1


@pytest.mark.asyncio
async def test_spend_without_account_raises():
    async with TestSession() as session:
        with pytest.raises(AccountNotFound):
            await CreditLedger(session).spend("ghost", 1, TransactionSource.API_CALL)


@pytest.mark.asyncio
async def test_refund_is_earn_shaped():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 50, TransactionSource.BONUS)
        await ledger.spend("u1", 20, TransactionSource.API_CALL)
        result = await ledger.refund("u1", 20, TransactionSource.API_CALL, "failed job", "job-9")
        await session.commit()
        account = await ledger.get_account("u1")

    assert result.transaction.type == "refund"
    assert result.transaction.description == "Refund: failed job"
    assert account.balance == 50
    assert account.balance == account.total_earned - account.total_spent


@pytest.mark.asyncio
async def test_admin_adjust_is_signed():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        up = await ledger.admin_adjust("u1", 80, "goodwill")
        down = await ledger.admin_adjust("u1", -30, "correction")
        await session.commit()
        account = await ledger.get_account("u1")

    assert up.transaction.amount == 80
    assert down.transaction.amount == -30
    assert down.transaction.source == "admin"
    assert down.transaction.type == "admin_adjust"
    assert account.balance == 50
    assert account.total_earned == 80
    assert account.total_spent == 30


@pytest.mark.asyncio
async def test_admin_adjust_debit_limited_by_available():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 10, TransactionSource.BONUS)
        with pytest.raises(InsufficientBalance):
            await ledger.admin_adjust("u1", -11)


@pytest.mark.asyncio
async def test_admin_adjust_zero_rejected():
    async with TestSession() as session:
        with pytest.raises(ValueError):
            await CreditLedger(session).admin_adjust("u1", 0)


@pytest.mark.asyncio
async def test_freeze_and_unfreeze_keep_balance():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 100, TransactionSource.BONUS)
        frozen = await ledger.freeze("u1", 30, "dispute")
        await ledger.unfreeze("u1", 10)
        await session.commit()
        account = await ledger.get_account("u1")

    assert frozen.transaction.type == "freeze"
    assert frozen.balance_after == 100
    assert account.balance == 100
    assert account.frozen_balance == 20


@pytest.mark.asyncio
async def test_freeze_more_than_available_fails():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 100, TransactionSource.BONUS)
        await ledger.freeze("u1", 80)
        with pytest.raises(InsufficientBalance):
            await ledger.freeze("u1", 21)


@pytest.mark.asyncio
async def test_unfreeze_more_than_frozen_fails():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 100, TransactionSource.BONUS)
        await ledger.freeze("u1", 10)
        with pytest.raises(InsufficientBalance) as exc:
            await ledger.unfreeze("u1", 11)
        assert exc.value.details["available"] == 10


@pytest.mark.asyncio
async def test_transaction_replay_reproduces_balance():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 500, TransactionSource.SUBSCRIPTION)
        await ledger.spend("u1", 120, TransactionSource.API_CALL)
        await ledger.freeze("u1", 50)
        await ledger.refund("u1", 20, TransactionSource.API_CALL)
        await ledger.admin_adjust("u1", -100)
        await ledger.unfreeze("u1", 50)
        await session.commit()

        account = await ledger.get_account("u1")
        history = await ledger.get_transactions("u1", limit=100)

    assert sum(signed_delta(t.type, t.amount) for t in history) == account.balance == 300
    assert account.balance == account.total_earned - account.total_spent


@pytest.mark.asyncio
async def test_get_transactions_paginates():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        for i in range(5):
            await ledger.earn("u1", 1, TransactionSource.BONUS, reference_id=f"r{i}")
        await session.commit()
        page1 = await ledger.get_transactions("u1", limit=2)
        page3 = await ledger.get_transactions("u1", limit=2, offset=4)
    assert len(page1) == 2
    assert len(page3) == 1


@pytest.mark.asyncio
async def test_storage_error_becomes_storage_failure_and_rolls_back():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 100, TransactionSource.BONUS)
        await session.commit()

        with patch.object(
            CreditLedger, "_append", side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")),
        ):
            with pytest.raises(StorageFailure):
                await ledger.earn("u1", 50, TransactionSource.BONUS, reference_id="boom")

        await session.commit()
        account = await ledger.get_account("u1")
    # The balance update inside the failed savepoint was rolled back
    assert account.balance == 100


@pytest.mark.asyncio
async def test_initialize_account_grants_signup_once():
    catalog = make_catalog()
    async with TestSession() as session:
        ledger = CreditLedger(session)
        first = await initialize_account(ledger, catalog, "new-user")
        second = await initialize_account(ledger, catalog, "new-user")
        await session.commit()
        history = await ledger.get_transactions("new-user")

    assert first["signup_credits_granted"] == 50
    assert second["signup_credits_granted"] == 0
    assert second["account"].balance == 50
    assert len(history) == 1
    assert history[0].reference_id == "signup_new-user"
    assert history[0].source == TransactionSource.BONUS.value
    assert history[0].type == TransactionType.EARN.value


@pytest.mark.asyncio
async def test_reference_inserted_by_concurrent_posting_is_duplicate():
    async with TestSession() as session:
        ledger = CreditLedger(session)
        await ledger.earn("u1", 100, TransactionSource.SUBSCRIPTION, reference_id="r1")
        await session.commit()

        # The fast lookup misses, as it would if the other posting had not committed yet
        real_find = CreditLedger.find_by_reference
        calls = []

        async def find_after_first_miss(self, user_id, tx_type, reference_id):
            calls.append(reference_id)
            if len(calls) == 1:
                return None
            return await real_find(self, user_id, tx_type, reference_id)

        with patch.object(CreditLedger, "find_by_reference", find_after_first_miss):
            result = await ledger.earn("u1", 100, TransactionSource.SUBSCRIPTION, reference_id="r1")
        await session.commit()

        account = await ledger.get_account("u1")
        count = await _tx_count(session, "u1")

    assert result.duplicate is True
    assert result.balance_after == 100
    assert calls == ["r1", "r1"]
    assert account.balance == 100
    assert count == 1


@pytest.mark.asyncio
async def test_concurrent_earns_for_one_user_serialize(file_db):
    async def grant(i: int) -> int:
        async with file_db() as session:
            result = await CreditLedger(session).earn(
                "cu", 10, TransactionSource.SUBSCRIPTION, reference_id=f"grant_{i}",
            )
            await session.commit()
            return result.balance_after

    balances = await asyncio.gather(*(grant(i) for i in range(10)))

    # Every posting saw the balance left by the one before it
    assert sorted(balances) == list(range(10, 101, 10))
    async with file_db() as session:
        account = await CreditLedger(session).get_account("cu")
        count = await _tx_count(session, "cu")
    assert account.balance == 100
    assert account.total_earned == 100
    assert count == 10
