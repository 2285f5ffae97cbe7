"""Admin API endpoints for PayLedger - protected by X-Admin-Key.

Credits:
- GET  /api/v1/admin/credits/{user_id}                : account + available balance
- GET  /api/v1/admin/credits/{user_id}/transactions   : ledger history, newest first
- POST /api/v1/admin/credits/{user_id}/adjust         : signed admin adjustment
- POST /api/v1/admin/credits/{user_id}/freeze         : hold credits
- POST /api/v1/admin/credits/{user_id}/unfreeze       : release held credits
- POST /api/v1/admin/credits/{user_id}/initialize     : account + signup bonus

Payments:
- GET  /api/v1/admin/payments/{record_id}             : record + event log

Reconciliation:
- POST /api/v1/admin/reconcile/dead-letters
- POST /api/v1/admin/reconcile/monthly-credits
- GET  /api/v1/admin/reconcile/audit
"""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import get_session, get_session_factory
from src.db.repository import PaymentRepository
from src.models import CreditAccount, CreditTransaction, PaymentRecord
from src.services.credits import CreditLedger, initialize_account
from src.services.errors import AccountNotFound, BillingError
from src.services.plans import get_catalog
from src.services.reconciliation import (
    audit_credit_accounts,
    grant_monthly_free_credits,
    retry_dead_letters,
)
from config.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


def verify_admin_key(x_admin_key: str = Header(None)) -> None:
    """Verify admin API key from request header (timing-safe)."""
    expected_key = settings.ADMIN_API_KEY
    if not expected_key:
        raise HTTPException(503, "Admin endpoints disabled (ADMIN_API_KEY not set)")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected_key):
        raise HTTPException(403, "Invalid admin key")


def _http_error(exc: BillingError) -> HTTPException:
    return HTTPException(exc.http_status, detail=exc.to_dict())


# ── Schemas ──────────────────────────────────────────────────────────────────

class AdjustRequest(BaseModel):
    amount: int
    description: Optional[str] = Field(None, max_length=500)
    reference_id: Optional[str] = Field(None, max_length=255)

    @field_validator("amount")
    @classmethod
    def non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v


class FreezeRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=500)
    reference_id: Optional[str] = Field(None, max_length=255)


class LedgerResponse(BaseModel):
    account: CreditAccount
    transaction: CreditTransaction
    duplicate: bool


async def _ledger_response(ledger: CreditLedger, user_id: str, result) -> LedgerResponse:
    account = await ledger.get_account(user_id)
    return LedgerResponse(
        account=CreditAccount.model_validate(account),
        transaction=CreditTransaction.model_validate(result.transaction),
        duplicate=result.duplicate,
    )


# ── Credits ──────────────────────────────────────────────────────────────────

@router.get("/credits/{user_id}", response_model=CreditAccount)
async def get_credit_account(
    user_id: str,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    account = await CreditLedger(session).get_account(user_id)
    if account is None:
        raise _http_error(AccountNotFound(user_id))
    return CreditAccount.model_validate(account)


@router.get("/credits/{user_id}/transactions", response_model=list[CreditTransaction])
async def list_credit_transactions(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    rows = await CreditLedger(session).get_transactions(user_id, limit=limit, offset=offset)
    return [CreditTransaction.model_validate(r) for r in rows]


@router.post("/credits/{user_id}/adjust", response_model=LedgerResponse)
async def adjust_credits(
    user_id: str,
    req: AdjustRequest,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    """Positive amounts credit the user; negative amounts debit available credits."""
    ledger = CreditLedger(session)
    try:
        result = await ledger.admin_adjust(
            user_id, req.amount, description=req.description, reference_id=req.reference_id,
        )
    except BillingError as exc:
        await session.rollback()
        raise _http_error(exc)
    await session.commit()
    logger.info("Admin adjustment %+d for %s", req.amount, user_id, extra={"user_id": user_id})
    return await _ledger_response(ledger, user_id, result)


@router.post("/credits/{user_id}/freeze", response_model=LedgerResponse)
async def freeze_credits(
    user_id: str,
    req: FreezeRequest,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    ledger = CreditLedger(session)
    try:
        result = await ledger.freeze(user_id, req.amount, req.description, req.reference_id)
    except BillingError as exc:
        await session.rollback()
        raise _http_error(exc)
    await session.commit()
    return await _ledger_response(ledger, user_id, result)


@router.post("/credits/{user_id}/unfreeze", response_model=LedgerResponse)
async def unfreeze_credits(
    user_id: str,
    req: FreezeRequest,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    ledger = CreditLedger(session)
    try:
        result = await ledger.unfreeze(user_id, req.amount, req.description, req.reference_id)
    except BillingError as exc:
        await session.rollback()
        raise _http_error(exc)
    await session.commit()
    return await _ledger_response(ledger, user_id, result)


@router.post("/credits/{user_id}/initialize")
async def initialize_credits(
    user_id: str,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    """Create the account and grant the signup bonus. Repeat calls grant nothing."""
    try:
        result = await initialize_account(CreditLedger(session), get_catalog(), user_id)
    except BillingError as exc:
        await session.rollback()
        raise _http_error(exc)
    await session.commit()
    return {
        "account": CreditAccount.model_validate(result["account"]).model_dump(mode="json"),
        "signup_credits_granted": result["signup_credits_granted"],
    }


# ── Payments ─────────────────────────────────────────────────────────────────

@router.get("/payments/{record_id}")
async def get_payment_record(
    record_id: str,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    repo = PaymentRepository(session)
    record = await repo.find_by_id(record_id)
    if record is None:
        raise HTTPException(404, f"No payment record {record_id}")
    events = await repo.events_for_record(record_id)
    return {
        "record": PaymentRecord.model_validate(record).model_dump(mode="json"),
        "events": [
            {
                "provider_event_id": e.provider_event_id,
                "event_type": e.event_type,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ],
    }


# ── Reconciliation ───────────────────────────────────────────────────────────

@router.post("/reconcile/dead-letters")
async def reconcile_dead_letters(_auth: None = Depends(verify_admin_key)):
    return await retry_dead_letters(get_session_factory())


@router.post("/reconcile/monthly-credits")
async def reconcile_monthly_credits(_auth: None = Depends(verify_admin_key)):
    return await grant_monthly_free_credits(get_session_factory(), get_catalog())


@router.get("/reconcile/audit")
async def reconcile_audit(_auth: None = Depends(verify_admin_key)):
    discrepancies = await audit_credit_accounts(get_session_factory())
    return {"ok": not discrepancies, "discrepancies": discrepancies}
