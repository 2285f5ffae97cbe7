"""Stripe webhook endpoint.

- POST /api/v1/webhooks/stripe: signature-verified, idempotent event ingestion
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from src.db.engine import get_session_factory
from src.services.plans import get_catalog
from src.services.stripe_client import StripeClient
from src.services.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(
        session_factory=get_session_factory(),
        catalog=get_catalog(),
        stripe_client=StripeClient(),
    )


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Handle a Stripe delivery.

    200 for processed, duplicate, ignored and unknown-record events; 400 for a
    bad signature or payload; 500 when storage or the Stripe API failed so
    Stripe retries.
    """
    body = await request.body()
    result = await processor.handle(body, stripe_signature)
    return JSONResponse(status_code=result.status_code, content=result.to_dict())
