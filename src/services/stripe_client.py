"""
Stripe boundary
---
- verify_signature: v1 HMAC-SHA256 webhook signature check
- decode_event: parse a verified payload into a StripeEvent
- StripeClient: subscription / checkout session fetches over the REST API
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from config.settings import settings
from src.services.errors import ProviderError, SignatureInvalid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StripeEvent:
    id: str
    type: str
    created: int
    data: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def object(self) -> dict[str, Any]:
        """The event's ``data.object``."""
        return self.data.get("object") or {}


def verify_signature(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> None:
    """Verify a Stripe-Signature header against the raw request body.

    Follows Stripe's v1 scheme:
    1. Extract ``t`` and every ``v1`` signature from the header
    2. HMAC-SHA256 over ``"{t}.{payload}"`` with the endpoint secret
    3. Timing-safe compare against each v1 value, then check the tolerance
    """
    if not secret:
        raise SignatureInvalid("Stripe webhook secret not configured")
    if not sig_header:
        raise SignatureInvalid("Missing Stripe-Signature header")

    timestamp = ""
    signatures: list[str] = []
    for item in sig_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            raise SignatureInvalid("Invalid Stripe signature header")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        raise SignatureInvalid("Missing timestamp or signature")
    try:
        ts = int(timestamp)
    except ValueError:
        raise SignatureInvalid("Invalid signature timestamp") from None

    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()

    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureInvalid("Invalid signature")

    current = time.time() if now is None else now
    if tolerance and abs(current - ts) > tolerance:
        raise SignatureInvalid("Webhook timestamp outside tolerance", {"timestamp": ts})


def decode_event(payload: bytes) -> StripeEvent:
    """Parse a verified payload. Malformed JSON or a missing id/type is a 400."""
    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        raise SignatureInvalid("Webhook payload is not valid JSON") from None

    if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
        raise SignatureInvalid("Webhook payload missing id or type")

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return StripeEvent(
        id=body["id"],
        type=body["type"],
        created=int(body.get("created") or 0),
        data=data,
        raw=body,
    )


def first_price_id(container: dict[str, Any]) -> Optional[str]:
    """Price id of the first item of an expanded subscription or line_items list."""
    items = container.get("items") or container.get("line_items") or {}
    for item in items.get("data") or []:
        price = item.get("price")
        if isinstance(price, dict) and price.get("id"):
            return price["id"]
        if isinstance(price, str):
            return price
    return None


class StripeClient:
    """Minimal async client for the resources webhook handlers need."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.base_url = (base_url or settings.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._get(
            f"/subscriptions/{subscription_id}",
            [("expand[]", "items.data.price")],
        )

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return await self._get(
            f"/checkout/sessions/{session_id}",
            [("expand[]", "line_items"), ("expand[]", "line_items.data.price")],
        )

    async def _get(self, path: str, params: list[tuple[str, str]]) -> dict[str, Any]:
        if not self.api_key:
            raise ProviderError("Stripe secret key not configured", {"path": path})

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        ) as client:
            try:
                resp = await client.get(path, params=params)
            except httpx.HTTPError as exc:
                logger.error("Stripe request %s failed: %s", path, exc)
                raise ProviderError(f"Stripe request failed: {exc}", {"path": path}) from exc

        if resp.status_code != 200:
            logger.error("Stripe %s returned %d: %s", path, resp.status_code, resp.text[:200])
            raise ProviderError(
                f"Stripe returned {resp.status_code}",
                {"path": path, "status_code": resp.status_code},
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError("Stripe returned invalid JSON", {"path": path}) from exc
