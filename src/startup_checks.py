"""Startup validation; catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: unsigned webhooks would be rejected, so Stripe retries forever
    if is_prod and not settings.STRIPE_WEBHOOK_SECRET:
        logger.critical("STRIPE_WEBHOOK_SECRET is not set! Webhooks cannot be verified.")
        sys.exit(1)

    # Critical: CORS should not be * in production
    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to *; restrict in production")

    if not settings.STRIPE_WEBHOOK_SECRET:
        warnings.append("STRIPE_WEBHOOK_SECRET not set; every webhook will be rejected")

    if not settings.STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY not set; checkout events cannot fetch subscriptions")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set; admin credit endpoints disabled")

    # Plan catalog must resolve every configured price id
    try:
        from src.services.plans import get_catalog
        get_catalog()
    except ValueError as exc:
        logger.critical("Plan catalog is invalid: %s", exc)
        sys.exit(1)

    if settings.DEAD_LETTER_MAX_ATTEMPTS < 1:
        warnings.append("DEAD_LETTER_MAX_ATTEMPTS < 1; dead letters fail on first retry")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
