"""
Sentry Error Tracking
=====================

Centralized error tracking for the postback pipeline.

Related files:
- leadflow/main.py: Initializes Sentry on app startup
- leadflow/services/dispatcher.py: Reports crashed channel tasks
- leadflow/security.py: Reports ciphertexts that fail to decrypt

The fan-out path never raises to the caller, so Sentry is where operators
see adapter crashes and credential corruption.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Lead contact data is PII; nothing is attached implicitly.
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )

        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture a caught-and-handled exception.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            await adapter.send(event)
        except Exception as e:
            capture_exception(e, extra={"channel": "google_ads", "event_id": 42})
    """
    if not get_sentry_dsn():
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message that is not an exception but still needs operator attention.

    Example:
        capture_message(
            "Stored credential failed to decrypt",
            level="error",
            extra={"context": "google_ads:refresh"},
        )
    """
    if not get_sentry_dsn():
        logger.log(
            logging.getLevelName(level.upper()),
            f"Message (Sentry disabled): {message}"
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
