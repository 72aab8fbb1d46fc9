"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the ARQ worker.

Related files:
- codsync/main.py: Initializes Sentry on app startup
- codsync/workers/arq_worker.py: Initializes Sentry on worker startup
- codsync/services/staging_sync_service.py: Captures systemic sync failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from codsync.deps import get_settings

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Should be called once during process startup (API or worker).

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    global _initialized

    settings = get_settings()
    if not settings.SENTRY_DSN:
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,  # Customer emails/phones must never leave the database
        )
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False

    _initialized = True
    logger.debug("[SENTRY] Initialized for %s environment", settings.ENVIRONMENT)
    return True


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled (the sync marks its
    session as errored and returns) but should still be tracked.

    Example:
        except Exception as e:
            capture_exception(e, extra={"operation": "staging_sync", "user_id": user_id})
    """
    if not _initialized:
        logger.error("Exception (Sentry disabled): %s", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def flush(timeout: float) -> None:
    if _initialized:
        sentry_sdk.flush(timeout=timeout)
