"""
Error reporting via Sentry.

setup_sentry() is called once from the lifespan; without SENTRY_DSN it does
nothing and capture calls become no-ops inside sentry_sdk.
"""

from __future__ import annotations

import logging

import sentry_sdk

from services.visit_detection.config import ServiceSettings, settings as default_settings
from services.visit_detection.errors import InvariantViolationError

logger = logging.getLogger(__name__)


def setup_sentry(service_settings: ServiceSettings | None = None) -> bool:
    """Initialise the Sentry SDK. Returns False when no DSN is configured."""
    cfg = service_settings or default_settings
    if not cfg.sentry_dsn:
        logger.debug("sentry disabled: no SENTRY_DSN")
        return False

    sentry_sdk.init(
        dsn=cfg.sentry_dsn,
        environment=cfg.environment,
        release=f"{cfg.app_name}@{cfg.app_version}",
        traces_sample_rate=cfg.sentry_traces_sample_rate,
        send_default_pii=False,
    )
    logger.info("sentry initialised: environment=%s", cfg.environment)
    return True


def report_invariant_violation(exc: InvariantViolationError) -> None:
    """Log and forward a corrupted-state defect. The caller re-raises."""
    logger.error(
        "visit invariant violated: user=%s place=%s detail=%s",
        exc.user_id, exc.place_id, exc,
    )
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("component", "visit_detection")
        scope.set_context("visit", {"user_id": exc.user_id, "place_id": exc.place_id})
        sentry_sdk.capture_exception(exc)
