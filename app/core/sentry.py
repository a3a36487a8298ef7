"""
Sentry initialization helper. Reads SENTRY_DSN from Settings; no-op when unset.
"""
import logging

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from app.core.config import settings


def init_sentry(service_name: str = "settlement-core") -> bool:
    dsn = settings.SENTRY_DSN
    if not dsn:
        return False
    sentry_logging = LoggingIntegration(
        level=logging.INFO,        # breadcrumbs
        event_level=logging.ERROR  # send logged errors as events
    )
    sentry_sdk.init(
        dsn,
        integrations=[sentry_logging],
        environment=settings.SENTRY_ENVIRONMENT,
        server_name=service_name,
        traces_sample_rate=0.0,
        send_default_pii=False,
    )
    return True
