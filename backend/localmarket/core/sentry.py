from __future__ import annotations

import logging

from localmarket.core.config import settings


def init_sentry() -> bool:
    """Initialise error reporting when a DSN is configured; returns whether it was enabled."""
    if not settings.sentry_dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations import Integration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations: list[Integration] = [FastApiIntegration(), SqlalchemyIntegration()]
    if settings.sentry_enable_logs:
        event_level = getattr(logging, str(settings.sentry_log_level or "error").strip().upper(), logging.ERROR)
        integrations.append(LoggingIntegration(level=logging.INFO, event_level=event_level))

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=integrations,
        send_default_pii=False,
    )
    return True
