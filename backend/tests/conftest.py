import os
from collections.abc import Generator

import pytest

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from localmarket.api.v1 import coupons as coupons_api
from localmarket.core import metrics
from localmarket.core.rate_limit import reset_buckets
from localmarket.main import app


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    # Limiter buckets, counters and dependency overrides are process-global.
    reset_buckets([coupons_api.coupon_rate_limit.buckets])
    metrics.reset()
    yield
    reset_buckets([coupons_api.coupon_rate_limit.buckets])
    metrics.reset()
    app.dependency_overrides.clear()
