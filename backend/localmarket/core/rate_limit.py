from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from typing import Awaitable, Callable, DefaultDict, Deque, Hashable, Iterable

from fastapi import Request, status

from localmarket.core.errors import APIError

WindowBucket = Deque[float]


def _prune(bucket: WindowBucket, now: float, window_seconds: int) -> None:
    while bucket and now - bucket[0] > window_seconds:
        bucket.popleft()


def _enforce_limit(bucket: WindowBucket, limit: int, window_seconds: int, now: float) -> None:
    _prune(bucket, now, window_seconds)
    if len(bucket) >= limit:
        retry_after_seconds = 1
        if bucket:
            retry_after_seconds = max(1, int(math.ceil(bucket[0] + window_seconds - now)))
        raise APIError(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            code="too_many_requests",
            headers={"Retry-After": str(retry_after_seconds)},
        )
    bucket.append(now)


def client_identifier(request: Request) -> Hashable:
    """Bucket by bearer credential when present, otherwise by client address."""
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer ") and len(auth) > 7:
        return f"token:{auth[7:][-32:]}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def per_identifier_limiter(
    identifier_fn: Callable[[Request], Hashable],
    limit: int,
    window_seconds: int,
) -> Callable[[Request], Awaitable[None]]:
    """
    In-memory sliding-window rate limiter keyed by a per-request identifier.

    Args:
        identifier_fn: maps the request to a bucket identifier.
        limit: max requests allowed in the window; zero or less disables the limiter.
        window_seconds: rolling window length in seconds.
    """
    buckets: DefaultDict[Hashable, WindowBucket] = defaultdict(deque)

    async def dependency(request: Request) -> None:
        if limit <= 0:
            return
        _enforce_limit(buckets[identifier_fn(request)], limit, window_seconds, time.time())

    dependency.buckets = buckets  # type: ignore[attr-defined]
    return dependency


def reset_buckets(buckets: Iterable[DefaultDict[Hashable, WindowBucket]]) -> None:
    """Helper for tests to clear limiter state."""
    for bucket in buckets:
        bucket.clear()
