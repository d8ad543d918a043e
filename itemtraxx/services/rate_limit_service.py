from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.orm import Session

from models.gear_models import RateLimitCounter
from services.access_service import ROLE_TENANT_ADMIN, CallerContext
from services.errors import RateLimited, RateLimitUnavailable
from services.query_service import dialect_insert, run_write

RATE_LIMIT_LOGGER = logging.getLogger("itemtraxx.rate_limit")

RATE_LIMIT_WINDOW_SECONDS = 60
ADMIN_SCOPE = "admin"
TENANT_SCOPE = "tenant"
LIMIT_BY_SCOPE = {
    ADMIN_SCOPE: 30,
    TENANT_SCOPE: 25,
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int | None


def scope_for_role(role: str) -> str:
    return ADMIN_SCOPE if role == ROLE_TENANT_ADMIN else TENANT_SCOPE


def window_start_for(now_ts: float, window_seconds: int = RATE_LIMIT_WINDOW_SECONDS) -> int:
    window = max(int(window_seconds), 1)
    return int(now_ts // window) * window


def retry_after_for(now_ts: float, window_start: int, window_seconds: int = RATE_LIMIT_WINDOW_SECONDS) -> int:
    return max(1, int(math.ceil(window_start + window_seconds - now_ts)))


def consume_rate_limit(
    db: Session,
    bucket_key: str,
    limit: int,
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    now_ts: float | None = None,
) -> RateLimitResult:
    """Atomically count one request in the bucket's current fixed window."""
    now_ts = time.time() if now_ts is None else now_ts
    window_start = window_start_for(now_ts, window_seconds)

    insert = dialect_insert(db)
    stmt = (
        insert(RateLimitCounter)
        .values(bucket_key=bucket_key, window_start=window_start, request_count=1)
        .on_conflict_do_update(
            index_elements=[RateLimitCounter.bucket_key, RateLimitCounter.window_start],
            set_={"request_count": RateLimitCounter.request_count + 1},
        )
        .returning(RateLimitCounter.request_count)
    )
    outcome = run_write(db, stmt, label="rate_limit_counters", returning=True)
    if not outcome.ok or not outcome.rows:
        raise RateLimitUnavailable()

    run_write(
        db,
        delete(RateLimitCounter)
        .where(RateLimitCounter.bucket_key == bucket_key)
        .where(RateLimitCounter.window_start < window_start),
        label="rate_limit_prune",
    )

    count = int(outcome.rows[0]["request_count"] or 0)
    if count > limit:
        return RateLimitResult(False, count, limit, retry_after_for(now_ts, window_start, window_seconds))
    return RateLimitResult(True, count, limit, None)


def enforce_rate_limit(db: Session, caller: CallerContext, now_ts: float | None = None) -> RateLimitResult:
    scope = scope_for_role(caller.role)
    limit = LIMIT_BY_SCOPE[scope]
    bucket_key = f"{scope}:{caller.tenant_id}:{caller.user_id}"
    result = consume_rate_limit(db, bucket_key, limit, now_ts=now_ts)
    if not result.allowed:
        RATE_LIMIT_LOGGER.warning(
            "Rate limit exceeded bucket=%s count=%s limit=%s retry_after=%s",
            bucket_key,
            result.count,
            limit,
            result.retry_after_seconds,
        )
        raise RateLimited(result.retry_after_seconds or RATE_LIMIT_WINDOW_SECONDS)
    return result
