"""Fixed-window rate limiting backed by the shared database.

Counters live in ``rate_limit_counters`` so every worker process sees the
same budget. The first request of a window inserts the row; later requests
increment it with a conditional ``UPDATE ... WHERE count < limit``, so the
limit holds without any in-process lock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Request, Response
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.rate_limit import RateLimitCounter

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime

    def retry_after_seconds(self, now: datetime) -> int:
        return max(1, int((self.reset_at - now).total_seconds()))


def window_start_for(now: datetime, window_seconds: int) -> datetime:
    epoch_seconds = int(now.timestamp())
    return datetime.fromtimestamp(epoch_seconds - epoch_seconds % window_seconds)


def resolve_client_key(request: Request, user=None) -> str:
    """Authenticated user id when known, client IP otherwise."""
    if user is not None and getattr(user, 'id', None):
        return f'user:{user.id}'

    forwarded = request.headers.get('x-forwarded-for')
    if forwarded:
        return f'ip:{forwarded.split(",")[0].strip()}'
    client = request.client
    return f'ip:{client.host if client else "unknown"}'


def check_rate_limit(
    db: Session,
    bucket: str,
    key: str,
    *,
    limit: int | None = None,
    window_seconds: int | None = None,
    now: datetime | None = None,
) -> RateLimitDecision:
    now = now or datetime.now()
    limit = limit if limit is not None else config.RATE_LIMIT_SLOTS_MAX
    window_seconds = window_seconds or config.RATE_LIMIT_WINDOW_SECONDS
    window_start = window_start_for(now, window_seconds)
    reset_at = window_start + timedelta(seconds=window_seconds)

    key_filter = (
        RateLimitCounter.bucket == bucket,
        RateLimitCounter.key == key,
        RateLimitCounter.window_start == window_start,
    )

    incremented = db.query(RateLimitCounter).filter(*key_filter, RateLimitCounter.count < limit).update(
        {RateLimitCounter.count: RateLimitCounter.count + 1},
        synchronize_session=False,
    )
    if not incremented:
        exists = db.query(RateLimitCounter.id).filter(*key_filter).first() is not None
        if exists:
            db.rollback()
            logger.info('rate_limit_exceeded', extra={'bucket': bucket, 'key': key})
            return RateLimitDecision(allowed=False, limit=limit, remaining=0, reset_at=reset_at)

        db.add(RateLimitCounter(bucket=bucket, key=key, window_start=window_start, count=1))
        try:
            db.commit()
        except IntegrityError:
            # Another worker opened the window first.
            db.rollback()
            return check_rate_limit(db, bucket, key, limit=limit, window_seconds=window_seconds, now=now)
        return RateLimitDecision(allowed=True, limit=limit, remaining=limit - 1, reset_at=reset_at)

    db.commit()
    count = db.query(RateLimitCounter.count).filter(*key_filter).scalar() or limit
    return RateLimitDecision(allowed=True, limit=limit, remaining=max(limit - count, 0), reset_at=reset_at)


def set_rate_headers(response: Response, decision: RateLimitDecision, now: datetime) -> None:
    response.headers['X-RateLimit-Limit'] = str(decision.limit)
    response.headers['X-RateLimit-Remaining'] = str(max(decision.remaining, 0))
    response.headers['X-RateLimit-Reset'] = str(int(decision.reset_at.timestamp()))
    if not decision.allowed:
        response.headers['Retry-After'] = str(decision.retry_after_seconds(now))


def prune_rate_limit_counters(db: Session, now: datetime | None = None, window_seconds: int | None = None) -> int:
    now = now or datetime.now()
    window_seconds = window_seconds or config.RATE_LIMIT_WINDOW_SECONDS
    cutoff = window_start_for(now, window_seconds)
    removed = db.query(RateLimitCounter).filter(RateLimitCounter.window_start < cutoff).delete(synchronize_session=False)
    db.commit()
    return removed
