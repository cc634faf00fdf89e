"""Fixed-window rate limiters.

Windows are aligned to multiples of the window length since the epoch,
so every caller computing a window for the same instant agrees on its
bounds. `InMemoryRateLimiter` is per-process; `DatabaseRateLimiter`
keeps counters in the `RateLimit` table so limits hold across workers.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .. import models

logger = logging.getLogger("classmate.ratelimit")

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: int


class Policy(NamedTuple):
    prefix: str
    max_requests: int
    window_seconds: int

    def key(self, *parts) -> str:
        return ":".join([self.prefix, *(str(p) for p in parts)])


LOGIN = Policy("login", 20, 15 * 60)
PASSWORD_CHANGE = Policy("password_change", 3, 60 * 60)
ASSIGNMENT_SUBMISSION = Policy("assignment_submission", 10, 24 * 60 * 60)
PROFILE_UPDATE = Policy("profile_update", 5, 60 * 60)
PASSWORD_RESET = Policy("password_reset", 3, 60 * 60)


def fixed_window(now: datetime, window_seconds: int) -> tuple[datetime, datetime]:
    """Return the (start, end) of the window containing naive-UTC `now`."""
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    elapsed = int((now - _EPOCH).total_seconds())
    start = _EPOCH + timedelta(seconds=elapsed - elapsed % window_seconds)
    return start, start + timedelta(seconds=window_seconds)


def _retry_after(now: datetime, window_end: datetime) -> int:
    return max(1, int((window_end - now).total_seconds()))


class InMemoryRateLimiter:
    """Simple fixed-window limiter per key.

    Each hit first drops counters whose window has ended, so keys seen once
    do not accumulate for the life of the process.
    """

    def __init__(self, clock=time.time):
        # key -> (window_end, count)
        self._counts: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def allow(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """Count one hit for `key`; return (allowed, retry_after_seconds)."""
        now = self._clock()
        window_end = (int(now // window_seconds) + 1) * window_seconds
        with self._lock:
            self._prune(now)
            _, count = self._counts.get(key, (window_end, 0))
            if count >= max_requests:
                return False, max(1, int(window_end - now))
            self._counts[key] = (window_end, count + 1)
        return True, 0

    def _prune(self, now: float):
        stale = [key for key, (end, _) in self._counts.items() if end <= now]
        for key in stale:
            del self._counts[key]

    def __len__(self) -> int:
        return len(self._counts)

    def reset(self):
        with self._lock:
            self._counts.clear()


class DatabaseRateLimiter:
    """Fixed-window limiter persisted in the `RateLimit` table."""

    def __init__(self, session: Session):
        self.session = session

    def check(self, key: str, max_requests: int, window_seconds: int, now: datetime | None = None) -> RateDecision:
        """Increment the counter for `key` in the current window.

        The request that takes the count past `max_requests` is denied. A
        database failure is logged and the request allowed, so an outage
        of the counter table never locks users out.
        """
        now = now or models.utcnow()
        start, end = fixed_window(now, window_seconds)
        try:
            row = self._get_or_create(key, start, end, now)
            # increment in SQL so concurrent workers never lose a hit
            self.session.exec(
                update(models.RateLimit)
                .where(models.RateLimit.id == row.id)
                .values(count=models.RateLimit.count + 1, updated_at=now)
            )
            self.session.commit()
            count = self.session.exec(select(models.RateLimit.count).where(models.RateLimit.id == row.id)).one()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("rate limit check failed for key=%s; allowing request", key)
            return RateDecision(True, 0, end, 0)
        allowed = count <= max_requests
        if not allowed:
            logger.warning("rate limit exceeded key=%s count=%s max=%s", key, count, max_requests)
        return RateDecision(
            allowed=allowed,
            remaining=max(0, max_requests - count),
            reset_at=end,
            retry_after=0 if allowed else _retry_after(now, end),
        )

    def check_policy(self, policy: Policy, *parts, now: datetime | None = None) -> RateDecision:
        return self.check(policy.key(*parts), policy.max_requests, policy.window_seconds, now=now)

    def _get_or_create(self, key: str, start: datetime, end: datetime, now: datetime) -> models.RateLimit:
        stmt = select(models.RateLimit).where(models.RateLimit.key == key, models.RateLimit.window_start == start)
        row = self.session.exec(stmt).first()
        if row:
            return row
        row = models.RateLimit(key=key, count=0, window_start=start, window_end=end, created_at=now, updated_at=now)
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError:
            # another worker created the window first
            self.session.rollback()
            return self.session.exec(stmt).one()
        self.session.refresh(row)
        return row

    def cleanup_expired(self, now: datetime | None = None) -> int:
        """Delete windows that ended before `now`; return the number removed."""
        now = now or models.utcnow()
        expired = self.session.exec(select(models.RateLimit).where(models.RateLimit.window_end < now)).all()
        for row in expired:
            self.session.delete(row)
        self.session.commit()
        removed = len(expired)
        logger.info("removed %s expired rate limit windows", removed)
        return removed
