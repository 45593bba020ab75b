"""Shopper session identity checks.

A session id only proves ownership of a reservation. It is generated by the
browser as ``session_<epoch millis>_<random base36>`` and is not an
authentication credential.
"""
from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Optional

from .config import SESSION_MAX_AGE_MINUTES
from .rate_limiter import LIMITS, Clock, RateLimitResult, check_rate_limit, utcnow

logger = logging.getLogger(__name__)

SESSION_PATTERN = re.compile(r"^session_(\d{1,15})_[a-z0-9]+$")


@dataclass
class RequestMeta:
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    fingerprint: Optional[str] = None

    @classmethod
    def from_headers(cls, headers) -> "RequestMeta":
        forwarded = headers.get("x-forwarded-for") or ""
        ip = (
            forwarded.split(",")[0].strip()
            or headers.get("x-real-ip")
            or headers.get("x-client-ip")
            or "unknown"
        )
        return cls(
            ip_address=ip,
            user_agent=headers.get("user-agent") or "unknown",
            fingerprint=headers.get("x-client-fingerprint"),
        )


@dataclass
class SessionInfo:
    session_id: str
    is_valid: bool
    ip_address: str
    user_agent: str
    fingerprint: Optional[str] = None
    last_activity: Optional[dt.datetime] = None
    reason: Optional[str] = None


class SessionValidator:
    # per-session limit and window come from the "rollback" operation class
    MAX_REQUESTS_PER_SESSION, RATE_LIMIT_WINDOW_MS = LIMITS["rollback"]
    MAX_REQUESTS_PER_IP = 50
    CLEANUP_EVERY = 10

    def __init__(self, counter_store, clock: Clock = utcnow, max_age_minutes: int = SESSION_MAX_AGE_MINUTES):
        self.counter_store = counter_store
        self.clock = clock
        self.max_age = dt.timedelta(minutes=max_age_minutes)
        self._checks = 0

    def validate_session(self, session_id, meta: RequestMeta) -> SessionInfo:
        def _result(is_valid: bool, reason: Optional[str] = None, last_activity=None) -> SessionInfo:
            return SessionInfo(
                session_id=session_id if isinstance(session_id, str) and session_id else "unknown",
                is_valid=is_valid,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
                fingerprint=meta.fingerprint,
                last_activity=last_activity,
                reason=reason,
            )

        if not session_id or not isinstance(session_id, str):
            return _result(False, "missing_session_id")

        match = SESSION_PATTERN.match(session_id)
        if not match:
            return _result(False, "malformed_session_id")

        try:
            created = dt.datetime.fromtimestamp(int(match.group(1)) / 1000, tz=dt.timezone.utc)
        except (OverflowError, ValueError, OSError):
            # timestamp beyond what datetime can represent
            return _result(False, "malformed_session_id")
        if self.clock() - created > self.max_age:
            return _result(False, "session_expired", created)

        return _result(True, last_activity=created)

    def check_rate_limit(self, session_id: str, ip_address: str) -> RateLimitResult:
        """Tighter per-session (and per-IP) limit for sensitive operations like rollback."""
        self._checks += 1
        if self._checks % self.CLEANUP_EVERY == 0:
            self.cleanup_expired_rate_limits()

        by_session = check_rate_limit(
            self.counter_store,
            f"session:{session_id}",
            max_attempts=self.MAX_REQUESTS_PER_SESSION,
            window_ms=self.RATE_LIMIT_WINDOW_MS,
        )
        by_ip = check_rate_limit(
            self.counter_store,
            f"session-ip:{ip_address}",
            max_attempts=self.MAX_REQUESTS_PER_IP,
            window_ms=self.RATE_LIMIT_WINDOW_MS,
        )
        blocked = [r for r in (by_session, by_ip) if not r.allowed]
        return RateLimitResult(
            allowed=not blocked,
            remaining=min(by_session.remaining, by_ip.remaining),
            reset_time=max(r.reset_time for r in blocked) if blocked else by_session.reset_time,
            limit=min(self.MAX_REQUESTS_PER_SESSION, self.MAX_REQUESTS_PER_IP),
        )

    def log_validation(self, info: SessionInfo, rate: Optional[RateLimitResult], action: str) -> None:
        entry = {
            "action": action,
            "session_id": info.session_id,
            "is_valid": info.is_valid,
            "reason": info.reason,
            "ip_address": info.ip_address,
            "user_agent": info.user_agent,
            "fingerprint": info.fingerprint,
        }
        if rate is not None:
            entry.update(
                rate_limit_allowed=rate.allowed,
                remaining=rate.remaining,
                reset_time=rate.reset_time.isoformat(),
            )
        if info.is_valid and (rate is None or rate.allowed):
            logger.info("Session validation succeeded: %s", entry)
        else:
            logger.warning("Session validation failed: %s", entry)

    def cleanup_expired_rate_limits(self) -> int:
        return self.counter_store.sweep()
