"""One-time passcode login by email.

A code is six random digits. Only its SHA-256 hash is stored, with an
expiry and an attempt counter; one live code per address. A verified code
is exchanged for a signed access token.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import jwt
from sqlalchemy.orm import Session

from prioritizer.config import Settings
from prioritizer.errors import InvalidCodeError, RateLimitedError, ValidationError
from prioritizer.mailer import Mailer
from prioritizer.models import OtpCode
from prioritizer.utils import utcnow

log = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
CODE_DIGITS = 6


class RateLimiter(ABC):
    @abstractmethod
    def hit(self, key: str) -> None:
        """Count one event against ``key``, or raise RateLimitedError if none are left.

        The check and the count happen together, so concurrent callers
        cannot both take the last slot.
        """


class InMemoryRateLimiter(RateLimiter):
    """Sliding-window counter per key. Only valid for a single process."""

    def __init__(self, max_events: int, window_seconds: float = 3600.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> deque[float]:
        events = self._events[key]
        while events and now - events[0] >= self.window_seconds:
            events.popleft()
        return events

    def hit(self, key: str) -> None:
        with self._lock:
            now = self._clock()
            events = self._prune(key, now)
            if len(events) >= self.max_events:
                raise RateLimitedError(
                    f"Too many codes requested for {key}. Try again later."
                )
            events.append(now)


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


class OtpService:
    def __init__(self, settings: Settings, mailer: Mailer, limiter: RateLimiter,
                 clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.mailer = mailer
        self.limiter = limiter
        self._clock = clock

    def _check_domain(self, email: str) -> None:
        allowed = self.settings.allowed_domain_set
        domain = email.rsplit("@", 1)[-1].lower()
        if allowed and domain not in allowed:
            raise ValidationError(f"email domain {domain!r} is not allowed", field="email")

    def request_code(self, session: Session, email: str) -> dict[str, Any]:
        """Issue a fresh code for ``email`` and mail it, replacing any previous code."""
        email = email.strip().lower()
        self._check_domain(email)
        self.limiter.hit(email)

        code = generate_code()
        ttl = timedelta(minutes=self.settings.otp_ttl_minutes)
        row = session.get(OtpCode, email)
        if row is None:
            row = OtpCode(email=email)
            session.add(row)
        row.code_hash = hash_code(code)
        row.expires_at = self._clock() + ttl
        row.attempts = 0
        session.commit()

        try:
            self.mailer.send(
                email,
                "Your Prioritizer login code",
                f"Your login code is {code}. It expires in {self.settings.otp_ttl_minutes} minutes.",
            )
        except Exception:
            session.delete(row)
            session.commit()
            raise
        log.info("Issued login code for %s", email)
        return {"expires_in": int(ttl.total_seconds())}

    def verify_code(self, session: Session, email: str, code: str) -> dict[str, Any]:
        """Check ``code`` and exchange it for an access token. A code works once."""
        email = email.strip().lower()
        row = session.get(OtpCode, email)
        if row is None:
            log.warning("Login code check for %s with no code issued", email)
            raise InvalidCodeError()

        if row.expires_at <= self._clock():
            session.delete(row)
            session.commit()
            log.warning("Expired login code used for %s", email)
            raise InvalidCodeError()

        if not hmac.compare_digest(hash_code(code.strip()), row.code_hash):
            row.attempts = (row.attempts or 0) + 1
            if row.attempts >= self.settings.otp_max_attempts:
                session.delete(row)
                log.warning("Login code for %s discarded after %d failed attempts", email, row.attempts)
            else:
                log.warning("Wrong login code for %s (attempt %d)", email, row.attempts)
            session.commit()
            raise InvalidCodeError()

        session.delete(row)
        session.commit()
        log.info("Login code verified for %s", email)
        return self.create_access_token(email)

    def create_access_token(self, email: str) -> dict[str, Any]:
        now = self._clock()
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        token = jwt.encode(
            {"sub": email, "type": "access", "iat": now, "exp": now + ttl},
            self.settings.secret_key,
            algorithm=TOKEN_ALGORITHM,
        )
        return {"access_token": token, "token_type": "bearer", "expires_in": int(ttl.total_seconds())}

    def decode_access_token(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(token, self.settings.secret_key, algorithms=[TOKEN_ALGORITHM])
        except jwt.PyJWTError as exc:
            raise InvalidCodeError(f"Invalid access token: {exc}") from exc
