from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets

from app.core.config import Settings
from app.core.exceptions import (
    AttemptsExceededError,
    ExpiredError,
    MismatchError,
    NotFoundError,
    ValidationError,
)
from app.services.challenge_store import ChallengeRecord, ChallengeStore

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
OTP_PURPOSES = frozenset({"signup", "signin"})
_CODE_FLOOR = 10 ** (OTP_LENGTH - 1)
_CODE_SPAN = 10**OTP_LENGTH - _CODE_FLOOR


def generate_code() -> str:
    return str(_CODE_FLOOR + secrets.randbelow(_CODE_SPAN))


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def normalize_identity(identity: str | None) -> str:
    normalized = (identity or "").strip().lower()
    if not normalized:
        raise ValidationError("Email is required")
    return normalized


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OtpVerification:
    identity: str
    verified: bool = True


class OtpService:
    """Issues and verifies one-time codes against a challenge store.

    ``issue`` hands the plain code back to the caller for out-of-band delivery;
    only its SHA-256 digest is persisted. ``verify`` checks existence, then the
    attempt budget, then expiry, then the code itself.
    """

    def __init__(
        self,
        store: ChallengeStore,
        *,
        expire_minutes: int = 10,
        max_attempts: int = 3,
        log_codes: bool = False,
        clock: Callable[[], datetime] = utc_now,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self._store = store
        self._ttl = timedelta(minutes=expire_minutes)
        self._max_attempts = max_attempts
        self._log_codes = log_codes
        self._clock = clock
        self._code_factory = code_factory

    @classmethod
    def from_settings(cls, store: ChallengeStore, settings: Settings, **kwargs) -> "OtpService":
        return cls(
            store,
            expire_minutes=settings.otp_expire_minutes,
            max_attempts=settings.otp_max_attempts,
            log_codes=settings.otp_log_to_terminal,
            **kwargs,
        )

    def issue(self, identity: str | None, purpose: str = "signin") -> str:
        normalized = normalize_identity(identity)
        if purpose not in OTP_PURPOSES:
            raise ValidationError(f"Unsupported OTP purpose '{purpose}'")

        code = self._code_factory()
        expires_at = self._clock() + self._ttl
        self._store.replace(
            ChallengeRecord(
                identity=normalized,
                code_hash=hash_code(code),
                expires_at=expires_at,
                attempts=0,
                purpose=purpose,
            )
        )
        logger.info("Issued %s OTP for %s, expires at %s", purpose, normalized, expires_at.isoformat())
        if self._log_codes:
            logger.warning("OTP | email=%s | purpose=%s | otp=%s", normalized, purpose, code)
        return code

    def revoke(self, identity: str | None) -> bool:
        """Withdraw the live challenge for ``identity``, e.g. when delivery failed."""
        return self._store.delete(normalize_identity(identity))

    def verify(self, identity: str | None, code: str | None) -> OtpVerification:
        normalized = (identity or "").strip().lower()
        submitted = (code or "").strip()
        if not normalized or not submitted:
            raise ValidationError("Email and OTP are required")

        challenge = self._store.get(normalized)
        if challenge is None:
            raise NotFoundError()
        # Later writes are pinned to this hash so a challenge issued meanwhile is untouched.
        issued_hash = challenge.code_hash

        if challenge.attempts >= self._max_attempts:
            self._store.delete(normalized, code_hash=issued_hash)
            logger.info("OTP attempts exhausted for %s", normalized)
            raise AttemptsExceededError()

        if challenge.is_expired(self._clock()):
            self._store.delete(normalized, code_hash=issued_hash)
            logger.info("OTP expired for %s", normalized)
            raise ExpiredError()

        if not secrets.compare_digest(hash_code(submitted), issued_hash):
            attempts = self._store.increment_attempts(normalized, limit=self._max_attempts, code_hash=issued_hash)
            if attempts is None:
                # Either a concurrent guess spent the last attempt or the challenge was replaced.
                if self._store.delete(normalized, code_hash=issued_hash):
                    raise AttemptsExceededError()
                raise NotFoundError()
            logger.info("OTP mismatch for %s (%s/%s)", normalized, attempts, self._max_attempts)
            raise MismatchError(attempts, self._max_attempts)

        if not self._store.delete(normalized, code_hash=issued_hash):
            raise NotFoundError()

        logger.info("OTP verified for %s", normalized)
        return OtpVerification(identity=normalized)
