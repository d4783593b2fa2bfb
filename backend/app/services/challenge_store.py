"""Storage for outstanding OTP challenges.

Every store keeps at most one challenge per identity and exposes the same
operations to the OTP service: atomic replace, read, conditional attempt
increment, delete and an expiry purge. ``SqlChallengeStore`` is the production
implementation backed by the ``otp_challenges`` table; ``InMemoryChallengeStore``
serves tests and single-process development.
"""

from __future__ import annotations

from dataclasses import dataclass, replace as dataclass_replace
from datetime import datetime, timezone
import logging
from threading import Lock
from typing import NoReturn, Protocol

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import PersistenceError
from app.models.otp_challenge import OtpChallenge

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


@dataclass(frozen=True)
class ChallengeRecord:
    identity: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    purpose: str = "signin"

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ChallengeStore(Protocol):
    def replace(self, record: ChallengeRecord) -> None:
        """Drop any challenge for ``record.identity`` and store ``record`` in its place."""

    def get(self, identity: str) -> ChallengeRecord | None:
        ...

    def increment_attempts(self, identity: str, *, limit: int, code_hash: str | None = None) -> int | None:
        """Add one failed attempt while below ``limit``.

        With ``code_hash`` only the challenge carrying that hash is charged, so a
        challenge re-issued in the meantime keeps a clean counter. Returns the new
        count, or ``None`` when the challenge is gone, replaced or already spent.
        """

    def delete(self, identity: str, *, code_hash: str | None = None) -> bool:
        """Remove the challenge; ``True`` only for the call that removed it.

        With ``code_hash`` a challenge issued since the caller read it is left alone.
        """

    def purge_expired(self, now: datetime) -> int:
        ...


class InMemoryChallengeStore:
    def __init__(self) -> None:
        self._records: dict[str, ChallengeRecord] = {}
        self._lock = Lock()

    def replace(self, record: ChallengeRecord) -> None:
        with self._lock:
            self._records[record.identity] = record

    def get(self, identity: str) -> ChallengeRecord | None:
        with self._lock:
            return self._records.get(identity)

    def increment_attempts(self, identity: str, *, limit: int, code_hash: str | None = None) -> int | None:
        with self._lock:
            record = self._matching(identity, code_hash)
            if record is None or record.attempts >= limit:
                return None
            updated = dataclass_replace(record, attempts=record.attempts + 1)
            self._records[identity] = updated
            return updated.attempts

    def delete(self, identity: str, *, code_hash: str | None = None) -> bool:
        with self._lock:
            if self._matching(identity, code_hash) is None:
                return False
            del self._records[identity]
            return True

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, record in self._records.items() if record.is_expired(now)]
            for key in expired:
                del self._records[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _matching(self, identity: str, code_hash: str | None) -> ChallengeRecord | None:
        record = self._records.get(identity)
        if record is None or (code_hash is not None and record.code_hash != code_hash):
            return None
        return record


class SqlChallengeStore:
    """Challenge store on the ``otp_challenges`` table.

    Each operation runs in its own transaction on the request session. The
    attempt counter is bumped with a conditional ``UPDATE`` so concurrent wrong
    guesses cannot both observe the same count, and writes that follow a read
    can be pinned to the ``code_hash`` that was read.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def replace(self, record: ChallengeRecord) -> None:
        values = {
            "identity": record.identity,
            "code_hash": record.code_hash,
            "purpose": record.purpose,
            "expires_at": record.expires_at,
            "attempts": record.attempts,
        }
        try:
            dialect_insert = _UPSERT_INSERTS.get(self._db.get_bind().dialect.name)
            if dialect_insert is None:
                self._db.execute(delete(OtpChallenge).where(OtpChallenge.identity == record.identity))
                self._db.execute(insert(OtpChallenge).values(**values))
            else:
                statement = dialect_insert(OtpChallenge).values(**values)
                self._db.execute(
                    statement.on_conflict_do_update(
                        index_elements=[OtpChallenge.identity],
                        set_={
                            "code_hash": statement.excluded.code_hash,
                            "purpose": statement.excluded.purpose,
                            "expires_at": statement.excluded.expires_at,
                            "attempts": statement.excluded.attempts,
                            "created_at": func.now(),
                        },
                    )
                )
            self._db.commit()
        except SQLAlchemyError as exc:
            self._fail("replace", record.identity, exc)

    def get(self, identity: str) -> ChallengeRecord | None:
        statement = select(
            OtpChallenge.identity,
            OtpChallenge.code_hash,
            OtpChallenge.expires_at,
            OtpChallenge.attempts,
            OtpChallenge.purpose,
        ).where(OtpChallenge.identity == identity)
        try:
            row = self._db.execute(statement).one_or_none()
            self._db.commit()
        except SQLAlchemyError as exc:
            self._fail("read", identity, exc)
        if row is None:
            return None
        return ChallengeRecord(
            identity=row.identity,
            code_hash=row.code_hash,
            expires_at=as_utc(row.expires_at),
            attempts=row.attempts,
            purpose=row.purpose,
        )

    def increment_attempts(self, identity: str, *, limit: int, code_hash: str | None = None) -> int | None:
        criteria = _challenge_criteria(identity, code_hash)
        try:
            result = self._db.execute(
                update(OtpChallenge)
                .where(*criteria, OtpChallenge.attempts < limit)
                .values(attempts=OtpChallenge.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self._db.commit()
                return None
            attempts = self._db.execute(select(OtpChallenge.attempts).where(*criteria)).scalar_one_or_none()
            self._db.commit()
            return attempts
        except SQLAlchemyError as exc:
            self._fail("increment attempts for", identity, exc)

    def delete(self, identity: str, *, code_hash: str | None = None) -> bool:
        try:
            result = self._db.execute(
                delete(OtpChallenge)
                .where(*_challenge_criteria(identity, code_hash))
                .execution_options(synchronize_session=False)
            )
            self._db.commit()
        except SQLAlchemyError as exc:
            self._fail("delete", identity, exc)
        return result.rowcount > 0

    def purge_expired(self, now: datetime) -> int:
        try:
            result = self._db.execute(
                delete(OtpChallenge)
                .where(OtpChallenge.expires_at < now)
                .execution_options(synchronize_session=False)
            )
            self._db.commit()
        except SQLAlchemyError as exc:
            self._fail("purge expired", "*", exc)
        return result.rowcount

    def _fail(self, action: str, identity: str, exc: SQLAlchemyError) -> NoReturn:
        self._db.rollback()
        logger.exception("Failed to %s OTP challenge for %s", action, identity)
        raise PersistenceError() from exc


def _challenge_criteria(identity: str, code_hash: str | None) -> list:
    criteria = [OtpChallenge.identity == identity]
    if code_hash is not None:
        criteria.append(OtpChallenge.code_hash == code_hash)
    return criteria
