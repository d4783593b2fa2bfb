"""Delete OTP challenges whose expiry has already passed.

Expired rows are dead either way; the verifier removes them lazily when the
identity comes back. Run this from cron to keep the table small:

    python scripts/purge_expired_challenges.py
"""

import os
import sys

sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "backend"))

from app.db.session import SessionLocal  # noqa: E402
from app.services.challenge_store import SqlChallengeStore  # noqa: E402
from app.services.otp import utc_now  # noqa: E402


def main() -> int:
    db = SessionLocal()
    try:
        removed = SqlChallengeStore(db).purge_expired(utc_now())
    finally:
        db.close()
    print(f"Purged {removed} expired OTP challenge(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
