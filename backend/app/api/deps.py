from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.session import SessionLocal
from app.services.challenge_store import SqlChallengeStore
from app.services.otp import OtpService


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_otp_service(db: Session = Depends(get_db)) -> OtpService:
    return OtpService.from_settings(SqlChallengeStore(db), get_settings())
