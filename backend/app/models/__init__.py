from app.models.otp_challenge import OtpChallenge  # noqa: F401
