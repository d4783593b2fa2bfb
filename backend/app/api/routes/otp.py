import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_otp_service
from app.core.config import get_settings
from app.core.exceptions import AppError, DeliveryFailedError, RateLimitedError
from app.schemas.otp import SendOtpRequest, SendOtpResponse, VerifyOtpRequest, VerifyOtpResponse
from app.services.email import EmailDeliveryError
from app.services.otp import OtpService, normalize_identity
from app.services.otp_delivery import deliver_otp, delivery_error_detail
from app.services.rate_limit import enforce_rate_limit

settings = get_settings()
router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/send-otp", response_model=SendOtpResponse, response_model_exclude_none=True)
def send_otp(
    payload: SendOtpRequest,
    request: Request,
    service: OtpService = Depends(get_otp_service),
) -> SendOtpResponse:
    enforce_rate_limit(
        request=request,
        scope="auth.send_otp",
        limit=settings.otp_rate_limit_send_max_requests,
        window_seconds=settings.otp_rate_limit_window_seconds,
        identity=payload.identity,
    )
    code = service.issue(payload.identity, payload.purpose)
    identity = normalize_identity(payload.identity)

    message = "OTP sent to your email"
    try:
        deliver_otp(identity=identity, code=code, purpose=payload.purpose)
    except EmailDeliveryError as exc:
        logger.exception("Failed to send OTP email for %s", identity)
        if not (settings.otp_log_to_terminal and settings.otp_allow_terminal_fallback):
            service.revoke(identity)
            raise DeliveryFailedError(delivery_error_detail(str(exc))) from exc
        message = "OTP generated. Email delivery failed, check backend terminal log for OTP."

    return SendOtpResponse(
        success=True,
        message=message,
        expires_in_seconds=settings.otp_expire_seconds,
        debug_otp=code if settings.expose_otp else None,
    )


@router.post("/verify-otp", response_model=VerifyOtpResponse, response_model_exclude_none=True)
def verify_otp(
    payload: VerifyOtpRequest,
    request: Request,
    service: OtpService = Depends(get_otp_service),
):
    try:
        enforce_rate_limit(
            request=request,
            scope="auth.verify_otp",
            limit=settings.otp_rate_limit_verify_max_requests,
            window_seconds=settings.otp_rate_limit_window_seconds,
            identity=payload.identity,
        )
        service.verify(payload.identity, payload.code)
    except AppError as exc:
        body = VerifyOtpResponse(
            success=False,
            verified=False,
            message=exc.message,
            error=exc.code,
            attempts_remaining=exc.details.get("attempts_remaining"),
        )
        headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitedError) else None
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(exclude_none=True),
            headers=headers,
        )

    return VerifyOtpResponse(success=True, verified=True, message="OTP verified successfully")
