from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from app.models.otp_challenge import OtpChallenge
from app.services.email import EmailDeliveryError


def send_otp(client, email, purpose="signin"):
    return client.post("/api/auth/send-otp", json={"email": email, "type": purpose})


def verify_otp(client, email, otp):
    return client.post("/api/auth/verify-otp", json={"email": email, "otp": otp})


def test_send_and_verify_otp_flow(client, sent_codes):
    send_response = send_otp(client, "a@b.com", "signup")
    assert send_response.status_code == 200
    data = send_response.json()
    assert data["success"] is True
    assert data["message"] == "OTP sent to your email"
    assert data["expires_in_seconds"] == 600
    assert "_debug_otp" not in data

    code = sent_codes["a@b.com"]
    assert len(code) == 6 and code.isdigit()

    verify_response = verify_otp(client, "A@B.com", code)
    assert verify_response.status_code == 200
    assert verify_response.json() == {"success": True, "verified": True, "message": "OTP verified successfully"}

    reuse_response = verify_otp(client, "a@b.com", code)
    assert reuse_response.status_code == 404
    reuse = reuse_response.json()
    assert reuse["success"] is False
    assert reuse["verified"] is False
    assert reuse["error"] == "not_found"


def test_identity_and_code_field_names_are_accepted(client, sent_codes):
    response = client.post("/api/auth/send-otp", json={"identity": "Donor@Example.com", "purpose": "signin"})
    assert response.status_code == 200

    response = client.post(
        "/api/auth/verify-otp",
        json={"identity": "donor@example.com", "code": sent_codes["donor@example.com"]},
    )
    assert response.status_code == 200
    assert response.json()["verified"] is True


def test_three_wrong_codes_then_correct_code_is_rejected(client, sent_codes):
    assert send_otp(client, "x@y.com").status_code == 200
    code = sent_codes["x@y.com"]

    for remaining in (2, 1, 0):
        response = verify_otp(client, "x@y.com", "000000")
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "mismatch"
        assert body["attempts_remaining"] == remaining
        assert body["verified"] is False

    final = verify_otp(client, "x@y.com", code)
    assert final.status_code == 429
    assert final.json()["error"] == "attempts_exceeded"

    assert verify_otp(client, "x@y.com", code).status_code == 404


def test_reissue_invalidates_previous_code(client, sent_codes, db_session):
    send_otp(client, "again@example.com")
    first = sent_codes["again@example.com"]
    send_otp(client, "again@example.com")
    second = sent_codes["again@example.com"]

    assert db_session.query(OtpChallenge).filter(OtpChallenge.identity == "again@example.com").count() == 1
    if first != second:
        assert verify_otp(client, "again@example.com", first).status_code == 400
    assert verify_otp(client, "again@example.com", second).status_code == 200


def test_expired_code_is_rejected(client, sent_codes, db_session):
    send_otp(client, "late@example.com")
    db_session.execute(
        update(OtpChallenge)
        .where(OtpChallenge.identity == "late@example.com")
        .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    )
    db_session.commit()

    response = verify_otp(client, "late@example.com", sent_codes["late@example.com"])
    assert response.status_code == 410
    assert response.json()["error"] == "expired"
    assert db_session.query(OtpChallenge).count() == 0


def test_missing_fields_are_validation_errors(client, sent_codes):
    send_response = client.post("/api/auth/send-otp", json={})
    assert send_response.status_code == 400
    assert send_response.json() == {"success": False, "message": "Email is required", "error": "validation_error"}

    verify_response = client.post("/api/auth/verify-otp", json={"email": "a@b.com"})
    assert verify_response.status_code == 400
    assert verify_response.json()["error"] == "validation_error"
    assert verify_response.json()["verified"] is False


def test_unknown_purpose_is_rejected(client, sent_codes):
    response = send_otp(client, "a@b.com", purpose="refund")
    assert response.status_code == 400
    assert sent_codes == {}


def test_debug_otp_is_echoed_only_when_enabled(client, sent_codes, monkeypatch):
    import app.api.routes.otp as otp_routes

    monkeypatch.setattr(otp_routes.settings, "expose_otp", True)
    response = send_otp(client, "debug@example.com")

    assert response.status_code == 200
    assert response.json()["_debug_otp"] == sent_codes["debug@example.com"]


def test_delivery_failure_revokes_challenge(client, monkeypatch, db_session):
    import app.api.routes.otp as otp_routes

    def failing_deliver_otp(*, identity: str, code: str, purpose: str) -> None:
        raise EmailDeliveryError("SMTP is not configured")

    monkeypatch.setattr("app.api.routes.otp.deliver_otp", failing_deliver_otp)
    monkeypatch.setattr(otp_routes.settings, "otp_log_to_terminal", False)
    monkeypatch.setattr(otp_routes.settings, "otp_allow_terminal_fallback", False)

    response = send_otp(client, "nomail@example.com")

    assert response.status_code == 503
    body = response.json()
    assert body["error"] == "delivery_failed"
    assert body["message"] == "Email service not configured. Set SMTP settings in backend/.env and restart backend."
    assert db_session.query(OtpChallenge).count() == 0


def test_delivery_failure_can_fall_back_to_terminal_log(client, monkeypatch, db_session):
    import app.api.routes.otp as otp_routes

    def failing_deliver_otp(*, identity: str, code: str, purpose: str) -> None:
        raise EmailDeliveryError("SMTP sender rate limited")

    monkeypatch.setattr("app.api.routes.otp.deliver_otp", failing_deliver_otp)
    monkeypatch.setattr(otp_routes.settings, "otp_log_to_terminal", True)
    monkeypatch.setattr(otp_routes.settings, "otp_allow_terminal_fallback", True)

    response = send_otp(client, "fallback@example.com")

    assert response.status_code == 200
    assert "terminal log" in response.json()["message"].lower()
    assert db_session.query(OtpChallenge).count() == 1


def test_send_otp_is_rate_limited_per_identity(client, sent_codes, monkeypatch):
    import app.api.routes.otp as otp_routes

    monkeypatch.setattr(otp_routes.settings, "otp_rate_limit_send_max_requests", 2)

    assert send_otp(client, "busy@example.com").status_code == 200
    assert send_otp(client, "busy@example.com").status_code == 200
    limited = send_otp(client, "BUSY@example.com")

    assert limited.status_code == 429
    assert limited.json()["error"] == "rate_limited"
    assert int(limited.headers["Retry-After"]) >= 1

    assert send_otp(client, "other@example.com").status_code == 200


def test_responses_carry_security_headers(client, sent_codes):
    response = send_otp(client, "headers@example.com")

    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_oversized_request_is_rejected(client):
    response = client.post(
        "/api/auth/send-otp",
        content=b"{" + b" " * 70_000 + b"}",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 413
    assert response.json()["error"] == "payload_too_large"


def test_rate_limited_verify_keeps_verify_response_shape(client, sent_codes, monkeypatch):
    import app.api.routes.otp as otp_routes

    monkeypatch.setattr(otp_routes.settings, "otp_rate_limit_verify_max_requests", 1)
    assert send_otp(client, "throttle@example.com").status_code == 200

    assert verify_otp(client, "throttle@example.com", "000000").status_code == 400
    limited = verify_otp(client, "throttle@example.com", sent_codes["throttle@example.com"])

    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) >= 1
    body = limited.json()
    assert body["success"] is False
    assert body["verified"] is False
    assert body["error"] == "rate_limited"
    assert body["message"]


def test_numeric_otp_in_json_is_accepted(client, sent_codes):
    assert send_otp(client, "number@example.com").status_code == 200

    response = verify_otp(client, "number@example.com", int(sent_codes["number@example.com"]))

    assert response.status_code == 200
    assert response.json() == {"success": True, "verified": True, "message": "OTP verified successfully"}
