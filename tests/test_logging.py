from warden.logging import _redact, sanitize_error_message


def test_secret_fields_fully_redacted():
    event = _redact(
        None,
        "info",
        {
            "event": "login",
            "password": "hunter22",
            "access_token": "ya29.secret",
            "code_verifier": "v" * 64,
            "error_code": "invalid_credentials",
            "status_code": 401,
        },
    )
    assert event["password"] == "[redacted]"
    assert event["access_token"] == "[redacted]"
    assert event["code_verifier"] == "[redacted]"
    assert event["error_code"] == "invalid_credentials"
    assert event["status_code"] == 401


def test_email_keeps_domain_only():
    event = _redact(None, "info", {"email": "scout@example.com", "contact_email": "nope"})
    assert event["email"] == "s***@example.com"
    assert event["contact_email"] == "[redacted]"


def test_sanitize_strips_internal_detail():
    message = sanitize_error_message(
        "connect to postgresql://warden:pw@db:5432/warden failed with Bearer eyJhbGciOi.eyJzdWIi.sig"
    )
    assert "postgresql://" not in message
    assert "eyJ" not in message
    assert "pw@db" not in message


def test_sanitize_handles_empty_and_long_input():
    assert sanitize_error_message("") == "an error occurred"
    assert len(sanitize_error_message("x" * 1000)) == 300
    assert sanitize_error_message("Not Found") == "Not Found"
