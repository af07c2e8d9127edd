import structlog

from passgate.logging import (
    REDACTED,
    _redact_event,
    bind_request_id,
    redact_contact,
    sanitize_driver_error,
)


def test_secret_fields_are_fully_masked():
    event = {
        "event": "refresh_rotated",
        "refresh_token": "9f0c1e2d-token",
        "secret_code": "6f1c1f7e-6a53",
        "credential_hash": "$argon2id$v=19$...",
        "fingerprint": "device-1",
        "owner": "abc-123",
        "secret_active": True,
    }

    redacted = _redact_event(None, "info", dict(event))

    for key in ("refresh_token", "secret_code", "credential_hash", "fingerprint"):
        assert redacted[key] == REDACTED
    assert redacted["owner"] == "abc-123"
    assert redacted["secret_active"] is True


def test_contacts_are_partially_masked_once():
    redacted = _redact_event(None, "info", {"identifier": "ada@example.com", "to": "ad***@example.com"})

    assert redacted["identifier"] == "ad***@example.com"
    assert redacted["to"] == "ad***@example.com"
    assert redact_contact("not-an-email") == REDACTED


def test_driver_error_hides_row_values_and_statement():
    message = (
        'duplicate key value violates unique constraint "users_email_partition_key"\n'
        "DETAIL:  Key (email, partition)=(ada@example.com, global) already exists.\n"
        "LINE 1: INSERT INTO users (public_id, email) VALUES ($1, $2)"
    )

    cleaned = sanitize_driver_error(message)

    assert "ada@example.com" not in cleaned
    assert "INSERT INTO" not in cleaned
    assert "Key (email, partition)=([redacted])" in cleaned
    assert "users_email_partition_key" in cleaned


def test_driver_error_hides_conninfo_password_and_truncates():
    cleaned = sanitize_driver_error("connection failed: host=db user=app password=hunter2")
    assert "hunter2" not in cleaned

    assert sanitize_driver_error("") == ""
    assert len(sanitize_driver_error("x" * 2000)) == 300


def test_request_id_bound_to_log_context():
    request_id = bind_request_id()
    assert structlog.contextvars.get_contextvars() == {"request_id": request_id}

    assert bind_request_id("req-1") == "req-1"
    assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}
    structlog.contextvars.clear_contextvars()
