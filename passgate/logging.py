from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

# Values that authenticate someone; never rendered, not even partially
_SECRET_KEYS = frozenset(
    {
        "password",
        "new_password",
        "access_token",
        "refresh_token",
        "new_token",
        "secret",
        "secret_code",
        "credential_hash",
        "fingerprint",
        "signing_key",
    }
)
_CONTACT_KEYS = frozenset({"identifier", "email", "to", "destination"})

REDACTED = "[redacted]"


def redact_contact(contact: str) -> str:
    """``ada@example.com`` -> ``ad***@example.com``."""
    if "@" not in contact:
        return REDACTED
    local, domain = contact.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _redact_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if key in _SECRET_KEYS:
            event_dict[key] = REDACTED
        elif key in _CONTACT_KEYS and "***" not in value:
            event_dict[key] = redact_contact(value)
    return event_dict


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request, keyed by ``request_id``."""
    request_id = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_event,
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# psycopg messages echo row values in DETAIL lines, statement text in LINE
# lines and, for connection failures, parts of the conninfo string.
_PG_KEY_VALUES = re.compile(r"Key \(([^)]*)\)=\([^)]*\)")
_PG_STATEMENT_LINE = re.compile(r"^(LINE \d+:|QUERY:|CONTEXT:).*$", re.MULTILINE)
_CONNINFO_PASSWORD = re.compile(r"(password\s*=\s*)\S+", re.IGNORECASE)


def sanitize_driver_error(message: str, *, limit: int = 300) -> str:
    """Strip row values, statement text and conninfo passwords from a psycopg error."""
    if not message:
        return ""
    cleaned = _PG_KEY_VALUES.sub(rf"Key (\1)=({REDACTED})", message)
    cleaned = _PG_STATEMENT_LINE.sub(REDACTED, cleaned)
    cleaned = _CONNINFO_PASSWORD.sub(rf"\1{REDACTED}", cleaned)
    cleaned = " ".join(cleaned.split())
    if len(cleaned) > limit:
        cleaned = cleaned[: limit - 3] + "..."
    return cleaned
