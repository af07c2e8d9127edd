"""Error kinds, their HTTP mapping, and the error envelope."""

import json

import pytest
from pydantic import ValidationError

from passgate.api.error_handling import (
    ERROR_RESPONSES,
    OPAQUE_MESSAGE,
    _error_code_for_status,
    response_for,
)
from passgate.api.schemas import Envelope, ErrorBody
from passgate.service.errors import (
    ERRORS_BY_KIND,
    ErrorKind,
    ForbiddenError,
    InternalError,
    StorageFailure,
)

EXPECTED = {
    ErrorKind.BAD_INPUT: (400, "BAD_REQUEST"),
    ErrorKind.NOT_FOUND: (404, "NOT_FOUND"),
    ErrorKind.INVALID_CREDENTIAL: (401, "INVALID_CREDENTIAL"),
    ErrorKind.EXPIRED: (403, "TOKEN_EXPIRED"),
    ErrorKind.DUPLICATE_SESSION: (409, "DUPLICATE_SESSION"),
    ErrorKind.SESSION_LIMIT_EXCEEDED: (400, "NEED_PASSWORD_RESET"),
    ErrorKind.ALREADY_EXISTS: (409, "ALREADY_EXISTS"),
    ErrorKind.INVALID_SECRET: (401, "INVALID_SECRET"),
    ErrorKind.NO_INVITATION: (400, "NO_INVITATION_FOR_USER"),
    ErrorKind.FORBIDDEN: (403, "NOT_ENOUGH_RIGHTS"),
    ErrorKind.STORAGE_ERROR: (500, "SERVER_ERROR"),
    ErrorKind.INTERNAL: (500, "SERVER_ERROR"),
}


def test_every_kind_has_one_error_class():
    assert set(ERRORS_BY_KIND) == set(ErrorKind)


def test_every_kind_is_mapped():
    assert ERROR_RESPONSES == EXPECTED


def test_only_server_side_kinds_are_opaque():
    opaque = {kind for kind, cls in ERRORS_BY_KIND.items() if cls.opaque}
    assert opaque == {ErrorKind.STORAGE_ERROR, ErrorKind.INTERNAL}


@pytest.mark.parametrize("error_cls", [StorageFailure, InternalError])
def test_opaque_errors_hide_message(error_cls):
    response = response_for(error_cls("pool exhausted on host db-3", detail={"flow": "login"}))
    body = json.loads(response.body)

    assert response.status_code == 500
    assert body["error"] == {"code": "SERVER_ERROR", "message": OPAQUE_MESSAGE, "details": None}


def test_client_errors_keep_message_and_detail():
    response = response_for(ForbiddenError("not enough rights", detail={"reason": "role"}))
    body = json.loads(response.body)

    assert response.status_code == 403
    assert body["status"] == "error"
    assert body["error"]["code"] == "NOT_ENOUGH_RIGHTS"
    assert body["error"]["details"] == {"reason": "role"}


def test_status_fallback_codes():
    assert _error_code_for_status(404) == "NOT_FOUND"
    assert _error_code_for_status(405) == "BAD_REQUEST"
    assert _error_code_for_status(503) == "SERVER_ERROR"


class TestEnvelope:
    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_envelope_request_id_auto_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_envelope_rejects_unknown_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
