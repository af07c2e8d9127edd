from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Optional

from passgate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CredentialPayload:
    owner: str
    role: str
    expiry: int
    issued_at: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "role": self.role,
            "expiry": self.expiry,
            "issued_at": self.issued_at,
        }


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    payload: Optional[CredentialPayload] = None
    reason: Optional[str] = None


SIGNATURE_INVALID = "signature_invalid"


class CredentialSigner:
    """HS256-signed access credentials.

    Signs exactly what it is given. ``verify`` checks the signature and the
    payload shape only; deciding whether ``expiry`` has passed belongs to the
    caller, which keeps "bad signature" and "stale" distinguishable.
    """

    def __init__(self, key: str) -> None:
        if not key:
            raise ValueError("signing key must not be empty")
        self._key = key.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def mint(self, owner: str, role: str, expiry: int, issued_at: int) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        payload = CredentialPayload(
            owner=owner, role=role, expiry=int(expiry), issued_at=int(issued_at)
        )
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload.as_dict(), separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> VerifyResult:
        invalid = VerifyResult(ok=False, reason=SIGNATURE_INVALID)
        if not isinstance(token, str):
            return invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return invalid

        # Reject anything but HS256 to block algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("credential_header_decode_failed")
            return invalid
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "credential_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return invalid

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return invalid

        try:
            raw = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("credential_payload_decode_failed", error=str(exc))
            return invalid
        payload = self._payload_from_claims(raw)
        if payload is None:
            return invalid
        return VerifyResult(ok=True, payload=payload)

    @staticmethod
    def _payload_from_claims(raw: Any) -> Optional[CredentialPayload]:
        if not isinstance(raw, dict):
            return None
        owner = raw.get("owner")
        role = raw.get("role")
        expiry = raw.get("expiry")
        issued_at = raw.get("issued_at")
        if not isinstance(owner, str) or not owner:
            return None
        if not isinstance(role, str):
            return None
        # bool is an int subclass; it is never a valid timestamp
        for value in (expiry, issued_at):
            if not isinstance(value, int) or isinstance(value, bool):
                return None
        return CredentialPayload(
            owner=owner, role=role, expiry=expiry, issued_at=issued_at
        )
