from __future__ import annotations

import hmac
import uuid
from typing import Optional


class SecretIssuer:
    """Single-use opaque secrets for invitations, password resets and refresh tokens.

    ``issue`` returns a version-4 UUID drawn from the OS random source.
    ``matches`` never touches storage; clearing the active flag after a
    successful redemption is the caller's job.
    """

    def issue(self) -> str:
        return str(uuid.uuid4())

    def matches(
        self, stored_secret: Optional[str], stored_active: bool, candidate: Optional[str]
    ) -> bool:
        if not stored_active or not stored_secret or not candidate:
            return False
        return hmac.compare_digest(stored_secret.encode(), candidate.encode())
