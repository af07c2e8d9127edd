from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Profile:
    name: str
    surname: str
    patronymic: Optional[str] = None


@dataclass
class Account:
    id: int
    public_id: str
    identifier: str
    partition: str
    name: str
    surname: str
    patronymic: Optional[str] = None
    role: str = "default"
    credential_hash: Optional[str] = None
    one_time_secret: Optional[str] = None
    secret_active: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshSession:
    """Server-side refresh session; ``expires_at``/``created_at`` are epoch ms."""

    id: int
    owner: str
    token: str
    fingerprint: str
    expires_at: int
    created_at: int
    user_agent: Optional[str] = None
