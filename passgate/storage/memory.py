from __future__ import annotations

import copy
import hmac
import itertools
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from passgate.storage.errors import ConstraintViolation
from passgate.storage.models import Account, Profile, RefreshSession


class MemoryStore:
    """In-memory account and refresh-session store for tests and local runs.

    Enforces the same uniqueness rules as the Postgres schema:
    ``(identifier, partition)`` for accounts, ``token`` and
    ``(owner, fingerprint)`` for refresh sessions. Returned objects are copies,
    so callers never mutate stored rows.
    """

    def __init__(self) -> None:
        self.accounts: Dict[int, Account] = {}
        self.sessions: Dict[int, RefreshSession] = {}
        self._account_ids = itertools.count(1)
        self._session_ids = itertools.count(1)
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # accounts
    def _find_account(self, identifier: str, partition: str) -> Optional[Account]:
        return next(
            (
                a
                for a in self.accounts.values()
                if a.identifier == identifier and a.partition == partition
            ),
            None,
        )

    def _find_by_public_id(self, public_id: str) -> Optional[Account]:
        return next(
            (a for a in self.accounts.values() if a.public_id == public_id), None
        )

    def get_account(self, identifier: str, partition: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_account(identifier, partition)
            return copy.copy(account) if account else None

    def get_account_by_public_id(self, public_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_public_id(public_id)
            return copy.copy(account) if account else None

    def _insert_account(self, account: Account) -> Account:
        if self._find_account(account.identifier, account.partition):
            raise ConstraintViolation(
                "account already exists",
                {"field": "identifier", "partition": account.partition},
            )
        self.accounts[account.id] = account
        return copy.copy(account)

    def create_active_account(
        self,
        profile: Profile,
        identifier: str,
        partition: str,
        credential_hash: str,
        *,
        role: str = "default",
    ) -> Account:
        with self._data_lock:
            account = Account(
                id=next(self._account_ids),
                public_id=str(uuid.uuid4()),
                identifier=identifier,
                partition=partition,
                name=profile.name,
                surname=profile.surname,
                patronymic=profile.patronymic,
                role=role,
                credential_hash=credential_hash,
            )
            return self._insert_account(account)

    def create_invited_account(
        self,
        profile: Profile,
        identifier: str,
        partition: str,
        role: str,
        secret: str,
    ) -> Account:
        with self._data_lock:
            account = Account(
                id=next(self._account_ids),
                public_id=str(uuid.uuid4()),
                identifier=identifier,
                partition=partition,
                name=profile.name,
                surname=profile.surname,
                patronymic=profile.patronymic,
                role=role,
                credential_hash=None,
                one_time_secret=secret,
                secret_active=True,
            )
            return self._insert_account(account)

    def activate_invited_account(self, account_id: int, credential_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.credential_hash is not None:
                return False
            account.credential_hash = credential_hash
            account.secret_active = False
            account.updated_at = self._now()
            return True

    def set_one_time_secret(self, public_id: str, secret: str) -> bool:
        with self._data_lock:
            account = self._find_by_public_id(public_id)
            if not account:
                return False
            account.one_time_secret = secret
            account.secret_active = True
            account.updated_at = self._now()
            return True

    def consume_reset_secret(
        self, public_id: str, secret: str, credential_hash: str
    ) -> bool:
        with self._data_lock:
            account = self._find_by_public_id(public_id)
            if not account or not account.secret_active or not account.one_time_secret:
                return False
            if not hmac.compare_digest(account.one_time_secret.encode(), secret.encode()):
                return False
            account.credential_hash = credential_hash
            account.secret_active = False
            account.updated_at = self._now()
            return True

    def update_account_role(self, public_id: str, role: str) -> bool:
        with self._data_lock:
            account = self._find_by_public_id(public_id)
            if not account:
                return False
            account.role = role
            account.updated_at = self._now()
            return True

    def list_account_ids(
        self, role: str, partition: str, text_filter: Optional[str] = None
    ) -> List[str]:
        needle = text_filter.lower() if text_filter else None
        with self._data_lock:
            matches = [
                a
                for a in self.accounts.values()
                if a.role == role and a.partition == partition
            ]
            if needle:
                matches = [
                    a
                    for a in matches
                    if needle in a.identifier.lower()
                    or needle in a.name.lower()
                    or needle in a.surname.lower()
                ]
            return [a.public_id for a in sorted(matches, key=lambda a: a.id)]

    # refresh sessions
    def list_sessions(self, owner: str) -> List[RefreshSession]:
        with self._data_lock:
            return [
                copy.copy(s)
                for s in sorted(self.sessions.values(), key=lambda s: s.id)
                if s.owner == owner
            ]

    def create_session(
        self,
        owner: str,
        fingerprint: str,
        user_agent: Optional[str],
        token: str,
        ttl_ms: int,
        now_ms: int,
    ) -> RefreshSession:
        with self._data_lock:
            for existing in self.sessions.values():
                if existing.owner == owner and existing.fingerprint == fingerprint:
                    raise ConstraintViolation(
                        "session already exists for fingerprint",
                        {"owner": owner, "fingerprint": fingerprint},
                    )
                if existing.token == token:
                    raise ConstraintViolation("refresh token collision", {"field": "token"})
            session = RefreshSession(
                id=next(self._session_ids),
                owner=owner,
                token=token,
                fingerprint=fingerprint,
                user_agent=user_agent,
                expires_at=now_ms + ttl_ms,
                created_at=now_ms,
            )
            self.sessions[session.id] = session
            return copy.copy(session)

    def find_session(self, token: str, fingerprint: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.token == token and s.fingerprint == fingerprint
                ),
                None,
            )
            return copy.copy(session) if session else None

    def delete_session(self, owner: str, fingerprint: str) -> None:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if s.owner == owner and s.fingerprint == fingerprint
            ]
            for sid in stale:
                self.sessions.pop(sid, None)

    def delete_owner_sessions(self, owner: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.owner == owner]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def rotate_session(
        self,
        token: str,
        fingerprint: str,
        new_token: str,
        user_agent: Optional[str],
        ttl_ms: int,
        now_ms: int,
    ) -> Optional[RefreshSession]:
        with self._data_lock:
            current = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.token == token and s.fingerprint == fingerprint
                ),
                None,
            )
            if current is None:
                return None
            self.sessions.pop(current.id, None)
            return self.create_session(
                current.owner, fingerprint, user_agent, new_token, ttl_ms, now_ms
            )
