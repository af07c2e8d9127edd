from __future__ import annotations

import asyncio
import functools
import hashlib
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol
from urllib.parse import urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from passgate.config import Settings
from passgate.logging import get_logger
from passgate.service.clock import Clock, SystemClock
from passgate.service.errors import (
    AlreadyExistsError,
    DuplicateSessionError,
    ExpiredError,
    ForbiddenError,
    InternalError,
    InvalidCredentialError,
    InvalidSecretError,
    NoInvitationError,
    NotFoundError,
    SessionLimitExceededError,
    StorageFailure,
)
from passgate.service.notifier import (
    INVITATION_TEMPLATE,
    PASSWORD_RESET_TEMPLATE,
    LoggingNotifier,
    Notifier,
)
from passgate.service.one_time import SecretIssuer
from passgate.service.signer import CredentialPayload, CredentialSigner
from passgate.storage.errors import ConstraintViolation, StorageError
from passgate.storage.models import Account, Profile, RefreshSession

logger = get_logger(__name__)


class AuthStore(Protocol):
    # accounts
    def get_account(self, identifier: str, partition: str) -> Optional[Account]: ...

    def get_account_by_public_id(self, public_id: str) -> Optional[Account]: ...

    def create_active_account(
        self,
        profile: Profile,
        identifier: str,
        partition: str,
        credential_hash: str,
        *,
        role: str = "default",
    ) -> Account: ...

    def create_invited_account(
        self,
        profile: Profile,
        identifier: str,
        partition: str,
        role: str,
        secret: str,
    ) -> Account: ...

    def activate_invited_account(self, account_id: int, credential_hash: str) -> bool: ...

    def set_one_time_secret(self, public_id: str, secret: str) -> bool: ...

    def consume_reset_secret(
        self, public_id: str, secret: str, credential_hash: str
    ) -> bool: ...

    def list_account_ids(
        self, role: str, partition: str, text_filter: Optional[str] = None
    ) -> List[str]: ...

    # refresh sessions
    def list_sessions(self, owner: str) -> List[RefreshSession]: ...

    def create_session(
        self,
        owner: str,
        fingerprint: str,
        user_agent: Optional[str],
        token: str,
        ttl_ms: int,
        now_ms: int,
    ) -> RefreshSession: ...

    def find_session(self, token: str, fingerprint: str) -> Optional[RefreshSession]: ...

    def delete_session(self, owner: str, fingerprint: str) -> None: ...

    def delete_owner_sessions(self, owner: str) -> int: ...

    def rotate_session(
        self,
        token: str,
        fingerprint: str,
        new_token: str,
        user_agent: Optional[str],
        ttl_ms: int,
        now_ms: int,
    ) -> Optional[RefreshSession]: ...


@dataclass
class TokenPair:
    owner: str
    role: str
    access_token: str
    access_expires_at: int
    refresh_token: str
    refresh_expires_at: int


@dataclass
class Invitation:
    public_id: str
    secret: str
    link: str
    delivered: bool


@dataclass
class PasswordResetTicket:
    public_id: str
    secret: str
    link: Optional[str]
    delivered: bool


def is_live(session: RefreshSession, now: int) -> bool:
    """The one expiry predicate for refresh sessions."""
    return session.expires_at >= now


def _fingerprint_hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def _build_link(base: str, secret: str, **query: str) -> str:
    link = f"{base.rstrip('/')}/{secret}"
    if query:
        link = f"{link}?{urlencode(query)}"
    return link


def _storage_guard(flow: str):
    """Turn raw store failures inside a flow into an opaque StorageFailure."""

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            except StorageError as exc:
                logger.error(
                    "storage_operation_failed",
                    flow=flow,
                    error_type=type(exc).__name__,
                    error=exc.message,
                    detail=exc.detail,
                    cause=repr(exc.__cause__) if exc.__cause__ else None,
                )
                raise StorageFailure(
                    "storage operation failed", detail={"flow": flow}
                ) from exc

        return wrapper

    return decorator


class AuthService:
    """Login, refresh rotation, verification, logout, invitations and password reset.

    Every collaborator is injected: the store, the clock, the notifier, the
    credential signer and the secret issuer. Failures are raised as
    ``ServiceError`` subclasses carrying an ``ErrorKind``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        signer: Optional[CredentialSigner] = None,
        secrets: Optional[SecretIssuer] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.signer = signer or CredentialSigner(settings.signing_key)
        self.secrets = secrets or SecretIssuer()
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        self.logger = logger

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, account: Account, password: str) -> bool:
        if account.credential_hash is None:
            return False
        try:
            return self._pwd_hasher.verify(account.credential_hash, password)
        except (VerificationError, InvalidHash):
            return False

    # credentials
    def _mint_access(self, account: Account, now: int) -> tuple[str, int]:
        expiry = now + self.settings.access_token_ttl_ms
        token = self.signer.mint(account.public_id, account.role, expiry, now)
        return token, expiry

    def _decode_credential(self, access_token: str) -> CredentialPayload:
        result = self.signer.verify(access_token)
        if not result.ok or result.payload is None:
            raise InvalidCredentialError(
                "access credential is not valid", detail={"reason": result.reason}
            )
        return result.payload

    def _notify(
        self, destination: str, template_id: str, secret: str, options: dict[str, Any]
    ) -> bool:
        source = {"email": self.settings.notifier_source_contact, "secretCode": secret}
        try:
            return bool(self.notifier.send(source, destination, template_id, options))
        except Exception as exc:
            # Delivery never rolls back the state change that triggered it
            self.logger.error(
                "notifier_send_failed",
                template_id=template_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def _live_sessions(self, owner: str, now: int) -> List[RefreshSession]:
        """List an owner's sessions, purging the stale ones found on the way."""
        live: List[RefreshSession] = []
        for session in self.store.list_sessions(owner):
            if is_live(session, now):
                live.append(session)
                continue
            self.store.delete_session(session.owner, session.fingerprint)
            self.logger.info(
                "refresh_session_purged",
                owner=owner,
                fingerprint_hash=_fingerprint_hash(session.fingerprint),
                expired_at=session.expires_at,
            )
        return live

    # flows
    @_storage_guard("login")
    async def login(
        self,
        identifier: str,
        password: str,
        fingerprint: str,
        *,
        partition: str,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        account = self.store.get_account(identifier, partition)
        if not account:
            raise NotFoundError("no such account registered")

        if account.credential_hash is None:
            self.logger.info("login_pending_invitation", owner=account.public_id)
            raise InvalidCredentialError("invalid password for account")
        matches = await asyncio.to_thread(self._password_matches, account, password)
        if not matches:
            self.logger.info("login_invalid_password", owner=account.public_id)
            raise InvalidCredentialError("invalid password for account")

        now = self.clock.now()
        sessions = self._live_sessions(account.public_id, now)
        if len(sessions) >= self.settings.max_sessions_per_account:
            self.logger.warning(
                "session_limit_exceeded",
                owner=account.public_id,
                sessions=len(sessions),
                limit=self.settings.max_sessions_per_account,
            )
            raise SessionLimitExceededError("sessions limit exceeded")
        if any(s.fingerprint == fingerprint for s in sessions):
            raise DuplicateSessionError("a session already exists for this device")

        refresh_token = self.secrets.issue()
        try:
            session = self.store.create_session(
                account.public_id,
                fingerprint,
                user_agent,
                refresh_token,
                self.settings.refresh_session_ttl_ms,
                now,
            )
        except ConstraintViolation as exc:
            # A concurrent login for the same device won the insert
            raise DuplicateSessionError(
                "a session already exists for this device"
            ) from exc

        access_token, access_expiry = self._mint_access(account, now)
        self.logger.info(
            "login_succeeded",
            owner=account.public_id,
            fingerprint_hash=_fingerprint_hash(fingerprint),
        )
        return TokenPair(
            owner=account.public_id,
            role=account.role,
            access_token=access_token,
            access_expires_at=access_expiry,
            refresh_token=session.token,
            refresh_expires_at=session.expires_at,
        )

    @_storage_guard("verify")
    async def verify(self, access_token: str, fingerprint: str) -> CredentialPayload:
        payload = self._decode_credential(access_token)
        now = self.clock.now()
        if payload.expiry <= now:
            raise ExpiredError("access credential expired")
        sessions = self._live_sessions(payload.owner, now)
        if not sessions:
            raise NotFoundError("no sessions for this account")
        if not any(s.fingerprint == fingerprint for s in sessions):
            raise NotFoundError("no session with such fingerprint")
        return payload

    @_storage_guard("refresh")
    async def refresh(
        self,
        refresh_token: str,
        fingerprint: str,
        *,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        session = self.store.find_session(refresh_token, fingerprint)
        if not session:
            raise NotFoundError("no session to refresh")
        now = self.clock.now()
        if not is_live(session, now):
            self.store.delete_session(session.owner, session.fingerprint)
            self.logger.info(
                "refresh_session_expired",
                owner=session.owner,
                fingerprint_hash=_fingerprint_hash(fingerprint),
            )
            raise ExpiredError("refresh session expired")

        new_token = self.secrets.issue()
        rotated = self.store.rotate_session(
            refresh_token,
            fingerprint,
            new_token,
            user_agent if user_agent is not None else session.user_agent,
            self.settings.refresh_session_ttl_ms,
            now,
        )
        if rotated is None:
            # Another refresh consumed this token first
            raise NotFoundError("no session to refresh")

        account = self.store.get_account_by_public_id(rotated.owner)
        if not account:
            self.logger.error("refresh_owner_missing", owner=rotated.owner)
            raise InternalError("session owner does not exist")

        access_token, access_expiry = self._mint_access(account, now)
        self.logger.info(
            "refresh_rotated",
            owner=account.public_id,
            fingerprint_hash=_fingerprint_hash(fingerprint),
        )
        return TokenPair(
            owner=account.public_id,
            role=account.role,
            access_token=access_token,
            access_expires_at=access_expiry,
            refresh_token=rotated.token,
            refresh_expires_at=rotated.expires_at,
        )

    @_storage_guard("logout")
    async def logout(self, owner: str, fingerprint: str) -> None:
        self.store.delete_session(owner, fingerprint)
        self.logger.info(
            "logout", owner=owner, fingerprint_hash=_fingerprint_hash(fingerprint)
        )

    async def logout_with_credential(self, access_token: str, fingerprint: str) -> None:
        """Logout using the owner named by a signature-valid credential, expired or not."""
        result = self.signer.verify(access_token)
        if not result.ok or result.payload is None:
            self.logger.info("logout_unverifiable_credential", reason=result.reason)
            return
        await self.logout(result.payload.owner, fingerprint)

    @_storage_guard("invite")
    async def invite(
        self,
        access_token: str,
        identifier: str,
        profile: Profile,
        *,
        link: str,
        role: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> Invitation:
        elevated = self.settings.elevated_role
        verified = self.signer.verify(access_token)
        if not verified.ok or verified.payload is None:
            raise ForbiddenError(
                "access credential is not valid", detail={"reason": "invalid_credential"}
            )
        payload = verified.payload
        if payload.expiry <= self.clock.now():
            raise ForbiddenError(
                "access credential expired", detail={"reason": "expired"}
            )
        if payload.role != elevated:
            raise ForbiddenError(
                "not enough rights to create invitations", detail={"reason": "role"}
            )

        inviter = self.store.get_account_by_public_id(payload.owner)
        if not inviter:
            raise NotFoundError("no such inviting account")
        target_partition = partition or inviter.partition
        if target_partition != inviter.partition:
            raise ForbiddenError(
                "cannot invite into another partition", detail={"reason": "partition"}
            )

        if self.store.get_account(identifier, target_partition):
            raise AlreadyExistsError("account already exists")

        target_role = role or self.settings.default_role
        if target_role == elevated:
            raise ForbiddenError(
                f"not enough rights to create invitation with role `{elevated}`",
                detail={"reason": "role_escalation"},
            )

        secret = self.secrets.issue()
        try:
            account = self.store.create_invited_account(
                profile, identifier, target_partition, target_role, secret
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError("account already exists") from exc

        invite_link = _build_link(link, secret)
        delivered = await asyncio.to_thread(
            self._notify,
            identifier,
            INVITATION_TEMPLATE,
            secret,
            {"link": invite_link, "role": target_role},
        )
        self.logger.info(
            "invitation_issued",
            inviter=inviter.public_id,
            owner=account.public_id,
            role=target_role,
            delivered=delivered,
        )
        return Invitation(
            public_id=account.public_id,
            secret=secret,
            link=invite_link,
            delivered=delivered,
        )

    @_storage_guard("redeem_invitation")
    async def redeem_invitation(
        self,
        identifier: str,
        partition: str,
        password: str,
        secret: str,
    ) -> Account:
        account = self.store.get_account(identifier, partition)
        if not account:
            raise NoInvitationError("no invitation for this account")
        if account.credential_hash is not None:
            raise AlreadyExistsError("account already registered")
        if not account.secret_active:
            self.logger.error(
                "invitation_secret_inactive",
                owner=account.public_id,
                account_id=account.id,
            )
            raise InternalError("invitation secret is not active")
        if not self.secrets.matches(account.one_time_secret, account.secret_active, secret):
            self.logger.info("invitation_secret_mismatch", owner=account.public_id)
            raise InvalidSecretError("invalid secret code for invitation")

        credential_hash = await asyncio.to_thread(self.hash_password, password)
        if not self.store.activate_invited_account(account.id, credential_hash):
            raise AlreadyExistsError("account already registered")
        self.logger.info("invitation_redeemed", owner=account.public_id)
        activated = self.store.get_account_by_public_id(account.public_id)
        return activated or account

    @_storage_guard("register")
    async def register(
        self,
        identifier: str,
        partition: str,
        password: str,
        profile: Profile,
    ) -> Account:
        if not self.settings.allow_signup:
            raise ForbiddenError("self-service registration is disabled")
        if self.store.get_account(identifier, partition):
            raise AlreadyExistsError("account already registered")
        credential_hash = await asyncio.to_thread(self.hash_password, password)
        try:
            account = self.store.create_active_account(
                profile,
                identifier,
                partition,
                credential_hash,
                role=self.settings.default_role,
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError("account already registered") from exc
        self.logger.info("account_registered", owner=account.public_id, partition=partition)
        return account

    @_storage_guard("initiate_password_reset")
    async def initiate_password_reset(
        self,
        identifier: str,
        partition: str,
        *,
        link: Optional[str] = None,
    ) -> PasswordResetTicket:
        account = self.store.get_account(identifier, partition)
        if not account:
            raise NotFoundError("no such account registered")
        secret = self.secrets.issue()
        if not self.store.set_one_time_secret(account.public_id, secret):
            raise NotFoundError("no such account registered")

        reset_link = _build_link(link, secret, userId=account.public_id) if link else None
        delivered = await asyncio.to_thread(
            self._notify,
            identifier,
            PASSWORD_RESET_TEMPLATE,
            secret,
            {"link": reset_link, "userId": account.public_id},
        )
        self.logger.info(
            "password_reset_requested", owner=account.public_id, delivered=delivered
        )
        return PasswordResetTicket(
            public_id=account.public_id,
            secret=secret,
            link=reset_link,
            delivered=delivered,
        )

    @_storage_guard("complete_password_reset")
    async def complete_password_reset(
        self, public_id: str, secret: str, new_password: str
    ) -> None:
        account = self.store.get_account_by_public_id(public_id)
        if not account:
            raise NotFoundError("no such account registered")
        if not self.secrets.matches(account.one_time_secret, account.secret_active, secret):
            self.logger.info(
                "password_reset_secret_mismatch",
                owner=public_id,
                secret_active=account.secret_active,
            )
            raise InvalidSecretError("invalid secret code for reset password")

        credential_hash = await asyncio.to_thread(self.hash_password, new_password)
        if not self.store.consume_reset_secret(public_id, secret, credential_hash):
            # Consumed or replaced while the new password was being hashed
            self.logger.info("password_reset_secret_consumed", owner=public_id)
            raise InvalidSecretError("invalid secret code for reset password")
        revoked = 0
        if self.settings.revoke_sessions_on_reset:
            revoked = self.store.delete_owner_sessions(public_id)
        self.logger.info("password_reset_completed", owner=public_id, sessions_revoked=revoked)

    @_storage_guard("get_account")
    async def get_account(self, public_id: str) -> Account:
        account = self.store.get_account_by_public_id(public_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    @_storage_guard("list_accounts")
    async def list_accounts(
        self, role: str, partition: str, text_filter: Optional[str] = None
    ) -> List[str]:
        return self.store.list_account_ids(role, partition, text_filter)
