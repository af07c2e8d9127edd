from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Cookie, Header, Query, Response

from passgate.api.schemas import (
    AuthRequest,
    CredentialResponse,
    Envelope,
    InviteRequest,
    InviteResponse,
    LoginRequest,
    LogoutRequest,
    PasswordForgotRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPairResponse,
    UserInfoResponse,
    UserListResponse,
)
from passgate.config import Settings
from passgate.logging import get_logger
from passgate.service.auth import TokenPair
from passgate.service.errors import BadInputError
from passgate.service.runtime import get_runtime
from passgate.storage.models import Profile

router = APIRouter(prefix="/v1")
logger = get_logger(__name__)

REFRESH_COOKIE = "refresh_token"


def _resolve_partition(settings: Settings, partition: Optional[str]) -> str:
    return partition or settings.default_partition


def _apply_refresh_cookie(response: Response, settings: Settings, pair: TokenPair) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=settings.refresh_session_ttl_hours * 60 * 60,
        path=settings.refresh_cookie_path,
    )


def _token_pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        user_id=pair.owner,
        role=pair.role,
        access_token=pair.access_token,
        access_expires_at=pair.access_expires_at,
        refresh_token=pair.refresh_token,
        refresh_expires_at=pair.refresh_expires_at,
    )


@router.post("/register", response_model=Envelope, tags=["accounts"])
async def register(
    body: RegisterRequest,
    partition: Optional[str] = Query(None, max_length=64),
):
    """Create an account, or activate an invited one when ``invitation_code`` is given."""
    runtime = get_runtime()
    target_partition = _resolve_partition(runtime.settings, partition)
    if body.invitation_code:
        account = await runtime.auth.redeem_invitation(
            body.email, target_partition, body.password, body.invitation_code
        )
    else:
        account = await runtime.auth.register(
            body.email,
            target_partition,
            body.password,
            Profile(name=body.name, surname=body.surname, patronymic=body.patronymic),
        )
    return Envelope(status="ok", data={"user_id": account.public_id})


@router.post("/login", response_model=Envelope, tags=["sessions"])
async def login(
    body: LoginRequest,
    response: Response,
    partition: Optional[str] = Query(None, max_length=64),
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    pair = await runtime.auth.login(
        body.email,
        body.password,
        body.fingerprint,
        partition=_resolve_partition(runtime.settings, partition),
        user_agent=user_agent,
    )
    _apply_refresh_cookie(response, runtime.settings, pair)
    return Envelope(status="ok", data=_token_pair_response(pair))


@router.post("/auth", response_model=Envelope, tags=["sessions"])
async def verify(body: AuthRequest):
    runtime = get_runtime()
    payload = await runtime.auth.verify(body.access_token, body.fingerprint)
    return Envelope(
        status="ok",
        data=CredentialResponse(
            user_id=payload.owner,
            role=payload.role,
            expires_at=payload.expiry,
            issued_at=payload.issued_at,
        ),
    )


@router.post("/refresh_tokens", response_model=Envelope, tags=["sessions"])
async def refresh_tokens(
    body: RefreshRequest,
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = body.refresh_token or refresh_token
    if not token:
        raise BadInputError("refresh token missing")
    pair = await runtime.auth.refresh(token, body.fingerprint, user_agent=user_agent)
    _apply_refresh_cookie(response, runtime.settings, pair)
    return Envelope(status="ok", data=_token_pair_response(pair))


@router.post("/logout", response_model=Envelope, tags=["sessions"])
async def logout(body: LogoutRequest, response: Response):
    runtime = get_runtime()
    if body.user_id:
        await runtime.auth.logout(body.user_id, body.fingerprint)
    else:
        await runtime.auth.logout_with_credential(body.access_token, body.fingerprint)
    response.delete_cookie(
        REFRESH_COOKIE,
        path=runtime.settings.refresh_cookie_path,
        secure=True,
        samesite="strict",
    )
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/registration_invite", response_model=Envelope, tags=["accounts"])
async def registration_invite(
    body: InviteRequest,
    partition: Optional[str] = Query(None, max_length=64),
):
    """Invite an account into the caller's partition; the caller must hold the elevated role."""
    runtime = get_runtime()
    invitation = await runtime.auth.invite(
        body.access_token,
        body.email,
        Profile(name=body.name, surname=body.surname, patronymic=body.patronymic),
        link=body.link_to_register_form,
        role=body.role,
        partition=partition,
    )
    return Envelope(
        status="ok",
        data=InviteResponse(user_id=invitation.public_id, delivered=invitation.delivered),
    )


@router.post("/password_forgot", response_model=Envelope, tags=["accounts"])
async def password_forgot(
    body: PasswordForgotRequest,
    partition: Optional[str] = Query(None, max_length=64),
):
    runtime = get_runtime()
    ticket = await runtime.auth.initiate_password_reset(
        body.email,
        _resolve_partition(runtime.settings, partition),
        link=body.link_to_reset_form,
    )
    return Envelope(status="ok", data={"delivered": ticket.delivered})


@router.post("/reset_password", response_model=Envelope, tags=["accounts"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.complete_password_reset(
        body.user_id, body.secret_code, body.password
    )
    return Envelope(status="ok", data={"message": "password updated"})


@router.get("/users", response_model=Envelope, tags=["accounts"])
async def list_users(
    role: str = Query(..., min_length=1, max_length=64),
    partition: Optional[str] = Query(None, max_length=64),
    q: Optional[str] = Query(None, max_length=128, description="Substring filter"),
):
    runtime = get_runtime()
    ids = await runtime.auth.list_accounts(
        role, _resolve_partition(runtime.settings, partition), q
    )
    return Envelope(status="ok", data=UserListResponse(items=ids))


@router.get("/user_info", response_model=Envelope, tags=["accounts"])
async def user_info(user_id: UUID = Query(...)):
    runtime = get_runtime()
    account = await runtime.auth.get_account(str(user_id))
    return Envelope(
        status="ok",
        data=UserInfoResponse(
            uid=account.public_id,
            email=account.identifier,
            name=account.name,
            surname=account.surname,
            patronymic=account.patronymic,
            role=account.role,
            partition=account.partition,
        ),
    )
