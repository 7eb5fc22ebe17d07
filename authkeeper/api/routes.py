from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header

from authkeeper.api.schemas import (
    AccountResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    SignupRequest,
    TokenRefreshRequest,
    TokenResponse,
)
from authkeeper.logging import get_logger
from authkeeper.service.errors import (
    AccountNotFound,
    AuthenticationError,
    ForbiddenError,
)
from authkeeper.service.runtime import get_runtime
from authkeeper.service.sessions import AuthContext, TokenPair
from authkeeper.storage.models import Account, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _timestamp(epoch_seconds: int) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        uuid=pair.uuid,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=_timestamp(pair.access_expires_at),
        refresh_expires_at=_timestamp(pair.refresh_expires_at),
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        uuid=account.uuid,
        kind=account.kind.value,
        role=account.role.value,
        login_channel=account.login_channel.value,
        email=account.email,
        phone=account.phone,
        username=account.username,
        first_name=account.first_name,
        last_name=account.last_name,
        full_name=account.full_name,
        created_at=account.created_at,
        meta=account.meta or None,
    )


def _bearer_or_401(authorization: Optional[str]) -> str:
    token = get_runtime().sessions.extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return token


def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_or_401(authorization)
    return get_runtime().sessions.authenticate(token)


def get_admin_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_or_401(authorization)
    return get_runtime().sessions.authenticate(token, required_role=Role.ADMIN)


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
def signup(body: SignupRequest):
    """Create a new account and issue its first token pair.

    Raises:
        403: If signup is disabled in settings
        409: If the email, phone, or username is already taken
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup disabled")
    account = runtime.resolver.signup(
        email=body.email,
        phone=body.phone,
        password=body.password,
        username=body.username,
        kind=body.kind,
        first_name=body.first_name,
        last_name=body.last_name,
        full_name=body.full_name,
        meta=body.meta,
    )
    pair = runtime.sessions.issue_tokens(account)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest):
    """Exchange an email, phone, or username plus password for a token pair.

    Raises:
        401: If the identifier is unknown or the password is wrong
    """
    pair = get_runtime().sessions.login(body.identifier, body.password)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh_tokens(body: TokenRefreshRequest):
    pair = get_runtime().sessions.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """End the session.

    With a bearer access token every refresh token of the account is
    revoked; with only a refresh token in the body just that one is.
    """
    sessions = get_runtime().sessions
    access_token = sessions.extract_bearer(authorization)
    if access_token:
        sessions.logout_access(access_token)
        return Envelope(status="ok", data={"message": "session revoked"})
    if body is not None and body.refresh_token:
        sessions.logout_refresh(body.refresh_token)
        return Envelope(status="ok", data={"message": "refresh token revoked"})
    raise AuthenticationError("missing bearer token")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
def get_current_account(principal: AuthContext = Depends(get_principal)):
    account = get_runtime().resolver.find_by_uuid(principal.uuid)
    if account is None:
        raise AccountNotFound()
    return Envelope(status="ok", data=_account_response(account))


@router.get("/admin/revocations", response_model=Envelope, tags=["admin"])
def revocation_stats(principal: AuthContext = Depends(get_admin_principal)):
    runtime = get_runtime()
    removed = runtime.sessions.sweep_revocations()
    logger.info("admin_revocation_sweep", account_uuid=principal.uuid, removed=removed)
    return Envelope(
        status="ok",
        data={"swept": removed, **runtime.revocations.stats()},
    )
