"""Login, refresh rotation, logout, and request authentication.

An account's session is implicitly IN while it holds at least one ACTIVE
refresh token; there is no persisted OUT state. Every token pair is minted
through ``issue_tokens`` so every refresh token is tracked by the
revocation store.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from authkeeper.logging import get_logger, token_fingerprint
from authkeeper.service.errors import (
    AccountNotFound,
    ForbiddenError,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidToken,
    TokenBlacklisted,
    TokenExpired,
)
from authkeeper.service.identity import IdentityResolver, parse_role
from authkeeper.service.passwords import CredentialHasher
from authkeeper.service.tokens import ACCESS, REFRESH, ClaimSet, TokenCodec
from authkeeper.storage.common import AccountDirectory
from authkeeper.storage.models import Account, AccountKind, LoginChannel, Role
from authkeeper.storage.revocation import RevocationStore

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    uuid: str
    access_expires_at: int
    refresh_expires_at: int
    token_type: str = "bearer"


@dataclass
class AuthContext:
    uuid: str
    role: Role
    kind: AccountKind
    login_channel: LoginChannel
    subject: str
    token_id: str


def _fp(token: str) -> str:
    return token_fingerprint(token)[:12]


class SessionManager:
    """Owns the token lifecycle for every account."""

    def __init__(
        self,
        directory: AccountDirectory,
        hasher: CredentialHasher,
        codec: TokenCodec,
        revocations: RevocationStore,
        resolver: IdentityResolver,
        *,
        sweep_interval_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.hasher = hasher
        self.codec = codec
        self.revocations = revocations
        self.resolver = resolver
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sweep_lock = threading.Lock()
        self._last_sweep = clock()

    # issuing
    def issue_tokens(self, account: Account) -> TokenPair:
        """Mint an access/refresh pair and register the refresh token as ACTIVE."""
        access_claims = self.codec.claims_for(account, ACCESS)
        refresh_claims = self.codec.claims_for(account, REFRESH)
        access_token = self.codec.encode(access_claims)
        refresh_token = self.codec.encode(refresh_claims)
        self.revocations.register_refresh(
            refresh_token, account.uuid, refresh_claims.expires_at
        )
        logger.debug(
            "tokens_issued",
            account_uuid=account.uuid,
            refresh_fp=_fp(refresh_token),
        )
        return self._pair(access_token, refresh_token, access_claims, refresh_claims)

    def login(self, identifier: str, password: Optional[str]) -> TokenPair:
        self.maybe_sweep()
        account = self.resolver.resolve_password_login(identifier)
        # Unknown identifier and wrong password must be indistinguishable.
        if account is None or not password or not self.hasher.verify(
            password, account.password_hash
        ):
            logger.info(
                "login_failed",
                reason="unknown_account" if account is None else "bad_password",
            )
            raise InvalidCredentials()
        pair = self.issue_tokens(account)
        logger.info(
            "login_succeeded",
            account_uuid=account.uuid,
            channel=account.login_channel.value,
        )
        return pair

    def login_oauth(self, email: Optional[str], channel: Union[LoginChannel, str]) -> TokenPair:
        """Issue tokens for an email already verified by an OAuth provider."""
        self.maybe_sweep()
        account = self.resolver.resolve_oauth_login(email, channel)
        pair = self.issue_tokens(account)
        logger.info("oauth_login_succeeded", account_uuid=account.uuid)
        return pair

    def login_passwordless(
        self,
        phone: Optional[str],
        channel: Union[LoginChannel, str, None],
        *,
        email: Optional[str] = None,
    ) -> TokenPair:
        """Issue tokens for a phone already verified by an OTP provider."""
        self.maybe_sweep()
        account = self.resolver.resolve_passwordless_login(phone, channel, email=email)
        pair = self.issue_tokens(account)
        logger.info("passwordless_login_succeeded", account_uuid=account.uuid)
        return pair

    # rotation
    def refresh(self, refresh_token: str) -> TokenPair:
        """Single-use rotation: the presented refresh token stops working.

        Unparseable, expired, unknown, and already-rotated tokens all fail
        with the same ``InvalidRefreshToken``.
        """
        self.maybe_sweep()
        try:
            claims = self.codec.parse(refresh_token)
        except InvalidToken as exc:
            logger.warning("refresh_rejected", reason=exc.error_code, detail=exc.message)
            raise InvalidRefreshToken() from exc
        if claims.token_type != REFRESH:
            logger.warning("refresh_rejected", reason="wrong_token_type")
            raise InvalidRefreshToken()
        if self.codec.is_expired(claims):
            logger.info("refresh_rejected", reason="expired", account_uuid=claims.uuid)
            raise InvalidRefreshToken()
        if not self.revocations.is_refresh_active(refresh_token):
            logger.warning(
                "refresh_rejected",
                reason="inactive",
                account_uuid=claims.uuid,
                refresh_fp=_fp(refresh_token),
            )
            raise InvalidRefreshToken()

        account = self.resolver.find_by_uuid(claims.uuid)
        if account is None:
            self.revocations.revoke_refresh(refresh_token)
            logger.info("refresh_account_missing", account_uuid=claims.uuid)
            raise AccountNotFound()
        if claims.subject != account.uuid:
            logger.warning("refresh_rejected", reason="subject_mismatch")
            raise InvalidRefreshToken()

        access_claims = self.codec.claims_for(account, ACCESS)
        refresh_claims = self.codec.claims_for(account, REFRESH)
        new_access = self.codec.encode(access_claims)
        new_refresh = self.codec.encode(refresh_claims)
        if not self.revocations.rotate_refresh(
            refresh_token, new_refresh, account.uuid, refresh_claims.expires_at
        ):
            # Lost a race with another rotation or a logout.
            logger.warning(
                "refresh_rejected",
                reason="rotated_concurrently",
                account_uuid=account.uuid,
                refresh_fp=_fp(refresh_token),
            )
            raise InvalidRefreshToken()
        logger.info("refresh_rotated", account_uuid=account.uuid)
        return self._pair(new_access, new_refresh, access_claims, refresh_claims)

    # logout
    def logout_access(self, access_token: str) -> None:
        """Blacklist the access token and tear down every refresh token of its account."""
        claims = self.codec.parse(access_token)
        if claims.token_type != ACCESS:
            raise InvalidToken("expected an access token")
        self.revocations.blacklist(access_token, claims.uuid, claims.expires_at)
        revoked = self.revocations.revoke_account(claims.uuid)
        logger.info(
            "logout_completed",
            account_uuid=claims.uuid,
            refresh_revoked=revoked,
        )
        self.maybe_sweep()

    def logout_refresh(self, refresh_token: str) -> bool:
        revoked = self.revocations.revoke_refresh(refresh_token)
        logger.info("refresh_logout", refresh_fp=_fp(refresh_token), revoked=revoked)
        return revoked

    def is_blacklisted(self, access_token: str) -> bool:
        return self.revocations.is_blacklisted(access_token)

    # request authentication
    def authenticate(
        self,
        access_token: str,
        *,
        required_role: Union[Role, str, None] = None,
    ) -> AuthContext:
        if self.revocations.is_blacklisted(access_token):
            logger.info("access_rejected", reason="blacklisted", token_fp=_fp(access_token))
            raise TokenBlacklisted()
        claims = self.codec.parse(access_token)
        if claims.token_type != ACCESS:
            raise InvalidToken("expected an access token")
        if self.codec.is_expired(claims):
            logger.info("access_rejected", reason="expired", account_uuid=claims.uuid)
            raise TokenExpired()
        account = self.resolver.find_by_uuid(claims.uuid)
        if account is None:
            raise AccountNotFound()
        if not self.codec.is_valid_for(access_token, account.uuid):
            raise InvalidToken()
        if claims.role != account.role:
            logger.info(
                "access_rejected",
                reason="role_changed",
                account_uuid=account.uuid,
            )
            raise InvalidToken("token claims no longer match the account")
        if required_role is not None and not self._role_allows(
            account.role, parse_role(required_role)
        ):
            raise ForbiddenError(
                "insufficient role", detail={"required": parse_role(required_role).value}
            )
        return AuthContext(
            uuid=account.uuid,
            role=account.role,
            kind=account.kind,
            login_channel=account.login_channel,
            subject=claims.subject,
            token_id=claims.token_id,
        )

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    # housekeeping
    def sweep_revocations(self) -> int:
        removed = self.revocations.sweep_expired()
        with self._sweep_lock:
            self._last_sweep = self._clock()
        return removed

    def maybe_sweep(self) -> int:
        """Sweep expired revocation entries if the interval has elapsed.

        Returns:
            Number of entries removed, or 0 if the sweep was skipped
        """
        now = self._clock()
        with self._sweep_lock:
            if now - self._last_sweep < self.sweep_interval_seconds:
                return 0
            self._last_sweep = now
        return self.revocations.sweep_expired(now)

    def _role_allows(self, role: Role, required: Role) -> bool:
        return role == required or role == Role.ADMIN

    def _pair(
        self,
        access_token: str,
        refresh_token: str,
        access_claims: ClaimSet,
        refresh_claims: ClaimSet,
    ) -> TokenPair:
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            uuid=access_claims.uuid,
            access_expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
        )


__all__ = ["AuthContext", "SessionManager", "TokenPair"]
