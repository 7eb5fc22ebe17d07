"""Signed bearer tokens.

Tokens are compact JWTs (``header.payload.signature``) signed with
HMAC-SHA256 under one shared secret. ``parse`` verifies structure and
signature only; expiry is a separate check so callers can tell a tampered
token from an old one.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from authkeeper.logging import get_logger, token_fingerprint
from authkeeper.service.errors import (
    InvalidSignature,
    InvalidToken,
    MalformedToken,
)
from authkeeper.storage.models import Account, AccountKind, LoginChannel, Role

logger = get_logger(__name__)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = frozenset({ACCESS, REFRESH})
# Our own header encodes to 36 characters.
MAX_HEADER_SEGMENT = 256


def _new_token_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ClaimSet:
    subject: str
    uuid: str
    role: Role
    login_channel: LoginChannel
    issued_at: int
    expires_at: int
    token_type: str = ACCESS
    token_id: str = field(default_factory=_new_token_id)
    kind: AccountKind = AccountKind.USER
    issuer: Optional[str] = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")
        if self.token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type {self.token_type!r}")

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sub": self.subject,
            "uuid": self.uuid,
            "role": self.role.value,
            "loginChannel": self.login_channel.value,
            "kind": self.kind.value,
            "typ": self.token_type,
            "jti": self.token_id,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }
        if self.issuer is not None:
            payload["iss"] = self.issuer
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> "ClaimSet":
        if not isinstance(payload, dict):
            raise MalformedToken("token payload is not an object")
        try:
            subject = payload["sub"]
            account_uuid = payload["uuid"]
            issued_at = payload["iat"]
            expires_at = payload["exp"]
            token_id = payload["jti"]
            token_type = payload["typ"]
        except KeyError as exc:
            raise MalformedToken(f"missing claim {exc.args[0]}") from exc
        for name, value in (("sub", subject), ("uuid", account_uuid), ("jti", token_id)):
            if not isinstance(value, str) or not value:
                raise MalformedToken(f"claim {name} must be a non-empty string")
        for name, value in (("iat", issued_at), ("exp", expires_at)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise MalformedToken(f"claim {name} must be an integer")
        try:
            role = Role(payload.get("role"))
            channel = LoginChannel(payload.get("loginChannel"))
            kind = AccountKind(payload.get("kind", AccountKind.USER.value))
            return cls(
                subject=subject,
                uuid=account_uuid,
                role=role,
                login_channel=channel,
                issued_at=issued_at,
                expires_at=expires_at,
                token_type=token_type,
                token_id=token_id,
                kind=kind,
                issuer=payload.get("iss"),
            )
        except ValueError as exc:
            raise MalformedToken(str(exc)) from exc


class TokenCodec:
    """Mints and parses HS256 tokens under an injected secret."""

    def __init__(
        self,
        secret: str,
        *,
        access_ttl: timedelta = timedelta(minutes=20),
        refresh_ttl: timedelta = timedelta(days=7),
        issuer: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        if access_ttl <= timedelta(0) or refresh_ttl <= timedelta(0):
            raise ValueError("token lifetimes must be positive")
        self._key = secret.encode("utf-8")
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def ttl_for(self, token_type: str) -> timedelta:
        return self.refresh_ttl if token_type == REFRESH else self.access_ttl

    def claims_for(
        self,
        account: Account,
        token_type: str = ACCESS,
        *,
        ttl: Optional[timedelta] = None,
    ) -> ClaimSet:
        """Build a fresh claim set for ``account`` stamped with the current time."""
        issued_at = self.now()
        lifetime = ttl if ttl is not None else self.ttl_for(token_type)
        return ClaimSet(
            subject=account.uuid,
            uuid=account.uuid,
            role=account.role,
            login_channel=account.login_channel,
            issued_at=issued_at,
            expires_at=issued_at + max(1, int(lifetime.total_seconds())),
            token_type=token_type,
            kind=account.kind,
            issuer=self.issuer,
        )

    def mint(
        self,
        account: Account,
        token_type: str = ACCESS,
        *,
        ttl: Optional[timedelta] = None,
    ) -> str:
        return self.encode(self.claims_for(account, token_type, ttl=ttl))

    def encode(self, claims: ClaimSet) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def parse(self, token: str) -> ClaimSet:
        """Verify the signature and decode the claims. Does not check expiry."""
        if not isinstance(token, str) or not token:
            raise MalformedToken("empty token")
        if not token.isascii():
            raise MalformedToken("token must be ASCII")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts
        if len(header_b64) > MAX_HEADER_SEGMENT:
            raise MalformedToken("token header is too long")

        # Reject anything but our algorithm before touching the signature
        # so "alg": "none" and key-confusion tokens never verify.
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error, RecursionError) as exc:
            raise MalformedToken("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise MalformedToken("token header is not an object")
        if header.get("alg") != ALGORITHM:
            logger.warning(
                "token_algorithm_rejected",
                alg=header.get("alg"),
                token_fp=token_fingerprint(token)[:12],
            )
            raise InvalidSignature("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            logger.warning(
                "token_signature_invalid", token_fp=token_fingerprint(token)[:12]
            )
            raise InvalidSignature()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error, RecursionError) as exc:
            raise MalformedToken("token payload is not valid JSON") from exc
        claims = ClaimSet.from_payload(payload)
        if self.issuer is not None and claims.issuer != self.issuer:
            logger.warning("token_issuer_mismatch", issuer=claims.issuer)
            raise InvalidToken("token issuer mismatch")
        return claims

    def is_expired(self, claims: ClaimSet) -> bool:
        return claims.expires_at < self._clock()

    def is_valid_for(self, token: str, expected_subject: str) -> bool:
        """Single acceptance predicate: authentic, addressed to the subject, unexpired."""
        try:
            claims = self.parse(token)
        except InvalidToken:
            return False
        return claims.subject == expected_subject and not self.is_expired(claims)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


__all__ = ["ACCESS", "ALGORITHM", "REFRESH", "ClaimSet", "TokenCodec"]
