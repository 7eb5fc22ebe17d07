from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


class Role(str, Enum):
    """Closed set of roles embedded in token claims."""

    USER = "USER"
    FAN = "FAN"
    CREATOR = "CREATOR"
    ADMIN = "ADMIN"


class LoginChannel(str, Enum):
    """How an account was first established."""

    EMAIL = "EMAIL"
    GOOGLE = "GOOGLE"
    FACEBOOK = "FACEBOOK"
    PHONE = "PHONE"
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"
    EMAIL_LINK = "EMAIL_LINK"


class AccountKind(str, Enum):
    """Account variants served by a single directory."""

    USER = "USER"
    FAN = "FAN"
    CREATOR = "CREATOR"


DEFAULT_ROLE_FOR_KIND: Dict[AccountKind, Role] = {
    AccountKind.USER: Role.USER,
    AccountKind.FAN: Role.FAN,
    AccountKind.CREATOR: Role.CREATOR,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    uuid: str
    kind: AccountKind = AccountKind.USER
    role: Role = Role.USER
    login_channel: LoginChannel = LoginChannel.EMAIL
    email: Optional[str] = None
    phone: Optional[str] = None
    username: Optional[str] = None
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        *,
        kind: AccountKind = AccountKind.USER,
        role: Optional[Role] = None,
        login_channel: LoginChannel = LoginChannel.EMAIL,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        full_name: Optional[str] = None,
        meta: Dict | None = None,
    ) -> "Account":
        if not email and not phone:
            raise ValueError("an account needs an email or a phone")
        return cls(
            id=str(uuid.uuid4()),
            uuid=str(uuid.uuid4()),
            kind=kind,
            role=role or DEFAULT_ROLE_FOR_KIND[kind],
            login_channel=login_channel,
            email=email,
            phone=phone,
            username=username,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            meta=meta,
        )

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)
