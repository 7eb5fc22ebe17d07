"""Map inbound login evidence to exactly one canonical account."""

from __future__ import annotations

import random
import re
from typing import Callable, Iterable, Optional, Union

from authkeeper.logging import get_logger
from authkeeper.service.errors import (
    AccountUnavailable,
    DuplicateIdentity,
    InvalidChannel,
    InvalidRole,
    MissingEmail,
    MissingPhoneOrChannel,
    UsernameGenerationExhausted,
    ValidationError,
)
from authkeeper.service.passwords import CredentialHasher
from authkeeper.storage.common import AccountDirectory, normalize_email, normalize_phone
from authkeeper.storage.errors import ConstraintViolation, StorageUnavailable
from authkeeper.storage.models import (
    DEFAULT_ROLE_FOR_KIND,
    Account,
    AccountKind,
    LoginChannel,
    Role,
)

logger = get_logger(__name__)

DEFAULT_USERNAME_ATTEMPTS = 10_000

_PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 ()-]{5,}$")


def parse_role(value: Union[Role, str, None]) -> Role:
    """Parse an untrusted role name; accepts ``admin`` or ``ROLE_ADMIN``."""
    if isinstance(value, Role):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidRole("role is required")
    name = value.strip().upper()
    if name.startswith("ROLE_"):
        name = name[len("ROLE_"):]
    try:
        return Role(name)
    except ValueError:
        raise InvalidRole(f"unknown role {value!r}", detail={"allowed": [r.value for r in Role]})


def parse_channel(value: Union[LoginChannel, str, None]) -> LoginChannel:
    if isinstance(value, LoginChannel):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidChannel("login channel is required")
    try:
        return LoginChannel(value.strip().upper())
    except ValueError:
        raise InvalidChannel(
            f"unknown login channel {value!r}",
            detail={"allowed": [c.value for c in LoginChannel]},
        )


def parse_kind(value: Union[AccountKind, str]) -> AccountKind:
    if isinstance(value, AccountKind):
        return value
    try:
        return AccountKind(str(value).strip().upper())
    except ValueError:
        raise ValidationError(
            f"unknown account kind {value!r}",
            detail={"allowed": [k.value for k in AccountKind]},
        )


def normalize_seed(seed: Optional[str]) -> str:
    normalized = "".join((seed or "").split()).lower()
    return normalized or "user"


class IdentityResolver:
    """Resolve password, OAuth, and passwordless logins to one account.

    ``kinds`` lists the account kinds this deployment serves; accounts of
    any other kind are invisible to lookups. New accounts created on first
    login get ``default_kind``.
    """

    def __init__(
        self,
        directory: AccountDirectory,
        hasher: CredentialHasher,
        *,
        kinds: Iterable[AccountKind] = tuple(AccountKind),
        default_kind: AccountKind = AccountKind.USER,
        username_max_attempts: int = DEFAULT_USERNAME_ATTEMPTS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.directory = directory
        self.hasher = hasher
        self.kinds = frozenset(kinds)
        if default_kind not in self.kinds:
            raise ValueError(f"default kind {default_kind.value} is not served")
        self.default_kind = default_kind
        if username_max_attempts < 1:
            raise ValueError("username_max_attempts must be positive")
        self.username_max_attempts = username_max_attempts
        self._rng = rng or random.SystemRandom()

    # lookups
    def resolve_password_login(self, identifier: str) -> Optional[Account]:
        """Single lookup by email, phone, or username; never creates."""
        if not identifier or not identifier.strip():
            return None
        value = identifier.strip()
        if "@" in value:
            return self._lookup(self.directory.find_by_email, value)
        if _PHONE_PATTERN.match(value):
            account = self._lookup(self.directory.find_by_phone, value)
            if account is not None:
                return account
        # All-digit usernames look like phone numbers.
        return self._lookup(self.directory.find_by_username, value)

    def find_by_uuid(self, account_uuid: str) -> Optional[Account]:
        return self._lookup(self.directory.find_by_uuid, account_uuid)

    def resolve_oauth_login(
        self, email: Optional[str], channel: Union[LoginChannel, str]
    ) -> Account:
        """Find the account for a provider-verified email, creating it if absent."""
        provider_channel = parse_channel(channel)
        normalized = normalize_email(email)
        if not normalized:
            raise MissingEmail()
        existing = self._lookup(self.directory.find_by_email, normalized)
        if existing is not None:
            return existing
        account = Account.new(
            kind=self.default_kind,
            role=DEFAULT_ROLE_FOR_KIND[self.default_kind],
            login_channel=provider_channel,
            email=normalized,
        )
        created = self._create_or_fetch(
            account, lambda: self._lookup(self.directory.find_by_email, normalized)
        )
        logger.info(
            "oauth_account_resolved",
            account_uuid=created.uuid,
            channel=provider_channel.value,
            created=created.uuid == account.uuid,
        )
        return created

    def resolve_passwordless_login(
        self,
        phone: Optional[str],
        channel: Union[LoginChannel, str, None],
        *,
        email: Optional[str] = None,
    ) -> Account:
        """Find the account for an OTP-verified phone, creating it if absent."""
        normalized_phone = normalize_phone(phone)
        if not normalized_phone or channel is None or (
            isinstance(channel, str) and not channel.strip()
        ):
            raise MissingPhoneOrChannel()
        login_channel = parse_channel(channel)
        existing = self._lookup(self.directory.find_by_phone, normalized_phone)
        if existing is not None:
            return existing

        normalized_email = normalize_email(email)
        if normalized_email and self._exists(self.directory.exists_by_email, normalized_email):
            # The email already belongs to someone else; keep the phone identity only.
            normalized_email = None
        digits = re.sub(r"\D", "", normalized_phone)
        account = Account.new(
            kind=self.default_kind,
            role=DEFAULT_ROLE_FOR_KIND[self.default_kind],
            login_channel=login_channel,
            phone=normalized_phone,
            email=normalized_email,
            username=self.generate_unique_username("user" + digits[-4:]),
        )
        created = self._create_or_fetch(
            account, lambda: self._lookup(self.directory.find_by_phone, normalized_phone)
        )
        logger.info(
            "passwordless_account_resolved",
            account_uuid=created.uuid,
            channel=login_channel.value,
            created=created.uuid == account.uuid,
        )
        return created

    def generate_unique_username(self, seed: Optional[str]) -> str:
        """Append random digits to the normalized seed until the name is free."""
        base = normalize_seed(seed)
        for _ in range(self.username_max_attempts):
            candidate = f"{base}{self._rng.randint(1000, 9999)}"
            if not self._exists(self.directory.exists_by_username, candidate):
                return candidate
        logger.error(
            "username_generation_exhausted",
            seed=base,
            attempts=self.username_max_attempts,
        )
        raise UsernameGenerationExhausted(detail={"attempts": self.username_max_attempts})

    # registration
    def signup(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        password: Optional[str] = None,
        username: Optional[str] = None,
        kind: Union[AccountKind, str, None] = None,
        role: Union[Role, str, None] = None,
        login_channel: Union[LoginChannel, str, None] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        full_name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Account:
        """Register a new account from explicit signup data."""
        account_kind = parse_kind(kind) if kind is not None else self.default_kind
        if account_kind not in self.kinds:
            raise ValidationError(
                f"account kind {account_kind.value} is not available",
                detail={"allowed": sorted(k.value for k in self.kinds)},
            )
        account_role = parse_role(role) if role is not None else DEFAULT_ROLE_FOR_KIND[account_kind]
        normalized_email = normalize_email(email)
        normalized_phone = normalize_phone(phone)
        if not normalized_email and not normalized_phone:
            raise ValidationError("email or phone is required")
        if login_channel is not None:
            channel = parse_channel(login_channel)
        else:
            channel = LoginChannel.EMAIL if normalized_email else LoginChannel.PHONE
        if channel == LoginChannel.EMAIL and not password:
            raise ValidationError("password is required for email signup")

        if normalized_email and self._exists(self.directory.exists_by_email, normalized_email):
            raise DuplicateIdentity("email already exists", detail={"field": "email"})
        if username and self._exists(self.directory.exists_by_username, username):
            raise DuplicateIdentity("username already exists", detail={"field": "username"})
        if normalized_phone and self._exists(self.directory.exists_by_phone, normalized_phone):
            raise DuplicateIdentity("phone already exists", detail={"field": "phone"})

        if not username:
            seed = normalized_email.split("@", 1)[0] if normalized_email else "user"
            username = self.generate_unique_username(seed)

        account = Account.new(
            kind=account_kind,
            role=account_role,
            login_channel=channel,
            email=normalized_email,
            phone=normalized_phone,
            username=username.strip(),
            password_hash=self.hasher.hash(password) if password else None,
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            meta=meta,
        )
        try:
            created = self._save(account)
        except ConstraintViolation as exc:
            raise DuplicateIdentity(exc.message, detail=exc.detail) from exc
        logger.info(
            "account_registered",
            account_uuid=created.uuid,
            kind=created.kind.value,
            channel=created.login_channel.value,
        )
        return created

    # directory access
    def _visible(self, account: Optional[Account]) -> Optional[Account]:
        if account is None or account.kind not in self.kinds:
            return None
        return account

    def _lookup(self, finder: Callable[[str], Optional[Account]], value: str) -> Optional[Account]:
        try:
            return self._visible(finder(value))
        except StorageUnavailable as exc:
            logger.error("account_lookup_failed", error=str(exc))
            raise AccountUnavailable() from exc

    def _exists(self, check: Callable[[str], bool], value: str) -> bool:
        try:
            return check(value)
        except StorageUnavailable as exc:
            logger.error("account_exists_check_failed", error=str(exc))
            raise AccountUnavailable() from exc

    def _save(self, account: Account) -> Account:
        try:
            return self.directory.save(account)
        except StorageUnavailable as exc:
            logger.error("account_save_failed", error=str(exc))
            raise AccountUnavailable() from exc

    def _create_or_fetch(
        self, account: Account, refetch: Callable[[], Optional[Account]]
    ) -> Account:
        """Create ``account``; if a concurrent login won the race, return theirs."""
        try:
            return self._save(account)
        except ConstraintViolation as exc:
            logger.info("account_create_conflict", field=exc.detail.get("field"))
            existing = refetch()
            if existing is not None:
                return existing
            raise DuplicateIdentity(exc.message, detail=exc.detail) from exc


__all__ = [
    "IdentityResolver",
    "normalize_seed",
    "parse_channel",
    "parse_kind",
    "parse_role",
]
