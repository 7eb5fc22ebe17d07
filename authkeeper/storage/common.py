"""Contracts and helpers shared by account directory implementations."""

from __future__ import annotations

import re
from typing import Optional, Protocol

from authkeeper.storage.models import Account

_PHONE_STRIP = re.compile(r"[\s()-]")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lower-case and trim an email; empty values become None."""
    if email is None:
        return None
    normalized = email.strip().lower()
    return normalized or None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Drop spacing and punctuation so equivalent numbers compare equal."""
    if phone is None:
        return None
    normalized = _PHONE_STRIP.sub("", phone.strip())
    return normalized or None


def normalize_username(username: Optional[str]) -> Optional[str]:
    if username is None:
        return None
    normalized = username.strip().lower()
    return normalized or None


class AccountDirectory(Protocol):
    """Lookup and persistence of accounts across every account kind.

    Lookups return None for "not found" and never raise for it. Backends
    raise ``ConstraintViolation`` on uniqueness conflicts and
    ``StorageUnavailable`` when they cannot answer.
    """

    def find_by_email(self, email: str) -> Optional[Account]: ...

    def find_by_phone(self, phone: str) -> Optional[Account]: ...

    def find_by_username(self, username: str) -> Optional[Account]: ...

    def find_by_uuid(self, account_uuid: str) -> Optional[Account]: ...

    def find_by_id(self, account_id: str) -> Optional[Account]: ...

    def exists_by_email(self, email: str) -> bool: ...

    def exists_by_phone(self, phone: str) -> bool: ...

    def exists_by_username(self, username: str) -> bool: ...

    def save(self, account: Account) -> Account: ...


__all__ = [
    "AccountDirectory",
    "normalize_email",
    "normalize_phone",
    "normalize_username",
]
