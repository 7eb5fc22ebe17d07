from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authkeeper.logging import get_logger
from authkeeper.storage.common import (
    normalize_email,
    normalize_phone,
    normalize_username,
)
from authkeeper.storage.errors import ConstraintViolation, StorageUnavailable
from authkeeper.storage.models import Account, AccountKind, LoginChannel, Role


class MemoryStore:
    """In-memory account directory for tests and single-process deployments.

    Every account kind lives in one table; email, phone and username are
    unique across kinds. When ``fs_root`` is given the table is mirrored to
    a JSON file so accounts survive a restart.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._by_uuid: Dict[str, str] = {}
        self._by_email: Dict[str, str] = {}
        self._by_phone: Dict[str, str] = {}
        self._by_username: Dict[str, str] = {}
        # RLock so save() can call the index helpers while holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    # lookups
    def find_by_email(self, email: str) -> Optional[Account]:
        key = normalize_email(email)
        if not key:
            return None
        with self._data_lock:
            return self._get(self._by_email.get(key))

    def find_by_phone(self, phone: str) -> Optional[Account]:
        key = normalize_phone(phone)
        if not key:
            return None
        with self._data_lock:
            return self._get(self._by_phone.get(key))

    def find_by_username(self, username: str) -> Optional[Account]:
        key = normalize_username(username)
        if not key:
            return None
        with self._data_lock:
            return self._get(self._by_username.get(key))

    def find_by_uuid(self, account_uuid: str) -> Optional[Account]:
        if not account_uuid:
            return None
        with self._data_lock:
            return self._get(self._by_uuid.get(account_uuid))

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._get(account_id)

    def exists_by_email(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    def exists_by_phone(self, phone: str) -> bool:
        return self.find_by_phone(phone) is not None

    def exists_by_username(self, username: str) -> bool:
        return self.find_by_username(username) is not None

    def list_accounts(
        self, kind: Optional[AccountKind] = None, limit: int = 100
    ) -> List[Account]:
        with self._data_lock:
            results = [
                replace(a) for a in self.accounts.values() if kind is None or a.kind == kind
            ]
        return sorted(results, key=lambda a: a.created_at, reverse=True)[:limit]

    # writes
    def save(self, account: Account) -> Account:
        """Insert or update an account, enforcing identifier uniqueness."""
        stored = replace(
            account,
            email=normalize_email(account.email),
            phone=normalize_phone(account.phone),
        )
        with self._data_lock:
            existing = self.accounts.get(stored.id)
            if existing is None and stored.uuid in self._by_uuid:
                raise ConstraintViolation("uuid already exists", {"field": "uuid"})
            if existing is not None and existing.uuid != stored.uuid:
                raise ConstraintViolation("uuid is immutable", {"field": "uuid"})
            self._check_unique("email", self._by_email, stored.email, stored.id)
            self._check_unique("phone", self._by_phone, stored.phone, stored.id)
            self._check_unique(
                "username",
                self._by_username,
                normalize_username(stored.username),
                stored.id,
            )
            if existing is not None:
                self._unindex(existing)
                stored.created_at = existing.created_at
            self.accounts[stored.id] = stored
            self._index(stored)
            try:
                self._persist_state()
            except StorageUnavailable:
                self._unindex(stored)
                if existing is None:
                    del self.accounts[stored.id]
                else:
                    self.accounts[stored.id] = existing
                    self._index(existing)
                raise
        self.logger.debug("account_saved", account_uuid=stored.uuid, kind=stored.kind.value)
        return replace(stored)

    def delete(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.pop(account_id, None)
            if account is None:
                return False
            self._unindex(account)
            try:
                self._persist_state()
            except StorageUnavailable:
                self.accounts[account_id] = account
                self._index(account)
                raise
            return True

    def _get(self, account_id: Optional[str]) -> Optional[Account]:
        if account_id is None:
            return None
        account = self.accounts.get(account_id)
        # Hand out copies so callers cannot mutate the table behind the lock
        return replace(account) if account else None

    @staticmethod
    def _check_unique(
        field_name: str, index: Dict[str, str], value: Optional[str], account_id: str
    ) -> None:
        if value is None:
            return
        owner = index.get(value)
        if owner is not None and owner != account_id:
            raise ConstraintViolation(
                f"{field_name} already exists", {"field": field_name}
            )

    def _index(self, account: Account) -> None:
        self._by_uuid[account.uuid] = account.id
        if account.email:
            self._by_email[account.email] = account.id
        if account.phone:
            self._by_phone[account.phone] = account.id
        username = normalize_username(account.username)
        if username:
            self._by_username[username] = account.id

    def _unindex(self, account: Account) -> None:
        self._by_uuid.pop(account.uuid, None)
        if account.email:
            self._by_email.pop(account.email, None)
        if account.phone:
            self._by_phone.pop(account.phone, None)
        username = normalize_username(account.username)
        if username:
            self._by_username.pop(username, None)

    # persistence
    @staticmethod
    def _serialize_account(account: Account) -> Dict[str, Any]:
        return {
            "id": account.id,
            "uuid": account.uuid,
            "kind": account.kind.value,
            "role": account.role.value,
            "login_channel": account.login_channel.value,
            "email": account.email,
            "phone": account.phone,
            "username": account.username,
            "password_hash": account.password_hash,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "full_name": account.full_name,
            "created_at": account.created_at.isoformat(),
            "meta": account.meta,
        }

    @staticmethod
    def _deserialize_account(data: Dict[str, Any]) -> Account:
        return Account(
            id=data["id"],
            uuid=data["uuid"],
            kind=AccountKind(data.get("kind", AccountKind.USER.value)),
            role=Role(data.get("role", Role.USER.value)),
            login_channel=LoginChannel(data.get("login_channel", LoginChannel.EMAIL.value)),
            email=data.get("email"),
            phone=data.get("phone"),
            username=data.get("username"),
            password_hash=data.get("password_hash"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            full_name=data.get("full_name"),
            created_at=datetime.fromisoformat(data["created_at"]),
            meta=data.get("meta"),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("account_state_persist_failed", error=str(exc), path=str(path))
            raise StorageUnavailable(f"could not persist account state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            for raw in data.get("accounts", []):
                account = self._deserialize_account(raw)
                self.accounts[account.id] = account
                self._index(account)
        self.logger.info("account_state_loaded", accounts=len(self.accounts))
        return True


__all__ = ["MemoryStore"]
