"""Revocation state for issued tokens.

Two maps live behind one lock: the blacklist of access tokens that were
explicitly logged out, and the registry of refresh tokens that are still
ACTIVE for an account. Tokens are keyed by their SHA-256 fingerprint and
every entry remembers the token's own ``exp`` so it can be evicted once the
token could no longer be accepted anyway.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Protocol, Set

from authkeeper.logging import get_logger, token_fingerprint

logger = get_logger(__name__)


class RevocationStore(Protocol):
    def register_refresh(self, token: str, account_uuid: str, expires_at: int) -> None: ...

    def rotate_refresh(
        self, old_token: str, new_token: str, account_uuid: str, expires_at: int
    ) -> bool: ...

    def is_refresh_active(self, token: str) -> bool: ...

    def revoke_refresh(self, token: str) -> bool: ...

    def revoke_account(self, account_uuid: str) -> int: ...

    def blacklist(self, token: str, account_uuid: str, expires_at: int) -> None: ...

    def is_blacklisted(self, token: str) -> bool: ...

    def sweep_expired(self, now: float | None = None) -> int: ...

    def stats(self) -> dict: ...


@dataclass
class RefreshEntry:
    account_uuid: str
    expires_at: int
    registered_at: float


@dataclass
class BlacklistEntry:
    account_uuid: str
    expires_at: int
    revoked_at: float


class MemoryRevocationStore:
    """Process-local revocation store guarded by a single mutex.

    Every mutation and every read takes ``_lock``, so a rotation and an
    account-wide revocation can never interleave and a blacklisted token is
    visible to the next reader on any thread.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._refresh: Dict[str, RefreshEntry] = {}
        self._refresh_by_account: Dict[str, Set[str]] = {}
        self._blacklist: Dict[str, BlacklistEntry] = {}

    def register_refresh(self, token: str, account_uuid: str, expires_at: int) -> None:
        fp = token_fingerprint(token)
        with self._lock:
            self._add_refresh(fp, account_uuid, expires_at)

    def rotate_refresh(
        self, old_token: str, new_token: str, account_uuid: str, expires_at: int
    ) -> bool:
        """Swap ``old_token`` for ``new_token`` if and only if it is still active.

        Returns False, leaving the registry untouched, when the old token was
        already rotated, revoked, or never registered.
        """
        old_fp = token_fingerprint(old_token)
        new_fp = token_fingerprint(new_token)
        with self._lock:
            entry = self._refresh.get(old_fp)
            if entry is None or entry.account_uuid != account_uuid:
                return False
            self._drop_refresh(old_fp)
            self._add_refresh(new_fp, account_uuid, expires_at)
            return True

    def is_refresh_active(self, token: str) -> bool:
        fp = token_fingerprint(token)
        with self._lock:
            entry = self._refresh.get(fp)
            if entry is None:
                return False
            if entry.expires_at < self._clock():
                self._drop_refresh(fp)
                return False
            return True

    def revoke_refresh(self, token: str) -> bool:
        fp = token_fingerprint(token)
        with self._lock:
            return self._drop_refresh(fp)

    def revoke_account(self, account_uuid: str) -> int:
        """Remove every active refresh token issued to ``account_uuid``."""
        with self._lock:
            fingerprints = list(self._refresh_by_account.get(account_uuid, ()))
            for fp in fingerprints:
                self._drop_refresh(fp)
            return len(fingerprints)

    def blacklist(self, token: str, account_uuid: str, expires_at: int) -> None:
        fp = token_fingerprint(token)
        with self._lock:
            self._blacklist[fp] = BlacklistEntry(
                account_uuid=account_uuid,
                expires_at=expires_at,
                revoked_at=self._clock(),
            )

    def is_blacklisted(self, token: str) -> bool:
        fp = token_fingerprint(token)
        with self._lock:
            return fp in self._blacklist

    def sweep_expired(self, now: float | None = None) -> int:
        """Evict entries whose token has expired; returns the number removed."""
        cutoff = self._clock() if now is None else now
        with self._lock:
            stale_refresh = [
                fp for fp, entry in self._refresh.items() if entry.expires_at < cutoff
            ]
            for fp in stale_refresh:
                self._drop_refresh(fp)
            stale_blacklist = [
                fp for fp, entry in self._blacklist.items() if entry.expires_at < cutoff
            ]
            for fp in stale_blacklist:
                self._blacklist.pop(fp, None)
        removed = len(stale_refresh) + len(stale_blacklist)
        if removed:
            logger.debug(
                "revocations_swept",
                refresh=len(stale_refresh),
                blacklist=len(stale_blacklist),
            )
        return removed

    def stats(self) -> dict:
        with self._lock:
            return {
                "active_refresh": len(self._refresh),
                "accounts": len(self._refresh_by_account),
                "blacklisted": len(self._blacklist),
            }

    # callers must hold _lock
    def _add_refresh(self, fp: str, account_uuid: str, expires_at: int) -> None:
        self._refresh[fp] = RefreshEntry(
            account_uuid=account_uuid,
            expires_at=expires_at,
            registered_at=self._clock(),
        )
        self._refresh_by_account.setdefault(account_uuid, set()).add(fp)

    def _drop_refresh(self, fp: str) -> bool:
        entry = self._refresh.pop(fp, None)
        if entry is None:
            return False
        owned = self._refresh_by_account.get(entry.account_uuid)
        if owned is not None:
            owned.discard(fp)
            if not owned:
                self._refresh_by_account.pop(entry.account_uuid, None)
        return True


__all__ = [
    "BlacklistEntry",
    "MemoryRevocationStore",
    "RefreshEntry",
    "RevocationStore",
]
