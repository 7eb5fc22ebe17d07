from __future__ import annotations

import threading

from authkeeper.config import get_settings, reset_settings_cache
from authkeeper.logging import get_logger
from authkeeper.service.identity import IdentityResolver
from authkeeper.service.passwords import Argon2Hasher
from authkeeper.service.sessions import SessionManager
from authkeeper.service.tokens import TokenCodec
from authkeeper.storage.memory import MemoryStore
from authkeeper.storage.revocation import MemoryRevocationStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            persist_accounts=self.settings.persist_accounts,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.state_dir if self.settings.persist_accounts else None
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.revocations = MemoryRevocationStore()
        self.hasher = Argon2Hasher()
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            access_ttl=self.settings.access_ttl,
            refresh_ttl=self.settings.refresh_ttl,
            issuer=self.settings.jwt_issuer,
        )
        self.resolver = IdentityResolver(
            self.store,
            self.hasher,
            kinds=self.settings.account_kinds,
            default_kind=self.settings.default_account_kind,
            username_max_attempts=self.settings.username_max_attempts,
        )
        self.sessions = SessionManager(
            self.store,
            self.hasher,
            self.codec,
            self.revocations,
            self.resolver,
            sweep_interval_seconds=self.settings.revocation_sweep_interval_seconds,
        )
        logger.info(
            "runtime_init_completed",
            account_kinds=[kind.value for kind in self.settings.account_kinds],
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
