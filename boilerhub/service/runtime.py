from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from boilerhub.config import get_settings, reset_settings_cache
from boilerhub.logging import get_logger
from boilerhub.service.auth import AuthService
from boilerhub.service.boilerplates import BoilerplateService
from boilerhub.service.credentials import CredentialValidator
from boilerhub.service.repo_import import RepoImporter
from boilerhub.service.tokens import TokenIssuer
from boilerhub.storage.memory import MemoryStore
from boilerhub.storage.postgres import PostgresStore
from boilerhub.storage.session_store import MemorySessionStore, RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, fs_root=self.settings.shared_fs_root)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.sessions: Union[RedisSessionStore, MemorySessionStore, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                sessions = RedisSessionStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                    max_retries=self.settings.redis_max_retries,
                    backoff_cap=self.settings.redis_backoff_cap_seconds,
                )
                sessions.verify_connection()
                self.sessions = sessions
            except Exception as exc:
                redis_error = exc

        if self.sessions is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh sessions; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; refresh sessions "
                    "are in-process only and do not survive a restart."
                ),
                mode=fallback_mode,
            )
            self.sessions = MemorySessionStore()

        self.issuer = TokenIssuer(self.settings)
        self.credentials = CredentialValidator(self.store)
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.settings,
            issuer=self.issuer,
            credentials=self.credentials,
        )
        self.repos = RepoImporter(
            self.settings.shared_fs_root,
            git_binary=self.settings.git_binary,
            timeout=self.settings.git_timeout_seconds,
            max_bytes=self.settings.max_upload_bytes,
            max_members=self.settings.max_archive_members,
        )
        self.boilerplates = BoilerplateService(self.store, self.settings, self.repos)
        logger.info(
            "runtime_init_completed",
            session_store=type(self.sessions).__name__,
        )

    async def close(self) -> None:
        """Release the session store client and the database pool."""
        if self.sessions is not None:
            await self.sessions.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building competing runtimes.
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
