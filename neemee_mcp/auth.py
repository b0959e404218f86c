"""API key authentication: bcrypt verification behind a short-lived cache."""

from __future__ import annotations

import asyncio
import queue
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Iterable, Protocol, Sequence

import bcrypt
from fastmcp.server.auth.auth import AccessToken, AuthProvider

from . import metrics
from .logging import get_logger
from .models import SCOPE_ADMIN, ApiKeyRecord

LOGGER = get_logger(__name__)

DEFAULT_CACHE_TTL = timedelta(minutes=5)
_CACHE_PURGE_THRESHOLD = 256

Clock = Callable[[], float]
Verifier = Callable[[str, str], bool]


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Identity attached to a request once its API key is accepted."""

    tenant_id: str
    scopes: frozenset[str]
    key_id: str | None = None

    @classmethod
    def build(cls, tenant_id: str, scopes: Iterable[str], key_id: str | None = None) -> "AuthContext":
        return cls(tenant_id=tenant_id, scopes=frozenset(scopes), key_id=key_id)

    def to_dict(self) -> dict[str, object]:
        return {"tenant_id": self.tenant_id, "scopes": sorted(self.scopes), "key_id": self.key_id}


def has_scope(context: AuthContext, required: str) -> bool:
    """``admin`` grants every scope; anything else must be held literally."""

    return required in context.scopes or SCOPE_ADMIN in context.scopes


class ApiKeyStore(Protocol):
    def find_active_api_keys(self) -> Sequence[ApiKeyRecord]: ...

    def touch_api_key_last_used(self, key_id: str) -> None: ...


def bcrypt_verify(raw_key: str, key_hash: str) -> bool:
    return bcrypt.checkpw(raw_key.encode("utf-8"), key_hash.encode("utf-8"))


def hash_api_key(raw_key: str, *, rounds: int = 12) -> str:
    return bcrypt.hashpw(raw_key.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    context: AuthContext
    expires_at: float


class ApiKeyCache:
    """Process-local map from raw key to verified context, bounded by a TTL.

    Expiry instants come from the injected ``clock`` so tests can drive time
    explicitly. A stale entry is dropped on sight and never returned.
    """

    def __init__(self, ttl: timedelta = DEFAULT_CACHE_TTL, clock: Clock = time.monotonic) -> None:
        self._ttl = max(ttl.total_seconds(), 0.0)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, raw_key: str) -> AuthContext | None:
        with self._lock:
            entry = self._entries.get(raw_key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._entries.pop(raw_key, None)
                return None
            return entry.context

    def put(self, raw_key: str, context: AuthContext) -> None:
        with self._lock:
            if len(self._entries) >= _CACHE_PURGE_THRESHOLD:
                self._purge_locked()
            self._entries[raw_key] = CacheEntry(context=context, expires_at=self._clock() + self._ttl)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked()

    def _purge_locked(self) -> int:
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_STOP = object()


class LastUsedRecorder:
    """Background worker that stamps ``last_used_at`` on accepted keys.

    Submissions never block the authenticating caller, and store failures
    are logged and dropped.
    """

    def __init__(self, store: ApiKeyStore) -> None:
        self._store = store
        self._queue: queue.Queue[object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run,
                name="neemee-mcp-last-used",
                daemon=True,
            )
            self._thread.start()

    def submit(self, key_id: str) -> None:
        self.start()
        self._queue.put(key_id)

    def flush(self) -> None:
        """Block until every submitted update has been attempted."""

        self._queue.join()

    def stop(self, timeout: float = 1.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._store.touch_api_key_last_used(str(item))
            except Exception:
                LOGGER.warning("auth.last_used.failed", exc_info=True, extra={"context": {"key_id": item}})
            finally:
                self._queue.task_done()


class ApiKeyAuthenticator:
    """Resolve a raw bearer key to an :class:`AuthContext`.

    Missing, expired, and unverifiable keys all yield ``None``, and so does a
    store failure: callers cannot tell "wrong key" from "backend down".
    """

    def __init__(
        self,
        store: ApiKeyStore,
        *,
        verifier: Verifier = bcrypt_verify,
        cache: ApiKeyCache | None = None,
        clock: Clock = time.monotonic,
        ttl: timedelta = DEFAULT_CACHE_TTL,
        recorder: LastUsedRecorder | None = None,
    ) -> None:
        self._store = store
        self._verifier = verifier
        self._cache = cache if cache is not None else ApiKeyCache(ttl=ttl, clock=clock)
        self._recorder = recorder if recorder is not None else LastUsedRecorder(store)

    @property
    def cache(self) -> ApiKeyCache:
        return self._cache

    @property
    def recorder(self) -> LastUsedRecorder:
        return self._recorder

    def authenticate(self, raw_key: str | None) -> AuthContext | None:
        if not raw_key:
            return None

        cached = self._cache.get(raw_key)
        if cached is not None:
            metrics.record_auth("hit")
            LOGGER.debug("auth.cache.hit", extra={"context": {"key_id": cached.key_id}})
            return cached
        metrics.record_auth("miss")

        try:
            candidates = list(self._store.find_active_api_keys())
        except Exception:
            LOGGER.error("auth.lookup.failed", exc_info=True)
            metrics.record_auth("rejected")
            return None

        for record in candidates:
            if not record.is_active():
                continue
            if not self._verify(raw_key, record):
                continue
            context = AuthContext.build(record.tenant_id, record.scopes, record.id)
            self._cache.put(raw_key, context)
            self._recorder.submit(record.id)
            LOGGER.info(
                "auth.accepted",
                extra={"context": {"key_id": record.id, "tenant_id": record.tenant_id}},
            )
            return context

        metrics.record_auth("rejected")
        LOGGER.info("auth.rejected", extra={"context": {"candidates": len(candidates)}})
        return None

    def _verify(self, raw_key: str, record: ApiKeyRecord) -> bool:
        try:
            return bool(self._verifier(raw_key, record.key_hash))
        except Exception:
            LOGGER.warning("auth.verify.failed", exc_info=True, extra={"context": {"key_id": record.id}})
            return False

    def close(self) -> None:
        self._recorder.flush()
        self._recorder.stop()
        self._cache.clear()


class NeemeeApiKeyAuthProvider(AuthProvider):
    """Bearer-token verifier backed by stored, bcrypt-hashed API keys."""

    def __init__(
        self,
        authenticator: ApiKeyAuthenticator,
        *,
        base_url: str | None = None,
        required_scopes: list[str] | None = None,
    ) -> None:
        super().__init__(base_url=base_url, required_scopes=required_scopes)
        self._authenticator = authenticator

    @property
    def authenticator(self) -> ApiKeyAuthenticator:
        return self._authenticator

    async def verify_token(self, token: str) -> AccessToken | None:
        if not token:
            return None
        # bcrypt is CPU bound; keep it off the event loop.
        context = await asyncio.to_thread(self._authenticator.authenticate, token.strip())
        if context is None:
            return None
        return AccessToken(
            token=token,
            client_id=context.tenant_id,
            scopes=sorted(context.scopes),
            claims={"tenant_id": context.tenant_id, "key_id": context.key_id},
        )
