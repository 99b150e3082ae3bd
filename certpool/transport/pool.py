"""
Connection pooling for certpool.

This module provides a ConnectionPool of handshake-completed TLS sessions.
Sessions are keyed by PoolKey: endpoint, certificate policy, the identity of
the certificate the client offers, and the minimum TLS version. A session is
only ever reused for a request with an equal key, so a session negotiated
with one certificate never serves a request that implies another.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from certpool.certificates.base import CertificatePolicy
from certpool.config import PoolSettings
from certpool.exceptions import PoolExhaustedError
from .backend import Endpoint
from .handshake import SessionState, TlsSession

if TYPE_CHECKING:
    from certpool.observability.metrics import PoolMetrics


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolKey:
    """Equivalence class of requests that may share a TLS session.

    Attributes:
        endpoint: Remote peer
        policy: Certificate policy of the requesting client
        certificate_fingerprint: Identity of the certificate(s) the client
            offers, or None when it offers none
        min_tls_version: Protocol constraint of the requesting client
    """
    endpoint: Endpoint
    policy: CertificatePolicy
    certificate_fingerprint: Optional[str]
    min_tls_version: str = "1.2"

    def __str__(self) -> str:
        cert = self.certificate_fingerprint[:12] if self.certificate_fingerprint else "none"
        return f"{self.endpoint} [{self.policy.value}, cert={cert}, tls>={self.min_tls_version}]"


@dataclass
class PoolEntry:
    """Sessions for one PoolKey.

    Attributes:
        idle: Sessions available for reuse, most recently released last
        busy: Sessions owned by in-flight requests, by session id
        pending: Reservations held by callers negotiating a new session
        evicted: Busy session ids to close instead of re-pooling
    """
    idle: list[TlsSession] = field(default_factory=list)
    busy: dict[str, TlsSession] = field(default_factory=dict)
    pending: int = 0
    evicted: set[str] = field(default_factory=set)

    @property
    def size(self) -> int:
        return len(self.idle) + len(self.busy) + self.pending

    def is_empty(self) -> bool:
        return self.size == 0


class ConnectionPool:
    """Async-safe pool of TLS sessions.

    This class manages idle sessions per PoolKey, providing:
    - Atomic acquisition (a session is handed to exactly one caller)
    - Optional per-key and global connection limits
    - Idle session expiry on a background task
    - Deterministic closing of every session it drops

    A per-key lock guards only the bookkeeping; no lock is held while a
    handshake runs or a session is closed.

    Example:
        pool = ConnectionPool(PoolSettings())
        session = await pool.acquire(key)
        if session is None:
            try:
                session = await negotiator.negotiate(...)
                await pool.register(key, session)
            except BaseException:
                ...  # close the session if any, then cancel_reservation(key)
                raise
        ...
        await pool.release(key, session)
    """

    def __init__(
        self,
        settings: Optional[PoolSettings] = None,
        metrics: Optional["PoolMetrics"] = None,
    ) -> None:
        """Initialize connection pool.

        Args:
            settings: Pool configuration
            metrics: Optional Prometheus metrics collector
        """
        self._settings = settings or PoolSettings()
        self._metrics = metrics

        self._entries: dict[PoolKey, PoolEntry] = {}
        self._key_locks: dict[PoolKey, asyncio.Lock] = {}
        self._lock_users: dict[PoolKey, int] = {}

        # Background tasks
        self._cleanup_task: asyncio.Task | None = None
        self._running = False

        # Metrics
        self._total_acquisitions = 0
        self._total_reuses = 0
        self._total_registrations = 0
        self._total_discards = 0
        self._total_cleanups = 0

        logger.debug(
            f"ConnectionPool initialized (max idle per key: "
            f"{self._settings.max_idle_per_key}, "
            f"max per key: {self._settings.max_connections_per_key or 'unbounded'}, "
            f"max total: {self._settings.max_total_connections or 'unbounded'})"
        )

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    def _total_size(self) -> int:
        return sum(entry.size for entry in self._entries.values())

    def _drop_if_empty(self, key: PoolKey) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.is_empty():
            del self._entries[key]

    @contextlib.asynccontextmanager
    async def _locked(self, key: PoolKey) -> AsyncIterator[None]:
        """Hold the lock for `key`.

        A key's lock lives while some caller holds or waits for it; the
        last user drops it once the key has no entry left.
        """
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                if key not in self._entries:
                    del self._key_locks[key]

    def _update_idle_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_idle_sessions(
                sum(len(entry.idle) for entry in self._entries.values())
            )

    async def _close_all(self, sessions: list[TlsSession], reason: str) -> None:
        for session in sessions:
            await session.close()
            logger.debug(f"Closed session {session.id} ({reason})")

    async def start(self) -> None:
        """Start the background idle cleanup task."""
        if self._running:
            return

        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.debug("ConnectionPool cleanup task started")

    async def stop(self) -> None:
        """Stop background tasks and close all sessions."""
        if self._running:
            self._running = False

            if self._cleanup_task:
                self._cleanup_task.cancel()
                try:
                    await self._cleanup_task
                except asyncio.CancelledError:
                    pass
                self._cleanup_task = None

        await self.close_all()

    async def acquire(self, key: PoolKey) -> Optional[TlsSession]:
        """Take an idle session for `key`.

        On a hit the session moves to IN_USE and belongs to the caller. On a
        miss the caller holds a reservation and must follow up with
        `register()` or `cancel_reservation()`.

        Args:
            key: Pool key of the request

        Returns:
            A reusable session, or None if a new one must be negotiated

        Raises:
            PoolExhaustedError: On a miss when a configured limit is reached
        """
        stale: list[TlsSession] = []
        session: Optional[TlsSession] = None

        try:
            async with self._locked(key):
                self._total_acquisitions += 1
                entry = self._entries.setdefault(key, PoolEntry())

                while entry.idle:
                    candidate = entry.idle.pop()
                    if candidate.is_reusable() and not candidate.is_idle_expired(
                        self._settings.idle_timeout_seconds
                    ):
                        candidate.transition(SessionState.IN_USE)
                        candidate.mark_used()
                        entry.busy[candidate.id] = candidate
                        session = candidate
                        break
                    stale.append(candidate)

                if session is None:
                    self._reserve(key, entry)
        except PoolExhaustedError:
            await self._close_all(stale, "stale")
            raise

        try:
            await self._close_all(stale, "stale")
        except BaseException:
            # the caller never sees the session or the reservation
            if session is not None:
                await self.discard(key, session)
            else:
                await self.cancel_reservation(key)
            raise

        if session is not None:
            self._total_reuses += 1
            if self._metrics:
                self._metrics.record_reuse()
            logger.debug(
                f"Reusing session {session.id} for {key} (use count: {session.use_count})"
            )
        self._update_idle_gauge()
        return session

    def _reserve(self, key: PoolKey, entry: PoolEntry) -> None:
        per_key = self._settings.max_connections_per_key
        if per_key is not None and entry.size >= per_key:
            self._drop_if_empty(key)
            raise PoolExhaustedError(key, per_key)

        total = self._settings.max_total_connections
        if total is not None and self._total_size() >= total:
            self._drop_if_empty(key)
            raise PoolExhaustedError(key, total)

        entry.pending += 1

    async def register(self, key: PoolKey, session: TlsSession) -> None:
        """Track a freshly negotiated session as busy, consuming a reservation."""
        async with self._locked(key):
            entry = self._entries.setdefault(key, PoolEntry())
            if entry.pending > 0:
                entry.pending -= 1
            session.pool_key = key
            session.transition(SessionState.IN_USE)
            session.mark_used()
            entry.busy[session.id] = session
            self._total_registrations += 1

        logger.debug(f"Registered new session {session.id} for {key}")

    async def cancel_reservation(self, key: PoolKey) -> None:
        """Give back a reservation after a failed handshake."""
        async with self._locked(key):
            entry = self._entries.get(key)
            if entry is not None and entry.pending > 0:
                entry.pending -= 1
            self._drop_if_empty(key)

    async def release(self, key: PoolKey, session: TlsSession) -> bool:
        """Return a session after a clean exchange.

        Releasing a session that is not busy under `key` (for example a
        second release of the same session) is a no-op.

        Returns:
            True if the session is now idle in the pool, False if it was
            ignored or closed instead
        """
        close_reason: Optional[str] = None

        async with self._locked(key):
            entry = self._entries.get(key)
            if entry is None or session.id not in entry.busy:
                logger.warning(
                    f"Ignoring release of session {session.id}: not in use under {key}"
                )
                return False

            del entry.busy[session.id]

            if session.id in entry.evicted:
                entry.evicted.discard(session.id)
                close_reason = "evicted"
            elif not session.is_reusable():
                close_reason = "not reusable"
            elif len(entry.idle) >= self._settings.max_idle_per_key:
                close_reason = "idle limit reached"
            else:
                session.transition(SessionState.IDLE)
                session.last_used = time.monotonic()
                entry.idle.append(session)

            self._drop_if_empty(key)

        self._update_idle_gauge()

        if close_reason is not None:
            await self._close_all([session], close_reason)
            return False

        logger.debug(f"Released session {session.id} to pool for {key}")
        return True

    async def discard(self, key: PoolKey, session: TlsSession) -> None:
        """Remove and close a session, e.g. after a transport fault.

        Other sessions for the same key are not affected.
        """
        async with self._locked(key):
            entry = self._entries.get(key)
            if entry is not None:
                entry.busy.pop(session.id, None)
                entry.evicted.discard(session.id)
                if session in entry.idle:
                    entry.idle.remove(session)
                self._drop_if_empty(key)

        self._total_discards += 1
        if self._metrics:
            self._metrics.record_discard()
        self._update_idle_gauge()
        await self._close_all([session], "discarded")

    async def evict(self, key: PoolKey) -> int:
        """Close all idle sessions for `key`; busy ones close when released.

        Returns:
            Number of idle sessions closed
        """
        async with self._locked(key):
            entry = self._entries.get(key)
            if entry is None:
                return 0
            idle, entry.idle = entry.idle, []
            entry.evicted.update(entry.busy)
            self._drop_if_empty(key)

        self._update_idle_gauge()
        await self._close_all(idle, "evicted")
        if idle:
            logger.info(f"Evicted {len(idle)} idle sessions for {key}")
        return len(idle)

    async def cleanup_idle(self) -> int:
        """Remove and close sessions idle longer than the idle timeout."""
        expired: list[TlsSession] = []

        for key in list(self._entries):
            async with self._locked(key):
                entry = self._entries.get(key)
                if entry is None:
                    continue
                keep = []
                for session in entry.idle:
                    if session.is_idle_expired(self._settings.idle_timeout_seconds):
                        expired.append(session)
                    else:
                        keep.append(session)
                entry.idle = keep
                self._drop_if_empty(key)

        self._update_idle_gauge()
        await self._close_all(expired, "idle timeout")

        if expired:
            self._total_cleanups += len(expired)
            logger.debug(f"Cleaned up {len(expired)} idle sessions")
        return len(expired)

    async def _cleanup_loop(self) -> None:
        """Background task to clean up idle sessions."""
        while self._running:
            try:
                await asyncio.sleep(self._settings.cleanup_interval_seconds)
                await self.cleanup_idle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup loop: {e}")

    async def close_all(self) -> None:
        """Close every pooled and in-flight session."""
        sessions: list[TlsSession] = []
        for entry in self._entries.values():
            sessions.extend(entry.idle)
            sessions.extend(entry.busy.values())
        self._entries.clear()
        for key in [k for k in self._key_locks if k not in self._lock_users]:
            del self._key_locks[key]

        self._update_idle_gauge()
        await self._close_all(sessions, "pool closed")
        if sessions:
            logger.info(f"Closed {len(sessions)} pooled sessions")

    def idle_count(self, key: PoolKey) -> int:
        entry = self._entries.get(key)
        return len(entry.idle) if entry else 0

    def busy_count(self, key: PoolKey) -> int:
        entry = self._entries.get(key)
        return len(entry.busy) if entry else 0

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics.

        Returns:
            Dictionary of pool statistics
        """
        return {
            "total_acquisitions": self._total_acquisitions,
            "total_reuses": self._total_reuses,
            "total_registrations": self._total_registrations,
            "total_discards": self._total_discards,
            "total_cleanups": self._total_cleanups,
            "idle_sessions": sum(len(e.idle) for e in self._entries.values()),
            "busy_sessions": sum(len(e.busy) for e in self._entries.values()),
            "key_count": len(self._entries),
            "lock_count": len(self._key_locks),
        }
