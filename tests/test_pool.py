"""
Tests for the certpool connection pool.

Tests keyed reuse, release idempotence, limits, eviction, idle expiry and
concurrent acquisition.
"""

import asyncio

import pytest

from certpool.certificates import CertificatePolicy, accept_any_certificate
from certpool.config import PoolSettings
from certpool.exceptions import PoolExhaustedError
from certpool.testing import MockTlsBackend
from certpool.transport import ConnectionPool, HandshakeNegotiator, PoolKey, SessionState


@pytest.fixture
def negotiator(mock_tls_backend):
    return HandshakeNegotiator(mock_tls_backend)


@pytest.fixture
def key(endpoint, client_certificate):
    return PoolKey(endpoint, CertificatePolicy.MANUAL, client_certificate.fingerprint)


@pytest.fixture
def other_key(endpoint, other_client_certificate):
    return PoolKey(endpoint, CertificatePolicy.MANUAL, other_client_certificate.fingerprint)


async def checkout(pool, negotiator, key):
    """Acquire or negotiate-and-register, as the dispatcher does."""
    session = await pool.acquire(key)
    if session is None:
        session = await negotiator.negotiate(
            key.endpoint, key.policy, [], accept_any_certificate
        )
        await pool.register(key, session)
    return session


class TestPoolKey:
    """Test pool key equality."""

    def test_keys_differ_by_certificate(self, key, other_key):
        assert key != other_key

    def test_keys_differ_by_policy(self, endpoint, key):
        automatic = PoolKey(endpoint, CertificatePolicy.AUTOMATIC, key.certificate_fingerprint)
        assert automatic != key

    def test_keys_differ_by_tls_version(self, endpoint, key):
        strict = PoolKey(endpoint, key.policy, key.certificate_fingerprint, "1.3")
        assert strict != key

    def test_equal_keys_hash_equal(self, endpoint, key):
        same = PoolKey(endpoint, CertificatePolicy.MANUAL, key.certificate_fingerprint)
        assert same == key
        assert hash(same) == hash(key)

    def test_str(self, key):
        assert "service.test" in str(key)
        assert "manual" in str(key)


class TestAcquireRelease:
    """Test the acquire / register / release cycle."""

    @pytest.mark.asyncio
    async def test_miss_then_reuse(self, negotiator, key):
        """Test that a released session is handed out again."""
        pool = ConnectionPool()

        first = await checkout(pool, negotiator, key)
        assert first.state is SessionState.IN_USE
        assert pool.busy_count(key) == 1

        assert await pool.release(key, first) is True
        assert first.state is SessionState.IDLE
        assert pool.idle_count(key) == 1

        second = await checkout(pool, negotiator, key)

        assert second is first
        assert second.use_count == 2
        assert negotiator.handshake_count == 1
        assert pool.get_stats()["total_reuses"] == 1

    @pytest.mark.asyncio
    async def test_release_idempotent(self, negotiator, key):
        """Test that releasing twice never double-inserts."""
        pool = ConnectionPool()
        session = await checkout(pool, negotiator, key)

        assert await pool.release(key, session) is True
        assert await pool.release(key, session) is False
        assert pool.idle_count(key) == 1

    @pytest.mark.asyncio
    async def test_release_unknown_session(self, negotiator, key, other_key):
        """Test that releasing under the wrong key is a no-op."""
        pool = ConnectionPool()
        session = await checkout(pool, negotiator, key)

        assert await pool.release(other_key, session) is False
        assert other_key not in pool
        assert pool.busy_count(key) == 1

    @pytest.mark.asyncio
    async def test_keys_isolated(self, negotiator, key, other_key):
        """Test that sessions never cross pool keys."""
        pool = ConnectionPool()
        session = await checkout(pool, negotiator, key)
        await pool.release(key, session)

        assert await pool.acquire(other_key) is None
        await pool.cancel_reservation(other_key)
        assert pool.idle_count(key) == 1

    @pytest.mark.asyncio
    async def test_most_recent_first(self, negotiator, key):
        """Test that the most recently released session is reused first."""
        pool = ConnectionPool()
        a = await checkout(pool, negotiator, key)
        b = await checkout(pool, negotiator, key)
        await pool.release(key, a)
        await pool.release(key, b)

        assert await pool.acquire(key) is b

    @pytest.mark.asyncio
    async def test_idle_limit(self, negotiator, mock_tls_backend, key):
        """Test that sessions beyond max_idle_per_key are closed."""
        pool = ConnectionPool(PoolSettings(max_idle_per_key=1))
        a = await checkout(pool, negotiator, key)
        b = await checkout(pool, negotiator, key)

        assert await pool.release(key, a) is True
        assert await pool.release(key, b) is False
        assert b.is_closed
        assert pool.idle_count(key) == 1

    @pytest.mark.asyncio
    async def test_stale_idle_session_skipped(self, negotiator, key):
        """Test that a session that died while idle is not handed out."""
        pool = ConnectionPool()
        session = await checkout(pool, negotiator, key)
        await pool.release(key, session)
        await session.close()

        assert await pool.acquire(key) is None
        assert pool.idle_count(key) == 0


class TestLimits:
    """Test bounded pools."""

    @pytest.mark.asyncio
    async def test_per_key_exhaustion(self, key):
        """Test that reservations count against the per-key limit."""
        pool = ConnectionPool(PoolSettings(max_idle_per_key=1, max_connections_per_key=1))

        assert await pool.acquire(key) is None
        with pytest.raises(PoolExhaustedError) as exc_info:
            await pool.acquire(key)
        assert exc_info.value.max_connections == 1

        await pool.cancel_reservation(key)
        assert await pool.acquire(key) is None

    @pytest.mark.asyncio
    async def test_total_exhaustion(self, key, other_key):
        """Test the global limit across keys."""
        pool = ConnectionPool(PoolSettings(max_idle_per_key=1, max_total_connections=1))

        assert await pool.acquire(key) is None
        with pytest.raises(PoolExhaustedError):
            await pool.acquire(other_key)

        assert other_key not in pool

    @pytest.mark.asyncio
    async def test_cancel_reservation_drops_empty_entry(self, key):
        """Test that a failed handshake leaves no pool entry."""
        pool = ConnectionPool()

        assert await pool.acquire(key) is None
        await pool.cancel_reservation(key)

        assert key not in pool


class TestDiscardEvict:
    """Test removing sessions."""

    @pytest.mark.asyncio
    async def test_discard_leaves_siblings(self, negotiator, mock_tls_backend, key):
        """Test that discarding one session keeps the others."""
        pool = ConnectionPool()
        a = await checkout(pool, negotiator, key)
        b = await checkout(pool, negotiator, key)
        await pool.release(key, b)

        await pool.discard(key, a)

        assert a.is_closed
        assert not b.is_closed
        assert pool.idle_count(key) == 1
        assert pool.busy_count(key) == 0

    @pytest.mark.asyncio
    async def test_evict(self, negotiator, key):
        """Test that eviction closes idle sessions now and busy ones on return."""
        pool = ConnectionPool()
        idle = await checkout(pool, negotiator, key)
        busy = await checkout(pool, negotiator, key)
        await pool.release(key, idle)

        assert await pool.evict(key) == 1
        assert idle.is_closed
        assert not busy.is_closed

        assert await pool.release(key, busy) is False
        assert busy.is_closed
        assert key not in pool


class TestIdleExpiry:
    """Test idle session cleanup."""

    @pytest.mark.asyncio
    async def test_cleanup_idle(self, negotiator, key):
        """Test that sessions idle past the timeout are closed."""
        pool = ConnectionPool(PoolSettings(idle_timeout_seconds=30))
        old = await checkout(pool, negotiator, key)
        fresh = await checkout(pool, negotiator, key)
        await pool.release(key, old)
        await pool.release(key, fresh)
        old.last_used -= 60

        assert await pool.cleanup_idle() == 1
        assert old.is_closed
        assert pool.idle_count(key) == 1

    @pytest.mark.asyncio
    async def test_background_cleanup(self, negotiator, key):
        """Test that the background task expires idle sessions."""
        pool = ConnectionPool(
            PoolSettings(idle_timeout_seconds=0.01, cleanup_interval_seconds=0.01)
        )
        await pool.start()
        try:
            session = await checkout(pool, negotiator, key)
            await pool.release(key, session)
            await asyncio.sleep(0.1)

            assert session.is_closed
            assert key not in pool
        finally:
            await pool.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_everything(self, negotiator, key, other_key):
        """Test that stopping closes idle and busy sessions."""
        pool = ConnectionPool()
        await pool.start()
        idle = await checkout(pool, negotiator, key)
        busy = await checkout(pool, negotiator, other_key)
        await pool.release(key, idle)

        await pool.stop()

        assert idle.is_closed
        assert busy.is_closed
        assert pool.get_stats()["key_count"] == 0


class TestConcurrentAcquire:
    """Test that concurrent acquisitions never share a session."""

    @pytest.mark.asyncio
    async def test_single_idle_session_goes_to_one_caller(self, negotiator, key):
        """Test that two concurrent acquires get the idle session at most once."""
        pool = ConnectionPool()
        session = await checkout(pool, negotiator, key)
        await pool.release(key, session)

        results = await asyncio.gather(pool.acquire(key), pool.acquire(key))

        assert results.count(session) == 1
        assert results.count(None) == 1

    @pytest.mark.asyncio
    async def test_concurrent_checkouts_distinct(self, key):
        """Test that concurrent requests each get their own session."""
        backend = MockTlsBackend(handshake_delay=0.01)
        negotiator = HandshakeNegotiator(backend)
        pool = ConnectionPool()

        sessions = await asyncio.gather(*(checkout(pool, negotiator, key) for _ in range(5)))

        assert len({s.id for s in sessions}) == 5
        assert pool.busy_count(key) == 5
        assert backend.connect_attempts == 5

        for s in sessions:
            await pool.release(key, s)
        assert pool.idle_count(key) == 5


class TestCancellation:
    """Test that cancelled pool operations give back what they took."""

    @pytest.mark.asyncio
    async def test_cancelled_stale_close_returns_reservation(self, negotiator, key):
        """Test that a reservation is released when closing stale sessions is interrupted."""
        pool = ConnectionPool(
            PoolSettings(max_idle_per_key=1, max_connections_per_key=1, idle_timeout_seconds=30)
        )
        session = await checkout(pool, negotiator, key)
        await pool.release(key, session)
        session.last_used -= 60

        closing = asyncio.Event()

        async def stalled_close():
            closing.set()
            await asyncio.Event().wait()

        session.close = stalled_close

        task = asyncio.create_task(pool.acquire(key))
        await closing.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert key not in pool
        assert await pool.acquire(key) is None

    @pytest.mark.asyncio
    async def test_cancelled_lock_waiter(self, key):
        """Test that a waiter cancelled on the key lock leaves no lock behind."""
        pool = ConnectionPool()

        async with pool._locked(key):
            task = asyncio.create_task(pool.cancel_reservation(key))
            await asyncio.sleep(0)
            task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert pool.get_stats()["lock_count"] == 0


class TestKeyLocks:
    """Test that per-key locks do not outlive their entries."""

    @pytest.mark.asyncio
    async def test_locks_dropped_with_entries(self, negotiator, key, other_key):
        pool = ConnectionPool()
        session = await checkout(pool, negotiator, key)

        assert await pool.acquire(other_key) is None
        await pool.cancel_reservation(other_key)
        assert pool.get_stats()["lock_count"] == 1

        await pool.discard(key, session)
        assert pool.get_stats()["lock_count"] == 0

    @pytest.mark.asyncio
    async def test_locks_dropped_on_close_all(self, negotiator, key):
        pool = ConnectionPool()
        session = await checkout(pool, negotiator, key)
        await pool.release(key, session)

        await pool.close_all()

        assert pool.get_stats()["lock_count"] == 0

    @pytest.mark.asyncio
    async def test_locks_dropped_after_cleanup(self, negotiator, key):
        pool = ConnectionPool(PoolSettings(idle_timeout_seconds=30))
        session = await checkout(pool, negotiator, key)
        await pool.release(key, session)
        session.last_used -= 60

        assert await pool.cleanup_idle() == 1
        assert pool.get_stats()["lock_count"] == 0
