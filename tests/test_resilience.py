"""
Tests for core plumbing: collaborator timeouts, read retries, keyed locks,
identity, checkout cleanup, the webhook ledger and the server entry point.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update

from storefront import server
from storefront.core.exceptions import IdentityRequiredError, InvalidQuantityError, UpstreamUnavailableError
from storefront.core.identity import Identity
from storefront.core.locks import KeyedLockManager
from storefront.core.redis_client import WebhookEventLedger
from storefront.core.resilience import RetryConfig, calculate_backoff, call_with_timeout, retry_read
from storefront.core.utils import utcnow
from storefront.models import CartItem, CheckoutSession, CheckoutStatus
from storefront.services import checkout_cleanup
from storefront.services.checkout_cleanup import run_checkout_cleanup
from storefront.services.cart_service import CartService
from storefront.services.checkout_service import CheckoutService

FAST = RetryConfig(max_retries=2, base_delay=0.001, max_delay=0.002)


class TestBackoff:

    def test_exponential_growth_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter_factor=0)
        assert [calculate_backoff(n, config) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_within_factor(self):
        config = RetryConfig(base_delay=1.0, jitter_factor=0.5)
        assert all(1.0 <= calculate_backoff(0, config) <= 1.5 for _ in range(20))


class TestCallWithTimeout:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick():
            return "ok"

        assert await call_with_timeout(quick(), 1, "inventory") == "ok"

    @pytest.mark.asyncio
    async def test_timeout_becomes_upstream_unavailable(self):
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await call_with_timeout(asyncio.sleep(1), 0.01, "payment")
        assert exc_info.value.collaborator == "payment"
        assert exc_info.value.status_code == 503


class TestRetryRead:

    @pytest.mark.asyncio
    async def test_retries_upstream_failures(self):
        read = AsyncMock(side_effect=[UpstreamUnavailableError("inventory"), "summary"])
        assert await retry_read(read, "identity", config=FAST) == "summary"
        assert read.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        read = AsyncMock(side_effect=UpstreamUnavailableError("inventory"))
        with pytest.raises(UpstreamUnavailableError):
            await retry_read(read, config=FAST)
        assert read.await_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        read = AsyncMock(side_effect=InvalidQuantityError("bad"))
        with pytest.raises(InvalidQuantityError):
            await retry_read(read, config=FAST)
        assert read.await_count == 1


class TestKeyedLocks:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLockManager()
        events = []

        async def worker(name):
            async with locks.hold("session:1", 7):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLockManager()
        started = asyncio.Event()

        async def first():
            async with locks.hold("session:1", 7):
                started.set()
                await asyncio.sleep(0.05)

        async def second():
            await started.wait()
            async with locks.hold("session:1", 8):
                return "entered"

        results = await asyncio.wait_for(asyncio.gather(first(), second()), timeout=1)
        assert results[1] == "entered"

    @pytest.mark.asyncio
    async def test_idle_locks_are_released(self):
        locks = KeyedLockManager()
        async with locks.hold("k"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_services_keep_an_injected_empty_manager(self):
        locks = KeyedLockManager()
        assert CartService(locks=locks).locks is locks
        assert CheckoutService(gateway=None, locks=locks).locks is locks

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLockManager()
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")
        assert len(locks) == 0


class TestIdentity:

    def test_exactly_one_owner(self):
        with pytest.raises(IdentityRequiredError):
            Identity()
        with pytest.raises(IdentityRequiredError):
            Identity(user_id="1", session_id="abc")

    def test_keys(self):
        assert Identity.for_user(42).key == "user:42"
        assert Identity.for_session("abc").key == "session:abc"

    def test_owner_fields(self):
        assert Identity.for_user(1).owner_fields(CartItem) == {"user_id": "1"}
        assert Identity.for_session("abc").owner_fields(CheckoutSession) == {"guest_session_id": "abc"}


class TestCheckoutCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_pass_updates_heartbeat(
        self, session_factory, catalog, guest, cart_service, checkout_service
    ):
        async with session_factory() as db:
            await cart_service.add_item(db, guest, catalog["hoodie"], catalog["hoodie_v"], 1)
            session = await checkout_service.begin(db, guest, "attempt-0001")
            await db.execute(
                update(CheckoutSession)
                .where(CheckoutSession.id == session.id)
                .values(expires_at=utcnow() - timedelta(minutes=5))
            )
            await db.commit()

        with patch.dict(checkout_cleanup.cleanup_heartbeat, {"records_processed": 0, "errors": 0}):
            await run_checkout_cleanup(checkout_service, session_factory)
            assert checkout_cleanup.cleanup_heartbeat["records_processed"] == 1
            assert checkout_cleanup.cleanup_heartbeat["last_success"] is not None

        async with session_factory() as db:
            stats = await checkout_cleanup.get_session_stats(session_factory)
            expired = await db.get(CheckoutSession, session.id)
        assert expired.status == CheckoutStatus.EXPIRED.value
        assert stats["open_sessions"] == 0


class TestWebhookLedger:

    @pytest.mark.asyncio
    async def test_in_memory_fallback_without_redis(self):
        ledger = WebhookEventLedger(max_events=2)
        assert await ledger.is_processed("evt_1") is False

        assert await ledger.mark_processed("evt_1") is False
        assert await ledger.is_processed("evt_1") is True

    @pytest.mark.asyncio
    async def test_oldest_events_are_forgotten(self):
        ledger = WebhookEventLedger(max_events=2)
        for event_id in ("evt_1", "evt_2", "evt_3"):
            await ledger.mark_processed(event_id)
        assert await ledger.is_processed("evt_1") is False
        assert await ledger.is_processed("evt_3") is True


class TestServerEntryPoint:

    def test_port_from_environment(self, monkeypatch):
        monkeypatch.setenv("PORT", "9001")
        assert server._read_port() == 9001

    def test_invalid_port_exits(self, monkeypatch):
        monkeypatch.setenv("PORT", "eighty")
        with pytest.raises(SystemExit):
            server._read_port()

    def test_main_runs_uvicorn(self, monkeypatch):
        monkeypatch.delenv("PORT", raising=False)
        with patch.object(server.uvicorn, "run") as run:
            server.main()
        run.assert_called_once()
        assert run.call_args.args == ("storefront.main:app",)
        assert run.call_args.kwargs["port"] == 8000
