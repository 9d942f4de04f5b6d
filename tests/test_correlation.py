"""
Tests for request/response correlation.
"""

import asyncio
import threading

import pytest

from chatforward.correlation import CorrelationStore, RequestStatus
from chatforward.errors import DuplicateRequestError


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestRegisterAndComplete:
    """Registration and resolution of pending requests."""

    @pytest.mark.asyncio
    async def test_complete_resolves_waiter(self):
        """Test a response resolves the waiter with its payload."""
        store = CorrelationStore()
        store.register("a")

        assert store.complete("a", {"value": 1})
        result = await store.wait("a", timeout=1.0)

        assert result.success
        assert result.status == RequestStatus.OK
        assert result.payload == {"value": 1}
        assert result.request_id == "a"
        assert store.size() == 0

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self):
        """Test registering a pending id twice raises."""
        store = CorrelationStore()
        store.register("a")

        with pytest.raises(DuplicateRequestError):
            store.register("a")
        assert store.size() == 1

    @pytest.mark.asyncio
    async def test_unknown_id_is_dropped(self, caplog):
        """Test a response for an unknown id is logged and ignored."""
        store = CorrelationStore()

        assert not store.complete("missing", {})
        assert "missing" in caplog.text

    @pytest.mark.asyncio
    async def test_second_response_is_dropped(self):
        """Test only the first response for an id is delivered."""
        store = CorrelationStore()
        store.register("a")

        assert store.complete("a", {"n": 1})
        assert not store.complete("a", {"n": 2})
        result = await store.wait("a", timeout=1.0)
        assert result.payload == {"n": 1}

    @pytest.mark.asyncio
    async def test_complete_from_another_thread(self):
        """Test a response completed off the loop thread reaches the waiter."""
        store = CorrelationStore()
        store.register("a")

        thread = threading.Thread(target=store.complete, args=("a", {"from": "thread"}))
        thread.start()
        result = await store.wait("a", timeout=2.0)
        thread.join()

        assert result.payload == {"from": "thread"}

    @pytest.mark.asyncio
    async def test_waiters_resolve_independently(self):
        """Test concurrent waiters each get their own response."""
        store = CorrelationStore()
        store.register("first")
        store.register("second")

        waits = asyncio.gather(store.wait("first", 1.0), store.wait("second", 1.0))
        await asyncio.sleep(0)
        store.complete("second", {"id": "second"})
        store.complete("first", {"id": "first"})
        first, second = await waits

        assert first.payload == {"id": "first"}
        assert second.payload == {"id": "second"}


class TestTimeouts:
    """Per-call timeouts, sweeping and cancellation."""

    @pytest.mark.asyncio
    async def test_wait_times_out_and_deregisters(self):
        """Test a timed out wait returns TIMEOUT and frees the id."""
        store = CorrelationStore()
        before = store.size()
        store.register("slow")

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await store.wait("slow", timeout=0.05)

        assert result.status == RequestStatus.TIMEOUT
        assert loop.time() - started < 1.0
        assert store.size() == before

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_is_dropped(self):
        """Test a response arriving after the timeout is ignored."""
        store = CorrelationStore()
        store.register("slow")
        await store.wait("slow", timeout=0.01)

        assert not store.complete("slow", {})

    @pytest.mark.asyncio
    async def test_wait_on_unknown_id_fails(self):
        """Test waiting on an unregistered id returns FAILED."""
        store = CorrelationStore()

        result = await store.wait("nope", timeout=0.1)

        assert result.status == RequestStatus.FAILED

    @pytest.mark.asyncio
    async def test_sweep_cancels_old_requests(self):
        """Test sweeping cancels only requests older than the max age."""
        clock = ManualClock()
        store = CorrelationStore(clock=clock)
        store.register("old")
        clock.now = 20.0
        store.register("new")
        clock.now = 31.0

        assert store.sweep(max_age=30.0) == 1
        assert store.pending_ids() == ["new"]

        result = await store.wait("old", timeout=1.0)
        assert result.status == RequestStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        """Test cancel_all cancels every outstanding waiter."""
        store = CorrelationStore()
        store.register("a")
        store.register("b")
        waits = asyncio.gather(store.wait("a", 5.0), store.wait("b", 5.0))
        await asyncio.sleep(0)

        assert store.cancel_all() == 2
        results = await waits

        assert [result.status for result in results] == [RequestStatus.CANCELLED] * 2
        assert store.size() == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_task_deregisters(self):
        """Test cancelling the waiting task frees the id."""
        store = CorrelationStore()
        store.register("a")
        task = asyncio.ensure_future(store.wait("a", 5.0))
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.size() == 0

    @pytest.mark.asyncio
    async def test_discard_without_wait_frees_everything(self):
        """Test discarding requests that were never awaited leaves no waiters behind."""
        store = CorrelationStore()
        futures = [store.register(f"r{index}") for index in range(5)]

        for index in range(5):
            assert store.discard(f"r{index}")

        assert store.size() == 0
        assert store._futures == {}
        assert all(future.cancelled() for future in futures)

    @pytest.mark.asyncio
    async def test_discarded_id_can_be_registered_again(self):
        """Test an id is reusable once discarded."""
        store = CorrelationStore()
        store.register("a")
        store.discard("a")

        store.register("a")
        assert store.pending_ids() == ["a"]
