"""
Request/Response Correlation

Matches responses arriving on the shared socket to the requests that are
waiting for them, keyed by the opaque `echo` id.

Usage:
    store = CorrelationStore()
    store.register(request_id)
    ...transmit the request...
    result = await store.wait(request_id, timeout=10.0)
    if result.success:
        payload = result.payload

complete(), discard(), sweep() and cancel_all() may be called from any
thread; waiters are always resolved on their own event loop.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import DuplicateRequestError

logger = logging.getLogger(__name__)


class RequestStatus(str, Enum):
    """Outcome of a correlated request."""

    OK = "ok"
    TIMEOUT = "timeout"
    NOT_CONNECTED = "not_connected"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class RequestResult:
    """Result of a correlated request. Failures are values, not exceptions."""

    request_id: Optional[str]
    status: RequestStatus
    payload: Optional[Dict[str, Any]] = None
    latency_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == RequestStatus.OK


@dataclass
class PendingRequest:
    """A request waiting for its response."""

    request_id: str
    created_at: float
    future: "asyncio.Future[Dict[str, Any]]"


def _call_in_loop(future: asyncio.Future, callback: Callable[[], None]) -> None:
    """Run `callback` on the future's loop, directly if we are already on it."""
    loop = future.get_loop()
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None

    if running is loop:
        callback()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(callback)


def _resolve(future: asyncio.Future, payload: Dict[str, Any]) -> None:
    def _set() -> None:
        if not future.done():
            future.set_result(payload)

    _call_in_loop(future, _set)


def _cancel(future: asyncio.Future) -> None:
    def _do_cancel() -> None:
        if not future.done():
            future.cancel()

    _call_in_loop(future, _do_cancel)


class CorrelationStore:
    """
    Pending requests keyed by correlation id.

    One instance per service; nothing is shared across services or
    reconnect cycles.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        # Outstanding requests; an entry leaves on complete/timeout/sweep/cancel
        self._pending: Dict[str, PendingRequest] = {}
        # Futures handed to waiters; an entry leaves when wait() returns or on discard
        self._futures: Dict[str, asyncio.Future] = {}

    def register(
        self, request_id: str, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> "asyncio.Future[Dict[str, Any]]":
        """
        Register a new pending request.

        Raises DuplicateRequestError if the id is already pending.
        """
        loop = loop or asyncio.get_running_loop()
        with self._lock:
            if request_id in self._pending or request_id in self._futures:
                raise DuplicateRequestError(request_id)
            future: asyncio.Future = loop.create_future()
            self._pending[request_id] = PendingRequest(
                request_id=request_id, created_at=self._clock(), future=future
            )
            self._futures[request_id] = future
        logger.debug(f"Registered request {request_id}")
        return future

    def complete(self, request_id: str, payload: Dict[str, Any]) -> bool:
        """
        Resolve the waiter for `request_id` with `payload`.

        Unknown ids (late or duplicate responses) are logged and dropped.
        """
        with self._lock:
            pending = self._pending.pop(request_id, None)

        if pending is None:
            logger.warning(f"No pending request for response: request_id={request_id}")
            return False

        _resolve(pending.future, payload)
        logger.debug(f"Completed request {request_id}")
        return True

    async def wait(self, request_id: str, timeout: float) -> RequestResult:
        """
        Wait up to `timeout` seconds for the response to `request_id`.

        Only the awaiting coroutine is suspended. On timeout the request is
        deregistered and a TIMEOUT result is returned.
        """
        with self._lock:
            future = self._futures.get(request_id)

        if future is None:
            logger.warning(f"Wait on unknown request: request_id={request_id}")
            return RequestResult(request_id=request_id, status=RequestStatus.FAILED)

        started = self._clock()
        try:
            payload = await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            self.discard(request_id)
            logger.warning(f"Timed out waiting for response: request_id={request_id}, timeout={timeout}s")
            return RequestResult(request_id=request_id, status=RequestStatus.TIMEOUT)
        except asyncio.CancelledError:
            if not future.cancelled():
                # The waiting task itself was cancelled
                self.discard(request_id)
                raise
            return RequestResult(request_id=request_id, status=RequestStatus.CANCELLED)
        finally:
            with self._lock:
                self._futures.pop(request_id, None)

        return RequestResult(
            request_id=request_id,
            status=RequestStatus.OK,
            payload=payload,
            latency_ms=(self._clock() - started) * 1000,
        )

    def discard(self, request_id: str) -> bool:
        """Deregister a request and cancel its waiter."""
        with self._lock:
            pending = self._pending.pop(request_id, None)
            future = self._futures.pop(request_id, None)

        if future is not None:
            _cancel(future)
        return pending is not None

    def sweep(self, max_age: float) -> int:
        """
        Cancel requests registered more than `max_age` seconds ago.

        Safety net for waiters that never reach their own timeout.
        Returns the number of requests cancelled.
        """
        now = self._clock()
        with self._lock:
            expired = [
                pending
                for pending in self._pending.values()
                if now - pending.created_at > max_age
            ]
            for pending in expired:
                del self._pending[pending.request_id]

        for pending in expired:
            _cancel(pending.future)
            logger.warning(f"Swept stale request: request_id={pending.request_id}")

        if expired:
            logger.info(f"Swept {len(expired)} stale requests")
        return len(expired)

    def cancel_all(self) -> int:
        """Cancel every outstanding request. Used on shutdown."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()

        for request in pending:
            _cancel(request.future)

        if pending:
            logger.info(f"Cancelled {len(pending)} pending requests")
        return len(pending)

    def size(self) -> int:
        """Number of outstanding requests."""
        with self._lock:
            return len(self._pending)

    def pending_ids(self) -> List[str]:
        with self._lock:
            return list(self._pending.keys())
