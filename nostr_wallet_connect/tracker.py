"""
Matching of NWC responses to outstanding requests.

Every request is registered under its event id with an asyncio future and a
deadline. A response is matched by the request id in its "e" tag, never by
arrival order, so any number of requests can be in flight at once.

Each entry leaves the pending map exactly once, by whichever comes first:
a matching response, its deadline, a relay rejection or a disconnect.
"""

from __future__ import annotations

import asyncio
import enum
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from loguru import logger

from .errors import ConnectionLost, RequestTimeout
from .protocol import NwcResponse

DEFAULT_TIMEOUT = 30.0
DEFAULT_FRESH_THRESHOLD = 2.0


class Freshness(str, enum.Enum):
    CACHED = "cached"      # response is older than the request (relay replay)
    FRESH = "fresh"
    DELAYED = "delayed"


def classify_freshness(delta: float, threshold: float = DEFAULT_FRESH_THRESHOLD) -> Freshness:
    """
    Classify a response by (response created_at - request sent_at).

    Informational only; responses are never rejected because of it.
    """
    if delta < 0:
        return Freshness.CACHED
    if delta < threshold:
        return Freshness.FRESH
    return Freshness.DELAYED


@dataclass(frozen=True)
class ResponseMeta:
    request_id: str
    method: Optional[str]
    freshness: Freshness
    delta: float


@dataclass
class TrackedResponse:
    """What a pending request resolves to."""
    response: NwcResponse
    meta: ResponseMeta


@dataclass
class PendingRequest:
    request_id: str
    method: Optional[str]
    sent_at: float
    future: "asyncio.Future[TrackedResponse]"
    timer: Optional[asyncio.TimerHandle] = None


class RequestTracker:
    """
    Pending request map with per-request deadlines.

    Args:
        timeout: Seconds before an unanswered request fails with RequestTimeout.
        fresh_threshold: Seconds under which a response counts as fresh.
        on_timeout: Called with the expired entry after it has been failed.

    The map is guarded by a lock because responses, new requests, deadlines
    and disconnects all touch it.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        fresh_threshold: float = DEFAULT_FRESH_THRESHOLD,
        on_timeout: Optional[Callable[[PendingRequest], None]] = None,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        self.fresh_threshold = fresh_threshold
        self.on_timeout = on_timeout
        self._pending: Dict[str, PendingRequest] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._pending

    @property
    def pending_ids(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def register(
        self,
        request_id: str,
        sent_at: float,
        method: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> PendingRequest:
        """
        Start tracking a request. Must be called from the event loop.

        Raises:
            ValueError: If the id is already pending or the timeout is not
                positive.
        """
        if timeout is None:
            timeout = self.timeout
        elif timeout <= 0:
            raise ValueError("timeout must be positive")
        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            request_id=request_id,
            method=method,
            sent_at=sent_at,
            future=loop.create_future(),
        )
        with self._lock:
            if request_id in self._pending:
                raise ValueError(f"Request {request_id} is already pending")
            self._pending[request_id] = entry
        entry.timer = loop.call_later(timeout, self._expire, request_id, timeout)
        return entry

    async def wait(self, entry: PendingRequest) -> TrackedResponse:
        """
        Await the outcome of a registered request.

        If the awaiting task is cancelled the entry is dropped as well.
        """
        try:
            return await entry.future
        except asyncio.CancelledError:
            self.discard(entry.request_id)
            raise

    def _take(self, request_id: str) -> Optional[PendingRequest]:
        with self._lock:
            entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def resolve(self, request_id: str, response: NwcResponse, created_at: float) -> Optional[ResponseMeta]:
        """
        Complete a pending request with its response.

        Returns:
            ResponseMeta, or None if no request with this id is pending.
        """
        entry = self._take(request_id)
        if entry is None:
            return None

        delta = created_at - entry.sent_at
        meta = ResponseMeta(
            request_id=request_id,
            method=entry.method,
            freshness=classify_freshness(delta, self.fresh_threshold),
            delta=delta,
        )
        if not entry.future.done():
            entry.future.set_result(TrackedResponse(response=response, meta=meta))
        return meta

    def fail(self, request_id: str, error: BaseException) -> bool:
        """Fail one pending request. Returns False if it was not pending."""
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def discard(self, request_id: str) -> bool:
        """Forget a pending request without completing it."""
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.cancel()
        return True

    def _expire(self, request_id: str, timeout: float) -> None:
        entry = self._take(request_id)
        if entry is None:
            return
        logger.warning("NWC request {} ({}) timed out after {}s", request_id[:8], entry.method, timeout)
        if not entry.future.done():
            entry.future.set_exception(RequestTimeout(request_id, timeout))
        if self.on_timeout is not None:
            self.on_timeout(entry)

    def fail_all(self, reason: str = "Connection lost") -> int:
        """
        Fail every pending request with ConnectionLost and clear the map.

        Returns:
            Number of requests that were failed.
        """
        with self._lock:
            entries = list(self._pending.values())
            self._pending.clear()

        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(ConnectionLost(reason))
        if entries:
            logger.info("Failed {} pending NWC request(s): {}", len(entries), reason)
        return len(entries)
