"""
Serialization of protocol operations into a single in-flight request.

NAT-PMP responses carry no transaction identifier, so two outstanding
requests with the same opcode cannot be told apart. Only one request is
ever transmitted at a time; everything else waits in FIFO order.
"""
import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Optional

import structlog

from natpmp_client.protocol import Request


@dataclass(eq=False)
class PendingRequest:
    """One protocol operation and the future its caller awaits."""

    request: Request
    future: asyncio.Future
    origin: str = "user"  # "user", "renewal" or "regrant"
    payload: bytes = b""
    attempt: int = 0
    next_delay: float = 0.0
    deadline: float = 0.0

    def __post_init__(self):
        # Encoded once; every retransmission sends these exact bytes.
        if not self.payload:
            self.payload = self.request.to_bytes()

    @property
    def opcode(self) -> int:
        return self.request.opcode

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, value: Any) -> bool:
        """Deliver a result. Returns False if the request was already resolved."""
        if self.future.done():
            return False
        self.future.set_result(value)
        return True

    def fail(self, exc: BaseException) -> bool:
        """Deliver a failure. Returns False if the request was already resolved."""
        if self.future.done():
            return False
        self.future.set_exception(exc)
        return True


class RequestQueue:
    """
    FIFO of not-yet-started operations plus at most one in-flight request.

    ``on_admit`` is called when a request becomes the in-flight one and must
    start its transmission. ``on_retire`` is called when the in-flight
    request is discarded and must cancel its timers.
    """

    def __init__(
        self,
        on_admit: Callable[[PendingRequest], None],
        on_retire: Callable[[PendingRequest], None],
    ):
        self.on_admit = on_admit
        self.on_retire = on_retire

        self._waiting: Deque[PendingRequest] = deque()
        self._in_flight: Optional[PendingRequest] = None
        self._accepting = False

        self.logger = structlog.get_logger()

        self.stats = {
            'enqueued': 0,
            'admitted': 0,
            'withdrawn': 0,
        }

    @property
    def in_flight(self) -> Optional[PendingRequest]:
        return self._in_flight

    def __len__(self) -> int:
        return len(self._waiting)

    def open(self):
        """Allow requests to be admitted (the socket is ready)."""
        self._accepting = True
        self._promote()

    def enqueue(self, pending: PendingRequest):
        """Append an operation and start it immediately if nothing is in flight."""
        self._waiting.append(pending)
        self.stats['enqueued'] += 1
        pending.future.add_done_callback(lambda _: self._on_future_done(pending))

        self.logger.debug(
            "request_enqueued",
            opcode=pending.opcode,
            origin=pending.origin,
            queued=len(self._waiting),
        )
        self._promote()

    def on_resolved(self):
        """Discard the in-flight request and admit the next one."""
        pending = self._in_flight
        if pending is None:
            return

        self._in_flight = None
        self.on_retire(pending)
        self._promote()

    def close(self, exc: BaseException) -> int:
        """
        Fail the in-flight request and every queued one with ``exc``.

        Returns:
            Number of operations that were failed
        """
        self._accepting = False
        failed = 0

        if self._in_flight is not None:
            pending = self._in_flight
            self._in_flight = None
            self.on_retire(pending)
            failed += pending.fail(exc)

        while self._waiting:
            failed += self._waiting.popleft().fail(exc)

        return failed

    def _promote(self):
        while self._accepting and self._in_flight is None and self._waiting:
            pending = self._waiting.popleft()
            if pending.done:
                continue

            self._in_flight = pending
            self.stats['admitted'] += 1
            self.on_admit(pending)

    def _on_future_done(self, pending: PendingRequest):
        # Only a caller-side cancellation needs handling here; every other
        # resolution path already removed the request.
        if not pending.future.cancelled():
            return

        if pending is self._in_flight:
            self.stats['withdrawn'] += 1
            self.logger.debug("request_withdrawn", opcode=pending.opcode, state="in_flight")
            self.on_resolved()
        elif pending in self._waiting:
            self.stats['withdrawn'] += 1
            self._waiting.remove(pending)
            self.logger.debug("request_withdrawn", opcode=pending.opcode, state="queued")

    def get_stats(self) -> dict:
        return {
            **self.stats,
            'queued': len(self._waiting),
            'in_flight': self._in_flight is not None,
        }
