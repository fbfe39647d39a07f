"""
Retransmission with exponential backoff for the in-flight request.

The first transmission is followed by waits of 250ms, 500ms, 1s, ... 64s,
retransmitting after each wait except the last. Nine transmissions are
made in total and the request times out after 127.75 seconds.
"""
import asyncio
from typing import Callable, Optional

import structlog

from natpmp_client.exceptions import RequestTimeout, SendError
from natpmp_client.request_queue import PendingRequest


INITIAL_RETRY_DELAY = 0.25
MAX_ATTEMPTS = 9


def backoff_schedule(initial_delay: float = INITIAL_RETRY_DELAY, attempts: int = MAX_ATTEMPTS):
    """Delays waited after each of ``attempts`` transmissions."""
    return [initial_delay * (2 ** i) for i in range(attempts)]


class RetryScheduler:
    """
    Drives the backoff timer of one in-flight request.

    ``send`` transmits raw bytes to the gateway. ``on_give_up`` is invoked
    with the request and the exception it should fail with, either when the
    schedule is exhausted or when the first transmission cannot be sent.
    """

    def __init__(
        self,
        send: Callable[[bytes], None],
        on_give_up: Callable[[PendingRequest, Exception], None],
        initial_delay: float = INITIAL_RETRY_DELAY,
        max_attempts: int = MAX_ATTEMPTS,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.send = send
        self.on_give_up = on_give_up
        self.initial_delay = initial_delay
        self.max_attempts = max_attempts
        self._loop = loop

        self._pending: Optional[PendingRequest] = None
        self._timer: Optional[asyncio.TimerHandle] = None

        self.logger = structlog.get_logger()

        self.stats = {
            'transmissions': 0,
            'retransmissions': 0,
            'timeouts': 0,
            'send_errors': 0,
        }

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    @property
    def active(self) -> Optional[PendingRequest]:
        return self._pending

    def start(self, pending: PendingRequest):
        """Send the first transmission of ``pending`` and arm its timer."""
        self.cancel()

        pending.attempt = 0
        pending.next_delay = self.initial_delay
        pending.deadline = self.loop.time() + sum(
            backoff_schedule(self.initial_delay, self.max_attempts)
        )
        self._pending = pending

        try:
            self._transmit(pending)
        except SendError as e:
            self._pending = None
            self.stats['send_errors'] += 1
            self.on_give_up(pending, e)
            return

        self._arm(pending)

    def cancel(self):
        """Stop retransmitting the current request."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None

    def _transmit(self, pending: PendingRequest):
        pending.attempt += 1
        self.stats['transmissions'] += 1
        if pending.attempt > 1:
            self.stats['retransmissions'] += 1

        self.logger.debug(
            "request_transmitted",
            opcode=pending.opcode,
            attempt=pending.attempt,
            next_delay=pending.next_delay,
        )
        self.send(pending.payload)

    def _arm(self, pending: PendingRequest):
        self._timer = self.loop.call_later(pending.next_delay, self._on_timer, pending)

    def _on_timer(self, pending: PendingRequest):
        # A stale handle for a request that has since been retired.
        if pending is not self._pending:
            return
        self._timer = None

        if pending.attempt >= self.max_attempts:
            self._pending = None
            self.stats['timeouts'] += 1
            self.logger.warning(
                "request_timed_out",
                opcode=pending.opcode,
                attempts=pending.attempt,
            )
            self.on_give_up(
                pending,
                RequestTimeout(
                    f"No response from gateway after {pending.attempt} transmissions"
                ),
            )
            return

        pending.next_delay *= 2
        try:
            self._transmit(pending)
        except SendError as e:
            self.stats['send_errors'] += 1
            self.logger.warning(
                "retransmission_failed",
                opcode=pending.opcode,
                attempt=pending.attempt,
                error=str(e),
            )
        self._arm(pending)

    def get_stats(self) -> dict:
        return dict(self.stats)
