"""
Tests for the retransmission schedule.
"""
import asyncio

import pytest

from natpmp_client.exceptions import RequestTimeout, SendError
from natpmp_client.protocol import ExternalAddressRequest
from natpmp_client.request_queue import PendingRequest
from natpmp_client.retry import RetryScheduler, backoff_schedule


class Recorder:
    """Collects sends and give-ups from a scheduler."""

    def __init__(self, fake_loop):
        self.loop = fake_loop
        self.sends = []
        self.failures = []

    def send(self, payload):
        self.sends.append((self.loop.time(), payload))

    def give_up(self, pending, exc):
        self.failures.append((self.loop.time(), pending, exc))
        pending.fail(exc)


def make_pending():
    future = asyncio.get_running_loop().create_future()
    return PendingRequest(request=ExternalAddressRequest(), future=future)


def test_backoff_schedule():
    assert backoff_schedule() == [0.25, 0.5, 1, 2, 4, 8, 16, 32, 64]
    assert sum(backoff_schedule()) == 127.75


@pytest.mark.asyncio
async def test_silent_gateway_gets_nine_transmissions(fake_loop):
    recorder = Recorder(fake_loop)
    scheduler = RetryScheduler(recorder.send, recorder.give_up, loop=fake_loop)
    pending = make_pending()

    scheduler.start(pending)
    fake_loop.advance(200)

    assert len(recorder.sends) == 9
    assert [t for t, _ in recorder.sends] == [
        0, 0.25, 0.75, 1.75, 3.75, 7.75, 15.75, 31.75, 63.75
    ]
    assert fake_loop.delays == [0.25, 0.5, 1, 2, 4, 8, 16, 32, 64]

    assert len(recorder.failures) == 1
    failed_at, _, exc = recorder.failures[0]
    assert failed_at == 127.75
    assert isinstance(exc, RequestTimeout)
    assert isinstance(pending.future.exception(), RequestTimeout)
    assert scheduler.stats['retransmissions'] == 8
    assert scheduler.stats['timeouts'] == 1


@pytest.mark.asyncio
async def test_retransmissions_reuse_identical_bytes(fake_loop):
    recorder = Recorder(fake_loop)
    scheduler = RetryScheduler(recorder.send, recorder.give_up, loop=fake_loop)
    pending = make_pending()

    scheduler.start(pending)
    fake_loop.advance(2)

    payloads = {payload for _, payload in recorder.sends}
    assert payloads == {b"\x00\x00"}
    assert pending.attempt == 4


@pytest.mark.asyncio
async def test_deadline_is_end_of_ladder(fake_loop):
    recorder = Recorder(fake_loop)
    scheduler = RetryScheduler(recorder.send, recorder.give_up, loop=fake_loop)
    fake_loop.now = 10.0
    pending = make_pending()

    scheduler.start(pending)

    assert pending.deadline == 137.75


@pytest.mark.asyncio
async def test_cancel_stops_retransmission(fake_loop):
    recorder = Recorder(fake_loop)
    scheduler = RetryScheduler(recorder.send, recorder.give_up, loop=fake_loop)

    scheduler.start(make_pending())
    fake_loop.advance(0.3)
    scheduler.cancel()
    fake_loop.advance(500)

    assert len(recorder.sends) == 2
    assert recorder.failures == []
    assert fake_loop.pending() == []


@pytest.mark.asyncio
async def test_first_send_failure_gives_up(fake_loop):
    failures = []

    def send(payload):
        raise SendError("no route")

    scheduler = RetryScheduler(send, lambda p, e: failures.append(e), loop=fake_loop)
    scheduler.start(make_pending())

    assert len(failures) == 1
    assert isinstance(failures[0], SendError)
    assert fake_loop.pending() == []
    assert scheduler.active is None


@pytest.mark.asyncio
async def test_retransmission_failure_keeps_ladder(fake_loop):
    attempts = []

    def send(payload):
        attempts.append(fake_loop.time())
        if len(attempts) == 2:
            raise SendError("transient")

    failures = []
    scheduler = RetryScheduler(send, lambda p, e: failures.append(e), loop=fake_loop)
    scheduler.start(make_pending())
    fake_loop.advance(1)

    assert len(attempts) == 3
    assert failures == []
    assert scheduler.stats['send_errors'] == 1


@pytest.mark.asyncio
async def test_custom_schedule(fake_loop):
    recorder = Recorder(fake_loop)
    scheduler = RetryScheduler(
        recorder.send, recorder.give_up, initial_delay=1.0, max_attempts=3, loop=fake_loop
    )

    scheduler.start(make_pending())
    fake_loop.advance(100)

    assert [t for t, _ in recorder.sends] == [0, 1, 3]
    assert recorder.failures[0][0] == 7
