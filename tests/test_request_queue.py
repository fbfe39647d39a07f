"""
Tests for single-in-flight request serialization.
"""
import asyncio

import pytest

from natpmp_client.exceptions import ClientClosed
from natpmp_client.protocol import ExternalAddressRequest, MappingRequest, Protocol
from natpmp_client.request_queue import PendingRequest, RequestQueue


class QueueHarness:
    """Queue wired to lists recording admissions and retirements."""

    def __init__(self):
        self.admitted = []
        self.retired = []
        self.queue = RequestQueue(on_admit=self.admitted.append, on_retire=self.retired.append)

    def pending(self, request=None, origin="user"):
        future = asyncio.get_running_loop().create_future()
        return PendingRequest(request=request or ExternalAddressRequest(), future=future, origin=origin)


@pytest.mark.asyncio
async def test_nothing_admitted_until_open():
    harness = QueueHarness()
    harness.queue.enqueue(harness.pending())

    assert harness.admitted == []
    assert harness.queue.in_flight is None

    harness.queue.open()
    assert len(harness.admitted) == 1


@pytest.mark.asyncio
async def test_single_in_flight_and_fifo():
    harness = QueueHarness()
    harness.queue.open()
    first = harness.pending()
    second = harness.pending(MappingRequest(Protocol.TCP, 3000, 3000, 3600))
    third = harness.pending(MappingRequest(Protocol.UDP, 4000, 4000, 3600))

    for pending in (first, second, third):
        harness.queue.enqueue(pending)

    assert harness.admitted == [first]
    assert harness.queue.in_flight is first
    assert len(harness.queue) == 2

    first.resolve("done")
    harness.queue.on_resolved()
    assert harness.admitted == [first, second]
    assert harness.retired == [first]

    second.resolve("done")
    harness.queue.on_resolved()
    assert harness.admitted == [first, second, third]
    assert len(harness.queue) == 0


@pytest.mark.asyncio
async def test_resolution_is_single_fire():
    harness = QueueHarness()
    pending = harness.pending()

    assert pending.resolve(1) is True
    assert pending.resolve(2) is False
    assert pending.fail(RuntimeError()) is False
    assert pending.future.result() == 1


@pytest.mark.asyncio
async def test_close_fails_everything_once():
    harness = QueueHarness()
    harness.queue.open()
    items = [harness.pending() for _ in range(3)]
    for pending in items:
        harness.queue.enqueue(pending)

    failed = harness.queue.close(ClientClosed("closed"))

    assert failed == 3
    assert harness.retired == [items[0]]
    for pending in items:
        assert isinstance(pending.future.exception(), ClientClosed)

    # A second close has nothing left to fail.
    assert harness.queue.close(ClientClosed("closed")) == 0
    assert harness.queue.in_flight is None


@pytest.mark.asyncio
async def test_cancelled_queued_request_is_withdrawn():
    harness = QueueHarness()
    harness.queue.open()
    first, second, third = (harness.pending() for _ in range(3))
    for pending in (first, second, third):
        harness.queue.enqueue(pending)

    second.future.cancel()
    await asyncio.sleep(0)

    assert len(harness.queue) == 1
    first.resolve(None)
    harness.queue.on_resolved()
    assert harness.queue.in_flight is third


@pytest.mark.asyncio
async def test_cancelled_in_flight_request_is_retired():
    harness = QueueHarness()
    harness.queue.open()
    first, second = harness.pending(), harness.pending()
    harness.queue.enqueue(first)
    harness.queue.enqueue(second)

    first.future.cancel()
    await asyncio.sleep(0)

    assert harness.retired == [first]
    assert harness.queue.in_flight is second
    assert harness.queue.stats['withdrawn'] == 1


@pytest.mark.asyncio
async def test_resolved_requests_are_skipped_on_promotion():
    harness = QueueHarness()
    first, second = harness.pending(), harness.pending()
    harness.queue.enqueue(first)
    harness.queue.enqueue(second)
    first.fail(ClientClosed("gone"))

    harness.queue.open()

    assert harness.admitted == [second]
