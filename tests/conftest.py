"""
Shared fixtures: a virtual clock for timers and an in-memory transport.
"""
import ipaddress

import pytest

from natpmp_client.client import Client
from natpmp_client.config import ClientConfig
from natpmp_client.exceptions import SendError
from natpmp_client.protocol import (
    ExternalAddressResponse,
    MappingResponse,
    Protocol,
    SERVER_PORT,
)


GATEWAY = "192.168.1.1"


class FakeTimerHandle:
    """Stand-in for asyncio.TimerHandle."""

    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Timer-only event loop whose clock moves when ``advance`` is called."""

    def __init__(self):
        self.now = 0.0
        self.timers = []
        self.delays = []

    def time(self):
        return self.now

    def call_later(self, delay, callback, *args):
        handle = FakeTimerHandle(self.now + delay, callback, args)
        self.timers.append(handle)
        self.delays.append(delay)
        return handle

    def pending(self):
        return [h for h in self.timers if not h.cancelled]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [h for h in self.pending() if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.timers.remove(handle)
            self.now = handle.when
            handle.callback(*handle.args)
        self.now = target


class FakeTransport:
    """Records sent datagrams and lets tests inject inbound ones."""

    def __init__(self):
        self.sent = []
        self.on_datagram_callback = None
        self.bound_port = None
        self.closed = False
        self.fail_sends = False

    async def bind(self, port):
        self.bound_port = port

    def send(self, data, host, port):
        if self.fail_sends:
            raise SendError("network unreachable")
        self.sent.append((data, host, port))

    def close(self):
        self.closed = True

    def deliver(self, data, addr=(GATEWAY, SERVER_PORT)):
        if self.on_datagram_callback:
            self.on_datagram_callback(data, addr)

    def get_stats(self):
        return {'packets_sent': len(self.sent), 'bound': self.bound_port is not None}


def external_address_reply(address="203.0.113.7", seconds=100, result_code=0):
    return ExternalAddressResponse(
        result_code=result_code,
        seconds_since_start=seconds,
        external_ip=ipaddress.IPv4Address(address),
    ).to_bytes()


def mapping_reply(private_port, public_port, lifetime, protocol=Protocol.TCP, seconds=100, result_code=0):
    return MappingResponse(
        protocol=protocol,
        result_code=result_code,
        seconds_since_start=seconds,
        private_port=private_port,
        public_port=public_port,
        lifetime=lifetime,
    ).to_bytes()


@pytest.fixture
def fake_loop():
    return FakeLoop()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_client(fake_loop, transport):
    """Factory for clients wired to the fake loop and transport."""
    def factory(**overrides):
        config = ClientConfig(gateway=GATEWAY, **overrides)
        return Client(config=config, transport=transport, loop=fake_loop)
    return factory
