"""
NAT-PMP client: the public entry point composing queue, retransmission,
response matching and mapping renewal.
"""
import asyncio
import dataclasses
import ipaddress
from enum import IntEnum
from typing import List, Optional, Tuple, Union

import structlog

from natpmp_client.config import ClientConfig
from natpmp_client.dispatcher import ResponseDispatcher
from natpmp_client.exceptions import ClientClosed, InvalidArgument
from natpmp_client.mappings import Mapping, MappingManager
from natpmp_client.protocol import (
    BareRequest,
    ExternalAddressRequest,
    MappingRequest,
    Opcode,
    Protocol,
    RESPONSE_FLAG,
    Request,
    Response,
)
from natpmp_client.request_queue import PendingRequest, RequestQueue
from natpmp_client.retry import RetryScheduler
from natpmp_client.transport import UDPTransport


class ClientState(IntEnum):
    """Client lifecycle states."""
    UNBOUND = 0
    BOUND = 1
    CLOSED = 2


class Client:
    """
    Asynchronous NAT-PMP client for a single gateway.

    Operations are queued and sent one at a time. Operations issued before
    ``start()`` wait until the socket is bound.

    Example:
        async with Client("192.168.1.1") as client:
            address = await client.get_external_ip()
            mapping = await client.map_port("tcp", 3000, 3000, 3600)
    """

    def __init__(
        self,
        gateway: Optional[str] = None,
        config: Optional[ClientConfig] = None,
        transport: Optional[UDPTransport] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Initialize a client.

        Args:
            gateway: Gateway IPv4 address (overrides ``config.gateway``)
            config: Client configuration (uses defaults if not provided)
            transport: Datagram transport (a UDPTransport is created if not provided)
            loop: Event loop used for timers (defaults to the running loop)
        """
        config = config or ClientConfig()
        if gateway is not None:
            config = dataclasses.replace(config, gateway=gateway)
        try:
            config.validate()
        except ValueError as e:
            raise InvalidArgument(str(e)) from e
        if config.gateway is None:
            raise InvalidArgument("A gateway address is required")

        self.config = config
        self.gateway = config.gateway
        self.state = ClientState.UNBOUND

        self.logger = structlog.get_logger()

        self.transport = transport or UDPTransport(host=config.bind_host)
        self.transport.on_datagram_callback = self._on_datagram

        self.retry = RetryScheduler(
            send=self._send,
            on_give_up=self._on_give_up,
            initial_delay=config.initial_retry_delay,
            max_attempts=config.max_attempts,
            loop=loop,
        )
        self.queue = RequestQueue(on_admit=self.retry.start, on_retire=self._on_retire)
        self.mappings = MappingManager(
            submit=self._submit,
            renewal_fraction=config.renewal_fraction,
            loop=loop,
        )
        self.dispatcher = ResponseDispatcher(self.queue, self.mappings, gateway=self.gateway)

    @property
    def is_closed(self) -> bool:
        return self.state == ClientState.CLOSED

    @property
    def held_mappings(self) -> List[Mapping]:
        return self.mappings.all()

    async def start(self):
        """Bind the local socket and begin sending queued operations."""
        if self.state == ClientState.CLOSED:
            raise ClientClosed("Client is closed")
        if self.state == ClientState.BOUND:
            return

        await self.transport.bind(self.config.client_port)
        self.state = ClientState.BOUND
        self.logger.info("client_started", gateway=self.gateway, port=self.config.server_port)

        self.queue.open()

    async def close(self):
        """
        Cancel every timer, fail queued and in-flight operations with
        ClientClosed and release the socket. Held mappings are not
        released on the gateway.
        """
        if self.state == ClientState.CLOSED:
            return
        self.state = ClientState.CLOSED

        self.retry.cancel()
        self.mappings.close()
        failed = self.queue.close(ClientClosed("Client closed"))
        self.transport.close()

        self.logger.info("client_closed", gateway=self.gateway, failed_operations=failed)

    async def __aenter__(self) -> "Client":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def get_external_ip(self) -> ipaddress.IPv4Address:
        """
        Ask the gateway for its external address.

        Raises:
            ProtocolError, RequestTimeout, ClientClosed, SendError
        """
        return await self._submit(ExternalAddressRequest()).future

    async def map_port(
        self,
        protocol: Union[Protocol, str],
        private_port: int,
        public_port: int = 0,
        lifetime: Optional[int] = None,
    ) -> Mapping:
        """
        Request a port mapping.

        Args:
            protocol: Protocol.TCP / Protocol.UDP or "tcp" / "udp"
            private_port: Local port to forward to
            public_port: Suggested external port (0 lets the gateway choose)
            lifetime: Requested lifetime in seconds (config default if None)

        Returns:
            The granted mapping; its public port and lifetime come from the
            gateway and may differ from what was requested.

        Raises:
            InvalidArgument: on out-of-range arguments, before any I/O
            ProtocolError, RequestTimeout, ClientClosed, SendError
        """
        if lifetime is None:
            lifetime = self.config.default_lifetime
        if lifetime == 0:
            raise InvalidArgument("lifetime must be positive; use unmap_port() to delete")
        if private_port == 0:
            raise InvalidArgument("private_port must be non-zero")

        request = MappingRequest(
            protocol=Protocol.parse(protocol),
            private_port=private_port,
            public_port=public_port,
            lifetime=lifetime,
        ).validate()
        return await self._submit(request).future

    async def unmap_port(self, protocol: Union[Protocol, str], private_port: int):
        """
        Delete a mapping by requesting a lifetime of 0.

        A private port of 0 deletes every mapping of ``protocol`` held by
        this host.
        """
        protocol = Protocol.parse(protocol)
        MappingRequest(protocol, private_port, 0, 0).validate()

        await self.mappings.destroy(protocol, private_port).future

    async def send_request(self, opcode: int) -> Union[ipaddress.IPv4Address, Response]:
        """
        Send a payload-less request with an arbitrary opcode.

        Useful to check what a gateway supports: an unknown opcode is
        answered with ProtocolError(5).
        """
        if not isinstance(opcode, int) or not 0 <= opcode < RESPONSE_FLAG:
            raise InvalidArgument(f"opcode must be in 0..{RESPONSE_FLAG - 1}, got {opcode!r}")
        if opcode in (Opcode.MAP_UDP, Opcode.MAP_TCP):
            raise InvalidArgument("Mapping opcodes need a payload; use map_port()")

        request = ExternalAddressRequest() if opcode == Opcode.EXTERNAL_ADDRESS else BareRequest(opcode)
        return await self._submit(request).future

    def _submit(self, request: Request, origin: str = "user") -> PendingRequest:
        if self.state == ClientState.CLOSED:
            raise ClientClosed("Client is closed")

        pending = PendingRequest(
            request=request,
            future=asyncio.get_running_loop().create_future(),
            origin=origin,
        )
        self.queue.enqueue(pending)
        return pending

    def _send(self, payload: bytes):
        self.transport.send(payload, self.gateway, self.config.server_port)

    def _on_give_up(self, pending: PendingRequest, exc: Exception):
        pending.fail(exc)
        if self.queue.in_flight is pending:
            self.queue.on_resolved()

    def _on_retire(self, pending: PendingRequest):
        if self.retry.active is pending:
            self.retry.cancel()

    def _on_datagram(self, data: bytes, addr: Tuple[str, int]):
        if self.state == ClientState.CLOSED:
            return
        self.dispatcher.handle_datagram(data, addr)

    def get_stats(self) -> dict:
        """Get client statistics."""
        return {
            'state': self.state.name.lower(),
            'gateway': self.gateway,
            'transport': self.transport.get_stats(),
            'queue': self.queue.get_stats(),
            'retry': self.retry.get_stats(),
            'dispatcher': self.dispatcher.get_stats(),
            'mappings': self.mappings.get_stats(),
            'held_mappings': [m.to_dict() for m in self.mappings.all()],
        }
