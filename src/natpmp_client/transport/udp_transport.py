"""
UDP datagram transport used to talk to the NAT-PMP gateway.
"""
import asyncio
from typing import Callable, Optional, Tuple

import structlog

from natpmp_client.exceptions import SendError


DatagramCallback = Callable[[bytes, Tuple[str, int]], None]


class UDPTransport:
    """
    Thin wrapper around an asyncio datagram endpoint.
    Owns the local port binding; inbound datagrams are handed to
    ``on_datagram_callback`` as ``(data, (sender_ip, sender_port))``.
    """

    def __init__(self, host: str = "0.0.0.0"):
        """
        Initialize UDP transport.

        Args:
            host: Local address to bind to
        """
        self.host = host
        self.port: Optional[int] = None

        self.transport: Optional[asyncio.DatagramTransport] = None
        self.protocol: Optional["UDPProtocol"] = None

        self.on_datagram_callback: Optional[DatagramCallback] = None

        self.logger = structlog.get_logger()

        # Statistics
        self.stats = {
            'packets_sent': 0,
            'packets_received': 0,
            'bytes_sent': 0,
            'bytes_received': 0,
            'errors': 0,
        }

    @property
    def is_bound(self) -> bool:
        return self.transport is not None and not self.transport.is_closing()

    async def bind(self, port: int):
        """
        Bind the local UDP endpoint.

        Args:
            port: Local port (0 for an ephemeral port)
        """
        loop = asyncio.get_running_loop()

        self.protocol = UDPProtocol(self)
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: self.protocol,
            local_addr=(self.host, port)
        )

        # Get actual bound port
        sock = self.transport.get_extra_info('socket')
        self.port = sock.getsockname()[1] if sock else port

        self.logger.info("udp_transport_bound", host=self.host, port=self.port)

    def send(self, data: bytes, host: str, port: int):
        """
        Send a single datagram.

        Raises:
            SendError: if the transport is not bound or the send fails
        """
        if not self.is_bound:
            raise SendError("Transport is not bound")

        try:
            self.transport.sendto(data, (host, port))
        except OSError as e:
            self.stats['errors'] += 1
            raise SendError(f"Failed to send to {host}:{port}: {e}") from e

        self.stats['packets_sent'] += 1
        self.stats['bytes_sent'] += len(data)

    def close(self):
        """Release the local binding."""
        if self.transport:
            self.transport.close()
            self.transport = None
            self.logger.info("udp_transport_closed", port=self.port)

    def _handle_datagram(self, data: bytes, addr: Tuple[str, int]):
        self.stats['packets_received'] += 1
        self.stats['bytes_received'] += len(data)

        if self.on_datagram_callback:
            self.on_datagram_callback(data, addr)

    def get_stats(self) -> dict:
        """Get transport statistics."""
        return {**self.stats, 'port': self.port, 'bound': self.is_bound}


class UDPProtocol(asyncio.DatagramProtocol):
    """Asyncio UDP protocol handler."""

    def __init__(self, transport_layer: UDPTransport):
        self.transport_layer = transport_layer
        super().__init__()

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        """Handle received datagram."""
        self.transport_layer._handle_datagram(data, addr[:2])

    def error_received(self, exc: Exception):
        """Handle error."""
        self.transport_layer.logger.warning("udp_error", error=str(exc))
        self.transport_layer.stats['errors'] += 1
