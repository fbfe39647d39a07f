"""Transport layer package."""
from natpmp_client.transport.udp_transport import UDPTransport, UDPProtocol

__all__ = [
    'UDPTransport',
    'UDPProtocol',
]
