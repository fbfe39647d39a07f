"""
NAT-PMP Client - asynchronous NAT Port Mapping Protocol client.

This package lets a host behind a NAT gateway:
- Discover the gateway's external IPv4 address
- Request, renew and delete inbound TCP/UDP port mappings

Requests are serialized one at a time and retransmitted on the
protocol's exponential backoff schedule (RFC 6886).
"""

__version__ = "0.1.0"

from natpmp_client.client import Client, ClientState
from natpmp_client.config import ClientConfig
from natpmp_client.exceptions import (
    ClientClosed,
    InvalidArgument,
    MalformedMessage,
    NATPMPError,
    ProtocolError,
    RequestTimeout,
    SendError,
    UnknownResultCode,
)
from natpmp_client.mappings import Mapping
from natpmp_client.protocol import CLIENT_PORT, SERVER_PORT, Protocol, ResultCode

__all__ = [
    "Client",
    "ClientState",
    "ClientConfig",
    "Mapping",
    "Protocol",
    "ResultCode",
    "CLIENT_PORT",
    "SERVER_PORT",
    "NATPMPError",
    "MalformedMessage",
    "ProtocolError",
    "UnknownResultCode",
    "RequestTimeout",
    "ClientClosed",
    "InvalidArgument",
    "SendError",
]
