"""
NAT-PMP message definitions and wire codec.

All integers are encoded in network byte order (big-endian). Only IPv4 is
supported by the protocol.

Request layouts:
- External address: Version (1), Opcode (1)
- Mapping: Version (1), Opcode (1), Reserved (2), Private Port (2),
  Public Port (2), Requested Lifetime (4)

Response layouts share an 8-byte header:
- Version (1), Opcode (1, request opcode + 128), Result Code (2),
  Seconds Since Start (4)
followed by either the external IPv4 address (4) or Private Port (2),
Public Port (2), Granted Lifetime (4).
"""
import ipaddress
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from natpmp_client.exceptions import (
    InvalidArgument,
    MalformedMessage,
    ProtocolError,
    UnknownResultCode,
)


CLIENT_PORT = 5350
SERVER_PORT = 5351

VERSION = 0
RESPONSE_FLAG = 0x80

MAX_PORT = 0xFFFF
MAX_LIFETIME = 0xFFFFFFFF

HEADER_FORMAT = "!BBHI"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


class Opcode(IntEnum):
    """Request opcodes."""
    EXTERNAL_ADDRESS = 0
    MAP_UDP = 1
    MAP_TCP = 2


class Protocol(IntEnum):
    """Transport protocol of a port mapping (value is the request opcode)."""
    UDP = 1
    TCP = 2

    @classmethod
    def parse(cls, value) -> "Protocol":
        """Accept a Protocol, its name ("tcp"/"udp") or its opcode."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.upper()]
            except KeyError:
                raise InvalidArgument(f"Unknown protocol: {value!r}") from None
        try:
            return cls(value)
        except ValueError:
            raise InvalidArgument(f"Unknown protocol: {value!r}") from None

    @property
    def label(self) -> str:
        return self.name.lower()


class ResultCode(IntEnum):
    """Result codes carried in gateway responses."""
    SUCCESS = 0
    UNSUPPORTED_VERSION = 1
    NOT_AUTHORIZED = 2
    NETWORK_FAILURE = 3
    OUT_OF_RESOURCES = 4
    UNSUPPORTED_OPCODE = 5


RESULT_MESSAGES = {
    ResultCode.SUCCESS: "Success",
    ResultCode.UNSUPPORTED_VERSION: "Unsupported Version",
    ResultCode.NOT_AUTHORIZED: "Not Authorized/Refused",
    ResultCode.NETWORK_FAILURE: "Network Failure",
    ResultCode.OUT_OF_RESOURCES: "Out of Resources",
    ResultCode.UNSUPPORTED_OPCODE: "Unsupported Opcode",
}


def error_for_result_code(result_code: int) -> ProtocolError:
    """Build the exception describing a non-zero result code."""
    if result_code in RESULT_MESSAGES:
        return ProtocolError(result_code, RESULT_MESSAGES[ResultCode(result_code)])
    return UnknownResultCode(result_code)


def _check_port(name: str, value: int):
    if not isinstance(value, int) or not 0 <= value <= MAX_PORT:
        raise InvalidArgument(f"{name} must be in 0..{MAX_PORT}, got {value!r}")


def _check_lifetime(value: int):
    if not isinstance(value, int) or not 0 <= value <= MAX_LIFETIME:
        raise InvalidArgument(f"lifetime must be in 0..{MAX_LIFETIME}, got {value!r}")


# Requests

@dataclass(frozen=True)
class ExternalAddressRequest:
    """Request for the gateway's external IPv4 address."""

    FORMAT = "!BB"
    RESPONSE_SIZE = HEADER_SIZE + 4

    @property
    def opcode(self) -> int:
        return int(Opcode.EXTERNAL_ADDRESS)

    def to_bytes(self) -> bytes:
        return struct.pack(self.FORMAT, VERSION, self.opcode)


@dataclass(frozen=True)
class MappingRequest:
    """
    Request to create, renew or destroy a port mapping.

    A lifetime of 0 asks the gateway to destroy the mapping. A public port
    of 0 lets the gateway choose.
    """

    FORMAT = "!BBHHHI"
    SIZE = struct.calcsize(FORMAT)
    RESPONSE_SIZE = HEADER_SIZE + 8

    protocol: Protocol
    private_port: int
    public_port: int
    lifetime: int

    @property
    def opcode(self) -> int:
        return int(self.protocol)

    @property
    def is_destroy(self) -> bool:
        return self.lifetime == 0

    def validate(self) -> "MappingRequest":
        """Raise InvalidArgument unless every field fits the wire format."""
        if not isinstance(self.protocol, Protocol):
            raise InvalidArgument(f"Unknown protocol: {self.protocol!r}")
        _check_port("private_port", self.private_port)
        _check_port("public_port", self.public_port)
        _check_lifetime(self.lifetime)
        return self

    def to_bytes(self) -> bytes:
        return struct.pack(
            self.FORMAT,
            VERSION,
            self.opcode,
            0,                  # Reserved
            self.private_port,
            self.public_port,
            self.lifetime,
        )


@dataclass(frozen=True)
class BareRequest:
    """Header-only request for an opcode that carries no payload."""

    FORMAT = "!BB"
    RESPONSE_SIZE = HEADER_SIZE

    opcode: int

    def to_bytes(self) -> bytes:
        return struct.pack(self.FORMAT, VERSION, self.opcode)


Request = Union[ExternalAddressRequest, MappingRequest, BareRequest]


def decode_request(data: bytes) -> Request:
    """Decode a request datagram (as seen by a gateway)."""
    if len(data) < 2:
        raise MalformedMessage(f"Request too short: {len(data)} bytes")

    version, opcode = data[0], data[1]
    if version != VERSION:
        raise MalformedMessage(f"Unsupported version: {version}")
    if opcode & RESPONSE_FLAG:
        raise MalformedMessage(f"Not a request opcode: {opcode}")

    if opcode in (Opcode.MAP_UDP, Opcode.MAP_TCP):
        if len(data) != MappingRequest.SIZE:
            raise MalformedMessage(
                f"Mapping request must be {MappingRequest.SIZE} bytes, got {len(data)}"
            )
        _, _, _, private_port, public_port, lifetime = struct.unpack(MappingRequest.FORMAT, data)
        return MappingRequest(Protocol(opcode), private_port, public_port, lifetime)

    if len(data) != 2:
        raise MalformedMessage(f"Request for opcode {opcode} must be 2 bytes, got {len(data)}")
    if opcode == Opcode.EXTERNAL_ADDRESS:
        return ExternalAddressRequest()
    return BareRequest(opcode)


# Responses

@dataclass(frozen=True)
class ExternalAddressResponse:
    """Gateway reply carrying its external IPv4 address."""

    result_code: int
    seconds_since_start: int
    external_ip: ipaddress.IPv4Address

    FORMAT = HEADER_FORMAT + "4s"

    @property
    def opcode(self) -> int:
        return int(Opcode.EXTERNAL_ADDRESS) | RESPONSE_FLAG

    def to_bytes(self) -> bytes:
        return struct.pack(
            self.FORMAT,
            VERSION,
            self.opcode,
            self.result_code,
            self.seconds_since_start,
            self.external_ip.packed,
        )


@dataclass(frozen=True)
class MappingResponse:
    """Gateway reply to a mapping request; its ports and lifetime are authoritative."""

    protocol: Protocol
    result_code: int
    seconds_since_start: int
    private_port: int
    public_port: int
    lifetime: int

    FORMAT = HEADER_FORMAT + "HHI"

    @property
    def opcode(self) -> int:
        return int(self.protocol) | RESPONSE_FLAG

    def to_bytes(self) -> bytes:
        return struct.pack(
            self.FORMAT,
            VERSION,
            self.opcode,
            self.result_code,
            self.seconds_since_start,
            self.private_port,
            self.public_port,
            self.lifetime,
        )


@dataclass(frozen=True)
class BareResponse:
    """Header-only reply, used for opcodes this client has no payload layout for."""

    request_opcode: int
    result_code: int
    seconds_since_start: int

    FORMAT = HEADER_FORMAT

    @property
    def opcode(self) -> int:
        return self.request_opcode | RESPONSE_FLAG

    def to_bytes(self) -> bytes:
        return struct.pack(
            self.FORMAT,
            VERSION,
            self.opcode,
            self.result_code,
            self.seconds_since_start,
        )


Response = Union[ExternalAddressResponse, MappingResponse, BareResponse]


def expected_response_size(request_opcode: int) -> int:
    """Exact response length for a given request opcode."""
    if request_opcode == Opcode.EXTERNAL_ADDRESS:
        return ExternalAddressRequest.RESPONSE_SIZE
    if request_opcode in (Opcode.MAP_UDP, Opcode.MAP_TCP):
        return MappingRequest.RESPONSE_SIZE
    return BareRequest.RESPONSE_SIZE


def decode_response(data: bytes) -> Response:
    """
    Decode a response datagram.

    Raises:
        MalformedMessage: if the version is not 0, the opcode lacks the
            response flag, or the length does not match the opcode's layout
    """
    if len(data) < HEADER_SIZE:
        raise MalformedMessage(f"Response too short: {len(data)} bytes")

    version, opcode, result_code, seconds = struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE])
    if version != VERSION:
        raise MalformedMessage(f"Unsupported version: {version}")
    if not opcode & RESPONSE_FLAG:
        raise MalformedMessage(f"Not a response opcode: {opcode}")

    request_opcode = opcode & ~RESPONSE_FLAG
    size = expected_response_size(request_opcode)
    if len(data) != size:
        raise MalformedMessage(
            f"Response for opcode {request_opcode} must be {size} bytes, got {len(data)}"
        )

    if request_opcode == Opcode.EXTERNAL_ADDRESS:
        *_, address = struct.unpack(ExternalAddressResponse.FORMAT, data)
        return ExternalAddressResponse(
            result_code=result_code,
            seconds_since_start=seconds,
            external_ip=ipaddress.IPv4Address(address),
        )

    if request_opcode in (Opcode.MAP_UDP, Opcode.MAP_TCP):
        *_, private_port, public_port, lifetime = struct.unpack(MappingResponse.FORMAT, data)
        return MappingResponse(
            protocol=Protocol(request_opcode),
            result_code=result_code,
            seconds_since_start=seconds,
            private_port=private_port,
            public_port=public_port,
            lifetime=lifetime,
        )

    return BareResponse(
        request_opcode=request_opcode,
        result_code=result_code,
        seconds_since_start=seconds,
    )
