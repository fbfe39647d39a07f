"""
Exception hierarchy for the NAT-PMP client.
"""
from typing import Optional


class NATPMPError(Exception):
    """Base exception for all NAT-PMP client errors."""


class MalformedMessage(NATPMPError):
    """A datagram could not be decoded as a NAT-PMP message."""


class ProtocolError(NATPMPError):
    """The gateway understood the request but rejected it."""
    
    def __init__(self, result_code: int, description: Optional[str] = None):
        self.result_code = result_code
        self.description = description or f"Result code {result_code}"
        super().__init__(f"NAT-PMP error {result_code}: {self.description}")
    
    @property
    def code(self) -> int:
        """Alias for result_code."""
        return self.result_code


class UnknownResultCode(ProtocolError):
    """The gateway replied with a result code outside the defined range."""
    
    def __init__(self, result_code: int):
        super().__init__(result_code, f"Unknown result code {result_code}")


class RequestTimeout(NATPMPError, TimeoutError):
    """No valid response arrived before the retransmission schedule ran out."""


class ClientClosed(NATPMPError):
    """The client was closed before or while the operation was running."""


class InvalidArgument(NATPMPError, ValueError):
    """A caller-supplied argument is out of range."""


class SendError(NATPMPError):
    """The transport could not send a datagram."""
