"""
Configuration management for the NAT-PMP client.
"""
from dataclasses import dataclass
from typing import Optional
import ipaddress
import json

from natpmp_client.protocol import CLIENT_PORT, SERVER_PORT
from natpmp_client.retry import INITIAL_RETRY_DELAY, MAX_ATTEMPTS
from natpmp_client.mappings import RENEWAL_FRACTION


@dataclass
class ClientConfig:
    """Configuration for a NAT-PMP client."""

    # Gateway
    gateway: Optional[str] = None  # IPv4 address of the NAT gateway
    server_port: int = SERVER_PORT

    # Local socket
    bind_host: str = "0.0.0.0"
    client_port: int = CLIENT_PORT  # 0 for an ephemeral port

    # Retransmission
    initial_retry_delay: float = INITIAL_RETRY_DELAY  # Seconds before first retransmission
    max_attempts: int = MAX_ATTEMPTS  # Transmissions before giving up

    # Mappings
    renewal_fraction: float = RENEWAL_FRACTION  # Share of lifetime elapsed before renewal
    default_lifetime: int = 7200  # Seconds requested when the caller gives none

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_file(cls, path: str) -> "ClientConfig":
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls(**data)

    def to_file(self, path: str):
        """Save configuration to a JSON file."""
        data = {
            k: v for k, v in self.__dict__.items()
            if not k.startswith("_")
        }
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def validate(self) -> bool:
        """Validate configuration parameters."""
        if self.gateway is not None:
            try:
                ipaddress.IPv4Address(self.gateway)
            except ValueError:
                raise ValueError(f"Gateway must be an IPv4 address: {self.gateway!r}")

        if self.server_port < 1 or self.server_port > 65535:
            raise ValueError(f"Invalid server port: {self.server_port}")

        if self.client_port < 0 or self.client_port > 65535:
            raise ValueError(f"Invalid client port: {self.client_port}")

        if self.initial_retry_delay <= 0:
            raise ValueError("initial_retry_delay must be positive")

        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        if not (0.0 < self.renewal_fraction < 1.0):
            raise ValueError("renewal_fraction must be between 0.0 and 1.0")

        if self.default_lifetime < 1 or self.default_lifetime > 0xFFFFFFFF:
            raise ValueError(f"Invalid default lifetime: {self.default_lifetime}")

        return True
