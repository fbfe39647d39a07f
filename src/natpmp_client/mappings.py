"""
Port mapping state and proactive renewal.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from natpmp_client.exceptions import ClientClosed
from natpmp_client.protocol import MappingRequest, MappingResponse, Protocol
from natpmp_client.request_queue import PendingRequest


RENEWAL_FRACTION = 0.5

MappingKey = Tuple[Protocol, int]


@dataclass(eq=False)
class Mapping:
    """A port mapping granted by the gateway."""

    protocol: Protocol
    private_port: int
    public_port: int
    lifetime: int
    requested_lifetime: int
    obtained_at: float
    releasing: bool = field(default=False, repr=False)
    renewal_timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def key(self) -> MappingKey:
        return (self.protocol, self.private_port)

    @property
    def expires_at(self) -> float:
        return self.obtained_at + self.lifetime

    def renewal_request(self) -> MappingRequest:
        """The request that keeps this mapping alive."""
        return MappingRequest(
            protocol=self.protocol,
            private_port=self.private_port,
            public_port=self.public_port,
            lifetime=self.requested_lifetime,
        )

    def to_dict(self) -> dict:
        return {
            'protocol': self.protocol.label,
            'private_port': self.private_port,
            'public_port': self.public_port,
            'lifetime': self.lifetime,
            'obtained_at': self.obtained_at,
            'expires_at': self.expires_at,
        }


class MappingManager:
    """
    Tracks held mappings keyed by (protocol, private port) and re-issues
    their requests before they expire.

    ``submit`` enqueues a request on the client's queue and returns the
    resulting PendingRequest; renewals and re-grants go through it like any
    other operation.
    """

    def __init__(
        self,
        submit: Callable[[MappingRequest, str], PendingRequest],
        renewal_fraction: float = RENEWAL_FRACTION,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.submit = submit
        self.renewal_fraction = renewal_fraction
        self._loop = loop

        self.mappings: Dict[MappingKey, Mapping] = {}
        self.logger = structlog.get_logger()

        self.stats = {
            'granted': 0,
            'renewals_issued': 0,
            'renewals_failed': 0,
            'destroyed': 0,
            'gateway_reboots': 0,
        }

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def get(self, protocol: Protocol, private_port: int) -> Optional[Mapping]:
        return self.mappings.get((protocol, private_port))

    def all(self) -> List[Mapping]:
        return list(self.mappings.values())

    def on_granted(self, request: MappingRequest, response: MappingResponse) -> Mapping:
        """
        Record a successful mapping response and schedule its renewal.

        The response's ports and lifetime are authoritative.
        """
        previous = self.mappings.pop((response.protocol, response.private_port), None)
        if previous is not None:
            self._cancel_timer(previous)

        mapping = Mapping(
            protocol=response.protocol,
            private_port=response.private_port,
            public_port=response.public_port,
            lifetime=response.lifetime,
            requested_lifetime=request.lifetime,
            obtained_at=self.loop.time(),
        )
        self.mappings[mapping.key] = mapping
        self.stats['granted'] += 1

        self._schedule_renewal(mapping, mapping.lifetime * self.renewal_fraction)

        self.logger.info(
            "mapping_granted",
            protocol=mapping.protocol.label,
            private_port=mapping.private_port,
            public_port=mapping.public_port,
            lifetime=mapping.lifetime,
            renewed=previous is not None,
        )
        return mapping

    def destroy(self, protocol: Protocol, private_port: int) -> PendingRequest:
        """
        Ask the gateway to delete a mapping (private port 0 means every
        mapping of ``protocol``).

        Renewal stops while the deletion is outstanding. If the gateway does
        not confirm it, the mappings are kept alive again.
        """
        targets = self._matching(protocol, private_port)
        for mapping in targets:
            mapping.releasing = True
            self._cancel_timer(mapping)

        pending = self.submit(self.destroy_request(protocol, private_port), "user")
        pending.future.add_done_callback(
            lambda future: self._on_destroy_done(targets, future)
        )
        return pending

    def destroy_request(self, protocol: Protocol, private_port: int) -> MappingRequest:
        """The deletion request for a mapping."""
        return MappingRequest(
            protocol=protocol,
            private_port=private_port,
            public_port=0,
            lifetime=0,
        )

    def on_destroyed(self, protocol: Protocol, private_port: int):
        """
        Forget a mapping the gateway confirmed as deleted. Private port 0
        means every mapping of ``protocol``.
        """
        if private_port == 0:
            keys = [key for key in self.mappings if key[0] == protocol]
        else:
            keys = [(protocol, private_port)]

        for key in keys:
            mapping = self.mappings.pop(key, None)
            if mapping is not None:
                self._cancel_timer(mapping)
        self.stats['destroyed'] += 1

        self.logger.info(
            "mapping_destroyed",
            protocol=protocol.label,
            private_port=private_port,
        )

    def on_gateway_reboot(self):
        """
        The gateway lost its state: drop every mapping and request it again.
        """
        held = list(self.mappings.values())
        self.stats['gateway_reboots'] += 1
        self.logger.warning("gateway_reboot_detected", mappings=len(held))

        self.mappings.clear()
        for mapping in held:
            self._cancel_timer(mapping)
            # Deleted along with the rest of the gateway state.
            if mapping.releasing:
                continue
            self._issue(mapping.renewal_request(), "regrant")

    def close(self):
        """Cancel every renewal timer. The gateway is not notified."""
        for mapping in self.mappings.values():
            self._cancel_timer(mapping)
        self.mappings.clear()

    def _schedule_renewal(self, mapping: Mapping, delay: float):
        if mapping.lifetime <= 0:
            return
        mapping.renewal_timer = self.loop.call_later(delay, self._renew, mapping)
        self.logger.debug(
            "renewal_scheduled",
            protocol=mapping.protocol.label,
            private_port=mapping.private_port,
            delay=delay,
        )

    def _cancel_timer(self, mapping: Mapping):
        if mapping.renewal_timer is not None:
            mapping.renewal_timer.cancel()
            mapping.renewal_timer = None

    def _renew(self, mapping: Mapping):
        mapping.renewal_timer = None
        if self.mappings.get(mapping.key) is not mapping:
            return

        self.stats['renewals_issued'] += 1
        self.logger.info(
            "mapping_renewal",
            protocol=mapping.protocol.label,
            private_port=mapping.private_port,
            public_port=mapping.public_port,
        )
        pending = self._issue(mapping.renewal_request(), "renewal")
        pending.future.add_done_callback(
            lambda future: self._on_renewal_done(mapping, future)
        )

    def _issue(self, request: MappingRequest, origin: str) -> PendingRequest:
        pending = self.submit(request, origin)
        pending.future.add_done_callback(self._consume_result)
        return pending

    def _consume_result(self, future: asyncio.Future):
        # Nobody awaits renewals; retrieve the outcome so failures are logged
        # rather than reported as never-retrieved exceptions.
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None and not isinstance(exc, ClientClosed):
            self.logger.warning("background_mapping_request_failed", error=str(exc))

    def _matching(self, protocol: Protocol, private_port: int) -> List[Mapping]:
        return [
            mapping for mapping in self.mappings.values()
            if mapping.protocol == protocol and private_port in (0, mapping.private_port)
        ]

    def _on_destroy_done(self, targets: List[Mapping], future: asyncio.Future):
        if not future.cancelled() and future.exception() is None:
            return

        for mapping in targets:
            if self.mappings.get(mapping.key) is not mapping:
                continue
            mapping.releasing = False
            self.logger.warning(
                "mapping_release_failed",
                protocol=mapping.protocol.label,
                private_port=mapping.private_port,
            )
            self._retry_within_lifetime(mapping)

    def _on_renewal_done(self, mapping: Mapping, future: asyncio.Future):
        if future.cancelled() or future.exception() is None:
            return
        if self.mappings.get(mapping.key) is not mapping:
            return

        self.stats['renewals_failed'] += 1
        self._retry_within_lifetime(mapping)

    def _retry_within_lifetime(self, mapping: Mapping):
        remaining = mapping.expires_at - self.loop.time()
        if remaining <= 0:
            del self.mappings[mapping.key]
            self.logger.warning(
                "mapping_expired",
                protocol=mapping.protocol.label,
                private_port=mapping.private_port,
            )
            return

        self._schedule_renewal(mapping, remaining * self.renewal_fraction)

    def get_stats(self) -> dict:
        return {
            **self.stats,
            'held': len(self.mappings),
        }
