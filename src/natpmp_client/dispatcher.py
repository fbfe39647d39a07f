"""
Matching of inbound datagrams against the in-flight request.
"""
from typing import Optional, Tuple

import structlog

from natpmp_client.exceptions import MalformedMessage
from natpmp_client.mappings import MappingManager
from natpmp_client.protocol import (
    ExternalAddressResponse,
    MappingRequest,
    MappingResponse,
    RESPONSE_FLAG,
    Response,
    ResultCode,
    decode_response,
    error_for_result_code,
)
from natpmp_client.request_queue import PendingRequest, RequestQueue


class GatewayEpoch:
    """Last observed seconds-since-start value of the gateway."""

    def __init__(self):
        self.seconds: Optional[int] = None

    def observe(self, seconds: int) -> bool:
        """
        Record a new value.

        Returns:
            True if the counter went backwards, meaning the gateway rebooted
        """
        rebooted = self.seconds is not None and seconds < self.seconds
        self.seconds = seconds
        return rebooted


class ResponseDispatcher:
    """
    Decodes inbound datagrams and resolves the in-flight request they answer.

    Anything that does not decode, does not come from the gateway, or does
    not answer the in-flight request is dropped without affecting callers.
    """

    def __init__(
        self,
        queue: RequestQueue,
        mappings: MappingManager,
        gateway: Optional[str] = None,
    ):
        self.queue = queue
        self.mappings = mappings
        self.gateway = gateway
        self.epoch = GatewayEpoch()

        self.logger = structlog.get_logger()

        self.stats = {
            'responses_matched': 0,
            'datagrams_dropped': 0,
            'protocol_errors': 0,
        }

    def handle_datagram(self, data: bytes, addr: Tuple[str, int]):
        """Entry point for every datagram received on the client socket."""
        if self.gateway is not None and addr[0] != self.gateway:
            self._drop("foreign_sender", sender=addr[0])
            return

        try:
            response = decode_response(data)
        except MalformedMessage as e:
            self._drop("malformed", error=str(e), size=len(data))
            return

        pending = self.queue.in_flight
        if pending is None:
            self._drop("unsolicited", opcode=response.opcode)
            return

        if not self._matches(pending, response):
            self._drop("mismatch", opcode=response.opcode, expected=pending.opcode | RESPONSE_FLAG)
            return

        self.stats['responses_matched'] += 1
        if self.epoch.observe(response.seconds_since_start):
            self.mappings.on_gateway_reboot()

        self._resolve(pending, response)
        self.queue.on_resolved()

    def _matches(self, pending: PendingRequest, response: Response) -> bool:
        if response.opcode != pending.opcode | RESPONSE_FLAG:
            return False
        # Error replies may not echo the private port.
        if (
            isinstance(response, MappingResponse)
            and response.result_code == ResultCode.SUCCESS
            and response.private_port != pending.request.private_port
        ):
            return False
        return True

    def _resolve(self, pending: PendingRequest, response: Response):
        if response.result_code != ResultCode.SUCCESS:
            self.stats['protocol_errors'] += 1
            error = error_for_result_code(response.result_code)
            self.logger.info(
                "request_rejected",
                opcode=pending.opcode,
                result_code=response.result_code,
                description=error.description,
            )
            pending.fail(error)
            return

        if isinstance(response, ExternalAddressResponse):
            self.logger.debug("external_address_received", address=str(response.external_ip))
            pending.resolve(response.external_ip)
        elif isinstance(response, MappingResponse):
            request: MappingRequest = pending.request
            if request.is_destroy:
                self.mappings.on_destroyed(response.protocol, response.private_port)
                pending.resolve(None)
            else:
                pending.resolve(self.mappings.on_granted(request, response))
        else:
            pending.resolve(response)

    def _drop(self, reason: str, **context):
        self.stats['datagrams_dropped'] += 1
        self.logger.debug("datagram_dropped", reason=reason, **context)

    def get_stats(self) -> dict:
        return {**self.stats, 'gateway_epoch': self.epoch.seconds}
