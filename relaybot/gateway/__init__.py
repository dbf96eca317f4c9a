"""Gateway RPC boundary: protocol shapes, idempotency cache, send/poll handlers."""

from relaybot.gateway.dedupe import DedupeCache
from relaybot.gateway.protocol import ErrorCodes, GatewayResponse
from relaybot.gateway.send import GatewaySendHandlers

__all__ = ["DedupeCache", "ErrorCodes", "GatewayResponse", "GatewaySendHandlers"]
