"""Idempotent ``send`` and ``poll`` gateway methods."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel, ValidationError

from relaybot.config.schema import Config
from relaybot.gateway.dedupe import DedupeCache
from relaybot.gateway.protocol import (
    ErrorCodes,
    GatewayResponse,
    PollParams,
    SendParams,
    error_shape,
    format_validation_errors,
)
from relaybot.providers.base import ProviderRegistry, SendResult
from relaybot.providers.ids import POLL_PROVIDERS, normalize_message_provider
from relaybot.providers.polls import PollInput, max_poll_options, normalize_poll_input

DEFAULT_GATEWAY_PROVIDER = "whatsapp"


def _clean_account_id(raw: str | None) -> str | None:
    cleaned = (raw or "").strip()
    return cleaned or None


class GatewaySendHandlers:
    """
    Gateway-side outbound sends guarded by the caller's idempotency key.

    Validation happens before the cache is consulted, so malformed requests
    are never cached. Once a request has been attempted, its outcome (success
    or provider failure) is replayed for any retry with the same key.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        dedupe: DedupeCache | None = None,
        cfg: Config | None = None,
    ):
        self.registry = registry
        self.cfg = cfg or Config()
        self.dedupe = dedupe or DedupeCache(
            ttl_ms=self.cfg.gateway.dedupe_ttl_ms,
            max_entries=self.cfg.gateway.dedupe_max_entries,
        )
        self._inflight: dict[str, asyncio.Future[GatewayResponse]] = {}

    async def handle(self, method: str, params: dict[str, Any]) -> GatewayResponse:
        if method == "send":
            return await self.send(params)
        if method == "poll":
            return await self.poll(params)
        return GatewayResponse(
            ok=False,
            error=error_shape(ErrorCodes.INVALID_REQUEST, f"unknown method: {method}"),
        )

    async def send(self, params: dict[str, Any] | SendParams) -> GatewayResponse:
        request = self._validate(SendParams, params, "send")
        if isinstance(request, GatewayResponse):
            return request
        return await self._run_once(f"send:{request.idempotency_key}", lambda: self._send(request))

    async def poll(self, params: dict[str, Any] | PollParams) -> GatewayResponse:
        request = self._validate(PollParams, params, "poll")
        if isinstance(request, GatewayResponse):
            return request

        key = f"poll:{request.idempotency_key}"
        cached = self._replay(key)
        if cached:
            return cached
        provider = normalize_message_provider(request.provider) or DEFAULT_GATEWAY_PROVIDER
        if provider not in POLL_PROVIDERS:
            return GatewayResponse(
                ok=False,
                error=error_shape(ErrorCodes.INVALID_REQUEST, f"unsupported poll provider: {provider}"),
            )
        return await self._run_once(key, lambda: self._poll(request, provider))

    async def _send(self, request: SendParams) -> GatewayResponse:
        idem = request.idempotency_key
        to = request.to.strip()
        message = request.message.strip()
        provider = normalize_message_provider(request.provider) or DEFAULT_GATEWAY_PROVIDER
        account_id = _clean_account_id(request.account_id)
        try:
            adapter = self.registry.require(provider)
            result = await adapter.send_message(
                to,
                message,
                media_url=request.media_url,
                account_id=account_id,
            )
        except Exception as e:
            return self._fail(f"send:{idem}", provider, e)
        return self._succeed(f"send:{idem}", idem, provider, result)

    async def _poll(self, request: PollParams, provider: str) -> GatewayResponse:
        idem = request.idempotency_key
        poll = PollInput(
            question=request.question,
            options=list(request.options),
            max_selections=request.max_selections,
            duration_hours=request.duration_hours,
        )
        account_id = _clean_account_id(request.account_id)
        try:
            normalized = normalize_poll_input(poll, max_options=max_poll_options(provider))
            adapter = self.registry.require(provider)
            result = await adapter.send_poll(request.to.strip(), normalized, account_id=account_id)
        except Exception as e:
            return self._fail(f"poll:{idem}", provider, e)
        return self._succeed(f"poll:{idem}", idem, provider, result)

    async def _run_once(self, key: str, attempt: Callable[[], Awaitable[GatewayResponse]]) -> GatewayResponse:
        """Run attempt unless key has a cached outcome or an attempt already in flight."""
        cached = self._replay(key)
        if cached:
            return cached
        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug(f"Waiting for in-flight gateway request {key}")
            response = await asyncio.shield(pending)
            return GatewayResponse(ok=response.ok, payload=response.payload, error=response.error, meta={"cached": True})

        future: asyncio.Future[GatewayResponse] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            response = await attempt()
            future.set_result(response)
            return response
        except BaseException:
            if not future.done():
                future.cancel()
            raise
        finally:
            self._inflight.pop(key, None)

    @staticmethod
    def _validate(
        model: type[BaseModel], params: dict[str, Any] | BaseModel, method: str
    ) -> Any:
        if isinstance(params, model):
            return params
        try:
            return model.model_validate(params)
        except ValidationError as e:
            return GatewayResponse(
                ok=False,
                error=error_shape(
                    ErrorCodes.INVALID_REQUEST,
                    f"invalid {method} params: {format_validation_errors(e)}",
                ),
            )

    def _replay(self, key: str) -> GatewayResponse | None:
        entry = self.dedupe.get(key)
        if entry is None:
            return None
        logger.debug(f"Replaying cached gateway response for {key}")
        return GatewayResponse(ok=entry.ok, payload=entry.payload, error=entry.error, meta={"cached": True})

    def _succeed(self, key: str, idem: str, provider: str, result: SendResult) -> GatewayResponse:
        payload = {"runId": idem, "messageId": result.message_id, **result.extra, "provider": provider}
        self.dedupe.set(key, ok=True, payload=payload)
        return GatewayResponse(ok=True, payload=payload, meta={"provider": provider})

    def _fail(self, key: str, provider: str, e: Exception) -> GatewayResponse:
        logger.error(f"Gateway {key.split(':', 1)[0]} via {provider} failed: {e}")
        error = error_shape(ErrorCodes.UNAVAILABLE, str(e))
        self.dedupe.set(key, ok=False, error=error)
        return GatewayResponse(ok=False, error=error, meta={"provider": provider, "error": str(e)})
