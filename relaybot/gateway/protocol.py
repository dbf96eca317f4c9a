"""Gateway RPC request/response shapes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


class ErrorCodes:
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAVAILABLE = "UNAVAILABLE"


@dataclass(frozen=True)
class ErrorShape:
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


def error_shape(code: str, message: str) -> ErrorShape:
    return ErrorShape(code=code, message=message)


@dataclass
class GatewayResponse:
    ok: bool
    payload: dict[str, Any] | None = None
    error: ErrorShape | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.meta:
            data["meta"] = self.meta
        return data


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value


class _Params(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class SendParams(_Params):
    to: str
    message: str
    media_url: str | None = None
    provider: str | None = None
    account_id: str | None = None
    idempotency_key: str

    @field_validator("to", "message", "idempotency_key")
    @classmethod
    def check_not_blank(cls, value: str) -> str:
        return _not_blank(value)


class PollParams(_Params):
    to: str
    question: str
    options: list[str] = Field(min_length=2, max_length=12)
    max_selections: int | None = Field(default=None, ge=1, le=12)
    duration_hours: int | None = Field(default=None, ge=1)
    provider: str | None = None
    account_id: str | None = None
    idempotency_key: str

    @field_validator("to", "question", "idempotency_key")
    @classmethod
    def check_not_blank(cls, value: str) -> str:
        return _not_blank(value)


def format_validation_errors(error: ValidationError) -> str:
    """One line per problem, ``at /path: message`` style."""
    parts = []
    for item in error.errors():
        loc = "/".join(str(p) for p in item.get("loc", ()))
        parts.append(f"at /{loc}: {item.get('msg', 'invalid')}" if loc else item.get("msg", "invalid"))
    return "; ".join(parts) or "unknown validation error"
