"""Per-request context shared by logging, audit records and event envelopes."""

from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass


@dataclass
class RequestContext:
    correlation_id: str
    actor_user_id: str | None = None


_current: ContextVar[RequestContext | None] = ContextVar("dealflow_request_context", default=None)


def bind_request_context(correlation_id: str) -> Token[RequestContext | None]:
    return _current.set(RequestContext(correlation_id=correlation_id))


def reset_request_context(token: Token[RequestContext | None]) -> None:
    _current.reset(token)


def current_context() -> RequestContext | None:
    return _current.get()


def bind_actor(user_id: str) -> None:
    context = _current.get()
    if context is not None:
        context.actor_user_id = user_id


def get_correlation_id() -> str | None:
    context = _current.get()
    return context.correlation_id if context is not None else None
