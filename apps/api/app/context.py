from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

CORRELATION_HEADER = "x-correlation-id"
MAX_CORRELATION_ID_LENGTH = 128

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def is_acceptable_correlation_id(value: str | None) -> bool:
    return bool(value) and len(value or "") <= MAX_CORRELATION_ID_LENGTH


def resolve_correlation_id(incoming: str | None) -> str:
    """Reuse a caller supplied id when it is usable, otherwise mint a new one."""
    candidate = (incoming or "").strip()
    if is_acceptable_correlation_id(candidate):
        return candidate
    return str(uuid.uuid4())


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


def get_correlation_id() -> str | None:
    return _correlation_id.get()
