from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

_correlation_id: ContextVar[str | None] = ContextVar("leadflow_correlation_id", default=None)
# Identifiers of the workflow run in progress; merged into every log record.
_workflow_fields: ContextVar[dict[str, str]] = ContextVar("leadflow_workflow_fields", default={})


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def correlation_scope(value: str | None) -> Iterator[str | None]:
    """Bind ``value`` as the correlation id; a falsy value keeps the current one."""
    if not value:
        yield get_correlation_id()
        return
    token = _correlation_id.set(value)
    try:
        yield value
    finally:
        _correlation_id.reset(token)


@contextmanager
def workflow_scope(**fields: Any) -> Iterator[None]:
    merged = {**_workflow_fields.get(), **{key: str(value) for key, value in fields.items() if value is not None}}
    token = _workflow_fields.set(merged)
    try:
        yield
    finally:
        _workflow_fields.reset(token)


def get_workflow_fields() -> dict[str, str]:
    return dict(_workflow_fields.get())
