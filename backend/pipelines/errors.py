"""Failure classes shared by the indexer and the singleton jobs."""

from __future__ import annotations

from typing import Any
from uuid import uuid4


def new_correlation_id() -> str:
    return str(uuid4())


class TransientIndexerError(RuntimeError):
    """A cycle failed for a reason expected to clear on its own (RPC timeout)."""


class DataIntegrityError(RuntimeError):
    """A chain event references a row that does not exist locally.

    The offending cycle has been rolled back; the process is expected to stop
    until an operator repairs the data.
    """

    def __init__(
        self,
        message: str,
        *,
        correlation_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.correlation_id = correlation_id or new_correlation_id()
        self.context = dict(context or {})
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.args[0]} [correlation_id={self.correlation_id}]"


__all__ = ["DataIntegrityError", "TransientIndexerError", "new_correlation_id"]
