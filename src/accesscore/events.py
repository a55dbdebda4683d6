"""Structured error reporting for store-boundary failures.

Failures that abort a mutation, or a read the gate refuses, are published
as a ``StoreErrorContext`` on a named channel. Boundary code (a UI bridge,
an audit sink, a test) subscribes; the engine itself never knows who
listens.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

PERMISSION_ERROR = "permission-error"


@dataclass(frozen=True)
class StoreErrorContext:
    """Diagnostic payload for a rejected store operation.

    - path: ``collection/doc_id`` (or just ``collection`` for queries)
    - operation: create | update | delete | write | list | get
    - request_data: the data the caller tried to write, if any
    - actor: uid of the caller
    - cause: text of the underlying failure (server-side only)
    """

    path: str
    operation: str
    request_data: Optional[dict[str, Any]] = None
    actor: Optional[str] = None
    cause: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Listener = Callable[[Any], None]


class ErrorEmitter:
    """Minimal synchronous publish/subscribe emitter."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, channel: str, listener: Listener) -> None:
        self._listeners[channel].append(listener)

    def off(self, channel: str, listener: Listener) -> None:
        try:
            self._listeners[channel].remove(listener)
        except ValueError:
            pass

    def emit(self, channel: str, payload: Any) -> int:
        """Deliver ``payload`` to every listener; returns how many ran.

        A failing listener is logged and does not stop delivery.
        """
        delivered = 0
        for listener in list(self._listeners.get(channel, ())):
            try:
                listener(payload)
                delivered += 1
            except Exception:
                logger.exception("Listener for %s failed", channel)
        return delivered

    def clear(self) -> None:
        self._listeners.clear()


error_emitter = ErrorEmitter()


__all__ = [
    "ErrorEmitter",
    "PERMISSION_ERROR",
    "StoreErrorContext",
    "error_emitter",
]
