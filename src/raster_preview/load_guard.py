"""Stale-load protection for overlapping decode requests.

Loads are never aborted. Each load takes a ticket; when it completes, the
result is applied only if its ticket is still the current one for that
source. A newer load for the same source supersedes older ones.

Pattern::

    ticket = guard.begin(source_id)
    raster = await decode(...)
    if not guard.is_current(source_id, ticket):
        return  # superseded
    ...
    guard.finish(source_id, ticket)
"""

from __future__ import annotations

import threading
import uuid
from typing import Dict, Hashable

__all__ = ["LoadGuard"]


class LoadGuard:
    """Track the active load ticket per source."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[Hashable, str] = {}

    def begin(self, source_id: Hashable) -> str:
        """Register a new load for ``source_id`` and return its ticket."""
        ticket = str(uuid.uuid4())
        with self._lock:
            self._active[source_id] = ticket
        return ticket

    def is_current(self, source_id: Hashable, ticket: str) -> bool:
        """True if ``ticket`` is still the newest load for ``source_id``."""
        with self._lock:
            return self._active.get(source_id) == ticket

    def finish(self, source_id: Hashable, ticket: str) -> None:
        """Clear the ticket if it is still current."""
        with self._lock:
            if self._active.get(source_id) == ticket:
                del self._active[source_id]

    def cancel(self, source_id: Hashable) -> None:
        """Invalidate any in-flight load for ``source_id``."""
        with self._lock:
            self._active.pop(source_id, None)

    def pending(self) -> int:
        with self._lock:
            return len(self._active)
