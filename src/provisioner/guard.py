"""Process-wide serialization of mutating operations.

Discovery learns new ids by diffing list snapshots. Two creates of the
same kind running concurrently in one zone could each see the other's
resource as their own, so every create, update and delete holds one
shared lock from before its snapshot until its final refresh.

The lock is intentionally coarse: one guard is shared by all resource
kinds because an instance create also creates volumes and connects
networks. It is non-reentrant; only top-level entry points acquire it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class SerializationGuard:
    """Mutual-exclusion handle passed explicitly to every entry point."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holder: str | None = None

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> str | None:
        """Description of the operation currently holding the guard."""
        return self._holder

    @contextmanager
    def hold(self, kind: str, operation: str) -> Iterator[None]:
        """Hold the guard for the duration of one mutating operation.

        Args:
            kind: Resource kind ("instance", "network", ...).
            operation: Operation name ("create", "delete", ...).
        """
        started = time.monotonic()
        self._lock.acquire()
        waited = time.monotonic() - started
        self._holder = f"{kind}:{operation}"
        logger.debug(
            "Serialization guard acquired",
            extra={"kind": kind, "operation": operation, "waited_seconds": round(waited, 3)},
        )
        try:
            yield
        finally:
            self._holder = None
            self._lock.release()
            logger.debug("Serialization guard released", extra={"kind": kind, "operation": operation})
