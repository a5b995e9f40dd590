"""Snapshot-create-discover sequence shared by every resource kind.

The control plane acknowledges create calls without returning an id, so
each create is bracketed by a list snapshot and a diff (polling.find_new).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence

from .models import ResourceRef
from .polling import Identified, find_new

logger = logging.getLogger(__name__)


def snapshot_ids(items: Iterable[Identified]) -> frozenset[str]:
    """Ids of a listed collection, taken before a create call."""
    return frozenset(item.id for item in items)


def names_in_use(items: Iterable[Identified]) -> set[str]:
    return {item.name for item in items if item.name}


def create_and_discover(
    list_fn: Callable[[], Sequence[Identified]],
    create_fn: Callable[[], None],
    name: str,
    max_attempts: int,
    interval: float,
    zone_id: str,
    kind: str,
) -> ResourceRef:
    """Snapshot, create, then find the new resource by name.

    Must run under the SerializationGuard.

    Args:
        list_fn: Lists the collection the new resource will appear in.
        create_fn: Issues the create call.
        name: Name the new resource was created with.
        max_attempts: Discovery attempt budget.
        interval: Seconds between discovery attempts.
        zone_id: Zone of the collection.
        kind: Resource kind, for logging.

    Returns:
        Reference to the created resource.

    Raises:
        DiscoveryError: If the resource never appears.
        ApiError: If listing or creating fails.
    """
    before = snapshot_ids(list_fn())
    create_fn()
    logger.info(
        "Create accepted, discovering id",
        extra={"kind": kind, "zone_id": zone_id, "resource_name": name, "known_ids": len(before)},
    )
    ref = find_new(list_fn, before, name, max_attempts, interval, zone_id)
    logger.info("Resource created", extra={"kind": kind, "zone_id": zone_id, "resource_id": ref.id, "resource_name": name})
    return ref
