"""Bounded condition polling and diff-based discovery.

Every asynchronous step in the core funnels through poll_until: the
control plane accepts a mutation, and the caller re-reads until the
effect is observable or the attempt budget runs out.

DESIGN PHILOSOPHY:
- Budgets are attempts x interval, never a wall-clock deadline
- Sleep only between attempts (never before the first, never after a hit)
- Fixed interval: no jitter, no exponential growth
- The first predicate error ends the poll; nothing is retried silently

find_new learns the identifier of a resource whose create call returned
none, by diffing list snapshots against ids captured before the create.
Callers MUST hold the SerializationGuard across snapshot and discovery,
otherwise a concurrent create can be mistaken for their own.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .client import CloudAPI
from .errors import DiscoveryError, InstanceNotReadyError, PollTimeoutError
from .models import AttachmentRecord, ResourceRef
from .status import (
    InstanceLifecycleState,
    VolumeLifecycleState,
    normalize_instance_status,
    normalize_volume_status,
)

logger = logging.getLogger(__name__)


class PollOutcome(str, Enum):
    """Terminal result of a bounded poll."""

    SATISFIED = "satisfied"
    EXHAUSTED = "exhausted"
    ERRORED = "errored"


@dataclass
class PollResult:
    """Outcome of poll_until plus the evidence needed to report it."""

    outcome: PollOutcome
    attempts: int
    error: Exception | None = None

    @property
    def satisfied(self) -> bool:
        return self.outcome is PollOutcome.SATISFIED

    def raise_for_outcome(self, message: str) -> None:
        """Raise unless the poll was satisfied.

        Args:
            message: Context for the timeout error.

        Raises:
            PollTimeoutError: If the attempt budget was exhausted.
            Exception: The predicate's own error, re-raised verbatim.
        """
        if self.outcome is PollOutcome.ERRORED and self.error is not None:
            raise self.error
        if self.outcome is PollOutcome.EXHAUSTED:
            raise PollTimeoutError(
                f"{message} (gave up after {self.attempts} attempts)", self.attempts
            )


def poll_until(predicate: Callable[[], bool], max_attempts: int, interval: float) -> PollResult:
    """Evaluate predicate until it holds or the attempt budget is spent.

    Args:
        predicate: Returns True when the condition holds; may raise.
        max_attempts: Maximum number of evaluations (values below 1 mean one).
        interval: Seconds to sleep between consecutive evaluations.

    Returns:
        PollResult with the outcome and the number of evaluations made.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            if predicate():
                return PollResult(PollOutcome.SATISFIED, attempt)
        except Exception as e:
            logger.debug("Poll predicate failed", extra={"attempt": attempt, "error": str(e)})
            return PollResult(PollOutcome.ERRORED, attempt, e)
        if attempt < attempts:
            time.sleep(interval)
    return PollResult(PollOutcome.EXHAUSTED, attempts)


# =============================================================================
# Diff-based discovery
# =============================================================================


class Identified(Protocol):
    id: str
    name: str


def find_new(
    list_fn: Callable[[], Sequence[Identified]],
    existing_ids: Iterable[str],
    match_name: str,
    max_attempts: int,
    interval: float,
    zone_id: str = "",
) -> ResourceRef:
    """Find a resource that appeared after a create call.

    Args:
        list_fn: Lists the current collection; re-invoked every attempt.
        existing_ids: Ids present before the create call was issued.
        match_name: Required name of the new item ("" matches any name).
        max_attempts: Attempt budget.
        interval: Seconds between attempts.
        zone_id: Zone recorded on the returned reference.

    Returns:
        Reference to the first item that is new and matches the name.

    Raises:
        DiscoveryError: If no such item appears within the budget.
        ApiError: If list_fn fails (propagated verbatim).
    """
    before = frozenset(existing_ids)
    found: list[str] = []

    def appeared() -> bool:
        for item in list_fn():
            if item.id in before:
                continue
            if match_name and item.name != match_name:
                continue
            found.append(item.id)
            return True
        return False

    result = poll_until(appeared, max_attempts, interval)
    if result.outcome is PollOutcome.ERRORED and result.error is not None:
        raise result.error
    if not result.satisfied:
        raise DiscoveryError(
            f"resource {match_name or '<any>'} did not appear after {result.attempts} attempts",
            result.attempts,
        )

    logger.debug(
        "Discovered new resource",
        extra={"zone_id": zone_id, "resource_id": found[0], "resource_name": match_name, "attempts": result.attempts},
    )
    return ResourceRef(zone_id=zone_id, id=found[0])


def find_by_name(
    list_fn: Callable[[], Sequence[Identified]],
    name: str,
    max_attempts: int,
    interval: float,
    zone_id: str = "",
) -> ResourceRef:
    """Find a resource by exact name, without a before-snapshot.

    Used where names are unique per zone and the create call is slow to
    surface anything at all (managed Kubernetes clusters).
    """
    return find_new(list_fn, (), name, max_attempts, interval, zone_id)


# =============================================================================
# Typed waits
# =============================================================================


def wait_for_instance_status(
    client: CloudAPI,
    ref: ResourceRef,
    accept: Callable[[str], bool],
    target: str,
    max_attempts: int,
    interval: float,
) -> str:
    """Poll show_instance until accept(status) holds.

    Args:
        client: CloudAPI implementation.
        ref: Instance to watch.
        accept: Predicate over the raw status string.
        target: Human-readable target for error messages.
        max_attempts: Attempt budget.
        interval: Seconds between attempts.

    Returns:
        The raw status that satisfied the predicate.

    Raises:
        InstanceNotReadyError: If the budget is exhausted.
    """
    last = [""]

    def reached() -> bool:
        last[0] = client.show_instance(ref.zone_id, ref.id).status
        return accept(last[0])

    result = poll_until(reached, max_attempts, interval)
    if result.outcome is PollOutcome.EXHAUSTED:
        raise InstanceNotReadyError(
            f"instance {ref.id} did not reach {target} after {result.attempts} attempts "
            f"(last status: {last[0] or 'unknown'})",
            instance_id=ref.id,
            last_status=last[0],
            attempts=result.attempts,
        )
    result.raise_for_outcome(f"waiting for instance {ref.id}")
    return last[0]


def wait_for_logical_state(
    client: CloudAPI,
    ref: ResourceRef,
    state: InstanceLifecycleState,
    max_attempts: int,
    interval: float,
) -> str:
    """Poll until the instance normalizes to the given logical state."""
    return wait_for_instance_status(
        client,
        ref,
        lambda status: normalize_instance_status(status) is state,
        state.value,
        max_attempts,
        interval,
    )


def wait_for_volume_attachment(
    client: CloudAPI, ref: ResourceRef, volume_id: str, max_attempts: int, interval: float
) -> PollResult:
    """Poll until the instance's data_volumes lists volume_id."""
    return poll_until(
        lambda: volume_id in client.show_instance(ref.zone_id, ref.id).data_volumes,
        max_attempts,
        interval,
    )


def wait_for_volume_detachment(
    client: CloudAPI, ref: ResourceRef, volume_id: str, max_attempts: int, interval: float
) -> PollResult:
    """Poll until the instance's data_volumes no longer lists volume_id."""
    return poll_until(
        lambda: volume_id not in client.show_instance(ref.zone_id, ref.id).data_volumes,
        max_attempts,
        interval,
    )


def _volume_status(client: CloudAPI, zone_id: str, volume_id: str) -> str | None:
    for volume in client.list_volumes(zone_id):
        if volume.id == volume_id:
            return volume.status
    return None


def wait_for_volume_status(
    client: CloudAPI,
    zone_id: str,
    volume_id: str,
    accept: Callable[[str | None], bool],
    max_attempts: int,
    interval: float,
) -> PollResult:
    """Poll the volume list until accept(status) holds for volume_id.

    A volume missing from the list is passed to accept as None.
    """
    return poll_until(
        lambda: accept(_volume_status(client, zone_id, volume_id)),
        max_attempts,
        interval,
    )


def wait_for_volume_attach_settled(
    client: CloudAPI, zone_id: str, volume_id: str, max_attempts: int, interval: float
) -> PollResult:
    """Poll until the volume leaves ATTACHING."""
    return wait_for_volume_status(
        client,
        zone_id,
        volume_id,
        lambda status: status is not None
        and normalize_volume_status(status) is not VolumeLifecycleState.ATTACHING,
        max_attempts,
        interval,
    )


def wait_for_network_connection(
    client: CloudAPI,
    zone_id: str,
    network_id: str,
    instance_id: str,
    max_attempts: int,
    interval: float,
) -> AttachmentRecord | None:
    """Poll until the instance shows up on the network.

    Returns:
        The attachment from its first sighting, or None on timeout.

    Raises:
        ApiError: If listing the network's instances fails.
    """
    sighting: list[AttachmentRecord] = []

    def connected() -> bool:
        for item in client.list_network_instances(zone_id, network_id, instance_id):
            if item.instance_id == instance_id and item.network_id == network_id:
                sighting.append(item.to_record())
                return True
        return False

    result = poll_until(connected, max_attempts, interval)
    if result.outcome is PollOutcome.ERRORED and result.error is not None:
        raise result.error
    return sighting[0] if sighting else None


def wait_for_network_disconnection(
    client: CloudAPI,
    zone_id: str,
    network_id: str,
    instance_id: str,
    attachment_id: str,
    max_attempts: int,
    interval: float,
) -> PollResult:
    """Poll until the attachment id is gone from the network's instance list."""
    return poll_until(
        lambda: all(
            item.id != attachment_id
            for item in client.list_network_instances(zone_id, network_id, instance_id)
        ),
        max_attempts,
        interval,
    )


def wait_for_resource_deletion(
    list_fn: Callable[[], Sequence[Identified]],
    resource_id: str,
    max_attempts: int,
    interval: float,
) -> PollResult:
    """Poll until resource_id is absent from the listed collection."""
    return poll_until(
        lambda: all(item.id != resource_id for item in list_fn()),
        max_attempts,
        interval,
    )
