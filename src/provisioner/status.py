"""Normalization of raw API status strings into logical lifecycle states.

The control plane reports several spellings for the same condition
("Running" and "UP" both mean the instance is up). Every comparison in
the core goes through the functions below so each equivalence class is
defined in exactly one place.
"""

from __future__ import annotations

from enum import Enum

# Raw instance status strings as reported by the API
INSTANCE_STATUS_RUNNING = "Running"
INSTANCE_STATUS_UP = "UP"
INSTANCE_STATUS_STOPPED = "Stopped"
INSTANCE_STATUS_STOPPED_UPPER = "STOPPED"
INSTANCE_STATUS_DOWN = "DOWN"

# Rebuild and first boot finish only in this exact status
READY_STATUS = INSTANCE_STATUS_UP

# Raw volume status strings
VOLUME_STATUS_ALLOCATED = "ALLOCATED"
VOLUME_STATUS_ATTACHING = "ATTACHING"
VOLUME_STATUS_ATTACHED = "ATTACHED"
VOLUME_STATUS_READY = "READY"


class InstanceLifecycleState(str, Enum):
    """Logical instance states."""

    RUNNING = "running"
    STOPPED = "stopped"
    TRANSITIONAL = "transitional"


class VolumeLifecycleState(str, Enum):
    """Logical volume states. Deletion is only allowed from ALLOCATED."""

    ALLOCATED = "allocated"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    OTHER = "other"


_INSTANCE_STATES: dict[str, InstanceLifecycleState] = {
    INSTANCE_STATUS_RUNNING: InstanceLifecycleState.RUNNING,
    INSTANCE_STATUS_UP: InstanceLifecycleState.RUNNING,
    INSTANCE_STATUS_STOPPED: InstanceLifecycleState.STOPPED,
    INSTANCE_STATUS_STOPPED_UPPER: InstanceLifecycleState.STOPPED,
    INSTANCE_STATUS_DOWN: InstanceLifecycleState.STOPPED,
}

_VOLUME_STATES: dict[str, VolumeLifecycleState] = {
    VOLUME_STATUS_ALLOCATED: VolumeLifecycleState.ALLOCATED,
    VOLUME_STATUS_ATTACHING: VolumeLifecycleState.ATTACHING,
    VOLUME_STATUS_ATTACHED: VolumeLifecycleState.ATTACHED,
    VOLUME_STATUS_READY: VolumeLifecycleState.ATTACHED,
}


def normalize_instance_status(status: str | None) -> InstanceLifecycleState:
    """Map a raw instance status string to its logical state.

    Matching is exact: the API's spellings are case-significant and
    anything unrecognised (including empty) is treated as transitional.
    """
    if not status:
        return InstanceLifecycleState.TRANSITIONAL
    return _INSTANCE_STATES.get(status, InstanceLifecycleState.TRANSITIONAL)


def normalize_volume_status(status: str | None) -> VolumeLifecycleState:
    """Map a raw volume status string to its logical state."""
    if not status:
        return VolumeLifecycleState.OTHER
    return _VOLUME_STATES.get(status, VolumeLifecycleState.OTHER)


def is_instance_running(status: str | None) -> bool:
    return normalize_instance_status(status) is InstanceLifecycleState.RUNNING


def is_instance_stopped(status: str | None) -> bool:
    return normalize_instance_status(status) is InstanceLifecycleState.STOPPED


def is_instance_stable(status: str | None) -> bool:
    """Whether the instance is in a state that accepts volume operations."""
    return normalize_instance_status(status) is not InstanceLifecycleState.TRANSITIONAL


def is_volume_allocated(status: str | None) -> bool:
    return normalize_volume_status(status) is VolumeLifecycleState.ALLOCATED


def statuses_for(state: InstanceLifecycleState) -> frozenset[str]:
    """All raw status strings belonging to a logical state."""
    return frozenset(raw for raw, mapped in _INSTANCE_STATES.items() if mapped is state)
