"""Volume attachment reconciliation and standalone volume lifecycle.

Volumes are reconciled by name only: a name present in the desired list
but not in the prior-managed list is created and attached, a name present
only in the prior-managed list is detached and deleted. Size and offering
changes are not reconciled.

SAFETY: a volume is deleted only when its most recent observed status is
ALLOCATED. Anything else raises VolumeNotAllocatedError without issuing
the delete call.
"""

from __future__ import annotations

import logging

from .client import CloudAPI
from .config import PollingConfig
from .diagnostics import Diagnostics
from .discovery import create_and_discover
from .errors import ApiError, InvariantViolation, VolumeNotAllocatedError
from .models import ResourceRef, Volume, VolumeResourceSpec, VolumeSpec, VolumeState
from .polling import (
    wait_for_instance_status,
    wait_for_volume_attach_settled,
    wait_for_volume_attachment,
    wait_for_volume_detachment,
    wait_for_volume_status,
)
from .status import is_instance_stable, is_volume_allocated

logger = logging.getLogger(__name__)


class VolumeReconciler:
    """Keeps an instance's named data volumes in line with a desired list."""

    def __init__(self, client: CloudAPI, polling: PollingConfig) -> None:
        self._client = client
        self._polling = polling

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _find_volume(self, zone_id: str, volume_id: str) -> Volume | None:
        for volume in self._client.list_volumes(zone_id):
            if volume.id == volume_id:
                return volume
        return None

    def _resolve_ids(self, ref: ResourceRef) -> dict[str, str]:
        """Map volume names to ids, preferring volumes attached to the instance."""
        attached = set(self._client.show_instance(ref.zone_id, ref.id).data_volumes)
        by_name: dict[str, str] = {}
        for volume in self._client.list_volumes(ref.zone_id):
            if not volume.name:
                continue
            if volume.name not in by_name or volume.id in attached:
                by_name[volume.name] = volume.id
        return by_name

    def _find_holder(self, zone_id: str, volume_id: str) -> ResourceRef | None:
        for instance in self._client.list_instances(zone_id):
            if volume_id in instance.data_volumes:
                return ResourceRef(zone_id, instance.id)
        return None

    def attached_specs(self, ref: ResourceRef) -> list[VolumeSpec]:
        """Specs of the volumes currently attached to an instance.

        Only names take part in reconciliation, so the API values are
        used as-is without validation.
        """
        attached = set(self._client.show_instance(ref.zone_id, ref.id).data_volumes)
        return [
            VolumeSpec.model_construct(name=v.name, size=v.size, service_offering_id=v.service_offering_id)
            for v in self._client.list_volumes(ref.zone_id)
            if v.id in attached and v.name
        ]

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile(
        self,
        ref: ResourceRef,
        desired: list[VolumeSpec],
        existing: list[VolumeSpec],
        diagnostics: Diagnostics,
    ) -> list[str]:
        """Apply the name delta between existing and desired volumes.

        Args:
            ref: Instance the volumes belong to.
            desired: Volumes that should exist.
            existing: Volumes managed before this call.
            diagnostics: Collects skipped and unresolved volumes.

        Returns:
            Ids of the desired volumes, in desired order. A volume whose id
            cannot be resolved is left out and reported as a warning.

        Raises:
            ApiError: If a detach, delete, create or attach call fails.
            PollTimeoutError: If a detach is never confirmed.
            VolumeNotAllocatedError: If a removed volume never reaches ALLOCATED.
        """
        desired_names = {spec.name for spec in desired}
        existing_names = {spec.name for spec in existing}
        removed = [spec for spec in existing if spec.name not in desired_names]
        added = [spec for spec in desired if spec.name not in existing_names]

        logger.info(
            "Reconciling volumes",
            extra={
                "instance_id": ref.id,
                "remove": [s.name for s in removed],
                "add": [s.name for s in added],
            },
        )

        for spec in removed:
            self._remove(ref, spec.name, diagnostics)

        created: dict[str, str] = {}
        for spec in added:
            created[spec.name] = self._add(ref, spec, diagnostics)

        known = self._resolve_ids(ref) if desired else {}
        known.update(created)

        volume_ids: list[str] = []
        for spec in desired:
            volume_id = known.get(spec.name)
            if volume_id is None:
                diagnostics.add_warning(
                    "Volume id could not be resolved",
                    f"volume {spec.name} of instance {ref.id} is omitted from the result",
                    instance_id=ref.id,
                    volume_name=spec.name,
                )
                continue
            volume_ids.append(volume_id)
        return volume_ids

    def _remove(self, ref: ResourceRef, name: str, diagnostics: Diagnostics) -> None:
        volume_id = self._resolve_ids(ref).get(name)
        if volume_id is None:
            diagnostics.add_info("Volume already gone", f"no volume named {name}", volume_name=name)
            return

        instance = self._client.show_instance(ref.zone_id, ref.id)
        if volume_id in instance.data_volumes:
            self._client.detach_volume(ref.zone_id, volume_id, ref.id)
            wait_for_volume_detachment(
                self._client,
                ref,
                volume_id,
                self._polling.volume_detach_attempts,
                self._polling.volume_poll_interval_seconds,
            ).raise_for_outcome(f"volume {volume_id} still attached to instance {ref.id}")

        status = self.wait_until_allocated(ref.zone_id, volume_id)
        self._delete_allocated(ref.zone_id, volume_id, status)

    def _add(self, ref: ResourceRef, spec: VolumeSpec, diagnostics: Diagnostics) -> str:
        zone_id = ref.zone_id
        new = create_and_discover(
            lambda: self._client.list_volumes(zone_id),
            lambda: self._client.create_volume(zone_id, spec.service_offering_id, spec.size, spec.name),
            spec.name,
            self._polling.volume_discovery_attempts,
            self._polling.volume_discovery_interval_seconds,
            zone_id,
            "volume",
        )
        self._client.attach_volume(zone_id, new.id, ref.id)
        result = wait_for_volume_attachment(
            self._client,
            ref,
            new.id,
            self._polling.volume_attachment_attempts,
            self._polling.volume_poll_interval_seconds,
        )
        if result.error is not None:
            raise result.error
        if not result.satisfied:
            diagnostics.add_warning(
                "Volume attachment not confirmed",
                f"volume {new.id} not yet listed on instance {ref.id}",
                instance_id=ref.id,
                volume_id=new.id,
            )
        return new.id

    def wait_until_allocated(self, zone_id: str, volume_id: str) -> str | None:
        """Return the volume's status once ALLOCATED, polling if needed.

        Raises:
            VolumeNotAllocatedError: If it never reaches ALLOCATED.
        """
        volume = self._find_volume(zone_id, volume_id)
        status = volume.status if volume else None
        if is_volume_allocated(status):
            return status

        observed: list[str | None] = [status]

        def allocated(current: str | None) -> bool:
            observed[0] = current
            return is_volume_allocated(current)

        result = wait_for_volume_status(
            self._client,
            zone_id,
            volume_id,
            allocated,
            self._polling.volume_status_attempts,
            self._polling.volume_status_interval_seconds,
        )
        if result.error is not None:
            raise result.error
        if not result.satisfied:
            raise VolumeNotAllocatedError(
                f"volume {volume_id} did not reach ALLOCATED (status: {observed[0] or 'unknown'})",
                volume_id=volume_id,
                status=observed[0] or "",
            )
        return observed[0]

    def _delete_allocated(self, zone_id: str, volume_id: str, status: str | None) -> None:
        if not is_volume_allocated(status):
            raise VolumeNotAllocatedError(
                f"refusing to delete volume {volume_id} in status {status or 'unknown'}",
                volume_id=volume_id,
                status=status or "",
            )
        self._client.delete_volume(zone_id, volume_id)
        logger.info("Volume deleted", extra={"zone_id": zone_id, "volume_id": volume_id})

    # -------------------------------------------------------------------------
    # Standalone volumes
    # -------------------------------------------------------------------------

    def read_volume(self, ref: ResourceRef) -> VolumeState | None:
        volume = self._find_volume(ref.zone_id, ref.id)
        if volume is None:
            return None
        holder = self._find_holder(ref.zone_id, ref.id)
        return VolumeState(
            ref=ref,
            name=volume.name,
            status=volume.status,
            size=volume.size,
            attached_instance_id=holder.id if holder else None,
        )

    def create_volume(self, spec: VolumeResourceSpec, diagnostics: Diagnostics) -> VolumeState:
        """Create a volume, wait for ALLOCATED, optionally attach it."""
        zone_id = spec.zone_id
        ref = create_and_discover(
            lambda: self._client.list_volumes(zone_id),
            lambda: self._client.create_volume(zone_id, spec.service_offering_id, spec.size, spec.name),
            spec.name,
            self._polling.volume_discovery_attempts,
            self._polling.volume_discovery_interval_seconds,
            zone_id,
            "volume",
        )
        self.wait_until_allocated(zone_id, ref.id)

        if spec.instance_id:
            self._attach_settled(ResourceRef(zone_id, spec.instance_id), ref.id, diagnostics)

        state = self.read_volume(ref)
        if state is None:
            raise InvariantViolation(f"volume {ref.id} disappeared after creation")
        return state

    def _attach_settled(self, instance: ResourceRef, volume_id: str, diagnostics: Diagnostics) -> None:
        self._client.attach_volume(instance.zone_id, volume_id, instance.id)
        result = wait_for_volume_attach_settled(
            self._client,
            instance.zone_id,
            volume_id,
            self._polling.volume_status_attempts,
            self._polling.poll_interval_seconds,
        )
        if result.error is not None:
            raise result.error
        if not result.satisfied:
            diagnostics.add_warning(
                "Volume attachment still settling",
                f"volume {volume_id} still attaching to instance {instance.id}",
                instance_id=instance.id,
                volume_id=volume_id,
            )

    def _wait_instance_stable(self, instance: ResourceRef) -> None:
        wait_for_instance_status(
            self._client,
            instance,
            is_instance_stable,
            "running or stopped",
            self._polling.instance_status_attempts,
            self._polling.poll_interval_seconds,
        )

    def move_volume(
        self, ref: ResourceRef, target_instance_id: str | None, diagnostics: Diagnostics
    ) -> VolumeState:
        """Detach a volume from its holder and attach it to another instance.

        A target of None only detaches.
        """
        holder = self._find_holder(ref.zone_id, ref.id)
        if holder is not None and holder.id == target_instance_id:
            diagnostics.add_info(
                "Volume already attached",
                f"volume {ref.id} is attached to instance {holder.id}",
                volume_id=ref.id,
            )
        else:
            if holder is not None:
                self._wait_instance_stable(holder)
                self._client.detach_volume(ref.zone_id, ref.id, holder.id)
                try:
                    self.wait_until_allocated(ref.zone_id, ref.id)
                except VolumeNotAllocatedError as e:
                    diagnostics.add_warning("Volume detach not confirmed", str(e), volume_id=ref.id)

            if target_instance_id:
                target = ResourceRef(ref.zone_id, target_instance_id)
                self._wait_instance_stable(target)
                self._attach_settled(target, ref.id, diagnostics)

        state = self.read_volume(ref)
        if state is None:
            raise InvariantViolation(f"volume {ref.id} not found")
        return state

    def delete_volume(self, ref: ResourceRef, diagnostics: Diagnostics) -> None:
        """Detach a standalone volume if needed, then delete it once ALLOCATED.

        Raises:
            ApiError: If detach is forbidden or the volume is still in use.
            VolumeNotAllocatedError: If the volume never reaches ALLOCATED.
        """
        if self._find_volume(ref.zone_id, ref.id) is None:
            diagnostics.add_info("Volume already deleted", f"volume {ref.id} not found", volume_id=ref.id)
            return

        holder = self._find_holder(ref.zone_id, ref.id)
        if holder is not None:
            try:
                self._client.detach_volume(ref.zone_id, ref.id, holder.id)
            except ApiError as e:
                if e.is_not_found:
                    diagnostics.add_warning("Volume detach target not found", str(e), volume_id=ref.id)
                elif e.is_forbidden or e.is_conflict:
                    raise
                else:
                    diagnostics.add_warning("Volume detach failed", str(e), volume_id=ref.id)

        self.wait_until_allocated(ref.zone_id, ref.id)

        volume = self._find_volume(ref.zone_id, ref.id)
        if volume is None:
            return
        try:
            self._delete_allocated(ref.zone_id, ref.id, volume.status)
        except ApiError as e:
            if not e.is_not_found:
                raise
