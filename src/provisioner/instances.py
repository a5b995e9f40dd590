"""Instance lifecycle: power state transitions, create, update, delete.

Every transition issues at most one API call and then polls until the
instance normalizes to the target logical state. Status spellings are
compared only through status.normalize_instance_status.

Budget: instance_status_attempts x poll_interval_seconds (120 x 5s by
default). Running out raises InstanceNotReadyError, which the caller may
treat as fatal or retry later.
"""

from __future__ import annotations

import logging

from .client import CloudAPI
from .config import PollingConfig
from .diagnostics import Diagnostics
from .discovery import create_and_discover, names_in_use
from .errors import ApiError, InvariantViolation, PollTimeoutError
from .models import InstanceSpec, InstanceState, ResourceRef
from .networks import NetworkReconciler, primary_ip
from .polling import (
    wait_for_instance_status,
    wait_for_logical_state,
    wait_for_network_connection,
    wait_for_resource_deletion,
    wait_for_volume_attach_settled,
    wait_for_volume_detachment,
)
from .status import (
    READY_STATUS,
    InstanceLifecycleState,
    is_instance_running,
)
from .volumes import VolumeReconciler

logger = logging.getLogger(__name__)


class InstanceController:
    """Drives one instance through its lifecycle.

    Network and volume changes are delegated to the reconcilers; this
    class owns ordering (power state, rebuild, networks, volumes) and the
    create and delete flows.
    """

    def __init__(
        self,
        client: CloudAPI,
        polling: PollingConfig,
        networks: NetworkReconciler,
        volumes: VolumeReconciler,
    ) -> None:
        self._client = client
        self._polling = polling
        self._networks = networks
        self._volumes = volumes

    # =========================================================================
    # Power state
    # =========================================================================

    def _wait_for(self, ref: ResourceRef, state: InstanceLifecycleState) -> str:
        return wait_for_logical_state(
            self._client,
            ref,
            state,
            self._polling.instance_status_attempts,
            self._polling.poll_interval_seconds,
        )

    def ensure_running(self, ref: ResourceRef) -> str:
        """Start the instance unless it already runs.

        Returns:
            The raw status once running.

        Raises:
            InstanceNotReadyError: If it does not come up in time.
        """
        status = self._client.show_instance(ref.zone_id, ref.id).status
        if is_instance_running(status):
            return status
        logger.info("Starting instance", extra={"instance_id": ref.id, "status": status})
        self._client.start_instance(ref.zone_id, ref.id)
        return self._wait_for(ref, InstanceLifecycleState.RUNNING)

    def ensure_stopped(self, ref: ResourceRef) -> str:
        """Stop the instance if it runs, then wait until it reports stopped.

        The wait happens even when no stop was issued, so an instance that
        is mid-shutdown is not mistaken for one that can be rebuilt.
        """
        status = self._client.show_instance(ref.zone_id, ref.id).status
        if is_instance_running(status):
            logger.info("Stopping instance", extra={"instance_id": ref.id, "status": status})
            self._client.stop_instance(ref.zone_id, ref.id)
        return self._wait_for(ref, InstanceLifecycleState.STOPPED)

    def reboot(self, ref: ResourceRef, diagnostics: Diagnostics) -> str:
        """Reboot a running instance; anything else is reported, not changed."""
        status = self._client.show_instance(ref.zone_id, ref.id).status
        if not is_instance_running(status):
            diagnostics.add_warning(
                "Reboot skipped",
                f"instance {ref.id} is not running (status: {status or 'unknown'})",
                instance_id=ref.id,
            )
            return status
        self._client.reboot_instance(ref.zone_id, ref.id)
        return self._wait_for(ref, InstanceLifecycleState.RUNNING)

    def rebuild(self, ref: ResourceRef, vm_image_id: str) -> str:
        """Stop, rebuild from a new image, and wait for exactly READY_STATUS."""
        self.ensure_stopped(ref)
        logger.info("Rebuilding instance", extra={"instance_id": ref.id, "vm_image_id": vm_image_id})
        self._client.rebuild_instance(ref.zone_id, ref.id, vm_image_id)
        return wait_for_instance_status(
            self._client,
            ref,
            lambda status: status == READY_STATUS,
            READY_STATUS,
            self._polling.instance_status_attempts,
            self._polling.poll_interval_seconds,
        )

    def apply_desired_state(
        self, ref: ResourceRef, desired: str | None, current_status: str, diagnostics: Diagnostics
    ) -> str:
        """Dispatch a desired power state; unknown values leave the instance alone."""
        if desired == "running":
            return self.ensure_running(ref)
        if desired == "stopped":
            return self.ensure_stopped(ref)
        if desired == "reboot":
            return self.reboot(ref, diagnostics)
        return current_status

    # =========================================================================
    # Read
    # =========================================================================

    def read_instance(self, ref: ResourceRef) -> InstanceState:
        instance = self._client.show_instance(ref.zone_id, ref.id)
        networks = self._networks.refresh_attachments(ref)
        return InstanceState(
            ref=ref,
            name=instance.name,
            status=instance.status,
            username=instance.username,
            password=instance.password,
            ip=primary_ip(networks),
            networks=networks,
            volume_ids=list(instance.data_volumes),
        )

    # =========================================================================
    # Create
    # =========================================================================

    def create_instance(self, spec: InstanceSpec, diagnostics: Diagnostics) -> InstanceState:
        """Create an instance and wait until it is usable.

        Steps: validate, create, discover id, wait for READY_STATUS, wait
        for every requested network connection, create data volumes,
        then apply the desired power state.

        Raises:
            InvariantViolation: If the name is taken or a network is missing.
            DiscoveryError: If the instance never appears.
            InstanceNotReadyError: If it does not come up in time.
            PollTimeoutError: If a requested network never connects.
        """
        zone_id = spec.zone_id
        if not spec.network_ids:
            raise InvariantViolation("at least one network must be attached to the instance")
        if spec.name in names_in_use(self._client.list_instances(zone_id)):
            raise InvariantViolation(f"instance name {spec.name!r} already exists in zone {zone_id}")

        known_networks = {n.id for n in self._client.list_networks(zone_id)}
        missing = [n for n in spec.network_ids if n not in known_networks]
        if missing:
            raise InvariantViolation(f"networks not found in zone {zone_id}: {', '.join(missing)}")

        ref = create_and_discover(
            lambda: self._client.list_instances(zone_id),
            lambda: self._client.create_instance(
                zone_id, spec.service_offering_id, spec.vm_image_id, spec.network_ids, spec.name
            ),
            spec.name,
            self._polling.instance_status_attempts,
            self._polling.poll_interval_seconds,
            zone_id,
            "instance",
        )

        wait_for_instance_status(
            self._client,
            ref,
            lambda status: status == READY_STATUS,
            READY_STATUS,
            self._polling.instance_status_attempts,
            self._polling.poll_interval_seconds,
        )

        unconnected = []
        for network_id in spec.network_ids:
            record = wait_for_network_connection(
                self._client,
                zone_id,
                network_id,
                ref.id,
                self._polling.network_connection_attempts,
                self._polling.network_poll_interval_seconds,
            )
            if record is None:
                unconnected.append(network_id)
        if unconnected:
            raise PollTimeoutError(
                f"instance {ref.id} not connected to networks: {', '.join(unconnected)}",
                self._polling.network_connection_attempts,
            )

        if spec.volumes:
            self._volumes.reconcile(ref, spec.volumes, [], diagnostics)

        if spec.desired_state and spec.desired_state != "running":
            status = self._client.show_instance(zone_id, ref.id).status
            self.apply_desired_state(ref, spec.desired_state, status, diagnostics)

        state = self.read_instance(ref)
        diagnostics.add_info("Instance created", f"instance {spec.name} has id {ref.id}", instance_id=ref.id)
        return state

    # =========================================================================
    # Update
    # =========================================================================

    def update_instance(
        self,
        ref: ResourceRef,
        spec: InstanceSpec,
        prior: InstanceSpec | None,
        diagnostics: Diagnostics,
    ) -> InstanceState:
        """Converge an existing instance on spec.

        Args:
            ref: Instance reference.
            spec: Desired state.
            prior: Previously applied spec. When None, the currently
                observed networks and volumes are treated as managed and
                only the running and stopped states are converged; a
                reboot is an action and needs a prior spec to compare to.
            diagnostics: Collects drift and verification warnings.

        Raises:
            InvariantViolation: If spec names no networks. Checked before
                any mutation.
        """
        if not spec.network_ids:
            raise InvariantViolation("at least one network must be attached to the instance")

        current = self._client.show_instance(ref.zone_id, ref.id)

        if current.vm_image_id and spec.vm_image_id != current.vm_image_id:
            self.rebuild(ref, spec.vm_image_id)

        if prior is not None:
            power_change = spec.desired_state is not None and spec.desired_state != prior.desired_state
        else:
            power_change = spec.desired_state in ("running", "stopped")
        if power_change:
            status = self._client.show_instance(ref.zone_id, ref.id).status
            self.apply_desired_state(ref, spec.desired_state, status, diagnostics)

        if prior is not None:
            prior_networks = prior.network_ids
            prior_volumes = prior.volumes
        else:
            prior_networks = [a.network_id for a in self._networks.refresh_attachments(ref)]
            prior_volumes = self._volumes.attached_specs(ref)

        self._networks.reconcile(ref, spec.network_ids, prior_networks, diagnostics)
        self._volumes.reconcile(ref, spec.volumes, prior_volumes, diagnostics)

        return self.read_instance(ref)

    # =========================================================================
    # Delete
    # =========================================================================

    def delete_instance(self, ref: ResourceRef, name: str, diagnostics: Diagnostics) -> None:
        """Strip volumes and secondary networks, then delete the instance.

        The pre-deletion steps are best effort: a vanished instance or a
        failed detach is reported as a warning.

        Raises:
            ApiError: If the delete call fails.
            PollTimeoutError: If the instance is still listed afterwards.
        """
        try:
            self.ensure_running(ref)
            instance = self._client.show_instance(ref.zone_id, ref.id)
        except ApiError as e:
            if not e.is_not_found:
                raise
            diagnostics.add_warning("Instance not found", str(e), instance_id=ref.id)
            return

        for volume_id in instance.data_volumes:
            self._detach_for_delete(ref, volume_id, diagnostics)

        try:
            attachments = self._networks.refresh_attachments(ref)
        except ApiError as e:
            diagnostics.add_warning("Could not list instance networks", str(e), instance_id=ref.id)
            attachments = []

        for attachment in attachments:
            if attachment.is_default:
                continue
            try:
                self._client.disconnect_instance_from_network(
                    ref.zone_id, attachment.network_id, ref.id, attachment.attachment_id
                )
            except ApiError as e:
                if not e.is_not_found:
                    raise
                diagnostics.add_warning("Network attachment not found", str(e), instance_id=ref.id)

        self._client.delete_instance(ref.zone_id, ref.id, name)
        wait_for_resource_deletion(
            lambda: self._client.list_instances(ref.zone_id),
            ref.id,
            self._polling.instance_deletion_attempts,
            self._polling.poll_interval_seconds,
        ).raise_for_outcome(f"instance {ref.id} still listed after delete")
        logger.info("Instance deleted", extra={"zone_id": ref.zone_id, "instance_id": ref.id})

    def _detach_for_delete(self, ref: ResourceRef, volume_id: str, diagnostics: Diagnostics) -> None:
        settled = wait_for_volume_attach_settled(
            self._client,
            ref.zone_id,
            volume_id,
            self._polling.volume_status_attempts,
            self._polling.volume_status_interval_seconds,
        )
        if not settled.satisfied:
            diagnostics.add_warning(
                "Volume still attaching", f"volume {volume_id} did not settle", volume_id=volume_id
            )
        try:
            self._client.detach_volume(ref.zone_id, volume_id, ref.id)
        except ApiError as e:
            diagnostics.add_warning("Volume detach failed", str(e), volume_id=volume_id, instance_id=ref.id)
            return
        detached = wait_for_volume_detachment(
            self._client,
            ref,
            volume_id,
            self._polling.volume_detach_attempts,
            self._polling.volume_poll_interval_seconds,
        )
        if not detached.satisfied:
            diagnostics.add_warning(
                "Volume detach not confirmed",
                f"volume {volume_id} still listed on instance {ref.id}",
                volume_id=volume_id,
                instance_id=ref.id,
            )
