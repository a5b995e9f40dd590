"""Lifecycle entry points for each resource kind.

The Operator is what an orchestrator calls. Each entry point:
1. Acquires the shared SerializationGuard (mutating operations only)
2. Runs the controller or reconciler for its resource kind
3. Converts ProvisionerError into an error diagnostic on the result

Nothing raises out of an entry point for expected failures; callers
inspect OperationResult.error and OperationResult.diagnostics. Warnings
accumulate alongside a best-effort final state.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from .auxiliary import AuxiliaryController
from .client import CloudAPI
from .config import Config
from .diagnostics import Diagnostics, OperationResult
from .errors import ProvisionerError
from .guard import SerializationGuard
from .instances import InstanceController
from .models import (
    BucketSpec,
    InstanceSpec,
    KubernetesClusterSpec,
    Manifest,
    NetworkSpec,
    ResourceRef,
    VolumeResourceSpec,
)
from .networks import NetworkReconciler
from .volumes import VolumeReconciler

logger = logging.getLogger(__name__)


class Operator:
    """Facade over the controllers, sharing one client, config and guard.

    Usage:
        operator = Operator(client, config)
        result = operator.create_instance(spec)
        if not result.success:
            ...
    """

    def __init__(self, client: CloudAPI, config: Config, guard: SerializationGuard | None = None) -> None:
        self._client = client
        self._config = config
        self._guard = guard or SerializationGuard()
        polling = config.polling
        self.networks = NetworkReconciler(client, polling)
        self.volumes = VolumeReconciler(client, polling)
        self.instances = InstanceController(client, polling, self.networks, self.volumes)
        self.auxiliary = AuxiliaryController(client, polling)

    @property
    def guard(self) -> SerializationGuard:
        return self._guard

    def _run(
        self,
        kind: str,
        operation: str,
        action: Callable[[Diagnostics], Any],
        *,
        mutating: bool = True,
        **context: Any,
    ) -> OperationResult:
        """Run one operation at the error boundary."""
        result = OperationResult(kind=kind, operation=operation)
        start_time = time.monotonic()
        try:
            if mutating:
                with self._guard.hold(kind, operation):
                    result.state = action(result.diagnostics)
            else:
                result.state = action(result.diagnostics)
        except ProvisionerError as e:
            result.error = str(e)
            result.diagnostics.add_error(
                f"{kind} {operation} failed",
                str(e),
                error_type=type(e).__name__,
                **context,
            )
        logger.info(
            "Operation finished",
            extra={
                "kind": kind,
                "operation": operation,
                "success": result.success,
                "warnings": len(result.diagnostics.warnings),
                "duration_seconds": round(time.monotonic() - start_time, 2),
                **context,
            },
        )
        return result

    # =========================================================================
    # Instances
    # =========================================================================

    def create_instance(self, spec: InstanceSpec) -> OperationResult:
        return self._run(
            "instance",
            "create",
            lambda d: self.instances.create_instance(spec, d),
            zone_id=spec.zone_id,
            resource_name=spec.name,
        )

    def read_instance(self, ref: ResourceRef) -> OperationResult:
        return self._run(
            "instance",
            "read",
            lambda d: self.instances.read_instance(ref),
            mutating=False,
            zone_id=ref.zone_id,
            instance_id=ref.id,
        )

    def update_instance(
        self, ref: ResourceRef, spec: InstanceSpec, prior: InstanceSpec | None = None
    ) -> OperationResult:
        return self._run(
            "instance",
            "update",
            lambda d: self.instances.update_instance(ref, spec, prior, d),
            zone_id=ref.zone_id,
            instance_id=ref.id,
        )

    def set_power_state(self, ref: ResourceRef, desired: str) -> OperationResult:
        """Apply running, stopped or reboot to an existing instance."""

        def apply(diagnostics: Diagnostics) -> Any:
            status = self._client.show_instance(ref.zone_id, ref.id).status
            self.instances.apply_desired_state(ref, desired, status, diagnostics)
            return self.instances.read_instance(ref)

        return self._run("instance", desired, apply, zone_id=ref.zone_id, instance_id=ref.id)

    def delete_instance(self, ref: ResourceRef, name: str = "") -> OperationResult:
        def delete(diagnostics: Diagnostics) -> None:
            instance_name = name or self._client.show_instance(ref.zone_id, ref.id).name
            self.instances.delete_instance(ref, instance_name, diagnostics)

        return self._run("instance", "delete", delete, zone_id=ref.zone_id, instance_id=ref.id)

    # =========================================================================
    # Networks
    # =========================================================================

    def create_network(self, spec: NetworkSpec) -> OperationResult:
        return self._run(
            "network",
            "create",
            lambda d: self.networks.create_network(spec, d),
            zone_id=spec.zone_id,
            resource_name=spec.name,
        )

    def read_network(self, ref: ResourceRef) -> OperationResult:
        return self._run(
            "network",
            "read",
            lambda d: self.networks.read_network(ref),
            mutating=False,
            zone_id=ref.zone_id,
            network_id=ref.id,
        )

    def update_network(self, ref: ResourceRef, spec: NetworkSpec) -> OperationResult:
        return self._run(
            "network",
            "update",
            lambda d: self.networks.check_update(spec, ref),
            zone_id=ref.zone_id,
            network_id=ref.id,
        )

    def delete_network(self, ref: ResourceRef) -> OperationResult:
        return self._run(
            "network",
            "delete",
            lambda d: self.networks.delete_network(ref, d),
            zone_id=ref.zone_id,
            network_id=ref.id,
        )

    # =========================================================================
    # Volumes
    # =========================================================================

    def create_volume(self, spec: VolumeResourceSpec) -> OperationResult:
        return self._run(
            "volume",
            "create",
            lambda d: self.volumes.create_volume(spec, d),
            zone_id=spec.zone_id,
            resource_name=spec.name,
        )

    def read_volume(self, ref: ResourceRef) -> OperationResult:
        return self._run(
            "volume",
            "read",
            lambda d: self.volumes.read_volume(ref),
            mutating=False,
            zone_id=ref.zone_id,
            volume_id=ref.id,
        )

    def move_volume(self, ref: ResourceRef, target_instance_id: str | None) -> OperationResult:
        return self._run(
            "volume",
            "update",
            lambda d: self.volumes.move_volume(ref, target_instance_id, d),
            zone_id=ref.zone_id,
            volume_id=ref.id,
        )

    def delete_volume(self, ref: ResourceRef) -> OperationResult:
        return self._run(
            "volume",
            "delete",
            lambda d: self.volumes.delete_volume(ref, d),
            zone_id=ref.zone_id,
            volume_id=ref.id,
        )

    # =========================================================================
    # Buckets and clusters
    # =========================================================================

    def create_bucket(self, spec: BucketSpec) -> OperationResult:
        return self._run(
            "bucket",
            "create",
            lambda d: self.auxiliary.create_bucket(spec, d),
            zone_id=spec.zone_id,
            resource_name=spec.name,
        )

    def delete_bucket(self, ref: ResourceRef) -> OperationResult:
        return self._run(
            "bucket",
            "delete",
            lambda d: self.auxiliary.delete_bucket(ref, d),
            zone_id=ref.zone_id,
            bucket_id=ref.id,
        )

    def create_kubernetes_cluster(self, spec: KubernetesClusterSpec) -> OperationResult:
        return self._run(
            "kubernetes_cluster",
            "create",
            lambda d: self.auxiliary.create_kubernetes_cluster(spec, d),
            zone_id=spec.zone_id,
            resource_name=spec.name,
        )

    # =========================================================================
    # Manifests
    # =========================================================================

    def apply_manifest(self, manifest: Manifest) -> list[OperationResult]:
        """Create or update every resource in a manifest.

        Resources are matched to existing ones by name within their zone.
        Networks go first, then instances, then standalone volumes (which
        may reference instances), then buckets and clusters. Each resource
        is applied independently; a failure does not stop the rest.

        No state is kept between runs, so an existing instance's currently
        observed networks and volumes are treated as the managed set, and a
        reboot in the manifest is only performed when the instance is created.
        """
        results: list[OperationResult] = []

        for network_spec in manifest.networks:
            existing = self._lookup(network_spec.zone_id, network_spec.name, self._client.list_networks)
            if existing is None:
                results.append(self.create_network(network_spec))
            else:
                results.append(self.update_network(ResourceRef(network_spec.zone_id, existing), network_spec))

        for instance_spec in manifest.instances:
            existing = self._lookup(instance_spec.zone_id, instance_spec.name, self._client.list_instances)
            if existing is None:
                results.append(self.create_instance(instance_spec))
            else:
                results.append(self.update_instance(ResourceRef(instance_spec.zone_id, existing), instance_spec))

        for volume_spec in manifest.volumes:
            existing = self._lookup(volume_spec.zone_id, volume_spec.name, self._client.list_volumes)
            if existing is None:
                results.append(self.create_volume(volume_spec))
            else:
                results.append(self.move_volume(ResourceRef(volume_spec.zone_id, existing), volume_spec.instance_id))

        for bucket_spec in manifest.buckets:
            existing = self._lookup(bucket_spec.zone_id, bucket_spec.name, self._client.list_buckets)
            if existing is None:
                results.append(self.create_bucket(bucket_spec))
            else:
                results.append(_unchanged("bucket", bucket_spec.zone_id, existing))

        for cluster_spec in manifest.kubernetes_clusters:
            existing = self._lookup(
                cluster_spec.zone_id, cluster_spec.name, self._client.list_kubernetes_clusters
            )
            if existing is None:
                results.append(self.create_kubernetes_cluster(cluster_spec))
            else:
                results.append(_unchanged("kubernetes_cluster", cluster_spec.zone_id, existing))

        return results

    def _lookup(self, zone_id: str, name: str, list_fn: Callable[[str], list[Any]]) -> str | None:
        """Id of the resource with this name, or None.

        A listing failure is treated as "not found"; the create that
        follows reports the underlying API error.
        """
        try:
            items = list_fn(zone_id)
        except ProvisionerError as e:
            logger.warning("Lookup failed", extra={"zone_id": zone_id, "resource_name": name, "error": str(e)})
            return None
        for item in items:
            if item.name == name:
                return item.id
        return None


def _unchanged(kind: str, zone_id: str, resource_id: str) -> OperationResult:
    result = OperationResult(kind=kind, operation="read", state={"id": resource_id, "zone_id": zone_id})
    result.diagnostics.add_info(f"{kind} already exists", f"{resource_id} left unchanged")
    return result
