"""Object storage buckets and managed Kubernetes clusters.

Neither create call returns an id. Buckets are discovered by diffing the
bucket list; clusters are matched by name alone because they can take
minutes to show up at all.
"""

from __future__ import annotations

import logging
from typing import Any

from .client import CloudAPI
from .config import PollingConfig
from .diagnostics import Diagnostics
from .discovery import create_and_discover, names_in_use
from .errors import ApiError, InvariantViolation
from .models import BucketSpec, KubernetesClusterSpec, ResourceRef
from .polling import find_by_name, wait_for_resource_deletion

logger = logging.getLogger(__name__)


class AuxiliaryController:
    """Create, read and delete buckets and Kubernetes clusters."""

    def __init__(self, client: CloudAPI, polling: PollingConfig) -> None:
        self._client = client
        self._polling = polling

    def create_bucket(self, spec: BucketSpec, diagnostics: Diagnostics) -> dict[str, Any]:
        zone_id = spec.zone_id
        if spec.name in names_in_use(self._client.list_buckets(zone_id)):
            raise InvariantViolation(f"bucket name {spec.name!r} already exists in zone {zone_id}")
        ref = create_and_discover(
            lambda: self._client.list_buckets(zone_id),
            lambda: self._client.create_bucket(zone_id, spec.name, spec.policy),
            spec.name,
            self._polling.auxiliary_discovery_attempts,
            self._polling.poll_interval_seconds,
            zone_id,
            "bucket",
        )
        diagnostics.add_info("Bucket created", f"bucket {spec.name} has id {ref.id}", bucket_id=ref.id)
        return self.read_bucket(ref)

    def read_bucket(self, ref: ResourceRef) -> dict[str, Any]:
        for bucket in self._client.list_buckets(ref.zone_id):
            if bucket.id == ref.id:
                return {"id": bucket.id, "zone_id": ref.zone_id, **bucket.model_dump(exclude={"id"})}
        raise ApiError(f"bucket {ref.id} not found", 404, "read bucket")

    def delete_bucket(self, ref: ResourceRef, diagnostics: Diagnostics) -> None:
        try:
            self._client.delete_bucket(ref.zone_id, ref.id)
        except ApiError as e:
            if not e.is_not_found:
                raise
            diagnostics.add_info("Bucket already deleted", str(e), bucket_id=ref.id)
            return
        wait_for_resource_deletion(
            lambda: self._client.list_buckets(ref.zone_id),
            ref.id,
            self._polling.auxiliary_discovery_attempts,
            self._polling.poll_interval_seconds,
        ).raise_for_outcome(f"bucket {ref.id} still listed after delete")

    def create_kubernetes_cluster(self, spec: KubernetesClusterSpec, diagnostics: Diagnostics) -> dict[str, Any]:
        zone_id = spec.zone_id
        if spec.name in names_in_use(self._client.list_kubernetes_clusters(zone_id)):
            raise InvariantViolation(f"cluster name {spec.name!r} already exists in zone {zone_id}")
        self._client.create_kubernetes_cluster(zone_id, spec.to_api_body())
        ref = find_by_name(
            lambda: self._client.list_kubernetes_clusters(zone_id),
            spec.name,
            self._polling.auxiliary_discovery_attempts,
            self._polling.poll_interval_seconds,
            zone_id,
        )
        diagnostics.add_info("Cluster created", f"cluster {spec.name} has id {ref.id}", cluster_id=ref.id)
        return self.read_kubernetes_cluster(ref)

    def read_kubernetes_cluster(self, ref: ResourceRef) -> dict[str, Any]:
        for cluster in self._client.list_kubernetes_clusters(ref.zone_id):
            if cluster.id == ref.id:
                return {"id": cluster.id, "zone_id": ref.zone_id, "name": cluster.name, "status": cluster.status}
        raise ApiError(f"cluster {ref.id} not found", 404, "read cluster")
