"""Control-plane API client.

Every call is zone-scoped and returns either a parsed payload or raises
ApiError. The client performs no retries: bounded waiting is the
reconciliation core's job, and transport retries are out of scope.

The API acknowledges create calls without returning the new identifier,
so create methods return nothing; callers discover the id by diffing
list snapshots (see polling.find_new).
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .config import Config
from .errors import ApiError
from .models import Bucket, Instance, InstanceNetwork, KubernetesCluster, Network, Volume

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

USER_AGENT = "provisioner/0.1.0"


class CloudAPI(Protocol):
    """Operations the reconciliation core requires from the control plane."""

    # Instances
    def list_instances(self, zone_id: str) -> list[Instance]: ...
    def show_instance(self, zone_id: str, instance_id: str) -> Instance: ...
    def create_instance(
        self,
        zone_id: str,
        service_offering_id: str,
        vm_image_id: str,
        network_ids: list[str],
        name: str,
    ) -> None: ...
    def start_instance(self, zone_id: str, instance_id: str) -> None: ...
    def stop_instance(self, zone_id: str, instance_id: str, forced: bool = False) -> None: ...
    def reboot_instance(self, zone_id: str, instance_id: str) -> None: ...
    def rebuild_instance(self, zone_id: str, instance_id: str, vm_image_id: str) -> None: ...
    def delete_instance(self, zone_id: str, instance_id: str, name: str) -> None: ...

    # Networks
    def list_networks(self, zone_id: str) -> list[Network]: ...
    def show_network(self, zone_id: str, network_id: str) -> Network: ...
    def create_l2_network(self, zone_id: str, network_offering_id: str, name: str) -> None: ...
    def create_l3_network(
        self,
        zone_id: str,
        network_offering_id: str,
        name: str,
        gateway: str,
        netmask: str,
    ) -> None: ...
    def delete_network(self, zone_id: str, network_id: str) -> None: ...
    def connect_instance_to_network(self, zone_id: str, network_id: str, instance_id: str) -> None: ...
    def disconnect_instance_from_network(
        self,
        zone_id: str,
        network_id: str,
        instance_id: str,
        attachment_id: str,
    ) -> None: ...
    def list_network_instances(
        self, zone_id: str, network_id: str, instance_id: str | None = None
    ) -> list[InstanceNetwork]: ...

    # Volumes
    def list_volumes(self, zone_id: str) -> list[Volume]: ...
    def create_volume(self, zone_id: str, service_offering_id: str, size: int, name: str) -> None: ...
    def attach_volume(self, zone_id: str, volume_id: str, instance_id: str) -> None: ...
    def detach_volume(self, zone_id: str, volume_id: str, instance_id: str) -> None: ...
    def delete_volume(self, zone_id: str, volume_id: str) -> None: ...

    # Object storage
    def list_buckets(self, zone_id: str) -> list[Bucket]: ...
    def create_bucket(self, zone_id: str, name: str, policy: str) -> None: ...
    def delete_bucket(self, zone_id: str, bucket_id: str) -> None: ...

    # Kubernetes
    def list_kubernetes_clusters(self, zone_id: str) -> list[KubernetesCluster]: ...
    def create_kubernetes_cluster(self, zone_id: str, body: dict[str, Any]) -> None: ...


class CloudClient:
    """HTTPS implementation of CloudAPI.

    Responses are wrapped in a ``{"data": ...}`` envelope. Any non-2xx
    status becomes ApiError carrying the server's message; transport
    failures become ApiError with status code 0.

    Usage:
        with CloudClient.from_config(Config.from_env()) as client:
            instances = client.list_instances(zone_id)
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 60,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config) -> CloudClient:
        return cls(
            config.api_base_url,
            config.api_token,
            timeout=config.request_timeout_seconds,
        )

    def __enter__(self) -> CloudClient:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Execute a request and return the unwrapped ``data`` field."""
        operation = f"{method} {path}"
        logger.debug("API request", extra={"method": method, "path": path})
        try:
            response = self._http.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise ApiError(f"request failed: {e}", operation=operation) from e

        if response.is_error:
            raise ApiError(_error_message(response), response.status_code, operation)

        if not response.content:
            return None
        try:
            payload = response.json()
        except ValueError as e:
            raise ApiError(f"invalid JSON response: {e}", response.status_code, operation) from e
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    def _get_list(self, path: str, model: type[ModelT], params: dict[str, Any] | None = None) -> list[ModelT]:
        data = self._request("GET", path, params=params) or []
        if not isinstance(data, list):
            raise ApiError(f"expected a list, got {type(data).__name__}", operation=f"GET {path}")
        try:
            return [model.model_validate(item) for item in data]
        except ValidationError as e:
            raise ApiError(f"unexpected payload: {e}", operation=f"GET {path}") from e

    def _get_one(self, path: str, model: type[ModelT]) -> ModelT:
        data = self._request("GET", path)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ApiError(f"unexpected payload: {e}", operation=f"GET {path}") from e

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def list_instances(self, zone_id: str) -> list[Instance]:
        return self._get_list(f"/zone/{zone_id}/instance", Instance)

    def show_instance(self, zone_id: str, instance_id: str) -> Instance:
        return self._get_one(f"/zone/{zone_id}/instance/{instance_id}", Instance)

    def create_instance(
        self,
        zone_id: str,
        service_offering_id: str,
        vm_image_id: str,
        network_ids: list[str],
        name: str,
    ) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/instance",
            json={
                "service_offering_id": service_offering_id,
                "vm_image_id": vm_image_id,
                "network_ids": network_ids,
                "name": name,
            },
        )

    def start_instance(self, zone_id: str, instance_id: str) -> None:
        self._request("POST", f"/zone/{zone_id}/instance/{instance_id}/start")

    def stop_instance(self, zone_id: str, instance_id: str, forced: bool = False) -> None:
        self._request("POST", f"/zone/{zone_id}/instance/{instance_id}/stop", json={"forced": forced})

    def reboot_instance(self, zone_id: str, instance_id: str) -> None:
        self._request("POST", f"/zone/{zone_id}/instance/{instance_id}/reboot")

    def rebuild_instance(self, zone_id: str, instance_id: str, vm_image_id: str) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/instance/{instance_id}/rebuild",
            json={"vm_image_id": vm_image_id},
        )

    def delete_instance(self, zone_id: str, instance_id: str, name: str) -> None:
        self._request("DELETE", f"/zone/{zone_id}/instance/{instance_id}", json={"name": name})

    # -------------------------------------------------------------------------
    # Networks
    # -------------------------------------------------------------------------

    def list_networks(self, zone_id: str) -> list[Network]:
        return self._get_list(f"/zone/{zone_id}/network", Network)

    def show_network(self, zone_id: str, network_id: str) -> Network:
        return self._get_one(f"/zone/{zone_id}/network/{network_id}", Network)

    def create_l2_network(self, zone_id: str, network_offering_id: str, name: str) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/network/l2",
            json={"network_offering_id": network_offering_id, "name": name},
        )

    def create_l3_network(
        self,
        zone_id: str,
        network_offering_id: str,
        name: str,
        gateway: str,
        netmask: str,
    ) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/network/l3",
            json={
                "network_offering_id": network_offering_id,
                "name": name,
                "gateway": gateway,
                "netmask": netmask,
            },
        )

    def delete_network(self, zone_id: str, network_id: str) -> None:
        self._request("DELETE", f"/zone/{zone_id}/network/{network_id}")

    def connect_instance_to_network(self, zone_id: str, network_id: str, instance_id: str) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/network/{network_id}/instance/connect",
            json={"instance_id": instance_id},
        )

    def disconnect_instance_from_network(
        self,
        zone_id: str,
        network_id: str,
        instance_id: str,
        attachment_id: str,
    ) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/network/{network_id}/instance/disconnect",
            json={"instance_id": instance_id, "instance_network_id": attachment_id},
        )

    def list_network_instances(
        self, zone_id: str, network_id: str, instance_id: str | None = None
    ) -> list[InstanceNetwork]:
        params = {"instance_id": instance_id} if instance_id else None
        return self._get_list(f"/zone/{zone_id}/network/{network_id}/instance", InstanceNetwork, params)

    # -------------------------------------------------------------------------
    # Volumes
    # -------------------------------------------------------------------------

    def list_volumes(self, zone_id: str) -> list[Volume]:
        return self._get_list(f"/zone/{zone_id}/instance/volume", Volume)

    def create_volume(self, zone_id: str, service_offering_id: str, size: int, name: str) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/instance/volume",
            json={"service_offering_id": service_offering_id, "size": size, "name": name},
        )

    def attach_volume(self, zone_id: str, volume_id: str, instance_id: str) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/instance/volume/{volume_id}/attach",
            json={"instance_id": instance_id},
        )

    def detach_volume(self, zone_id: str, volume_id: str, instance_id: str) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/instance/volume/{volume_id}/detach",
            json={"instance_id": instance_id},
        )

    def delete_volume(self, zone_id: str, volume_id: str) -> None:
        self._request("DELETE", f"/zone/{zone_id}/instance/volume/{volume_id}")

    # -------------------------------------------------------------------------
    # Object storage and Kubernetes
    # -------------------------------------------------------------------------

    def list_buckets(self, zone_id: str) -> list[Bucket]:
        return self._get_list(f"/zone/{zone_id}/object-storage/bucket", Bucket)

    def create_bucket(self, zone_id: str, name: str, policy: str) -> None:
        self._request(
            "POST",
            f"/zone/{zone_id}/object-storage/bucket",
            json={"name": name, "policy": policy},
        )

    def delete_bucket(self, zone_id: str, bucket_id: str) -> None:
        self._request("DELETE", f"/zone/{zone_id}/object-storage/bucket/{bucket_id}")

    def list_kubernetes_clusters(self, zone_id: str) -> list[KubernetesCluster]:
        return self._get_list(f"/zone/{zone_id}/kubernetes", KubernetesCluster)

    def create_kubernetes_cluster(self, zone_id: str, body: dict[str, Any]) -> None:
        self._request("POST", f"/zone/{zone_id}/kubernetes", json=body)


def _error_message(response: httpx.Response) -> str:
    """Extract the server's error message, falling back to the raw body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return response.text[:500]
