"""Pydantic models for API payloads and desired-state manifests.

These models provide:
1. Type-safe parsing of control-plane responses (unknown fields ignored)
2. Validation of desired-state manifests at the boundary (fail fast)
3. Plain records for observed state handed back to the orchestrator
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import MAX_INSTANCE_NAME_LENGTH

# =============================================================================
# Identity and observed state
# =============================================================================


@dataclass(frozen=True)
class ResourceRef:
    """Zone-scoped identifier assigned by the remote API."""

    zone_id: str
    id: str

    def __str__(self) -> str:
        return f"{self.zone_id}/{self.id}"


@dataclass(frozen=True)
class AttachmentRecord:
    """One instance-to-network binding as reported by the API.

    Addressing data (IP, MAC, attachment id) is never generated locally.
    """

    network_id: str
    instance_id: str
    attachment_id: str
    is_default: bool = False
    ip_address: str = ""
    mac_address: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "network_id": self.network_id,
            "instance_id": self.instance_id,
            "attachment_id": self.attachment_id,
            "is_default": self.is_default,
            "ip_address": self.ip_address,
            "mac_address": self.mac_address,
        }


@dataclass
class InstanceState:
    """Observed state of an instance after an operation."""

    ref: ResourceRef
    name: str
    status: str
    username: str = ""
    password: str = ""
    ip: str = ""
    networks: list[AttachmentRecord] = field(default_factory=list)
    volume_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.ref.id,
            "zone_id": self.ref.zone_id,
            "name": self.name,
            "status": self.status,
            "username": self.username,
            "ip": self.ip,
            "networks": [n.to_dict() for n in self.networks],
            "volume_ids": list(self.volume_ids),
        }


@dataclass
class NetworkState:
    """Observed state of a network and the instances attached to it."""

    ref: ResourceRef
    name: str
    status: str
    type: str = ""
    instances: list[AttachmentRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.ref.id,
            "zone_id": self.ref.zone_id,
            "name": self.name,
            "status": self.status,
            "type": self.type,
            "instances": [n.to_dict() for n in self.instances],
        }


@dataclass
class VolumeState:
    """Observed state of a standalone volume."""

    ref: ResourceRef
    name: str
    status: str
    size: int = 0
    attached_instance_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.ref.id,
            "zone_id": self.ref.zone_id,
            "name": self.name,
            "status": self.status,
            "size": self.size,
            "attached_instance_id": self.attached_instance_id,
        }


# =============================================================================
# API payloads
# =============================================================================


class ApiModel(BaseModel):
    """Base for control-plane payloads."""

    model_config = {"extra": "ignore", "populate_by_name": True}


class Instance(ApiModel):
    """Instance as returned by list/show."""

    id: str
    name: str = ""
    status: str = ""
    username: str = ""
    password: str = ""
    vm_image_id: str = ""
    service_offering_id: str = ""
    data_volumes: list[str] = Field(default_factory=list)

    @field_validator("data_volumes", mode="before")
    @classmethod
    def keep_volume_ids(cls, v: Any) -> list[str]:
        # The API mixes ids with placeholder objects while attachments settle
        if not v:
            return []
        return [item for item in v if isinstance(item, str)]


class NetworkSummary(ApiModel):
    """Network reference embedded in an attachment record."""

    id: str
    name: str = ""


class InstanceNetwork(ApiModel):
    """Instance-to-network attachment as returned by list_network_instances."""

    id: str
    instance_id: str
    network: NetworkSummary
    ip_address: str = ""
    mac_address: str = ""
    is_default: bool = False

    @property
    def network_id(self) -> str:
        return self.network.id

    def to_record(self) -> AttachmentRecord:
        return AttachmentRecord(
            network_id=self.network.id,
            instance_id=self.instance_id,
            attachment_id=self.id,
            is_default=self.is_default,
            ip_address=self.ip_address,
            mac_address=self.mac_address,
        )


class Network(ApiModel):
    """Private network as returned by list/show."""

    id: str
    name: str = ""
    status: str = ""
    type: str = ""
    gateway: str | None = None
    netmask: str | None = None
    network_offering_id: str = ""


class Volume(ApiModel):
    """Block volume as returned by list."""

    id: str
    name: str = ""
    size: int = 0
    status: str = ""
    service_offering_id: str = ""


class Bucket(ApiModel):
    """Object storage bucket."""

    id: str
    name: str = ""
    status: str = ""
    policy: str = ""


class KubernetesCluster(ApiModel):
    """Managed Kubernetes cluster."""

    id: str
    name: str = ""
    status: str = ""


# =============================================================================
# Desired-state specifications
# =============================================================================


class BaseSpec(BaseModel):
    """Base specification with common fields."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    zone_id: Annotated[str, Field(min_length=1, alias="zoneId")]


class VolumeSpec(BaseModel):
    """Named volume to keep attached to an instance.

    Only presence is reconciled; size and offering changes are not.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    size: Annotated[int, Field(ge=1)]
    service_offering_id: Annotated[str, Field(min_length=1, alias="serviceOfferingId")]


VALID_DESIRED_STATES = ("running", "stopped", "reboot")


class InstanceSpec(BaseSpec):
    """Desired instance."""

    service_offering_id: str = Field(alias="serviceOfferingId")
    vm_image_id: str = Field(alias="vmImageId")
    network_ids: list[str] = Field(default_factory=list, alias="networkIds")
    volumes: list[VolumeSpec] = Field(default_factory=list)
    desired_state: str | None = Field(None, alias="desiredState")

    @field_validator("name")
    @classmethod
    def validate_name_length(cls, v: str) -> str:
        if len(v) > MAX_INSTANCE_NAME_LENGTH:
            raise ValueError(f"name must be {MAX_INSTANCE_NAME_LENGTH} characters or less")
        return v

    @field_validator("network_ids")
    @classmethod
    def drop_empty_network_ids(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for network_id in v:
            if network_id and network_id not in seen:
                seen.append(network_id)
        return seen

    @field_validator("desired_state")
    @classmethod
    def validate_desired_state(cls, v: str | None) -> str | None:
        if v is not None and v not in VALID_DESIRED_STATES:
            raise ValueError(f"desiredState must be one of {VALID_DESIRED_STATES}")
        return v

    @field_validator("volumes")
    @classmethod
    def validate_unique_volume_names(cls, v: list[VolumeSpec]) -> list[VolumeSpec]:
        names = [spec.name for spec in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"volume names must be unique: {duplicates}")
        return v


NETWORK_TYPES_L3 = ("Isolated", "L3")
NETWORK_TYPES_L2 = ("L2",)


class NetworkSpec(BaseSpec):
    """Desired private network. Immutable after creation."""

    network_offering_id: str = Field(alias="networkOfferingId")
    type: str = "L2"
    gateway: str | None = None
    netmask: str | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        valid = NETWORK_TYPES_L2 + NETWORK_TYPES_L3
        if v not in valid:
            raise ValueError(f"type must be one of {valid}")
        return v

    @model_validator(mode="after")
    def require_addressing_for_l3(self) -> NetworkSpec:
        if self.is_l3 and (not self.gateway or not self.netmask):
            raise ValueError("gateway and netmask are required for Isolated networks")
        return self

    @property
    def is_l3(self) -> bool:
        return self.type in NETWORK_TYPES_L3


class VolumeResourceSpec(BaseSpec):
    """Desired standalone volume, optionally attached to an instance."""

    service_offering_id: str = Field(alias="serviceOfferingId")
    size: Annotated[int, Field(ge=1)]
    instance_id: str | None = Field(None, alias="instanceId")


class BucketSpec(BaseSpec):
    """Desired object storage bucket."""

    policy: str = "Private"


class KubernetesClusterSpec(BaseSpec):
    """Desired managed Kubernetes cluster."""

    version_id: str = Field(alias="versionId")
    service_offering_id: str = Field(alias="serviceOfferingId")
    ssh_key_id: str = Field(alias="sshKeyId")
    network_id: str = Field(alias="networkId")
    description: str = ""
    ha_enabled: bool = Field(False, alias="haEnabled")
    cluster_size: Annotated[int, Field(ge=1, alias="clusterSize")] = 1

    def to_api_body(self) -> dict[str, Any]:
        """Request body for the create call."""
        return {
            "name": self.name,
            "kubernetes_version_id": self.version_id,
            "service_offering_id": self.service_offering_id,
            "ssh_key_id": self.ssh_key_id,
            "network_id": self.network_id,
            "description": self.description,
            "ha_enabled": self.ha_enabled,
            "cluster_size": self.cluster_size,
        }


class Manifest(BaseModel):
    """A desired-state document grouping resources by kind."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    networks: list[NetworkSpec] = Field(default_factory=list)
    instances: list[InstanceSpec] = Field(default_factory=list)
    volumes: list[VolumeResourceSpec] = Field(default_factory=list)
    buckets: list[BucketSpec] = Field(default_factory=list)
    kubernetes_clusters: list[KubernetesClusterSpec] = Field(
        default_factory=list, alias="kubernetesClusters"
    )

    @property
    def resource_count(self) -> int:
        return (
            len(self.networks)
            + len(self.instances)
            + len(self.volumes)
            + len(self.buckets)
            + len(self.kubernetes_clusters)
        )
