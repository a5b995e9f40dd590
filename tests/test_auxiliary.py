"""Tests for buckets, Kubernetes clusters and structured logging."""

import json
import logging

import pytest
from cloud_mock import ZONE, MockCloud

from provisioner.auxiliary import AuxiliaryController
from provisioner.config import PollingConfig
from provisioner.diagnostics import Diagnostics
from provisioner.errors import ApiError, DiscoveryError, InvariantViolation
from provisioner.main import setup_logging
from provisioner.models import BucketSpec, KubernetesClusterSpec, ResourceRef


@pytest.fixture
def auxiliary(cloud: MockCloud, polling: PollingConfig) -> AuxiliaryController:
    return AuxiliaryController(cloud, polling)


def cluster_spec(name: str = "k8s") -> KubernetesClusterSpec:
    return KubernetesClusterSpec.model_validate(
        {
            "name": name,
            "zoneId": ZONE,
            "versionId": "v1.29",
            "serviceOfferingId": "medium",
            "sshKeyId": "key-1",
            "networkId": "net-1",
            "haEnabled": True,
        }
    )


class TestBuckets:
    """Tests for bucket lifecycle."""

    def test_create_discovers_id(self, cloud: MockCloud, auxiliary: AuxiliaryController, diagnostics: Diagnostics) -> None:
        """Test create with delayed visibility."""
        cloud.list_lag = 2

        state = auxiliary.create_bucket(BucketSpec(name="assets", zoneId=ZONE, policy="Public"), diagnostics)

        assert state["name"] == "assets"
        assert state["policy"] == "Public"
        assert state["zone_id"] == ZONE

    def test_duplicate_name(self, cloud: MockCloud, auxiliary: AuxiliaryController, diagnostics: Diagnostics) -> None:
        """Test that bucket names are unique per zone."""
        auxiliary.create_bucket(BucketSpec(name="assets", zoneId=ZONE), diagnostics)

        with pytest.raises(InvariantViolation):
            auxiliary.create_bucket(BucketSpec(name="assets", zoneId=ZONE), diagnostics)

        assert cloud.count("create_bucket") == 1

    def test_discovery_timeout(self, polling: PollingConfig, diagnostics: Diagnostics) -> None:
        """Test that a bucket that never appears raises DiscoveryError."""
        cloud = MockCloud(list_lag=100)

        with pytest.raises(DiscoveryError):
            AuxiliaryController(cloud, polling).create_bucket(BucketSpec(name="assets", zoneId=ZONE), diagnostics)

    def test_read_missing(self, auxiliary: AuxiliaryController) -> None:
        """Test that reading an absent bucket is a not-found API error."""
        with pytest.raises(ApiError) as exc_info:
            auxiliary.read_bucket(ResourceRef(ZONE, "bucket-9"))

        assert exc_info.value.is_not_found

    def test_delete(self, cloud: MockCloud, auxiliary: AuxiliaryController, diagnostics: Diagnostics) -> None:
        """Test delete and wait for removal."""
        state = auxiliary.create_bucket(BucketSpec(name="assets", zoneId=ZONE), diagnostics)

        auxiliary.delete_bucket(ResourceRef(ZONE, state["id"]), diagnostics)

        assert cloud.buckets == {}

    def test_delete_missing_is_info(
        self, cloud: MockCloud, auxiliary: AuxiliaryController, diagnostics: Diagnostics
    ) -> None:
        """Test that deleting an absent bucket succeeds."""
        auxiliary.delete_bucket(ResourceRef(ZONE, "bucket-9"), diagnostics)

        assert [d.summary for d in diagnostics] == ["Bucket already deleted"]


class TestKubernetesClusters:
    """Tests for cluster creation."""

    def test_create(self, cloud: MockCloud, auxiliary: AuxiliaryController, diagnostics: Diagnostics) -> None:
        """Test create and name-based discovery."""
        cloud.list_lag = 1

        state = auxiliary.create_kubernetes_cluster(cluster_spec(), diagnostics)

        assert state["name"] == "k8s"
        _, (zone_id, body) = cloud.mutations()[0]
        assert zone_id == ZONE
        assert body["ha_enabled"] is True

    def test_duplicate_name(self, cloud: MockCloud, auxiliary: AuxiliaryController, diagnostics: Diagnostics) -> None:
        """Test that cluster names are unique per zone."""
        auxiliary.create_kubernetes_cluster(cluster_spec(), diagnostics)

        with pytest.raises(InvariantViolation):
            auxiliary.create_kubernetes_cluster(cluster_spec(), diagnostics)


class TestStructuredLogging:
    """Tests for the JSON log format."""

    def test_json_lines_with_context(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test that extra context becomes top-level JSON keys."""
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(logging.INFO)
            logging.getLogger("provisioner.test").info("Instance started", extra={"instance_id": "inst-1"})
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)

        line = capsys.readouterr().err.strip().splitlines()[-1]
        data = json.loads(line)
        assert data["message"] == "Instance started"
        assert data["level"] == "INFO"
        assert data["logger"] == "provisioner.test"
        assert data["instance_id"] == "inst-1"
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data
