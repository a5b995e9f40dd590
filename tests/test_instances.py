"""Tests for instance power state transitions and lifecycle flows."""

import pytest
from cloud_mock import ZONE, MockCloud

from provisioner.config import PollingConfig
from provisioner.diagnostics import Diagnostics
from provisioner.errors import ApiError, InstanceNotReadyError, InvariantViolation
from provisioner.instances import InstanceController
from provisioner.models import InstanceSpec, ResourceRef, VolumeSpec
from provisioner.networks import NetworkReconciler
from provisioner.volumes import VolumeReconciler


def make_controller(cloud: MockCloud, polling: PollingConfig) -> InstanceController:
    return InstanceController(cloud, polling, NetworkReconciler(cloud, polling), VolumeReconciler(cloud, polling))


def instance_spec(networks: list[str], **overrides) -> InstanceSpec:
    data = {
        "name": "web",
        "zoneId": ZONE,
        "serviceOfferingId": "offering-small",
        "vmImageId": "image-ubuntu",
        "networkIds": networks,
    }
    data.update(overrides)
    return InstanceSpec.model_validate(data)


@pytest.fixture
def controller(cloud: MockCloud, polling: PollingConfig) -> InstanceController:
    return make_controller(cloud, polling)


class TestPowerState:
    """Tests for ensure_running, ensure_stopped, reboot and rebuild."""

    @pytest.mark.parametrize("running", ["Running", "UP"])
    def test_already_running_issues_no_start(self, running: str, polling: PollingConfig) -> None:
        """Test that both running spellings count as running."""
        cloud = MockCloud(running_status=running)
        inst = cloud.add_instance(ZONE, "web")

        status = make_controller(cloud, polling).ensure_running(ResourceRef(ZONE, inst))

        assert status == running
        assert cloud.count("start_instance") == 0

    def test_start_stopped_instance(self, polling: PollingConfig) -> None:
        """Test that a stopped instance is started and awaited."""
        cloud = MockCloud(transition_polls=3, running_status="Running")
        inst = cloud.add_instance(ZONE, "web", status="Stopped")

        status = make_controller(cloud, polling).ensure_running(ResourceRef(ZONE, inst))

        assert status == "Running"
        assert cloud.mutation_names() == ["start_instance"]

    @pytest.mark.parametrize("stopped", ["Stopped", "STOPPED", "DOWN"])
    def test_stop_running_instance(self, stopped: str, polling: PollingConfig) -> None:
        """Test that every stopped spelling ends the wait."""
        cloud = MockCloud(transition_polls=2, stopped_status=stopped)
        inst = cloud.add_instance(ZONE, "web")

        status = make_controller(cloud, polling).ensure_stopped(ResourceRef(ZONE, inst))

        assert status == stopped
        assert cloud.mutation_names() == ["stop_instance"]

    def test_ensure_stopped_waits_without_stop_call(self, cloud: MockCloud, controller: InstanceController) -> None:
        """Test that a mid-shutdown instance is awaited, not stopped again."""
        inst = cloud.add_instance(ZONE, "web", status="Stopping")
        cloud.instances[inst].target_status = "Stopped"
        cloud.instances[inst].pending_polls = 2

        status = controller.ensure_stopped(ResourceRef(ZONE, inst))

        assert status == "Stopped"
        assert cloud.count("stop_instance") == 0
        assert cloud.count("show_instance") == 2

    def test_ensure_stopped_polls_even_when_stopped(self, cloud: MockCloud, controller: InstanceController) -> None:
        """Test that the stopped wait always runs."""
        inst = cloud.add_instance(ZONE, "web", status="Stopped")

        controller.ensure_stopped(ResourceRef(ZONE, inst))

        assert cloud.mutations() == []
        assert cloud.count("show_instance") == 2

    def test_start_timeout(self, polling: PollingConfig) -> None:
        """Test that a start that never lands raises InstanceNotReadyError."""
        cloud = MockCloud(transition_polls=1000)
        inst = cloud.add_instance(ZONE, "web", status="Stopped")

        with pytest.raises(InstanceNotReadyError) as exc_info:
            make_controller(cloud, polling).ensure_running(ResourceRef(ZONE, inst))

        assert exc_info.value.last_status == "Starting"
        assert exc_info.value.attempts == polling.instance_status_attempts

    def test_reboot_running(self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics) -> None:
        """Test that a running instance is rebooted."""
        inst = cloud.add_instance(ZONE, "web")

        controller.reboot(ResourceRef(ZONE, inst), diagnostics)

        assert cloud.mutation_names() == ["reboot_instance"]
        assert not diagnostics.warnings

    def test_reboot_skipped_when_not_running(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that reboot of a stopped instance only warns."""
        inst = cloud.add_instance(ZONE, "web", status="Stopped")

        status = controller.reboot(ResourceRef(ZONE, inst), diagnostics)

        assert status == "Stopped"
        assert cloud.mutations() == []
        assert [d.summary for d in diagnostics.warnings] == ["Reboot skipped"]

    def test_rebuild_waits_for_exact_ready_status(self, polling: PollingConfig) -> None:
        """Test stop, rebuild and wait for UP."""
        cloud = MockCloud(transition_polls=2, running_status="Running")
        inst = cloud.add_instance(ZONE, "web")

        status = make_controller(cloud, polling).rebuild(ResourceRef(ZONE, inst), "image-debian")

        assert status == "UP"
        assert cloud.mutation_names() == ["stop_instance", "rebuild_instance"]
        assert cloud.instances[inst].vm_image_id == "image-debian"

    def test_unknown_desired_state_is_ignored(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that no desired state leaves the instance alone."""
        inst = cloud.add_instance(ZONE, "web")

        status = controller.apply_desired_state(ResourceRef(ZONE, inst), None, "UP", diagnostics)

        assert status == "UP"
        assert cloud.calls == []


class TestCreateInstance:
    """Tests for the create flow."""

    def test_create_with_volumes_and_stopped_state(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test the full create sequence."""
        cloud.list_lag = 1
        a = cloud.add_network(ZONE, "a")
        b = cloud.add_network(ZONE, "b")
        spec = instance_spec(
            [a, b],
            volumes=[{"name": "data", "size": 20, "serviceOfferingId": "offering-disk"}],
            desiredState="stopped",
        )

        state = controller.create_instance(spec, diagnostics)

        assert state.name == "web"
        assert state.status == "Stopped"
        assert [n.network_id for n in state.networks] == [a, b]
        assert state.networks[0].is_default
        assert state.ip == state.networks[0].ip_address
        assert len(state.volume_ids) == 1
        assert cloud.mutation_names() == ["create_instance", "create_volume", "attach_volume", "stop_instance"]

    def test_running_desired_state_issues_no_power_call(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that a new instance is already running."""
        a = cloud.add_network(ZONE, "a")

        state = controller.create_instance(instance_spec([a], desiredState="running"), diagnostics)

        assert state.status == "UP"
        assert cloud.mutation_names() == ["create_instance"]

    def test_duplicate_name_rejected(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that names are unique per zone."""
        a = cloud.add_network(ZONE, "a")
        cloud.add_instance(ZONE, "web", networks=[a])

        with pytest.raises(InvariantViolation):
            controller.create_instance(instance_spec([a]), diagnostics)

        assert cloud.mutations() == []

    def test_unknown_network_rejected(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that every requested network must exist."""
        a = cloud.add_network(ZONE, "a")

        with pytest.raises(InvariantViolation) as exc_info:
            controller.create_instance(instance_spec([a, "net-missing"]), diagnostics)

        assert "net-missing" in str(exc_info.value)
        assert cloud.mutations() == []

    def test_no_networks_rejected(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that an instance cannot be created without a network."""
        with pytest.raises(InvariantViolation):
            controller.create_instance(instance_spec([]), diagnostics)

        assert cloud.calls == []


class TestUpdateInstance:
    """Tests for the update flow."""

    def test_adds_network_and_volume(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test converging on a spec with one more network and volume."""
        a = cloud.add_network(ZONE, "a")
        b = cloud.add_network(ZONE, "b")
        inst = cloud.add_instance(ZONE, "web", networks=[a])
        cloud.add_volume(ZONE, "v1", attached_to=inst)
        v1 = {"name": "v1", "size": 10, "serviceOfferingId": "offering-disk"}
        v2 = {"name": "v2", "size": 10, "serviceOfferingId": "offering-disk"}
        prior = instance_spec([a], volumes=[v1])
        spec = instance_spec([a, b], volumes=[v1, v2])

        state = controller.update_instance(ResourceRef(ZONE, inst), spec, prior, diagnostics)

        assert [n.network_id for n in state.networks] == [a, b]
        assert len(state.volume_ids) == 2
        assert cloud.mutation_names() == ["connect_instance_to_network", "create_volume", "attach_volume"]

    def test_image_change_rebuilds(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that a new image triggers stop and rebuild first."""
        a = cloud.add_network(ZONE, "a")
        inst = cloud.add_instance(ZONE, "web", networks=[a])
        prior = instance_spec([a])
        spec = instance_spec([a], vmImageId="image-debian")

        controller.update_instance(ResourceRef(ZONE, inst), spec, prior, diagnostics)

        assert cloud.mutation_names() == ["stop_instance", "rebuild_instance"]

    def test_desired_state_change_applied(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that a changed desired state is dispatched."""
        a = cloud.add_network(ZONE, "a")
        inst = cloud.add_instance(ZONE, "web", networks=[a])

        state = controller.update_instance(
            ResourceRef(ZONE, inst),
            instance_spec([a], desiredState="stopped"),
            instance_spec([a], desiredState="running"),
            diagnostics,
        )

        assert state.status == "Stopped"

    def test_unchanged_desired_state_not_reapplied(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that only a change in desired state triggers a power call."""
        a = cloud.add_network(ZONE, "a")
        inst = cloud.add_instance(ZONE, "web", networks=[a])

        controller.update_instance(
            ResourceRef(ZONE, inst),
            instance_spec([a], desiredState="stopped"),
            instance_spec([a], desiredState="stopped"),
            diagnostics,
        )

        assert cloud.mutations() == []

    def test_without_prior_observed_state_is_managed(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that observed networks and volumes count as managed when no prior is given."""
        a = cloud.add_network(ZONE, "a")
        c = cloud.add_network(ZONE, "c")
        inst = cloud.add_instance(ZONE, "web", networks=[a, c])
        old = cloud.add_volume(ZONE, "old", attached_to=inst)

        state = controller.update_instance(ResourceRef(ZONE, inst), instance_spec([a]), None, diagnostics)

        assert [n.network_id for n in state.networks] == [a]
        assert old not in cloud.volumes
        assert not diagnostics.warnings

    def test_empty_networks_rejected_before_any_mutation(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that an update without networks fails before rebuild or power changes."""
        a = cloud.add_network(ZONE, "a")
        inst = cloud.add_instance(ZONE, "web", networks=[a])

        with pytest.raises(InvariantViolation):
            controller.update_instance(
                ResourceRef(ZONE, inst),
                instance_spec([], vmImageId="image-debian", desiredState="stopped"),
                instance_spec([a]),
                diagnostics,
            )

        assert cloud.mutations() == []
        assert cloud.instances[inst].vm_image_id != "image-debian"

    def test_without_prior_reboot_not_dispatched(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that a reboot needs a prior spec to count as a change."""
        a = cloud.add_network(ZONE, "a")
        inst = cloud.add_instance(ZONE, "web", networks=[a])

        controller.update_instance(ResourceRef(ZONE, inst), instance_spec([a], desiredState="reboot"), None, diagnostics)

        assert cloud.mutations() == []

    def test_without_prior_stopped_is_converged(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that running and stopped are still converged without a prior spec."""
        a = cloud.add_network(ZONE, "a")
        inst = cloud.add_instance(ZONE, "web", networks=[a])

        state = controller.update_instance(
            ResourceRef(ZONE, inst), instance_spec([a], desiredState="stopped"), None, diagnostics
        )

        assert state.status == "Stopped"
        assert cloud.mutation_names() == ["stop_instance"]


class TestDeleteInstance:
    """Tests for the delete flow."""

    def test_strips_then_deletes(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test start, volume detach, secondary disconnect, delete."""
        a = cloud.add_network(ZONE, "a")
        b = cloud.add_network(ZONE, "b")
        inst = cloud.add_instance(ZONE, "web", networks=[a, b], status="Stopped")
        vol = cloud.add_volume(ZONE, "data", attached_to=inst)

        controller.delete_instance(ResourceRef(ZONE, inst), "web", diagnostics)

        assert inst not in cloud.instances
        assert cloud.volumes[vol].status == "ALLOCATED"
        assert cloud.mutation_names() == [
            "start_instance",
            "detach_volume",
            "disconnect_instance_from_network",
            "delete_instance",
        ]

    def test_missing_instance_is_warning(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that deleting a vanished instance succeeds with a warning."""
        controller.delete_instance(ResourceRef(ZONE, "inst-404"), "web", diagnostics)

        assert cloud.mutations() == []
        assert [d.summary for d in diagnostics.warnings] == ["Instance not found"]

    def test_volume_detach_failure_is_warning(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that a failed pre-delete detach does not block deletion."""
        a = cloud.add_network(ZONE, "a")
        inst = cloud.add_instance(ZONE, "web", networks=[a])
        cloud.add_volume(ZONE, "data", attached_to=inst)
        cloud.fail("detach_volume", ApiError("backend hiccup", 500))

        controller.delete_instance(ResourceRef(ZONE, inst), "web", diagnostics)

        assert inst not in cloud.instances
        assert any(d.summary == "Volume detach failed" for d in diagnostics.warnings)

    def test_delete_call_failure_propagates(
        self, cloud: MockCloud, controller: InstanceController, diagnostics: Diagnostics
    ) -> None:
        """Test that the delete call itself is fatal."""
        a = cloud.add_network(ZONE, "a")
        inst = cloud.add_instance(ZONE, "web", networks=[a])
        cloud.fail("delete_instance", ApiError("forbidden", 403))

        with pytest.raises(ApiError):
            controller.delete_instance(ResourceRef(ZONE, inst), "web", diagnostics)

        assert inst in cloud.instances
