"""Tests for bounded polling and diff-based discovery."""

from unittest.mock import MagicMock, call

import pytest
from cloud_mock import ZONE, MockCloud

from provisioner.errors import ApiError, DiscoveryError, InstanceNotReadyError, PollTimeoutError
from provisioner.models import Instance, ResourceRef
from provisioner.polling import (
    PollOutcome,
    find_by_name,
    find_new,
    poll_until,
    wait_for_instance_status,
    wait_for_network_connection,
    wait_for_resource_deletion,
    wait_for_volume_attach_settled,
)
from provisioner.status import is_instance_running


def true_on(k: int) -> MagicMock:
    """Predicate that returns True on its k-th evaluation."""
    return MagicMock(side_effect=[i == k for i in range(1, 100)])


class TestPollUntil:
    """Tests for poll_until."""

    @pytest.mark.parametrize("k", [1, 2, 5, 10])
    def test_satisfied_on_kth_attempt(self, k: int, sleeps: MagicMock) -> None:
        """Test that k evaluations and k-1 sleeps happen when true on attempt k."""
        predicate = true_on(k)

        result = poll_until(predicate, max_attempts=10, interval=2.5)

        assert result.outcome == PollOutcome.SATISFIED
        assert result.attempts == k
        assert predicate.call_count == k
        assert sleeps.call_args_list == [call(2.5)] * (k - 1)

    def test_no_sleep_before_first_attempt(self, sleeps: MagicMock) -> None:
        """Test that an immediately true predicate never sleeps."""
        result = poll_until(lambda: True, max_attempts=5, interval=1.0)

        assert result.satisfied
        sleeps.assert_not_called()

    def test_exhausted_without_trailing_sleep(self, sleeps: MagicMock) -> None:
        """Test that exhaustion sleeps only between attempts."""
        predicate = MagicMock(return_value=False)

        result = poll_until(predicate, max_attempts=4, interval=1.0)

        assert result.outcome == PollOutcome.EXHAUSTED
        assert result.attempts == 4
        assert predicate.call_count == 4
        assert sleeps.call_count == 3

    def test_first_error_stops_polling(self, sleeps: MagicMock) -> None:
        """Test that a raising predicate ends the poll with ERRORED."""
        error = ApiError("boom", 500)
        predicate = MagicMock(side_effect=[False, error, True])

        result = poll_until(predicate, max_attempts=5, interval=1.0)

        assert result.outcome == PollOutcome.ERRORED
        assert result.error is error
        assert result.attempts == 2
        assert predicate.call_count == 2
        assert sleeps.call_count == 1

    def test_fixed_interval(self, sleeps: MagicMock) -> None:
        """Test that the interval never grows between attempts."""
        poll_until(lambda: False, max_attempts=6, interval=5.0)

        assert {c.args[0] for c in sleeps.call_args_list} == {5.0}

    def test_zero_budget_still_evaluates_once(self) -> None:
        """Test that a budget below one evaluates the predicate once."""
        predicate = MagicMock(return_value=False)

        result = poll_until(predicate, max_attempts=0, interval=1.0)

        assert predicate.call_count == 1
        assert result.outcome == PollOutcome.EXHAUSTED

    def test_raise_for_outcome(self) -> None:
        """Test raise_for_outcome per outcome."""
        poll_until(lambda: True, 1, 0).raise_for_outcome("never raised")

        with pytest.raises(PollTimeoutError) as exc_info:
            poll_until(lambda: False, 3, 0).raise_for_outcome("waiting for thing")
        assert exc_info.value.attempts == 3
        assert "waiting for thing" in str(exc_info.value)

        error = ValueError("predicate failed")

        def explode() -> bool:
            raise error

        with pytest.raises(ValueError) as value_info:
            poll_until(explode, 3, 0).raise_for_outcome("ignored")
        assert value_info.value is error


class Item:
    def __init__(self, id: str, name: str) -> None:
        self.id = id
        self.name = name


class TestFindNew:
    """Tests for diff-based discovery."""

    def test_finds_item_not_in_snapshot(self) -> None:
        """Test that the new item is returned with its zone."""
        items = [Item("a", "web"), Item("b", "web")]

        ref = find_new(lambda: items, {"a"}, "web", 3, 0, zone_id=ZONE)

        assert ref == ResourceRef(ZONE, "b")

    def test_never_returns_existing_id(self) -> None:
        """Test that pre-existing ids with the same name are ignored."""
        with pytest.raises(DiscoveryError):
            find_new(lambda: [Item("a", "web")], {"a"}, "web", 3, 0)

    def test_name_must_match(self) -> None:
        """Test that a new item with another name is not taken."""
        items = [Item("a", "web"), Item("c", "db"), Item("d", "web")]

        ref = find_new(lambda: items, {"a"}, "web", 3, 0)

        assert ref.id == "d"

    def test_empty_name_matches_any_new_item(self) -> None:
        """Test that an empty match name accepts any new id."""
        ref = find_new(lambda: [Item("a", "x"), Item("z", "y")], {"a"}, "", 1, 0)

        assert ref.id == "z"

    def test_appears_after_lag(self, sleeps: MagicMock) -> None:
        """Test that the list is re-fetched each attempt until the item shows up."""
        snapshots = [[Item("a", "web")], [Item("a", "web")], [Item("a", "web"), Item("b", "web")]]
        list_fn = MagicMock(side_effect=snapshots)

        ref = find_new(list_fn, {"a"}, "web", 5, 1.0)

        assert ref.id == "b"
        assert list_fn.call_count == 3
        assert sleeps.call_count == 2

    def test_exhaustion_raises_discovery_error(self) -> None:
        """Test that DiscoveryError carries the attempt count."""
        with pytest.raises(DiscoveryError) as exc_info:
            find_new(lambda: [], set(), "web", 4, 0)

        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value, PollTimeoutError)

    def test_list_error_propagates(self) -> None:
        """Test that a failing list call surfaces verbatim."""
        error = ApiError("unavailable", 503)

        with pytest.raises(ApiError) as exc_info:
            find_new(MagicMock(side_effect=error), set(), "web", 4, 0)

        assert exc_info.value is error

    def test_find_by_name(self) -> None:
        """Test name-only discovery."""
        ref = find_by_name(lambda: [Item("k1", "other"), Item("k2", "cluster")], "cluster", 1, 0, ZONE)

        assert ref == ResourceRef(ZONE, "k2")


class TestTypedWaits:
    """Tests for the typed wait helpers."""

    def test_instance_status_timeout_is_not_ready(self) -> None:
        """Test that exhaustion raises InstanceNotReadyError with the last status."""
        client = MagicMock()
        client.show_instance.return_value = Instance(id="i-1", status="Starting")

        with pytest.raises(InstanceNotReadyError) as exc_info:
            wait_for_instance_status(client, ResourceRef(ZONE, "i-1"), is_instance_running, "running", 3, 0)

        assert exc_info.value.last_status == "Starting"
        assert exc_info.value.instance_id == "i-1"
        assert exc_info.value.attempts == 3

    def test_instance_status_returns_satisfying_status(self) -> None:
        """Test that the raw status that satisfied the wait is returned."""
        client = MagicMock()
        client.show_instance.side_effect = [
            Instance(id="i-1", status="Starting"),
            Instance(id="i-1", status="Running"),
        ]

        status = wait_for_instance_status(client, ResourceRef(ZONE, "i-1"), is_instance_running, "running", 5, 0)

        assert status == "Running"

    def test_network_connection_returns_first_sighting(self) -> None:
        """Test that the attachment is captured from the API listing."""
        cloud = MockCloud(list_lag=2)
        net = cloud.add_network(ZONE, "backend")
        inst = cloud.add_instance(ZONE, "web")
        cloud.connect_instance_to_network(ZONE, net, inst)

        record = wait_for_network_connection(cloud, ZONE, net, inst, 5, 0)

        assert record is not None
        assert record.network_id == net
        assert record.instance_id == inst
        assert record.ip_address.startswith("10.0.0.")
        assert cloud.count("list_network_instances") == 3

    def test_network_connection_timeout_returns_none(self) -> None:
        """Test that a connection never seen yields None."""
        cloud = MockCloud()
        net = cloud.add_network(ZONE, "backend")

        assert wait_for_network_connection(cloud, ZONE, net, "inst-x", 3, 0) is None

    def test_volume_attach_settled(self) -> None:
        """Test waiting for a volume to leave ATTACHING."""
        cloud = MockCloud(transition_polls=2)
        inst = cloud.add_instance(ZONE, "web")
        vol = cloud.add_volume(ZONE, "data")
        cloud.attach_volume(ZONE, vol, inst)

        result = wait_for_volume_attach_settled(cloud, ZONE, vol, 5, 0)

        assert result.satisfied
        assert cloud.volumes[vol].status == "ATTACHED"

    def test_resource_deletion(self) -> None:
        """Test waiting until an id disappears from a listing."""
        list_fn = MagicMock(side_effect=[[Item("a", "x")], []])

        result = wait_for_resource_deletion(list_fn, "a", 5, 0)

        assert result.satisfied
        assert result.attempts == 2
