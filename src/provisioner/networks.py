"""Network attachment reconciliation and private network lifecycle.

The reconciler computes the minimal connect/disconnect sequence that
moves an instance from its observed attachments to a desired set of
networks, then re-reads the attachments from the API.

INVARIANTS:
- The desired set is never empty (checked before any mutation)
- The default interface is never disconnected
- Attachment records are always taken from the API, never built locally

Planning (plan_network_changes) is pure so the computed plan can be
asserted on directly; NetworkReconciler executes it.

Failure policy:
- A connect/disconnect API failure is fatal and aborts the rest of the plan
- A verification timeout after a mutation is a warning
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from .client import CloudAPI
from .config import PollingConfig
from .diagnostics import Diagnostics
from .discovery import create_and_discover, names_in_use
from .errors import ApiError, InvariantViolation
from .models import AttachmentRecord, Network, NetworkSpec, NetworkState, ResourceRef
from .polling import poll_until, wait_for_network_connection, wait_for_network_disconnection

logger = logging.getLogger(__name__)

# Attributes that cannot change after a network is created
IMMUTABLE_NETWORK_ATTRIBUTES = ("name", "zone_id", "network_offering_id", "type", "gateway", "netmask")


@dataclass
class NetworkPlan:
    """Computed attachment changes for one instance.

    Attributes:
        drift: Observed attachments nobody asked for (detached as part of to_detach).
        to_detach: Network ids to disconnect, ascending.
        to_attach: Network ids to connect, in desired order.
        retained_default: Default network kept although it is not desired.
    """

    drift: list[AttachmentRecord] = field(default_factory=list)
    to_detach: list[str] = field(default_factory=list)
    to_attach: list[str] = field(default_factory=list)
    retained_default: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.to_detach and not self.to_attach


def plan_network_changes(
    desired: Iterable[str],
    observed: Iterable[AttachmentRecord],
    prior_managed: Iterable[str],
) -> NetworkPlan:
    """Compute the attach/detach plan for one instance.

    Args:
        desired: Network ids that should be attached.
        observed: Attachments currently reported by the API.
        prior_managed: Network ids the caller managed before this call.

    Returns:
        NetworkPlan. The default attachment never appears in to_detach.

    Raises:
        InvariantViolation: If the desired set is empty.
    """
    desired_ids = list(dict.fromkeys(n for n in desired if n))
    if not desired_ids:
        raise InvariantViolation("at least one network must remain attached to the instance")

    desired_set = set(desired_ids)
    observed = list(observed)
    observed_ids = {a.network_id for a in observed}
    default_ids = {a.network_id for a in observed if a.is_default}
    prior = set(prior_managed)

    plan = NetworkPlan()
    drift_ids: set[str] = set()
    for attachment in observed:
        nid = attachment.network_id
        if nid in desired_set or nid in prior or nid in drift_ids:
            continue
        drift_ids.add(nid)
        plan.drift.append(attachment)

    managed = prior | drift_ids
    candidates = sorted(nid for nid in managed - desired_set if nid in observed_ids)
    for nid in candidates:
        if nid in default_ids:
            plan.retained_default = nid
            continue
        plan.to_detach.append(nid)

    plan.to_attach = [nid for nid in desired_ids if nid not in prior and nid not in observed_ids]
    return plan


def order_attachments(attachments: Iterable[AttachmentRecord]) -> list[AttachmentRecord]:
    """Default first, then ascending network id; first record per network wins."""
    ordered = sorted(attachments, key=lambda a: (not a.is_default, a.network_id))
    seen: set[str] = set()
    unique: list[AttachmentRecord] = []
    for attachment in ordered:
        if attachment.network_id in seen:
            continue
        seen.add(attachment.network_id)
        unique.append(attachment)
    return unique


def primary_ip(attachments: list[AttachmentRecord]) -> str:
    """IP of the default attachment, else of the first one."""
    for attachment in attachments:
        if attachment.is_default and attachment.ip_address:
            return attachment.ip_address
    return attachments[0].ip_address if attachments else ""


class NetworkReconciler:
    """Executes network plans and manages private network resources."""

    def __init__(self, client: CloudAPI, polling: PollingConfig) -> None:
        self._client = client
        self._polling = polling

    # -------------------------------------------------------------------------
    # Attachments
    # -------------------------------------------------------------------------

    def refresh_attachments(self, ref: ResourceRef) -> list[AttachmentRecord]:
        """Re-read every attachment of an instance from the API.

        Args:
            ref: Instance reference.

        Returns:
            Ordered, de-duplicated attachment records.
        """
        records: list[AttachmentRecord] = []
        for network in self._client.list_networks(ref.zone_id):
            for item in self._client.list_network_instances(ref.zone_id, network.id, ref.id):
                if item.instance_id == ref.id:
                    records.append(item.to_record())
        return order_attachments(records)

    def reconcile(
        self,
        ref: ResourceRef,
        desired: list[str],
        prior_managed: Iterable[str],
        diagnostics: Diagnostics,
    ) -> list[AttachmentRecord]:
        """Bring the instance's attachments to the desired set.

        Args:
            ref: Instance reference.
            desired: Network ids that should be attached.
            prior_managed: Network ids managed before this call.
            diagnostics: Collects drift and verification warnings.

        Returns:
            Fresh attachments after all changes.

        Raises:
            InvariantViolation: If desired is empty.
            ApiError: If a connect or disconnect call fails.
        """
        if not [n for n in desired if n]:
            raise InvariantViolation("at least one network must remain attached to the instance")

        observed = self.refresh_attachments(ref)
        plan = plan_network_changes(desired, observed, prior_managed)
        by_network = {a.network_id: a for a in observed}

        for attachment in plan.drift:
            diagnostics.add_warning(
                "Network drift detected",
                f"instance {ref.id} is attached to unmanaged network {attachment.network_id}",
                instance_id=ref.id,
                network_id=attachment.network_id,
            )

        if plan.retained_default is not None:
            diagnostics.add_warning(
                "Default network cannot be detached",
                f"network {plan.retained_default} carries the default interface of instance "
                f"{ref.id}; a new default network will be required before it can be removed",
                instance_id=ref.id,
                network_id=plan.retained_default,
            )

        logger.info(
            "Reconciling networks",
            extra={
                "instance_id": ref.id,
                "to_detach": plan.to_detach,
                "to_attach": plan.to_attach,
            },
        )

        for network_id in plan.to_detach:
            self._detach(ref, by_network[network_id], diagnostics)

        for network_id in plan.to_attach:
            self._attach(ref, network_id, diagnostics)

        return self.refresh_attachments(ref)

    def _detach(self, ref: ResourceRef, attachment: AttachmentRecord, diagnostics: Diagnostics) -> None:
        self._client.disconnect_instance_from_network(
            ref.zone_id, attachment.network_id, ref.id, attachment.attachment_id
        )
        result = wait_for_network_disconnection(
            self._client,
            ref.zone_id,
            attachment.network_id,
            ref.id,
            attachment.attachment_id,
            self._polling.network_connection_attempts,
            self._polling.network_poll_interval_seconds,
        )
        if result.error is not None:
            raise result.error
        if not result.satisfied:
            diagnostics.add_warning(
                "Network disconnection not confirmed",
                f"instance {ref.id} still listed on network {attachment.network_id} "
                f"after {result.attempts} attempts",
                instance_id=ref.id,
                network_id=attachment.network_id,
            )

    def _attach(self, ref: ResourceRef, network_id: str, diagnostics: Diagnostics) -> AttachmentRecord | None:
        self._client.connect_instance_to_network(ref.zone_id, network_id, ref.id)
        record = wait_for_network_connection(
            self._client,
            ref.zone_id,
            network_id,
            ref.id,
            self._polling.network_connection_attempts,
            self._polling.network_poll_interval_seconds,
        )
        if record is None:
            diagnostics.add_warning(
                "Network connection not confirmed",
                f"instance {ref.id} not yet listed on network {network_id}",
                instance_id=ref.id,
                network_id=network_id,
            )
        return record

    # -------------------------------------------------------------------------
    # Network resources
    # -------------------------------------------------------------------------

    def create_network(self, spec: NetworkSpec, diagnostics: Diagnostics) -> NetworkState:
        """Create an L2 or L3 network and discover its id.

        Raises:
            InvariantViolation: If the name is already taken in the zone.
            DiscoveryError: If the network never appears.
        """
        zone_id = spec.zone_id
        if spec.name in names_in_use(self._client.list_networks(zone_id)):
            raise InvariantViolation(f"network name {spec.name!r} already exists in zone {zone_id}")

        def create() -> None:
            if spec.is_l3:
                self._client.create_l3_network(
                    zone_id, spec.network_offering_id, spec.name, spec.gateway or "", spec.netmask or ""
                )
            else:
                self._client.create_l2_network(zone_id, spec.network_offering_id, spec.name)

        ref = create_and_discover(
            lambda: self._client.list_networks(zone_id),
            create,
            spec.name,
            self._polling.network_discovery_attempts,
            self._polling.poll_interval_seconds,
            zone_id,
            "network",
        )
        diagnostics.add_info("Network created", f"network {spec.name} has id {ref.id}", network_id=ref.id)
        return self.read_network(ref)

    def read_network(self, ref: ResourceRef) -> NetworkState:
        network = self._client.show_network(ref.zone_id, ref.id)
        attached = [item.to_record() for item in self._client.list_network_instances(ref.zone_id, ref.id)]
        return NetworkState(
            ref=ref,
            name=network.name,
            status=network.status,
            type=network.type,
            instances=order_attachments_by_instance(attached),
        )

    def check_update(self, spec: NetworkSpec, ref: ResourceRef) -> NetworkState:
        """Refuse any change to an existing network's attributes.

        Raises:
            InvariantViolation: Listing every attribute that differs.
        """
        current = self._client.show_network(ref.zone_id, ref.id)
        changed = changed_network_attributes(spec, current, ref.zone_id)
        if changed:
            raise InvariantViolation(
                f"network {ref.id} attributes are immutable; changed: {', '.join(changed)}"
            )
        return self.read_network(ref)

    def delete_network(self, ref: ResourceRef, diagnostics: Diagnostics) -> None:
        """Disconnect every non-default interface, then delete the network.

        Deletion is retried with exponential backoff only while the API
        still reports the network as connected.

        Raises:
            ApiError: On any other delete failure, or when retries run out.
        """
        for item in self._client.list_network_instances(ref.zone_id, ref.id):
            if item.is_default:
                continue
            self._detach(ResourceRef(ref.zone_id, item.instance_id), item.to_record(), diagnostics)

        verified = poll_until(
            lambda: not any(
                not item.is_default for item in self._client.list_network_instances(ref.zone_id, ref.id)
            ),
            self._polling.network_verify_attempts,
            self._polling.network_verify_interval_seconds,
        )
        if verified.error is not None:
            raise verified.error
        if not verified.satisfied:
            diagnostics.add_warning(
                "Network still has attachments",
                f"network {ref.id} still lists instances after {verified.attempts} checks",
                network_id=ref.id,
            )

        retries = self._polling.network_deletion_retries
        for attempt in range(retries):
            try:
                self._client.delete_network(ref.zone_id, ref.id)
            except ApiError as e:
                if e.is_not_found:
                    diagnostics.add_info("Network already deleted", str(e), network_id=ref.id)
                    return
                if not e.is_network_connected or attempt == retries - 1:
                    raise
                delay = self._polling.network_deletion_backoff_seconds * (2**attempt)
                logger.warning(
                    "Network still connected, retrying delete",
                    extra={"network_id": ref.id, "attempt": attempt + 1, "delay_seconds": delay},
                )
                time.sleep(delay)
                continue
            logger.info("Network deleted", extra={"zone_id": ref.zone_id, "network_id": ref.id})
            return


def order_attachments_by_instance(attachments: list[AttachmentRecord]) -> list[AttachmentRecord]:
    return sorted(attachments, key=lambda a: a.instance_id)


def changed_network_attributes(spec: NetworkSpec, current: Network, zone_id: str) -> list[str]:
    """Names of immutable attributes whose desired value differs from the API's."""
    observed = {
        "name": current.name,
        "zone_id": zone_id,
        "network_offering_id": current.network_offering_id or spec.network_offering_id,
        "type": current.type or spec.type,
        "gateway": current.gateway,
        "netmask": current.netmask,
    }
    changed = []
    for attribute in IMMUTABLE_NETWORK_ATTRIBUTES:
        wanted = getattr(spec, attribute)
        if attribute in ("gateway", "netmask") and not spec.is_l3:
            continue
        if wanted != observed[attribute]:
            changed.append(attribute)
    return changed
