"""In-memory control plane for integration testing.

Provides MockCloud, an implementation of the CloudAPI protocol that
behaves like the real control plane where it matters to the core:

- Create calls return nothing; new resources show up in lists later
- Power transitions pass through intermediate statuses
- Volume attachments pass through ATTACHING
- Error injection per method for failure scenarios
- A call log for asserting which mutations were (not) issued

Usage:
    from cloud_mock import MockCloud

    cloud = MockCloud(transition_polls=2, list_lag=1)
    net = cloud.add_network("zone-1", "backend")
    inst = cloud.add_instance("zone-1", "web", networks=[net])

    operator = Operator(cloud, config)
    operator.delete_instance(ResourceRef("zone-1", inst))

    assert cloud.mutations() == [...]
"""

from .cloud import MUTATING_METHODS, ZONE, MockCloud

__all__ = ["MUTATING_METHODS", "ZONE", "MockCloud"]
