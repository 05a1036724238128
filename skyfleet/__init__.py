"""skyfleet: capacity-aware EC2 fleet provisioning.

Example:
    from casty import ActorSystem
    from skyfleet import Fleet, InMemoryRegistry, resolve_cloud

    async with ActorSystem("ci") as system:
        fleet = Fleet.create(resolve_cloud("ci"), InMemoryRegistry(), system)
        nodes = await fleet.provision("linux", excess_workload=4)
"""

from skyfleet.accounting import CapacityAccountant, Tally, reconcile
from skyfleet.actors import CancelReadiness, NodeDead, NodeReady, Phase
from skyfleet.arbiter import ProvisionArbiter
from skyfleet.classify import (
    ServerMatch,
    TemplateMatch,
    classify_server,
    classify_template,
    is_owned,
    is_owned_by_server,
    is_owned_instance,
)
from skyfleet.cloud import CloudConfig
from skyfleet.config import load_config, resolve_cloud
from skyfleet.constants import FleetTag, NodeType
from skyfleet.errors import (
    CapacityExceeded,
    CloudAccessError,
    FleetError,
    ProvisioningCancelled,
    ProvisioningFailed,
    ReadinessTimeout,
    RegistryMutationError,
    ResourceNotFound,
    SpotRequestDead,
    TemplateNotFound,
)
from skyfleet.fleet import Fleet, PlannedNode
from skyfleet.logging import LogConfig, setup_logging, teardown_logging
from skyfleet.model import LaunchMode, NodeMode, Template, TrackedResource
from skyfleet.registry import InMemoryRegistry, NodeRegistry

__all__ = [
    # === Provisioning ===
    "Fleet",
    "PlannedNode",
    "ProvisionArbiter",
    "CapacityAccountant",
    "Tally",
    "reconcile",
    # === Configuration ===
    "CloudConfig",
    "Template",
    "NodeMode",
    "LaunchMode",
    "load_config",
    "resolve_cloud",
    # === Classification ===
    "FleetTag",
    "NodeType",
    "TemplateMatch",
    "ServerMatch",
    "classify_template",
    "classify_server",
    "is_owned",
    "is_owned_instance",
    "is_owned_by_server",
    # === Registry ===
    "NodeRegistry",
    "InMemoryRegistry",
    "TrackedResource",
    # === Readiness ===
    "Phase",
    "CancelReadiness",
    "NodeReady",
    "NodeDead",
    # === Errors ===
    "FleetError",
    "CloudAccessError",
    "RegistryMutationError",
    "TemplateNotFound",
    "CapacityExceeded",
    "ProvisioningFailed",
    "ResourceNotFound",
    "SpotRequestDead",
    "ReadinessTimeout",
    "ProvisioningCancelled",
    # === Logging ===
    "LogConfig",
    "setup_logging",
    "teardown_logging",
]
