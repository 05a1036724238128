"""Data model shared by the accountant, the arbiter and the readiness actor."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType

from skyfleet.constants import (
    EXCLUDED_INSTANCE_STATES,
    LIVE_SPOT_STATES,
    UNBOUNDED,
    InstanceState,
    NodeType,
)

type InstanceId = str
type SpotRequestId = str
type Label = str


class NodeMode(StrEnum):
    """How a template takes work: any job, or only jobs naming its labels."""

    NORMAL = "normal"
    EXCLUSIVE = "exclusive"


class LaunchMode(StrEnum):
    ALLOW_CREATE = "allow-create"  # reuse stopped instances first
    FORCE_CREATE = "force-create"


def parse_instance_cap(value: str | int | None) -> int:
    """``None`` or an empty string means no cap."""
    match value:
        case None:
            return UNBOUNDED
        case int():
            return value
        case str() if not value.strip():
            return UNBOUNDED
        case str():
            return int(value.strip())
    raise TypeError(f"Invalid instance cap: {value!r}")


def format_instance_cap(cap: int) -> str:
    return "" if cap == UNBOUNDED else str(cap)


def parse_labels(value: str | frozenset[str] | tuple[str, ...] | list[str] | None) -> frozenset[str]:
    match value:
        case None:
            return frozenset()
        case str():
            return frozenset(value.split())
        case _:
            return frozenset(value)


# =============================================================================
# Template
# =============================================================================


@dataclass(frozen=True, slots=True)
class Template:
    """What to launch and under which caps.

    Args:
        description: Unique name; also written into the node-type tag.
        image_id: AMI to launch. Resources are only counted for a template
            when their image matches.
        instance_type: EC2 instance type.
        labels: Labels this template serves.
        mode: ``normal`` accepts unlabeled work, ``exclusive`` does not.
        executors: Work slots per instance.
        instance_cap: Max live resources for this template.
        spot: Launch through spot requests instead of on-demand.
        stop_on_terminate: Stop instead of terminating, reconnect on reuse.
    """

    description: str
    image_id: str
    instance_type: str = "t3.micro"
    labels: frozenset[Label] = frozenset()
    mode: NodeMode = NodeMode.NORMAL
    executors: int = 1
    instance_cap: int = UNBOUNDED
    spot: bool = False
    stop_on_terminate: bool = False
    subnet_id: str | None = None
    security_group_ids: tuple[str, ...] = ()
    key_name: str | None = None
    spot_max_price: str | None = None

    @property
    def node_type(self) -> NodeType:
        return NodeType.SPOT if self.spot else NodeType.DEMAND

    @property
    def display_name(self) -> str:
        return f"EC2 ({self.description}) - {self.image_id}"

    def matches(self, label: Label | None) -> bool:
        match self.mode:
            case NodeMode.NORMAL:
                return label is None or label in self.labels
            case NodeMode.EXCLUSIVE:
                return label is not None and label in self.labels
        return False

    def __str__(self) -> str:
        return f"Template({self.description})"


# =============================================================================
# Tracked resources
# =============================================================================


@dataclass(slots=True, eq=False)
class TrackedResource:
    """Local record of a resource we asked the cloud for.

    ``instance_id`` is ``None`` for a spot request that has not been
    fulfilled yet; the readiness actor fills it in.
    """

    name: str
    template_description: str
    image_id: str
    instance_id: InstanceId | None = None
    spot_request_id: SpotRequestId | None = None
    tags: Mapping[str, str] = field(default_factory=dict)
    stop_on_terminate: bool = False
    spot: bool = False
    launched_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"TrackedResource(name={self.name!r}, instance_id={self.instance_id!r}, "
            f"spot_request_id={self.spot_request_id!r})"
        )


# =============================================================================
# Remote views (recomputed on every query, never persisted)
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceView:
    id: InstanceId
    image_id: str
    state: str
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    launch_time: datetime | None = None
    spot_request_id: SpotRequestId | None = None

    @property
    def live(self) -> bool:
        return self.state not in EXCLUDED_INSTANCE_STATES

    @property
    def running(self) -> bool:
        return self.state == InstanceState.RUNNING

    @property
    def pending(self) -> bool:
        return self.state == InstanceState.PENDING


@dataclass(frozen=True, slots=True)
class SpotRequestView:
    id: SpotRequestId
    state: str
    status: str = ""
    instance_id: InstanceId | None = None
    launch_image_id: str = ""
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def live(self) -> bool:
        return self.state in LIVE_SPOT_STATES

    @property
    def dead(self) -> bool:
        return not self.live


@dataclass(frozen=True, slots=True)
class Snapshot:
    """One pass worth of remote state.

    ``tracked_requests`` holds individual lookups for tracked spot requests
    absent from the listing; ``None`` means EC2 has no record of it yet.
    ``taken_at`` is when the listing was read; ``None`` for hand-built
    snapshots, which skip the age check on unlisted tracked nodes.
    """

    instances: tuple[InstanceView, ...] = ()
    spot_requests: tuple[SpotRequestView, ...] = ()
    tracked_requests: Mapping[SpotRequestId, SpotRequestView | None] = field(
        default_factory=lambda: MappingProxyType({}),
    )
    taken_at: datetime | None = None
