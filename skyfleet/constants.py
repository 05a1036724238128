"""Centralized constants and enums for skyfleet.

All tag keys, state names and timing defaults live here so that the
classifier, the accountant and the launcher agree on them.
"""

from __future__ import annotations

import sys
from enum import StrEnum
from typing import Final

# =============================================================================
# EC2 Resource Tags
# =============================================================================


class FleetTag(StrEnum):
    """EC2 tag keys used to recognize resources launched by skyfleet."""

    NAME = "Name"
    SERVER_URL = "skyfleet:server-url"
    NODE_TYPE = "skyfleet:node-type"


class NodeType(StrEnum):
    """Market type encoded in the node-type tag."""

    DEMAND = "demand"
    SPOT = "spot"


def node_type_tag_value(node_type: NodeType | str, description: str | None) -> str:
    """Value of the node-type tag for a template.

    Resources tagged before templates had descriptions carry the bare type.
    """
    return f"{node_type}_{description}" if description is not None else str(node_type)


# =============================================================================
# EC2 States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"


class SpotRequestState(StrEnum):
    """EC2 spot instance request state names."""

    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"


EXCLUDED_INSTANCE_STATES: Final = frozenset({
    InstanceState.TERMINATED,
    InstanceState.SHUTTING_DOWN,
    InstanceState.STOPPED,
})

LIVE_SPOT_STATES: Final = frozenset({SpotRequestState.OPEN, SpotRequestState.ACTIVE})

# Error codes returned by EC2-compatible endpoints without spot support
SPOT_UNSUPPORTED_CODES: Final = frozenset({
    "UnsupportedOperation",
    "InvalidAction",
    "NotImplemented",
    "UnknownOperationException",
})

# =============================================================================
# Capacity
# =============================================================================

UNBOUNDED: Final = sys.maxsize

# =============================================================================
# Timing
# =============================================================================

# Seconds between readiness polls
POLL_INTERVAL: Final = 5.0
# Seconds a node may spend unidentified or pending before it is declared dead
READINESS_TIMEOUT: Final = 600.0
# Seconds a tracked on-demand node missing from the listing is still counted
UNLISTED_GRACE: Final = READINESS_TIMEOUT
# Attempts for a single describe call before giving up
DESCRIBE_ATTEMPTS: Final = 5
# botocore-level retries for throttled or flaky EC2 calls
MAX_ERROR_RETRY: Final = 16

DEFAULT_REGION: Final = "us-east-1"
AWS_URL_HOST: Final = "amazonaws.com"
