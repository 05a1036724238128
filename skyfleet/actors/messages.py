"""Messages understood by, and sent from, the readiness actor.

``ReadinessMsg`` is the actor's contract; the underscored messages are poll
results the actor pipes to itself.
"""

from __future__ import annotations

from dataclasses import dataclass

from skyfleet.model import InstanceView, SpotRequestView, TrackedResource

# =============================================================================
# Public
# =============================================================================


@dataclass(frozen=True, slots=True)
class CancelReadiness:
    """Stop waiting for the node; it is reported dead without another poll."""

    reason: str = "cancelled"


@dataclass(frozen=True, slots=True)
class NodeReady:
    resource: TrackedResource


@dataclass(frozen=True, slots=True)
class NodeDead:
    resource: TrackedResource
    reason: str


# =============================================================================
# Internal poll results
# =============================================================================


@dataclass(frozen=True, slots=True)
class _RequestPolled:
    request: SpotRequestView | None = None


@dataclass(frozen=True, slots=True)
class _InstancePolled:
    instance: InstanceView | None = None


@dataclass(frozen=True, slots=True)
class _PollFailed:
    error: str


type ReadinessMsg = CancelReadiness | _RequestPolled | _InstancePolled | _PollFailed
type ReadinessEvent = NodeReady | NodeDead
