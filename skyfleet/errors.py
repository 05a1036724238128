"""Exception types raised by skyfleet.

Running out of capacity is not an error: the arbiter returns ``None`` for it.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from skyfleet.model import TrackedResource


class FleetError(Exception):
    """Base class for skyfleet errors."""


class CloudAccessError(FleetError):
    """A remote EC2 call failed (auth, network, throttling)."""

    def __init__(self, operation: str, message: str, code: str | None = None) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.code = code


class RegistryMutationError(FleetError):
    """Launched resources could not all be added to the node registry.

    ``launched`` is the whole batch, registered or not; ``failed`` maps each
    unregistered resource to the error the registry raised for it.
    """

    def __init__(
        self,
        launched: Sequence[TrackedResource],
        failed: Sequence[tuple[TrackedResource, BaseException]],
    ) -> None:
        causes = "; ".join(f"{r.name}: {e}" for r, e in failed)
        super().__init__(f"Could not register {len(failed)} of {len(launched)} launched node(s): {causes}")
        self.launched = tuple(launched)
        self.failed = tuple(failed)

    @property
    def unregistered(self) -> tuple[TrackedResource, ...]:
        return tuple(r for r, _ in self.failed)


class TemplateNotFound(FleetError, LookupError):
    def __init__(self, description: str) -> None:
        super().__init__(f"No such template: {description}")
        self.description = description


class CapacityExceeded(FleetError):
    """Raised by explicit single-node provisioning when a cap is reached."""

    def __init__(self, description: str) -> None:
        super().__init__(f"Cloud or template instance cap would be exceeded for: {description}")
        self.description = description


# =============================================================================
# Readiness failures (delivered through PlannedNode futures)
# =============================================================================


class ProvisioningFailed(FleetError):
    """A planned node never became ready."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"{name}: {reason}")
        self.name = name
        self.reason = reason


class ResourceNotFound(ProvisioningFailed):
    pass


class SpotRequestDead(ProvisioningFailed):
    pass


class ReadinessTimeout(ProvisioningFailed):
    pass


class ProvisioningCancelled(ProvisioningFailed):
    pass
