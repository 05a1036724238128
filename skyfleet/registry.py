"""Node registry: the consumer's inventory of tracked resources.

The accountant removes nodes whose spot request died; the arbiter adds
nodes it launched. Everything else about the inventory belongs to the
consumer.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from skyfleet.model import TrackedResource


@runtime_checkable
class NodeRegistry(Protocol):
    def nodes(self) -> Sequence[TrackedResource]: ...

    def add(self, resource: TrackedResource) -> None: ...

    def remove(self, resource: TrackedResource) -> None: ...

    def reconnect(self, resource: TrackedResource) -> bool:
        """Reconnect the node's management handle; False if it has none."""
        ...


@dataclass
class InMemoryRegistry:
    """Registry kept in process memory."""

    _nodes: dict[str, TrackedResource] = field(default_factory=dict)
    reconnected: list[str] = field(default_factory=list)

    def nodes(self) -> Sequence[TrackedResource]:
        return tuple(self._nodes.values())

    def add(self, resource: TrackedResource) -> None:
        self._nodes[resource.name] = resource

    def remove(self, resource: TrackedResource) -> None:
        if self._nodes.pop(resource.name, None) is None:
            raise KeyError(resource.name)

    def reconnect(self, resource: TrackedResource) -> bool:
        if resource.name not in self._nodes:
            return False
        self.reconnected.append(resource.name)
        return True

    def __contains__(self, resource: object) -> bool:
        return isinstance(resource, TrackedResource) and resource.name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)
