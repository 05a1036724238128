"""Fleet: one configured EC2 cloud turned into planned nodes.

A fleet owns the shared EC2 connection, the capacity accountant and the
provision arbiter of one cloud. Demand comes in as ``provision(label,
excess_workload)``; what comes out is a list of ``PlannedNode``, each
watched by its own readiness actor.

Example:
    >>> async with ActorSystem("ci") as system:
    ...     fleet = Fleet.create(config, InMemoryRegistry(), system)
    ...     for node in await fleet.provision("linux", excess_workload=4):
    ...         resource = await node.future
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any

from casty import ActorRef, ActorSystem
from injector import Injector
from loguru import logger

from skyfleet.accounting import CapacityAccountant
from skyfleet.actors.messages import CancelReadiness, ReadinessEvent, ReadinessMsg
from skyfleet.actors.readiness import Phase, readiness_actor
from skyfleet.arbiter import ProvisionArbiter
from skyfleet.cloud.api import CloudApi, Ec2Api
from skyfleet.cloud.clients import EC2ClientFactory, Ec2Connection, Ec2Module
from skyfleet.cloud.config import CloudConfig
from skyfleet.cloud.launcher import Ec2Launcher, Launcher
from skyfleet.constants import UNLISTED_GRACE
from skyfleet.errors import CapacityExceeded, CloudAccessError, TemplateNotFound
from skyfleet.model import Label, Template, TrackedResource
from skyfleet.module import CloudConfigModule
from skyfleet.registry import NodeRegistry

log = logger.bind(component="fleet")


@dataclass(eq=False)
class PlannedNode:
    """A resource on its way to becoming usable.

    ``future`` resolves with the ready ``TrackedResource`` or fails with a
    ``ProvisioningFailed`` subclass.
    """

    display_name: str
    executors: int
    resource: TrackedResource
    future: asyncio.Future[TrackedResource]
    history: list[Phase] = field(default_factory=list)
    _ref: ActorRef[ReadinessMsg] | None = field(default=None, repr=False)

    @property
    def phase(self) -> Phase | None:
        return self.history[-1] if self.history else None

    @property
    def done(self) -> bool:
        return self.future.done()

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop waiting; the node is reported dead without further polling."""
        if self._ref is not None and not self.future.done():
            self._ref.tell(CancelReadiness(reason=reason))


class Fleet:
    """Capacity-aware provisioning for one EC2 cloud."""

    def __init__(
        self,
        config: CloudConfig,
        registry: NodeRegistry,
        system: ActorSystem,
        api: CloudApi,
        launcher: Launcher,
        connection: Ec2Connection | None = None,
        parent: ActorRef[ReadinessEvent] | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._system = system
        self._api = api
        self._connection = connection
        self._parent = parent
        self._accountant = CapacityAccountant(
            api,
            registry,
            config.server_url,
            unlisted_grace=config.readiness_timeout if config.readiness_timeout is not None else UNLISTED_GRACE,
        )
        self._arbiter = ProvisionArbiter(self._accountant, launcher, registry, config.instance_cap)
        self._planned: list[PlannedNode] = []
        self._actor_ids = itertools.count()

    @classmethod
    def create(
        cls,
        config: CloudConfig,
        registry: NodeRegistry,
        system: ActorSystem,
        parent: ActorRef[ReadinessEvent] | None = None,
    ) -> Fleet:
        injector = Injector([Ec2Module(), CloudConfigModule(config)])
        connection = Ec2Connection(injector.get(EC2ClientFactory))
        api = Ec2Api(connection, describe_attempts=config.describe_attempts)
        launcher = Ec2Launcher(connection, config.server_url)
        log.info(
            "Fleet {name} created (region={region}, cap={cap})",
            name=config.name, region=config.region, cap=config.instance_cap_str or "unbounded",
        )
        return cls(config, registry, system, api, launcher, connection=connection, parent=parent)

    # =========================================================================
    # Templates
    # =========================================================================

    @property
    def config(self) -> CloudConfig:
        return self._config

    @property
    def accountant(self) -> CapacityAccountant:
        return self._accountant

    @property
    def instance_cap_str(self) -> str:
        return self._config.instance_cap_str

    @property
    def planned(self) -> tuple[PlannedNode, ...]:
        return tuple(self._planned)

    def get_template(self, description: str) -> Template | None:
        return self._config.get_template(description)

    def get_template_for_label(self, label: Label | None) -> Template | None:
        return self._config.get_template_for_label(label)

    def can_provision(self, label: Label | None) -> bool:
        return self.get_template_for_label(label) is not None

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def provision(self, label: Label | None, excess_workload: int) -> list[PlannedNode]:
        """Plan nodes for ``excess_workload`` units of work matching ``label``.

        Returns an empty list when no template matches, when no capacity is
        left, or when EC2 could not be reached this time.
        """
        template = self.get_template_for_label(label)
        if template is None:
            log.debug("No template for label {label}", label=label)
            return []

        number = max(excess_workload // template.executors, 1)
        try:
            resources = await self._arbiter.request_provision(template, number, force_new=False)
        except CloudAccessError as e:
            log.error("Provisioning {t} failed: {err}", t=template.description, err=e)
            return []

        if not resources:
            return []
        return [self._watch(template, resource) for resource in resources]

    async def provision_template(self, description: str) -> TrackedResource:
        """Launch exactly one new node from the template named ``description``."""
        template = self.get_template(description)
        if template is None:
            raise TemplateNotFound(description)

        resources = await self._arbiter.request_provision(template, 1, force_new=True)
        if not resources:
            raise CapacityExceeded(description)

        resource = resources[0]
        if resource.stop_on_terminate:
            self._registry.reconnect(resource)
        return resource

    def _watch(self, template: Template, resource: TrackedResource) -> PlannedNode:
        future: asyncio.Future[TrackedResource] = asyncio.get_event_loop().create_future()
        history: list[Phase] = []
        ref = self._system.spawn(
            readiness_actor(
                resource,
                self._api,
                self._registry,
                result=future,
                history=history,
                parent=self._parent,
                poll_interval=self._config.poll_interval,
                poll_timeout=self._config.readiness_timeout,
            ),
            f"readiness-{next(self._actor_ids)}",
        )
        node = PlannedNode(
            display_name=template.display_name,
            executors=template.executors,
            resource=resource,
            future=future,
            history=history,
            _ref=ref,
        )
        future.add_done_callback(_consume_exception)
        self._planned = [p for p in self._planned if not p.done]
        self._planned.append(node)
        return node

    async def close(self) -> None:
        for node in self._planned:
            node.cancel("fleet closed")
        self._planned.clear()
        if self._connection is not None:
            await self._connection.close()
        log.debug("Fleet {name} closed", name=self._config.name)


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # Failures are also reported to the parent; keep asyncio from warning
    if not future.cancelled():
        future.exception()
