"""Provision arbiter: the single critical section of a fleet.

Accounting, the clamp decision, the launch call and the registry additions
all happen under one lock, so two concurrent demand signals can never both
spend the same remaining capacity.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from skyfleet.accounting import CapacityAccountant
from skyfleet.cloud.launcher import Launcher
from skyfleet.constants import UNBOUNDED
from skyfleet.errors import RegistryMutationError
from skyfleet.model import LaunchMode, Template, TrackedResource
from skyfleet.registry import NodeRegistry

log = logger.bind(component="arbiter")


class ProvisionArbiter:
    def __init__(
        self,
        accountant: CapacityAccountant,
        launcher: Launcher,
        registry: NodeRegistry,
        instance_cap: int = UNBOUNDED,
    ) -> None:
        self._accountant = accountant
        self._launcher = launcher
        self._registry = registry
        self._instance_cap = instance_cap
        self._lock = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def remaining_capacity(self, template: Template) -> tuple[int, int]:
        """``(remaining, template_count)`` from one consistent snapshot.

        Must be called with the lock held.
        """
        snapshot = await self._accountant.snapshot()
        global_tally = self._accountant.reconcile(snapshot, None)
        template_tally = self._accountant.reconcile(snapshot, template)
        self._accountant.apply_removals(global_tally)

        remaining = min(
            self._instance_cap - global_tally.count,
            template.instance_cap - template_tally.count,
        )
        log.debug(
            "Capacity for {t}: global {g}/{gcap}, template {n}/{tcap}",
            t=template.description,
            g=global_tally.count, gcap=self._instance_cap,
            n=template_tally.count, tcap=template.instance_cap,
        )
        return remaining, template_tally.count

    async def request_provision(
        self,
        template: Template,
        desired_count: int,
        force_new: bool = False,
    ) -> list[TrackedResource] | None:
        """Launch up to ``desired_count`` resources for ``template``.

        Returns ``None`` when no capacity remains. The returned list may be
        shorter than requested if the launch partially failed; every returned
        resource has already been added to the registry.

        Raises ``RegistryMutationError`` after trying to register every
        launched resource if any of them was refused; the error carries the
        whole batch.
        """
        async with self._lock:
            remaining, current = await self.remaining_capacity(template)
            if remaining <= 0:
                log.info("Cannot provision {t}: instance cap reached", t=template.description)
                return None

            count = desired_count
            if count > remaining:
                log.info(
                    "Clamping provision for {t} from {desired} to {remaining} to stay under the instance cap",
                    t=template.description, desired=desired_count, remaining=remaining,
                )
                count = remaining

            mode = LaunchMode.FORCE_CREATE if force_new else LaunchMode.ALLOW_CREATE
            resources = await self._launcher.launch(template, count, mode, current)

            failed: list[tuple[TrackedResource, Exception]] = []
            for resource in resources:
                try:
                    self._registry.add(resource)
                except Exception as e:
                    log.error("Failed to register {name}: {err}", name=resource.name, err=e)
                    failed.append((resource, e))
            if failed:
                raise RegistryMutationError(resources, failed) from failed[0][1]

            log.info(
                "Provisioned {n}/{count} node(s) for {t}",
                n=len(resources), count=count, t=template.description,
            )
            return resources
