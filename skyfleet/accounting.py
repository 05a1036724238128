"""Capacity accounting.

Counts the resources that are live or on their way for a template (or for
the whole cloud), cross-referencing three views that can each be stale:

- the on-demand instance listing,
- the spot request listing,
- the registry of resources we launched ourselves.

``snapshot`` does all the remote reads, ``reconcile`` is a pure function over
the result, and ``apply_removals`` performs the one side effect accounting
has: dropping registry entries whose spot request died.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from loguru import logger

from skyfleet.classify import is_owned
from skyfleet.cloud.api import CloudApi
from skyfleet.constants import UNLISTED_GRACE, FleetTag, NodeType, node_type_tag_value
from skyfleet.model import (
    InstanceId,
    Snapshot,
    SpotRequestId,
    SpotRequestView,
    Template,
    TrackedResource,
)
from skyfleet.registry import NodeRegistry

log = logger.bind(component="accountant")


@dataclass(frozen=True, slots=True)
class Tally:
    """Result of one accounting pass.

    Args:
        count: Live or pending resources matching the classification.
        instance_ids: Instance ids already counted, used for deduplication.
        dead: Tracked resources whose spot request is dead; proposed removals.
    """

    count: int = 0
    instance_ids: frozenset[InstanceId] = frozenset()
    dead: tuple[TrackedResource, ...] = ()


def _template_key(template: Template | None) -> tuple[str | None, str | None]:
    if template is None:
        return None, None
    return template.description, template.image_id


def _spot_request_for_template(
    request: SpotRequestView, template: Template | None, server_url: str | None,
) -> bool:
    """Ownership check for a spot request seen only through a tracked node.

    With a template the node-type tag must carry the spot value for exactly
    that template; legacy values do not match here.
    """
    if template is None:
        return is_owned(request.tags, None, server_url)
    return (
        request.tags.get(FleetTag.NODE_TYPE) == node_type_tag_value(NodeType.SPOT, template.description)
        and request.launch_image_id == template.image_id
        and is_owned(request.tags, template.description, server_url)
    )


def _recently_launched(resource: TrackedResource, taken_at: datetime | None, grace: float) -> bool:
    if taken_at is None:
        return True
    if resource.launched_at is None:
        return False
    return (taken_at - resource.launched_at).total_seconds() <= grace


def reconcile(
    snapshot: Snapshot,
    tracked: Iterable[TrackedResource],
    template: Template | None,
    server_url: str | None,
    unlisted_grace: float = UNLISTED_GRACE,
) -> Tally:
    """Count resources for ``template`` (``None`` for all templates).

    Pure: the same snapshot and tracked resources always give the same tally.
    A tracked on-demand node the listing does not show is counted only within
    ``unlisted_grace`` seconds of its launch.
    """
    description, image_id = _template_key(template)
    tracked = tuple(tracked)
    counted: set[InstanceId] = set()
    count = 0

    # On-demand listing
    listed_instances = {i.id: i for i in snapshot.instances}
    for instance in snapshot.instances:
        if not instance.live:
            continue
        if image_id is not None and instance.image_id != image_id:
            continue
        if not is_owned(instance.tags, description, server_url):
            continue
        if instance.id in counted:
            continue
        log.debug("Existing instance found: {id} ({image})", id=instance.id, image=instance.image_id)
        counted.add(instance.id)
        count += 1

    # Spot request listing
    seen_requests: set[SpotRequestId] = set()
    dead_requests: set[SpotRequestId] = set()
    for request in snapshot.spot_requests:
        if request.id in seen_requests:
            continue
        seen_requests.add(request.id)
        if request.dead:
            dead_requests.add(request.id)
            continue
        if request.instance_id is not None and request.instance_id in counted:
            continue
        if image_id is not None and request.launch_image_id != image_id:
            continue
        if not is_owned(request.tags, description, server_url):
            continue
        log.debug(
            "Spot request found: {id} (instance={instance}, state={state}, status={status})",
            id=request.id, instance=request.instance_id, state=request.state, status=request.status,
        )
        count += 1
        if request.instance_id is not None:
            counted.add(request.instance_id)

    # Tracked spot nodes the listing has not caught up with yet
    for resource in tracked:
        if not resource.spot:
            continue
        if resource.spot_request_id is None:
            log.debug("Found spot node without request: {name}", name=resource.name)
            count += 1
            continue
        if resource.spot_request_id in seen_requests:
            continue
        seen_requests.add(resource.spot_request_id)
        request = snapshot.tracked_requests.get(resource.spot_request_id)
        if request is None:
            log.debug("Found spot node without request: {name}", name=resource.name)
            count += 1
            continue
        if request.dead:
            dead_requests.add(request.id)
            continue
        if request.instance_id is not None and request.instance_id in counted:
            continue
        if not _spot_request_for_template(request, template, server_url):
            continue
        log.debug("Spot request found (from node): {id}", id=request.id)
        count += 1
        if request.instance_id is not None:
            counted.add(request.instance_id)

    # Tracked on-demand nodes launched too recently to be listed
    for resource in tracked:
        if resource.spot or resource.instance_id is None:
            continue
        if resource.instance_id in counted or resource.instance_id in listed_instances:
            continue
        if description is not None and resource.template_description != description:
            continue
        if image_id is not None and resource.image_id != image_id:
            continue
        if not is_owned(resource.tags, description, server_url):
            continue
        if not _recently_launched(resource, snapshot.taken_at, unlisted_grace):
            log.debug("Ignoring unlisted on-demand node past its grace period: {name}", name=resource.name)
            continue
        log.debug("Found unlisted on-demand node: {name}", name=resource.name)
        counted.add(resource.instance_id)
        count += 1

    dead = tuple(
        r for r in tracked
        if r.spot and r.spot_request_id is not None and r.spot_request_id in dead_requests
    )
    return Tally(count=count, instance_ids=frozenset(counted), dead=dead)


class CapacityAccountant:
    """Counts live capacity against EC2 and the node registry."""

    def __init__(
        self,
        api: CloudApi,
        registry: NodeRegistry,
        server_url: str | None = None,
        unlisted_grace: float = UNLISTED_GRACE,
    ) -> None:
        self._api = api
        self._registry = registry
        self._server_url = server_url
        self._unlisted_grace = unlisted_grace
        if server_url is None:
            log.warning(
                "No server URL configured; resources are not told apart per server "
                "and the instance cap covers every tagged resource in the account",
            )

    @property
    def server_url(self) -> str | None:
        return self._server_url

    async def snapshot(self, template: Template | None = None) -> Snapshot:
        """Read the remote state needed to count ``template``.

        Without a template the spot listing is not narrowed by image, so the
        snapshot serves every template.
        """
        image_id = template.image_id if template is not None else None
        taken_at = datetime.now(UTC)
        instances = await self._api.list_instances()
        requests = await self._api.list_spot_requests(image_id=image_id, server_url=self._server_url)

        listed = {r.id for r in requests}
        missing = sorted({
            r.spot_request_id
            for r in self._registry.nodes()
            if r.spot and r.spot_request_id is not None and r.spot_request_id not in listed
        })
        lookups = await asyncio.gather(*(self._api.describe_spot_request(rid) for rid in missing))

        return Snapshot(
            instances=tuple(instances),
            spot_requests=tuple(requests),
            tracked_requests=dict(zip(missing, lookups, strict=True)),
            taken_at=taken_at,
        )

    def reconcile(self, snapshot: Snapshot, template: Template | None = None) -> Tally:
        return reconcile(
            snapshot, self._registry.nodes(), template, self._server_url, self._unlisted_grace,
        )

    def apply_removals(self, tally: Tally) -> int:
        """Remove tracked resources whose spot request died. Failures are logged."""
        removed = 0
        for resource in tally.dead:
            log.info(
                "Removing dead request: {request} ({name})",
                request=resource.spot_request_id, name=resource.name,
            )
            try:
                self._registry.remove(resource)
            except Exception as e:
                log.warning(
                    "Failed to remove node for dead request {request}: {err}",
                    request=resource.spot_request_id, err=e,
                )
                continue
            removed += 1
        return removed

    async def count_resources(self, template: Template | None = None) -> int:
        log.debug(
            "Counting current nodes for {scope} (server={server})",
            scope=template.description if template is not None else "all templates",
            server=self._server_url,
        )
        snapshot = await self.snapshot(template)
        tally = self.reconcile(snapshot, template)
        self.apply_removals(tally)
        return tally.count
