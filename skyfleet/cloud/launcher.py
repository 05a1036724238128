"""Launching EC2 capacity for a template.

Every resource is tagged at creation with the node-type and server tags;
those tags are the only way the accountant can recognize it later.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from skyfleet.classify import fleet_tags, tags_to_aws
from skyfleet.constants import FleetTag, InstanceState, NodeType, node_type_tag_value
from skyfleet.errors import CloudAccessError
from skyfleet.model import LaunchMode, Template, TrackedResource

from .api import access_error

if TYPE_CHECKING:
    from .clients import Ec2Connection

log = logger.bind(component="ec2-launcher")


def _log_for(template: Template) -> Any:
    return log.bind(template=template.description)


class Launcher(Protocol):
    async def launch(
        self,
        template: Template,
        count: int,
        mode: LaunchMode,
        current_count: int,
    ) -> list[TrackedResource]:
        """Launch up to ``count`` resources; may return fewer on partial failure."""
        ...


def node_name(template: Template, resource_id: str) -> str:
    return f"{template.description} ({resource_id})"


class Ec2Launcher:
    """``Launcher`` using ``run_instances`` and ``request_spot_instances``."""

    def __init__(self, connection: Ec2Connection, server_url: str | None = None) -> None:
        self._connection = connection
        self._server_url = server_url

    async def launch(
        self,
        template: Template,
        count: int,
        mode: LaunchMode,
        current_count: int,
    ) -> list[TrackedResource]:
        if count <= 0:
            return []

        _log_for(template).info(
            "Launching {n} {kind} node(s) for {t} ({current} already live, mode={mode})",
            n=count, kind=template.node_type, t=template.description,
            current=current_count, mode=mode,
        )

        if template.spot:
            return await self._request_spot(template, count)

        resources: list[TrackedResource] = []
        if mode == LaunchMode.ALLOW_CREATE:
            resources.extend(await self._restart_stopped(template, count))

        remaining = count - len(resources)
        if remaining > 0:
            try:
                resources.extend(await self._run_instances(template, remaining))
            except CloudAccessError as e:
                if not resources:
                    raise
                _log_for(template).warning(
                    "Launch for {t} partially failed, keeping {n} restarted node(s): {err}",
                    t=template.description, n=len(resources), err=e,
                )
        return resources

    def _tags(self, template: Template) -> dict[str, str]:
        return fleet_tags(template.node_type, template.description, self._server_url)

    async def _restart_stopped(self, template: Template, count: int) -> list[TrackedResource]:
        client = await self._connection.get()
        filters: list[dict[str, Any]] = [
            {
                "Name": f"tag:{FleetTag.NODE_TYPE}",
                "Values": [node_type_tag_value(NodeType.DEMAND, template.description)],
            },
            {"Name": "image-id", "Values": [template.image_id]},
            {"Name": "instance-state-name", "Values": [InstanceState.STOPPED.value]},
        ]
        if self._server_url is not None:
            filters.append({"Name": f"tag:{FleetTag.SERVER_URL}", "Values": [self._server_url]})

        try:
            response = await client.describe_instances(Filters=filters)
            stopped = [
                i for r in response.get("Reservations", []) for i in r.get("Instances", [])
            ][:count]
            if not stopped:
                return []
            ids = [i["InstanceId"] for i in stopped]
            await client.start_instances(InstanceIds=ids)
        except (ClientError, BotoCoreError) as e:
            raise access_error("StartInstances", e) from e

        _log_for(template).info(
            "Restarted {n} stopped node(s) for {t}: {ids}", n=len(ids), t=template.description, ids=ids,
        )
        tags = self._tags(template)
        return [
            TrackedResource(
                name=node_name(template, iid),
                template_description=template.description,
                image_id=template.image_id,
                instance_id=iid,
                tags=tags,
                stop_on_terminate=template.stop_on_terminate,
                launched_at=datetime.now(UTC),
            )
            for iid in ids
        ]

    async def _run_instances(self, template: Template, count: int) -> list[TrackedResource]:
        client = await self._connection.get()
        tags = self._tags(template)
        instance_tags = {FleetTag.NAME.value: template.description, **tags}

        run_args: dict[str, Any] = {
            "ImageId": template.image_id,
            "InstanceType": template.instance_type,
            # Accept partial capacity rather than failing the whole batch
            "MinCount": 1,
            "MaxCount": count,
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": tags_to_aws(instance_tags)},
            ],
            "InstanceInitiatedShutdownBehavior": (
                "stop" if template.stop_on_terminate else "terminate"
            ),
        }
        run_args.update(_placement_args(template))

        try:
            response = await client.run_instances(**run_args)
        except (ClientError, BotoCoreError) as e:
            raise access_error("RunInstances", e) from e

        launched = response.get("Instances", [])
        if len(launched) < count:
            _log_for(template).warning(
                "Requested {n} instances for {t}, EC2 returned {got}",
                n=count, t=template.description, got=len(launched),
            )
        return [
            TrackedResource(
                name=node_name(template, raw["InstanceId"]),
                template_description=template.description,
                image_id=template.image_id,
                instance_id=raw["InstanceId"],
                tags=tags,
                stop_on_terminate=template.stop_on_terminate,
                launched_at=raw.get("LaunchTime") or datetime.now(UTC),
            )
            for raw in launched
        ]

    async def _request_spot(self, template: Template, count: int) -> list[TrackedResource]:
        client = await self._connection.get()
        tags = self._tags(template)

        spec: dict[str, Any] = {
            "ImageId": template.image_id,
            "InstanceType": template.instance_type,
        }
        if template.subnet_id:
            spec["SubnetId"] = template.subnet_id
        if template.security_group_ids:
            spec["SecurityGroupIds"] = list(template.security_group_ids)
        if template.key_name:
            spec["KeyName"] = template.key_name

        request_args: dict[str, Any] = {
            "InstanceCount": count,
            "Type": "one-time",
            "LaunchSpecification": spec,
            "TagSpecifications": [
                {"ResourceType": "spot-instances-request", "Tags": tags_to_aws(tags)},
            ],
        }
        if template.spot_max_price:
            request_args["SpotPrice"] = template.spot_max_price

        try:
            response = await client.request_spot_instances(**request_args)
        except (ClientError, BotoCoreError) as e:
            raise access_error("RequestSpotInstances", e) from e

        requests = response.get("SpotInstanceRequests", [])
        _log_for(template).info(
            "Placed {n} spot request(s) for {t}: {ids}",
            n=len(requests), t=template.description,
            ids=[r["SpotInstanceRequestId"] for r in requests],
        )
        return [
            TrackedResource(
                name=node_name(template, raw["SpotInstanceRequestId"]),
                template_description=template.description,
                image_id=template.image_id,
                instance_id=raw.get("InstanceId") or None,
                spot_request_id=raw["SpotInstanceRequestId"],
                tags=tags,
                stop_on_terminate=template.stop_on_terminate,
                spot=True,
                launched_at=datetime.now(UTC),
            )
            for raw in requests
        ]


def _placement_args(template: Template) -> dict[str, Any]:
    args: dict[str, Any] = {}
    if template.subnet_id:
        args["SubnetId"] = template.subnet_id
    if template.security_group_ids:
        args["SecurityGroupIds"] = list(template.security_group_ids)
    if template.key_name:
        args["KeyName"] = template.key_name
    return args
