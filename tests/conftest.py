from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, replace
from datetime import UTC, datetime

import pytest
from casty import ActorSystem
from loguru import logger

from skyfleet.classify import fleet_tags
from skyfleet.errors import CloudAccessError
from skyfleet.model import (
    InstanceView,
    LaunchMode,
    NodeMode,
    SpotRequestView,
    Template,
    TrackedResource,
)
from skyfleet.registry import InMemoryRegistry

SERVER_URL = "https://ci.example.com/"


class FakeCloud:
    """In-memory ``CloudApi``.

    ``script_instance`` / ``script_request`` queue the states returned by
    successive describes; the last entry repeats.
    """

    def __init__(self, server_url: str | None = SERVER_URL) -> None:
        self.server_url = server_url
        self.instances: dict[str, InstanceView] = {}
        self.spot_requests: dict[str, SpotRequestView] = {}
        self.hidden_requests: set[str] = set()
        self.spot_supported = True
        self.error: CloudAccessError | None = None
        self.calls: list[tuple[str, str | None]] = []
        self._instance_scripts: dict[str, list[str]] = {}
        self._request_scripts: dict[str, list[tuple[str, str | None]]] = {}

    def tags(self, template: Template) -> dict[str, str]:
        return fleet_tags(template.node_type, template.description, self.server_url)

    def add_instance(
        self,
        instance_id: str,
        image_id: str,
        tags: dict[str, str] | None = None,
        state: str = "running",
    ) -> InstanceView:
        view = InstanceView(id=instance_id, image_id=image_id, state=state, tags=tags or {})
        self.instances[instance_id] = view
        return view

    def add_spot_request(
        self,
        request_id: str,
        image_id: str,
        tags: dict[str, str] | None = None,
        state: str = "open",
        instance_id: str | None = None,
    ) -> SpotRequestView:
        view = SpotRequestView(
            id=request_id,
            state=state,
            status="pending-fulfillment" if state == "open" else state,
            instance_id=instance_id,
            launch_image_id=image_id,
            tags=tags or {},
        )
        self.spot_requests[request_id] = view
        return view

    def script_instance(self, instance_id: str, *states: str) -> None:
        self._instance_scripts[instance_id] = list(states)

    def script_request(self, request_id: str, *steps: tuple[str, str | None]) -> None:
        self._request_scripts[request_id] = list(steps)

    def describe_count(self, kind: str) -> int:
        return sum(1 for name, _ in self.calls if name == kind)

    def _check(self, name: str, key: str | None = None) -> None:
        self.calls.append((name, key))
        if self.error is not None:
            raise self.error

    async def list_instances(self) -> list[InstanceView]:
        self._check("list_instances")
        return list(self.instances.values())

    async def list_spot_requests(
        self, image_id: str | None = None, server_url: str | None = None,
    ) -> list[SpotRequestView]:
        self._check("list_spot_requests")
        if not self.spot_supported:
            return []
        return [
            r for r in self.spot_requests.values()
            if r.id not in self.hidden_requests
            and (image_id is None or r.launch_image_id == image_id)
        ]

    async def describe_instance(self, instance_id: str) -> InstanceView | None:
        self._check("describe_instance", instance_id)
        script = self._instance_scripts.get(instance_id)
        if script and instance_id in self.instances:
            state = script.pop(0) if len(script) > 1 else script[0]
            self.instances[instance_id] = replace(self.instances[instance_id], state=state)
        return self.instances.get(instance_id)

    async def describe_spot_request(self, request_id: str) -> SpotRequestView | None:
        self._check("describe_spot_request", request_id)
        script = self._request_scripts.get(request_id)
        if script and request_id in self.spot_requests:
            state, instance_id = script.pop(0) if len(script) > 1 else script[0]
            self.spot_requests[request_id] = replace(
                self.spot_requests[request_id], state=state, instance_id=instance_id,
            )
        return self.spot_requests.get(request_id)


@dataclass(frozen=True, slots=True)
class LaunchCall:
    template: str
    count: int
    mode: LaunchMode
    current_count: int


class FakeLauncher:
    """``Launcher`` that records calls and makes launched resources visible in a ``FakeCloud``."""

    def __init__(self, cloud: FakeCloud) -> None:
        self.cloud = cloud
        self.calls: list[LaunchCall] = []
        self.limit: int | None = None
        self.delay = 0.0
        self.error: CloudAccessError | None = None
        self.initial_state = "pending"
        self.visible = True
        self._ids = itertools.count(1)

    async def launch(
        self, template: Template, count: int, mode: LaunchMode, current_count: int,
    ) -> list[TrackedResource]:
        self.calls.append(LaunchCall(template.description, count, mode, current_count))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        n = count if self.limit is None else min(count, self.limit)
        tags = self.cloud.tags(template)
        resources: list[TrackedResource] = []
        for _ in range(n):
            seq = next(self._ids)
            if template.spot:
                rid = f"sir-{seq:04d}"
                self.cloud.add_spot_request(rid, template.image_id, tags)
                resources.append(TrackedResource(
                    name=f"{template.description} ({rid})",
                    template_description=template.description,
                    image_id=template.image_id,
                    spot_request_id=rid,
                    tags=tags,
                    stop_on_terminate=template.stop_on_terminate,
                    spot=True,
                    launched_at=datetime.now(UTC),
                ))
            else:
                iid = f"i-{seq:04d}"
                if self.visible:
                    self.cloud.add_instance(iid, template.image_id, tags, state=self.initial_state)
                resources.append(TrackedResource(
                    name=f"{template.description} ({iid})",
                    template_description=template.description,
                    image_id=template.image_id,
                    instance_id=iid,
                    tags=tags,
                    stop_on_terminate=template.stop_on_terminate,
                    launched_at=datetime.now(UTC),
                ))
        return resources


@pytest.fixture
def linux() -> Template:
    return Template(description="linux", image_id="ami-linux", labels=frozenset({"linux"}))


@pytest.fixture
def windows() -> Template:
    return Template(
        description="windows",
        image_id="ami-windows",
        labels=frozenset({"windows"}),
        mode=NodeMode.EXCLUSIVE,
    )


@pytest.fixture
def spot() -> Template:
    return Template(
        description="myTemplate",
        image_id="ami-spot",
        labels=frozenset({"spot"}),
        mode=NodeMode.EXCLUSIVE,
        spot=True,
    )


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def launcher(cloud: FakeCloud) -> FakeLauncher:
    return FakeLauncher(cloud)


@pytest.fixture
async def system():
    async with ActorSystem("test-skyfleet") as s:
        yield s


@pytest.fixture
def log_messages():
    messages: list[str] = []
    logger.enable("skyfleet")
    hid = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(hid)
    logger.disable("skyfleet")
