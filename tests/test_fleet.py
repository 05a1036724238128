import asyncio
from dataclasses import replace

import pytest

from skyfleet.actors.readiness import Phase
from skyfleet.cloud.config import CloudConfig
from skyfleet.errors import (
    CapacityExceeded,
    CloudAccessError,
    ProvisioningCancelled,
    ResourceNotFound,
    TemplateNotFound,
)
from skyfleet.fleet import Fleet
from skyfleet.model import LaunchMode

pytestmark = [pytest.mark.unit]

SERVER = "https://ci.example.com/"


@pytest.fixture
def config(linux, windows, spot):
    return CloudConfig(
        name="ci",
        instance_cap=10,
        server_url=SERVER,
        templates=(windows, spot, linux),
        poll_interval=0.01,
        readiness_timeout=1.0,
    )


@pytest.fixture
def fleet(config, registry, system, cloud, launcher):
    launcher.initial_state = "running"
    return Fleet(config, registry, system, api=cloud, launcher=launcher)


class TestTemplates:
    def test_lookup(self, fleet, linux, windows):
        assert fleet.get_template("linux") == linux
        assert fleet.get_template("nope") is None
        assert fleet.get_template_for_label("windows") == windows
        assert fleet.get_template_for_label(None) == linux

    def test_can_provision(self, fleet):
        assert fleet.can_provision("spot")
        assert fleet.can_provision(None)
        assert not fleet.can_provision("arm64")

    def test_instance_cap_str(self, fleet, registry, system, cloud, launcher):
        assert fleet.instance_cap_str == "10"
        unbounded = Fleet(CloudConfig(), registry, system, api=cloud, launcher=launcher)
        assert unbounded.instance_cap_str == ""


class TestProvision:
    async def test_planned_nodes_become_ready(self, fleet, registry):
        planned = await fleet.provision("linux", excess_workload=2)

        assert len(planned) == 2
        resources = await asyncio.wait_for(asyncio.gather(*(p.future for p in planned)), 2.0)
        assert {r.name for r in resources} == {r.name for r in registry.nodes()}
        for node in planned:
            assert node.display_name == "EC2 (linux) - ami-linux"
            assert node.executors == 1
            assert node.phase is Phase.READY
            assert node.history == [Phase.PENDING, Phase.RUNNING, Phase.READY]

    @pytest.mark.parametrize(("excess", "expected"), [(0, 1), (1, 1), (5, 2), (8, 4)])
    async def test_excess_workload_to_instance_count(
        self, config, registry, system, cloud, launcher, linux, excess, expected,
    ):
        template = replace(linux, executors=2)
        fleet = Fleet(replace(config, templates=(template,)), registry, system, api=cloud, launcher=launcher)

        await fleet.provision("linux", excess)

        assert launcher.calls[0].count == expected
        assert launcher.calls[0].mode is LaunchMode.ALLOW_CREATE

    async def test_no_matching_template(self, fleet, launcher):
        assert await fleet.provision("arm64", 3) == []
        assert launcher.calls == []

    async def test_cloud_failure_yields_no_plan(self, fleet, cloud, log_messages):
        cloud.error = CloudAccessError("DescribeInstances", "throttled", "RequestLimitExceeded")
        assert await fleet.provision("linux", 1) == []
        assert any("Provisioning linux failed" in m for m in log_messages)

    async def test_no_capacity_yields_no_plan(self, fleet, cloud, windows):
        for i in range(10):
            cloud.add_instance(f"i-w{i}", windows.image_id, cloud.tags(windows))
        assert await fleet.provision("linux", 1) == []

    async def test_spot_node(self, fleet, cloud):
        planned = await fleet.provision("spot", 1)
        assert len(planned) == 1
        node = planned[0]
        assert node.resource.spot_request_id == "sir-0001"

        cloud.script_request("sir-0001", ("active", "i-77"))
        cloud.add_instance("i-77", "ami-spot", state="running")

        resource = await asyncio.wait_for(node.future, 2.0)
        assert resource.instance_id == "i-77"
        assert node.history[0] is Phase.UNIDENTIFIED

    async def test_cancel_planned_node(self, fleet, launcher):
        launcher.initial_state = "pending"
        node = (await fleet.provision("linux", 1))[0]

        node.cancel()

        with pytest.raises(ProvisioningCancelled):
            await asyncio.wait_for(node.future, 2.0)
        assert node.phase is Phase.DEAD

    async def test_close_cancels_outstanding(self, fleet, launcher):
        launcher.initial_state = "pending"
        node = (await fleet.provision("linux", 1))[0]

        await fleet.close()

        with pytest.raises(ProvisioningCancelled, match="fleet closed"):
            await asyncio.wait_for(node.future, 2.0)
        assert fleet.planned == ()

    async def test_vanished_node_frees_its_capacity(
        self, config, registry, system, cloud, launcher, linux,
    ):
        launcher.visible = False
        template = replace(linux, instance_cap=1)
        fleet = Fleet(replace(config, templates=(template,)), registry, system, api=cloud, launcher=launcher)

        first = (await fleet.provision("linux", 1))[0]
        with pytest.raises(ResourceNotFound):
            await asyncio.wait_for(first.future, 2.0)

        assert len(registry) == 0
        assert await fleet.accountant.count_resources(template) == 0
        assert len(await fleet.provision("linux", 1)) == 1
        assert len(launcher.calls) == 2


class TestProvisionTemplate:
    async def test_launches_one_new_node(self, fleet, launcher, registry):
        resource = await fleet.provision_template("linux")

        assert launcher.calls[0].count == 1
        assert launcher.calls[0].mode is LaunchMode.FORCE_CREATE
        assert resource in registry

    async def test_unknown_template(self, fleet):
        with pytest.raises(TemplateNotFound):
            await fleet.provision_template("nope")

    async def test_capacity_exceeded(self, fleet, cloud, windows):
        for i in range(10):
            cloud.add_instance(f"i-w{i}", windows.image_id, cloud.tags(windows))
        with pytest.raises(CapacityExceeded):
            await fleet.provision_template("linux")

    async def test_reconnects_stop_on_terminate(self, config, registry, system, cloud, launcher, linux):
        template = replace(linux, stop_on_terminate=True)
        fleet = Fleet(replace(config, templates=(template,)), registry, system, api=cloud, launcher=launcher)

        resource = await fleet.provision_template("linux")

        assert registry.reconnected == [resource.name]


class TestCreate:
    async def test_create_wires_ec2_stack(self, config, registry, system):
        fleet = Fleet.create(config, registry, system)
        assert fleet.instance_cap_str == "10"
        assert fleet.accountant.server_url == SERVER
        await fleet.close()

    async def test_cloud_config_create_fleet(self, config, registry, system):
        fleet = await config.create_fleet(registry, system)
        assert isinstance(fleet, Fleet)
        await fleet.close()
