"""Readiness of a freshly launched node.

One actor per planned node polls EC2 until the node is usable or known to be
dead. Phases only move forward; the outcome is delivered exactly once.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from enum import StrEnum

from casty import ActorContext, ActorRef, Behavior, Behaviors
from loguru import logger

from skyfleet.actors.messages import (
    CancelReadiness,
    NodeDead,
    NodeReady,
    ReadinessEvent,
    ReadinessMsg,
    _InstancePolled,
    _PollFailed,
    _RequestPolled,
)
from skyfleet.cloud.api import CloudApi
from skyfleet.constants import POLL_INTERVAL, READINESS_TIMEOUT, InstanceState
from skyfleet.errors import (
    ProvisioningCancelled,
    ProvisioningFailed,
    ReadinessTimeout,
    ResourceNotFound,
    SpotRequestDead,
)
from skyfleet.model import InstanceId, SpotRequestId, TrackedResource
from skyfleet.registry import NodeRegistry


class Phase(StrEnum):
    UNIDENTIFIED = "unidentified"
    PENDING = "pending"
    RUNNING = "running"
    READY = "ready"
    DEAD = "dead"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)

    @property
    def terminal(self) -> bool:
        return self in (Phase.READY, Phase.DEAD)


_PHASE_ORDER = tuple(Phase)


def readiness_actor(
    resource: TrackedResource,
    api: CloudApi,
    registry: NodeRegistry,
    result: asyncio.Future[TrackedResource],
    history: list[Phase],
    parent: ActorRef[ReadinessEvent] | None = None,
    poll_interval: float = POLL_INTERVAL,
    poll_timeout: float | None = READINESS_TIMEOUT,
) -> Behavior[ReadinessMsg]:
    """unidentified → pending → running → ready, or dead from any of them.

    Spot nodes start unidentified until their request yields an instance id;
    on-demand nodes start pending. The outcome is delivered through
    ``result`` and, when given, to ``parent``.
    """

    log = logger.bind(actor="readiness", node=resource.name, template=resource.template_description)
    if resource.spot_request_id is not None:
        log = log.bind(request_id=resource.spot_request_id)

    def advance(phase: Phase) -> None:
        if history and history[-1].rank >= phase.rank:
            raise RuntimeError(f"Readiness of {resource.name} cannot move from {history[-1]} to {phase}")
        history.append(phase)
        log.debug("Phase {phase}", phase=phase)

    def timed_out(start_time: float) -> bool:
        if poll_timeout is None:
            return False
        return asyncio.get_event_loop().time() - start_time > poll_timeout

    async def _poll_request(request_id: SpotRequestId, delay: float) -> _RequestPolled:
        if delay:
            await asyncio.sleep(delay)
        return _RequestPolled(request=await api.describe_spot_request(request_id))

    async def _poll_instance(instance_id: InstanceId, delay: float) -> _InstancePolled:
        if delay:
            await asyncio.sleep(delay)
        return _InstancePolled(instance=await api.describe_instance(instance_id))

    def start() -> Behavior[ReadinessMsg]:
        async def setup(ctx: ActorContext[ReadinessMsg]) -> Behavior[ReadinessMsg]:
            start_time = asyncio.get_event_loop().time()
            if resource.instance_id is not None:
                return pending(ctx, resource.instance_id, start_time, delay=0)
            if resource.spot_request_id is not None:
                return unidentified(ctx, resource.spot_request_id, start_time, delay=0)
            advance(Phase.UNIDENTIFIED)
            return dead(ResourceNotFound(resource.name, "no instance or spot request id"))

        return Behaviors.setup(setup)

    def unidentified(
        ctx: ActorContext[ReadinessMsg], request_id: SpotRequestId, start_time: float, delay: float,
    ) -> Behavior[ReadinessMsg]:
        if not history:
            advance(Phase.UNIDENTIFIED)
        ctx.pipe_to_self(
            _poll_request(request_id, delay),
            on_failure=lambda e: _PollFailed(error=str(e)),
        )

        async def receive(
            ctx: ActorContext[ReadinessMsg], msg: ReadinessMsg,
        ) -> Behavior[ReadinessMsg]:
            match msg:
                case CancelReadiness(reason=reason):
                    return dead(ProvisioningCancelled(resource.name, reason))
                case _PollFailed(error=error):
                    return dead(ProvisioningFailed(resource.name, f"spot request poll failed: {error}"))
                case _RequestPolled(request=request) if request is not None and request.dead:
                    _forget()
                    return dead(SpotRequestDead(
                        resource.name,
                        f"spot request {request.id} is {request.state} ({request.status})",
                    ))
                case _RequestPolled(request=request) if request is not None and request.instance_id:
                    resource.instance_id = request.instance_id
                    log.info(
                        "Spot request {request} fulfilled by {instance}",
                        request=request.id, instance=request.instance_id,
                    )
                    return pending(ctx, request.instance_id, start_time, delay=0)
                case _RequestPolled():
                    if timed_out(start_time):
                        return dead(ReadinessTimeout(
                            resource.name, f"spot request not fulfilled within {poll_timeout}s",
                        ))
                    return unidentified(ctx, request_id, start_time, poll_interval)
            return Behaviors.same()

        return Behaviors.receive(receive)

    def pending(
        ctx: ActorContext[ReadinessMsg], instance_id: InstanceId, start_time: float, delay: float,
    ) -> Behavior[ReadinessMsg]:
        nonlocal log
        log = log.bind(instance_id=instance_id)
        if history[-1:] != [Phase.PENDING]:
            advance(Phase.PENDING)
        ctx.pipe_to_self(
            _poll_instance(instance_id, delay),
            on_failure=lambda e: _PollFailed(error=str(e)),
        )

        async def receive(
            ctx: ActorContext[ReadinessMsg], msg: ReadinessMsg,
        ) -> Behavior[ReadinessMsg]:
            match msg:
                case CancelReadiness(reason=reason):
                    return dead(ProvisioningCancelled(resource.name, reason))
                case _PollFailed(error=error):
                    return dead(ProvisioningFailed(resource.name, f"instance poll failed: {error}"))
                case _InstancePolled(instance=None):
                    _forget()
                    return dead(ResourceNotFound(
                        resource.name, f"instance {instance_id} not found",
                    ))
                case _InstancePolled(instance=instance) if instance.running:
                    return ready()
                case _InstancePolled(instance=instance) if instance.state == InstanceState.PENDING:
                    if timed_out(start_time):
                        return dead(ReadinessTimeout(
                            resource.name, f"instance still pending after {poll_timeout}s",
                        ))
                    return pending(ctx, instance_id, start_time, poll_interval)
                case _InstancePolled(instance=instance):
                    return dead(ProvisioningFailed(
                        resource.name, f"instance {instance.id} is {instance.state}",
                    ))
            return Behaviors.same()

        return Behaviors.receive(receive)

    def ready() -> Behavior[ReadinessMsg]:
        advance(Phase.RUNNING)
        if resource.stop_on_terminate:
            try:
                if registry.reconnect(resource):
                    log.info("Reconnected {name}", name=resource.name)
            except Exception as e:
                log.warning("Reconnect of {name} failed: {err}", name=resource.name, err=e)

        if resource.launched_at is not None:
            elapsed = datetime.now(UTC) - resource.launched_at
            log.info(
                "{name} moved to running after {ms}ms",
                name=resource.name, ms=int(elapsed.total_seconds() * 1000),
            )
        advance(Phase.READY)
        if not result.done():
            result.set_result(resource)
        if parent is not None:
            parent.tell(NodeReady(resource=resource))
        return Behaviors.stopped()

    def dead(error: ProvisioningFailed) -> Behavior[ReadinessMsg]:
        advance(Phase.DEAD)
        log.warning("Node is dead: {reason}", reason=error.reason)
        if not result.done():
            result.set_exception(error)
        if parent is not None:
            parent.tell(NodeDead(resource=resource, reason=error.reason))
        return Behaviors.stopped()

    def _forget() -> None:
        try:
            registry.remove(resource)
        except Exception as e:
            log.debug("Node {name} already gone from registry: {err}", name=resource.name, err=e)

    return start()
