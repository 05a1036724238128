"""EC2 client factories with dependency injection.

The factory hands out async context managers; ``Ec2Connection`` keeps one
client open for the lifetime of a fleet so that accounting and polling share
it.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from typing import Any

import aioboto3
from botocore.config import Config
from injector import Module, provider, singleton
from loguru import logger

from .config import CloudConfig

log = logger.bind(component="ec2-clients")


class EC2ClientFactory:
    """Wrapper for EC2 client factory."""

    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class Ec2Module(Module):
    """DI module that provides the EC2 client factory.

    Usage:
        >>> from injector import Injector
        >>> from skyfleet.module import CloudConfigModule
        >>> injector = Injector([Ec2Module(), CloudConfigModule(CloudConfig(region="eu-west-1"))])
        >>> async with injector.get(EC2ClientFactory)() as ec2:
        ...     await ec2.describe_instances()
    """

    @singleton
    @provider
    def provide_session(self, config: CloudConfig) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session(profile_name=config.profile)

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: CloudConfig) -> EC2ClientFactory:
        """Provide EC2 client factory."""
        client_config = Config(
            retries={"max_attempts": config.max_error_retry, "mode": "standard"},
            signature_version="v4",
        )

        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            async with session.client(
                "ec2",
                region_name=config.region,
                endpoint_url=config.endpoint_url,
                config=client_config,
            ) as client:
                yield client
        return EC2ClientFactory(factory)


class Ec2Connection:
    """Lazily opened, shared EC2 client.

    The client is created on first ``get()`` and reused until ``reset()`` or
    ``close()``.
    """

    def __init__(self, factory: EC2ClientFactory) -> None:
        self._factory = factory
        self._stack: AsyncExitStack | None = None
        self._client: Any = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def get(self) -> Any:
        if self._client is not None:
            return self._client
        async with self._lock:
            if self._client is None:
                stack = AsyncExitStack()
                self._client = await stack.enter_async_context(self._factory())
                self._stack = stack
                log.debug("EC2 client opened")
        return self._client

    async def reset(self) -> None:
        """Drop the current client; the next ``get()`` opens a new one."""
        async with self._lock:
            stack, self._stack, self._client = self._stack, None, None
        if stack is not None:
            await stack.aclose()
            log.debug("EC2 client closed")

    async def close(self) -> None:
        await self.reset()


__all__ = [
    "EC2ClientFactory",
    "Ec2Connection",
    "Ec2Module",
]
