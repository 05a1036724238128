"""DI modules binding per-cloud configuration.

Usage:
    injector = Injector([Ec2Module(), CloudConfigModule(config)])
    factory = injector.get(EC2ClientFactory)
"""

from __future__ import annotations

from injector import Binder, Module

from skyfleet.cloud.config import CloudConfig


class CloudConfigModule(Module):
    """Binds the ``CloudConfig`` a fleet is built from."""

    def __init__(self, config: CloudConfig) -> None:
        self._config = config

    def configure(self, binder: Binder) -> None:
        binder.bind(CloudConfig, to=self._config)


__all__ = [
    "CloudConfigModule",
]
