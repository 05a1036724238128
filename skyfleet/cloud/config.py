"""EC2 cloud configuration.

Immutable configuration for one cloud account: where to connect, the global
instance cap and the templates that may be launched.
"""

from __future__ import annotations

import typing
from dataclasses import dataclass

from skyfleet.constants import (
    AWS_URL_HOST,
    DEFAULT_REGION,
    DESCRIBE_ATTEMPTS,
    MAX_ERROR_RETRY,
    POLL_INTERVAL,
    READINESS_TIMEOUT,
    UNBOUNDED,
)
from skyfleet.model import Label, Template, format_instance_cap

if typing.TYPE_CHECKING:
    from casty import ActorSystem

    from skyfleet.fleet import Fleet
    from skyfleet.registry import NodeRegistry


def convert_host_name(host: str | None) -> str:
    """Turn a bare region like ``us-east-1`` into the EC2 endpoint host."""
    if not host:
        host = DEFAULT_REGION
    if "." not in host:
        host = f"ec2.{host}.{AWS_URL_HOST}"
    return host


def convert_port(port: str | None) -> int:
    """``-1`` means the default port for the scheme."""
    if not port:
        return -1
    return int(port)


@dataclass(frozen=True, slots=True)
class CloudConfig:
    """Configuration of one EC2 cloud account.

    Example:
        >>> from skyfleet import CloudConfig, Template
        >>> config = CloudConfig(
        ...     name="ci",
        ...     instance_cap=10,
        ...     templates=(Template(description="linux", image_id="ami-123"),),
        ... )

    Args:
        name: Name of the cloud, used in logs.
        region: AWS region.
        endpoint: Custom EC2 endpoint (host, region or URL). ``None`` uses
            the regional default.
        instance_cap: Max live resources across all templates.
        server_url: Identity written to and matched against the server tag.
            ``None`` disables per-server counting.
        templates: Launchable templates, in label matching order.
        profile: AWS credentials profile. ``None`` uses the default chain.
        poll_interval: Seconds between readiness polls.
        readiness_timeout: Seconds before an unready node is declared dead.
            ``None`` waits forever.
        max_error_retry: botocore retry attempts per call.
        describe_attempts: Attempts for a single instance describe.
    """

    name: str = "ec2"
    region: str = DEFAULT_REGION
    endpoint: str | None = None
    instance_cap: int = UNBOUNDED
    server_url: str | None = None
    templates: tuple[Template, ...] = ()
    profile: str | None = None
    poll_interval: float = POLL_INTERVAL
    readiness_timeout: float | None = READINESS_TIMEOUT
    max_error_retry: int = MAX_ERROR_RETRY
    describe_attempts: int = DESCRIBE_ATTEMPTS

    @property
    def type(self) -> str: return "ec2"

    @property
    def instance_cap_str(self) -> str:
        return format_instance_cap(self.instance_cap)

    @property
    def endpoint_url(self) -> str | None:
        if self.endpoint is None:
            return None
        if "://" in self.endpoint:
            return self.endpoint
        return f"https://{convert_host_name(self.endpoint)}"

    def get_template(self, description: str) -> Template | None:
        for t in self.templates:
            if t.description == description:
                return t
        return None

    def get_template_for_label(self, label: Label | None) -> Template | None:
        for t in self.templates:
            if t.matches(label):
                return t
        return None

    async def create_fleet(self, registry: NodeRegistry, system: ActorSystem) -> Fleet:
        from skyfleet.fleet import Fleet
        return Fleet.create(self, registry, system)
