"""EC2 access for skyfleet.

Example:
    from skyfleet.cloud import CloudConfig

    config = CloudConfig(region="eu-west-1", instance_cap=10)
"""

from skyfleet.cloud.api import CloudApi, Ec2Api
from skyfleet.cloud.clients import EC2ClientFactory, Ec2Connection, Ec2Module
from skyfleet.cloud.config import CloudConfig
from skyfleet.cloud.launcher import Ec2Launcher, Launcher

__all__ = [
    "CloudApi",
    "CloudConfig",
    "EC2ClientFactory",
    "Ec2Api",
    "Ec2Connection",
    "Ec2Launcher",
    "Ec2Module",
    "Launcher",
]
