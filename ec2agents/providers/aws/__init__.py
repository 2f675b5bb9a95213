"""Amazon EC2 provider."""

from .clients import AWSModule, EC2ClientFactory
from .config import EC2Cloud, format_instance_cap, parse_instance_cap
from .endpoints import (
    cloud_endpoint_url,
    determine_endpoint_url,
    partition_host_for_service,
    region_endpoint_url,
)
from .provider import EC2Provider, parse_console_host_keys

__all__ = [
    "AWSModule",
    "EC2ClientFactory",
    "EC2Cloud",
    "EC2Provider",
    "cloud_endpoint_url",
    "determine_endpoint_url",
    "format_instance_cap",
    "parse_console_host_keys",
    "parse_instance_cap",
    "partition_host_for_service",
    "region_endpoint_url",
]
