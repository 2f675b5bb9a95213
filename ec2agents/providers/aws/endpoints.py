"""Partition-aware EC2 endpoint resolution."""

from __future__ import annotations

from urllib.parse import urlparse

from ec2agents.constants import (
    AWS_CHINA_DOMAIN,
    AWS_DOMAIN,
    CHINA_REGION_PREFIX,
    DEFAULT_EC2_ENDPOINT,
)
from ec2agents.exceptions import ConfigurationError


def partition_host_for_service(region: str, service: str) -> str:
    """Host name of ``service`` in ``region``, honoring the China partition.

    >>> partition_host_for_service("cn-northwest-1", "ec2")
    'ec2.cn-northwest-1.amazonaws.com.cn'
    >>> partition_host_for_service("us-east-1", "s3")
    's3.us-east-1.amazonaws.com'
    """
    domain = AWS_CHINA_DOMAIN if region.startswith(CHINA_REGION_PREFIX) else AWS_DOMAIN
    return f"{service}.{region}.{domain}"


def region_endpoint_url(region: str) -> str:
    return f"https://{partition_host_for_service(region, 'ec2')}/"


def determine_endpoint_url(endpoint: str | None) -> str:
    """Resolve the configured EC2 endpoint.

    Empty or missing configuration falls back to ``DEFAULT_EC2_ENDPOINT``.
    A custom value is returned verbatim once it parses as an absolute URL.

    Raises:
        ConfigurationError: The custom value is not a well-formed URL.
    """
    if endpoint is None or not endpoint.strip():
        return DEFAULT_EC2_ENDPOINT

    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"Malformed EC2 endpoint URL: {endpoint!r}")
    return endpoint


def cloud_endpoint_url(endpoint: str | None, region: str | None) -> str:
    """Endpoint a cloud talks to: custom URL, else the region's, else the default."""
    if endpoint and endpoint.strip():
        return determine_endpoint_url(endpoint)
    if region:
        return region_endpoint_url(region)
    return DEFAULT_EC2_ENDPOINT
