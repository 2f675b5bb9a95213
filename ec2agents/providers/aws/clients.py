"""AWS client factories with dependency injection.

Provides a typed EC2 client factory that is injected into the provider
instead of being reached through a global.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import aioboto3
from injector import Module, provider, singleton
from loguru import logger

from ec2agents.constants import DEFAULT_REGION

from .config import EC2Cloud
from .endpoints import cloud_endpoint_url

# =============================================================================
# Wrapper Classes for DI (each needs a unique type)
# =============================================================================


class EC2ClientFactory:
    """Wrapper for EC2 client factory."""

    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


async def _assume_role(session: aioboto3.Session, cloud: EC2Cloud) -> dict[str, str]:
    async with session.client("sts", region_name=cloud.region or DEFAULT_REGION) as sts:
        resp = await sts.assume_role(
            RoleArn=cloud.role_arn,
            RoleSessionName=cloud.role_session_name or f"ec2agents-{cloud.name}",
        )
    creds = resp["Credentials"]
    logger.debug("Assumed role {arn} for cloud {cloud}", arn=cloud.role_arn, cloud=cloud.name)
    return {
        "aws_access_key_id": creds["AccessKeyId"],
        "aws_secret_access_key": creds["SecretAccessKey"],
        "aws_session_token": creds["SessionToken"],
    }


# =============================================================================
# AWS Module
# =============================================================================


class AWSModule(Module):
    """DI module that provides the EC2 client factory for a cloud.

    Usage:
        >>> from injector import Injector
        >>> injector = Injector([AWSModule()])
        >>> injector.binder.bind(EC2Cloud, to=EC2Cloud(name="main", region="us-east-1"))
        >>> ec2 = injector.get(EC2ClientFactory)
        >>> async with ec2() as client:
        ...     await client.describe_instances()
    """

    @singleton
    @provider
    def provide_session(self, cloud: EC2Cloud) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session(profile_name=cloud.profile)

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, cloud: EC2Cloud) -> EC2ClientFactory:
        """Provide EC2 client factory."""
        endpoint_url = cloud_endpoint_url(cloud.endpoint, cloud.region)

        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            credentials = await _assume_role(session, cloud) if cloud.role_arn else {}
            async with session.client(
                "ec2",
                region_name=cloud.region or DEFAULT_REGION,
                endpoint_url=endpoint_url,
                **credentials,
            ) as client:
                yield client

        return EC2ClientFactory(factory)


__all__ = [
    "AWSModule",
    "EC2ClientFactory",
]
