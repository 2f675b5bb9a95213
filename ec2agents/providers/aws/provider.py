"""EC2 provider: launch, describe and terminate agent instances."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from types import MappingProxyType
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from injector import inject
from loguru import logger

from ec2agents.constants import (
    DEFAULT_INSTANCE_NAME,
    SSH_HOST_KEY_BEGIN,
    SSH_HOST_KEY_END,
    AgentTag,
)
from ec2agents.exceptions import ProviderError
from ec2agents.types import (
    InstanceHandle,
    InstanceState,
    MarketType,
    SpotRequest,
    SpotRequestState,
    Template,
)

from .clients import EC2ClientFactory

log = logger.bind(component="ec2")

_LIVE_STATES = ["pending", "running", "stopping", "stopped"]
_HOST_KEY_PREFERENCE = ("ssh-ed25519", "ecdsa-sha2-nistp256", "ssh-rsa")


def _tag_filters(tags: Mapping[str, str]) -> list[dict[str, Any]]:
    return [{"Name": f"tag:{k}", "Values": [v]} for k, v in tags.items()]


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def parse_console_host_keys(output: str) -> list[str]:
    """Extract ``"<type> <base64>"`` host keys printed by cloud-init on the console."""
    keys: list[str] = []
    inside = False
    for line in output.splitlines():
        line = line.strip()
        if line == SSH_HOST_KEY_BEGIN:
            inside = True
        elif line == SSH_HOST_KEY_END:
            inside = False
        elif inside and line:
            parts = line.split()
            if len(parts) >= 2:
                keys.append(f"{parts[0]} {parts[1]}")
    return keys


def _to_handle(raw: dict[str, Any], market: MarketType | None = None) -> InstanceHandle:
    if market is None:
        market = MarketType.SPOT if raw.get("InstanceLifecycle") == "spot" else MarketType.ON_DEMAND
    return InstanceHandle(
        instance_id=raw["InstanceId"],
        state=InstanceState(raw.get("State", {}).get("Name", "pending")),
        market=market,
        spot_request_id=raw.get("SpotInstanceRequestId"),
        public_ip=raw.get("PublicIpAddress"),
        private_ip=raw.get("PrivateIpAddress"),
        public_dns=raw.get("PublicDnsName") or None,
        private_dns=raw.get("PrivateDnsName") or None,
        tags=MappingProxyType({t["Key"]: t["Value"] for t in raw.get("Tags", [])}),
    )


class EC2Provider:
    """Provider backed by the EC2 API through an injected client factory."""

    supports_batch = True

    @inject
    def __init__(self, ec2: EC2ClientFactory) -> None:
        self._ec2 = ec2

    @asynccontextmanager
    async def _client(self, operation: str) -> AsyncIterator[Any]:
        try:
            async with self._ec2() as client:
                yield client
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"EC2 {operation} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Launch
    # -------------------------------------------------------------------------

    def run_params(self, template: Template, count: int) -> dict[str, Any]:
        tags = [
            {"Key": k, "Value": v}
            for k, v in {
                "Name": f"{DEFAULT_INSTANCE_NAME}-{template.name}",
                **template.identity_tags,
                AgentTag.MARKET: str(template.market),
            }.items()
        ]
        params: dict[str, Any] = {
            "ImageId": template.ami,
            "InstanceType": template.instance_type,
            "MinCount": 1,
            "MaxCount": count,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if template.key_name:
            params["KeyName"] = template.key_name
        if template.security_groups:
            params["SecurityGroupIds"] = list(template.security_groups)
        if template.subnet_id:
            params["SubnetId"] = template.subnet_id
        if template.user_data:
            params["UserData"] = template.user_data
        if template.is_spot:
            params["InstanceMarketOptions"] = {
                "MarketType": "spot",
                "SpotOptions": {
                    "SpotInstanceType": "one-time",
                    "InstanceInterruptionBehavior": "terminate",
                },
            }
            params["TagSpecifications"].append(
                {"ResourceType": "spot-instances-request", "Tags": tags},
            )
        return params

    async def create_instances(self, template: Template, count: int) -> list[InstanceHandle]:
        async with self._client("RunInstances") as client:
            resp = await client.run_instances(**self.run_params(template, count))

        handles = [_to_handle(raw, template.market) for raw in resp.get("Instances", [])]
        log.info(
            "Launched {n}/{count} {market} instances of {name}: {ids}",
            n=len(handles), count=count, market=template.market, name=template.name,
            ids=", ".join(h.instance_id for h in handles),
        )
        return handles

    # -------------------------------------------------------------------------
    # Describe
    # -------------------------------------------------------------------------

    async def describe_instances(self, tags: Mapping[str, str]) -> list[InstanceHandle]:
        filters = [*_tag_filters(tags), {"Name": "instance-state-name", "Values": _LIVE_STATES}]
        handles: list[InstanceHandle] = []
        async with self._client("DescribeInstances") as client:
            paginator = client.get_paginator("describe_instances")
            async for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    handles.extend(_to_handle(raw) for raw in reservation.get("Instances", []))
        return handles

    async def refresh(self, handle: InstanceHandle) -> InstanceHandle | None:
        try:
            async with self._ec2() as client:
                resp = await client.describe_instances(InstanceIds=[handle.instance_id])
        except ClientError as e:
            # Freshly launched instances are not always visible yet.
            if _error_code(e) == "InvalidInstanceID.NotFound":
                return None
            raise ProviderError(f"EC2 DescribeInstances failed: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"EC2 DescribeInstances failed: {e}") from e

        for reservation in resp.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                return _to_handle(raw, handle.market)
        return None

    async def describe_spot_request(self, request_id: str) -> SpotRequestState | None:
        try:
            async with self._ec2() as client:
                resp = await client.describe_spot_instance_requests(
                    SpotInstanceRequestIds=[request_id],
                )
        except ClientError as e:
            if _error_code(e) == "InvalidSpotInstanceRequestID.NotFound":
                return None
            raise ProviderError(f"EC2 DescribeSpotInstanceRequests failed: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"EC2 DescribeSpotInstanceRequests failed: {e}") from e

        for raw in resp.get("SpotInstanceRequests", []):
            return SpotRequestState(raw["State"])
        return None

    async def describe_spot_requests(self, tags: Mapping[str, str]) -> list[SpotRequest]:
        filters = [*_tag_filters(tags), {"Name": "state", "Values": ["open", "active"]}]
        requests: list[SpotRequest] = []
        async with self._client("DescribeSpotInstanceRequests") as client:
            paginator = client.get_paginator("describe_spot_instance_requests")
            async for page in paginator.paginate(Filters=filters):
                requests.extend(
                    SpotRequest(
                        request_id=raw["SpotInstanceRequestId"],
                        state=SpotRequestState(raw["State"]),
                        instance_id=raw.get("InstanceId"),
                    )
                    for raw in page.get("SpotInstanceRequests", [])
                )
        return requests

    async def console_host_key(self, handle: InstanceHandle) -> str | None:
        """Host key published on the instance console, strongest algorithm first."""
        async with self._client("GetConsoleOutput") as client:
            resp = await client.get_console_output(InstanceId=handle.instance_id)

        keys = parse_console_host_keys(resp.get("Output") or "")
        for key_type in _HOST_KEY_PREFERENCE:
            for key in keys:
                if key.startswith(f"{key_type} "):
                    return key
        return keys[0] if keys else None

    # -------------------------------------------------------------------------
    # Terminate
    # -------------------------------------------------------------------------

    async def terminate(self, handle: InstanceHandle) -> None:
        async with self._client("TerminateInstances") as client:
            await client.terminate_instances(InstanceIds=[handle.instance_id])
        log.info("Terminated {iid}", iid=handle.instance_id)


__all__ = [
    "EC2Provider",
    "parse_console_host_keys",
]
