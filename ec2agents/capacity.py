"""Capacity accounting per template and per cloud.

Counts instances that exist plus capacity that is on its way: nodes the
controller registered whose instance the provider does not report yet,
and spot requests that have not materialized. Whenever it is unclear
whether a spot slot is real, it is counted. Overcounting only delays
provisioning; undercounting breaks the instance cap.
"""

from __future__ import annotations

from collections.abc import Mapping

from loguru import logger

from ec2agents.constants import AgentTag
from ec2agents.providers.base import Provider
from ec2agents.registry import NodeRegistry
from ec2agents.types import CapacityCount, KnownNode, Template

log = logger.bind(component="capacity")


class CapacityAccountant:
    """Counts existing and in-flight agents against the provider's live view.

    Reads are snapshots; nothing is locked. A node created concurrently
    between a count and the provider's create call may be missed.
    """

    def __init__(self, provider: Provider, registry: NodeRegistry) -> None:
        self._provider = provider
        self._registry = registry

    async def count(self, template: Template) -> CapacityCount:
        """Effective number of agents for ``template``.

        Raises:
            ProviderError: A describe call failed.
        """
        result = await self._count(template.identity_tags, self._registry.nodes(template.name))
        log.debug(
            "Template {name}: {existing} existing, {in_flight} in flight",
            name=template.name, existing=result.existing, in_flight=result.in_flight,
        )
        return result

    async def count_cloud(self) -> CapacityCount:
        """Effective number of agents across every template of this cloud."""
        return await self._count({AgentTag.MANAGED: "true"}, self._registry.nodes())

    async def _count(self, tags: Mapping[str, str], nodes: list[KnownNode]) -> CapacityCount:
        instances = await self._provider.describe_instances(tags)
        existing = {i.instance_id for i in instances if not i.state.is_gone}
        seen = {i.instance_id for i in instances}
        counted_requests = {i.spot_request_id for i in instances if i.spot_request_id}

        in_flight = 0
        for node in nodes:
            if node.instance_id is not None and node.instance_id in seen:
                continue
            if await self._node_in_flight(node):
                in_flight += 1
                if node.spot_request_id:
                    counted_requests.add(node.spot_request_id)

        for request in await self._provider.describe_spot_requests(tags):
            if request.request_id in counted_requests:
                continue
            if request.instance_id is not None and request.instance_id in existing:
                continue
            if request.state.is_live:
                in_flight += 1
                counted_requests.add(request.request_id)

        return CapacityCount(existing=len(existing), in_flight=in_flight)

    async def _node_in_flight(self, node: KnownNode) -> bool:
        if not node.is_spot:
            return True
        if node.spot_request_id is None:
            # Request just submitted and the provider has not echoed an id yet.
            return True
        state = await self._provider.describe_spot_request(node.spot_request_id)
        return state is None or state.is_live
