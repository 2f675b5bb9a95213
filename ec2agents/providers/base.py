"""Provider contract consumed by the capacity accountant and orchestrator."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from ec2agents.types import InstanceHandle, SpotRequest, SpotRequestState, Template


@runtime_checkable
class Provider(Protocol):
    """Cloud API the core depends on.

    Implementations raise ``ProviderError`` for any failed call.
    """

    @property
    def supports_batch(self) -> bool:
        """Whether ``create_instances`` can launch many instances in one call."""
        ...

    async def create_instances(self, template: Template, count: int) -> Sequence[InstanceHandle]:
        """Launch up to ``count`` instances. May return fewer."""
        ...

    async def describe_instances(self, tags: Mapping[str, str]) -> Sequence[InstanceHandle]:
        """Non-terminated instances carrying all ``tags``."""
        ...

    async def refresh(self, handle: InstanceHandle) -> InstanceHandle | None:
        """Re-read one instance. None when the provider no longer knows it."""
        ...

    async def describe_spot_request(self, request_id: str) -> SpotRequestState | None:
        """State of one spot request. None when it cannot be determined."""
        ...

    async def describe_spot_requests(self, tags: Mapping[str, str]) -> Sequence[SpotRequest]:
        """Open or active spot requests carrying all ``tags``."""
        ...

    async def terminate(self, handle: InstanceHandle) -> None: ...
