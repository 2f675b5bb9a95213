"""Provisioning orchestrator.

Turns "N more agents of template T" into running agents:

    count capacity → clamp → create instances → register nodes
    → per instance: wait for running → bootstrap (with retries)

Instances are brought up concurrently. One instance failing never affects
its siblings, and failed instances are left for the external lifecycle
manager to reap.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol, TypeAlias

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from ec2agents.capacity import CapacityAccountant
from ec2agents.constants import UNLIMITED_CAP
from ec2agents.exceptions import (
    BootstrapCancelled,
    BootstrapError,
    InstanceTerminated,
    ProviderError,
    Unreachable,
)
from ec2agents.providers.base import Provider
from ec2agents.registry import NodeRegistry
from ec2agents.types import (
    BootstrapOutcome,
    BootstrapState,
    InstanceHandle,
    InstanceState,
    KnownNode,
    ProvisionResult,
    Template,
)

log = logger.bind(component="orchestrator")


StateListener: TypeAlias = Callable[[BootstrapState], None]


class Bootstrapper(Protocol):
    async def run(
        self, handle: InstanceHandle, *, on_state: StateListener | None = None,
    ) -> BootstrapOutcome: ...


BootstrapperFactory: TypeAlias = Callable[[Template], Bootstrapper]


class _NotRunningYet(Exception):
    """Instance still pending or not yet visible - poll again."""


def _is_retryable(e: BaseException) -> bool:
    return isinstance(e, BootstrapError) and e.retryable


def node_name(template: Template, handle: InstanceHandle) -> str:
    return f"{template.name} ({handle.instance_id})"


class ProvisioningOrchestrator:
    """Provisions and bootstraps agents for the templates of one cloud.

    Args:
        provider: Cloud API.
        accountant: Capacity counting against the provider's live view.
        registry: Known nodes. New instances are registered here.
        bootstrapper: Builds the bootstrapper for a template.
        cloud_cap: Maximum instances across every template.
        bootstrap_attempts: Whole-bootstrap attempts for retryable failures.
        running_timeout: How long to wait for an instance to reach running.
        poll_interval: Provider polling interval while waiting.
        retry_delay: Pause between bootstrap attempts.
    """

    def __init__(
        self,
        provider: Provider,
        accountant: CapacityAccountant,
        registry: NodeRegistry,
        bootstrapper: BootstrapperFactory,
        *,
        cloud_cap: int = UNLIMITED_CAP,
        bootstrap_attempts: int = 2,
        running_timeout: float = 600.0,
        poll_interval: float = 5.0,
        retry_delay: float = 5.0,
    ) -> None:
        self._provider = provider
        self._accountant = accountant
        self._registry = registry
        self._bootstrapper_factory = bootstrapper
        self._bootstrappers: dict[str, Bootstrapper] = {}
        self.cloud_cap = cloud_cap
        self.bootstrap_attempts = max(1, bootstrap_attempts)
        self.running_timeout = running_timeout
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self._tasks: dict[str, asyncio.Task[ProvisionResult]] = {}
        self._cancelled: set[str] = set()
        self._progress: dict[str, BootstrapState] = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def provision(self, template: Template, desired: int) -> list[ProvisionResult]:
        """Provision up to ``desired`` agents of ``template``.

        Returns one result per attempted slot, in creation order. Slots the
        provider never filled carry a ``ProviderError`` and no handle.

        Raises:
            ProviderError: Capacity could not be counted. Nothing was created.
            asyncio.CancelledError: Provisioning was cancelled. In-flight
                bootstraps are cancelled and have cleaned up.
        """
        n = await self.allowance(template, desired)
        if n == 0:
            return []

        handles, unfulfilled = await self._create(template, n)
        for handle in handles:
            self._registry.register(KnownNode(
                name=node_name(template, handle),
                template=template.name,
                instance_id=handle.instance_id,
                market=template.market,
                spot_request_id=handle.spot_request_id,
            ))

        results = await self._bring_up_all(template, handles)
        results.extend(
            ProvisionResult(handle=None, ok=False, state=BootstrapState.FAILED, error=e)
            for e in unfulfilled
        )

        ok = sum(1 for r in results if r.ok)
        log.info(
            "Provisioned {ok}/{n} agents of {name}",
            ok=ok, n=n, name=template.name,
        )
        return results

    async def allowance(self, template: Template, desired: int) -> int:
        """Number of instances that may be created right now, zero at cap."""
        if desired <= 0:
            return 0

        template_count, cloud_count = await asyncio.gather(
            self._accountant.count(template),
            self._accountant.count_cloud(),
        )
        n = max(0, min(
            desired,
            template.instance_cap - template_count.total,
            self.cloud_cap - cloud_count.total,
        ))
        if n < desired:
            log.info(
                "Template {name} capped: {n}/{desired} allowed "
                "(template {t_total}/{t_cap}, cloud {c_total}/{c_cap})",
                name=template.name, n=n, desired=desired,
                t_total=template_count.total, t_cap=template.instance_cap,
                c_total=cloud_count.total, c_cap=self.cloud_cap,
            )
        return n

    def cancel(self, instance_id: str) -> bool:
        """Interrupt the in-flight bootstrap of one instance.

        Returns False when no bootstrap is running for ``instance_id``.
        """
        task = self._tasks.get(instance_id)
        if task is None or task.done():
            return False
        log.info("Cancelling bootstrap of {iid}", iid=instance_id)
        self._cancelled.add(instance_id)
        task.cancel()
        return True

    def bootstrapper_for(self, template: Template) -> Bootstrapper:
        if template.name not in self._bootstrappers:
            self._bootstrappers[template.name] = self._bootstrapper_factory(template)
        return self._bootstrappers[template.name]

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def _create(
        self, template: Template, n: int,
    ) -> tuple[list[InstanceHandle], list[ProviderError]]:
        if not self._provider.supports_batch:
            return await self._create_each(template, n)

        handles: list[InstanceHandle] = []
        size = n
        while len(handles) < n:
            size = min(size, n - len(handles))
            try:
                created = list(await self._provider.create_instances(template, size))
            except ProviderError as e:
                if size == 1:
                    log.error("Create failed for {name}: {err}", name=template.name, err=e)
                    return handles, [e] * (n - len(handles))
                size //= 2
                log.warning(
                    "Batch create of {name} failed, retrying with {size}: {err}",
                    name=template.name, size=size, err=e,
                )
                continue

            handles.extend(created)
            if len(created) < size:
                shortfall = ProviderError(
                    f"Provider launched {len(created)} of {size} requested instances",
                )
                log.warning("{err}", err=shortfall)
                return handles, [shortfall] * (n - len(handles))
        return handles, []

    async def _create_each(
        self, template: Template, n: int,
    ) -> tuple[list[InstanceHandle], list[ProviderError]]:
        handles: list[InstanceHandle] = []
        errors: list[ProviderError] = []
        for _ in range(n):
            try:
                created = list(await self._provider.create_instances(template, 1))
            except ProviderError as e:
                log.error("Create failed for {name}: {err}", name=template.name, err=e)
                errors.append(e)
                continue
            if not created:
                errors.append(ProviderError("Provider launched no instance"))
            handles.extend(created)
        return handles, errors

    # -------------------------------------------------------------------------
    # Bring-up
    # -------------------------------------------------------------------------

    async def _bring_up_all(
        self, template: Template, handles: list[InstanceHandle],
    ) -> list[ProvisionResult]:
        bootstrapper = self.bootstrapper_for(template)
        tasks = {
            h.instance_id: asyncio.create_task(
                self._bring_up(bootstrapper, h), name=f"bootstrap-{h.instance_id}",
            )
            for h in handles
        }
        self._tasks.update(tasks)
        try:
            # Cancelling this gather cancels every child and waits for its cleanup.
            raw = await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            cancelled = self._cancelled & tasks.keys()
            self._cancelled -= cancelled
            reached = {iid: self._progress.pop(iid, BootstrapState.CONNECTING) for iid in tasks}
            for iid in tasks:
                self._tasks.pop(iid, None)

        results: list[ProvisionResult] = []
        for handle, r in zip(handles, raw, strict=True):
            iid = handle.instance_id
            match r:
                case ProvisionResult():
                    results.append(r)
                case asyncio.CancelledError() if iid in cancelled:
                    state = reached[iid]
                    results.append(ProvisionResult(
                        handle=handle, ok=False, state=state,
                        error=BootstrapCancelled(iid, state, "cancelled by request"),
                    ))
                case Exception():
                    log.opt(exception=r).error("Bring-up of {iid} crashed", iid=iid)
                    results.append(ProvisionResult(
                        handle=handle, ok=False, state=BootstrapState.FAILED, error=r,
                    ))
                case _:
                    raise r
        return results

    async def _bring_up(self, bootstrapper: Bootstrapper, handle: InstanceHandle) -> ProvisionResult:
        iid = handle.instance_id
        try:
            running = await self._wait_running(handle)
            outcome = await self._bootstrap(bootstrapper, running)
        except BootstrapError as e:
            return ProvisionResult(
                handle=handle, ok=False, state=BootstrapState(e.state), error=e,
            )
        except ProviderError as e:
            log.error("Provider failed while bringing up {iid}: {err}", iid=iid, err=e)
            return ProvisionResult(
                handle=handle, ok=False, state=BootstrapState.CONNECTING, error=e,
            )
        return ProvisionResult(handle=running, ok=True, outcome=outcome)

    async def _wait_running(self, handle: InstanceHandle) -> InstanceHandle:
        if handle.state is InstanceState.RUNNING:
            return handle

        iid = handle.instance_id
        log.debug("Waiting for {iid} to reach running", iid=iid)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.running_timeout),
                wait=wait_fixed(self.poll_interval),
                retry=retry_if_exception_type(_NotRunningYet),
                reraise=True,
            ):
                with attempt:
                    current = await self._provider.refresh(handle)
                    if current is None:
                        raise _NotRunningYet(f"{iid} not visible yet")
                    if current.state.is_gone:
                        raise InstanceTerminated(
                            iid, BootstrapState.CONNECTING, f"instance is {current.state}",
                        )
                    if current.state is not InstanceState.RUNNING:
                        raise _NotRunningYet(f"{iid} is {current.state}")
                    return current
        except _NotRunningYet as e:
            raise Unreachable(
                iid, BootstrapState.CONNECTING,
                f"not running after {self.running_timeout:.0f}s: {e}", retryable=False,
            ) from e
        raise AssertionError("unreachable")

    async def _bootstrap(self, bootstrapper: Bootstrapper, handle: InstanceHandle) -> BootstrapOutcome:
        iid = handle.instance_id

        def track(state: BootstrapState) -> None:
            self._progress[iid] = state

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.bootstrap_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                n = attempt.retry_state.attempt_number
                if n > 1:
                    log.warning(
                        "Retrying bootstrap of {iid} (attempt {n}/{total})",
                        iid=iid, n=n, total=self.bootstrap_attempts,
                    )
                return await bootstrapper.run(handle, on_state=track)
        raise AssertionError("unreachable")


__all__ = [
    "Bootstrapper",
    "BootstrapperFactory",
    "ProvisioningOrchestrator",
    "StateListener",
    "node_name",
]
