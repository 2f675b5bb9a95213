"""Central DI module for ec2agents.

Provides the dependencies one cloud's orchestrator needs:
- EC2Cloud (configured per cloud)
- Provider (EC2Provider, via AWSModule's client factory)
- NodeRegistry, CapacityAccountant (singletons)
- ProvisioningOrchestrator
"""

from __future__ import annotations

from injector import Binder, Injector, Module, provider, singleton

from .bootstrap import BootstrapStateMachine
from .capacity import CapacityAccountant
from .infra.credentials import CredentialStaging
from .orchestrator import ProvisioningOrchestrator
from .providers.aws import AWSModule, EC2Cloud, EC2Provider
from .providers.base import Provider
from .registry import NodeRegistry
from .types import Template


class CloudModule(Module):
    """Binds one cloud's configuration and builds its orchestrator.

    Usage:
        injector = Injector([CloudModule(cloud), AWSModule()])
        orchestrator = injector.get(ProvisioningOrchestrator)
    """

    def __init__(self, cloud: EC2Cloud, registry: NodeRegistry | None = None) -> None:
        self._cloud = cloud
        self._registry = registry or NodeRegistry()

    def configure(self, binder: Binder) -> None:
        binder.bind(EC2Cloud, to=self._cloud)
        binder.bind(NodeRegistry, to=self._registry)
        binder.bind(EC2Provider, scope=singleton)

    @singleton
    @provider
    def provide_provider(self, ec2: EC2Provider) -> Provider:
        return ec2

    @singleton
    @provider
    def provide_accountant(self, provider: Provider, registry: NodeRegistry) -> CapacityAccountant:
        return CapacityAccountant(provider, registry)

    @singleton
    @provider
    def provide_orchestrator(
        self,
        cloud: EC2Cloud,
        ec2: EC2Provider,
        accountant: CapacityAccountant,
        registry: NodeRegistry,
    ) -> ProvisioningOrchestrator:
        private_key = cloud.load_private_key()
        staging = CredentialStaging()

        def bootstrapper(template: Template) -> BootstrapStateMachine:
            return BootstrapStateMachine(
                template,
                private_key,
                settings=cloud.bootstrap,
                staging=staging,
                host_keys=ec2.console_host_key,
            )

        return ProvisioningOrchestrator(
            ec2,
            accountant,
            registry,
            bootstrapper,
            cloud_cap=cloud.instance_cap,
            bootstrap_attempts=cloud.bootstrap.bootstrap_attempts,
            running_timeout=cloud.bootstrap.running_timeout,
            poll_interval=cloud.bootstrap.poll_interval,
            retry_delay=cloud.bootstrap.retry_delay,
        )


def build_orchestrator(
    cloud: EC2Cloud, registry: NodeRegistry | None = None,
) -> ProvisioningOrchestrator:
    """Wire a ready-to-use orchestrator for ``cloud``.

    Raises:
        ConfigurationError: The cloud has no usable private key or endpoint.
    """
    injector = Injector([CloudModule(cloud, registry), AWSModule()])
    return injector.get(ProvisioningOrchestrator)


__all__ = [
    "CloudModule",
    "build_orchestrator",
]
