"""ec2agents: provision ephemeral build agents on EC2 and bootstrap them over SSH.

Example:
    from ec2agents import build_orchestrator, resolve_cloud

    cloud = resolve_cloud("main")
    orchestrator = build_orchestrator(cloud)
    results = await orchestrator.provision(cloud.template("linux"), 3)
"""

from .bootstrap import BootstrapSettings, BootstrapStateMachine, RemoteCommandRunner
from .capacity import CapacityAccountant
from .config import load_config, resolve_cloud
from .exceptions import (
    AgentLaunchFailed,
    BootstrapCancelled,
    BootstrapError,
    CleanupWarning,
    CommandTimeout,
    ConfigurationError,
    Ec2AgentsError,
    HostKeyRejected,
    InstanceTerminated,
    PrerequisiteInstallFailed,
    ProviderError,
    SSHUnreachable,
    StagingFailed,
    TrustViolation,
    Unreachable,
)
from .infra import CredentialStaging, SSHTransport
from .module import CloudModule, build_orchestrator
from .observability import LogConfig, setup_logging, teardown_logging
from .orchestrator import ProvisioningOrchestrator
from .providers import Provider
from .providers.aws import EC2Cloud, EC2Provider
from .registry import NodeRegistry
from .types import (
    BootstrapOutcome,
    BootstrapState,
    CapacityCount,
    ConnectionStrategy,
    HostKeyVerification,
    InstanceHandle,
    InstanceState,
    KnownNode,
    MarketType,
    ProvisionResult,
    SpotRequest,
    SpotRequestState,
    Template,
)

__all__ = [
    "AgentLaunchFailed",
    "BootstrapCancelled",
    "BootstrapError",
    "BootstrapOutcome",
    "BootstrapSettings",
    "BootstrapState",
    "BootstrapStateMachine",
    "CapacityAccountant",
    "CapacityCount",
    "CleanupWarning",
    "CloudModule",
    "CommandTimeout",
    "ConfigurationError",
    "ConnectionStrategy",
    "CredentialStaging",
    "EC2Cloud",
    "EC2Provider",
    "Ec2AgentsError",
    "HostKeyRejected",
    "HostKeyVerification",
    "InstanceHandle",
    "InstanceState",
    "InstanceTerminated",
    "KnownNode",
    "LogConfig",
    "MarketType",
    "NodeRegistry",
    "PrerequisiteInstallFailed",
    "Provider",
    "ProviderError",
    "ProvisionResult",
    "ProvisioningOrchestrator",
    "RemoteCommandRunner",
    "SSHTransport",
    "SSHUnreachable",
    "SpotRequest",
    "SpotRequestState",
    "StagingFailed",
    "Template",
    "TrustViolation",
    "Unreachable",
    "build_orchestrator",
    "load_config",
    "resolve_cloud",
    "setup_logging",
    "teardown_logging",
]
