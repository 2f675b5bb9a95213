"""Core data model: templates, instance handles and provisioning results."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

from .constants import DEFAULT_JAVA, DEFAULT_SSH_PORT, UNLIMITED_CAP, AgentTag
from .exceptions import Ec2AgentsError

# =============================================================================
# Enums
# =============================================================================


class MarketType(StrEnum):
    ON_DEMAND = "on-demand"
    SPOT = "spot"


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"

    @property
    def is_gone(self) -> bool:
        return self in (InstanceState.SHUTTING_DOWN, InstanceState.TERMINATED)


class SpotRequestState(StrEnum):
    """EC2 spot instance request states."""

    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    DISABLED = "disabled"

    @property
    def is_live(self) -> bool:
        return self in (SpotRequestState.OPEN, SpotRequestState.ACTIVE)


class HostKeyVerification(StrEnum):
    """How the presented SSH host key is trusted."""

    OFF = "off"
    KNOWN_HOSTS = "known-hosts"
    ACCEPT_NEW = "accept-new"
    REQUIRE_EXACT = "require-exact"

    @property
    def ssh_flag(self) -> str:
        """OpenSSH StrictHostKeyChecking equivalent."""
        match self:
            case HostKeyVerification.OFF:
                return "no"
            case HostKeyVerification.ACCEPT_NEW:
                return "accept-new"
            case _:
                return "yes"


class ConnectionStrategy(StrEnum):
    PUBLIC_IP = "public-ip"
    PUBLIC_DNS = "public-dns"
    PRIVATE_IP = "private-ip"
    PRIVATE_DNS = "private-dns"


class BootstrapState(StrEnum):
    CONNECTING = "connecting"
    VERIFYING_HOST = "verifying-host"
    INSTALLING_PREREQS = "installing-prereqs"
    STAGING_FILES = "staging-files"
    MARKING_INIT = "marking-init"
    LAUNCHING_AGENT = "launching-agent"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Template
# =============================================================================


@dataclass(frozen=True, slots=True)
class Template:
    """Immutable description of a desired agent.

    Args:
        name: Template name. Also written as the template tag.
        ami: AMI id to launch.
        instance_type: EC2 instance type.
        remote_admin: SSH login user.
        ssh_port: SSH port on the instance.
        tags: Extra tags applied to the instance and used to find it again.
        host_key_verification: Host key trust policy.
        market: On-demand or spot.
        platform: Operating-system family name (see ``bootstrap.platforms``).
        java_path: Java executable on the instance.
        jvm_options: Extra JVM options for the agent process.
        tmp_dir: Remote working directory. Platform default when None.
        remote_fs: Agent work directory passed to ``-workDir``.
        init_script: Script run once per instance, guarded by the init marker.
        agent_jar: Local path of the agent jar to stage.
        agent_command: Launch command override.
        launch_prefix: Prepended to the launch command.
        launch_suffix: Appended to the launch command.
        connection_strategy: Which instance address SSH connects to.
        instance_cap: Maximum instances of this template.
        key_name: EC2 key pair name.
        security_groups: Security group ids.
        subnet_id: Subnet to launch in.
        user_data: Cloud-init user data.
    """

    name: str
    ami: str
    instance_type: str
    remote_admin: str = "ec2-user"
    ssh_port: int = DEFAULT_SSH_PORT
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    host_key_verification: HostKeyVerification = HostKeyVerification.ACCEPT_NEW
    market: MarketType = MarketType.ON_DEMAND
    platform: str = "unix"
    java_path: str = DEFAULT_JAVA
    jvm_options: str = ""
    tmp_dir: str | None = None
    remote_fs: str = "/home/ec2-user"
    init_script: str | None = None
    agent_jar: str | None = None
    agent_command: str | None = None
    launch_prefix: str = ""
    launch_suffix: str = ""
    connection_strategy: ConnectionStrategy = ConnectionStrategy.PUBLIC_IP
    instance_cap: int = UNLIMITED_CAP
    key_name: str | None = None
    security_groups: tuple[str, ...] = ()
    subnet_id: str | None = None
    user_data: str | None = None

    @property
    def identity_tags(self) -> dict[str, str]:
        return {
            **self.tags,
            AgentTag.MANAGED: "true",
            AgentTag.TEMPLATE: self.name,
        }

    @property
    def is_spot(self) -> bool:
        return self.market is MarketType.SPOT


# =============================================================================
# Instances
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceHandle:
    """Provider-assigned instance id plus its last observed state."""

    instance_id: str
    state: InstanceState = InstanceState.PENDING
    market: MarketType = MarketType.ON_DEMAND
    spot_request_id: str | None = None
    public_ip: str | None = None
    private_ip: str | None = None
    public_dns: str | None = None
    private_dns: str | None = None
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_spot(self) -> bool:
        return self.market is MarketType.SPOT

    def address(self, strategy: ConnectionStrategy) -> str:
        """Resolve the SSH host for a connection strategy.

        Public strategies fall back to the private address when the
        instance has no public one (e.g. launched in a private subnet).
        """
        match strategy:
            case ConnectionStrategy.PUBLIC_IP:
                candidates = (self.public_ip, self.private_ip)
            case ConnectionStrategy.PUBLIC_DNS:
                candidates = (self.public_dns, self.public_ip, self.private_ip)
            case ConnectionStrategy.PRIVATE_DNS:
                candidates = (self.private_dns, self.private_ip)
            case _:
                candidates = (self.private_ip,)

        for candidate in candidates:
            if candidate:
                return candidate
        raise Ec2AgentsError(f"Instance {self.instance_id} has no {strategy} address")


@dataclass(frozen=True, slots=True)
class SpotRequest:
    request_id: str
    state: SpotRequestState
    instance_id: str | None = None


@dataclass(frozen=True, slots=True)
class KnownNode:
    """An agent known to the controller, whether or not its instance exists yet."""

    name: str
    template: str
    instance_id: str | None = None
    market: MarketType = MarketType.ON_DEMAND
    spot_request_id: str | None = None

    @property
    def is_spot(self) -> bool:
        return self.market is MarketType.SPOT


@dataclass(frozen=True, slots=True)
class CapacityCount:
    existing: int = 0
    in_flight: int = 0

    @property
    def total(self) -> int:
        return self.existing + self.in_flight


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class BootstrapOutcome:
    instance_id: str
    host: str
    presented_host_key: str | None = None


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    """Outcome for one attempted instance.

    ``handle`` is None when the provider never produced an instance for
    the slot. ``state`` is the bootstrap state at failure.
    """

    handle: InstanceHandle | None
    ok: bool
    state: BootstrapState = BootstrapState.DONE
    error: Exception | None = None
    outcome: BootstrapOutcome | None = None

    @property
    def instance_id(self) -> str | None:
        return self.handle.instance_id if self.handle else None

    @property
    def cause(self) -> str | None:
        if self.error is None:
            return None
        return getattr(self.error, "cause", None) or str(self.error)
