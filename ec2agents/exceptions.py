"""Custom exception hierarchy for ec2agents.

All ec2agents exceptions inherit from Ec2AgentsError, enabling
callers to catch every library failure with a single except clause.

Bootstrap failures carry the instance id, the state the machine was in
and the underlying cause, so a report can be diagnosed without re-running.
"""

from __future__ import annotations

from typing import ClassVar


class Ec2AgentsError(Exception):
    """Base exception for all ec2agents errors."""


class ConfigurationError(Ec2AgentsError):
    """Raised for invalid configuration or missing required settings."""


class ProviderError(Ec2AgentsError):
    """Raised when a cloud provider call (create/describe/terminate) fails."""


class CleanupWarning(Ec2AgentsError):
    """A staged credential file could not be deleted.

    Only ever logged. Never raised to the caller.
    """

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to delete staged file {path}: {reason}")


# =============================================================================
# Transport
# =============================================================================


class SSHUnreachable(Ec2AgentsError):
    """SSH connection attempts were exhausted."""

    def __init__(self, host: str, port: int, attempts: int, reason: str) -> None:
        self.host = host
        self.port = port
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"{host}:{port} unreachable after {attempts} attempts: {reason}")


class HostKeyRejected(Ec2AgentsError):
    """The server presented a host key that does not match the pinned one."""

    def __init__(self, host: str, reason: str) -> None:
        self.host = host
        self.reason = reason
        super().__init__(f"Host key for {host} rejected: {reason}")


class CommandTimeout(Ec2AgentsError):
    """A remote command did not finish within its bounded wait."""

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:.0f}s: {command}")


# =============================================================================
# Bootstrap
# =============================================================================


class BootstrapError(Ec2AgentsError):
    """Bootstrap of a single instance failed."""

    default_retryable: ClassVar[bool] = False
    cause_label: ClassVar[str] = "bootstrap failed"

    def __init__(
        self,
        instance_id: str,
        state: str,
        cause: str,
        *,
        retryable: bool | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.state = state
        self.cause = cause
        self.retryable = self.default_retryable if retryable is None else retryable
        super().__init__(f"[{instance_id}] {self.cause_label} in state '{state}': {cause}")


class Unreachable(BootstrapError):
    """Connection retries exhausted. Re-attempting the bootstrap may help."""

    default_retryable = True
    cause_label = "unreachable"


class TrustViolation(BootstrapError):
    """Host key mismatch. Never retried, never bypassed."""

    cause_label = "host key mismatch"


class PrerequisiteInstallFailed(BootstrapError):
    """A remote prerequisite install command exited nonzero."""

    default_retryable = True
    cause_label = "prerequisite install failed"


class StagingFailed(BootstrapError):
    """Creating the working directory or writing a staged file failed."""

    default_retryable = True
    cause_label = "staging failed"


class AgentLaunchFailed(BootstrapError):
    """The remote shell rejected the agent launch command."""

    cause_label = "agent launch failed"


class InstanceTerminated(BootstrapError):
    """The instance went away before it could be bootstrapped."""

    cause_label = "instance terminated"


class BootstrapCancelled(BootstrapError):
    """The bootstrap was interrupted by an external stop signal."""

    cause_label = "cancelled"
