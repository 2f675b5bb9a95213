from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class BootstrapSettings:
    """Retry, backoff and timeout knobs for bringing an instance up.

    Args:
        connect_attempts: SSH connection attempts before giving up.
        backoff_base: First backoff delay in seconds (doubles per attempt).
        backoff_max: Backoff delay cap in seconds.
        connect_timeout: Per-attempt SSH connect timeout.
        command_timeout: Per-command bounded wait.
        bootstrap_attempts: Whole-bootstrap attempts for retryable failures.
        running_timeout: How long to wait for the instance to reach running.
        poll_interval: Provider polling interval while waiting.
        retry_delay: Pause between whole-bootstrap attempts.
    """

    connect_attempts: int = 12
    backoff_base: float = 2.0
    backoff_max: float = 30.0
    connect_timeout: float = 30.0
    command_timeout: float = 600.0
    bootstrap_attempts: int = 2
    running_timeout: float = 600.0
    poll_interval: float = 5.0
    retry_delay: float = 5.0
