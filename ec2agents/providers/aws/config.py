"""EC2 cloud configuration.

Immutable configuration for one EC2 cloud and the agent templates it can
launch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ec2agents.bootstrap.settings import BootstrapSettings
from ec2agents.constants import DEFAULT_REGION, UNLIMITED_CAP
from ec2agents.exceptions import ConfigurationError
from ec2agents.types import Template


def parse_instance_cap(value: str | int | None) -> int:
    """Parse an instance cap where empty means unlimited.

    Raises:
        ConfigurationError: The value is not a non-negative integer.
    """
    match value:
        case None | "":
            return UNLIMITED_CAP
        case int() if value >= 0:
            return value
        case str() if value.strip().isdigit():
            return int(value.strip())
        case _:
            raise ConfigurationError(f"Invalid instance cap: {value!r}")


def format_instance_cap(cap: int) -> str:
    return "" if cap == UNLIMITED_CAP else str(cap)


@dataclass(frozen=True, slots=True)
class EC2Cloud:
    """EC2 cloud configuration.

    Example:
        >>> cloud = EC2Cloud(name="main", region="eu-west-1", private_key_path="~/.ssh/agents.pem")

    Args:
        name: Cloud name.
        region: AWS region. Default: us-east-1. None requires a custom endpoint.
        endpoint: Custom EC2 endpoint URL. Empty uses the region's endpoint.
        profile: Shared-credentials profile for the aioboto3 session.
        role_arn: IAM role assumed through STS before calling EC2.
        role_session_name: STS session name for ``role_arn``.
        instance_cap: Maximum instances across all templates.
        private_key: PEM key material. Takes precedence over ``private_key_path``.
        private_key_path: File holding the PEM key.
        templates: Agent templates launched by this cloud.
        bootstrap: Retry and timeout settings.
    """

    name: str
    region: str | None = DEFAULT_REGION
    endpoint: str | None = None
    profile: str | None = None
    role_arn: str | None = None
    role_session_name: str | None = None
    instance_cap: int = UNLIMITED_CAP
    private_key: str | None = field(default=None, repr=False)
    private_key_path: str | None = None
    templates: tuple[Template, ...] = ()
    bootstrap: BootstrapSettings = field(default_factory=BootstrapSettings)

    @property
    def instance_cap_str(self) -> str:
        return format_instance_cap(self.instance_cap)

    def template(self, name: str) -> Template:
        for t in self.templates:
            if t.name == name:
                return t
        raise KeyError(
            f"Template '{name}' not found. Available: {', '.join(t.name for t in self.templates) or 'none'}"
        )

    def load_private_key(self) -> str:
        """Key material for SSH, read from ``private_key_path`` when not inline.

        Raises:
            ConfigurationError: No key configured or the file is unreadable.
        """
        if self.private_key:
            return self.private_key
        if not self.private_key_path:
            raise ConfigurationError(f"Cloud '{self.name}' has no private key configured")
        try:
            return Path(self.private_key_path).expanduser().read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read private key {self.private_key_path}: {e}") from e
