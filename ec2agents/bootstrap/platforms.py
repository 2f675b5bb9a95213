"""Operating-system families an agent can be bootstrapped on.

Each family is a plain value describing the remote commands and default
paths for that OS. The bootstrap state machine only talks to the
``Platform`` protocol, so adding a family means adding one dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ec2agents.constants import DEFAULT_INIT_MARKER, DEFAULT_INIT_SCRIPT, DEFAULT_TMP_DIR
from ec2agents.exceptions import ConfigurationError


@dataclass(frozen=True, slots=True)
class Prerequisite:
    """A probe command and the installer to run when the probe exits nonzero."""

    name: str
    probe: str
    install: str


class Platform(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def tmp_dir(self) -> str: ...

    @property
    def init_script_name(self) -> str: ...

    @property
    def init_marker(self) -> str: ...

    def prerequisites(self, java_path: str) -> tuple[Prerequisite, ...]: ...

    def mkdir_command(self, directory: str) -> str: ...

    def exists_command(self, path: str) -> str: ...

    def touch_command(self, path: str) -> str: ...


def _runtime_probe(java_path: str) -> str:
    return f"{java_path} -fullversion"


class _PosixCommands:
    """Shell commands shared by every POSIX family."""

    __slots__ = ()

    def mkdir_command(self, directory: str) -> str:
        return f"mkdir -p {directory}"

    def exists_command(self, path: str) -> str:
        return f"test -e {path}"

    def touch_command(self, path: str) -> str:
        return f"touch {path}"


@dataclass(frozen=True, slots=True)
class UnixPlatform(_PosixCommands):
    """Amazon Linux (yum)."""

    name: str = "unix"
    tmp_dir: str = DEFAULT_TMP_DIR
    init_script_name: str = DEFAULT_INIT_SCRIPT
    init_marker: str = DEFAULT_INIT_MARKER

    def prerequisites(self, java_path: str) -> tuple[Prerequisite, ...]:
        return (
            Prerequisite(
                "java",
                _runtime_probe(java_path),
                "sudo amazon-linux-extras install java-openjdk11 -y; "
                "sudo yum install -y fontconfig java-11-openjdk",
            ),
            Prerequisite("scp", "which scp", "sudo yum install -y openssh-clients"),
        )


@dataclass(frozen=True, slots=True)
class DebianPlatform(_PosixCommands):
    """Debian and Ubuntu (apt)."""

    name: str = "debian"
    tmp_dir: str = DEFAULT_TMP_DIR
    init_script_name: str = DEFAULT_INIT_SCRIPT
    init_marker: str = DEFAULT_INIT_MARKER

    def prerequisites(self, java_path: str) -> tuple[Prerequisite, ...]:
        return (
            Prerequisite(
                "java",
                _runtime_probe(java_path),
                "sudo apt-get update -y && "
                "sudo DEBIAN_FRONTEND=noninteractive apt-get install -y fontconfig openjdk-17-jre-headless",
            ),
            Prerequisite(
                "scp", "which scp",
                "sudo DEBIAN_FRONTEND=noninteractive apt-get install -y openssh-client",
            ),
        )


@dataclass(frozen=True, slots=True)
class MacPlatform(_PosixCommands):
    """macOS on EC2 Mac hosts. scp ships with the OS."""

    name: str = "mac"
    tmp_dir: str = DEFAULT_TMP_DIR
    init_script_name: str = DEFAULT_INIT_SCRIPT
    init_marker: str = DEFAULT_INIT_MARKER

    def prerequisites(self, java_path: str) -> tuple[Prerequisite, ...]:
        pkg = "amazon-corretto-17-x64-macos-jdk.pkg"
        return (
            Prerequisite(
                "java",
                _runtime_probe(java_path),
                f"curl -fsSL -o /tmp/{pkg} https://corretto.aws/downloads/latest/{pkg} && "
                f"sudo installer -pkg /tmp/{pkg} -target /",
            ),
        )


PLATFORMS: dict[str, Platform] = {
    p.name: p for p in (UnixPlatform(), DebianPlatform(), MacPlatform())
}


def platform_for(name: str) -> Platform:
    try:
        return PLATFORMS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown platform '{name}'. Valid: {', '.join(PLATFORMS)}"
        ) from None
