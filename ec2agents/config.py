"""TOML-based cloud and template configuration.

Loads ~/.ec2agents/defaults.toml (global) and ec2agents.toml (project),
merges them, and resolves named clouds into EC2Cloud instances with
their templates attached.

Example ``ec2agents.toml``::

    [clouds.main]
    region = "eu-west-1"
    instance_cap = "20"
    private_key_path = "~/.ssh/agents.pem"

    [clouds.main.bootstrap]
    connect_attempts = 6

    [templates.linux]
    cloud = "main"
    ami = "ami-0abc"
    instance_type = "t3.large"
    market = "spot"
    instance_cap = "5"
"""

from __future__ import annotations

import tomllib
from dataclasses import fields
from pathlib import Path
from types import MappingProxyType
from typing import Any, TypeAlias

from ec2agents.bootstrap.settings import BootstrapSettings
from ec2agents.exceptions import ConfigurationError
from ec2agents.providers.aws.config import EC2Cloud, parse_instance_cap
from ec2agents.types import ConnectionStrategy, HostKeyVerification, MarketType, Template

RawConfig: TypeAlias = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".ec2agents" / "defaults.toml"
PROJECT_CONFIG_NAME = "ec2agents.toml"

_ENUM_FIELDS: dict[str, type] = {
    "host_key_verification": HostKeyVerification,
    "market": MarketType,
    "connection_strategy": ConnectionStrategy,
}


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("clouds", {})
    merged.setdefault("templates", {})
    return merged


def _build_settings(raw: RawConfig) -> BootstrapSettings:
    known = {f.name for f in fields(BootstrapSettings)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(f"Unknown bootstrap settings: {', '.join(sorted(unknown))}")
    return BootstrapSettings(**raw)


def _build_template(name: str, raw: RawConfig) -> Template:
    raw = dict(raw)
    raw.pop("cloud", None)

    for key, enum in _ENUM_FIELDS.items():
        if key in raw:
            try:
                raw[key] = enum(raw[key])
            except ValueError as e:
                raise ConfigurationError(f"Template '{name}': invalid {key} {raw[key]!r}") from e

    if "instance_cap" in raw:
        raw["instance_cap"] = parse_instance_cap(raw["instance_cap"])
    if "tags" in raw:
        raw["tags"] = MappingProxyType({str(k): str(v) for k, v in raw["tags"].items()})
    if "security_groups" in raw:
        raw["security_groups"] = tuple(raw["security_groups"])

    try:
        return Template(name=name, **raw)
    except TypeError as e:
        raise ConfigurationError(f"Template '{name}': {e}") from e


def _build_cloud(name: str, raw: RawConfig, templates: tuple[Template, ...]) -> EC2Cloud:
    raw = dict(raw)
    raw_settings = raw.pop("bootstrap", None)
    settings = _build_settings(raw_settings) if raw_settings else BootstrapSettings()
    cap = parse_instance_cap(raw.pop("instance_cap", None))

    try:
        return EC2Cloud(name=name, instance_cap=cap, templates=templates, bootstrap=settings, **raw)
    except TypeError as e:
        raise ConfigurationError(f"Cloud '{name}': {e}") from e


def resolve_cloud(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> EC2Cloud:
    """Build the named cloud and every template bound to it.

    Raises:
        KeyError: No cloud with that name.
        ConfigurationError: A cloud or template entry is invalid.
    """
    config = load_config(project_dir=project_dir, global_path=global_path)

    clouds = config["clouds"]
    if name not in clouds:
        raise KeyError(f"Cloud '{name}' not found. Available: {', '.join(clouds) or 'none'}")

    templates = tuple(
        _build_template(template_name, raw)
        for template_name, raw in config["templates"].items()
        if raw.get("cloud", name) == name
    )
    return _build_cloud(name, clouds[name], templates)


__all__ = [
    "GLOBAL_CONFIG_PATH",
    "PROJECT_CONFIG_NAME",
    "load_config",
    "resolve_cloud",
]
