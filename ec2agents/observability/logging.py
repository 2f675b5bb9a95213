"""Logging for ec2agents.

Modules log through ``logger.bind(component=...)``. Bootstrap attempts also
bind ``template`` and ``instance_id``, and every line of an attempt is
prefixed with ``<template>/<instance_id>`` so interleaved output from
concurrent bring-ups stays readable. The package is silent until
``setup_logging`` enables it.

Example:
    from ec2agents.observability import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="agents.jsonl", serialize=True))
    try:
        await orchestrator.provision(template, 2)
    finally:
        teardown_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeAlias

from loguru import logger

logger.disable("ec2agents")

LogLevel: TypeAlias = Literal["DEBUG", "INFO", "WARNING", "ERROR", "TRACE"]

_NODE_KEYS = ("template", "instance_id")


def _annotate(record: Any) -> None:
    extra = record["extra"]
    extra["_component"] = extra.get("component") or record["name"].rpartition(".")[2]
    node = "/".join(str(extra[k]) for k in _NODE_KEYS if k in extra)
    extra["_node"] = f"{node} " if node else ""


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[_component]: <12}</cyan> | "
    "<magenta>{extra[_node]}</magenta><level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[_component]: <12} | "
    "{extra[_node]}{message} ({name}:{line})"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level. The file always gets DEBUG.
        file: Path to log file. None disables file output.
        console: Whether to log to stderr.
        serialize: Write the file as JSON lines, one record per line.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = ".ec2agents/ec2agents.log"
    console: bool = True
    serialize: bool = False
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Enable ec2agents logging and return handler IDs for ``teardown_logging``."""
    logger.enable("ec2agents")
    logger.configure(patcher=_annotate)
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="ec2agents",
        ))

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            filter="ec2agents",
            serialize=config.serialize,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
        ))

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("ec2agents")
