"""Centralized constants and enums for ec2agents.

Tag keys, endpoint defaults and the remote paths used when bootstrapping
an agent are defined here so every module agrees on them.
"""

from __future__ import annotations

import sys
from enum import StrEnum
from typing import Final

# =============================================================================
# AWS Resource Tags
# =============================================================================


class AgentTag(StrEnum):
    """EC2 tag keys written on every instance we launch."""

    MANAGED = "ec2agents:managed"
    TEMPLATE = "ec2agents:template"
    MARKET = "ec2agents:market"


DEFAULT_INSTANCE_NAME: Final = "ec2agents-agent"


# =============================================================================
# Endpoints
# =============================================================================

DEFAULT_EC2_ENDPOINT: Final = "https://ec2.amazonaws.com"
DEFAULT_REGION: Final = "us-east-1"
CHINA_REGION_PREFIX: Final = "cn-"
AWS_DOMAIN: Final = "amazonaws.com"
AWS_CHINA_DOMAIN: Final = "amazonaws.com.cn"


# =============================================================================
# Capacity
# =============================================================================

UNLIMITED_CAP: Final = sys.maxsize


# =============================================================================
# Remote Bootstrap
# =============================================================================

DEFAULT_TMP_DIR: Final = "/tmp"
DEFAULT_INIT_MARKER: Final = "~/.hudson-run-init"
DEFAULT_INIT_SCRIPT: Final = "init.sh"
AGENT_JAR_NAME: Final = "remoting.jar"
AGENT_LOG_NAME: Final = "agent.log"
DEFAULT_JAVA: Final = "java"
DEFAULT_SSH_PORT: Final = 22

SSH_HOST_KEY_BEGIN: Final = "-----BEGIN SSH HOST KEY KEYS-----"
SSH_HOST_KEY_END: Final = "-----END SSH HOST KEY KEYS-----"
