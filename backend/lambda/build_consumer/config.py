"""config.py — Environment configuration, message defaults, logging.

Environment variables:
    AWS_REGION                         default: us-west-2
    SD_SLS_BUILD_BUCKET                launcher artifact bucket (home region)
    SD_SLS_BUILD_ENCRYPTION_KEY_ALIAS  KMS alias for CodeBuild projects
    SDAPI_TIMEOUT_SECS                 default: 20
    SDAPI_MAXRETRIES                   default: 5
    STACKTRACE_DIR                     default: system temp dir
    LOG_LEVEL                          default: INFO
"""
from __future__ import annotations

import logging
import os
import tempfile
from typing import Any, Dict

__all__ = [
    "AWS_REGION",
    "AWS_CLIENT_MAX_ATTEMPTS",
    "CONFIG_DEFAULTS",
    "EKS_EXECUTOR_NAME",
    "LOG_LEVEL",
    "PROVIDER_DEFAULTS",
    "SDAPI_MAXRETRIES",
    "SDAPI_RETRY_WAIT_MAX_SECONDS",
    "SDAPI_RETRY_WAIT_MIN_SECONDS",
    "SDAPI_TIMEOUT_SECS",
    "SLS_BUILD_BUCKET",
    "SLS_BUILD_ENCRYPTION_KEY_ALIAS",
    "SLS_EXECUTOR_NAME",
    "STACKTRACE_DIR",
    "logger",
]

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger()
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

AWS_REGION = os.environ.get("AWS_REGION", "us-west-2")
AWS_CLIENT_MAX_ATTEMPTS = _int_env("AWS_CLIENT_MAX_ATTEMPTS", 5)

SLS_BUILD_BUCKET = os.environ.get("SD_SLS_BUILD_BUCKET", "")
SLS_BUILD_ENCRYPTION_KEY_ALIAS = os.environ.get("SD_SLS_BUILD_ENCRYPTION_KEY_ALIAS", "")

SDAPI_TIMEOUT_SECS = _int_env("SDAPI_TIMEOUT_SECS", 20)
SDAPI_MAXRETRIES = _int_env("SDAPI_MAXRETRIES", 5)
SDAPI_RETRY_WAIT_MIN_SECONDS = 0.1
SDAPI_RETRY_WAIT_MAX_SECONDS = 0.3

STACKTRACE_DIR = os.environ.get("STACKTRACE_DIR", "") or tempfile.gettempdir()

# ---------------------------------------------------------------------------
# Executors and message defaults
# ---------------------------------------------------------------------------

EKS_EXECUTOR_NAME = "eks"
SLS_EXECUTOR_NAME = "sls"

# Seeded before the message is parsed; message values win.
CONFIG_DEFAULTS: Dict[str, Any] = {
    "container": "aws/codebuild/standard:5.0",
    "serviceAccountName": "default",
}

# Applied after parsing, only to keys the message leaves absent or null.
PROVIDER_DEFAULTS: Dict[str, Any] = {
    "executorLogs": False,
    "dlc": False,
    "privilegedMode": False,
    "prune": True,
    "imagePullCredentialsType": "SERVICE_ROLE",
    "environmentType": "LINUX_CONTAINER",
    "computeType": "BUILD_GENERAL1_SMALL",
    "queuedTimeout": 5,
    "launcherComputeType": "BUILD_GENERAL1_SMALL",
    "launcherEnvironmentType": "LINUX_CONTAINER",
    "buildRegion": "",
    "debugSession": False,
}
