"""Resilient async client for HCP Terraform runs."""

from __future__ import annotations

__version__ = "0.1.0"

from hcp_terraform.client import HCPTerraformClient
from hcp_terraform.config import Settings, load_settings
from hcp_terraform.errors import ClassifiedError, ErrorKind
from hcp_terraform.streaming import (
    EventType,
    RunStatusPoller,
    StreamEvent,
    stream_run_status,
    watch_run_status,
)

__all__ = [
    "ClassifiedError",
    "ErrorKind",
    "EventType",
    "HCPTerraformClient",
    "RunStatusPoller",
    "Settings",
    "StreamEvent",
    "__version__",
    "load_settings",
    "stream_run_status",
    "watch_run_status",
]
