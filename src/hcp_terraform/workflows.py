"""Multi-step operations composed from ``HCPTerraformClient`` calls."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any

from hcp_terraform.client import HCPTerraformClient
from hcp_terraform.errors import ClassifiedError, validation_error
from hcp_terraform.models import ConfigurationVersionCreateOptions, Run
from hcp_terraform.streaming import StreamEvent, stream_run_status

logger = logging.getLogger(__name__)

LOG_TYPES = ("plan", "apply", "both")


def decode_archive(archive: bytes | str) -> bytes:
    """Accept raw tar.gz bytes or their base64 text form."""
    if isinstance(archive, (bytes, bytearray)):
        data = bytes(archive)
    else:
        try:
            data = base64.b64decode(archive.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise validation_error("Configuration archive is not valid base64", cause=exc) from exc
    if not data:
        raise validation_error("Configuration archive is empty")
    return data


@dataclass
class UploadAndStreamResult:
    configuration_version_id: str
    workspace_id: str
    auto_queue_runs: bool
    upload_status: str = "success"
    run_updates: list[StreamEvent] = field(default_factory=list)
    streaming_error: ClassifiedError | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "configuration_version_id": self.configuration_version_id,
            "upload_status": self.upload_status,
            "auto_queue_runs": self.auto_queue_runs,
            "workspace_id": self.workspace_id,
            "message": self.message,
        }
        if self.streaming_error is not None:
            payload["streaming_error"] = self.streaming_error.to_dict()
        elif self.auto_queue_runs:
            payload["run_updates"] = [event.to_dict() for event in self.run_updates]
        return payload


async def upload_configuration_and_stream(
    client: HCPTerraformClient,
    token: str,
    workspace_id: str,
    archive: bytes | str,
    *,
    auto_queue_runs: bool = True,
    speculative: bool = False,
    poll_interval_seconds: int | None = None,
    timeout_minutes: int | None = None,
    cancel_event: asyncio.Event | None = None,
) -> UploadAndStreamResult:
    """Create a configuration version, upload ``archive`` and follow the queued run.

    Anything that fails up to and including the upload raises. Once the
    upload has succeeded, a streaming failure is reported on the result
    instead, since the configuration is already in place remotely.
    """
    data = decode_archive(archive)
    logger.info("Starting configuration upload with streaming for workspace %s", workspace_id)

    configuration_version = await client.create_configuration_version(
        token,
        workspace_id,
        ConfigurationVersionCreateOptions(auto_queue_runs=auto_queue_runs, speculative=speculative),
    )
    await client.upload_artifact(configuration_version.take_upload_url(), data)

    result = UploadAndStreamResult(
        configuration_version_id=configuration_version.id,
        workspace_id=workspace_id,
        auto_queue_runs=auto_queue_runs,
    )
    if not auto_queue_runs:
        result.message = "Configuration uploaded successfully. No runs were automatically queued."
        return result

    try:
        result.run_updates = await stream_run_status(
            client,
            token,
            workspace_id,
            poll_interval_seconds=poll_interval_seconds,
            timeout_minutes=timeout_minutes,
            cancel_event=cancel_event,
        )
    except ClassifiedError as exc:
        logger.error("Run streaming failed for workspace %s: %s", workspace_id, exc)
        result.streaming_error = exc
        result.message = "Configuration uploaded successfully, but run streaming failed"
    else:
        result.message = "Configuration uploaded and run status streamed successfully"
    return result


@dataclass
class PhaseLogs:
    phase: str
    id: str | None = None
    status: str | None = None
    logs: str | None = None
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.logs is not None


@dataclass
class RunLogs:
    run: Run
    plan: PhaseLogs | None = None
    apply: PhaseLogs | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": self.run.id,
            "status": self.run.status,
            "message": self.run.message,
            "has_changes": self.run.has_changes,
            "is_destroy": self.run.is_destroy,
        }
        if self.run.created_at is not None:
            payload["created_at"] = self.run.created_at.isoformat()
        for phase in (self.plan, self.apply):
            if phase is None:
                continue
            if phase.id is not None:
                payload[f"{phase.phase}_id"] = phase.id
            if phase.status is not None:
                payload[f"{phase.phase}_status"] = phase.status
            if phase.error is not None:
                payload[f"{phase.phase}_logs_error"] = phase.error
            elif phase.logs is not None:
                payload[f"{phase.phase}_logs"] = phase.logs
        return payload


async def _fetch_phase_logs(
    client: HCPTerraformClient,
    token: str,
    phase: str,
    phase_id: str | None,
) -> PhaseLogs:
    if phase_id is None:
        return PhaseLogs(phase=phase, error=f"{phase.capitalize()} not yet available for this run")

    try:
        if phase == "plan":
            resource = await client.get_plan(token, phase_id)
        else:
            resource = await client.get_apply(token, phase_id)
    except ClassifiedError as exc:
        logger.warning("Failed to fetch %s %s: %s", phase, phase_id, exc)
        return PhaseLogs(phase=phase, id=phase_id, error=str(exc))

    logs = PhaseLogs(phase=phase, id=resource.id, status=resource.status)
    if not resource.log_read_url:
        logs.error = f"No {phase} log is available yet"
        return logs
    try:
        logs.logs = await client.read_log(resource.log_read_url)
    except ClassifiedError as exc:
        logger.warning("Failed to fetch %s logs for %s: %s", phase, phase_id, exc)
        logs.error = str(exc)
    return logs


async def fetch_run_logs(
    client: HCPTerraformClient,
    token: str,
    run_id: str,
    log_type: str = "both",
) -> RunLogs:
    """Read a run and its plan and/or apply logs.

    Failures reading the run itself raise; failures for one phase are kept
    on that phase's ``PhaseLogs.error`` so the other phase is still returned.
    """
    if log_type not in LOG_TYPES:
        raise validation_error(f"log_type must be one of {', '.join(LOG_TYPES)}")

    run = await client.get_run(token, run_id)
    result = RunLogs(run=run)
    if log_type in ("plan", "both"):
        result.plan = await _fetch_phase_logs(client, token, "plan", run.plan_id)
    if log_type in ("apply", "both"):
        result.apply = await _fetch_phase_logs(client, token, "apply", run.apply_id)
    return result
