"""Typed HCP Terraform operations built on ``Transport``."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any, TypeVar
from urllib.parse import quote

import httpx

from hcp_terraform.config import Settings
from hcp_terraform.errors import authentication_error, validation_error
from hcp_terraform.models import (
    Apply,
    ConfigurationVersion,
    ConfigurationVersionCreateOptions,
    Plan,
    Run,
    RunCreateOptions,
    RunList,
    RunListOptions,
)
from hcp_terraform.transport import Transport
from hcp_terraform.utils.masking import redact_sensitive_fields, redact_url

logger = logging.getLogger(__name__)

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"
OCTET_STREAM_CONTENT_TYPE = "application/octet-stream"

_ModelT = TypeVar("_ModelT")


def _require_id(value: str | None, name: str) -> str:
    if value is None or not str(value).strip():
        raise validation_error(f"{name} is required")
    return str(value).strip()


def _segment(value: str) -> str:
    return quote(value, safe="")


class HCPTerraformClient:
    """Async client for the run and configuration-version endpoints.

    Each operation takes the bearer token explicitly. The client itself
    only carries configuration and the shared transport, so one instance
    can be used concurrently for many workspaces and tokens.
    """

    def __init__(self, settings: Settings | None = None, *, transport: Transport | None = None) -> None:
        self._settings = settings or Settings()
        self._base_url = self._settings.api.base_url
        self._transport = transport or Transport(self._settings)

    @property
    def settings(self) -> Settings:
        return self._settings

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def __aenter__(self) -> "HCPTerraformClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- plumbing -----------------------------------------------------------

    def _auth_headers(self, token: str | None) -> dict[str, str]:
        if token is None or not token.strip():
            raise authentication_error()
        return {
            "Authorization": f"Bearer {token.strip()}",
            "Content-Type": JSONAPI_CONTENT_TYPE,
            "Accept": JSONAPI_CONTENT_TYPE,
            "User-Agent": self._settings.api.user_agent,
        }

    async def _request(
        self,
        method: str,
        path: str,
        token: str | None,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = self._auth_headers(token)
        if body is not None:
            logger.debug("%s %s payload=%s", method, path, redact_sensitive_fields(body))
        content = json.dumps(body).encode("utf-8") if body is not None else None
        request = httpx.Request(
            method,
            f"{self._base_url}{path}",
            params=params,
            headers=headers,
            content=content,
        )
        return await self._transport.send(request)

    @staticmethod
    def _decode(model: type[_ModelT], response: httpx.Response) -> _ModelT:
        try:
            document = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise validation_error("Response body is not valid JSON", cause=exc) from exc
        try:
            return model.from_document(document)  # type: ignore[attr-defined]
        except (ValueError, TypeError) as exc:
            # pydantic.ValidationError is a ValueError.
            raise validation_error(
                f"Unexpected {model.__name__} document: {exc}", cause=exc
            ) from exc

    # --- runs ---------------------------------------------------------------

    async def create_run(self, token: str, options: RunCreateOptions) -> Run:
        self._auth_headers(token)
        _require_id(options.workspace_id, "workspace_id")
        response = await self._request("POST", "/runs", token, body=options.to_payload())
        run = self._decode(Run, response)
        logger.info("Created run %s in workspace %s", run.id, options.workspace_id)
        return run

    async def get_run(self, token: str, run_id: str, include: Iterable[str] = ()) -> Run:
        self._auth_headers(token)
        run_id = _require_id(run_id, "run_id")
        includes = list(include)
        params = {"include": ",".join(includes)} if includes else None
        response = await self._request("GET", f"/runs/{_segment(run_id)}", token, params=params)
        return self._decode(Run, response)

    async def list_runs(
        self,
        token: str,
        workspace_id: str,
        options: RunListOptions | None = None,
    ) -> RunList:
        self._auth_headers(token)
        workspace_id = _require_id(workspace_id, "workspace_id")
        params = (options or RunListOptions()).to_params()
        response = await self._request(
            "GET",
            f"/workspaces/{_segment(workspace_id)}/runs",
            token,
            params=params or None,
        )
        return self._decode(RunList, response)

    async def _run_action(self, token: str, run_id: str, action: str, comment: str | None) -> None:
        self._auth_headers(token)
        run_id = _require_id(run_id, "run_id")
        body = {"comment": comment} if comment else None
        await self._request(
            "POST",
            f"/runs/{_segment(run_id)}/actions/{action}",
            token,
            body=body,
        )
        logger.info("Requested %s for run %s", action, run_id)

    async def apply_run(self, token: str, run_id: str, comment: str | None = None) -> None:
        await self._run_action(token, run_id, "apply", comment)

    async def discard_run(self, token: str, run_id: str, comment: str | None = None) -> None:
        await self._run_action(token, run_id, "discard", comment)

    async def cancel_run(self, token: str, run_id: str, comment: str | None = None) -> None:
        await self._run_action(token, run_id, "cancel", comment)

    async def force_cancel_run(self, token: str, run_id: str, comment: str | None = None) -> None:
        await self._run_action(token, run_id, "force-cancel", comment)

    # --- configuration versions ---------------------------------------------

    async def create_configuration_version(
        self,
        token: str,
        workspace_id: str,
        options: ConfigurationVersionCreateOptions | None = None,
    ) -> ConfigurationVersion:
        self._auth_headers(token)
        workspace_id = _require_id(workspace_id, "workspace_id")
        payload = (options or ConfigurationVersionCreateOptions()).to_payload()
        response = await self._request(
            "POST",
            f"/workspaces/{_segment(workspace_id)}/configuration-versions",
            token,
            body=payload,
        )
        configuration_version = self._decode(ConfigurationVersion, response)
        logger.info(
            "Created configuration version %s in workspace %s",
            configuration_version.id,
            workspace_id,
        )
        return configuration_version

    async def get_configuration_version(self, token: str, configuration_version_id: str) -> ConfigurationVersion:
        self._auth_headers(token)
        cv_id = _require_id(configuration_version_id, "configuration_version_id")
        response = await self._request("GET", f"/configuration-versions/{_segment(cv_id)}", token)
        return self._decode(ConfigurationVersion, response)

    async def upload_artifact(self, upload_url: str, data: bytes) -> None:
        """PUT ``data`` to a pre-authorized upload URL.

        The URL is a capability in its own right: no bearer token is sent,
        and it is never logged with its query string.
        """
        upload_url = _require_id(upload_url, "upload_url")
        request = httpx.Request(
            "PUT",
            upload_url,
            headers={
                "Content-Type": OCTET_STREAM_CONTENT_TYPE,
                "User-Agent": self._settings.api.user_agent,
            },
            content=bytes(data),
        )
        await self._transport.send(request)
        logger.info("Uploaded %d bytes to %s", len(data), redact_url(upload_url))

    # --- plans, applies and logs --------------------------------------------

    async def get_plan(self, token: str, plan_id: str) -> Plan:
        self._auth_headers(token)
        plan_id = _require_id(plan_id, "plan_id")
        response = await self._request("GET", f"/plans/{_segment(plan_id)}", token)
        return self._decode(Plan, response)

    async def get_apply(self, token: str, apply_id: str) -> Apply:
        self._auth_headers(token)
        apply_id = _require_id(apply_id, "apply_id")
        response = await self._request("GET", f"/applies/{_segment(apply_id)}", token)
        return self._decode(Apply, response)

    async def read_log(self, log_read_url: str) -> str:
        """Fetch a plan or apply log from its pre-signed archive URL."""
        log_read_url = _require_id(log_read_url, "log_read_url")
        request = httpx.Request(
            "GET",
            log_read_url,
            headers={"User-Agent": self._settings.api.user_agent},
        )
        response = await self._transport.send(request)
        return response.text
