from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

import httpx
import pytest

from hcp_terraform.config import ENV_KEYS, Settings

RUN_ID = "run-abc123"
WORKSPACE_ID = "ws-xyz789"
TOKEN = "test-token"


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS.values():
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("hcp_terraform.config.load_dotenv", lambda **_: None)


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


@pytest.fixture
def settings() -> Settings:
    return Settings.model_validate(
        {
            "api": {"base_url": "https://tfe.example.com/api/v2"},
            "retry": {"max_retries": 3, "min_backoff_seconds": 1.0, "max_backoff_seconds": 8.0},
        }
    )


def run_resource(
    run_id: str = RUN_ID,
    status: str = "planning",
    *,
    plan_id: str | None = "plan-1",
    apply_id: str | None = "apply-1",
) -> dict:
    relationships: dict = {
        "workspace": {"data": {"id": WORKSPACE_ID, "type": "workspaces"}},
    }
    if plan_id:
        relationships["plan"] = {"data": {"id": plan_id, "type": "plans"}}
    if apply_id:
        relationships["apply"] = {"data": {"id": apply_id, "type": "applies"}}
    return {
        "id": run_id,
        "type": "runs",
        "attributes": {
            "status": status,
            "message": "Triggered via API",
            "is-destroy": False,
            "has-changes": True,
            "created-at": "2024-05-01T10:00:00Z",
            "status-timestamps": {"planning-at": "2024-05-01T10:00:05Z"},
            "actions": {"is-cancelable": True, "is-confirmable": False},
            "permissions": {"can-apply": True, "can-cancel": True},
        },
        "relationships": relationships,
    }


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class _RawBody(httpx.AsyncByteStream):
    def __init__(self, data: bytes) -> None:
        self._data = data

    async def __aiter__(self):
        yield self._data


def undecodable_response() -> httpx.Response:
    """A 200 whose body claims gzip encoding but is plain bytes."""
    return httpx.Response(
        200, headers={"Content-Encoding": "gzip"}, stream=_RawBody(b"definitely not gzip")
    )
