from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import (
    RUN_ID,
    TOKEN,
    WORKSPACE_ID,
    mock_http_client,
    run_resource,
    undecodable_response,
)
from hcp_terraform.client import HCPTerraformClient
from hcp_terraform.config import Settings
from hcp_terraform.errors import ClassifiedError, ErrorKind
from hcp_terraform.models import RunList
from hcp_terraform.streaming import (
    EventType,
    RunStatusPoller,
    StreamEvent,
    stream_run_status,
    watch_run_status,
)
from hcp_terraform.transport import Transport

FAST = timedelta(milliseconds=10)
LONG = timedelta(seconds=5)


def _runs(run_id: str | None = RUN_ID, status: str = "queued") -> RunList:
    if run_id is None:
        return RunList.from_document({"data": []})
    return RunList.from_document({"data": [run_resource(run_id, status)]})


def _client(*outcomes: RunList | Exception) -> AsyncMock:
    client = AsyncMock()
    client.list_runs.side_effect = list(outcomes)
    return client


async def _collect(poller: RunStatusPoller) -> list[StreamEvent]:
    return [event async for event in poller.events()]


def _summary(events: list[StreamEvent]) -> list[tuple[str, str | None, str | None]]:
    return [(event.event_type.value, event.run_id, event.status) for event in events]


@pytest.mark.asyncio
async def test_scripted_sequence_emits_change_once_and_stops_at_terminal() -> None:
    client = _client(
        _runs(status="queued"),
        _runs(status="planning"),
        _runs(status="planning"),
        _runs(status="applied"),
    )

    events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    assert _summary(events) == [
        ("run_detected", RUN_ID, "queued"),
        ("status_change", RUN_ID, "planning"),
        ("terminal_status", RUN_ID, "applied"),
    ]
    assert events[1].previous_status == "queued"
    assert events[2].previous_status == "planning"
    assert events[2].message == "Run completed with status: applied"
    assert client.list_runs.await_count == 4
    assert all(a.timestamp < b.timestamp for a, b in zip(events, events[1:]))
    assert all(a.elapsed <= b.elapsed for a, b in zip(events, events[1:]))


@pytest.mark.asyncio
async def test_list_runs_is_called_for_latest_run_only() -> None:
    client = _client(_runs(status="applied"), _runs(status="applied"))

    await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    token, workspace_id, options = client.list_runs.await_args.args
    assert (token, workspace_id) == (TOKEN, WORKSPACE_ID)
    assert options.page_size == 1


@pytest.mark.asyncio
async def test_timeout_of_one_interval_emits_single_timeout() -> None:
    interval = timedelta(milliseconds=200)
    client = AsyncMock()
    client.list_runs.return_value = _runs(status="planning")

    started = time.monotonic()
    events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, interval, interval))
    took = time.monotonic() - started

    assert [event.event_type for event in events] == [EventType.RUN_DETECTED, EventType.TIMEOUT]
    timeout_event = events[-1]
    assert timeout_event.run_id == RUN_ID
    assert timeout_event.status == "planning"
    assert timeout_event.elapsed >= interval
    assert took < 2 * interval.total_seconds()
    assert client.list_runs.await_count == 1


@pytest.mark.asyncio
async def test_timeout_without_any_run() -> None:
    client = AsyncMock()
    client.list_runs.return_value = _runs(None)

    events = await _collect(
        RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, timedelta(milliseconds=60))
    )

    assert len(events) == 1
    assert events[0].event_type is EventType.TIMEOUT
    assert events[0].run_id is None
    assert "timeout" in events[0].message


@pytest.mark.asyncio
async def test_cancellation_abandons_in_flight_tick() -> None:
    in_flight = asyncio.Event()
    abandoned = asyncio.Event()
    calls = 0

    async def list_runs(*_args):
        nonlocal calls
        calls += 1
        if calls == 1:
            return _runs(status="planning")
        in_flight.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            abandoned.set()
            raise
        return _runs(status="applied")

    client = AsyncMock()
    client.list_runs.side_effect = list_runs
    cancel = asyncio.Event()
    poller = RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG, cancel_event=cancel)

    task = asyncio.create_task(_collect(poller))
    await asyncio.wait_for(in_flight.wait(), timeout=2)
    cancel.set()
    events = await asyncio.wait_for(task, timeout=2)

    assert [event.event_type for event in events] == [EventType.RUN_DETECTED, EventType.CANCELED]
    assert events[-1].status == "planning"
    assert abandoned.is_set()
    await asyncio.sleep(0.05)
    assert calls == 2


@pytest.mark.asyncio
async def test_cancellation_during_idle_wait_stops_before_next_tick() -> None:
    client = AsyncMock()
    client.list_runs.return_value = _runs(status="planning")
    cancel = asyncio.Event()
    poller = RunStatusPoller(
        client, TOKEN, WORKSPACE_ID, timedelta(seconds=10), LONG, cancel_event=cancel
    )

    events = []
    async for event in poller.events():
        events.append(event)
        if event.event_type is EventType.RUN_DETECTED:
            cancel.set()

    assert [event.event_type for event in events] == [EventType.RUN_DETECTED, EventType.CANCELED]
    assert client.list_runs.await_count == 1


@pytest.mark.asyncio
async def test_cancellation_wins_over_expired_deadline() -> None:
    client = AsyncMock()
    client.list_runs.return_value = _runs(status="planning")
    cancel = asyncio.Event()
    cancel.set()
    poller = RunStatusPoller(
        client, TOKEN, WORKSPACE_ID, FAST, timedelta(microseconds=1), cancel_event=cancel
    )

    events = await _collect(poller)

    assert events[-1].event_type is EventType.CANCELED
    assert sum(event.is_terminal for event in events) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", [ErrorKind.AUTHENTICATION, ErrorKind.AUTHORIZATION])
async def test_auth_failures_abort_polling(kind: ErrorKind) -> None:
    client = _client(
        _runs(status="planning"),
        ClassifiedError(kind, "denied", status_code=401),
        _runs(status="applied"),
    )

    events: list[StreamEvent] = []
    with pytest.raises(ClassifiedError) as exc_info:
        async for event in RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG).events():
            events.append(event)

    assert exc_info.value.kind is kind
    assert [event.event_type for event in events] == [EventType.RUN_DETECTED]
    assert client.list_runs.await_count == 2


@pytest.mark.asyncio
async def test_transient_failures_keep_polling() -> None:
    client = _client(
        _runs(status="planning"),
        ClassifiedError(ErrorKind.NETWORK, "Server error", status_code=503),
        ClassifiedError(ErrorKind.RATE_LIMIT, "Rate limit exceeded", status_code=429),
        ClassifiedError(ErrorKind.NOT_FOUND, "Resource not found", status_code=404),
        _runs(status="errored"),
    )

    events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    assert _summary(events) == [
        ("run_detected", RUN_ID, "planning"),
        ("terminal_status", RUN_ID, "errored"),
    ]
    assert events[-1].previous_status == "planning"


@pytest.mark.asyncio
async def test_initial_lookup_failure_propagates() -> None:
    client = _client(ClassifiedError(ErrorKind.NETWORK, "Server error", status_code=500))

    with pytest.raises(ClassifiedError):
        await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))


@pytest.mark.asyncio
async def test_new_run_then_terminal() -> None:
    client = _client(
        _runs("run-old", "applied"),
        _runs("run-new", "planning"),
        _runs("run-new", "planned_and_finished"),
    )

    events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    assert _summary(events) == [
        ("run_detected", "run-old", "applied"),
        ("new_run", "run-new", "planning"),
        ("terminal_status", "run-new", "planned_and_finished"),
    ]


@pytest.mark.asyncio
async def test_new_run_already_terminal() -> None:
    client = _client(_runs("run-1", "queued"), _runs("run-2", "errored"))

    events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    assert _summary(events) == [
        ("run_detected", "run-1", "queued"),
        ("new_run", "run-2", "errored"),
        ("terminal_status", "run-2", "errored"),
    ]
    assert events[-1].previous_status is None


@pytest.mark.asyncio
async def test_run_appearing_after_empty_workspace() -> None:
    client = _client(_runs(None), _runs(None), _runs(RUN_ID, "planning"), _runs(RUN_ID, "applied"))

    events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    assert [event.event_type for event in events] == [
        EventType.NEW_RUN,
        EventType.TERMINAL_STATUS,
    ]


@pytest.mark.asyncio
async def test_post_plan_tasks_before_cost_estimation_are_all_reported() -> None:
    statuses = [
        "planning",
        "post_plan_running",
        "post_plan_completed",
        "cost_estimating",
        "policy_checking",
        "applied",
    ]
    client = _client(*(_runs(status=status) for status in statuses))

    events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    assert _summary(events) == [
        ("run_detected", RUN_ID, "planning"),
        ("status_change", RUN_ID, "post_plan_running"),
        ("status_change", RUN_ID, "post_plan_completed"),
        ("status_change", RUN_ID, "cost_estimating"),
        ("status_change", RUN_ID, "policy_checking"),
        ("terminal_status", RUN_ID, "applied"),
    ]
    assert [event.previous_status for event in events[1:]] == statuses[:-1]


@pytest.mark.asyncio
async def test_status_changes_are_reported_as_observed() -> None:
    client = _client(
        _runs(status="applying"),
        _runs(status="planning"),
        _runs(status="applying"),
        _runs(status="applied"),
    )

    events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    assert _summary(events) == [
        ("run_detected", RUN_ID, "applying"),
        ("status_change", RUN_ID, "planning"),
        ("status_change", RUN_ID, "applying"),
        ("terminal_status", RUN_ID, "applied"),
    ]


def _workspace_handler(scripts: dict[str, list]):
    """Serves each workspace's latest run in order, repeating the last one.

    A script step is either a ``(run_id, status)`` pair or a response factory.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        workspace_id = request.url.path.split("/")[-2]
        script = scripts[workspace_id]
        step = script.pop(0) if len(script) > 1 else script[0]
        if callable(step):
            return step()
        run_id, status = step
        return httpx.Response(200, json={"data": [run_resource(run_id, status)]})

    return handler


def _live_client(settings: Settings, handler) -> HCPTerraformClient:
    transport = Transport(settings, client=mock_http_client(handler), sleep=AsyncMock())
    return HCPTerraformClient(settings, transport=transport)


@pytest.mark.asyncio
async def test_undecodable_listing_mid_stream_keeps_polling(settings: Settings) -> None:
    handler = _workspace_handler(
        {
            WORKSPACE_ID: [
                (RUN_ID, "planning"),
                undecodable_response,
                (RUN_ID, "applied"),
            ]
        }
    )

    async with _live_client(settings, handler) as client:
        events = await _collect(RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG))

    assert _summary(events) == [
        ("run_detected", RUN_ID, "planning"),
        ("terminal_status", RUN_ID, "applied"),
    ]


@pytest.mark.asyncio
async def test_concurrent_pollers_share_one_client(settings: Settings) -> None:
    handler = _workspace_handler(
        {
            "ws-a": [
                ("run-a", "queued"),
                ("run-a", "planning"),
                ("run-a", "planned"),
                ("run-a", "applying"),
                ("run-a", "applied"),
            ],
            "ws-b": [
                ("run-b", "planning"),
                ("run-b", "planning"),
                ("run-b2", "queued"),
                ("run-b2", "errored"),
            ],
        }
    )

    async with _live_client(settings, handler) as client:
        events_a, events_b = await asyncio.gather(
            _collect(RunStatusPoller(client, TOKEN, "ws-a", FAST, LONG)),
            _collect(RunStatusPoller(client, TOKEN, "ws-b", FAST, LONG)),
        )

    assert _summary(events_a) == [
        ("run_detected", "run-a", "queued"),
        ("status_change", "run-a", "planning"),
        ("status_change", "run-a", "planned"),
        ("status_change", "run-a", "applying"),
        ("terminal_status", "run-a", "applied"),
    ]
    assert _summary(events_b) == [
        ("run_detected", "run-b", "planning"),
        ("new_run", "run-b2", "queued"),
        ("terminal_status", "run-b2", "errored"),
    ]
    for events in (events_a, events_b):
        assert all(a.timestamp < b.timestamp for a, b in zip(events, events[1:]))
        assert sum(event.is_terminal for event in events) == 1


@pytest.mark.asyncio
async def test_timestamps_strictly_increase_on_frozen_clock() -> None:
    frozen = datetime(2024, 5, 1, tzinfo=timezone.utc)
    client = _client(_runs(status="queued"), _runs(status="planning"), _runs(status="applied"))

    events = await _collect(
        RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG, now=lambda: frozen)
    )

    assert [event.timestamp for event in events] == [
        frozen,
        frozen + timedelta(microseconds=1),
        frozen + timedelta(microseconds=2),
    ]


@pytest.mark.asyncio
async def test_poller_is_single_use() -> None:
    client = _client(_runs(status="applied"), _runs(status="applied"))
    poller = RunStatusPoller(client, TOKEN, WORKSPACE_ID, FAST, LONG)
    await _collect(poller)

    with pytest.raises(RuntimeError, match="single-use"):
        await _collect(poller)


def test_poller_rejects_non_positive_windows() -> None:
    with pytest.raises(ValueError):
        RunStatusPoller(AsyncMock(), TOKEN, WORKSPACE_ID, timedelta(0), LONG)
    with pytest.raises(ValueError):
        RunStatusPoller(AsyncMock(), TOKEN, WORKSPACE_ID, FAST, timedelta(0))


def test_event_to_dict() -> None:
    event = StreamEvent(
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        run_id=RUN_ID,
        status="applied",
        elapsed=timedelta(seconds=65, milliseconds=250),
        event_type=EventType.TERMINAL_STATUS,
        previous_status="applying",
        message="Run completed with status: applied",
    )

    assert event.to_dict() == {
        "timestamp": "2024-05-01T12:00:00+00:00",
        "run_id": RUN_ID,
        "status": "applied",
        "elapsed": "1m5.25s",
        "event_type": "terminal_status",
        "prev_status": "applying",
        "message": "Run completed with status: applied",
    }
    assert event.is_terminal


async def _no_events():
    return
    yield  # pragma: no cover


@pytest.mark.asyncio
async def test_public_helpers_clamp_window(settings: Settings) -> None:
    client = HCPTerraformClient(settings, transport=AsyncMock(spec=Transport))

    with patch("hcp_terraform.streaming.RunStatusPoller") as poller_cls:
        poller_cls.return_value.events = _no_events
        events = await stream_run_status(
            client, TOKEN, WORKSPACE_ID, poll_interval_seconds=0, timeout_minutes=500
        )

    assert events == []
    args = poller_cls.call_args.args
    assert args[3] == timedelta(seconds=2)
    assert args[4] == timedelta(minutes=60)


@pytest.mark.asyncio
async def test_public_helpers_default_to_client_settings(settings: Settings) -> None:
    settings.streaming.poll_interval_seconds = 7
    settings.streaming.timeout_minutes = 3
    client = HCPTerraformClient(settings, transport=AsyncMock(spec=Transport))

    with patch("hcp_terraform.streaming.RunStatusPoller") as poller_cls:
        poller_cls.return_value.events = _no_events
        async for _ in watch_run_status(client, TOKEN, WORKSPACE_ID):
            pass

    args = poller_cls.call_args.args
    assert args[3] == timedelta(seconds=7)
    assert args[4] == timedelta(minutes=3)


@pytest.mark.asyncio
async def test_stream_run_status_honors_cancel_event() -> None:
    client = AsyncMock()
    client.settings = Settings()
    client.list_runs.return_value = _runs(status="planning")
    cancel = asyncio.Event()
    cancel.set()

    events = await stream_run_status(client, TOKEN, WORKSPACE_ID, cancel_event=cancel)

    assert [event.event_type for event in events] == [EventType.RUN_DETECTED, EventType.CANCELED]
