"""Run status polling and streaming.

``RunStatusPoller`` watches the most recent run of a workspace until it
reaches a terminal status, the deadline passes, or the caller cancels.
Each outcome ends the stream with exactly one event of its own type, so
callers can always tell "the run finished" apart from "we stopped
looking".
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from hcp_terraform.client import HCPTerraformClient
from hcp_terraform.config import StreamingSettings
from hcp_terraform.errors import ClassifiedError, ErrorKind
from hcp_terraform.models import RunList, RunListOptions, is_terminal_status
from hcp_terraform.utils.time import format_elapsed, utc_now

logger = logging.getLogger(__name__)

# Failures that can never fix themselves by polling again.
FATAL_POLL_ERRORS = frozenset({ErrorKind.AUTHENTICATION, ErrorKind.AUTHORIZATION})


class EventType(str, Enum):
    RUN_DETECTED = "run_detected"
    NEW_RUN = "new_run"
    STATUS_CHANGE = "status_change"
    TERMINAL_STATUS = "terminal_status"
    TIMEOUT = "timeout"
    CANCELED = "canceled"


TERMINAL_EVENT_TYPES = frozenset({EventType.TERMINAL_STATUS, EventType.TIMEOUT, EventType.CANCELED})


@dataclass(frozen=True)
class StreamEvent:
    timestamp: datetime
    run_id: str | None
    status: str | None
    elapsed: timedelta
    event_type: EventType
    previous_status: str | None = None
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "elapsed": format_elapsed(self.elapsed),
        }
        if self.run_id is not None:
            payload["run_id"] = self.run_id
        if self.status is not None:
            payload["status"] = self.status
        if self.previous_status is not None:
            payload["prev_status"] = self.previous_status
        if self.message is not None:
            payload["message"] = self.message
        return payload


class _Outcome(Enum):
    DONE = "done"
    EXPIRED = "expired"
    CANCELED = "canceled"


class RunStatusPoller:
    """Single-use poll loop over ``client.list_runs`` for one workspace.

    ``poll_interval`` and ``timeout`` are used as given; range clamping is
    the job of ``StreamingSettings`` in the public helpers below.
    """

    def __init__(
        self,
        client: HCPTerraformClient,
        token: str,
        workspace_id: str,
        poll_interval: timedelta,
        timeout: timedelta,
        *,
        cancel_event: asyncio.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        if poll_interval <= timedelta(0):
            raise ValueError("poll_interval must be positive")
        if timeout <= timedelta(0):
            raise ValueError("timeout must be positive")
        self._client = client
        self._token = token
        self._workspace_id = workspace_id
        self._interval = poll_interval.total_seconds()
        self._timeout = timeout
        self._cancel_event = cancel_event or asyncio.Event()
        self._clock = clock
        self._now = now

        self._started = False
        self._started_at = 0.0
        self._last_timestamp: datetime | None = None
        self._last_run_id: str | None = None
        self._last_status: str | None = None
        self._finished = False

    # --- event construction -------------------------------------------------

    def _event(
        self,
        event_type: EventType,
        run_id: str | None,
        status: str | None,
        *,
        previous_status: str | None = None,
        message: str | None = None,
    ) -> StreamEvent:
        timestamp = self._now()
        # Keep timestamps strictly increasing even on coarse clocks.
        if self._last_timestamp is not None and timestamp <= self._last_timestamp:
            timestamp = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = timestamp
        elapsed = timedelta(seconds=max(0.0, self._clock() - self._started_at))
        if event_type in TERMINAL_EVENT_TYPES:
            self._finished = True
        return StreamEvent(
            timestamp=timestamp,
            run_id=run_id,
            status=status,
            elapsed=elapsed,
            event_type=event_type,
            previous_status=previous_status,
            message=message,
        )

    def _timeout_event(self) -> StreamEvent:
        logger.info("Streaming timeout reached after %s", format_elapsed(self._timeout))
        return self._event(
            EventType.TIMEOUT,
            self._last_run_id,
            self._last_status,
            message=f"Streaming stopped after {format_elapsed(self._timeout)} timeout",
        )

    def _canceled_event(self) -> StreamEvent:
        logger.info("Streaming canceled for workspace %s", self._workspace_id)
        return self._event(
            EventType.CANCELED,
            self._last_run_id,
            self._last_status,
            message="Streaming canceled by caller",
        )

    # --- waiting ------------------------------------------------------------

    async def _race(self, work: Awaitable[Any] | None, wake_at: float) -> tuple[_Outcome, Any]:
        """Wait for ``work`` (or just for ``wake_at``) unless cancellation comes first.

        Cancellation is checked before the work result, so it wins when both
        complete in the same loop iteration. Unfinished work is abandoned.
        """
        cancel_waiter = asyncio.ensure_future(self._cancel_event.wait())
        work_task = asyncio.ensure_future(work) if work is not None else None
        waiters = {cancel_waiter}
        if work_task is not None:
            waiters.add(work_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=max(0.0, wake_at - self._clock()),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            pending = [task for task in waiters if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._cancel_event.is_set():
            if work_task is not None and work_task.done() and not work_task.cancelled():
                work_task.exception()
            return _Outcome.CANCELED, None
        if work_task is not None and work_task in done:
            return _Outcome.DONE, work_task.result()
        return _Outcome.EXPIRED, None

    async def _fetch_latest(self) -> RunList:
        return await self._client.list_runs(
            self._token,
            self._workspace_id,
            RunListOptions(page_size=1, page_number=1),
        )

    # --- main loop ----------------------------------------------------------

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("RunStatusPoller instances are single-use")
        self._started = True

        self._started_at = self._clock()
        deadline = self._started_at + self._timeout.total_seconds()
        logger.info("Starting run status polling for workspace %s", self._workspace_id)

        # Errors from the initial lookup go straight to the caller.
        latest = (await self._fetch_latest()).latest
        if latest is not None:
            self._last_run_id, self._last_status = latest.id, latest.status
            logger.info("Detected run %s with status: %s", latest.id, latest.status)
            yield self._event(EventType.RUN_DETECTED, latest.id, latest.status)

        next_tick = self._started_at + self._interval
        while True:
            if self._cancel_event.is_set():
                yield self._canceled_event()
                return

            outcome, _ = await self._race(None, min(next_tick, deadline))
            if outcome is _Outcome.CANCELED:
                yield self._canceled_event()
                return
            now = self._clock()
            if now >= deadline:
                yield self._timeout_event()
                return
            if now < next_tick:
                continue
            while next_tick <= now:
                next_tick += self._interval

            outcome, runs = await self._race_tick(deadline)
            if outcome is _Outcome.CANCELED:
                yield self._canceled_event()
                return
            if outcome is _Outcome.EXPIRED:
                yield self._timeout_event()
                return
            if runs is None:
                continue

            for event in self._observe(runs):
                yield event
            if self._finished:
                return

    async def _race_tick(self, deadline: float) -> tuple[_Outcome, RunList | None]:
        try:
            return await self._race(self._fetch_latest(), deadline)
        except ClassifiedError as exc:
            if exc.kind in FATAL_POLL_ERRORS:
                logger.error("Aborting run status polling: %s", exc)
                raise
            logger.warning("Failed to poll runs: %s", exc)
            return _Outcome.DONE, None

    def _observe(self, runs: RunList) -> list[StreamEvent]:
        current = runs.latest
        if current is None:
            return []

        events: list[StreamEvent] = []
        previous_status: str | None = None
        if current.id != self._last_run_id:
            self._last_run_id, self._last_status = current.id, current.status
            logger.info("New run detected: %s with status: %s", current.id, current.status)
            events.append(self._event(EventType.NEW_RUN, current.id, current.status))
        elif current.status != self._last_status:
            previous_status, self._last_status = self._last_status, current.status
            if not is_terminal_status(current.status):
                logger.info("Run %s status changed to: %s", current.id, current.status)
                events.append(
                    self._event(
                        EventType.STATUS_CHANGE,
                        current.id,
                        current.status,
                        previous_status=previous_status,
                    )
                )

        if is_terminal_status(current.status):
            logger.info("Run %s reached terminal status: %s", current.id, current.status)
            events.append(
                self._event(
                    EventType.TERMINAL_STATUS,
                    current.id,
                    current.status,
                    previous_status=previous_status,
                    message=f"Run completed with status: {current.status}",
                )
            )
        return events


def _resolve_window(
    client: HCPTerraformClient,
    poll_interval_seconds: int | None,
    timeout_minutes: int | None,
) -> StreamingSettings:
    defaults = client.settings.streaming
    return StreamingSettings(
        poll_interval_seconds=(
            defaults.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        ),
        timeout_minutes=defaults.timeout_minutes if timeout_minutes is None else timeout_minutes,
    )


async def watch_run_status(
    client: HCPTerraformClient,
    token: str,
    workspace_id: str,
    *,
    poll_interval_seconds: int | None = None,
    timeout_minutes: int | None = None,
    cancel_event: asyncio.Event | None = None,
) -> AsyncIterator[StreamEvent]:
    """Yield ``StreamEvent`` objects as they are observed.

    The interval is clamped to [2, 30] seconds and the timeout to [1, 60]
    minutes; ``None`` falls back to the client's streaming settings.
    """
    window = _resolve_window(client, poll_interval_seconds, timeout_minutes)
    poller = RunStatusPoller(
        client,
        token,
        workspace_id,
        window.poll_interval,
        window.timeout,
        cancel_event=cancel_event,
    )
    async for event in poller.events():
        yield event


async def stream_run_status(
    client: HCPTerraformClient,
    token: str,
    workspace_id: str,
    *,
    poll_interval_seconds: int | None = None,
    timeout_minutes: int | None = None,
    cancel_event: asyncio.Event | None = None,
) -> list[StreamEvent]:
    """Collect every event of a ``watch_run_status`` stream into a list."""
    return [
        event
        async for event in watch_run_status(
            client,
            token,
            workspace_id,
            poll_interval_seconds=poll_interval_seconds,
            timeout_minutes=timeout_minutes,
            cancel_event=cancel_event,
        )
    ]
