"""Retry backoff policy honoring the API's rate-limit headers.

Two headers can tell us how long to wait after a 429, and they use
different units:

- ``Retry-After``: a delta in whole seconds.
- ``x-ratelimit-reset``: an absolute unix epoch (seconds).

Each has its own parser so a malformed value in one never leaks into the
other. Anything else falls back to jittered exponential backoff.
"""

from __future__ import annotations

import random
import time
from collections.abc import Mapping
from dataclasses import dataclass, field

from hcp_terraform.config import RetrySettings

RETRY_AFTER_HEADER = "Retry-After"
RATELIMIT_RESET_HEADER = "x-ratelimit-reset"

HTTP_TOO_MANY_REQUESTS = 429


def get_header(headers: Mapping[str, str] | None, name: str) -> str | None:
    """Case-insensitive header lookup for plain dicts and ``httpx.Headers``."""
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def parse_retry_after(headers: Mapping[str, str] | None) -> float | None:
    """Return the ``Retry-After`` delay in seconds, or None when absent/unparseable."""
    raw = get_header(headers, RETRY_AFTER_HEADER)
    if raw is None:
        return None
    try:
        seconds = int(raw.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return float(seconds)


def parse_ratelimit_reset(
    headers: Mapping[str, str] | None,
    *,
    now: float | None = None,
) -> float | None:
    """Return seconds until ``x-ratelimit-reset``, clamped to >= 0.

    ``now`` is a unix timestamp; defaults to ``time.time()``.
    """
    raw = get_header(headers, RATELIMIT_RESET_HEADER)
    if raw is None:
        return None
    try:
        reset_at = int(raw.strip())
    except ValueError:
        return None
    current = time.time() if now is None else now
    return max(0.0, reset_at - current)


@dataclass(frozen=True)
class BackoffPolicy:
    min_delay: float = 1.0
    max_delay: float = 30.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    @classmethod
    def from_settings(
        cls, settings: RetrySettings, *, rng: random.Random | None = None
    ) -> "BackoffPolicy":
        return cls(
            min_delay=settings.min_backoff_seconds,
            max_delay=settings.max_backoff_seconds,
            rng=rng or random.Random(),
        )

    def exponential(self, attempt: int) -> float:
        """Jittered exponential delay for a zero-based attempt, within [min, max]."""
        base = self.min_delay * (2 ** max(attempt, 0))
        jittered = base + self.rng.uniform(0.0, base * 0.5)
        return min(max(jittered, self.min_delay), self.max_delay)

    def compute(
        self,
        attempt: int,
        status_code: int | None,
        headers: Mapping[str, str] | None = None,
        *,
        now: float | None = None,
    ) -> float:
        """Delay before the next attempt after a failed ``attempt``.

        A server-provided wait on a 429 is used as-is, even above ``max_delay``.
        """
        if status_code == HTTP_TOO_MANY_REQUESTS:
            retry_after = parse_retry_after(headers)
            if retry_after is not None:
                return retry_after
            reset_in = parse_ratelimit_reset(headers, now=now)
            if reset_in is not None:
                return reset_in
        return self.exponential(attempt)
