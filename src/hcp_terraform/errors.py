"""Closed error taxonomy for every HCP Terraform API failure."""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import Enum
from typing import Any

import httpx

from hcp_terraform.backoff import parse_ratelimit_reset, parse_retry_after


class ErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    # Transport failures and every 5xx.
    NETWORK = "network"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.NETWORK})

_STATUS_KINDS: dict[int, tuple[ErrorKind, str]] = {
    401: (ErrorKind.AUTHENTICATION, "Invalid or missing authentication token"),
    403: (ErrorKind.AUTHORIZATION, "Insufficient permissions for this operation"),
    404: (ErrorKind.NOT_FOUND, "Resource not found"),
    422: (ErrorKind.VALIDATION, "Invalid request parameters"),
    429: (ErrorKind.RATE_LIMIT, "Rate limit exceeded"),
}


class ClassifiedError(Exception):
    """A failure tagged with exactly one ``ErrorKind``.

    ``status_code`` is None for failures that never produced an HTTP
    response (connection errors, local validation). ``retry_after`` is in
    seconds and only set for rate-limit errors that carried a hint.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"HCP Terraform API error ({self.status_code}): {self.message}"
        return f"HCP Terraform error: {self.message}"

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(kind={self.kind.value!r}, status_code={self.status_code!r}, "
            f"message={self.message!r})"
        )

    def is_retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": True,
            "message": str(self),
            "error_type": self.kind.value,
        }
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        if self.retry_after is not None:
            payload["retry_after_seconds"] = self.retry_after
        return payload


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def classify(
    status_code: int,
    headers: Mapping[str, str] | None = None,
    *,
    now: float | None = None,
    detail: str | None = None,
) -> ClassifiedError:
    """Map an HTTP status (and rate-limit headers) to a ``ClassifiedError``."""
    retry_after: float | None = None
    if status_code in _STATUS_KINDS:
        kind, message = _STATUS_KINDS[status_code]
        if kind is ErrorKind.RATE_LIMIT:
            retry_after = parse_retry_after(headers)
            if retry_after is None:
                retry_after = parse_ratelimit_reset(headers, now=now)
    elif 500 <= status_code <= 599:
        kind, message = ErrorKind.NETWORK, "Server error"
    else:
        kind, message = ErrorKind.UNKNOWN, "Unexpected response"

    if detail:
        message = f"{message}: {detail}"
    return ClassifiedError(kind, message, status_code=status_code, retry_after=retry_after)


def classify_response(response: httpx.Response, *, now: float | None = None) -> ClassifiedError:
    return classify(
        response.status_code,
        response.headers,
        now=now,
        detail=_error_detail(response),
    )


def _error_detail(response: httpx.Response) -> str | None:
    """Pull human text out of a JSON:API ``errors`` document, if there is one."""
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError, httpx.ResponseNotRead):
        return None
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if not isinstance(errors, list):
        return None
    parts: list[str] = []
    for item in errors:
        if isinstance(item, dict):
            text = item.get("detail") or item.get("title")
            if text:
                parts.append(str(text))
        elif isinstance(item, str):
            parts.append(item)
    return "; ".join(parts) or None


def authentication_error(message: str = "Authentication token is required") -> ClassifiedError:
    return ClassifiedError(ErrorKind.AUTHENTICATION, message)


def validation_error(message: str, *, cause: BaseException | None = None) -> ClassifiedError:
    return ClassifiedError(ErrorKind.VALIDATION, message, cause=cause)


def network_error(message: str, *, cause: BaseException | None = None) -> ClassifiedError:
    return ClassifiedError(ErrorKind.NETWORK, message, cause=cause)
