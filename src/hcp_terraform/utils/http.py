"""Shared HTTP utilities."""

from __future__ import annotations

from urllib.parse import urlparse

_BASE_URL_ALLOWED_SCHEMES = frozenset({"http", "https"})

API_PATH = "/api/v2"


def normalize_base_url(value: str) -> str:
    """Normalize and validate the API base URL.

    A bare host address (``https://tfe.example.com``) gets the ``/api/v2``
    path appended; trailing slashes are dropped.
    """
    candidate = value.strip()
    if not candidate:
        raise ValueError("base_url must not be empty")

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in _BASE_URL_ALLOWED_SCHEMES:
        raise ValueError("base_url must use http or https")
    if not parsed.netloc:
        raise ValueError("base_url must include host")
    if parsed.query or parsed.fragment:
        raise ValueError("base_url must not include query or fragment")
    if parsed.username or parsed.password:
        raise ValueError("base_url must not include userinfo")

    normalized_path = parsed.path.rstrip("/")
    if not normalized_path:
        normalized_path = API_PATH
    return f"{parsed.scheme.lower()}://{parsed.netloc}{normalized_path}"


def extract_hostname(url: str) -> str:
    if not url:
        return ""
    return urlparse(url).hostname or ""
