"""Bearer token resolution.

Precedence: the configured token (``HCP_TERRAFORM_TOKEN`` / ``TFE_TOKEN``),
then a caller-supplied value, then the Terraform CLI credentials file entry
for the API host. Token values are never logged.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from hcp_terraform.config import Settings
from hcp_terraform.utils.http import extract_hostname

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def default_credentials_path() -> Path:
    return Path.home() / ".terraform.d" / "credentials.tfrc.json"


def strip_bearer(value: str) -> str:
    value = value.strip()
    if value.startswith(BEARER_PREFIX):
        return value[len(BEARER_PREFIX):].strip()
    return value


def read_credentials_file(hostname: str, path: Path | None = None) -> str:
    """Return the token stored for ``hostname`` in a credentials.tfrc.json file.

    A missing or unreadable file, or a host with no entry, yields ``""``.
    """
    if not hostname:
        return ""
    credentials_path = path or default_credentials_path()
    try:
        document = json.loads(credentials_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return ""
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Could not read Terraform credentials file %s: %s", credentials_path, exc)
        return ""

    credentials = document.get("credentials") if isinstance(document, dict) else None
    if not isinstance(credentials, dict):
        return ""
    entry = credentials.get(hostname)
    if not isinstance(entry, dict):
        return ""
    token = entry.get("token")
    return token.strip() if isinstance(token, str) else ""


def resolve_token(settings: Settings, explicit: str | None = None) -> str:
    configured = settings.auth.token
    if configured is not None and configured.get_secret_value().strip():
        logger.debug("Using token from environment")
        return configured.get_secret_value().strip()

    if explicit and strip_bearer(explicit):
        logger.debug("Using caller-supplied token")
        return strip_bearer(explicit)

    hostname = extract_hostname(settings.api.base_url)
    path = Path(settings.auth.credentials_file).expanduser() if settings.auth.credentials_file else None
    token = read_credentials_file(hostname, path)
    if token:
        logger.debug("Using token from Terraform credentials file for %s", hostname)
    else:
        logger.debug("No HCP Terraform token found")
    return token
