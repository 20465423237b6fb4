"""GitHub credential resolution, URL injection and secret masking."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from urllib.parse import quote, urlsplit, urlunsplit

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

GITHUB_TOKEN_ENV_VARS: tuple[str, ...] = ("SFGIT_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN")
KEYRING_SERVICE = "sfgit.github_auth"
KEYRING_KEY = "pat"
MASK = "********"


def resolve_github_token(configured: str = "") -> str:
    """Return the GitHub token from config, then environment, then keyring."""
    token = str(configured or "").strip()
    if token:
        return token
    for key in GITHUB_TOKEN_ENV_VARS:
        token = str(os.getenv(key) or "").strip()
        if token:
            return token
    try:
        token = str(keyring.get_password(KEYRING_SERVICE, KEYRING_KEY) or "").strip()
    except KeyringError as exc:
        logger.debug("Keyring lookup failed: %s", exc)
        return ""
    return token


def inject_credentials(repo_url: str, username: str, token: str) -> str:
    """Return ``repo_url`` with ``username:token`` embedded for HTTPS cloning.

    URLs that already carry userinfo, and non-HTTP(S) URLs, are returned
    unchanged.
    """
    url = str(repo_url or "").strip()
    parts = urlsplit(url)
    if parts.scheme not in {"http", "https"} or not parts.netloc or "@" in parts.netloc:
        return url
    if not token:
        return url
    user = quote(str(username or "x-access-token"), safe="")
    secret = quote(str(token), safe="")
    return urlunsplit((parts.scheme, f"{user}:{secret}@{parts.netloc}", parts.path, parts.query, parts.fragment))


def mask_secrets(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each non-empty secret (raw or URL-quoted) with a mask."""
    masked = str(text or "")
    for secret in secrets:
        value = str(secret or "")
        if len(value) < 4:
            continue
        masked = masked.replace(value, MASK)
        quoted = quote(value, safe="")
        if quoted != value:
            masked = masked.replace(quoted, MASK)
    return masked
