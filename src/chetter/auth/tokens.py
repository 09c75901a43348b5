# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""GitHub App credentials.

The App authenticates with an RS256-signed JWT, then trades it for an
installation access token scoped to one installation. Installation tokens
live for an hour; ``CredentialManager`` caches one per installation and
refreshes it shortly before it expires.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
import jwt

from chetter.errors import AuthError

logger = logging.getLogger(__name__)

# GitHub rejects App JWTs that expire more than 10 minutes out.
_JWT_LIFETIME = timedelta(minutes=9)
# Backdate iat to tolerate clock drift between us and GitHub.
_JWT_DRIFT = timedelta(seconds=60)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class InstallationToken:
    token: str
    expires_at: datetime
    installation_id: int

    def valid_until(self, instant: datetime) -> bool:
        return self.expires_at > instant


def create_app_jwt(app_id: int, private_key: str, now: datetime | None = None) -> str:
    """Sign a short-lived JWT identifying the GitHub App."""
    now = now or _utcnow()
    payload = {
        "iss": str(app_id),
        "iat": now - _JWT_DRIFT,
        "exp": now + _JWT_LIFETIME,
    }
    try:
        return jwt.encode(payload, private_key, algorithm="RS256")
    except (jwt.PyJWTError, ValueError, TypeError) as exc:
        raise AuthError(f"Cannot sign App JWT: {exc}") from exc


def _parse_expiry(value: str) -> datetime:
    # GitHub returns e.g. "2026-07-11T22:14:10Z"
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class CredentialManager:
    """Shared, self-refreshing cache of installation access tokens.

    Parameters
    ----------
    app_id:
        Numeric GitHub App id.
    private_key:
        PEM-encoded RSA private key of the App.
    api_url:
        GitHub REST API root.
    refresh_margin:
        A cached token is reused only while it stays valid this many seconds
        past now.
    client:
        Optional HTTP client; one is created (and owned) otherwise.
    clock:
        Returns the current UTC time. Injectable for tests.
    """

    def __init__(
        self,
        app_id: int,
        private_key: str,
        *,
        api_url: str = "https://api.github.com",
        refresh_margin: float = 60.0,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._app_id = app_id
        self._private_key = private_key
        self._margin = timedelta(seconds=refresh_margin)
        self._clock = clock
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=10.0),
        )
        self._tokens: dict[int, InstallationToken] = {}
        self._pending: dict[int, asyncio.Task[InstallationToken]] = {}

    async def get_token(self, installation_id: int) -> str:
        """Return a token for *installation_id*, refreshing it if needed.

        Concurrent callers share a single in-flight exchange per installation.
        Raises ``AuthError`` if the exchange fails.
        """
        cached = self._tokens.get(installation_id)
        if cached is not None and cached.valid_until(self._clock() + self._margin):
            return cached.token

        pending = self._pending.get(installation_id)
        if pending is None:
            pending = asyncio.create_task(
                self._refresh(installation_id),
                name=f"token-refresh-{installation_id}",
            )
            self._pending[installation_id] = pending
            pending.add_done_callback(
                lambda task: self._forget_pending(installation_id, task)
            )
        # A cancelled caller must not cancel the exchange other callers await.
        token = await asyncio.shield(pending)
        return token.token

    def invalidate(self, installation_id: int) -> None:
        """Drop the cached token, e.g. after GitHub answered 401."""
        if self._tokens.pop(installation_id, None) is not None:
            logger.info("Invalidated token for installation %d", installation_id)

    def _forget_pending(self, installation_id: int, task: asyncio.Task) -> None:
        if self._pending.get(installation_id) is task:
            del self._pending[installation_id]
        # Retrieved here too, since every awaiter may have been cancelled.
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Token refresh for installation %d failed", installation_id)

    async def _refresh(self, installation_id: int) -> InstallationToken:
        assertion = create_app_jwt(self._app_id, self._private_key, self._clock())
        try:
            resp = await self._client.post(
                f"/app/installations/{installation_id}/access_tokens",
                headers={
                    "Authorization": f"Bearer {assertion}",
                    "Accept": "application/vnd.github+json",
                },
            )
        except httpx.HTTPError as exc:
            raise AuthError(
                f"Token exchange for installation {installation_id} failed: {exc}"
            ) from exc

        if resp.status_code != 201:
            detail = resp.text[:200] if resp.text else str(resp.status_code)
            raise AuthError(
                f"GitHub refused token for installation {installation_id} "
                f"({resp.status_code}): {detail}"
            )

        try:
            body = resp.json()
            token = InstallationToken(
                token=body["token"],
                expires_at=_parse_expiry(body["expires_at"]),
                installation_id=installation_id,
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthError(f"Malformed token response: {exc}") from exc

        self._tokens[installation_id] = token
        logger.info(
            "Refreshed token for installation %d (expires %s)",
            installation_id,
            token.expires_at.isoformat(),
        )
        return token

    async def close(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_client:
            await self._client.aclose()
