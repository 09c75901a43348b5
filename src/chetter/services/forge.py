# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""GitHub reference API adapter.

This is the ONLY module that talks to the GitHub REST and GraphQL APIs on
behalf of an installation. Callers get a ``RepositoryClient`` (a
``ReferenceStore``) for one repository and never see URLs, tokens or status
codes.
"""

from __future__ import annotations

import asyncio
import email.utils
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from chetter.auth.tokens import CredentialManager
from chetter.errors import (
    ForgeError,
    PermanentApiError,
    ReferenceConflictError,
    ReferenceNotFoundError,
    TransientApiError,
    ValidationError,
)
from chetter.schemas.events import Repository

logger = logging.getLogger(__name__)

_API_VERSION = "2022-11-28"
_PER_PAGE = 100
# GitHub cuts GraphQL requests off after 60 s; deleteRef is slow.
_DELETE_BATCH = 100

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Reference:
    path: str  # full name, e.g. "refs/heads/pr/10/v1"
    sha: str
    node_id: str = ""  # GraphQL id, needed for batched deletion


@dataclass(frozen=True, slots=True)
class PullRequestInfo:
    number: int
    state: str  # "open", "closed", "merged"
    base_branch: str
    head_sha: str
    base_sha: str


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff with full jitter."""

    attempts: int = 5
    base_delay: float = 0.2
    max_delay: float = 5.0

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after failed attempt number *attempt* (0-based)."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay)
        ceiling = min(self.max_delay, self.base_delay * (2**attempt))
        return random.uniform(0, ceiling)


# ---------------------------------------------------------------------------
# Protocol (abstract interface)
# ---------------------------------------------------------------------------


class ReferenceStore(Protocol):
    """Reference operations on one repository.

    Mutations may raise ``TransientApiError`` (after retries are exhausted) or
    ``PermanentApiError``.
    """

    async def list_references(self, prefix: str) -> list[Reference]:
        """Return every reference whose full name starts with *prefix*, sorted."""
        ...

    async def create_reference(self, path: str, sha: str) -> None:
        """Create *path*. Raises ``ReferenceConflictError`` if it exists."""
        ...

    async def update_reference(self, path: str, sha: str) -> None:
        """Force *path* to *sha*. Raises ``ReferenceNotFoundError`` if absent."""
        ...

    async def delete_reference(self, path: str) -> None:
        """Delete *path*. Deleting an absent reference succeeds."""
        ...

    async def delete_references(self, refs: list[Reference]) -> list[str]:
        """Delete *refs* in order, in as few calls as possible.

        Returns the paths that could not be deleted. Absent references count
        as deleted.
        """
        ...

    async def get_pull_request(self, number: int) -> PullRequestInfo:
        """Fetch the current state of a pull request."""
        ...


# ---------------------------------------------------------------------------
# Implementation
# ---------------------------------------------------------------------------


def _short(path: str) -> str:
    """Strip the leading ``refs/`` as the git/refs endpoints expect."""
    return path[len("refs/"):] if path.startswith("refs/") else path


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    if raw:
        try:
            return float(raw)
        except ValueError:
            pass
        # HTTP-date form
        try:
            when = email.utils.parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
    if resp.headers.get("X-RateLimit-Remaining") == "0":
        reset = resp.headers.get("X-RateLimit-Reset")
        if reset:
            try:
                return max(0.0, float(reset) - time.time())
            except ValueError:
                return None
    return None


def _message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500]
    if isinstance(body, dict):
        return str(body.get("message", ""))
    return ""


def _parse_reference(raw: dict[str, Any]) -> Reference | None:
    obj = raw.get("object") or {}
    if obj.get("type") not in ("commit", "tag") or not obj.get("sha"):
        logger.warning("Skipping reference with unexpected target: %s", raw.get("ref"))
        return None
    return Reference(path=raw["ref"], sha=obj["sha"], node_id=raw.get("node_id") or "")


def _parse_pull_request(raw: dict[str, Any]) -> PullRequestInfo:
    # GitHub reports a merged pull request as state "closed" plus merged flags.
    if raw.get("merged") or raw.get("merged_at"):
        state = "merged"
    else:
        state = raw.get("state", "open")
    base = raw.get("base") or {}
    head = raw.get("head") or {}
    return PullRequestInfo(
        number=raw["number"],
        state=state,
        base_branch=base.get("ref", ""),
        head_sha=head.get("sha", ""),
        base_sha=base.get("sha", ""),
    )


def graphql_endpoint(api_url: str) -> str:
    """GraphQL endpoint that goes with REST root *api_url*.

    ``https://api.github.com`` -> ``https://api.github.com/graphql``;
    ``https://ghe.example/api/v3`` -> ``https://ghe.example/api/graphql``.
    """
    root = api_url.rstrip("/")
    if root.endswith("/api/v3"):
        return root[: -len("/v3")] + "/graphql"
    return root + "/graphql"


class ForgeClient:
    """GitHub API client authenticated as an App installation.

    Parameters
    ----------
    credentials:
        Source of installation tokens, shared with every other user.
    namespace:
        Every reference path handled must start with ``<namespace>/``.
    retry:
        Backoff applied to transient failures of every call.
    graphql_url:
        GraphQL endpoint, derived from *api_url* when omitted.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        *,
        namespace: str,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        retry: RetryPolicy | None = None,
        graphql_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._credentials = credentials
        self._graphql_url = graphql_url or graphql_endpoint(api_url)
        self._namespace = namespace.rstrip("/")
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._client = client or httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": _API_VERSION,
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
            ),
        )

    def repository(self, repo: Repository) -> RepositoryClient:
        """Return a ``ReferenceStore`` bound to *repo*."""
        return RepositoryClient(self, repo)

    def check_path(self, path: str) -> str:
        """Refuse to touch anything outside the configured namespace."""
        if not path.startswith(f"{self._namespace}/"):
            raise ValidationError(f"Reference {path!r} is outside {self._namespace}/")
        return path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        installation_id: int,
        *,
        json: dict | None = None,
        params: dict | None = None,
        expected: frozenset[int] = frozenset(),
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Responses whose status is in *expected* are returned to the caller for
        interpretation instead of being translated into exceptions.
        """
        attempts = max(1, self._retry.attempts)
        for attempt in range(attempts):
            try:
                return await self._send(
                    method,
                    url,
                    installation_id,
                    json=json,
                    params=params,
                    expected=expected,
                )
            except TransientApiError as exc:
                if attempt + 1 >= attempts:
                    logger.error(
                        "%s %s failed after %d attempts: %s", method, url, attempts, exc
                    )
                    raise
                wait = self._retry.delay(attempt, exc.retry_after)
                logger.warning(
                    "%s %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    method,
                    url,
                    attempt + 1,
                    attempts,
                    wait,
                    exc,
                )
                await self._sleep(wait)
        raise AssertionError("unreachable")

    async def _send(
        self,
        method: str,
        url: str,
        installation_id: int,
        *,
        json: dict | None,
        params: dict | None,
        expected: frozenset[int],
    ) -> httpx.Response:
        """Send one request and translate HTTP failures to domain exceptions."""
        token = await self._credentials.get_token(installation_id)
        try:
            resp = await self._client.request(
                method,
                url,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as exc:
            raise TransientApiError(f"GitHub request timed out: {method} {url}") from exc
        except httpx.TransportError as exc:
            raise TransientApiError(f"Cannot reach GitHub: {method} {url}: {exc}") from exc

        status = resp.status_code
        if status < 400 or status in expected:
            return resp

        detail = _message(resp) or str(status)
        if status == 401:
            # Token revoked or expired early; the retry fetches a fresh one.
            self._credentials.invalidate(installation_id)
            raise TransientApiError(f"GitHub rejected token: {detail}", status)
        if status == 429 or status >= 500:
            raise TransientApiError(
                f"GitHub API error {status} on {method} {url}: {detail}",
                status,
                _retry_after(resp),
            )
        if status == 403 and (
            resp.headers.get("X-RateLimit-Remaining") == "0"
            or "rate limit" in detail.lower()
        ):
            raise TransientApiError(
                f"GitHub rate limit on {method} {url}: {detail}",
                status,
                _retry_after(resp),
            )
        raise PermanentApiError(
            f"GitHub API error {status} on {method} {url}: {detail}", status
        )

    async def graphql(
        self, query: str, variables: dict[str, Any], installation_id: int
    ) -> dict[str, Any]:
        """Run a GraphQL document and return the decoded body.

        GraphQL reports most failures in the body's ``errors`` list with a 200
        status; interpreting them is left to the caller.
        """
        resp = await self.request(
            "POST",
            self._graphql_url,
            installation_id,
            json={"query": query, "variables": variables},
        )
        try:
            body = resp.json()
        except ValueError as exc:
            raise PermanentApiError(f"Malformed GraphQL response: {exc}", resp.status_code) from exc
        if not isinstance(body, dict):
            raise PermanentApiError("Malformed GraphQL response", resp.status_code)
        return body

    async def close(self) -> None:
        """Close the underlying HTTP client.

        Should be called during application shutdown.
        """
        await self._client.aclose()


class RepositoryClient:
    """``ReferenceStore`` implementation for one repository."""

    def __init__(self, forge: ForgeClient, repo: Repository) -> None:
        self._forge = forge
        self.repo = repo
        self._base = f"/repos/{repo.owner}/{repo.name}"

    @property
    def full_name(self) -> str:
        return self.repo.full_name

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self._forge.request(
            method, url, self.repo.installation_id, **kwargs
        )

    async def list_references(self, prefix: str) -> list[Reference]:
        self._forge.check_path(prefix)
        # matching-refs is a plain prefix match ("pr/1" also matches "pr/10"),
        # so filter on the exact prefix afterwards.
        url: str | None = f"{self._base}/git/matching-refs/{_short(prefix).rstrip('/')}"
        params: dict | None = {"per_page": _PER_PAGE}
        refs: list[Reference] = []
        while url is not None:
            resp = await self._request("GET", url, params=params)
            for raw in resp.json():
                ref = _parse_reference(raw)
                if ref is not None and ref.path.startswith(prefix):
                    refs.append(ref)
            url = resp.links.get("next", {}).get("url")
            params = None  # the next link carries its own query string
        return sorted(refs, key=lambda r: r.path)

    async def create_reference(self, path: str, sha: str) -> None:
        self._forge.check_path(path)
        resp = await self._request(
            "POST",
            f"{self._base}/git/refs",
            json={"ref": path, "sha": sha},
            expected=frozenset({422}),
        )
        if resp.status_code == 422:
            message = _message(resp)
            if "already exists" in message.lower():
                raise ReferenceConflictError(path)
            raise PermanentApiError(f"Cannot create {path}: {message}", 422)
        logger.info("Created %s at %s", path, sha[:8])

    async def update_reference(self, path: str, sha: str) -> None:
        self._forge.check_path(path)
        resp = await self._request(
            "PATCH",
            f"{self._base}/git/refs/{_short(path)}",
            json={"sha": sha, "force": True},
            expected=frozenset({404, 422}),
        )
        if resp.status_code in (404, 422):
            message = _message(resp)
            if resp.status_code == 404 or "does not exist" in message.lower():
                raise ReferenceNotFoundError(path)
            raise PermanentApiError(f"Cannot update {path}: {message}", 422)
        logger.info("Updated %s to %s", path, sha[:8])

    async def delete_reference(self, path: str) -> None:
        self._forge.check_path(path)
        resp = await self._request(
            "DELETE",
            f"{self._base}/git/refs/{_short(path)}",
            expected=frozenset({404, 422}),
        )
        if resp.status_code in (404, 422):
            message = _message(resp)
            if resp.status_code == 404 or "does not exist" in message.lower():
                logger.debug("%s already absent", path)
                return
            raise PermanentApiError(f"Cannot delete {path}: {message}", 422)
        logger.info("Deleted %s", path)

    async def delete_references(self, refs: list[Reference]) -> list[str]:
        failed: list[str] = []
        for start in range(0, len(refs), _DELETE_BATCH):
            chunk = refs[start:start + _DELETE_BATCH]
            for ref in chunk:
                self._forge.check_path(ref.path)
            if all(ref.node_id for ref in chunk):
                failed.extend(await self._delete_batch(chunk))
                continue
            for ref in chunk:
                try:
                    await self.delete_reference(ref.path)
                except ForgeError as exc:
                    logger.error("Cannot delete %s: %s", ref.path, exc)
                    failed.append(ref.path)
        return failed

    async def _delete_batch(self, chunk: list[Reference]) -> list[str]:
        """Delete *chunk* with one GraphQL request of ``deleteRef`` mutations."""
        # Top-level mutation fields run in document order.
        params = ", ".join(f"$ref{i}: ID!" for i in range(len(chunk)))
        fields = "\n".join(
            f"  delete_{i}: deleteRef(input: {{refId: $ref{i}}}) {{ clientMutationId }}"
            for i in range(len(chunk))
        )
        query = f"mutation DeleteRefs({params}) {{\n{fields}\n}}"
        variables = {f"ref{i}": ref.node_id for i, ref in enumerate(chunk)}

        logger.info("Deleting %d reference(s) in %s", len(chunk), self.full_name)
        try:
            body = await self._forge.graphql(query, variables, self.repo.installation_id)
        except ForgeError as exc:
            logger.error("Batch delete in %s failed: %s", self.full_name, exc)
            return [ref.path for ref in chunk]

        data = body.get("data") or {}
        rejected: set[str] = set()
        for error in body.get("errors") or []:
            where = error.get("path") or []
            # A reference deleted by someone else is already where we want it.
            if error.get("type") == "NOT_FOUND" and where:
                data[where[0]] = {}
                continue
            logger.error("deleteRef failed in %s: %s", self.full_name, error.get("message"))
            if where:
                rejected.add(where[0])
        failed = [
            ref.path
            for i, ref in enumerate(chunk)
            if f"delete_{i}" in rejected or data.get(f"delete_{i}") is None
        ]
        for ref in chunk:
            if ref.path not in failed:
                logger.info("Deleted %s", ref.path)
        return failed

    async def get_pull_request(self, number: int) -> PullRequestInfo:
        resp = await self._request("GET", f"{self._base}/pulls/{number}")
        return _parse_pull_request(resp.json())
