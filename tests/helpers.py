# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

from __future__ import annotations

from uuid import uuid4

from chetter.errors import (
    ForgeError,
    ReferenceConflictError,
    ReferenceNotFoundError,
    TransientApiError,
)
from chetter.schemas.events import CloseEvent, PushEvent, Repository, ReviewEvent
from chetter.services.forge import PullRequestInfo, Reference

NS = "refs/heads/pr"


# ---------------------------------------------------------------------------
# In-memory reference store
# ---------------------------------------------------------------------------


class FakeReferenceStore:
    """Dict-backed ``ReferenceStore`` that records every call.

    ``racing`` maps a path to a sha that another writer creates just before
    our create of that path lands. ``fail_delete`` holds paths whose deletion
    fails with a transient error.
    """

    def __init__(
        self,
        refs: dict[str, str] | None = None,
        pr_state: str = "closed",
    ) -> None:
        self.refs: dict[str, str] = dict(refs or {})
        self.calls: list[tuple[str, ...]] = []
        self.racing: dict[str, str] = {}
        self.fail_delete: set[str] = set()
        self.pr_state = pr_state

    @property
    def mutations(self) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]

    async def list_references(self, prefix: str) -> list[Reference]:
        self.calls.append(("list", prefix))
        return [
            Reference(path=p, sha=s)
            for p, s in sorted(self.refs.items())
            if p.startswith(prefix)
        ]

    async def create_reference(self, path: str, sha: str) -> None:
        self.calls.append(("create", path, sha))
        if path in self.racing:
            self.refs[path] = self.racing.pop(path)
        if path in self.refs:
            raise ReferenceConflictError(path)
        self.refs[path] = sha

    async def update_reference(self, path: str, sha: str) -> None:
        self.calls.append(("update", path, sha))
        if path not in self.refs:
            raise ReferenceNotFoundError(path)
        self.refs[path] = sha

    async def delete_reference(self, path: str) -> None:
        self.calls.append(("delete", path))
        if path in self.fail_delete:
            raise TransientApiError(f"boom deleting {path}", 502)
        self.refs.pop(path, None)

    async def delete_references(self, refs: list[Reference]) -> list[str]:
        failed: list[str] = []
        for ref in refs:
            try:
                await self.delete_reference(ref.path)
            except ForgeError:
                failed.append(ref.path)
        return failed

    async def get_pull_request(self, number: int) -> PullRequestInfo:
        self.calls.append(("get_pull_request", str(number)))
        return PullRequestInfo(
            number=number,
            state=self.pr_state,
            base_branch="main",
            head_sha="",
            base_sha="",
        )


# ---------------------------------------------------------------------------
# Factory helpers for creating events in tests
# ---------------------------------------------------------------------------


def make_repository(
    *,
    owner: str = "octo",
    name: str = "widgets",
    installation_id: int = 42,
) -> Repository:
    return Repository(owner=owner, name=name, installation_id=installation_id)


def make_push(
    *,
    pr: int = 10,
    head_sha: str = "a" * 40,
    base_sha: str = "b" * 40,
    delivery_id: str | None = None,
    repository: Repository | None = None,
) -> PushEvent:
    return PushEvent(
        repository=repository or make_repository(),
        pr=pr,
        delivery_id=delivery_id or str(uuid4()),
        head_sha=head_sha,
        base_sha=base_sha,
    )


def make_review(
    *,
    pr: int = 10,
    reviewer: str = "alice",
    verdict: str = "approved",
    commit_sha: str = "a" * 40,
    base_sha: str = "b" * 40,
    delivery_id: str | None = None,
    repository: Repository | None = None,
) -> ReviewEvent:
    return ReviewEvent(
        repository=repository or make_repository(),
        pr=pr,
        delivery_id=delivery_id or str(uuid4()),
        reviewer=reviewer,
        verdict=verdict,
        commit_sha=commit_sha,
        base_sha=base_sha,
    )


def make_close(
    *,
    pr: int = 10,
    merged: bool = False,
    delivery_id: str | None = None,
    repository: Repository | None = None,
) -> CloseEvent:
    return CloseEvent(
        repository=repository or make_repository(),
        pr=pr,
        delivery_id=delivery_id or str(uuid4()),
        kind="merged" if merged else "closed",
    )
