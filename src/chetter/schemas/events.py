# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from chetter.naming import Role

ACTIONABLE_VERDICTS = frozenset({"approved", "changes_requested"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Repository(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str = Field(min_length=1)
    name: str = Field(min_length=1)
    installation_id: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository: Repository
    pr: int = Field(gt=0)
    delivery_id: str = Field(min_length=1)
    received_at: datetime = Field(default_factory=_now)


class PushEvent(_Event):
    """A new head revision: the pull request was opened, reopened or pushed to."""

    kind: Literal["push"] = "push"
    head_sha: str = Field(min_length=1)
    base_sha: str = Field(min_length=1)

    @property
    def role(self) -> Role:
        return Role.push()


class ReviewEvent(_Event):
    """A submitted review. Only approvals and change requests are recorded."""

    kind: Literal["review"] = "review"
    reviewer: str
    verdict: str
    commit_sha: str = Field(min_length=1)
    base_sha: str = Field(min_length=1)

    @property
    def actionable(self) -> bool:
        return self.verdict in ACTIONABLE_VERDICTS

    @property
    def role(self) -> Role:
        return Role.review(self.reviewer)


class CloseEvent(_Event):
    """The pull request was closed, with or without merging."""

    kind: Literal["closed", "merged"] = "closed"

    @property
    def merged(self) -> bool:
        return self.kind == "merged"

    @property
    def role(self) -> Role:
        # Serialised with pushes so cleanup never races a new version.
        return Role.push()


PullRequestEvent = PushEvent | ReviewEvent | CloseEvent
