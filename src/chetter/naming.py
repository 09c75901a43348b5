# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""Reference naming policy.

Every reference chetter manages lives under ``<ns>/<pr>/``:

=========================  ==================================
``v<n>``                   n-th pushed revision
``head``                   latest pushed revision
``<reviewer>-v<n>``        n-th completed review by reviewer
``<reviewer>-head``        latest completed review by reviewer
``<any of the above>-base``  base commit at that moment
=========================  ==================================

This module does no I/O. Invalid input raises ``ValidationError`` and is
never rewritten into something that would pass.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from chetter.errors import ValidationError

BASE_SUFFIX = "-base"

# Characters git refuses in a ref component (see git-check-ref-format), plus "/"
# since a reviewer must stay a single path component.
_UNSAFE_CHARS_RE = re.compile(r"[\x00-\x20\x7f~^:?*\[\\/]")
_VERSION_RE = re.compile(r"[1-9][0-9]*")


@dataclass(frozen=True, slots=True)
class Role:
    """Versioning scope: the push history, or one reviewer's review history."""

    reviewer: str | None = None

    def __post_init__(self) -> None:
        if self.reviewer is not None:
            validate_reviewer(self.reviewer)

    @classmethod
    def push(cls) -> Role:
        return cls()

    @classmethod
    def review(cls, reviewer: str) -> Role:
        return cls(reviewer=reviewer)

    @property
    def is_review(self) -> bool:
        return self.reviewer is not None

    @property
    def name(self) -> str:
        return "push" if self.reviewer is None else f"review:{self.reviewer}"

    def __str__(self) -> str:
        return self.name


def validate_reviewer(reviewer: str) -> str:
    """Return *reviewer* unchanged if it is usable as a ref component."""
    if not reviewer:
        raise ValidationError("Reviewer login must not be empty")
    if _UNSAFE_CHARS_RE.search(reviewer):
        raise ValidationError(f"Reviewer login is not ref-safe: {reviewer!r}")
    if (
        ".." in reviewer
        or "@{" in reviewer
        or reviewer == "@"
        or reviewer.startswith(".")
        or reviewer.startswith("-")
        or reviewer.endswith(".")
        or reviewer.endswith(".lock")
    ):
        raise ValidationError(f"Reviewer login is not ref-safe: {reviewer!r}")
    return reviewer


def validate_namespace(namespace: str) -> str:
    segments = namespace.split("/")
    if segments[0] != "refs" or len(segments) < 2:
        raise ValidationError(f"Reference namespace must start with refs/: {namespace!r}")
    for segment in segments:
        if not segment or _UNSAFE_CHARS_RE.search(segment) or segment.startswith("."):
            raise ValidationError(f"Invalid reference namespace: {namespace!r}")
    return namespace


class ReferenceNames:
    """Maps (pull request, role, version) to full reference paths."""

    def __init__(self, namespace: str) -> None:
        self.namespace = validate_namespace(namespace)

    def pull_request_prefix(self, pr: int) -> str:
        """Prefix shared by every reference of pull request *pr*."""
        _check_pr(pr)
        return f"{self.namespace}/{pr}/"

    def _stem(self, role: Role) -> str:
        return "" if role.reviewer is None else f"{role.reviewer}-"

    def version_prefix(self, pr: int, role: Role) -> str:
        """Prefix to list when looking for existing versions of *role*."""
        return f"{self.pull_request_prefix(pr)}{self._stem(role)}v"

    def version(self, pr: int, role: Role, n: int) -> str:
        if n < 1:
            raise ValidationError(f"Version must be >= 1, got {n}")
        return f"{self.version_prefix(pr, role)}{n}"

    def head(self, pr: int, role: Role) -> str:
        return f"{self.pull_request_prefix(pr)}{self._stem(role)}head"

    @staticmethod
    def base_of(path: str) -> str:
        """Companion reference recording the base commit for *path*."""
        return f"{path}{BASE_SUFFIX}"

    def parse_version(self, pr: int, role: Role, path: str) -> int | None:
        """Return the version number if *path* is a version reference of *role*.

        ``-base`` companions, heads, and versions of a reviewer whose login
        merely starts with this reviewer's login all return ``None``.
        """
        prefix = self.version_prefix(pr, role)
        if not path.startswith(prefix):
            return None
        digits = path[len(prefix):]
        if not _VERSION_RE.fullmatch(digits):
            return None
        return int(digits)

    def latest_version(self, pr: int, role: Role, paths: list[str]) -> int:
        """Highest version of *role* found among *paths*, 0 if none."""
        versions = [self.parse_version(pr, role, p) for p in paths]
        return max((v for v in versions if v is not None), default=0)


def _check_pr(pr: int) -> None:
    if pr < 1:
        raise ValidationError(f"Pull request number must be positive, got {pr}")
