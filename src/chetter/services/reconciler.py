# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""Event-to-reference reconciliation.

Version numbers are never stored locally: the next version of a role is
derived from the references that already exist, and a conflicting create
means somebody else claimed that number first.

For a push or review the mutations always run in this order:

1. ``<role>-v<n>``        (the version itself)
2. ``<role>-v<n>-base``   (when base tracking is on)
3. ``<role>-head``
4. ``<role>-head-base``   (when base tracking is on)

so an interruption leaves ``head`` behind the newest version, never ahead of
it. The next event for the role repairs it.

Callers must not run two reconciliations for the same (pull request, role)
at once; the ``Sequencer`` guarantees that.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from chetter.errors import (
    CleanupIncomplete,
    ReferenceConflictError,
    ReferenceNotFoundError,
    VersionConflict,
)
from chetter.naming import ReferenceNames, Role
from chetter.schemas.events import CloseEvent, PullRequestEvent, PushEvent, ReviewEvent
from chetter.services.deliveries import DeliveryLog
from chetter.services.forge import Reference, ReferenceStore

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    APPLIED = "applied"  # a new version was created
    UNCHANGED = "unchanged"  # the store already reflected the event
    DUPLICATE = "duplicate"  # delivery id already applied
    IGNORED = "ignored"  # nothing to record (e.g. a "commented" review)
    DELETED = "deleted"  # pull request references removed


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    outcome: Outcome
    version: int | None = None
    paths: list[str] = field(default_factory=list)


class Reconciler:
    """Translates pull-request events into reference mutations.

    Parameters
    ----------
    names:
        Naming policy for the configured namespace.
    deliveries:
        Delivery ids already applied are skipped without touching the store.
    track_base:
        Maintain ``-base`` companions recording the comparison base.
    max_conflict_attempts:
        How many version numbers to try before giving up on an event.
    """

    def __init__(
        self,
        names: ReferenceNames,
        deliveries: DeliveryLog | None = None,
        *,
        track_base: bool = True,
        max_conflict_attempts: int = 3,
    ) -> None:
        self.names = names
        self._deliveries = deliveries
        self._track_base = track_base
        self._max_conflict_attempts = max(1, max_conflict_attempts)

    async def reconcile(
        self, event: PullRequestEvent, store: ReferenceStore
    ) -> ReconcileResult:
        """Apply *event* to *store*. Reapplying a delivery is a no-op."""
        if self._deliveries is not None and self._deliveries.is_applied(event.delivery_id):
            logger.info("Delivery %s already applied, skipping", event.delivery_id)
            return ReconcileResult(Outcome.DUPLICATE)

        if isinstance(event, PushEvent):
            result = await self._record(
                store, event.pr, event.role, event.head_sha, event.base_sha
            )
        elif isinstance(event, ReviewEvent):
            if not event.actionable:
                logger.debug(
                    "Ignoring %s review by %s on #%d",
                    event.verdict,
                    event.reviewer,
                    event.pr,
                )
                result = ReconcileResult(Outcome.IGNORED)
            else:
                result = await self._record(
                    store, event.pr, event.role, event.commit_sha, event.base_sha
                )
        elif isinstance(event, CloseEvent):
            result = await self._close(store, event.pr)
        else:
            raise TypeError(f"Unsupported event: {type(event).__name__}")

        if self._deliveries is not None:
            self._deliveries.mark_applied(event.delivery_id)
        return result

    # ------------------------------------------------------------------
    # Push and review history
    # ------------------------------------------------------------------

    async def _record(
        self,
        store: ReferenceStore,
        pr: int,
        role: Role,
        sha: str,
        base_sha: str,
    ) -> ReconcileResult:
        names = self.names
        prefix = names.version_prefix(pr, role)
        existing = _by_path(await store.list_references(prefix))
        latest = names.latest_version(pr, role, list(existing))

        if (
            not role.is_review
            and latest
            and self._reflects(existing, names.version(pr, role, latest), sha, base_sha)
        ):
            # Redelivered push after the dedup window: keep the version, fix head.
            # Reviews always append; two reviews of one commit are two versions.
            logger.info("#%d %s v%d already at %s", pr, role, latest, sha[:8])
            await self._point_head(store, pr, role, sha, base_sha)
            return ReconcileResult(Outcome.UNCHANGED, version=latest)

        version = await self._claim_version(store, pr, role, latest + 1, sha)
        path = names.version(pr, role, version)
        written = [path]
        if self._track_base:
            await _put(store, names.base_of(path), base_sha)
            written.append(names.base_of(path))
        written.extend(await self._point_head(store, pr, role, sha, base_sha))

        logger.info("#%d %s recorded v%d at %s", pr, role, version, sha[:8])
        return ReconcileResult(Outcome.APPLIED, version=version, paths=written)

    def _reflects(
        self, existing: dict[str, str], path: str, sha: str, base_sha: str
    ) -> bool:
        if existing.get(path) != sha:
            return False
        if self._track_base:
            return existing.get(self.names.base_of(path)) == base_sha
        return True

    async def _claim_version(
        self, store: ReferenceStore, pr: int, role: Role, candidate: int, sha: str
    ) -> int:
        """Create the version reference at the first free number from *candidate*."""
        prefix = self.names.version_prefix(pr, role)
        for attempt in range(1, self._max_conflict_attempts + 1):
            try:
                await store.create_reference(self.names.version(pr, role, candidate), sha)
                return candidate
            except ReferenceConflictError:
                logger.warning(
                    "#%d %s v%d already taken (attempt %d/%d)",
                    pr,
                    role,
                    candidate,
                    attempt,
                    self._max_conflict_attempts,
                )
                if attempt == self._max_conflict_attempts:
                    raise VersionConflict(prefix, candidate, attempt) from None
                refs = await store.list_references(prefix)
                relisted = self.names.latest_version(pr, role, [r.path for r in refs])
                # The listing may lag behind the create that just failed.
                candidate = max(relisted, candidate) + 1
        raise AssertionError("unreachable")

    async def _point_head(
        self, store: ReferenceStore, pr: int, role: Role, sha: str, base_sha: str
    ) -> list[str]:
        head = self.names.head(pr, role)
        await _put(store, head, sha)
        if not self._track_base:
            return [head]
        await _put(store, self.names.base_of(head), base_sha)
        return [head, self.names.base_of(head)]

    # ------------------------------------------------------------------
    # Close / merge
    # ------------------------------------------------------------------

    async def _close(self, store: ReferenceStore, pr: int) -> ReconcileResult:
        prefix = self.names.pull_request_prefix(pr)
        refs = await store.list_references(prefix)
        # Heads go first so no head outlives the versions it points into.
        refs.sort(key=lambda r: (not _is_head(r.path), r.path))

        failed = await store.delete_references(refs)
        deleted = [r.path for r in refs if r.path not in failed]

        # A review on another key may have written after the listing above.
        survivors = [
            r.path for r in await store.list_references(prefix) if r.path not in failed
        ]
        if survivors:
            logger.warning("#%d %d reference(s) appeared during cleanup", pr, len(survivors))
        if failed or survivors:
            raise CleanupIncomplete(failed + survivors)
        logger.info("#%d removed %d reference(s)", pr, len(deleted))
        return ReconcileResult(Outcome.DELETED, paths=deleted)


def _by_path(refs: list[Reference]) -> dict[str, str]:
    return {r.path: r.sha for r in refs}


def _is_head(path: str) -> bool:
    leaf = path.rsplit("/", 1)[-1]
    return leaf == "head" or leaf.endswith("-head") or leaf.endswith("head-base")


async def _put(store: ReferenceStore, path: str, sha: str) -> None:
    """Point *path* at *sha*, creating it if needed."""
    try:
        await store.update_reference(path, sha)
    except ReferenceNotFoundError:
        try:
            await store.create_reference(path, sha)
        except ReferenceConflictError:
            # Created between our update and create.
            await store.update_reference(path, sha)
