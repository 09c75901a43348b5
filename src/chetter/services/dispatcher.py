# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""Event dispatcher: hands parsed events to the sequencer and runs them.

Usage:
    The dispatcher is created during FastAPI startup via
    ``start_dispatcher(settings)``. The webhook route calls ``submit(event)``,
    which returns as soon as the event is queued; reconciliation then runs in
    the background, one event at a time per (repository, pull request, role).

    Failures never escape a background task. They are logged with the event's
    context and counted per error class. A close whose cleanup was only partly
    done is retried a bounded number of times, after checking that the pull
    request has not been reopened in the meantime.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any

from chetter.auth.tokens import CredentialManager
from chetter.config import Settings
from chetter.errors import (
    AuthError,
    ChetterError,
    CleanupIncomplete,
    ForgeError,
    ReconciliationFailed,
    SequencerBusy,
    TransientApiError,
    ValidationError,
    VersionConflict,
)
from chetter.naming import ReferenceNames
from chetter.schemas.events import CloseEvent, PullRequestEvent, Repository, ReviewEvent
from chetter.services.deliveries import DeliveryLog
from chetter.services.forge import ForgeClient, ReferenceStore, RetryPolicy
from chetter.services.reconciler import ReconcileResult, Reconciler
from chetter.services.sequencer import Sequencer

logger = logging.getLogger(__name__)

StoreFactory = Callable[[Repository], ReferenceStore]


class Submission(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"


def _describe(event: PullRequestEvent) -> str:
    return f"{event.repository.full_name}#{event.pr} {event.kind}"


class EventDispatcher:
    """Routes events through the sequencer into the reconciler."""

    def __init__(
        self,
        store_factory: StoreFactory,
        reconciler: Reconciler,
        sequencer: Sequencer,
        deliveries: DeliveryLog,
        *,
        cleanup_followup_attempts: int = 3,
        cleanup_followup_delay: float = 30.0,
        shutdown_timeout: float = 30.0,
        on_close: list[Callable[[], Awaitable[None]]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store_factory = store_factory
        self._reconciler = reconciler
        self._sequencer = sequencer
        self._deliveries = deliveries
        self._followup_attempts = cleanup_followup_attempts
        self._followup_delay = cleanup_followup_delay
        self._shutdown_timeout = shutdown_timeout
        self._on_close = on_close or []
        self._sleep = sleep
        self._followups: set[asyncio.Task] = set()
        # (repository, pr) -> queued or running futures and their role name
        self._inflight: dict[tuple[str, int], dict[asyncio.Future, str]] = {}
        self.outcomes: Counter[str] = Counter()
        self.failures: Counter[str] = Counter()

    def submit(self, event: PullRequestEvent) -> Submission:
        """Queue *event* for reconciliation.

        Raises ``SequencerBusy`` when the event's key has too much backlog;
        the delivery is then forgotten so a redelivery is accepted later.
        """
        if isinstance(event, ReviewEvent) and not event.actionable:
            logger.debug(
                "Ignoring %s review of %s (delivery %s)",
                event.verdict,
                _describe(event),
                event.delivery_id,
            )
            self.outcomes["ignored"] += 1
            return Submission.IGNORED

        try:
            role = event.role
        except ValidationError as exc:
            logger.error("Rejected %s (%s): %s", event.delivery_id, _describe(event), exc)
            self.failures[type(exc).__name__] += 1
            return Submission.REJECTED

        if not self._deliveries.begin(event.delivery_id):
            logger.info("Duplicate delivery %s (%s)", event.delivery_id, _describe(event))
            self.outcomes["duplicate"] += 1
            return Submission.DUPLICATE

        key = (event.repository.full_name, event.pr, role.name)
        try:
            future = self._sequencer.submit(key, lambda: self._process(event))
        except SequencerBusy:
            self._deliveries.forget(event.delivery_id)
            self.failures[SequencerBusy.__name__] += 1
            logger.warning("Busy, refusing %s (%s)", event.delivery_id, _describe(event))
            raise
        self._track((event.repository.full_name, event.pr), role.name, future)
        logger.debug("Queued %s (%s)", event.delivery_id, _describe(event))
        return Submission.ACCEPTED

    def _track(self, pr_key: tuple[str, int], role: str, future: asyncio.Future) -> None:
        entries = self._inflight.setdefault(pr_key, {})
        entries[future] = role

        def _done(fut: asyncio.Future) -> None:
            remaining = self._inflight.get(pr_key)
            if remaining is None:
                return
            remaining.pop(fut, None)
            if not remaining:
                del self._inflight[pr_key]

        future.add_done_callback(_done)

    async def _settle(self, event: CloseEvent) -> None:
        """Wait for work queued under the pull request's other roles."""
        entries = self._inflight.get((event.repository.full_name, event.pr), {})
        others = [fut for fut, role in entries.items() if role != event.role.name]
        if others:
            logger.info(
                "%s waiting for %d event(s) of other roles", _describe(event), len(others)
            )
            await asyncio.wait(others)

    async def _process(self, event: PullRequestEvent) -> ReconcileResult | None:
        """Reconcile one event. Logs and counts failures, never raises them."""
        store = self._store_factory(event.repository)
        try:
            if isinstance(event, CloseEvent):
                await self._settle(event)
            result = await self._reconciler.reconcile(event, store)
        except CleanupIncomplete as exc:
            self._fail(event, exc)
            if isinstance(event, CloseEvent):
                self._schedule_cleanup(event, 1)
            return None
        except TransientApiError as exc:
            self._fail(event, ReconciliationFailed(f"retries exhausted: {exc}"))
            return None
        except (AuthError, ForgeError, VersionConflict, ValidationError) as exc:
            self._fail(event, exc)
            return None
        except Exception:
            logger.exception(
                "Unexpected error processing %s (%s)", event.delivery_id, _describe(event)
            )
            self.failures["unexpected"] += 1
            self._deliveries.forget(event.delivery_id)
            return None

        self.outcomes[result.outcome.value] += 1
        logger.info(
            "Delivery %s (%s) %s%s",
            event.delivery_id,
            _describe(event),
            result.outcome.value,
            f" v{result.version}" if result.version is not None else "",
        )
        return result

    def _fail(self, event: PullRequestEvent, exc: ChetterError) -> None:
        self.failures[type(exc).__name__] += 1
        # Forget the delivery so a redelivery from GitHub gets another go.
        self._deliveries.forget(event.delivery_id)
        attempted = getattr(exc, "attempted", None)
        logger.error(
            "Delivery %s (%s, role %s%s) failed: %s: %s",
            event.delivery_id,
            _describe(event),
            _role_name(event),
            f", version {attempted}" if attempted is not None else "",
            type(exc).__name__,
            exc,
        )

    # ------------------------------------------------------------------
    # Close follow-ups
    # ------------------------------------------------------------------

    def _schedule_cleanup(self, event: CloseEvent, attempt: int) -> None:
        if attempt > self._followup_attempts:
            logger.error(
                "Giving up on cleanup of %s after %d follow-up(s)",
                _describe(event),
                self._followup_attempts,
            )
            return
        task = asyncio.create_task(
            self._cleanup_later(event, attempt),
            name=f"cleanup-{event.repository.full_name}-{event.pr}-{attempt}",
        )
        self._followups.add(task)
        task.add_done_callback(self._followups.discard)

    async def _cleanup_later(self, event: CloseEvent, attempt: int) -> None:
        await self._sleep(self._followup_delay)
        store = self._store_factory(event.repository)
        try:
            pr = await store.get_pull_request(event.pr)
        except ChetterError as exc:
            logger.warning("Cannot check state of %s: %s", _describe(event), exc)
            self._schedule_cleanup(event, attempt + 1)
            return
        if pr.state == "open":
            logger.info("%s was reopened, abandoning cleanup", _describe(event))
            return

        logger.warning(
            "Retrying cleanup of %s (follow-up %d/%d)",
            _describe(event),
            attempt,
            self._followup_attempts,
        )
        key = (event.repository.full_name, event.pr, event.role.name)
        try:
            self._sequencer.submit(key, lambda: self._retry_cleanup(event, attempt))
        except SequencerBusy:
            self._schedule_cleanup(event, attempt + 1)

    async def _retry_cleanup(self, event: CloseEvent, attempt: int) -> None:
        store = self._store_factory(event.repository)
        try:
            await self._settle(event)
            result = await self._reconciler.reconcile(event, store)
        except ChetterError as exc:
            self._fail(event, exc)
            self._schedule_cleanup(event, attempt + 1)
            return
        except Exception:
            logger.exception("Unexpected error cleaning up %s", _describe(event))
            self.failures["unexpected"] += 1
            return
        self.outcomes[result.outcome.value] += 1
        logger.info("Cleanup of %s completed on follow-up %d", _describe(event), attempt)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._sequencer.closed

    def status(self) -> dict[str, Any]:
        return {
            "active_keys": self._sequencer.active_keys,
            "tracked_deliveries": len(self._deliveries),
            "pending_followups": len(self._followups),
            "outcomes": dict(self.outcomes),
            "failures": dict(self.failures),
        }

    async def join(self) -> None:
        """Wait for queued events and pending follow-ups to finish."""
        while self._followups or self._sequencer.active_keys:
            await self._sequencer.join()
            if self._followups:
                await asyncio.gather(*self._followups, return_exceptions=True)

    async def stop(self) -> None:
        """Drain queued work, drop pending follow-ups and close resources."""
        for task in list(self._followups):
            task.cancel()
        await asyncio.gather(*self._followups, return_exceptions=True)
        await self._sequencer.close(self._shutdown_timeout)
        for close in self._on_close:
            await close()
        logger.info("Event dispatcher stopped")


def _role_name(event: PullRequestEvent) -> str:
    try:
        return event.role.name
    except ValidationError:
        return "invalid"


async def start_dispatcher(settings: Settings) -> EventDispatcher:
    """Build the credential, forge and reconciliation stack from *settings*."""
    credentials = CredentialManager(
        settings.app_id,
        settings.signing_key(),
        api_url=settings.github_api_url,
        refresh_margin=settings.token_refresh_margin_seconds,
        timeout=settings.request_timeout,
    )
    forge = ForgeClient(
        credentials,
        namespace=settings.ref_namespace,
        api_url=settings.github_api_url,
        graphql_url=settings.github_graphql_url or None,
        timeout=settings.request_timeout,
        retry=RetryPolicy(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        ),
    )
    deliveries = DeliveryLog(settings.dedup_retention_seconds)
    reconciler = Reconciler(
        ReferenceNames(settings.ref_namespace),
        deliveries,
        track_base=settings.track_base,
        max_conflict_attempts=settings.max_conflict_attempts,
    )
    dispatcher = EventDispatcher(
        forge.repository,
        reconciler,
        Sequencer(settings.max_pending_per_key),
        deliveries,
        cleanup_followup_attempts=settings.cleanup_followup_attempts,
        cleanup_followup_delay=settings.cleanup_followup_delay,
        shutdown_timeout=settings.shutdown_timeout,
        on_close=[forge.close, credentials.close],
    )
    logger.info(
        "Event dispatcher started (app %d, namespace %s)",
        settings.app_id,
        settings.ref_namespace,
    )
    return dispatcher
