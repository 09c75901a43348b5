# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

from __future__ import annotations

import asyncio

import pytest

from chetter.errors import AuthError, SequencerBusy, TransientApiError
from chetter.naming import ReferenceNames
from chetter.services.deliveries import DeliveryLog
from chetter.services.dispatcher import EventDispatcher, Submission
from chetter.services.reconciler import Reconciler
from chetter.services.sequencer import Sequencer
from tests.helpers import (
    NS,
    FakeReferenceStore,
    make_close,
    make_push,
    make_repository,
    make_review,
)

P = f"{NS}/10"


async def _no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


def _dispatcher(
    store,
    *,
    store_factory=None,
    max_pending: int = 32,
    followups: int = 3,
) -> tuple[EventDispatcher, DeliveryLog]:
    deliveries = DeliveryLog(3600)
    reconciler = Reconciler(ReferenceNames(NS), deliveries, track_base=False)
    dispatcher = EventDispatcher(
        store_factory or (lambda repo: store),
        reconciler,
        Sequencer(max_pending),
        deliveries,
        cleanup_followup_attempts=followups,
        cleanup_followup_delay=0,
        sleep=_no_sleep,
    )
    return dispatcher, deliveries


class FailingStore(FakeReferenceStore):
    async def list_references(self, prefix: str):
        raise AuthError("installation suspended")


class TestSubmit:
    async def test_events_applied_in_order(self, store: FakeReferenceStore) -> None:
        dispatcher, _ = _dispatcher(store)

        for sha in ("a", "b", "c"):
            assert dispatcher.submit(make_push(head_sha=sha * 40)) is Submission.ACCEPTED
        assert dispatcher.submit(make_review(commit_sha="b" * 40)) is Submission.ACCEPTED
        await dispatcher.join()

        assert store.refs[f"{P}/v1"] == "a" * 40
        assert store.refs[f"{P}/v3"] == "c" * 40
        assert store.refs[f"{P}/head"] == "c" * 40
        assert store.refs[f"{P}/alice-v1"] == "b" * 40
        assert dispatcher.outcomes["applied"] == 4

    async def test_repositories_do_not_share_history(
        self, store: FakeReferenceStore
    ) -> None:
        stores = {"octo/widgets": store, "octo/gadgets": FakeReferenceStore()}
        dispatcher, _ = _dispatcher(
            None, store_factory=lambda repo: stores[repo.full_name]
        )

        dispatcher.submit(make_push())
        dispatcher.submit(make_push(repository=make_repository(name="gadgets")))
        await dispatcher.join()

        assert set(stores["octo/gadgets"].refs) == {f"{P}/v1", f"{P}/head"}
        assert f"{P}/v2" not in store.refs

    async def test_duplicate_delivery(self, store: FakeReferenceStore) -> None:
        dispatcher, _ = _dispatcher(store)
        event = make_push(delivery_id="d-1")

        assert dispatcher.submit(event) is Submission.ACCEPTED
        assert dispatcher.submit(event) is Submission.DUPLICATE
        await dispatcher.join()
        assert dispatcher.submit(event) is Submission.DUPLICATE

        assert len([c for c in store.mutations if c[1] == f"{P}/v1"]) == 1

    async def test_invalid_reviewer_rejected(self, store: FakeReferenceStore) -> None:
        dispatcher, deliveries = _dispatcher(store)

        result = dispatcher.submit(make_review(reviewer="x..y", delivery_id="d-1"))

        assert result is Submission.REJECTED
        assert deliveries.state("d-1") is None
        assert dispatcher.failures["ValidationError"] == 1

    async def test_busy_forgets_delivery(self, store: FakeReferenceStore) -> None:
        dispatcher, deliveries = _dispatcher(store, max_pending=1)

        dispatcher.submit(make_push(delivery_id="d-1"))
        with pytest.raises(SequencerBusy):
            dispatcher.submit(make_push(delivery_id="d-2"))

        assert deliveries.state("d-2") is None
        await dispatcher.join()
        assert dispatcher.submit(make_push(delivery_id="d-2")) is Submission.ACCEPTED
        await dispatcher.join()


class TestFailures:
    async def test_failure_is_counted_and_forgotten(self) -> None:
        dispatcher, deliveries = _dispatcher(FailingStore())

        dispatcher.submit(make_push(delivery_id="d-1"))
        await dispatcher.join()

        assert dispatcher.failures["AuthError"] == 1
        assert deliveries.state("d-1") is None

    async def test_failure_does_not_block_key(self) -> None:
        store = FakeReferenceStore()
        store.racing[f"{P}/v1"] = "f" * 40
        store.racing[f"{P}/v2"] = "e" * 40
        store.racing[f"{P}/v3"] = "d" * 40
        dispatcher, _ = _dispatcher(store)

        dispatcher.submit(make_push(head_sha="a" * 40))
        dispatcher.submit(make_push(head_sha="b" * 40))
        await dispatcher.join()

        assert dispatcher.failures["VersionConflict"] == 1
        assert store.refs[f"{P}/v4"] == "b" * 40


class TestCleanup:
    async def test_followup_finishes_cleanup(self) -> None:
        store = FakeReferenceStore(
            {f"{P}/v1": "a" * 40, f"{P}/head": "a" * 40}, pr_state="closed"
        )
        store.fail_delete.add(f"{P}/v1")
        dispatcher, _ = _dispatcher(store)

        original = store.delete_reference

        async def heal(path: str) -> None:
            # Fails once, then recovers.
            try:
                await original(path)
            except TransientApiError:
                store.fail_delete.discard(path)
                raise

        store.delete_reference = heal
        dispatcher.submit(make_close(merged=True))
        await dispatcher.join()

        assert store.refs == {}
        assert dispatcher.failures["CleanupIncomplete"] == 1
        assert dispatcher.outcomes["deleted"] == 1
        assert ("get_pull_request", "10") in store.calls

    async def test_reopened_pull_request_abandons_cleanup(self) -> None:
        store = FakeReferenceStore({f"{P}/v1": "a" * 40}, pr_state="open")
        store.fail_delete.add(f"{P}/v1")
        dispatcher, _ = _dispatcher(store)

        dispatcher.submit(make_close())
        await dispatcher.join()

        assert store.refs == {f"{P}/v1": "a" * 40}
        assert len([c for c in store.calls if c[0] == "delete"]) == 1

    async def test_gives_up_after_followups(self) -> None:
        store = FakeReferenceStore({f"{P}/v1": "a" * 40})
        store.fail_delete.add(f"{P}/v1")
        dispatcher, _ = _dispatcher(store, followups=2)

        dispatcher.submit(make_close())
        await dispatcher.join()

        assert len([c for c in store.calls if c[0] == "delete"]) == 3
        assert dispatcher.failures["CleanupIncomplete"] == 3


class TestLifecycle:
    async def test_status(self, store: FakeReferenceStore) -> None:
        dispatcher, _ = _dispatcher(store)
        dispatcher.submit(make_push())
        await dispatcher.join()

        status = dispatcher.status()
        assert status["active_keys"] == 0
        assert status["tracked_deliveries"] == 1
        assert status["outcomes"] == {"applied": 1}
        assert status["failures"] == {}

    async def test_stop_drains_and_closes(self, store: FakeReferenceStore) -> None:
        closed: list[str] = []

        async def on_close() -> None:
            closed.append("forge")

        dispatcher, _ = _dispatcher(store)
        dispatcher._on_close.append(on_close)
        dispatcher.submit(make_push())
        await dispatcher.stop()

        assert store.refs[f"{P}/v1"] == "a" * 40
        assert closed == ["forge"]
        assert dispatcher.closed
        with pytest.raises(SequencerBusy):
            dispatcher.submit(make_push())


class YieldingStore(FakeReferenceStore):
    """Gives other tasks a turn before every call, like a real network store."""

    async def list_references(self, prefix: str):
        await asyncio.sleep(0)
        return await super().list_references(prefix)

    async def create_reference(self, path: str, sha: str) -> None:
        await asyncio.sleep(0)
        await super().create_reference(path, sha)

    async def update_reference(self, path: str, sha: str) -> None:
        await asyncio.sleep(0)
        await super().update_reference(path, sha)

    async def delete_reference(self, path: str) -> None:
        await asyncio.sleep(0)
        await super().delete_reference(path)


class TestCloseOrdering:
    async def test_close_waits_for_queued_reviews(self) -> None:
        store = YieldingStore({f"{P}/v1": "a" * 40, f"{P}/head": "a" * 40})
        dispatcher, _ = _dispatcher(store)

        dispatcher.submit(make_review(reviewer="alice", commit_sha="a" * 40))
        dispatcher.submit(make_close(merged=True))
        await dispatcher.join()

        assert store.refs == {}
        assert dispatcher.outcomes["applied"] == 1
        assert dispatcher.outcomes["deleted"] == 1
        assert dispatcher.failures == {}

    async def test_close_does_not_wait_for_later_pushes(
        self, store: FakeReferenceStore
    ) -> None:
        dispatcher, _ = _dispatcher(store)

        dispatcher.submit(make_push(head_sha="a" * 40))
        dispatcher.submit(make_close())
        dispatcher.submit(make_push(head_sha="b" * 40))
        await asyncio.wait_for(dispatcher.join(), timeout=5)

        assert store.refs[f"{P}/v1"] == "b" * 40


class TestIgnoredReviews:
    async def test_comment_from_bot_is_ignored(self, store: FakeReferenceStore) -> None:
        dispatcher, deliveries = _dispatcher(store)

        result = dispatcher.submit(
            make_review(
                reviewer="copilot-pull-request-reviewer[bot]",
                verdict="commented",
                delivery_id="d-1",
            )
        )

        assert result is Submission.IGNORED
        assert dispatcher.failures == {}
        assert dispatcher.outcomes["ignored"] == 1
        assert deliveries.state("d-1") is None
        assert store.calls == []

    async def test_approval_from_bot_is_still_rejected(
        self, store: FakeReferenceStore
    ) -> None:
        dispatcher, _ = _dispatcher(store)
        result = dispatcher.submit(make_review(reviewer="renovate[bot]"))
        assert result is Submission.REJECTED


class BrokenOnRetryStore(FakeReferenceStore):
    """Cleanup fails partially, then the follow-up hits an unexpected error."""

    async def list_references(self, prefix: str):
        # The first close lists twice; the follow-up is the third listing.
        if sum(1 for c in self.calls if c[0] == "list") >= 2:
            raise RuntimeError("corrupt listing")
        return await super().list_references(prefix)


class TestFollowupErrors:
    async def test_unexpected_error_in_followup_is_counted(self) -> None:
        store = BrokenOnRetryStore({f"{P}/v1": "a" * 40})
        store.fail_delete.add(f"{P}/v1")
        dispatcher, _ = _dispatcher(store)

        dispatcher.submit(make_close())
        await dispatcher.join()

        assert dispatcher.failures["CleanupIncomplete"] == 1
        assert dispatcher.failures["unexpected"] == 1
        assert dispatcher.status()["pending_followups"] == 0
