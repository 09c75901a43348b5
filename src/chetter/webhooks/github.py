# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""GitHub webhook handler.

Receives ``pull_request`` and ``pull_request_review`` deliveries, turns them
into typed events and queues them on the dispatcher. The response is sent as
soon as the event is queued; reference updates happen afterwards.

Verification uses HMAC-SHA256 over the request body, matching the shared
secret stored in ``CHETTER_WEBHOOK_SECRET``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

import pydantic
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from chetter.config import Settings, get_settings
from chetter.errors import SequencerBusy, ValidationError
from chetter.schemas.events import (
    CloseEvent,
    PullRequestEvent,
    PushEvent,
    Repository,
    ReviewEvent,
)
from chetter.services.dispatcher import EventDispatcher, Submission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_PUSH_ACTIONS = frozenset({"opened", "reopened", "synchronize"})


def _verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Verify the ``X-Hub-Signature-256`` header (``sha256=<hex digest>``)."""
    if not secret:
        logger.warning("CHETTER_WEBHOOK_SECRET is not configured, rejecting webhook")
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _require(payload: dict[str, Any], *path: str) -> Any:
    """Return ``payload[path[0]][path[1]]...`` or raise ``ValidationError``."""
    value: Any = payload
    for key in path:
        if not isinstance(value, dict) or value.get(key) is None:
            raise ValidationError(f"missing .{'.'.join(path)}")
        value = value[key]
    return value


def _repository(payload: dict[str, Any]) -> Repository:
    return Repository(
        owner=_require(payload, "repository", "owner", "login"),
        name=_require(payload, "repository", "name"),
        installation_id=_require(payload, "installation", "id"),
    )


def parse_event(
    event_type: str, delivery_id: str, payload: dict[str, Any]
) -> PullRequestEvent | None:
    """Translate a GitHub webhook payload into an event.

    Returns ``None`` for deliveries that do not affect references. Raises
    ``ValidationError`` when a relevant payload is missing fields.
    """
    action = payload.get("action")
    if event_type == "pull_request":
        if action in _PUSH_ACTIONS:
            return PushEvent(
                repository=_repository(payload),
                pr=_require(payload, "number"),
                delivery_id=delivery_id,
                head_sha=_require(payload, "pull_request", "head", "sha"),
                base_sha=_require(payload, "pull_request", "base", "sha"),
            )
        if action == "closed":
            merged = bool(_require(payload, "pull_request").get("merged"))
            return CloseEvent(
                repository=_repository(payload),
                pr=_require(payload, "number"),
                delivery_id=delivery_id,
                kind="merged" if merged else "closed",
            )
        logger.debug("Ignoring pull_request action: %s", action)
        return None

    if event_type == "pull_request_review":
        if action != "submitted":
            logger.debug("Ignoring pull_request_review action: %s", action)
            return None
        return ReviewEvent(
            repository=_repository(payload),
            pr=_require(payload, "pull_request", "number"),
            delivery_id=delivery_id,
            reviewer=_require(payload, "review", "user", "login"),
            verdict=str(_require(payload, "review", "state")).lower(),
            commit_sha=_require(payload, "review", "commit_id"),
            base_sha=_require(payload, "pull_request", "base", "sha"),
        )

    logger.debug("Ignoring GitHub event type: %s", event_type)
    return None


def get_dispatcher(request: Request) -> EventDispatcher:
    return request.app.state.dispatcher


@router.post("/github")
async def handle_github_webhook(
    request: Request,
    response: Response,
    settings: Settings = Depends(get_settings),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> dict[str, str]:
    """Handle incoming GitHub webhook deliveries.

    Currently handles:
    - ``pull_request``: ``opened``/``reopened``/``synchronize`` record a new
      revision, ``closed`` removes every reference of the pull request.
    - ``pull_request_review``: ``submitted`` approvals and change requests
      record a review revision for the reviewer.
    """
    body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256", "")
    if not _verify_signature(body, signature, settings.webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    event_type = request.headers.get("X-GitHub-Event", "")
    if event_type == "ping":
        return {"status": "pong"}

    delivery_id = request.headers.get("X-GitHub-Delivery", "")
    if not event_type or not delivery_id:
        raise HTTPException(
            status_code=400, detail="Missing X-GitHub-Event or X-GitHub-Delivery header"
        )

    try:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValidationError("payload is not a JSON object")
        event = parse_event(event_type, delivery_id, payload)
    except (ValueError, ValidationError, pydantic.ValidationError) as exc:
        logger.error("Failed to parse %s delivery %s: %s", event_type, delivery_id, exc)
        raise HTTPException(status_code=400, detail=f"Failed to parse event: {exc}")

    if event is None:
        return {"status": "ignored"}

    try:
        submission = dispatcher.submit(event)
    except SequencerBusy:
        raise HTTPException(status_code=503, detail="Busy, retry later")

    if submission is Submission.REJECTED:
        raise HTTPException(status_code=422, detail="Event rejected")
    if submission is Submission.ACCEPTED:
        response.status_code = status.HTTP_202_ACCEPTED
    return {"status": submission.value}
