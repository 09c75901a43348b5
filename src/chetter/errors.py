# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""Exception hierarchy shared by every chetter component."""

from __future__ import annotations


class ChetterError(Exception):
    """Base exception for chetter."""


class ValidationError(ChetterError):
    """Raised when an event or reference name fails validation.

    The event is rejected and no mutation is attempted.
    """


class AuthError(ChetterError):
    """Raised when an installation token cannot be obtained."""


# ---------------------------------------------------------------------------
# Forge API
# ---------------------------------------------------------------------------


class ForgeError(ChetterError):
    """Base exception for GitHub API operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientApiError(ForgeError):
    """Timeouts, network errors, 5xx and rate limiting. Safe to retry."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class PermanentApiError(ForgeError):
    """A 4xx answer that retrying will not fix."""


class ReferenceConflictError(ForgeError):
    """Raised when creating a reference that already exists."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Reference already exists: {path}", 422)
        self.path = path


class ReferenceNotFoundError(ForgeError):
    """Raised when updating a reference that does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Reference does not exist: {path}", 422)
        self.path = path


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class VersionConflict(ChetterError):
    """Raised when no free version could be claimed within the attempt budget."""

    def __init__(self, prefix: str, attempted: int, attempts: int) -> None:
        super().__init__(
            f"Could not claim a version under {prefix} after {attempts} attempts "
            f"(last tried v{attempted})"
        )
        self.prefix = prefix
        self.attempted = attempted
        self.attempts = attempts


class CleanupIncomplete(ChetterError):
    """Raised when some references of a closed pull request survived deletion."""

    def __init__(self, failed: list[str]) -> None:
        super().__init__(f"Failed to delete {len(failed)} reference(s)")
        self.failed = failed


class ReconciliationFailed(ChetterError):
    """Raised when an event could not be applied after exhausting retries."""


class SequencerBusy(ChetterError):
    """Raised when a key's backlog is full. The forge is expected to redeliver."""
