# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chetter.errors import ValidationError as ChetterValidationError
from chetter.naming import validate_namespace


class Settings(BaseSettings):
    """Application settings loaded from ``CHETTER_*`` environment variables."""

    # GitHub App identity
    app_id: int
    private_key: str = ""
    private_key_file: str = ""
    webhook_secret: str = ""
    github_api_url: str = "https://api.github.com"
    # Derived from github_api_url when empty.
    github_graphql_url: str = ""

    # Reference layout. GitHub only accepts GraphQL and most UI tooling for
    # refs under refs/heads, refs/tags or refs/notes.
    ref_namespace: str = "refs/heads/pr"
    track_base: bool = True

    # Delivery deduplication
    dedup_retention_seconds: float = 6 * 60 * 60

    # Credentials
    token_refresh_margin_seconds: float = 60.0

    # Forge client retry/backoff
    request_timeout: float = 30.0
    retry_attempts: int = 5
    retry_base_delay: float = 0.2
    retry_max_delay: float = 5.0

    # Reconciliation
    max_conflict_attempts: int = 3
    max_pending_per_key: int = 32
    cleanup_followup_attempts: int = 3
    cleanup_followup_delay: float = 30.0
    shutdown_timeout: float = 30.0

    log_level: str = "info"

    model_config = SettingsConfigDict(env_prefix="CHETTER_", env_file=".env")

    @model_validator(mode="after")
    def _validate_private_key(self) -> "Settings":
        if bool(self.private_key) == bool(self.private_key_file):
            raise ValueError("exactly one of private_key or private_key_file must be set")
        return self

    @model_validator(mode="after")
    def _validate_namespace(self) -> "Settings":
        try:
            validate_namespace(self.ref_namespace)
        except ChetterValidationError as exc:
            raise ValueError(str(exc)) from exc
        return self

    def signing_key(self) -> str:
        """Return the PEM-encoded App private key."""
        if self.private_key:
            return self.private_key
        return Path(self.private_key_file).read_text()


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance. Lazy-loaded to avoid import-time failures."""
    return Settings()
