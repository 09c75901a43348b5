# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

from __future__ import annotations

import logging


def configure_logging(level: str = "info", *, force: bool = False) -> None:
    """Initialise the root logger from a level name such as ``"info"``."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        force=force,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
