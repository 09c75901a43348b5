# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

"""In-memory record of recently seen webhook deliveries."""

from __future__ import annotations

import enum
import time
from collections import OrderedDict
from collections.abc import Callable


class DeliveryState(str, enum.Enum):
    IN_FLIGHT = "in_flight"
    APPLIED = "applied"


class DeliveryLog:
    """Delivery ids seen within the last *retention* seconds.

    Entries are kept in expiry order (every write moves the entry to the end
    with a fresh deadline), so expired ids are always at the front.
    """

    def __init__(
        self,
        retention: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention = retention
        self._clock = clock
        self._entries: OrderedDict[str, tuple[DeliveryState, float]] = OrderedDict()

    def _purge(self) -> None:
        now = self._clock()
        while self._entries:
            _, (_, expires) = next(iter(self._entries.items()))
            if expires > now:
                break
            self._entries.popitem(last=False)

    def _put(self, delivery_id: str, state: DeliveryState) -> None:
        self._entries[delivery_id] = (state, self._clock() + self._retention)
        self._entries.move_to_end(delivery_id)

    def begin(self, delivery_id: str) -> bool:
        """Claim *delivery_id* for processing. ``False`` if already seen."""
        self._purge()
        if delivery_id in self._entries:
            return False
        self._put(delivery_id, DeliveryState.IN_FLIGHT)
        return True

    def mark_applied(self, delivery_id: str) -> None:
        self._purge()
        self._put(delivery_id, DeliveryState.APPLIED)

    def forget(self, delivery_id: str) -> None:
        """Drop *delivery_id* so a redelivery is processed again."""
        self._entries.pop(delivery_id, None)

    def state(self, delivery_id: str) -> DeliveryState | None:
        self._purge()
        entry = self._entries.get(delivery_id)
        return entry[0] if entry is not None else None

    def is_applied(self, delivery_id: str) -> bool:
        return self.state(delivery_id) is DeliveryState.APPLIED

    def __len__(self) -> int:
        self._purge()
        return len(self._entries)
