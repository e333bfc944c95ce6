"""Pending "retry with elevated permissions" offers.

Each offer is keyed by an opaque id handed to the chat UI. Offers are
single-use: confirming or cancelling removes them. Abandoned offers
expire after ``ttl_seconds`` and the oldest are evicted beyond
``max_pending``, so a long-lived process does not accumulate them.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable

from .errors import RetryExpiredError
from .models import PendingRetry

logger = logging.getLogger(__name__)


def new_retry_id() -> str:
    return f"retry_{uuid.uuid4().hex[:12]}"


class RetryWorkflow:
    """Bounded, expiring store of PendingRetry entries."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_pending: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_pending = max(1, max_pending)
        self._clock = clock
        self._pending: OrderedDict[str, PendingRetry] = OrderedDict()

    def __len__(self) -> int:
        self._expire()
        return len(self._pending)

    def __contains__(self, retry_id: object) -> bool:
        self._expire()
        return retry_id in self._pending

    def offer(self, pending: PendingRetry) -> str:
        """Store ``pending`` and return its new id."""
        self._expire()
        pending.created_at = self._clock()
        retry_id = new_retry_id()
        self._pending[retry_id] = pending
        while len(self._pending) > self._max_pending:
            evicted, _ = self._pending.popitem(last=False)
            logger.info("Evicted oldest pending retry %s (capacity %d)",
                        evicted, self._max_pending)
        logger.info(
            "Stored pending retry %s for channel %s (%d denial(s))",
            retry_id, pending.channel_id, len(pending.denials),
        )
        return retry_id

    def claim(self, retry_id: str) -> PendingRetry:
        """Remove and return an offer. Raises RetryExpiredError."""
        self._expire()
        pending = self._pending.pop(retry_id, None)
        if pending is None:
            raise RetryExpiredError(retry_id)
        return pending

    def cancel(self, retry_id: str) -> bool:
        """Drop an offer without running it. False if it was unknown."""
        self._expire()
        return self._pending.pop(retry_id, None) is not None

    def _expire(self) -> None:
        if self._ttl <= 0:
            return
        cutoff = self._clock() - self._ttl
        # Insertion order is creation order, so stop at the first live entry.
        while self._pending:
            retry_id, oldest = next(iter(self._pending.items()))
            if oldest.created_at > cutoff:
                break
            del self._pending[retry_id]
            logger.debug("Pending retry %s expired", retry_id)
