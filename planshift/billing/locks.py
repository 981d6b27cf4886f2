"""Per-subscription single-flight locks for transitions."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger(__name__)


class SubscriptionLocks:
    """In-process asyncio locks keyed by Stripe subscription id.

    Serializes transitions on one subscription within this process only.
    """

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self._locks: dict[str, asyncio.Lock] = {}
        # Holder plus waiters per key; the lock is dropped when this reaches zero
        self._users: dict[str, int] = {}

    def _get_lock(self, stripe_subscription_id: str) -> asyncio.Lock:
        """Get or create the lock for a subscription."""
        if stripe_subscription_id not in self._locks:
            self._locks[stripe_subscription_id] = asyncio.Lock()
        return self._locks[stripe_subscription_id]

    def is_locked(self, stripe_subscription_id: str) -> bool:
        lock = self._locks.get(stripe_subscription_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, stripe_subscription_id: str) -> AsyncIterator[None]:
        if not self._enabled:
            yield
            return
        lock = self._get_lock(stripe_subscription_id)
        self._users[stripe_subscription_id] = self._users.get(stripe_subscription_id, 0) + 1
        try:
            if lock.locked():
                logger.info("transition_waiting_for_lock", stripe_subscription_id=stripe_subscription_id)
            async with lock:
                yield
        finally:
            self._users[stripe_subscription_id] -= 1
            if self._users[stripe_subscription_id] == 0:
                del self._users[stripe_subscription_id]
                del self._locks[stripe_subscription_id]
