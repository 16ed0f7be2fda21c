"""
Subscription directory.

Read side of the subscription records owned by the subscription
management layer. Subscriptions resolve by internal id first, then by the
tenant-supplied external id.
"""

from __future__ import annotations

import structlog

from meterly.core.errors import NotFoundError
from meterly.core.models import Subscription
from meterly.storage.backend import StorageBackend
from meterly.storage.namespace import TenantNamespace

logger = structlog.get_logger()


class SubscriptionDirectory:
    """Subscription lookups for one tenant."""

    def __init__(self, storage: StorageBackend, namespace: TenantNamespace):
        self._storage = storage
        self._subs_key = namespace.key("subscriptions")
        self._external_key = namespace.key("subscriptions", "external")

    async def save(self, subscription: Subscription) -> Subscription:
        """Insert or replace a subscription record."""
        await self._storage.hset(self._subs_key, subscription.id, subscription.model_dump_json())
        if subscription.external_id:
            await self._storage.hset(self._external_key, subscription.external_id, subscription.id)
        return subscription

    async def find(self, id_or_external_id: str) -> Subscription | None:
        """Resolve by internal id, falling back to external id."""
        raw = await self._storage.hget(self._subs_key, id_or_external_id)
        if raw is None:
            internal_id = await self._storage.hget(self._external_key, id_or_external_id)
            if internal_id is not None:
                raw = await self._storage.hget(self._subs_key, internal_id)
        if raw is None:
            return None
        return Subscription.model_validate_json(raw)

    async def get(self, id_or_external_id: str) -> Subscription:
        subscription = await self.find(id_or_external_id)
        if subscription is None:
            raise NotFoundError(f"Subscription '{id_or_external_id}' not found")
        return subscription
