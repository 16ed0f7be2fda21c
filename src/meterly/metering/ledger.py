"""
Append-only usage event ledger.

Events are stored once per transaction id. The transaction-id hash is the
only synchronisation point: whichever writer sets the field first owns the
event, and every other writer reads that event back. The event body, its id
lookup and both time indexes are written in one atomic storage step.
"""

from __future__ import annotations

import math
from datetime import datetime

from meterly.core.models import UsageEvent
from meterly.storage.backend import StorageBackend
from meterly.storage.namespace import TenantNamespace


def _score(ts: datetime | None, default: float) -> float:
    return ts.timestamp() if ts is not None else default


class EventLedger:
    """Durable, idempotent store of raw usage events for one tenant."""

    def __init__(self, storage: StorageBackend, namespace: TenantNamespace):
        self._storage = storage
        self._ns = namespace
        self._by_txn_key = namespace.key("events", "txn")
        self._by_id_key = namespace.key("events", "id")

    def _index_key(self, subscription_id: str, code: str | None = None) -> str:
        if code is None:
            return self._ns.key("events", "sub", subscription_id)
        return self._ns.key("events", "sub", subscription_id, "code", code)

    async def insert(self, event: UsageEvent) -> tuple[UsageEvent, bool]:
        """
        Store an event unless its transaction id is already present.

        Returns:
            Tuple of (stored event, created). When created is False the
            returned event is the one stored first.
        """
        score = event.timestamp.timestamp()
        created = await self._storage.hsetnx_with_writes(
            self._by_txn_key,
            event.transaction_id,
            event.model_dump_json(),
            hset=[(self._by_id_key, event.id, event.transaction_id)],
            zadd=[
                (self._index_key(event.subscription_id), event.transaction_id, score),
                (self._index_key(event.subscription_id, event.code), event.transaction_id, score),
            ],
        )
        if created:
            return event, True

        existing = await self.get_by_transaction_id(event.transaction_id)
        if existing is None:
            raise RuntimeError(
                f"Ledger entry for transaction '{event.transaction_id}' vanished"
            )
        await self.reindex(existing)
        return existing, False

    async def reindex(self, event: UsageEvent) -> bool:
        """
        Rewrite the id lookup and time indexes of a stored event.

        Every write is idempotent. Replays call this so that an event whose
        index writes were lost still becomes visible to listing and
        aggregation.

        Returns:
            True if a time index was missing the event.
        """
        score = event.timestamp.timestamp()
        await self._storage.hset(self._by_id_key, event.id, event.transaction_id)
        added = await self._storage.zadd(
            self._index_key(event.subscription_id), event.transaction_id, score
        )
        added += await self._storage.zadd(
            self._index_key(event.subscription_id, event.code), event.transaction_id, score
        )
        return added > 0

    async def get_by_transaction_id(self, transaction_id: str) -> UsageEvent | None:
        raw = await self._storage.hget(self._by_txn_key, transaction_id)
        return UsageEvent.model_validate_json(raw) if raw is not None else None

    async def get(self, event_id: str) -> UsageEvent | None:
        transaction_id = await self._storage.hget(self._by_id_key, event_id)
        if transaction_id is None:
            return None
        return await self.get_by_transaction_id(transaction_id)

    async def _load(self, transaction_ids: list[str]) -> list[UsageEvent]:
        raws = await self._storage.hmget(self._by_txn_key, transaction_ids)
        return [UsageEvent.model_validate_json(raw) for raw in raws if raw is not None]

    async def count(
        self,
        subscription_id: str,
        code: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        """Number of events in the inclusive time range."""
        return await self._storage.zcount(
            self._index_key(subscription_id, code),
            _score(start, -math.inf),
            _score(end, math.inf),
        )

    async def page(
        self,
        subscription_id: str,
        code: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[UsageEvent]:
        """Events newest first, bounds inclusive."""
        members = await self._storage.zrange_by_score(
            self._index_key(subscription_id, code),
            _score(start, -math.inf),
            _score(end, math.inf),
            reverse=True,
            offset=offset,
            count=limit,
        )
        return await self._load(members)

    async def scan(
        self,
        subscription_id: str,
        code: str,
        start: datetime,
        end: datetime,
    ) -> list[UsageEvent]:
        """Events with start <= timestamp < end, oldest first."""
        members = await self._storage.zrange_by_score(
            self._index_key(subscription_id, code),
            start.timestamp(),
            end.timestamp(),
            max_exclusive=True,
        )
        events = await self._load(members)
        return sorted(events, key=lambda e: (e.timestamp, e.created_at))
