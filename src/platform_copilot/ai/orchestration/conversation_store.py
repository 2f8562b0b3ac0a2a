"""Process-wide conversation state keyed by conversation id.

Conversations are spread across independently locked shards so turns for different
conversations never contend on a single global lock. Each entry carries its own lock
that serialises read/modify/write of that conversation's history. Locks are only
held for synchronous bookkeeping, never across a provider call.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from ...services.settings import ConversationStoreSettings
from .types import MAX_HISTORY_MESSAGES, ConversationContext, MessageSnapshot

__all__ = ["ConversationStore", "StoreStats"]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Statistics
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class StoreStats:
    """Counters for store activity.

    Attributes:
        hits: Lookups that found a live conversation.
        misses: Lookups that found nothing (or only an expired entry).
        created: Conversations created on first reference.
        evictions: Conversations dropped to respect the capacity bound.
        expirations: Conversations dropped after idling past the TTL.
    """

    hits: int = 0
    misses: int = 0
    created: int = 0
    evictions: int = 0
    expirations: int = 0

    def merge(self, other: "StoreStats") -> None:
        self.hits += other.hits
        self.misses += other.misses
        self.created += other.created
        self.evictions += other.evictions
        self.expirations += other.expirations

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "created": self.created,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }


# -----------------------------------------------------------------------------
# Internals
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _Entry:
    context: ConversationContext
    touched_at: float
    lock: threading.Lock = field(default_factory=threading.Lock)
    evicted: bool = False

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        if ttl_seconds <= 0:
            return False
        return now - self.touched_at > ttl_seconds


@dataclass(slots=True)
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: OrderedDict[str, _Entry] = field(default_factory=OrderedDict)
    stats: StoreStats = field(default_factory=StoreStats)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class ConversationStore:
    """Sharded LRU store of :class:`ConversationContext` with idle expiry.

    Example:
        >>> store = ConversationStore()
        >>> context = store.get_or_create("conv-1", user_id="alice")
        >>> store.append("conv-1", MessageSnapshot.user("Create a storage account"))
    """

    def __init__(
        self,
        config: ConversationStoreSettings | None = None,
        *,
        max_messages: int = MAX_HISTORY_MESSAGES,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config if config is not None else ConversationStoreSettings()
        shard_count = max(1, int(self._config.shard_count))
        self._shards = tuple(_Shard() for _ in range(shard_count))
        if self._config.max_conversations and self._config.max_conversations > 0:
            self._per_shard_capacity = max(1, math.ceil(self._config.max_conversations / shard_count))
        else:
            self._per_shard_capacity = 0
        self._max_messages = max(1, int(max_messages))
        self._clock = clock
        self._now = now

    @property
    def config(self) -> ConversationStoreSettings:
        return self._config

    @property
    def stats(self) -> StoreStats:
        total = StoreStats()
        for shard in self._shards:
            with shard.lock:
                total.merge(shard.stats)
        return total

    def __len__(self) -> int:
        count = 0
        for shard in self._shards:
            with shard.lock:
                count += len(shard.entries)
        return count

    def __contains__(self, conversation_id: object) -> bool:
        if not isinstance(conversation_id, str):
            return False
        shard = self._shard_for(conversation_id)
        with shard.lock:
            entry = shard.entries.get(conversation_id)
            return entry is not None and not entry.is_expired(self._clock(), self._config.idle_ttl_seconds)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get_or_create(self, conversation_id: str, *, user_id: str | None = None) -> ConversationContext:
        """Return a copy of the conversation, creating it on first reference."""

        while True:
            entry = self._acquire_entry(conversation_id, user_id=user_id)
            with entry.lock:
                if entry.evicted:
                    continue
                self._touch(entry.context)
                return entry.context.copy()

    def get(self, conversation_id: str) -> ConversationContext | None:
        shard = self._shard_for(conversation_id)
        with shard.lock:
            entry = shard.entries.get(conversation_id)
            if entry is not None and entry.is_expired(self._clock(), self._config.idle_ttl_seconds):
                self._drop_locked(shard, conversation_id, expired=True)
                entry = None
            if entry is None:
                shard.stats.misses += 1
                return None
            shard.stats.hits += 1
        with entry.lock:
            if entry.evicted:
                return None
            return entry.context.copy()

    def append(self, conversation_id: str, message: MessageSnapshot) -> ConversationContext:
        return self.update(conversation_id, [message])

    def update(
        self,
        conversation_id: str,
        messages: Sequence[MessageSnapshot] = (),
        *,
        capability_names: Iterable[str] = (),
        workflow_updates: Mapping[str, Any] | None = None,
    ) -> ConversationContext:
        """Append messages, record invoked capabilities and merge workflow state.

        History keeps only the newest ``max_messages`` entries. Capability names form an
        ordered set. Returns a copy of the updated conversation.
        """

        names = [name for name in capability_names if name]
        while True:
            entry = self._acquire_entry(conversation_id)
            with entry.lock:
                if entry.evicted:
                    continue
                context = entry.context
                for name in names:
                    _add_unique(context.used_capabilities, name)
                for message in messages:
                    context.messages.append(message)
                    context.message_count += 1
                    if message.capability_name:
                        _add_unique(context.used_capabilities, message.capability_name)
                overflow = len(context.messages) - self._max_messages
                if overflow > 0:
                    del context.messages[:overflow]
                if workflow_updates:
                    context.workflow_state.update(workflow_updates)
                self._touch(context)
                return context.copy()

    def remove(self, conversation_id: str) -> bool:
        shard = self._shard_for(conversation_id)
        with shard.lock:
            return self._drop_locked(shard, conversation_id, expired=False, count=False)

    def cleanup_expired(self) -> int:
        """Drop every conversation idle past the TTL and return how many were removed."""

        removed = 0
        ttl = self._config.idle_ttl_seconds
        for shard in self._shards:
            with shard.lock:
                now = self._clock()
                stale = [key for key, entry in shard.entries.items() if entry.is_expired(now, ttl)]
                for key in stale:
                    self._drop_locked(shard, key, expired=True)
                removed += len(stale)
        if removed:
            LOGGER.info("Expired %s idle conversation(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _shard_for(self, conversation_id: str) -> _Shard:
        return self._shards[hash(conversation_id) % len(self._shards)]

    def _acquire_entry(self, conversation_id: str, *, user_id: str | None = None) -> _Entry:
        if not conversation_id:
            raise ValueError("conversation_id is required")
        shard = self._shard_for(conversation_id)
        with shard.lock:
            now = self._clock()
            entry = shard.entries.get(conversation_id)
            if entry is not None and entry.is_expired(now, self._config.idle_ttl_seconds):
                self._drop_locked(shard, conversation_id, expired=True)
                entry = None
            if entry is None:
                shard.stats.misses += 1
                shard.stats.created += 1
                started = self._now()
                entry = _Entry(
                    context=ConversationContext(
                        conversation_id=conversation_id,
                        user_id=user_id,
                        started_at=started,
                        last_activity_at=started,
                    ),
                    touched_at=now,
                )
                shard.entries[conversation_id] = entry
                LOGGER.info("Created conversation context: %s", conversation_id)
                self._evict_overflow_locked(shard)
            else:
                shard.stats.hits += 1
                entry.touched_at = now
                shard.entries.move_to_end(conversation_id)
            return entry

    def _evict_overflow_locked(self, shard: _Shard) -> None:
        if self._per_shard_capacity <= 0:
            return
        while len(shard.entries) > self._per_shard_capacity:
            victim_id = next(iter(shard.entries))
            self._drop_locked(shard, victim_id, expired=False)
            LOGGER.debug("Evicted least recently used conversation %s", victim_id)

    @staticmethod
    def _drop_locked(shard: _Shard, conversation_id: str, *, expired: bool, count: bool = True) -> bool:
        entry = shard.entries.pop(conversation_id, None)
        if entry is None:
            return False
        with entry.lock:
            entry.evicted = True
        if count:
            if expired:
                shard.stats.expirations += 1
            else:
                shard.stats.evictions += 1
        return True

    def _touch(self, context: ConversationContext) -> None:
        now = self._now()
        if now > context.last_activity_at:
            context.last_activity_at = now


def _add_unique(names: list[str], name: str) -> None:
    if name not in names:
        names.append(name)
