"""Brings cached event sequences up to the current chain head."""

import logging

import httpx

from .config import SyncConfig
from .event_sources import (
    CacheSink,
    ChainEventSource,
    EventSource,
    FallbackEventSource,
    IndexingEventSource,
    SyncTarget,
)
from .event_store import EventStore
from .models import Event

logger = logging.getLogger(__name__)


class SyncEngine:
    """Runs an event source against a cache key and returns the merged result."""

    def __init__(self, store: EventStore, source: EventSource):
        self.store = store
        self.source = source

    @classmethod
    def create(
        cls,
        store: EventStore,
        client: httpx.AsyncClient,
        config: SyncConfig | None = None,
        only_rpc: bool = False,
    ) -> "SyncEngine":
        """
        Build the standard engine: indexing service first, chain logs as fallback.

        Args:
            store: Event cache
            client: HTTP client for the indexing service
            config: Sync settings
            only_rpc: Skip the indexing service entirely
        """
        config = config or SyncConfig()
        chain = ChainEventSource(config.block_window)
        if only_rpc:
            return cls(store, chain)
        return cls(store, FallbackEventSource(IndexingEventSource(client, config), chain))

    async def sync(self, target: SyncTarget, head: int | None = None) -> list[Event]:
        """
        Sync one cache key and return its full event sequence.

        Args:
            target: What to sync
            head: Chain head to sync to; read from the target's chain when omitted

        Returns:
            All cached events of the key, reloaded from disk

        Raises:
            NetworkError: If a chain window cannot be fetched
        """
        if head is None:
            head = target.contract.w3.eth.block_number

        sink = CacheSink(self.store, target)
        logger.info(f"Syncing {target.label} events from block {sink.resume_block()} to {head}")
        await self.source.fetch(target, sink, head)

        events = self.store.load(target.key)
        if events:
            logger.info(
                f"Cache updated for {target.label} events to block {events[-1].block_number}, "
                f"total {len(events)}"
            )
        return events
