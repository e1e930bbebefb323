"""
Event sources feeding the local cache.

Two interchangeable strategies bring a cache key up to the chain head:
``IndexingEventSource`` pages through an off-chain indexing service and
``ChainEventSource`` scans raw logs in fixed block windows.
``FallbackEventSource`` composes them so an indexing failure hands the rest of
the sweep over to the chain.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

import httpx
from web3 import Web3
from web3.contract import Contract
from web3.types import EventData

from .config import SyncConfig
from .event_store import CacheKey, EventStore
from .exceptions import IndexingError, NetworkError
from .models import DepositEvent, Event, EventType, RelayerRegistration, WithdrawalEvent
from .utils.encoding import normalize_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncTarget:
    """Everything needed to sync one cache key.

    Attributes:
        key: Cache key the events are stored under
        contract: Contract emitting the events
        event_name: Name of the event in the contract ABI
        deployed_block: First block to scan when the cache is empty
        subgraphs: Candidate indexing-service endpoints, in preference order
    """
    key: CacheKey
    contract: Contract
    event_name: str
    deployed_block: int
    subgraphs: tuple[str, ...] = ()

    @property
    def event_type(self) -> EventType:
        return self.key.event_type

    @property
    def label(self) -> str:
        if self.event_type is EventType.RELAYER:
            return "relayer"
        return f"{self.key.amount} {self.key.currency.upper()} {self.event_type.value}"


class CacheSink:
    """Write side of one cache key, tracking where a sweep resumes."""

    def __init__(self, store: EventStore, target: SyncTarget):
        self.store = store
        self.target = target

    def resume_block(self) -> int:
        """One past the block of the last cached event, or the deployment block."""
        cached = self.store.load(self.target.key)
        if cached:
            return cached[-1].block_number + 1
        return self.target.deployed_block

    def write(self, events: Sequence[Event]) -> None:
        if events:
            self.store.append(self.target.key, events)


class EventSource(Protocol):
    async def fetch(self, target: SyncTarget, sink: CacheSink, head: int) -> None:
        """Append every event from the sink's resume block up to ``head``."""
        ...


def _log_to_deposit(log: EventData) -> DepositEvent:
    args = log["args"]
    return DepositEvent(
        block_number=log["blockNumber"],
        tx_hash=normalize_hex(log["transactionHash"]),
        commitment=normalize_hex(args["commitment"]),
        leaf_index=int(args["leafIndex"]),
        timestamp=int(args["timestamp"]),
    )


def _log_to_withdrawal(log: EventData) -> WithdrawalEvent:
    args = log["args"]
    return WithdrawalEvent(
        block_number=log["blockNumber"],
        tx_hash=normalize_hex(log["transactionHash"]),
        nullifier_hash=normalize_hex(args["nullifierHash"]),
        recipient=Web3.to_checksum_address(args["to"]),
        fee=int(args["fee"]),
    )


def _log_to_registration(log: EventData) -> RelayerRegistration:
    args = log["args"]
    return RelayerRegistration(
        block_number=log["blockNumber"],
        ens_hash=normalize_hex(args["relayer"]),
        ens_name=args["ensName"],
        operator_address=Web3.to_checksum_address(args["relayerAddress"]),
    )


LOG_MAPPERS: dict[EventType, Callable[[EventData], Event]] = {
    EventType.DEPOSIT: _log_to_deposit,
    EventType.WITHDRAWAL: _log_to_withdrawal,
    EventType.RELAYER: _log_to_registration,
}


class ChainEventSource:
    """
    Scans contract logs in fixed block windows up to the chain head.

    Every window is appended as soon as it is fetched. A failing window ends
    the sweep, since skipping it would leave a gap below the cache cursor.
    """

    def __init__(self, block_window: int = 1000):
        self.block_window = block_window

    def windows(self, start: int, head: int) -> list[tuple[int, int]]:
        """Inclusive ``(from_block, to_block)`` windows covering ``start..head``."""
        return [
            (from_block, min(from_block + self.block_window - 1, head))
            for from_block in range(start, head + 1, self.block_window)
        ]

    async def fetch(self, target: SyncTarget, sink: CacheSink, head: int) -> None:
        start = sink.resume_block()
        if start > head:
            logger.info(f"{target.label} events already synced to block {head}")
            return

        if not hasattr(target.contract.events, target.event_name):
            raise ValueError(f"Event {target.event_name} not found in contract ABI")
        event_obj = getattr(target.contract.events, target.event_name)
        to_event = LOG_MAPPERS[target.event_type]

        logger.info(f"Querying {target.label} events from RPC, blocks {start} to {head}")
        for from_block, to_block in self.windows(start, head):
            try:
                logs = await asyncio.to_thread(event_obj.get_logs, from_block=from_block, to_block=to_block)
            except Exception as e:
                logger.error(f"Failed fetching {target.label} events from node on block {from_block}: {e}")
                raise NetworkError(
                    f"Failed fetching {target.event_type.value} events for blocks "
                    f"{from_block}-{to_block}: {e}"
                ) from e

            sink.write([to_event(log) for log in logs])
            logger.debug(f"Fetched {len(logs)} {target.label} events to block {to_block}")


SMOKE_QUERIES: dict[EventType, str] = {
    EventType.RELAYER: "{ relayers(first: 10) { address, ensName, ensHash, blockRegistration } }",
    EventType.DEPOSIT: "{ deposits(first: 1, orderBy: timestamp) { blockNumber, index } }",
    EventType.WITHDRAWAL: "{ withdrawals(first: 1, orderBy: timestamp) { timestamp } }",
}

PAGE_QUERIES: dict[EventType, str] = {
    EventType.RELAYER: """
        query($blockRegistration: Int) {
          relayers(orderBy: blockRegistration, first: %(first)d, skip: %(skip)d, where: {blockRegistration%(filter)s: $blockRegistration}) {
            address, ensName, ensHash, blockRegistration
          }
        }""",
    EventType.DEPOSIT: """
        query($currency: String, $amount: String, $blockNumber: Int) {
          deposits(orderBy: blockNumber, first: %(first)d, skip: %(skip)d, where: {currency: $currency, amount: $amount, blockNumber%(filter)s: $blockNumber}) {
            blockNumber, transactionHash, commitment, index, timestamp
          }
        }""",
    EventType.WITHDRAWAL: """
        query($currency: String, $amount: String, $blockNumber: Int) {
          withdrawals(orderBy: blockNumber, first: %(first)d, skip: %(skip)d, where: {currency: $currency, amount: $amount, blockNumber%(filter)s: $blockNumber}) {
            blockNumber, transactionHash, nullifier, to, fee
          }
        }""",
}


def _record_to_event(event_type: EventType, record: dict[str, Any]) -> Event:
    match event_type:
        case EventType.RELAYER:
            return RelayerRegistration(
                block_number=int(record["blockRegistration"]),
                ens_hash=normalize_hex(record["ensHash"]),
                ens_name=record["ensName"],
                operator_address=Web3.to_checksum_address(record["address"]),
            )
        case EventType.DEPOSIT:
            return DepositEvent(
                block_number=int(record["blockNumber"]),
                tx_hash=normalize_hex(record["transactionHash"]),
                commitment=normalize_hex(record["commitment"]),
                leaf_index=int(record["index"]),
                timestamp=int(record.get("timestamp") or 0),
            )
        case _:
            return WithdrawalEvent(
                block_number=int(record["blockNumber"]),
                tx_hash=normalize_hex(record["transactionHash"]),
                nullifier_hash=normalize_hex(record["nullifier"]),
                recipient=Web3.to_checksum_address(record["to"]),
                fee=int(record["fee"]),
            )


class IndexingEventSource:
    """
    Pages through an indexing service in block order.

    Pages are requested with a greater-than filter on the block number. When a
    page comes back full, the events of its last block are dropped and fetched
    again with an equal-to query, so events sharing the boundary block are
    never truncated.
    """

    def __init__(self, client: httpx.AsyncClient, config: SyncConfig | None = None):
        self.client = client
        self.config = config or SyncConfig()

    @property
    def page_size(self) -> int:
        return self.config.page_size

    async def select_endpoint(self, target: SyncTarget) -> str | None:
        """Return the first candidate endpoint that answers the smoke-test query."""
        entity = f"{target.event_type.value}s"
        for candidate in target.subgraphs:
            try:
                response = await self.client.post(candidate, json={"query": SMOKE_QUERIES[target.event_type]})
                response.raise_for_status()
                if response.json()["data"][entity] is None:
                    raise ValueError("Invalid response from indexing service")
                logger.info(f"Selected indexing service for {entity}: {candidate}")
                return candidate
            except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Indexing service {candidate} unavailable: {e}")

        logger.info(f"There is no available indexing service for {entity}")
        return None

    async def _post_with_retry(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        attempt = 0
        while True:
            await asyncio.sleep(self.config.indexing_retry_wait * attempt)
            try:
                response = await self.client.post(url, json=payload)
                response.raise_for_status()
                return response
            except httpx.HTTPError:
                if attempt == self.config.indexing_retry_count:
                    raise
                attempt += 1
                logger.debug(f"Retrying indexing request to {url}, attempt {attempt}")

    async def query(
        self,
        url: str,
        target: SyncTarget,
        block_number: int,
        comparison: str = "_gt",
        skip: int = 0,
    ) -> list[Event]:
        """
        Fetch one page of events relative to ``block_number``.

        Args:
            url: Indexing service endpoint
            target: Sync target being filled
            block_number: Block the filter compares against
            comparison: ``"_gt"`` for blocks after ``block_number``, ``""`` for that block only
            skip: Records to skip, for paging through one crowded block

        Raises:
            IndexingError: On transport errors or malformed responses
        """
        event_type = target.event_type
        query = PAGE_QUERIES[event_type] % {"first": self.page_size, "skip": skip, "filter": comparison}
        if event_type is EventType.RELAYER:
            variables: dict[str, Any] = {"blockRegistration": block_number}
        else:
            variables = {
                "currency": target.key.currency.lower(),
                "amount": target.key.amount.lower(),
                "blockNumber": block_number,
            }

        try:
            response = await self._post_with_retry(url, {"query": query, "variables": variables})
            body = response.json()
            if body.get("errors"):
                raise ValueError(f"query errors: {body['errors']}")
            records = body["data"][f"{event_type.value}s"]
            return [_record_to_event(event_type, record) for record in records]
        except (httpx.HTTPError, KeyError, TypeError, ValueError, AttributeError) as e:
            raise IndexingError(f"Indexing query for {target.label} events failed: {e}") from e

    async def _query_block(self, url: str, target: SyncTarget, block_number: int) -> list[Event]:
        """All events of one block, paging when it holds more than a page."""
        events: list[Event] = []
        while True:
            page = await self.query(url, target, block_number, comparison="", skip=len(events))
            events += page
            if len(page) < self.page_size:
                return events
            logger.debug(f"Block {block_number} holds more than {len(events)} {target.label} events, paging")

    async def fetch(self, target: SyncTarget, sink: CacheSink, head: int) -> None:
        url = await self.select_endpoint(target)
        if url is None:
            raise IndexingError(f"No indexing service available for {target.label} events")

        logger.info(f"Querying latest {target.label} events from indexing service")
        cursor = sink.resume_block() - 1
        while True:
            page = await self.query(url, target, cursor)
            if len(page) < self.page_size:
                sink.write(page)
                break

            boundary = page[-1].block_number
            batch = [event for event in page if event.block_number != boundary]
            batch += await self._query_block(url, target, boundary)
            sink.write(batch)
            cursor = boundary
            logger.info(f"Fetched {target.label} events to block {boundary}")


class FallbackEventSource:
    """Tries ``primary`` once and hands the rest of the sweep to ``fallback``."""

    def __init__(self, primary: EventSource, fallback: EventSource):
        self.primary = primary
        self.fallback = fallback

    async def fetch(self, target: SyncTarget, sink: CacheSink, head: int) -> None:
        try:
            await self.primary.fetch(target, sink, head)
        except IndexingError as e:
            logger.warning(f"{e}; falling back to RPC events")
            await self.fallback.fetch(target, sink, head)
