"""
Append-only JSON cache of chain events.

Each (event type, pool) key maps to one JSON array on disk. Writers always
rewrite the whole file through a temporary file and ``os.replace`` so a reader
never observes a half-written array.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from .models import EVENT_CLASSES, Event, EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Identity of one cached event sequence.

    Relayer registrations are global to the registry, so their key carries no
    pool coordinates.
    """
    event_type: EventType
    network_name: str = ""
    currency: str = ""
    amount: str = ""

    @classmethod
    def relayers(cls) -> "CacheKey":
        return cls(EventType.RELAYER)

    @property
    def relative_path(self) -> Path:
        if self.event_type is EventType.RELAYER:
            return Path("relayer") / "register.json"
        name = f"{self.event_type.value}s_{self.currency}_{self.amount}.json"
        return Path(self.network_name.lower()) / name

    def __str__(self) -> str:
        return str(self.relative_path)


def _sort_batch(event_type: EventType, events: Sequence[Event]) -> list[Event]:
    match event_type:
        case EventType.DEPOSIT:
            return sorted(events, key=lambda event: event.leaf_index)
        case EventType.RELAYER:
            return sorted(events, key=lambda event: event.block_number)
        case _:
            return list(events)


class EventStore:
    """Persists ordered event sequences under a cache directory."""

    def __init__(self, cache_dir: str | Path):
        self.cache_dir = Path(cache_dir)

    def path_for(self, key: CacheKey) -> Path:
        return self.cache_dir / key.relative_path

    def load(self, key: CacheKey) -> list[Event]:
        """
        Load the cached events of a key.

        A missing or unreadable file yields an empty list; corruption is left
        for downstream checks (such as root validation) to surface.

        Args:
            key: Cache key to read

        Returns:
            Events in cache order
        """
        path = self.path_for(key)
        if not path.exists():
            return []

        try:
            with path.open() as file:
                raw: Any = json.load(file)
            if not isinstance(raw, list):
                raise ValueError(f"expected a JSON array, got {type(raw).__name__}")
            event_class = EVENT_CLASSES[key.event_type]
            return [event_class.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return []

    def append(self, key: CacheKey, new_events: Sequence[Event]) -> int:
        """
        Append events after the existing ones and rewrite the file atomically.

        Only the new batch is sorted; events already on disk keep their order.

        Args:
            key: Cache key to extend
            new_events: Events newer than the cache cursor

        Returns:
            Total number of cached events after the append
        """
        existing = self.load(key)
        if not new_events:
            return len(existing)

        events = existing + _sort_batch(key.event_type, new_events)
        self._write(self.path_for(key), [event.to_dict() for event in events])
        logger.debug(f"Appended {len(new_events)} events to {key}, total {len(events)}")
        return len(events)

    def reset(self, key: CacheKey) -> None:
        """Remove the cache file of a key, if present."""
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            logger.info(f"Removed cache file {path}")

    @staticmethod
    def _write(path: Path, data: list[dict[str, Any]]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as file:
                json.dump(data, file, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
