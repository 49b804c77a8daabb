"""Document storage for cards and collections.

Records are kept in memory as pydantic models and handed out as deep copies,
so callers never mutate stored state by accident. With a directory configured,
every write is also persisted as one JSON document per record.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Generic, Iterable, List, Optional, Set, Type, TypeVar

from pydantic import BaseModel

from hanzicards.exceptions import NotFoundError, StaleWriteError
from hanzicards.models.card import Card, CardStatus
from hanzicards.models.collection import Collection
from hanzicards.utils.file_io import read_json, write_json

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class RecordStore(Generic[M]):
    """Keyed document store for one model type."""

    def __init__(self, model: Type[M], directory: Optional[str | Path] = None):
        self.model = model
        self.directory = Path(directory) if directory else None
        self._records: Dict[str, M] = {}
        self._lock = threading.RLock()
        if self.directory:
            self._load()

    def _load(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        for path in sorted(self.directory.glob("*.json")):
            record = self.model.model_validate(read_json(path))
            self._records[record.id] = record
        logger.info(f"Loaded {len(self._records)} {self.model.__name__} records from {self.directory}")

    def _persist(self, record: M) -> None:
        if self.directory:
            write_json(record.model_dump(mode="json"), self.directory / f"{record.id}.json")

    def get(self, record_id: str) -> M:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise NotFoundError(f"{self.model.__name__} {record_id} not found")
            return record.model_copy(deep=True)

    def find(self, record_id: str) -> Optional[M]:
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def put(self, record: M) -> M:
        with self._lock:
            stored = record.model_copy(deep=True)
            self._records[stored.id] = stored
            self._persist(stored)
            return stored.model_copy(deep=True)

    def delete(self, record_id: str) -> bool:
        with self._lock:
            if self._records.pop(record_id, None) is None:
                return False
            if self.directory:
                (self.directory / f"{record_id}.json").unlink(missing_ok=True)
            return True

    def all(self) -> List[M]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def __len__(self) -> int:
        return len(self._records)


class CardRepository(RecordStore[Card]):
    """Card records with per-card write ordering."""

    def __init__(self, directory: Optional[str | Path] = None):
        super().__init__(Card, directory)

    def save(self, card: Card, stamp: int) -> Card:
        """Write ``card`` on behalf of the job with sequence ``stamp``.

        Raises:
            StaleWriteError: If a job with a later sequence already wrote the card
            NotFoundError: If the card was deleted meanwhile
        """
        with self._lock:
            current = self._records.get(card.id)
            if current is None:
                raise NotFoundError(f"Card {card.id} not found")
            if stamp < current.stamp:
                raise StaleWriteError(card.id, stamp, current.stamp)
            card.stamp = stamp
            return self.put(card)

    def for_collection(self, collection: Collection) -> List[Card]:
        with self._lock:
            return [
                self._records[card_id].model_copy(deep=True)
                for card_id in collection.card_ids
                if card_id in self._records
            ]

    def find_by_symbol(self, symbol: str, statuses: Optional[Iterable[CardStatus]] = None) -> List[Card]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._records.values()
                if c.symbol == symbol and (wanted is None or c.status in wanted)
            ]

    def referenced_keys(self) -> Set[str]:
        """Every media key referenced by any card."""
        with self._lock:
            return {ref.key for card in self._records.values() for ref in card.media_refs()}


class CollectionRepository(RecordStore[Collection]):
    def __init__(self, directory: Optional[str | Path] = None):
        super().__init__(Collection, directory)
