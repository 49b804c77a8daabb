"""Dictionary lookup interface and adapters.

``lookup`` returns every entry for a symbol in dictionary order. More than one
entry means the symbol has several readings and needs disambiguation.
"""

import logging
import re
import unicodedata
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List

from hanzicards.models.dictionary import DictionaryEntry

logger = logging.getLogger(__name__)

# 長 长 [chang2] /long/length/
_CEDICT_LINE = re.compile(r"^(\S+)\s+(\S+)\s+\[([^\]]*)\]\s+/(.*)/\s*$")


class DictionaryLookup(ABC):
    """Abstract base class for dictionary sources."""

    @abstractmethod
    def lookup(self, symbol: str) -> List[DictionaryEntry]:
        """Return every entry for ``symbol`` (empty list if unknown)."""

    def size(self) -> int:
        """Get the number of distinct symbols in the dictionary."""
        return 0


class InMemoryDictionary(DictionaryLookup):
    """Dictionary backed by a list of entries, keyed by traditional form."""

    def __init__(self, entries: Iterable[DictionaryEntry] = ()):
        self._entries: Dict[str, List[DictionaryEntry]] = defaultdict(list)
        for entry in entries:
            self.add(entry)

    def add(self, entry: DictionaryEntry) -> None:
        key = unicodedata.normalize("NFC", entry.symbol)
        existing = self._entries[key]
        # CC-CEDICT repeats a reading for different senses; merge them
        for current in existing:
            if current.pronunciation.lower() == entry.pronunciation.lower():
                current.definitions.extend(
                    d for d in entry.definitions if d not in current.definitions
                )
                return
        existing.append(entry.model_copy(deep=True))

    def lookup(self, symbol: str) -> List[DictionaryEntry]:
        key = unicodedata.normalize("NFC", symbol.strip())
        return [e.model_copy(deep=True) for e in self._entries.get(key, [])]

    def size(self) -> int:
        return len(self._entries)


class CedictDictionary(InMemoryDictionary):
    """CC-CEDICT file loaded into memory.

    Proper-noun readings (capitalized pinyin such as ``Chang2``) are skipped
    unless ``include_proper_nouns`` is set.
    """

    def __init__(self, path: str | Path, include_proper_nouns: bool = False):
        super().__init__()
        self.path = Path(path)
        self.include_proper_nouns = include_proper_nouns
        self.load_dictionary()

    def load_dictionary(self) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"CC-CEDICT file not found: {self.path}")

        loaded = 0
        skipped = 0
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                entry = parse_cedict_line(line)
                if entry is None:
                    continue
                if not self.include_proper_nouns and entry.pronunciation[:1].isupper():
                    skipped += 1
                    continue
                self.add(entry)
                loaded += 1

        logger.info(
            f"Loaded {loaded} CC-CEDICT entries ({self.size()} symbols, "
            f"{skipped} proper nouns skipped) from {self.path}"
        )


def parse_cedict_line(line: str) -> DictionaryEntry | None:
    """Parse one CC-CEDICT line, returning None for comments and malformed lines.

    Example:
        >>> parse_cedict_line("長 长 [chang2] /long/length/").pronunciation
        'chang2'
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    match = _CEDICT_LINE.match(line)
    if not match:
        logger.debug(f"Skipping malformed CC-CEDICT line: {line[:40]}")
        return None
    traditional, simplified, pronunciation, definitions = match.groups()
    return DictionaryEntry(
        symbol=unicodedata.normalize("NFC", traditional),
        simplified=simplified,
        pronunciation=pronunciation,
        definitions=[d for d in definitions.split("/") if d],
    )
