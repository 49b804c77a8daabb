"""Shared fixtures: a small dictionary, fake generators and a service wired to them."""

import threading
from typing import Iterable, Optional

import pytest

from hanzicards.config import PipelineConfig
from hanzicards.exceptions import ProviderError
from hanzicards.generators.base import GeneratedMedia, MediaGenerator
from hanzicards.models.card import MediaKind
from hanzicards.models.dictionary import DictionaryEntry
from hanzicards.service import EnrichmentService
from hanzicards.utils.dictionary import InMemoryDictionary
from hanzicards.utils.object_store import LocalObjectStore

ENTRIES = [
    ("累", "lei4", ["tired", "weary"]),
    ("累", "lei3", ["to accumulate", "to involve"]),
    ("行", "xing2", ["to walk", "OK"]),
    ("行", "hang2", ["row", "line", "profession"]),
    ("長", "chang2", ["long", "length"]),
    ("長", "zhang3", ["chief", "to grow"]),
    ("書", "shu1", ["book", "letter"]),
    ("水", "shui3", ["water"]),
    ("貓", "mao1", ["cat"]),
    ("銀行", "yin2 hang2", ["bank"]),
    ("的", "de5", ["possessive particle"]),
]


def make_dictionary() -> InMemoryDictionary:
    return InMemoryDictionary(
        DictionaryEntry(symbol=symbol, pronunciation=pron, definitions=defs)
        for symbol, pron, defs in ENTRIES
    )


class FakeGenerator(MediaGenerator):
    """Generator that returns deterministic bytes and counts provider calls."""

    def __init__(
        self,
        kind: MediaKind,
        fail_symbols: Iterable[str] = (),
        skip_symbols: Iterable[str] = (),
    ):
        super().__init__()
        self.kind = kind
        self.fail_symbols = set(fail_symbols)
        self.skip_symbols = set(skip_symbols)
        self.requests = []
        self._lock = threading.Lock()

    def should_skip(self, symbol: str, meaning: str, pronunciation: str) -> bool:
        return symbol in self.skip_symbols

    def _generate_sync(self, symbol: str, meaning: str, pronunciation: str) -> GeneratedMedia:
        with self._lock:
            self.requests.append((symbol, pronunciation))
        if symbol in self.fail_symbols:
            raise ProviderError(f"fake-{self.kind.value}", f"cannot render {symbol}")
        content_type = "image/png" if self.kind == MediaKind.IMAGE else "audio/mpeg"
        return GeneratedMedia(data=f"{self.kind.value}:{symbol}:{pronunciation}:{self.calls}".encode(), content_type=content_type)


@pytest.fixture
def dictionary():
    return make_dictionary()


@pytest.fixture
def store(tmp_path):
    return LocalObjectStore(tmp_path / "media")


@pytest.fixture
def fast_config():
    """Config with no waiting between batches or retries."""
    return PipelineConfig(
        batch_size=2,
        batch_delay_seconds=0,
        backoff_seconds=0,
        max_attempts=2,
    )


@pytest.fixture
def image_generator():
    return FakeGenerator(MediaKind.IMAGE)


@pytest.fixture
def audio_generator():
    return FakeGenerator(MediaKind.AUDIO)


@pytest.fixture
def fake_generator():
    """Factory for generators with failing or skipped symbols."""
    return FakeGenerator


@pytest.fixture
def make_service(dictionary, store, fast_config):
    """Factory for a service over the shared store, with the given generators."""

    def factory(image: Optional[MediaGenerator] = None, audio: Optional[MediaGenerator] = None, config=None):
        generators = {}
        if image is not None:
            generators[MediaKind.IMAGE] = image
        if audio is not None:
            generators[MediaKind.AUDIO] = audio
        return EnrichmentService(
            dictionary=dictionary, store=store, generators=generators, config=config or fast_config
        )

    return factory
