"""Base class for media generators."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from hanzicards.models.card import MediaKind
from hanzicards.utils.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedMedia:
    data: bytes
    content_type: str


class MediaGenerator(ABC):
    """Produces one kind of media for a resolved reading.

    Subclasses implement ``should_skip`` and the blocking ``_generate_sync``;
    ``generate`` applies the skip check and the shared rate limit, then runs
    the provider call in a worker thread.
    """

    kind: MediaKind

    def __init__(self, rate_limiter: Optional[TokenBucket] = None):
        self.rate_limiter = rate_limiter
        self.calls = 0

    def should_skip(self, symbol: str, meaning: str, pronunciation: str) -> bool:
        """Whether this symbol gets no media of this kind."""
        return False

    @abstractmethod
    def _generate_sync(self, symbol: str, meaning: str, pronunciation: str) -> GeneratedMedia:
        """Call the provider. Raises ProviderError on failure."""

    async def generate(
        self, symbol: str, meaning: str, pronunciation: str
    ) -> Optional[GeneratedMedia]:
        """Generate media, or return None when the symbol is skipped."""
        if self.should_skip(symbol, meaning, pronunciation):
            logger.info(f"Skipping {self.kind.value} for '{symbol}'")
            return None

        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        self.calls += 1
        return await asyncio.to_thread(self._generate_sync, symbol, meaning, pronunciation)
