"""Error taxonomy for the enrichment pipeline.

Transient errors (``ProviderError``, ``StorageError``) are retried by the job
queue. ``NotFoundError`` and ``SymbolValidationError`` are terminal.
``DisambiguationRequired`` is a control-flow signal, and ``CacheRaceError`` /
``StaleWriteError`` never leave the component that raises them.
"""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from hanzicards.models.dictionary import Candidate
    from hanzicards.pipeline.intake import ImportReport


class EnrichmentError(Exception):
    """Base class for pipeline errors."""

    retryable = False


class SymbolValidationError(EnrichmentError):
    """Raised synchronously when caller input cannot be accepted."""

    def __init__(self, message: str, report: Optional["ImportReport"] = None):
        super().__init__(message)
        self.report = report


class DisambiguationRequired(EnrichmentError):
    """A symbol has several readings and no stored selection."""

    def __init__(self, symbol: str, candidates: List["Candidate"]):
        super().__init__(
            f"'{symbol}' has {len(candidates)} pronunciations; a selection is required"
        )
        self.symbol = symbol
        self.candidates = candidates


class ProviderError(EnrichmentError):
    """An external generator or lookup failed in a way worth retrying."""

    retryable = True

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class StorageError(EnrichmentError):
    """Object storage failed; retried like a provider error."""

    retryable = True


class NotFoundError(EnrichmentError):
    """A referenced card, collection, job or dictionary entry does not exist."""


class CacheRaceError(EnrichmentError):
    """Another worker holds the generation claim for a media key."""

    def __init__(self, key: str, owner: str):
        super().__init__(f"{key} is claimed by {owner}")
        self.key = key
        self.owner = owner


class StaleWriteError(EnrichmentError):
    """A job tried to write a card that a newer job already wrote."""

    def __init__(self, card_id: str, stamp: int, current: int):
        super().__init__(
            f"Card {card_id}: write stamped {stamp} is older than stored stamp {current}"
        )
        self.card_id = card_id
        self.stamp = stamp
        self.current = current


class JobParked(EnrichmentError):
    """Raised by a job handler to park the job until external input arrives."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
