"""Collection status derived from member card states."""

import logging
from typing import Iterable, Optional, Tuple

from hanzicards.models.card import Card, CardStatus
from hanzicards.models.collection import Collection, CollectionProgress, CollectionStatus

logger = logging.getLogger(__name__)

# Legal collection transitions; ready/failed can restart on re-enrichment
COLLECTION_TRANSITIONS = {
    CollectionStatus.PENDING: {CollectionStatus.IMPORTING, CollectionStatus.ENRICHING, CollectionStatus.READY, CollectionStatus.FAILED},
    CollectionStatus.IMPORTING: {CollectionStatus.ENRICHING, CollectionStatus.READY, CollectionStatus.FAILED},
    CollectionStatus.ENRICHING: {CollectionStatus.READY, CollectionStatus.FAILED},
    CollectionStatus.READY: {CollectionStatus.ENRICHING, CollectionStatus.IMPORTING},
    CollectionStatus.FAILED: {CollectionStatus.ENRICHING, CollectionStatus.IMPORTING},
}


def can_transition(current: CollectionStatus, target: CollectionStatus) -> bool:
    return current == target or target in COLLECTION_TRANSITIONS[current]


def summarize_cards(cards: Iterable[Card]) -> CollectionProgress:
    """Count processed (terminal) and failed cards."""
    progress = CollectionProgress()
    for card in cards:
        progress.total += 1
        if card.is_terminal:
            progress.processed += 1
        if card.status == CardStatus.FAILED:
            progress.failed += 1
    return progress


def derive_collection_status(
    cards: Iterable[Card], catastrophic_error: Optional[str] = None
) -> Tuple[CollectionStatus, CollectionProgress]:
    """Compute collection status from its cards.

    - A catastrophic pipeline error means failed.
    - No cards means ready.
    - Every card terminal: failed if every card failed, otherwise ready.
    - Otherwise enriching.

    Returns:
        Tuple of (status, progress)
    """
    progress = summarize_cards(cards)

    if catastrophic_error:
        return CollectionStatus.FAILED, progress
    if progress.total == 0:
        return CollectionStatus.READY, progress
    if progress.processed == progress.total:
        if progress.failed == progress.total:
            return CollectionStatus.FAILED, progress
        return CollectionStatus.READY, progress
    return CollectionStatus.ENRICHING, progress


def apply_card_states(collection: Collection, cards: Iterable[Card]) -> bool:
    """Recompute ``collection`` status and progress in place.

    Returns:
        True if the status changed
    """
    status, progress = derive_collection_status(cards, collection.error)
    changed = status != collection.status

    if changed and not can_transition(collection.status, status):
        logger.warning(
            f"Collection {collection.id}: unexpected transition {collection.status.value} -> {status.value}"
        )

    collection.status = status
    collection.progress = progress
    if status == CollectionStatus.READY:
        collection.current_operation = None
    elif status == CollectionStatus.ENRICHING:
        collection.current_operation = f"Enriching cards ({progress.processed}/{progress.total})"
    return changed
