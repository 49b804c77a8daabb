"""Collection (deck) model."""

from datetime import UTC, datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class CollectionStatus(str, Enum):
    PENDING = "pending"
    IMPORTING = "importing"
    ENRICHING = "enriching"
    READY = "ready"
    FAILED = "failed"


class CollectionProgress(BaseModel):
    """Counters shown while a collection is enriched.

    ``processed`` counts every card that reached a terminal state, whether it
    succeeded, was skipped or failed.
    """

    processed: int = 0
    total: int = 0
    failed: int = 0

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return round(self.processed / self.total * 100, 1)


class Collection(BaseModel):
    """An ordered set of cards owned by one user."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    owner: str
    name: str
    card_ids: List[str] = Field(default_factory=list)

    status: CollectionStatus = CollectionStatus.PENDING
    progress: CollectionProgress = Field(default_factory=CollectionProgress)
    current_operation: Optional[str] = None
    stopped: bool = False
    error: Optional[str] = Field(None, description="Catastrophic pipeline failure reason")
    session_id: str = Field(default_factory=lambda: str(uuid4()))

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.status in (CollectionStatus.READY, CollectionStatus.FAILED)
