"""Progress events published to session subscribers."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    CONNECTED = "connected"
    IMPORT_STARTED = "import_started"
    IMPORT_COMPLETED = "import_completed"
    ENRICHMENT_STARTED = "enrichment_started"
    CARD_ENRICHED = "card_enriched"
    CARD_FAILED = "card_failed"
    DISAMBIGUATION_REQUIRED = "disambiguation_required"
    PROGRESS = "progress"
    COLLECTION_READY = "collection_ready"
    COLLECTION_FAILED = "collection_failed"
    COLLECTION_STOPPED = "collection_stopped"


TERMINAL_EVENTS = {EventType.COLLECTION_READY, EventType.COLLECTION_FAILED}


class ProgressEvent(BaseModel):
    type: EventType
    session_id: str
    collection_id: Optional[str] = None
    card_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS
