"""Card model with a tagged enrichment state.

A card's enrichment results live inside its state, so an enriched card always
carries a reading and a failed card always carries a reason.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from hanzicards.models.dictionary import Candidate


class MediaKind(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"


class Resolution(str, Enum):
    """How a reading was chosen."""

    AUTO = "auto"  # single dictionary entry
    EXPLICIT = "explicit"  # user picked a pronunciation
    DEFAULT = "default"  # user accepted the frequency-ranked default
    INTERPRETED = "interpreted"  # no dictionary entry; reading supplied by the LLM


class CardStatus(str, Enum):
    UNENRICHED = "unenriched"
    PENDING = "pending"
    ENRICHED = "enriched"
    PARTIALLY_ENRICHED = "partially_enriched"
    FAILED = "failed"


TERMINAL_CARD_STATUSES = {
    CardStatus.ENRICHED,
    CardStatus.PARTIALLY_ENRICHED,
    CardStatus.FAILED,
}


class MediaRef(BaseModel):
    """Reference to a stored media artifact."""

    key: str = Field(..., description="Object store key")
    kind: MediaKind
    content_type: str
    cached: bool = Field(default=False, description="Served from the shared cache")
    shared: bool = Field(default=True, description="False for per-card override keys")
    url: Optional[str] = None


class ResolvedReading(BaseModel):
    """The reading a card was enriched with."""

    pronunciation: str = Field(..., description="Normalized numbered pinyin")
    display: str = Field(..., description="Pinyin with tone marks")
    meaning: str = ""
    resolution: Resolution = Resolution.AUTO


class PronunciationSelection(BaseModel):
    """A stored disambiguation choice: a pronunciation or acceptance of the default."""

    pronunciation: Optional[str] = None
    accept_default: bool = False

    @model_validator(mode="after")
    def check_choice(self):
        if self.pronunciation is None and not self.accept_default:
            raise ValueError("Selection needs a pronunciation or accept_default=True")
        if self.pronunciation is not None and self.accept_default:
            raise ValueError("Selection cannot both name a pronunciation and accept the default")
        return self


class UnenrichedState(BaseModel):
    status: Literal["unenriched"] = "unenriched"


class PendingState(BaseModel):
    status: Literal["pending"] = "pending"
    disambiguation_required: bool = False
    candidates: List[Candidate] = Field(default_factory=list)
    # Previous results stay visible while the card is re-enriched
    reading: Optional[ResolvedReading] = None
    image: Optional[MediaRef] = None
    audio: Optional[MediaRef] = None


class EnrichedState(BaseModel):
    status: Literal["enriched"] = "enriched"
    reading: ResolvedReading
    image: Optional[MediaRef] = None
    audio: Optional[MediaRef] = None
    image_skipped: bool = False


class PartiallyEnrichedState(BaseModel):
    status: Literal["partially_enriched"] = "partially_enriched"
    reading: ResolvedReading
    image: Optional[MediaRef] = None
    audio: Optional[MediaRef] = None
    image_skipped: bool = False
    errors: Dict[str, str] = Field(default_factory=dict, description="Media kind -> error")


class FailedState(BaseModel):
    status: Literal["failed"] = "failed"
    reason: str
    reading: Optional[ResolvedReading] = None
    image: Optional[MediaRef] = None
    audio: Optional[MediaRef] = None


CardState = Annotated[
    Union[UnenrichedState, PendingState, EnrichedState, PartiallyEnrichedState, FailedState],
    Field(discriminator="status"),
]


class Card(BaseModel):
    """A study card for one symbol inside one collection."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    collection_id: str
    symbol: str = Field(..., description="Raw symbol text (NFC)")
    state: CardState = Field(default_factory=UnenrichedState)

    selection: Optional[PronunciationSelection] = None
    disambiguated: bool = False
    force_refresh: bool = False

    last_enriched_at: Optional[datetime] = None
    stamp: int = Field(default=0, description="Sequence of the job that last wrote this card")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def status(self) -> CardStatus:
        return CardStatus(self.state.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CARD_STATUSES

    @property
    def reading(self) -> Optional[ResolvedReading]:
        return getattr(self.state, "reading", None)

    @property
    def image(self) -> Optional[MediaRef]:
        return getattr(self.state, "image", None)

    @property
    def audio(self) -> Optional[MediaRef]:
        return getattr(self.state, "audio", None)

    def media_refs(self) -> List[MediaRef]:
        return [ref for ref in (self.image, self.audio) if ref is not None]
