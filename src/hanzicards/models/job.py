"""Job models for the in-process queues."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from hanzicards.models.card import MediaKind, PronunciationSelection


class JobType(str, Enum):
    BULK_INTAKE = "bulk_intake"
    COLLECTION_ENRICHMENT = "collection_enrichment"
    CARD_ENRICHMENT = "card_enrichment"
    ADMIN_REENRICHMENT = "admin_reenrichment"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"  # waiting out a retry backoff
    PARKED = "parked"  # waiting for external input, not polled
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_JOB_STATES = {JobState.COMPLETED, JobState.FAILED}


class JobPayload(BaseModel):
    """Inputs for a job. Unused fields stay at their defaults."""

    collection_id: Optional[str] = None
    card_id: Optional[str] = None
    symbols: List[str] = Field(default_factory=list, description="Raw symbols for bulk intake")
    selections: Dict[str, PronunciationSelection] = Field(
        default_factory=dict, description="Readings chosen before import, by symbol"
    )
    requester: Optional[str] = None
    session_id: Optional[str] = None
    force: bool = False
    selection: Optional[PronunciationSelection] = None
    override: bool = Field(default=False, description="Write forced media to a per-card key")
    kinds: List[MediaKind] = Field(default_factory=lambda: [MediaKind.IMAGE, MediaKind.AUDIO])


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    type: JobType
    queue: str
    payload: JobPayload = Field(default_factory=JobPayload)

    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 1
    progress: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    parked_reason: Optional[str] = None
    sequence: int = Field(default=0, description="Global enqueue order, used to stamp card writes")

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_JOB_STATES

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)

    def to_status(self) -> "JobStatus":
        return JobStatus(
            id=self.id,
            type=self.type,
            queue=self.queue,
            state=self.state,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            progress=dict(self.progress),
            result=dict(self.result) if self.result is not None else None,
            error=self.error,
            parked_reason=self.parked_reason,
        )


class JobStatus(BaseModel):
    """Read-only view of a job returned to callers."""

    id: str
    type: JobType
    queue: str
    state: JobState
    attempts: int
    max_attempts: int
    progress: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    parked_reason: Optional[str] = None
