"""Pydantic models for cards, collections, jobs and progress events."""

from hanzicards.models.card import (
    Card,
    CardStatus,
    EnrichedState,
    FailedState,
    MediaKind,
    MediaRef,
    PartiallyEnrichedState,
    PendingState,
    PronunciationSelection,
    Resolution,
    ResolvedReading,
    UnenrichedState,
)
from hanzicards.models.collection import Collection, CollectionProgress, CollectionStatus
from hanzicards.models.dictionary import Candidate, DictionaryEntry, DisambiguationPrompt, FrequencyHint
from hanzicards.models.events import EventType, ProgressEvent
from hanzicards.models.job import Job, JobPayload, JobState, JobStatus, JobType

__all__ = [
    "Candidate",
    "Card",
    "CardStatus",
    "Collection",
    "CollectionProgress",
    "CollectionStatus",
    "DictionaryEntry",
    "DisambiguationPrompt",
    "EnrichedState",
    "EventType",
    "FailedState",
    "FrequencyHint",
    "Job",
    "JobPayload",
    "JobState",
    "JobStatus",
    "JobType",
    "MediaKind",
    "MediaRef",
    "PartiallyEnrichedState",
    "PendingState",
    "ProgressEvent",
    "PronunciationSelection",
    "Resolution",
    "ResolvedReading",
    "UnenrichedState",
]
