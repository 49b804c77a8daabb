"""Dictionary and disambiguation models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class FrequencyHint(str, Enum):
    """How common a reading is, used to rank candidates."""

    VERY_COMMON = "very-common"
    COMMON = "common"
    LESS_COMMON = "less-common"

    @property
    def rank(self) -> int:
        """Sort key: lower is more common."""
        return {"very-common": 0, "common": 1, "less-common": 2}[self.value]


class DictionaryEntry(BaseModel):
    """One reading of a symbol."""

    symbol: str = Field(..., description="Traditional form")
    simplified: str = Field(default="", description="Simplified form")
    pronunciation: str = Field(..., description="Numbered pinyin, e.g. chang2")
    definitions: List[str] = Field(default_factory=list)


class Candidate(BaseModel):
    """A reading offered to the user when a symbol is ambiguous."""

    pronunciation: str = Field(..., description="Normalized numbered pinyin")
    display: str = Field(..., description="Pinyin with tone marks")
    meaning: str = Field(default="", description="Primary definition")
    frequency_hint: FrequencyHint = Field(default=FrequencyHint.COMMON)


class DisambiguationPrompt(BaseModel):
    """Everything needed to ask which reading of a symbol was meant."""

    symbol: str
    candidates: List[Candidate]
    default_pronunciation: Optional[str] = Field(
        None, description="Reading chosen when the default is accepted"
    )
