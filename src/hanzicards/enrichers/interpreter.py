"""LLM interpretation of symbols the dictionary does not know.

Learners add slang, names and newer words that CC-CEDICT lacks. Rather than
failing those cards, the chat model supplies a short meaning and a Taiwan
Mandarin reading. The reading is checked syllable by syllable and replaced by
pypinyin's reading when the model's answer does not fit the symbol.
"""

import logging
import re
from typing import Optional

from pydantic import BaseModel, Field
from pypinyin import Style, lazy_pinyin

from hanzicards.models.card import Resolution, ResolvedReading
from hanzicards.utils.llm_client import LLMClient
from hanzicards.utils.pinyin import normalize_pronunciation, split_syllables, to_tone_marks

logger = logging.getLogger(__name__)

_SYLLABLE = re.compile(r"^[a-z]*[aeiouv][a-z]*[1-4]?$")

SYSTEM_PROMPT = (
    "You are a Taiwan Mandarin teacher creating flash cards for language learners. "
    "Use simple, common English words and keep meanings short (2-5 words). "
    "For emotion or feeling words give the emotional state, not the related noun."
)


class Interpretation(BaseModel):
    """Structured answer for one symbol."""

    meaning: str = Field(..., description="Short, simple English meaning (2-5 words)")
    pinyin: str = Field(
        ...,
        description="Taiwan Mandarin pinyin with tone marks, one space between syllables",
    )
    context: str = Field("", description="When or how the word is typically used")


def build_prompt(symbol: str) -> str:
    return (
        f'Interpret the Chinese characters "{symbol}" for students learning Chinese in Taiwan.\n'
        "Provide:\n"
        "1. A short, simple English meaning (2-5 words max) using everyday words\n"
        "2. Pinyin with tone marks as pronounced in Taiwan, one space between syllables "
        "(e.g. cōng míng for 聰明)\n"
        "3. Common usage: when or how the word is typically used\n\n"
        "Examples: 隨便 is 'casual/whatever', not 'as one wishes'; "
        "煩 is 'annoyed', not 'trouble'; 高興 is 'happy', not 'elated'."
    )


class SymbolInterpreter:
    """Resolves a reading for a symbol with no dictionary entry."""

    def __init__(self, client: LLMClient):
        self.client = client

    def interpret(self, symbol: str) -> Optional[ResolvedReading]:
        """Ask the chat model for a meaning and reading.

        Args:
            symbol: Traditional Chinese symbol

        Returns:
            An ``INTERPRETED`` reading, or None if the model could not give a
            usable meaning

        Raises:
            ProviderError: If the chat model could not be reached
        """
        result = self.client.generate(
            prompt=build_prompt(symbol),
            response_model=Interpretation,
            system_prompt=SYSTEM_PROMPT,
            temperature=0.3,
            max_tokens=200,
        )

        meaning = result.meaning.strip()
        if not meaning or "unknown" in meaning.lower():
            logger.warning(f"✗ No usable interpretation for '{symbol}': {result.meaning!r}")
            return None

        pronunciation = self.reading_for(symbol, result.pinyin)
        if pronunciation is None:
            logger.warning(f"✗ No usable reading for '{symbol}': {result.pinyin!r}")
            return None

        logger.info(f"✓ Interpreted '{symbol}' as {pronunciation} ({meaning})")
        return ResolvedReading(
            pronunciation=pronunciation,
            display=to_tone_marks(pronunciation),
            meaning=meaning,
            resolution=Resolution.INTERPRETED,
        )

    @staticmethod
    def reading_for(symbol: str, pinyin: str) -> Optional[str]:
        """Normalize the model's pinyin, falling back to pypinyin.

        The model's answer is kept only if it has one well-formed syllable per
        character.
        """
        if _fits(symbol, pinyin):
            return normalize_pronunciation(pinyin)

        fallback = " ".join(
            lazy_pinyin(symbol, style=Style.TONE3, neutral_tone_with_five=True, errors="ignore")
        )
        if _fits(symbol, fallback):
            logger.info(f"Using pypinyin reading for '{symbol}' instead of {pinyin!r}")
            return normalize_pronunciation(fallback)
        return None


def _fits(symbol: str, pinyin: str) -> bool:
    syllables = split_syllables(normalize_pronunciation(pinyin or ""))
    if len(syllables) != len(symbol):
        return False
    return all(_SYLLABLE.match(s) for s in syllables)
