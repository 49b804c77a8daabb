"""Pronunciation audio generator.

Speech models read a lone polyphonic character with whatever reading they
consider most likely, so 長 would sound like cháng on every card. Symbols with
more than one reading are spoken inside a short phrase that forces the chosen
reading: a hand-tuned phrase when one is known, otherwise one written by the
chat model.
"""

import logging
import re
import threading
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, Field

from hanzicards.generators.base import GeneratedMedia, MediaGenerator
from hanzicards.models.card import MediaKind
from hanzicards.utils.dictionary import DictionaryLookup
from hanzicards.utils.elevenlabs_client import ElevenLabsClient
from hanzicards.utils.llm_client import LLMClient
from hanzicards.utils.pinyin import normalize_pronunciation, to_tone_marks
from hanzicards.utils.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

# (symbol, numbered pinyin) -> phrase that forces that reading
KNOWN_CONTEXT_PHRASES: Dict[Tuple[str, str], str] = {
    ("累", "lei3"): "累積",
    ("累", "lei4"): "好累",
    ("長", "zhang3"): "長大",
    ("長", "chang2"): "很長",
    ("行", "xing2"): "行走",
    ("行", "hang2"): "銀行",
    ("得", "de2"): "得到",
    ("得", "de"): "走得",
    ("得", "dei3"): "得去",
    ("重", "zhong4"): "重要",
    ("重", "chong2"): "重複",
    ("好", "hao3"): "好的",
    ("好", "hao4"): "好學",
    ("少", "shao3"): "少數",
    ("少", "shao4"): "少年",
    ("當", "dang1"): "當然",
    ("當", "dang4"): "當作",
    ("相", "xiang1"): "相同",
    ("相", "xiang4"): "相片",
    ("傳", "chuan2"): "傳播",
    ("傳", "zhuan4"): "傳記",
}

_HANZI = re.compile(r"^[㐀-䶿一-鿿豈-﫿]+$")
_STRIP = re.compile(r"[\s\"'「」『』。，、！？.,!?]")

MAX_EXTRA_CHARACTERS = 3


class ContextPhrase(BaseModel):
    """Short phrase that makes a speech model read a symbol one way."""

    phrase: str = Field(..., description="2-4 Traditional Chinese characters containing the symbol")


class SpeechTextBuilder:
    """Chooses the text sent to the speech model for one reading.

    Args:
        known: (symbol, pronunciation) -> phrase table; defaults to
            ``KNOWN_CONTEXT_PHRASES``
        llm: Chat client for symbols missing from the table
        dictionary: Used to tell ambiguous symbols from unambiguous ones;
            without it only the table is consulted
    """

    def __init__(
        self,
        known: Optional[Dict[Tuple[str, str], str]] = None,
        llm: Optional[LLMClient] = None,
        dictionary: Optional[DictionaryLookup] = None,
    ):
        table = KNOWN_CONTEXT_PHRASES if known is None else known
        self.known = {
            (symbol, normalize_pronunciation(pron)): phrase for (symbol, pron), phrase in table.items()
        }
        self.llm = llm
        self.dictionary = dictionary
        self._generated: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def text_for(self, symbol: str, meaning: str, pronunciation: str) -> str:
        """Text to synthesize for ``symbol`` read as ``pronunciation``.

        Raises:
            ProviderError: If a phrase had to be generated and the chat model failed
        """
        key = (symbol, normalize_pronunciation(pronunciation))
        phrase = self.known.get(key)
        if phrase:
            return phrase

        if not self._is_ambiguous(symbol):
            return symbol

        with self._lock:
            phrase = self._generated.get(key)
        if phrase:
            return phrase

        if self.llm is None:
            logger.warning(f"No context phrase for '{symbol}' ({pronunciation}); speaking it alone")
            return symbol

        phrase = self._generate_phrase(symbol, meaning, key[1])
        if phrase is None:
            return symbol
        with self._lock:
            self._generated[key] = phrase
        return phrase

    def _is_ambiguous(self, symbol: str) -> bool:
        if self.dictionary is None:
            return False
        readings = {normalize_pronunciation(e.pronunciation) for e in self.dictionary.lookup(symbol)}
        return len(readings) > 1

    def _generate_phrase(self, symbol: str, meaning: str, pronunciation: str) -> Optional[str]:
        display = to_tone_marks(pronunciation)
        result = self.llm.generate(
            prompt=(
                f'Write a short Traditional Chinese phrase containing "{symbol}" read as '
                f'"{display}" with the meaning "{meaning}". A text-to-speech voice must '
                f"pronounce {symbol} as {display} when reading the phrase, so choose a common "
                "word where no other reading is possible. Return 2-4 characters only."
            ),
            response_model=ContextPhrase,
            system_prompt="You are a Taiwan Mandarin teacher recording pronunciation audio.",
            temperature=0.3,
            max_tokens=50,
        )
        phrase = _STRIP.sub("", result.phrase)
        if (
            symbol in phrase
            and _HANZI.match(phrase)
            and len(phrase) <= len(symbol) + MAX_EXTRA_CHARACTERS
            and phrase != symbol
        ):
            logger.info(f"✓ Context phrase for '{symbol}' ({display}): {phrase}")
            return phrase
        logger.warning(f"✗ Unusable context phrase for '{symbol}' ({display}): {result.phrase!r}")
        return None


class SpeechGenerator(MediaGenerator):
    """Synthesizes the symbol, wrapped in a context phrase when its reading is ambiguous."""

    kind = MediaKind.AUDIO

    def __init__(
        self,
        client: ElevenLabsClient,
        rate_limiter: Optional[TokenBucket] = None,
        text_builder: Optional[SpeechTextBuilder] = None,
    ):
        super().__init__(rate_limiter)
        self.client = client
        self.text_builder = text_builder or SpeechTextBuilder()

    def _generate_sync(self, symbol: str, meaning: str, pronunciation: str) -> GeneratedMedia:
        text = self.text_builder.text_for(symbol, meaning, pronunciation)
        if text != symbol:
            logger.debug(f"Speaking '{symbol}' ({pronunciation}) as '{text}'")
        audio = self.client.synthesize(text)
        return GeneratedMedia(data=audio, content_type=ElevenLabsClient.CONTENT_TYPE)
