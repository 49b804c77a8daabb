"""Pronunciation disambiguation.

A symbol with one dictionary entry resolves on its own. A symbol with several
entries needs a stored selection: an explicit pronunciation, or acceptance of
the default picked by a ``FrequencyPolicy``. A symbol with no entry falls
back to a ``SymbolInterpreter`` when one is configured.
"""

import logging
import unicodedata
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

from hanzicards.enrichers.interpreter import SymbolInterpreter
from hanzicards.exceptions import DisambiguationRequired, NotFoundError, SymbolValidationError
from hanzicards.models.card import PronunciationSelection, Resolution, ResolvedReading
from hanzicards.models.dictionary import Candidate, DictionaryEntry, DisambiguationPrompt, FrequencyHint
from hanzicards.utils.dictionary import DictionaryLookup
from hanzicards.utils.pinyin import normalize_pronunciation, primary_meaning, to_tone_marks

logger = logging.getLogger(__name__)


class FrequencyPolicy(ABC):
    """Ranks the readings of an ambiguous symbol."""

    @abstractmethod
    def hint(self, symbol: str, pronunciation: str) -> FrequencyHint:
        """Frequency label for one (symbol, normalized pronunciation) pair."""

    def preferred(self, symbol: str) -> Optional[str]:
        """Reading to use as the default regardless of hints, if any."""
        return None

    def choose_default(self, symbol: str, candidates: List[Candidate]) -> Candidate:
        """Pick the default reading.

        A preferred reading wins if it is among the candidates. Otherwise the
        most frequent candidate wins, ties going to dictionary order.
        """
        if not candidates:
            raise ValueError(f"No candidates for '{symbol}'")
        preferred = self.preferred(symbol)
        if preferred:
            for candidate in candidates:
                if candidate.pronunciation == preferred:
                    return candidate
        # sorted() is stable, so equal hints keep dictionary order
        return sorted(candidates, key=lambda c: c.frequency_hint.rank)[0]


# (symbol, numbered pinyin) -> hint; everything else is "common"
DEFAULT_FREQUENCY_HINTS: Dict[Tuple[str, str], FrequencyHint] = {
    ("累", "lei4"): FrequencyHint.VERY_COMMON,
    ("累", "lei3"): FrequencyHint.COMMON,
    ("行", "xing2"): FrequencyHint.VERY_COMMON,
    ("行", "hang2"): FrequencyHint.COMMON,
    ("長", "zhang3"): FrequencyHint.COMMON,
    ("長", "chang2"): FrequencyHint.VERY_COMMON,
    ("得", "de2"): FrequencyHint.VERY_COMMON,
    ("得", "dei3"): FrequencyHint.LESS_COMMON,
    ("得", "de"): FrequencyHint.VERY_COMMON,
}

# Readings taught first to learners
DEFAULT_PREFERRED_READINGS: Dict[str, str] = {
    "累": "lei4",
    "長": "zhang3",
    "行": "xing2",
    "重": "zhong4",
    "得": "de2",
    "好": "hao3",
    "為": "wei4",
    "樂": "le4",
    "少": "shao3",
    "還": "hai2",
}


class StaticFrequencyPolicy(FrequencyPolicy):
    """Frequency policy backed by fixed lookup tables."""

    def __init__(
        self,
        hints: Optional[Dict[Tuple[str, str], FrequencyHint]] = None,
        preferred_readings: Optional[Dict[str, str]] = None,
        fallback: FrequencyHint = FrequencyHint.COMMON,
    ):
        table = DEFAULT_FREQUENCY_HINTS if hints is None else hints
        self.hints = {
            (symbol, normalize_pronunciation(pron)): hint for (symbol, pron), hint in table.items()
        }
        readings = DEFAULT_PREFERRED_READINGS if preferred_readings is None else preferred_readings
        self.preferred_readings = {
            symbol: normalize_pronunciation(pron) for symbol, pron in readings.items()
        }
        self.fallback = fallback

    def hint(self, symbol: str, pronunciation: str) -> FrequencyHint:
        return self.hints.get((symbol, normalize_pronunciation(pronunciation)), self.fallback)

    def preferred(self, symbol: str) -> Optional[str]:
        return self.preferred_readings.get(symbol)


class Disambiguator:
    """Resolves which reading of a symbol a card uses."""

    def __init__(
        self,
        dictionary: DictionaryLookup,
        policy: Optional[FrequencyPolicy] = None,
        interpreter: Optional[SymbolInterpreter] = None,
    ):
        self.dictionary = dictionary
        self.policy = policy or StaticFrequencyPolicy()
        self.interpreter = interpreter

    def entries(self, symbol: str) -> List[DictionaryEntry]:
        return self.dictionary.lookup(unicodedata.normalize("NFC", symbol.strip()))

    def candidates(self, symbol: str) -> List[Candidate]:
        """List the distinct readings of ``symbol`` in dictionary order."""
        candidates: List[Candidate] = []
        seen = set()
        for entry in self.entries(symbol):
            pronunciation = normalize_pronunciation(entry.pronunciation)
            if pronunciation in seen:
                continue
            seen.add(pronunciation)
            candidates.append(
                Candidate(
                    pronunciation=pronunciation,
                    display=to_tone_marks(pronunciation),
                    meaning=primary_meaning(entry.definitions),
                    frequency_hint=self.policy.hint(symbol, pronunciation),
                )
            )
        return candidates

    def prompt(self, symbol: str, candidates: Optional[List[Candidate]] = None) -> DisambiguationPrompt:
        candidates = candidates if candidates is not None else self.candidates(symbol)
        default = self.policy.choose_default(symbol, candidates) if candidates else None
        return DisambiguationPrompt(
            symbol=symbol,
            candidates=candidates,
            default_pronunciation=default.pronunciation if default else None,
        )

    def check(self, symbols: Iterable[str]) -> List[DisambiguationPrompt]:
        """Report which symbols need a reading chosen.

        Symbols with zero or one entry are omitted. Each ambiguous symbol is
        reported once, in input order.
        """
        prompts: List[DisambiguationPrompt] = []
        seen = set()
        for symbol in symbols:
            if symbol in seen:
                continue
            seen.add(symbol)
            candidates = self.candidates(symbol)
            if len(candidates) > 1:
                prompts.append(self.prompt(symbol, candidates))

        logger.info(f"Disambiguation check: {len(prompts)} of {len(seen)} symbols are ambiguous")
        return prompts

    def validate_selection(self, symbol: str, selection: PronunciationSelection) -> Candidate:
        """Check a submitted selection against the symbol's readings.

        Returns:
            The candidate the selection resolves to

        Raises:
            NotFoundError: If the symbol has no dictionary entry
            SymbolValidationError: If the pronunciation is not a reading of the symbol
        """
        candidates = self.candidates(symbol)
        if not candidates:
            raise NotFoundError(f"No dictionary entry for '{symbol}'")
        candidate = self._match(symbol, candidates, selection)
        if candidate is None:
            options = ", ".join(c.display for c in candidates)
            raise SymbolValidationError(
                f"'{selection.pronunciation}' is not a reading of '{symbol}' (options: {options})"
            )
        return candidate

    def resolve(
        self, symbol: str, selection: Optional[PronunciationSelection] = None
    ) -> ResolvedReading:
        """Resolve the reading for ``symbol``.

        Args:
            symbol: Card symbol
            selection: Stored selection, if any

        Returns:
            The resolved reading

        Raises:
            NotFoundError: If the symbol has no dictionary entry and
                could not be interpreted
            ProviderError: If interpretation was needed and the chat model failed
            DisambiguationRequired: If the symbol is ambiguous and the selection
                is missing or names an unknown reading
        """
        candidates = self.candidates(symbol)
        if not candidates:
            if self.interpreter is not None:
                reading = self.interpreter.interpret(symbol)
                if reading is not None:
                    return reading
            raise NotFoundError(f"No dictionary entry for '{symbol}'")

        if len(candidates) == 1:
            return self._reading(candidates[0], Resolution.AUTO)

        if selection is not None:
            candidate = self._match(symbol, candidates, selection)
            if candidate is not None:
                resolution = Resolution.DEFAULT if selection.accept_default else Resolution.EXPLICIT
                return self._reading(candidate, resolution)
            logger.warning(
                f"Stored selection {selection.pronunciation!r} is not a reading of '{symbol}'"
            )

        raise DisambiguationRequired(symbol, candidates)

    def _match(
        self, symbol: str, candidates: List[Candidate], selection: PronunciationSelection
    ) -> Optional[Candidate]:
        if selection.accept_default:
            return self.policy.choose_default(symbol, candidates)
        wanted = normalize_pronunciation(selection.pronunciation or "")
        for candidate in candidates:
            if candidate.pronunciation == wanted:
                return candidate
        return None

    @staticmethod
    def _reading(candidate: Candidate, resolution: Resolution) -> ResolvedReading:
        return ResolvedReading(
            pronunciation=candidate.pronunciation,
            display=candidate.display,
            meaning=candidate.meaning,
            resolution=resolution,
        )
