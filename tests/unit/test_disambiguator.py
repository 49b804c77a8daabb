"""Unit tests for pronunciation disambiguation."""

import pytest

from hanzicards.enrichers.disambiguator import Disambiguator, StaticFrequencyPolicy
from hanzicards.exceptions import DisambiguationRequired, NotFoundError, SymbolValidationError
from hanzicards.models.card import PronunciationSelection, Resolution
from hanzicards.models.dictionary import FrequencyHint


@pytest.fixture
def disambiguator(dictionary):
    return Disambiguator(dictionary)


class TestCandidates:
    def test_candidates_in_dictionary_order(self, disambiguator):
        candidates = disambiguator.candidates("累")

        assert [c.pronunciation for c in candidates] == ["lei4", "lei3"]
        assert candidates[0].display == "lèi"
        assert candidates[0].meaning == "tired"
        assert candidates[0].frequency_hint == FrequencyHint.VERY_COMMON

    def test_unlisted_reading_gets_fallback_hint(self, disambiguator):
        assert disambiguator.candidates("水")[0].frequency_hint == FrequencyHint.COMMON


class TestCheck:
    def test_reports_only_ambiguous_symbols(self, disambiguator):
        prompts = disambiguator.check(["累", "書", "累", "貓", "龘"])

        assert [p.symbol for p in prompts] == ["累"]
        assert prompts[0].default_pronunciation == "lei4"
        assert len(prompts[0].candidates) == 2

    def test_preserves_input_order(self, disambiguator):
        prompts = disambiguator.check(["長", "行", "累"])
        assert [p.symbol for p in prompts] == ["長", "行", "累"]

    def test_nothing_ambiguous(self, disambiguator):
        assert disambiguator.check(["水", "貓"]) == []


class TestResolve:
    def test_single_entry_resolves_automatically(self, disambiguator):
        reading = disambiguator.resolve("書")

        assert reading.pronunciation == "shu1"
        assert reading.display == "shū"
        assert reading.meaning == "book"
        assert reading.resolution == Resolution.AUTO

    def test_ambiguous_without_selection(self, disambiguator):
        with pytest.raises(DisambiguationRequired) as exc_info:
            disambiguator.resolve("累")

        assert exc_info.value.symbol == "累"
        assert [c.pronunciation for c in exc_info.value.candidates] == ["lei4", "lei3"]

    def test_explicit_selection_with_tone_marks(self, disambiguator):
        reading = disambiguator.resolve("累", PronunciationSelection(pronunciation="lěi"))

        assert reading.pronunciation == "lei3"
        assert reading.resolution == Resolution.EXPLICIT

    def test_accept_default(self, disambiguator):
        reading = disambiguator.resolve("累", PronunciationSelection(accept_default=True))

        assert reading.pronunciation == "lei4"
        assert reading.resolution == Resolution.DEFAULT

    def test_preferred_reading_beats_frequency(self, disambiguator):
        """Test a preferred reading is the default even when another is more frequent."""
        reading = disambiguator.resolve("長", PronunciationSelection(accept_default=True))
        assert reading.pronunciation == "zhang3"

    def test_unknown_selection_still_requires_choice(self, disambiguator):
        with pytest.raises(DisambiguationRequired):
            disambiguator.resolve("累", PronunciationSelection(pronunciation="ma1"))

    def test_unknown_symbol(self, disambiguator):
        with pytest.raises(NotFoundError):
            disambiguator.resolve("龘")


class TestValidateSelection:
    def test_valid_selection(self, disambiguator):
        candidate = disambiguator.validate_selection("行", PronunciationSelection(pronunciation="hang2"))
        assert candidate.pronunciation == "hang2"

    def test_invalid_selection(self, disambiguator):
        with pytest.raises(SymbolValidationError, match="not a reading"):
            disambiguator.validate_selection("行", PronunciationSelection(pronunciation="ma1"))

    def test_unknown_symbol(self, disambiguator):
        with pytest.raises(NotFoundError):
            disambiguator.validate_selection("龘", PronunciationSelection(accept_default=True))


class TestFrequencyPolicy:
    def test_ties_keep_dictionary_order(self, dictionary):
        disambiguator = Disambiguator(dictionary, StaticFrequencyPolicy(hints={}, preferred_readings={}))
        assert disambiguator.prompt("行").default_pronunciation == "xing2"

    def test_most_frequent_wins(self, dictionary):
        policy = StaticFrequencyPolicy(
            hints={("行", "háng"): FrequencyHint.VERY_COMMON},
            preferred_readings={},
        )
        disambiguator = Disambiguator(dictionary, policy)

        assert disambiguator.prompt("行").default_pronunciation == "hang2"


def test_selection_requires_exactly_one_choice():
    with pytest.raises(ValueError):
        PronunciationSelection()
    with pytest.raises(ValueError):
        PronunciationSelection(pronunciation="lei4", accept_default=True)
