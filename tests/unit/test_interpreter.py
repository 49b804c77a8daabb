"""Unit tests for interpreting symbols the dictionary does not know."""

from unittest.mock import MagicMock, patch

import pytest

from hanzicards.enrichers.disambiguator import Disambiguator
from hanzicards.enrichers.interpreter import Interpretation, SymbolInterpreter
from hanzicards.exceptions import NotFoundError, ProviderError
from hanzicards.models.card import Resolution
from hanzicards.utils.llm_client import LLMClient


def interpreter_returning(meaning, pinyin, context=""):
    client = MagicMock(spec=LLMClient)
    client.generate.return_value = Interpretation(meaning=meaning, pinyin=pinyin, context=context)
    return SymbolInterpreter(client), client


class TestSymbolInterpreter:
    def test_interprets_meaning_and_reading(self):
        interpreter, client = interpreter_returning("smart/clever", "cōng míng")

        reading = interpreter.interpret("聰明")

        assert reading.pronunciation == "cong1 ming2"
        assert reading.display == "cōngmíng"
        assert reading.meaning == "smart/clever"
        assert reading.resolution == Resolution.INTERPRETED
        assert "聰明" in client.generate.call_args.kwargs["prompt"]
        assert client.generate.call_args.kwargs["response_model"] is Interpretation

    def test_numbered_pinyin_is_accepted(self):
        interpreter, _ = interpreter_returning("bubble tea", "zhen1 zhu1 nai3 cha2")

        assert interpreter.interpret("珍珠奶茶").pronunciation == "zhen1 zhu1 nai3 cha2"

    def test_unusable_pinyin_falls_back_to_pypinyin(self):
        # Syllables run together, so the count does not match the characters
        interpreter, _ = interpreter_returning("smart/clever", "cōngmíng")

        assert interpreter.interpret("聰明").pronunciation == "cong1 ming2"

    def test_unknown_meaning_is_rejected(self):
        interpreter, _ = interpreter_returning("Unknown", "lóng")

        assert interpreter.interpret("龘") is None

    def test_provider_error_propagates(self):
        client = MagicMock(spec=LLMClient)
        client.generate.side_effect = ProviderError("openai-chat", "timeout")

        with pytest.raises(ProviderError):
            SymbolInterpreter(client).interpret("聰明")


class TestDisambiguatorFallback:
    def test_symbol_missing_from_dictionary_is_interpreted(self, dictionary):
        interpreter, client = interpreter_returning("smart/clever", "cōng míng")
        disambiguator = Disambiguator(dictionary, interpreter=interpreter)

        reading = disambiguator.resolve("聰明")

        assert reading.resolution == Resolution.INTERPRETED
        assert reading.pronunciation == "cong1 ming2"

    def test_dictionary_entries_win_over_interpretation(self, dictionary):
        interpreter, client = interpreter_returning("water", "shuǐ")
        disambiguator = Disambiguator(dictionary, interpreter=interpreter)

        assert disambiguator.resolve("水").resolution == Resolution.AUTO
        client.generate.assert_not_called()

    def test_failed_interpretation_is_not_found(self, dictionary):
        interpreter, _ = interpreter_returning("unknown character", "")
        disambiguator = Disambiguator(dictionary, interpreter=interpreter)

        with pytest.raises(NotFoundError, match="No dictionary entry"):
            disambiguator.resolve("龘")

    def test_interpreted_symbols_are_not_ambiguous(self, dictionary):
        interpreter, client = interpreter_returning("smart/clever", "cōng míng")
        disambiguator = Disambiguator(dictionary, interpreter=interpreter)

        assert disambiguator.check(["聰明", "累"])[0].symbol == "累"
        assert len(disambiguator.check(["聰明", "累"])) == 1
        client.generate.assert_not_called()

    @patch("hanzicards.utils.llm_client.OpenAI")
    @patch("hanzicards.utils.llm_client.instructor.from_openai")
    def test_resolves_through_chat_client(self, mock_from_openai, mock_openai, dictionary):
        mock_instructor_client = MagicMock()
        mock_from_openai.return_value = mock_instructor_client
        mock_instructor_client.chat.completions.create.return_value = Interpretation(
            meaning="happy", pinyin="gāo xìng", context="feeling glad"
        )
        disambiguator = Disambiguator(
            dictionary, interpreter=SymbolInterpreter(LLMClient(api_key="key"))
        )

        reading = disambiguator.resolve("高興")

        assert reading.pronunciation == "gao1 xing4"
        assert reading.meaning == "happy"
        kwargs = mock_instructor_client.chat.completions.create.call_args.kwargs
        assert kwargs["response_model"] is Interpretation
        assert kwargs["messages"][0]["role"] == "system"
