"""Pinyin utilities.

Dictionary data uses numbered pinyin (``zhang3``, ``lu:4``); people type tone
marks (``zhǎng``). Both collapse to one normalized form so that media keys and
selections compare equal regardless of how the reading was written.
"""

import logging
import re
import unicodedata
from typing import List

from pypinyin.contrib.tone_convert import to_tone, to_tone3

logger = logging.getLogger(__name__)

_CROSS_REFERENCE = re.compile(r"^(see( also)?|variant of|old variant of|CL:)", re.IGNORECASE)
_CEDICT_WORD = re.compile(r"(\S+?)\|\S+?\[([^\]]+)\]|(\S+?)\[([^\]]+)\]")


def split_syllables(pronunciation: str) -> List[str]:
    """Split a pronunciation string into syllables on whitespace."""
    return [s for s in pronunciation.strip().split() if s]


def normalize_syllable(syllable: str) -> str:
    """Normalize one syllable to lowercase numbered pinyin.

    Example:
        >>> normalize_syllable("Zhǎng")
        'zhang3'
        >>> normalize_syllable("lu:4")
        'lv4'
        >>> normalize_syllable("de5")
        'de'
    """
    syllable = unicodedata.normalize("NFC", syllable.strip().lower())
    syllable = syllable.replace("u:", "v")
    syllable = to_tone3(syllable)
    # Neutral tone is written both as "5" and unmarked
    return syllable.rstrip("5")


def normalize_pronunciation(pronunciation: str) -> str:
    """Normalize a (possibly multi-syllable) pronunciation.

    Tone-marked and numbered forms of the same reading normalize to the same
    value, which is what media keys are derived from.

    Args:
        pronunciation: Pinyin with tone marks or tone numbers, space separated

    Returns:
        Lowercase numbered pinyin, single-space separated

    Example:
        >>> normalize_pronunciation("cháng")
        'chang2'
        >>> normalize_pronunciation("yin2 hang2")
        'yin2 hang2'
    """
    return " ".join(normalize_syllable(s) for s in split_syllables(pronunciation))


def to_tone_marks(pronunciation: str) -> str:
    """Render numbered pinyin with tone marks for display.

    Example:
        >>> to_tone_marks("lei4")
        'lèi'
        >>> to_tone_marks("yin2 hang2")
        'yínháng'
    """
    syllables = [normalize_syllable(s) for s in split_syllables(pronunciation)]
    return "".join(to_tone(s) for s in syllables)


def clean_definition(definition: str) -> str:
    """Strip CC-CEDICT markup from one definition.

    ``長|长[chang2]`` references are reduced to the traditional form.

    Example:
        >>> clean_definition("variant of 長|长[chang2]")
        'variant of 長'
    """
    cleaned = _CEDICT_WORD.sub(lambda m: m.group(1) or m.group(3), definition)
    return re.sub(r"\s+", " ", cleaned).strip()


def primary_meaning(definitions: List[str]) -> str:
    """Pick the first definition that is not a cross reference or classifier note."""
    for definition in definitions:
        if definition and not _CROSS_REFERENCE.match(definition.strip()):
            return clean_definition(definition)
    if definitions:
        return clean_definition(definitions[0])
    return ""
