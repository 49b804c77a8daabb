"""Symbol validation for Traditional Chinese input.

A symbol is accepted only if every character is a CJK ideograph and none of
them is a Simplified-only form.
"""

import logging
import unicodedata
from functools import lru_cache
from typing import List, Optional, Set, Tuple

import opencc

logger = logging.getLogger(__name__)

# (start, end) code point ranges accepted as ideographs
CJK_RANGES: List[Tuple[int, int]] = [
    (0x4E00, 0x9FFF),  # CJK Unified Ideographs
    (0x3400, 0x4DBF),  # Extension A
    (0x20000, 0x2A6DF),  # Extension B
    (0xF900, 0xFAFF),  # Compatibility Ideographs
]

# Common Simplified-only characters, checked before the OpenCC round trip
SIMPLIFIED_ONLY: Set[str] = set(
    "爱国时会这来个们说为让过给还没对开见经头问现点认关门闭间闻买卖东车马鸟"
    "语读写话谈谢谁课费资贵货质购贸赛赢运远选边达迟递适迁邮邻郑释钟钱铁银错"
    "锦镇长队阵际陆阳阴陈险随难电题颜愿类饭饮馆饿驾骑验惊鱼鲁鸡鸣鸭鹅鹰黄"
    "龙龟"
)

# Standard Traditional characters that OpenCC still maps to another form
# (台 -> 臺, 后 -> 後). They are valid input on their own.
SHARED_FORMS: Set[str] = set("台后里面只系干才余松周云注卷表向谷于游占丑范")


@lru_cache(maxsize=1)
def _s2t_converter() -> opencc.OpenCC:
    return opencc.OpenCC("s2tw.json")


def is_cjk_ideograph(char: str) -> bool:
    """Check whether a single character falls in an accepted ideograph block."""
    code_point = ord(char)
    return any(start <= code_point <= end for start, end in CJK_RANGES)


def is_simplified_only(char: str) -> bool:
    """Check whether a character is a Simplified form with a distinct Traditional form.

    Example:
        >>> is_simplified_only("长")
        True
        >>> is_simplified_only("長")
        False
    """
    if char in SIMPLIFIED_ONLY:
        return True
    if char in SHARED_FORMS:
        return False
    return _s2t_converter().convert(char) != char


def normalize_symbol(raw: str) -> str:
    """Trim and NFC-normalize raw input."""
    return unicodedata.normalize("NFC", raw.strip())


def validate_symbol(symbol: str) -> Optional[str]:
    """Validate one normalized symbol.

    Args:
        symbol: NFC-normalized, trimmed symbol

    Returns:
        None if the symbol is valid, otherwise a human-readable rejection reason

    Example:
        >>> validate_symbol("銀行")
        >>> validate_symbol("银行")
        "Simplified character '银' at position 1"
    """
    if not symbol:
        return "Empty symbol"

    for position, char in enumerate(symbol, start=1):
        if not is_cjk_ideograph(char):
            return f"Non-CJK character {char!r} at position {position}"
        if is_simplified_only(char):
            return f"Simplified character '{char}' at position {position}"

    return None


def extract_simplified_characters(text: str) -> List[str]:
    """List the distinct Simplified-only characters in ``text``, in order of appearance."""
    seen: List[str] = []
    for char in text:
        if is_cjk_ideograph(char) and is_simplified_only(char) and char not in seen:
            seen.append(char)
    if seen:
        logger.debug(f"Found {len(seen)} simplified characters: {seen}")
    return seen
