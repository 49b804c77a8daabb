"""
Enrichment pipeline for Traditional Chinese study cards

Turns raw symbols into study cards with a resolved reading, an illustrative
image and pronunciation audio. Media is content-addressed by
(symbol, pronunciation) so every deck that contains the same reading shares
one generated artifact.

**Version**: 0.1.0
**Key Dependencies**: pydantic, boto3, elevenlabs, openai, pypinyin, opencc
"""

__version__ = "0.1.0"
__author__ = "Hanzicards"

SUPPORTED_SCRIPT = "zh-Hant"

__all__ = [
    "__version__",
    "__author__",
    "SUPPORTED_SCRIPT",
]
