"""Illustration generator."""

import logging
from typing import Iterable, Optional

from hanzicards.generators.base import GeneratedMedia, MediaGenerator
from hanzicards.models.card import MediaKind
from hanzicards.utils.image_client import ImageClient
from hanzicards.utils.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

# Particles and pronouns have nothing to depict
IMAGE_SKIP_WORDS = frozenset(["的", "了", "嗎", "把", "被", "我", "你", "他", "她", "它"])

_STYLE = "Simple, clean cartoon style with bright colors. No text in the image."


def build_scene_prompt(symbol: str, meaning: str) -> str:
    """Build an illustration prompt that makes ``meaning`` obvious to a learner.

    Example:
        >>> build_scene_prompt("走", "to walk").startswith("Educational illustration clearly")
        True
    """
    meaning = meaning.strip() or symbol
    lowered = meaning.lower()

    if lowered.startswith("to "):
        return (
            f'Educational illustration clearly demonstrating the action "{meaning}". '
            f"Show a person actively performing this action in a clear, unambiguous way. {_STYLE}"
        )

    if any(word in lowered for word in ("feeling", "emotion", "happy", "sad", "angry", "tired")):
        return (
            f'Educational illustration showing the feeling of "{meaning}". Use facial '
            f"expressions and body language to clearly convey it. {_STYLE}"
        )

    return (
        f'Educational illustration that clearly represents "{meaning}". The image should make '
        f"the meaning immediately obvious to a language learner, using a concrete example "
        f"for abstract concepts. {_STYLE}"
    )


class ImageGenerator(MediaGenerator):
    kind = MediaKind.IMAGE

    def __init__(
        self,
        client: ImageClient,
        rate_limiter: Optional[TokenBucket] = None,
        skip_words: Iterable[str] = IMAGE_SKIP_WORDS,
    ):
        super().__init__(rate_limiter)
        self.client = client
        self.skip_words = frozenset(skip_words)

    def should_skip(self, symbol: str, meaning: str, pronunciation: str) -> bool:
        return symbol in self.skip_words

    def _generate_sync(self, symbol: str, meaning: str, pronunciation: str) -> GeneratedMedia:
        prompt = build_scene_prompt(symbol, meaning)
        logger.debug(f"Image prompt for '{symbol}' ({pronunciation}): {prompt}")
        return GeneratedMedia(data=self.client.generate(prompt), content_type=ImageClient.CONTENT_TYPE)
