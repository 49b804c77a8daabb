"""Media generators: one per media kind, behind a uniform contract."""

from hanzicards.generators.base import GeneratedMedia, MediaGenerator
from hanzicards.generators.image_generator import ImageGenerator
from hanzicards.generators.speech_generator import SpeechGenerator

__all__ = ["GeneratedMedia", "MediaGenerator", "ImageGenerator", "SpeechGenerator"]
