"""ElevenLabs TTS client with retry logic and cost tracking."""

import logging
import os
import time

from elevenlabs.client import ElevenLabs

from hanzicards.exceptions import ProviderError

logger = logging.getLogger(__name__)


class ElevenLabsClient:
    """Client for ElevenLabs Text-to-Speech API with retry logic."""

    OUTPUT_FORMAT = "mp3_44100_128"
    CONTENT_TYPE = "audio/mpeg"

    def __init__(
        self,
        api_key: str | None = None,
        voice_id: str | None = None,
        model_id: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """Initialize ElevenLabs client.

        Args:
            api_key: ElevenLabs API key (or uses ELEVENLABS_API_KEY env var)
            voice_id: Voice to synthesize with (or ELEVENLABS_VOICE_ID env var)
            model_id: Model ID (or ELEVENLABS_MODEL_ID env var)
            max_retries: Maximum number of retry attempts
            retry_delay: Initial delay between retries in seconds (exponential backoff)
        """
        self.api_key = api_key or os.getenv("ELEVENLABS_API_KEY")
        if not self.api_key:
            raise ValueError("ElevenLabs API key required (ELEVENLABS_API_KEY env var or api_key param)")

        self.voice_id = voice_id or os.getenv("ELEVENLABS_VOICE_ID")
        if not self.voice_id:
            raise ValueError("ElevenLabs voice required (ELEVENLABS_VOICE_ID env var or voice_id param)")
        # Extract just the voice ID (remove "elevenlabs/" prefix if present)
        self.voice_id = self.voice_id.split("/")[-1]
        self.model_id = model_id or os.getenv("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2")

        self.client = ElevenLabs(api_key=self.api_key)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        # Cost tracking
        self.total_characters = 0
        self.total_requests = 0
        self.failed_requests = 0

    def synthesize(self, text: str) -> bytes:
        """Generate speech for ``text``.

        Args:
            text: Text to synthesize

        Returns:
            MP3 audio bytes

        Raises:
            ProviderError: If every attempt failed
        """
        character_count = len(text)
        last_error = ""

        for attempt in range(self.max_retries):
            try:
                start_time = time.time()

                logger.info(
                    f"Generating audio (attempt {attempt + 1}/{self.max_retries}): "
                    f"{character_count} chars, voice={self.voice_id[:8]}..."
                )

                audio_generator = self.client.text_to_speech.convert(
                    text=text,
                    voice_id=self.voice_id,
                    model_id=self.model_id,
                    output_format=self.OUTPUT_FORMAT,
                )
                audio_bytes = b"".join(audio_generator)
                if not audio_bytes:
                    raise ValueError("empty audio response")

                latency_ms = int((time.time() - start_time) * 1000)
                self.total_characters += character_count
                self.total_requests += 1

                logger.info(
                    f"✓ Audio generated successfully: {len(audio_bytes)} bytes, {latency_ms}ms"
                )
                return audio_bytes

            except Exception as e:
                last_error = str(e)
                logger.warning(
                    f"Audio generation failed (attempt {attempt + 1}/{self.max_retries}): {last_error}"
                )

                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.info(f"Retrying in {delay:.1f}s...")
                    time.sleep(delay)

        self.failed_requests += 1
        logger.error(f"✗ Audio generation failed after {self.max_retries} attempts: {last_error}")
        raise ProviderError("elevenlabs", last_error)
