"""OpenAI Images client with retry logic."""

import base64
import logging
import os
import time

from openai import OpenAI

from hanzicards.exceptions import ProviderError

logger = logging.getLogger(__name__)


class ImageClient:
    """Client for the OpenAI image generation API."""

    CONTENT_TYPE = "image/png"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        size: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        """Initialize image client.

        Args:
            api_key: OpenAI API key (or OPENAI_API_KEY env var)
            model: Image model (or IMAGE_MODEL env var, default dall-e-3)
            size: Output size (or IMAGE_SIZE env var, default 1024x1024)
            max_retries: Maximum number of retry attempts
            retry_delay: Initial delay between retries in seconds (exponential backoff)
        """
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OpenAI API key required (OPENAI_API_KEY env var or api_key param)")

        self.model = model or os.getenv("IMAGE_MODEL", "dall-e-3")
        self.size = size or os.getenv("IMAGE_SIZE", "1024x1024")
        self.client = OpenAI(api_key=self.api_key)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.total_requests = 0
        self.failed_requests = 0

        logger.info(f"ImageClient initialized with model={self.model}, size={self.size}")

    def generate(self, prompt: str) -> bytes:
        """Generate one image for ``prompt``.

        Returns:
            PNG image bytes

        Raises:
            ProviderError: If every attempt failed
        """
        last_error = ""

        for attempt in range(self.max_retries):
            try:
                start_time = time.time()
                logger.info(
                    f"Generating image (attempt {attempt + 1}/{self.max_retries}): {prompt[:60]}..."
                )

                response = self.client.images.generate(
                    model=self.model,
                    prompt=prompt,
                    size=self.size,
                    n=1,
                    response_format="b64_json",
                )
                b64 = response.data[0].b64_json if response.data else None
                if not b64:
                    raise ValueError("image response has no data")
                image_bytes = base64.b64decode(b64)

                latency_ms = int((time.time() - start_time) * 1000)
                self.total_requests += 1
                logger.info(f"✓ Image generated: {len(image_bytes)} bytes, {latency_ms}ms")
                return image_bytes

            except Exception as e:
                last_error = str(e)
                logger.warning(
                    f"Image generation failed (attempt {attempt + 1}/{self.max_retries}): {last_error}"
                )

                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.info(f"Retrying in {delay:.1f}s...")
                    time.sleep(delay)

        self.failed_requests += 1
        logger.error(f"✗ Image generation failed after {self.max_retries} attempts: {last_error}")
        raise ProviderError("openai-images", last_error)
