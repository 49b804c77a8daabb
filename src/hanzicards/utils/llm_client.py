"""LLM client with Instructor for structured responses.

Used where the dictionary cannot answer: interpreting symbols it has no entry
for and writing short context phrases that pin down a reading for speech.
"""

import hashlib
import logging
import os
import time
from typing import Optional, Type, TypeVar

import instructor
from openai import OpenAI
from pydantic import BaseModel

from hanzicards.exceptions import ProviderError

T = TypeVar("T", bound=BaseModel)

logger = logging.getLogger(__name__)


class TokenUsage(BaseModel):
    """Token usage statistics."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMClient:
    """Instructor-wrapped OpenAI chat client.

    Features:
    - Responses validated against a Pydantic model
    - Retries with exponential backoff, then ``ProviderError``
    - Token usage tracking
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        """Initialize LLM client.

        Args:
            api_key: OpenAI API key (or OPENAI_API_KEY env var)
            model: Chat model (or LLM_MODEL env var, default gpt-4o-mini)
            max_retries: Maximum number of attempts per request
            base_delay: Base delay for exponential backoff in seconds
            max_delay: Maximum delay between retries in seconds
        """
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OpenAI API key required (OPENAI_API_KEY env var or api_key param)")

        self.model = model or os.getenv("LLM_MODEL", "gpt-4o-mini")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.client = instructor.from_openai(OpenAI(api_key=api_key))

        self.total_usage = TokenUsage()
        self.total_requests = 0
        self.failed_requests = 0

        logger.info(f"LLMClient initialized with model={self.model}, max_retries={max_retries}")

    @staticmethod
    def _hash_prompt(prompt: str) -> str:
        return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:12]

    def _calculate_backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def generate(
        self,
        prompt: str,
        response_model: Type[T],
        system_prompt: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> T:
        """Generate a structured response.

        Args:
            prompt: User prompt
            response_model: Pydantic model the response must validate against
            system_prompt: Optional system prompt
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Returns:
            Validated model instance

        Raises:
            ProviderError: If every attempt failed
        """
        prompt_hash = self._hash_prompt(prompt)
        logger.info(
            f"Generating {response_model.__name__}: model={self.model}, prompt_hash={prompt_hash}"
        )

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        last_error = ""
        for attempt in range(1, self.max_retries + 1):
            try:
                start_time = time.time()
                response = self.client.chat.completions.create(
                    model=self.model,
                    response_model=response_model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                latency_ms = int((time.time() - start_time) * 1000)
                self._track_usage(response)
                self.total_requests += 1
                logger.info(
                    f"✓ {response_model.__name__} generated: prompt_hash={prompt_hash}, "
                    f"attempt={attempt}, {latency_ms}ms"
                )
                return response

            except Exception as e:
                last_error = str(e)[:200]
                logger.warning(f"Attempt {attempt}/{self.max_retries} failed: {last_error}")
                if attempt < self.max_retries:
                    delay = self._calculate_backoff_delay(attempt)
                    logger.info(f"Retrying in {delay:.2f} seconds...")
                    time.sleep(delay)

        self.failed_requests += 1
        logger.error(f"✗ All {self.max_retries} attempts failed for prompt_hash={prompt_hash}")
        raise ProviderError("openai-chat", last_error)

    def _track_usage(self, response) -> None:
        # Instructor keeps the raw completion on the parsed model
        raw = getattr(response, "_raw_response", None)
        usage = getattr(raw, "usage", None)
        if usage is None:
            return
        for field in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(usage, field, 0)
            if isinstance(value, int):
                setattr(self.total_usage, field, getattr(self.total_usage, field) + value)
