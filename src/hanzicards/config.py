"""Pipeline configuration model.

Defaults mirror the production worker settings; every field can be
overridden from the environment through ``PipelineConfig.from_env()``.
"""

import os
from typing import Dict

from pydantic import BaseModel, Field

from hanzicards import constants


class RateLimit(BaseModel):
    """Token bucket settings for one provider."""

    rate: float = Field(..., gt=0, description="Tokens refilled per second")
    burst: int = Field(..., ge=1, description="Bucket capacity")


QUEUE_BULK_INTAKE = "bulk-intake"
QUEUE_COLLECTION = "collection-enrichment"
QUEUE_CARD = "card-enrichment"
QUEUE_ADMIN = "admin-reenrichment"


class PipelineConfig(BaseModel):
    """Settings for queues, batching, retries and provider throttling."""

    worker_concurrency: Dict[str, int] = Field(
        default_factory=lambda: {
            QUEUE_BULK_INTAKE: 1,
            QUEUE_COLLECTION: 3,
            QUEUE_CARD: 5,
            QUEUE_ADMIN: 2,
        },
        description="Concurrent workers per queue",
    )
    batch_size: int = Field(default=10, ge=1, description="Cards enqueued per batch")
    batch_delay_seconds: float = Field(default=1.0, ge=0, description="Pause between batches")

    max_attempts: int = Field(default=3, ge=1, description="Attempts per card job")
    collection_max_attempts: int = Field(default=1, ge=1)
    backoff_seconds: float = Field(default=5.0, ge=0, description="Initial retry delay")

    keep_completed: int = Field(default=100, ge=0, description="Completed jobs retained per queue")
    keep_failed: int = Field(default=50, ge=0, description="Failed jobs retained per queue")

    claim_ttl_seconds: float = Field(default=300.0, gt=0, description="Generation claim lifetime")
    media_namespace: str = Field(default="media")

    image_rate: RateLimit = Field(default_factory=lambda: RateLimit(rate=1, burst=2))
    speech_rate: RateLimit = Field(default_factory=lambda: RateLimit(rate=5, burst=10))

    progress_buffer: int = Field(default=100, ge=1, description="Events buffered per subscriber")

    def concurrency_for(self, queue_name: str) -> int:
        return self.worker_concurrency.get(queue_name, 1)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from environment variables, keeping defaults for unset ones."""
        config = cls(media_namespace=constants.MEDIA_NAMESPACE)
        scale = int(os.getenv("WORKER_SCALE_FACTOR", "1"))
        if scale > 1:
            config.worker_concurrency = {
                name: count * scale for name, count in config.worker_concurrency.items()
            }

        overrides = {
            "batch_size": ("BATCH_SIZE", int),
            "batch_delay_seconds": ("BATCH_DELAY_SECONDS", float),
            "max_attempts": ("JOB_ATTEMPTS", int),
            "backoff_seconds": ("JOB_BACKOFF_SECONDS", float),
            "keep_completed": ("KEEP_COMPLETED_JOBS", int),
            "keep_failed": ("KEEP_FAILED_JOBS", int),
            "claim_ttl_seconds": ("CLAIM_TTL_SECONDS", float),
        }
        for field_name, (env_name, cast) in overrides.items():
            value = os.getenv(env_name)
            if value:
                setattr(config, field_name, cast(value))

        return config
