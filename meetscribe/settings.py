"""Pipeline settings resolved from the environment."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field

GROQ_TRANSCRIPTIONS_URL = "https://api.groq.com/openai/v1/audio/transcriptions"


class PipelineSettings(BaseModel):
    api_url: str = Field(default=os.getenv("MEETSCRIBE_API_URL", GROQ_TRANSCRIPTIONS_URL))
    model: str = Field(default=os.getenv("MEETSCRIBE_MODEL", "whisper-large-v3-turbo"))
    max_attempts: int = Field(default=int(os.getenv("MEETSCRIBE_MAX_ATTEMPTS", "3")), ge=1)
    retry_base_delay: float = Field(
        default=float(os.getenv("MEETSCRIBE_RETRY_BASE_DELAY", "1.0")), ge=0.0
    )
    request_timeout: float = Field(default=float(os.getenv("MEETSCRIBE_REQUEST_TIMEOUT", "30")))
    sample_rate: int = Field(default=int(os.getenv("MEETSCRIBE_SAMPLE_RATE", "16000")))
    channels: int = Field(default=1)
    block_size: int = Field(default=int(os.getenv("MEETSCRIBE_BLOCK_SIZE", "1024")))
    min_unit_bytes: int = Field(default=int(os.getenv("MEETSCRIBE_MIN_UNIT_BYTES", "5000")))
    audio_format: Literal["flac", "wav"] = Field(
        default=os.getenv("MEETSCRIBE_AUDIO_FORMAT", "flac").lower()  # type: ignore[arg-type]
    )
    no_speech_threshold: float = Field(
        default=float(os.getenv("MEETSCRIBE_NO_SPEECH_THRESHOLD", "0.5"))
    )
    log_prob_threshold: float = Field(
        default=float(os.getenv("MEETSCRIBE_LOGPROB_THRESHOLD", "-0.5"))
    )
    max_in_flight: int = Field(default=int(os.getenv("MEETSCRIBE_MAX_IN_FLIGHT", "4")), ge=1)
    monitor_remote: bool = Field(
        default=os.getenv("MEETSCRIBE_MONITOR", "true").lower() in {"1", "true", "yes"}
    )


@lru_cache()
def get_settings() -> PipelineSettings:
    return PipelineSettings()
