"""Dataclasses shared across the capture pipeline."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AudioUnit:
    """One finalized, independently decodable slice of recorded audio."""

    sequence_number: int
    payload: bytes
    approximate_duration_ms: int
    start_ms: int = 0
    end_ms: int = 0
    mime_type: str = "audio/flac"
    filename: str = "audio.flac"

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass(frozen=True, slots=True)
class RecognitionSegment:
    """Per-segment result reported by the recognizer."""

    text: str
    start_ms: int
    end_ms: int
    no_speech_probability: float = 0.0
    avg_log_probability: float = 0.0


@dataclass(frozen=True, slots=True)
class TranscriptFragment:
    """Ordered text handed to the sink."""

    sequence_number: int
    text: str
    produced_at_ms: int


__all__ = ["AudioUnit", "RecognitionSegment", "TranscriptFragment"]
