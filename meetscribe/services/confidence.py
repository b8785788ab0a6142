"""Drop recognizer segments that are likely silence or hallucinated text."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ..audio.types import RecognitionSegment
from ..metrics import SEGMENTS_REJECTED

LOGGER = logging.getLogger("meetscribe.confidence")

NO_SPEECH = "no_speech"
LOW_CONFIDENCE = "low_confidence"


@dataclass(frozen=True, slots=True)
class ConfidenceThresholds:
    # Whisper's no_speech_prob in [0, 1]; higher means more likely silence.
    no_speech: float = 0.5
    # avg_logprob closer to 0 is more confident; -1.0 lets hallucinations through.
    log_prob: float = -0.5


def rejection_reason(segment: RecognitionSegment, thresholds: ConfidenceThresholds) -> Optional[str]:
    if segment.no_speech_probability > thresholds.no_speech:
        return NO_SPEECH
    if segment.avg_log_probability < thresholds.log_prob:
        return LOW_CONFIDENCE
    return None


def filter_segments(
    segments: Iterable[RecognitionSegment],
    thresholds: ConfidenceThresholds = ConfidenceThresholds(),
) -> str:
    """Concatenate the text of every segment that passes both checks.

    An empty string means there is nothing to deliver.
    """
    kept = []
    for segment in segments:
        reason = rejection_reason(segment, thresholds)
        if reason is None:
            kept.append(segment.text)
            continue
        SEGMENTS_REJECTED.labels(reason=reason).inc()
        LOGGER.debug(
            "Filtered segment %r (reason=%s, no_speech=%.3f, avg_logprob=%.3f)",
            segment.text,
            reason,
            segment.no_speech_probability,
            segment.avg_log_probability,
        )
    return "".join(kept).strip()


__all__ = ["ConfidenceThresholds", "filter_segments", "rejection_reason", "NO_SPEECH", "LOW_CONFIDENCE"]
