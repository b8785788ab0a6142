"""Prometheus metrics for the capture pipeline."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

UNITS_DISPATCHED = Counter(
    "meetscribe_units_dispatched_total",
    "Audio units handed to the transcription client",
)

UNITS_ABANDONED = Counter(
    "meetscribe_units_abandoned_total",
    "Sequence numbers abandoned without text",
    labelnames=("reason",),
)

TRANSCRIBE_RETRIES = Counter(
    "meetscribe_transcribe_retries_total",
    "Retryable transcription failures",
    labelnames=("cause",),
)

TRANSCRIBE_LATENCY = Histogram(
    "meetscribe_transcribe_latency_seconds",
    "Latency of a single transcription request",
)

SEGMENTS_REJECTED = Counter(
    "meetscribe_segments_rejected_total",
    "Recognition segments dropped by the confidence filter",
    labelnames=("reason",),
)

FRAGMENTS_DELIVERED = Counter(
    "meetscribe_fragments_delivered_total",
    "Transcript fragments released to the sink",
)
