"""Delivery targets for ordered transcript fragments."""

from __future__ import annotations

import sys
from datetime import datetime
from typing import Protocol, TextIO

from ..audio.types import TranscriptFragment
from .errors import FatalSessionError


class TranscriptSink(Protocol):
    def deliver(self, fragment: TranscriptFragment) -> None: ...

    def fail(self, error: FatalSessionError) -> None: ...


class ConsoleSink:
    """Prints each fragment as ``[HH:MM:SS] text``."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout

    def deliver(self, fragment: TranscriptFragment) -> None:
        stamp = datetime.fromtimestamp(fragment.produced_at_ms / 1000).strftime("%H:%M:%S")
        self.stream.write(f"[{stamp}] {fragment.text}\n")
        self.stream.flush()

    def fail(self, error: FatalSessionError) -> None:
        self.stream.write(f"Capture stopped: {error.message}\n")
        self.stream.flush()


__all__ = ["ConsoleSink", "TranscriptSink"]
