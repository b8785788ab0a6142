"""Release transcription results to the sink in capture order."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from ..audio.types import TranscriptFragment
from ..metrics import FRAGMENTS_DELIVERED, UNITS_ABANDONED

LOGGER = logging.getLogger("meetscribe.sequencer")

_ABANDONED = None


class Sequencer:
    """Reorders out-of-order completions behind a watermark.

    ``watermark`` is the lowest sequence number not yet released. Results
    above it wait in ``_resolved`` until every lower number has either
    completed or been abandoned. Text for abandoned numbers is never
    produced, so their numbers are simply skipped over.
    """

    def __init__(
        self,
        deliver: Callable[[TranscriptFragment], None],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._deliver = deliver
        self._clock = clock
        self._watermark = 0
        self._resolved: Dict[int, Optional[str]] = {}
        self._lock = threading.RLock()
        self._closed = False

    @property
    def watermark(self) -> int:
        return self._watermark

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._resolved)

    def complete(self, sequence_number: int, text: str) -> None:
        self._resolve(sequence_number, text or "")

    def abandon(self, sequence_number: int, reason: str = "dropped") -> None:
        UNITS_ABANDONED.labels(reason=reason).inc()
        LOGGER.debug("Unit %d abandoned (%s)", sequence_number, reason)
        self._resolve(sequence_number, _ABANDONED)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._resolved.clear()

    def _resolve(self, sequence_number: int, text: Optional[str]) -> None:
        with self._lock:
            if self._closed:
                LOGGER.debug("Discarding result %d after stop", sequence_number)
                return
            if sequence_number < self._watermark or sequence_number in self._resolved:
                LOGGER.warning("Duplicate result for unit %d ignored", sequence_number)
                return
            self._resolved[sequence_number] = text
            while self._watermark in self._resolved:
                released = self._resolved.pop(self._watermark)
                if released:
                    fragment = TranscriptFragment(
                        sequence_number=self._watermark,
                        text=released,
                        produced_at_ms=int(self._clock() * 1000),
                    )
                    self._emit(fragment)
                self._watermark += 1

    def _emit(self, fragment: TranscriptFragment) -> None:
        try:
            self._deliver(fragment)
        except Exception:
            LOGGER.exception("Sink rejected fragment %d", fragment.sequence_number)
            return
        FRAGMENTS_DELIVERED.inc()


__all__ = ["Sequencer"]
