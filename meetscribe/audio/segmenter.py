"""Recording cycle scheduler: slices the mixed signal into fixed windows."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional

import numpy as np

from .encoder import AudioEncoder
from .mixer import MixedSource
from .types import AudioUnit

if TYPE_CHECKING:
    from .mixer import AudioMixer

LOGGER = logging.getLogger("meetscribe.segmenter")


class SegmenterState(str, Enum):
    IDLE = "idle"
    CYCLE_ACTIVE = "cycle_active"
    FLUSHING = "flushing"


class _Cycle:
    __slots__ = ("blocks", "start_sample", "end_sample")

    def __init__(self, start_sample: int) -> None:
        self.blocks: List[np.ndarray] = []
        self.start_sample = start_sample
        self.end_sample = start_sample

    def append(self, block: np.ndarray) -> None:
        self.blocks.append(block)
        self.end_sample += len(block)

    def samples(self) -> np.ndarray:
        if not self.blocks:
            return np.array([], dtype=np.int16)
        return np.concatenate(self.blocks).astype(np.int16, copy=False)


class Segmenter:
    """Back-to-back recording cycles over a mixed source.

    The active cycle is closed and the next one opened in a single step under
    the buffer lock, so no sample falls between two cycles. Encoding and the
    hand-off of the closed cycle happen only after the next cycle is running.
    """

    def __init__(
        self,
        source: MixedSource,
        encoder: AudioEncoder,
        on_unit: Callable[[AudioUnit], None],
        on_abandon: Callable[[int, str], None],
        *,
        chunk_duration_ms: int = 3000,
        min_unit_bytes: int = 5000,
        mixer: Optional["AudioMixer"] = None,
        run_timer: bool = True,
    ) -> None:
        if chunk_duration_ms <= 0:
            raise ValueError("chunk_duration_ms must be positive")
        self.source = source
        self.encoder = encoder
        self.on_unit = on_unit
        self.on_abandon = on_abandon
        self.chunk_duration_ms = chunk_duration_ms
        self.min_unit_bytes = min_unit_bytes
        self.mixer = mixer
        self.run_timer = run_timer
        self.sample_rate = source.sample_rate
        self._state = SegmenterState.IDLE
        self._lock = threading.Lock()
        self._cycle: _Cycle | None = None
        self._position = 0
        self._next_sequence = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._stopped = False
        self._released = False

    @property
    def state(self) -> SegmenterState:
        return self._state

    def start(self) -> bool:
        """Open the first cycle. A segmenter that has been stopped never restarts."""
        with self._lock:
            if self._stopped or self._state is not SegmenterState.IDLE:
                return False
            self._cycle = _Cycle(self._position)
            self._state = SegmenterState.CYCLE_ACTIVE
            self.source.subscribe(self._on_block)
            if self.run_timer:
                self._thread = threading.Thread(target=self._loop, name="meetscribe-segmenter", daemon=True)
                self._thread.start()
        LOGGER.info("Recording started (%d ms cycles)", self.chunk_duration_ms)
        return True

    def _on_block(self, block: np.ndarray) -> None:
        with self._lock:
            if self._cycle is None:
                return
            self._cycle.append(block)
            self._position += len(block)

    def _loop(self) -> None:
        interval = self.chunk_duration_ms / 1000.0
        deadline = time.monotonic() + interval
        while not self._stop.wait(max(0.0, deadline - time.monotonic())):
            try:
                self.rotate()
            except Exception:
                LOGGER.exception("Recording cycle rotation failed")
            deadline += interval

    def rotate(self) -> Optional[int]:
        """Close the active cycle, open the next one, then hand off the closed one.

        Returns the sequence number given to the closed cycle, or ``None``
        when no cycle was active.
        """
        with self._lock:
            if self._state is not SegmenterState.CYCLE_ACTIVE or self._cycle is None:
                return None
            finished = self._cycle
            self._cycle = _Cycle(finished.end_sample)
            self._state = SegmenterState.FLUSHING
            sequence = self._take_sequence()
        try:
            self._emit(finished, sequence)
        finally:
            with self._lock:
                if self._state is SegmenterState.FLUSHING:
                    self._state = SegmenterState.CYCLE_ACTIVE
        return sequence

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            self._stop.set()
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._lock:
            partial = self._cycle if self._state is not SegmenterState.IDLE else None
            self._cycle = None
            self._state = SegmenterState.IDLE
            sequence = self._take_sequence() if partial is not None else None
            release, self._released = not self._released, True
        self.source.unsubscribe(self._on_block)
        if release and self.mixer is not None:
            self.mixer.close()
        if partial is not None and sequence is not None:
            self._emit(partial, sequence)
            LOGGER.info("Recording stopped")

    def _take_sequence(self) -> int:
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence

    def _emit(self, cycle: _Cycle, sequence: int) -> None:
        samples = cycle.samples()
        if samples.size == 0:
            LOGGER.debug("Cycle %d recorded no audio", sequence)
            self.on_abandon(sequence, "empty")
            return
        try:
            payload = self.encoder.encode(samples)
        except Exception as exc:  # libsndfile errors surface as RuntimeError
            LOGGER.warning("Encoding cycle %d failed: %s", sequence, exc)
            self.on_abandon(sequence, "encode_error")
            return
        if len(payload) < self.min_unit_bytes:
            LOGGER.debug("Cycle %d too small (%d bytes), skipped", sequence, len(payload))
            self.on_abandon(sequence, "below_minimum_size")
            return
        unit = AudioUnit(
            sequence_number=sequence,
            payload=payload,
            approximate_duration_ms=self._samples_to_ms(len(samples)),
            start_ms=self._samples_to_ms(cycle.start_sample),
            end_ms=self._samples_to_ms(cycle.end_sample),
            mime_type=self.encoder.mime_type,
            filename=self.encoder.filename,
        )
        LOGGER.debug("Cycle %d complete: %d bytes, %d ms", sequence, unit.size, unit.approximate_duration_ms)
        self.on_unit(unit)

    def _samples_to_ms(self, samples: int) -> int:
        return int(samples * 1000 / self.sample_rate)


__all__ = ["Segmenter", "SegmenterState"]
