"""Encode PCM cycles into self-contained audio files held in memory."""

from __future__ import annotations

import io

import numpy as np
import soundfile as sf

_FORMATS = {
    "flac": ("FLAC", "PCM_16", "audio/flac"),
    "wav": ("WAV", "PCM_16", "audio/wav"),
}


class AudioEncoder:
    """Writes int16 mono PCM as a complete FLAC or WAV file (header included)."""

    def __init__(self, sample_rate: int, audio_format: str = "flac") -> None:
        audio_format = audio_format.lower()
        if audio_format not in _FORMATS:
            raise ValueError(f"Unsupported audio format: {audio_format}")
        self.sample_rate = sample_rate
        self.audio_format = audio_format
        self._format, self._subtype, self.mime_type = _FORMATS[audio_format]

    @property
    def filename(self) -> str:
        return f"audio.{self.audio_format}"

    def encode(self, samples: np.ndarray) -> bytes:
        buffer = io.BytesIO()
        sf.write(
            buffer,
            samples.astype(np.int16, copy=False),
            self.sample_rate,
            format=self._format,
            subtype=self._subtype,
        )
        return buffer.getvalue()


__all__ = ["AudioEncoder"]
