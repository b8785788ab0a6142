"""Audio device access through sounddevice.

Devices are looked up by their human readable name at acquisition time;
PortAudio indexes shift whenever devices are plugged or permissions change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import numpy as np

LOGGER = logging.getLogger("meetscribe.devices")

BlockCallback = Callable[[np.ndarray], None]
PullCallback = Callable[[int], np.ndarray]


class DeviceError(Exception):
    pass


@dataclass(slots=True)
class DeviceInfo:
    index: int
    name: str
    max_input_channels: int
    max_output_channels: int


class AudioStreamHandle(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def close(self) -> None: ...


class AudioBackend(Protocol):
    def list_devices(self) -> list[DeviceInfo]: ...

    def open_input(
        self, device: int | None, sample_rate: int, channels: int, block_size: int, callback: BlockCallback
    ) -> AudioStreamHandle: ...

    def open_output(
        self, device: int | None, sample_rate: int, channels: int, block_size: int, pull: PullCallback
    ) -> AudioStreamHandle: ...


class SoundDeviceBackend:
    """PortAudio streams via the sounddevice package."""

    def __init__(self) -> None:
        try:
            import sounddevice as sd  # type: ignore
        except OSError as exc:  # PortAudio shared library missing
            raise DeviceError(f"sounddevice unavailable: {exc}") from exc
        self._sd = sd

    def list_devices(self) -> list[DeviceInfo]:
        devices = []
        for index, info in enumerate(self._sd.query_devices()):
            devices.append(
                DeviceInfo(
                    index=index,
                    name=str(info.get("name", "")).strip(),
                    max_input_channels=int(info.get("max_input_channels", 0)),
                    max_output_channels=int(info.get("max_output_channels", 0)),
                )
            )
        return devices

    def open_input(
        self, device: int | None, sample_rate: int, channels: int, block_size: int, callback: BlockCallback
    ) -> AudioStreamHandle:
        def _callback(indata, _frames, _time_info, status) -> None:
            if status:
                LOGGER.warning("Input stream status: %s", status)
            callback(_to_mono(indata))

        return self._open(
            self._sd.InputStream,
            device=device,
            samplerate=sample_rate,
            channels=channels,
            dtype="int16",
            blocksize=block_size,
            callback=_callback,
        )

    def open_output(
        self, device: int | None, sample_rate: int, channels: int, block_size: int, pull: PullCallback
    ) -> AudioStreamHandle:
        def _callback(outdata, frames, _time_info, status) -> None:
            if status:
                LOGGER.debug("Output stream status: %s", status)
            block = pull(frames)
            outdata[:] = np.repeat(block.reshape(-1, 1), outdata.shape[1], axis=1)

        return self._open(
            self._sd.OutputStream,
            device=device,
            samplerate=sample_rate,
            channels=channels,
            dtype="int16",
            blocksize=block_size,
            callback=_callback,
        )

    def _open(self, factory: Any, **kwargs: Any) -> AudioStreamHandle:
        try:
            return factory(**kwargs)
        except Exception as exc:  # PortAudioError, ValueError for bad device
            raise DeviceError(str(exc)) from exc


def _to_mono(data: Any) -> np.ndarray:
    block = np.asarray(data, dtype=np.int16)
    if block.ndim == 1:
        return block.copy()
    return block[:, 0].copy()


def find_input_device(backend: AudioBackend, label: str) -> int | None:
    """Resolve a stored device label to a current input index.

    Exact name match wins; otherwise the first input whose name contains the
    label (case-insensitive). Returns ``None`` when nothing matches.
    """
    label = (label or "").strip()
    if not label:
        return None
    inputs = [dev for dev in backend.list_devices() if dev.max_input_channels > 0]
    for dev in inputs:
        if dev.name == label:
            return dev.index
    lowered = label.lower()
    for dev in inputs:
        if lowered in dev.name.lower():
            return dev.index
    return None


__all__ = [
    "AudioBackend",
    "AudioStreamHandle",
    "DeviceError",
    "DeviceInfo",
    "SoundDeviceBackend",
    "find_input_device",
]
