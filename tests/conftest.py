"""Pytest configuration helpers."""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import from repo modules without setting PYTHONPATH."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from meetscribe.audio.devices import DeviceError, DeviceInfo  # noqa: E402


class FakeStream:
    def __init__(self, device, callback=None, pull=None, fail_on_start: bool = False) -> None:
        self.device = device
        self.callback = callback
        self.pull = pull
        self.fail_on_start = fail_on_start
        self.started = False
        self.stop_calls = 0
        self.close_calls = 0

    def start(self) -> None:
        if self.fail_on_start:
            raise RuntimeError("device busy")
        self.started = True

    def stop(self) -> None:
        self.stop_calls += 1

    def close(self) -> None:
        self.close_calls += 1

    def feed(self, block: np.ndarray) -> None:
        self.callback(np.asarray(block, dtype=np.int16))


class FakeBackend:
    """In-memory stand-in for PortAudio devices."""

    def __init__(self) -> None:
        self.devices = [
            DeviceInfo(index=0, name="Built-in Microphone", max_input_channels=1, max_output_channels=0),
            DeviceInfo(index=1, name="Speakers", max_input_channels=0, max_output_channels=2),
            DeviceInfo(index=2, name="BlackHole 2ch", max_input_channels=2, max_output_channels=2),
            DeviceInfo(index=3, name="USB Headset Mic", max_input_channels=1, max_output_channels=0),
        ]
        self.inputs: list[FakeStream] = []
        self.outputs: list[FakeStream] = []
        self.fail_open: set = set()
        self.fail_start: set = set()
        self.fail_output = False
        self.before_open = None

    def list_devices(self):
        return list(self.devices)

    def open_input(self, device, sample_rate, channels, block_size, callback):
        if self.before_open is not None:
            hook, self.before_open = self.before_open, None
            hook(device)
        if device in self.fail_open:
            raise DeviceError(f"cannot open input {device}")
        stream = FakeStream(device, callback=callback, fail_on_start=device in self.fail_start)
        self.inputs.append(stream)
        return stream

    def open_output(self, device, sample_rate, channels, block_size, pull):
        if self.fail_output:
            raise DeviceError("no output device")
        stream = FakeStream(device, pull=pull)
        self.outputs.append(stream)
        return stream


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def noise():
    rng = np.random.default_rng(1234)

    def _make(seconds: float, sample_rate: int = 16_000, amplitude: int = 8000) -> np.ndarray:
        count = int(seconds * sample_rate)
        return rng.integers(-amplitude, amplitude, size=count).astype(np.int16)

    return _make
