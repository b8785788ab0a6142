"""Acquire remote and microphone inputs and mix them into one signal."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional

import numpy as np

from ..services.errors import DegradedCapabilityError, FatalSessionError
from .devices import AudioBackend, AudioStreamHandle, DeviceError, find_input_device
from .graph import MixedDestination, SignalGraph

if TYPE_CHECKING:
    from ..services.session import CaptureConfig

LOGGER = logging.getLogger("meetscribe.mixer")


@dataclass(slots=True)
class MixedSource:
    """Handle on the mixed signal produced by an open mixer."""

    destination: MixedDestination
    sample_rate: int
    microphone_active: bool
    degraded_reason: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None

    def subscribe(self, sink: Callable[[np.ndarray], None]) -> None:
        self.destination.subscribe(sink)

    def unsubscribe(self, sink: Callable[[np.ndarray], None]) -> None:
        self.destination.unsubscribe(sink)


class AudioMixer:
    def __init__(
        self,
        backend: AudioBackend,
        *,
        sample_rate: int = 16_000,
        block_size: int = 1024,
        monitor: bool = True,
        monitor_device: int | None = None,
    ) -> None:
        self.backend = backend
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.monitor = monitor
        self.monitor_device = monitor_device
        self._graph: SignalGraph | None = None
        self._streams: List[AudioStreamHandle] = []
        self._lock = threading.Lock()
        self._source: MixedSource | None = None

    @property
    def source(self) -> MixedSource | None:
        return self._source

    def open(self, config: "CaptureConfig") -> MixedSource:
        with self._lock:
            if self._source is not None:
                return self._source
            graph = SignalGraph(self.sample_rate)
            self._graph = graph
        try:
            source = self._build(graph, config)
        except Exception as exc:
            aborted = graph.closed
            self.close()
            if aborted and not isinstance(exc, FatalSessionError):
                raise FatalSessionError("Capture was closed while opening audio sources") from exc
            raise
        with self._lock:
            aborted = graph.closed
            if not aborted:
                self._source = source
        if aborted:
            # close() ran while streams were still being opened
            self.close()
            raise FatalSessionError("Capture was closed while opening audio sources")
        return source

    def _build(self, graph: SignalGraph, config: "CaptureConfig") -> MixedSource:
        destination = graph.create_mixed_destination()

        remote = graph.create_source("remote")
        remote_gain = graph.create_gain(config.remote_gain, "remote_gain")
        graph.connect(remote, remote_gain)
        graph.connect(remote_gain, destination)
        remote_device = self._resolve_remote_device(config.remote_device_label)
        try:
            self._start_input(remote_device, remote.feed)
        except DeviceError as exc:
            raise FatalSessionError(f"Unable to capture remote audio: {exc}") from exc
        LOGGER.info("Remote audio acquired (device=%s)", remote_device if remote_device is not None else "default")

        if self.monitor:
            self._attach_monitor(graph, remote)

        microphone_active = False
        degraded_reason = None
        if config.mix_microphone:
            try:
                self._attach_microphone(graph, destination, config)
                microphone_active = True
            except DegradedCapabilityError as exc:
                degraded_reason = exc.message
                LOGGER.warning("Microphone unavailable, recording remote audio only: %s", exc.message)
        else:
            LOGGER.info("Microphone disabled, recording remote audio only")

        return MixedSource(
            destination=destination,
            sample_rate=self.sample_rate,
            microphone_active=microphone_active,
            degraded_reason=degraded_reason,
        )

    def _resolve_remote_device(self, label: str) -> int | None:
        if not label:
            return None
        try:
            device = find_input_device(self.backend, label)
        except Exception as exc:  # device enumeration is a PortAudio call
            raise FatalSessionError(f"Unable to enumerate audio devices: {exc}") from exc
        if device is None:
            raise FatalSessionError(f"Remote audio device not found: {label}")
        return device

    def _attach_monitor(self, graph: SignalGraph, remote) -> None:
        monitor = graph.create_monitor()
        graph.connect(remote, monitor)
        try:
            stream = self.backend.open_output(
                self.monitor_device, self.sample_rate, 1, self.block_size, monitor.pull
            )
            stream.start()
        except DeviceError as exc:
            LOGGER.warning("Monitor playback unavailable: %s", exc)
            return
        self._streams.append(stream)

    def _attach_microphone(self, graph: SignalGraph, destination: MixedDestination, config: "CaptureConfig") -> None:
        device = None
        label = config.microphone_device_label
        if label:
            try:
                device = find_input_device(self.backend, label)
            except Exception as exc:
                raise DegradedCapabilityError(f"device lookup failed: {exc}") from exc
            if device is None:
                LOGGER.warning("Microphone '%s' not found, using default input", label)
        microphone = graph.create_source("microphone")
        microphone_gain = graph.create_gain(config.microphone_gain, "microphone_gain")
        graph.connect(microphone, microphone_gain)
        graph.connect(microphone_gain, destination)
        try:
            self._start_input(device, microphone.feed)
        except DeviceError as exc:
            microphone_gain.disconnect()
            raise DegradedCapabilityError(str(exc)) from exc
        LOGGER.info("Microphone acquired (device=%s)", device if device is not None else "default")

    def _start_input(self, device: int | None, callback: Callable[[np.ndarray], None]) -> None:
        stream = self.backend.open_input(device, self.sample_rate, 1, self.block_size, callback)
        self._streams.append(stream)
        try:
            stream.start()
        except Exception as exc:
            raise DeviceError(str(exc)) from exc

    def close(self) -> None:
        with self._lock:
            streams, self._streams = self._streams, []
            graph, self._graph = self._graph, None
            self._source = None
        for stream in streams:
            for action in (stream.stop, stream.close):
                try:
                    action()
                except Exception as exc:  # already stopped or device gone
                    LOGGER.debug("Ignoring stream shutdown error: %s", exc)
        if graph is not None:
            graph.close()
        if streams:
            LOGGER.info("Audio sources released")


__all__ = ["AudioMixer", "MixedSource"]
