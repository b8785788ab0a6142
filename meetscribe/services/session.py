"""Capture session state machine: owns the mixer, segmenter and delivery."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..audio.devices import AudioBackend, DeviceError, SoundDeviceBackend
from ..audio.encoder import AudioEncoder
from ..audio.mixer import AudioMixer, MixedSource
from ..audio.segmenter import Segmenter
from ..audio.types import AudioUnit, TranscriptFragment
from ..metrics import UNITS_DISPATCHED
from ..settings import PipelineSettings, get_settings
from .confidence import ConfidenceThresholds, filter_segments
from .errors import DroppedUnitError, FatalSessionError
from .network import TranscriptionClient
from .sequencer import Sequencer
from .sinks import TranscriptSink

LOGGER = logging.getLogger("meetscribe.session")

# Keys used by the browser extension's settings storage.
_SNAPSHOT_ALIASES = {
    "groqApiKey": "credential",
    "apiKey": "credential",
    "chunkDuration": "chunk_duration_ms",
    "chunkDurationMs": "chunk_duration_ms",
    "includeMicrophone": "mix_microphone",
    "mixMicrophone": "mix_microphone",
    "microphoneDeviceLabel": "microphone_device_label",
    "micDeviceLabel": "microphone_device_label",
    "remoteDeviceLabel": "remote_device_label",
    "microphoneGain": "microphone_gain",
    "remoteGain": "remote_gain",
}


class CaptureConfig(BaseModel):
    """Settings snapshot captured once at ``start`` and immutable afterwards."""

    model_config = ConfigDict(frozen=True)

    credential: str = ""
    language: str = "auto"
    chunk_duration_ms: int = Field(default=3000, gt=0)
    mix_microphone: bool = True
    microphone_device_label: str = ""
    remote_device_label: str = ""
    microphone_gain: float = Field(default=1.0, ge=0.0)
    remote_gain: float = Field(default=1.0, ge=0.0)

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "CaptureConfig":
        valid = set(cls.model_fields)
        values: Dict[str, Any] = {}
        for key, value in snapshot.items():
            name = _SNAPSHOT_ALIASES.get(key, key)
            if name in valid and value is not None:
                values[name] = value
        if isinstance(values.get("language"), str):
            values["language"] = values["language"].strip() or "auto"
        return cls(**values)


class SessionState(str, Enum):
    STARTING = "starting"
    CAPTURING = "capturing"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class CaptureSession:
    id: str
    config: CaptureConfig
    state: SessionState = SessionState.STARTING
    mixer: Optional[AudioMixer] = None
    source: Optional[MixedSource] = None
    segmenter: Optional[Segmenter] = None
    sequencer: Optional[Sequencer] = None
    executor: Optional[ThreadPoolExecutor] = None


@dataclass(frozen=True)
class CaptureStatus:
    is_capturing: bool
    last_error: Optional[str] = None
    degraded: bool = False
    degraded_reason: Optional[str] = None
    session_id: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"type": "STATUS_RESPONSE", "isCapturing": self.is_capturing}
        if self.last_error:
            message["error"] = self.last_error
        if self.degraded:
            message["degraded"] = self.degraded_reason or True
        return message


class CaptureController:
    """Single entry point for start/stop/status.

    At most one session is active. A fatal error anywhere in the pipeline
    tears the session down and is reported once through ``sink.fail``.
    """

    def __init__(
        self,
        sink: TranscriptSink,
        *,
        settings: PipelineSettings | None = None,
        client: TranscriptionClient | None = None,
        backend_factory: Callable[[], AudioBackend] = SoundDeviceBackend,
        settings_provider: Callable[[], Mapping[str, Any]] | None = None,
        run_timer: bool = True,
    ) -> None:
        self.sink = sink
        self.settings = settings or get_settings()
        self.client = client or TranscriptionClient(self.settings)
        self.backend_factory = backend_factory
        self.settings_provider = settings_provider
        self.run_timer = run_timer
        self.thresholds = ConfidenceThresholds(
            no_speech=self.settings.no_speech_threshold,
            log_prob=self.settings.log_prob_threshold,
        )
        self._lock = threading.Lock()
        self._session: CaptureSession | None = None
        self._last_error: str | None = None

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    def start(self, config: CaptureConfig) -> CaptureStatus:
        with self._lock:
            if self._session is not None:
                LOGGER.info("Already capturing, ignoring start request")
                return self._status_locked()
            session = CaptureSession(id=uuid.uuid4().hex, config=config)
            self._session = session
            self._last_error = None
        LOGGER.info(
            "Starting capture %s (language=%s, chunk=%dms, microphone=%s)",
            session.id[:8],
            config.language,
            config.chunk_duration_ms,
            config.mix_microphone,
        )
        try:
            self._launch(session)
        except FatalSessionError as exc:
            if session.state in (SessionState.STOPPING, SessionState.STOPPED):
                # stop() released the sources while they were being opened
                LOGGER.info("Capture %s stopped while starting", session.id[:8])
            else:
                self._abort(session, exc)
        return self.get_status()

    def _launch(self, session: CaptureSession) -> None:
        config = session.config
        if not config.credential.strip():
            raise FatalSessionError("API key missing")
        try:
            backend = self.backend_factory()
        except DeviceError as exc:
            raise FatalSessionError(f"Audio backend unavailable: {exc}") from exc
        session.mixer = AudioMixer(
            backend,
            sample_rate=self.settings.sample_rate,
            block_size=self.settings.block_size,
            monitor=self.settings.monitor_remote,
        )
        session.source = session.mixer.open(config)
        session.sequencer = Sequencer(self.sink.deliver)
        session.executor = ThreadPoolExecutor(
            max_workers=self.settings.max_in_flight, thread_name_prefix="meetscribe-transcribe"
        )
        session.segmenter = Segmenter(
            session.source,
            AudioEncoder(self.settings.sample_rate, self.settings.audio_format),
            on_unit=lambda unit: self._dispatch(session, unit),
            on_abandon=session.sequencer.abandon,
            chunk_duration_ms=config.chunk_duration_ms,
            min_unit_bytes=self.settings.min_unit_bytes,
            mixer=session.mixer,
            run_timer=self.run_timer,
        )
        with self._lock:
            if self._session is not session:
                # stop() arrived while sources were opening
                session.mixer.close()
                session.executor.shutdown(wait=False)
                return
            session.state = SessionState.CAPTURING
        if not session.segmenter.start():
            LOGGER.info("Capture %s stopped before recording began", session.id[:8])

    def _dispatch(self, session: CaptureSession, unit: AudioUnit) -> None:
        if session.state is SessionState.FAILED or session.executor is None:
            session.sequencer.abandon(unit.sequence_number, "session_failed")
            return
        UNITS_DISPATCHED.inc()
        try:
            session.executor.submit(self._transcribe, session, unit)
        except RuntimeError:  # executor already shut down
            session.sequencer.abandon(unit.sequence_number, "session_stopped")

    def _transcribe(self, session: CaptureSession, unit: AudioUnit) -> None:
        sequencer = session.sequencer
        try:
            segments = self.client.submit(unit, session.config)
        except DroppedUnitError as exc:
            LOGGER.info("Unit %d dropped: %s", unit.sequence_number, exc.message)
            sequencer.abandon(unit.sequence_number, exc.reason)
            return
        except FatalSessionError as exc:
            sequencer.abandon(unit.sequence_number, "fatal")
            self._abort(session, exc)
            return
        except Exception:
            LOGGER.exception("Unexpected failure transcribing unit %d", unit.sequence_number)
            sequencer.abandon(unit.sequence_number, "unexpected_error")
            return
        sequencer.complete(unit.sequence_number, filter_segments(segments, self.thresholds))

    def stop(self, *, drain: bool = False) -> CaptureStatus:
        """Stop capturing; safe to call at any time.

        Audio resources are released before this returns. Transcriptions
        already in flight finish in the background and their results are
        discarded, unless ``drain`` is set, in which case this waits for them
        and delivers what they produce.
        """
        with self._lock:
            session, self._session = self._session, None
            if session is not None:
                session.state = SessionState.STOPPING
        if session is None:
            return self.get_status()
        self._teardown(session, drain=drain)
        session.state = SessionState.STOPPED
        LOGGER.info("Capture %s stopped", session.id[:8])
        return self.get_status()

    def _abort(self, session: CaptureSession, error: FatalSessionError) -> None:
        with self._lock:
            if self._session is session:
                self._session = None
                owned = True
            elif session.state is SessionState.STOPPING:
                # stop() is draining; it owns the teardown
                owned = False
            else:
                return
            self._last_error = error.message
            session.state = SessionState.FAILED
        LOGGER.error("Capture %s aborted: %s", session.id[:8], error.message)
        if owned:
            self._teardown(session, drain=False)
        try:
            self.sink.fail(error)
        except Exception:
            LOGGER.exception("Sink failed to accept fatal error")

    def _teardown(self, session: CaptureSession, *, drain: bool) -> None:
        if session.segmenter is not None:
            session.segmenter.stop()
        elif session.mixer is not None:
            session.mixer.close()
        if session.executor is not None:
            session.executor.shutdown(wait=drain)
        if session.sequencer is not None:
            session.sequencer.close()

    def get_status(self) -> CaptureStatus:
        with self._lock:
            return self._status_locked()

    def _status_locked(self) -> CaptureStatus:
        session = self._session
        source = session.source if session else None
        return CaptureStatus(
            is_capturing=session is not None and session.state is SessionState.CAPTURING,
            last_error=self._last_error,
            degraded=bool(source and source.degraded),
            degraded_reason=source.degraded_reason if source else None,
            session_id=session.id if session else None,
        )

    def handle_command(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        """Answer the extension-style control messages with a status message."""
        kind = message.get("type")
        if kind == "START_CAPTURE_REQUEST":
            snapshot = message.get("settings")
            if snapshot is None and self.settings_provider is not None:
                snapshot = self.settings_provider()
            try:
                config = CaptureConfig.from_snapshot(snapshot or {})
            except ValidationError as exc:
                status = self.get_status()
                return {**status.to_message(), "error": f"Invalid settings: {exc.errors()[0]['msg']}"}
            return self.start(config).to_message()
        if kind == "STOP_CAPTURE_REQUEST":
            return self.stop().to_message()
        if kind == "GET_STATUS_REQUEST":
            return self.get_status().to_message()
        return {**self.get_status().to_message(), "error": f"Unknown command: {kind}"}


__all__ = [
    "CaptureConfig",
    "CaptureController",
    "CaptureSession",
    "CaptureStatus",
    "SessionState",
]
