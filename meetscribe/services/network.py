"""HTTP client for the Whisper-compatible transcription endpoint."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import httpx

from ..audio.types import AudioUnit, RecognitionSegment
from ..metrics import TRANSCRIBE_LATENCY, TRANSCRIBE_RETRIES
from ..settings import PipelineSettings
from .errors import DroppedUnitError, FatalSessionError, RetryableUnitError

if TYPE_CHECKING:
    from .session import CaptureConfig

LOGGER = logging.getLogger("meetscribe.network")


@dataclass(slots=True)
class TranscriptionResult:
    text: str
    segments: List[RecognitionSegment] = field(default_factory=list)
    duration: float | None = None

    @property
    def max_no_speech_probability(self) -> float:
        if not self.segments:
            return 0.0
        return max(seg.no_speech_probability for seg in self.segments)


class TranscriptionClient:
    def __init__(
        self,
        settings: PipelineSettings,
        *,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.url = settings.api_url
        self.max_attempts = settings.max_attempts
        self.base_delay = settings.retry_base_delay
        self._client = client or httpx.Client(timeout=settings.request_timeout)
        self._sleep = sleep

    def submit(self, unit: AudioUnit, config: "CaptureConfig") -> List[RecognitionSegment]:
        return self.transcribe(unit, config.credential, config.language).segments

    def transcribe(self, unit: AudioUnit, credential: str, language: str = "auto") -> TranscriptionResult:
        """Send one unit, retrying rate limits, server errors and transport failures.

        Raises ``FatalSessionError`` on authentication failure and
        ``DroppedUnitError`` for anything that should abandon just this unit.
        """
        last_error: RetryableUnitError | None = None
        for attempt in range(self.max_attempts):
            try:
                result = self._attempt(unit, credential, language)
            except RetryableUnitError as exc:
                last_error = exc
                delay = self.base_delay * (2 ** attempt)
                TRANSCRIBE_RETRIES.labels(cause=exc.code or "unknown").inc()
                LOGGER.info(
                    "Unit %d attempt %d/%d failed (%s), retrying in %.2fs",
                    unit.sequence_number,
                    attempt + 1,
                    self.max_attempts,
                    exc.message,
                    delay,
                )
                self._sleep(delay)
                continue
            LOGGER.debug(
                "Unit %d transcribed: %d segments, max no_speech=%.2f",
                unit.sequence_number,
                len(result.segments),
                result.max_no_speech_probability,
            )
            return result
        message = last_error.message if last_error else "no attempts made"
        raise DroppedUnitError(
            f"Transcription failed after {self.max_attempts} attempts: {message}",
            reason="retries_exhausted",
            status_code=last_error.status_code if last_error else None,
        )

    def _attempt(self, unit: AudioUnit, credential: str, language: str) -> TranscriptionResult:
        data = {
            "model": self.settings.model,
            "response_format": "verbose_json",
            "temperature": "0",
        }
        if language and language != "auto":
            data["language"] = language
        files = {"file": (unit.filename, unit.payload, unit.mime_type)}
        started = time.perf_counter()
        try:
            resp = self._client.post(self.url, headers=_auth(credential), files=files, data=data)
        except httpx.TransportError as exc:
            raise RetryableUnitError(f"Network error: {exc}", code="network_error") from exc
        finally:
            TRANSCRIBE_LATENCY.observe(time.perf_counter() - started)

        status = resp.status_code
        if status == 401:
            raise FatalSessionError("Invalid API key", status_code=status, code=_error_code(resp))
        if status == 429:
            raise RetryableUnitError("Rate limited", status_code=status, code="rate_limited")
        if status >= 500:
            raise RetryableUnitError(f"Server error ({status})", status_code=status, code="server_error")
        if status >= 400:
            raise DroppedUnitError(
                f"API error ({status}): {_error_message(resp)}",
                reason="client_error",
                status_code=status,
                code=_error_code(resp),
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise DroppedUnitError(f"Invalid response: {exc}", reason="invalid_response") from exc
        return parse_verbose_response(payload)

    def validate_credential(self, credential: str) -> bool:
        """Probe the endpoint with a form that carries no audio.

        A bad key is rejected with 401 before the payload is inspected; any
        other answer (400 for the missing file included) means the key works.
        """
        if not credential or not credential.strip():
            return False
        try:
            resp = self._client.post(self.url, headers=_auth(credential), data={"model": self.settings.model})
        except httpx.TransportError as exc:
            LOGGER.warning("Credential check failed: %s", exc)
            return False
        return resp.status_code != 401

    def close(self) -> None:
        self._client.close()


def parse_verbose_response(payload: Any) -> TranscriptionResult:
    if not isinstance(payload, dict):
        raise DroppedUnitError("Invalid response: expected a JSON object", reason="invalid_response")
    segments = []
    for item in payload.get("segments") or []:
        if not isinstance(item, dict):
            continue
        segments.append(
            RecognitionSegment(
                text=str(item.get("text", "")),
                start_ms=int(float(item.get("start", 0.0) or 0.0) * 1000),
                end_ms=int(float(item.get("end", 0.0) or 0.0) * 1000),
                no_speech_probability=float(item.get("no_speech_prob", 0.0) or 0.0),
                avg_log_probability=float(item.get("avg_logprob", 0.0) or 0.0),
            )
        )
    duration = payload.get("duration")
    return TranscriptionResult(
        text=str(payload.get("text") or "").strip(),
        segments=segments,
        duration=float(duration) if duration is not None else None,
    )


def _auth(credential: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {credential}"}


def _error_body(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    error = data.get("error") if isinstance(data, dict) else None
    return error if isinstance(error, dict) else {}


def _error_code(resp: httpx.Response) -> str:
    return str(_error_body(resp).get("code") or resp.status_code)


def _error_message(resp: httpx.Response) -> str:
    return str(_error_body(resp).get("message") or resp.text or resp.reason_phrase)


__all__ = ["TranscriptionClient", "TranscriptionResult", "parse_verbose_response"]
