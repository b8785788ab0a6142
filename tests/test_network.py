import logging

import httpx
import pytest

from meetscribe.audio.types import AudioUnit
from meetscribe.services.errors import DroppedUnitError, FatalSessionError
from meetscribe.services.network import TranscriptionClient, parse_verbose_response
from meetscribe.services.session import CaptureConfig
from meetscribe.settings import PipelineSettings

API_URL = "https://api.example.com/openai/v1/audio/transcriptions"

VERBOSE_BODY = {
    "text": " hello um",
    "duration": 3.0,
    "segments": [
        {"text": " hello", "start": 0.0, "end": 1.2, "no_speech_prob": 0.1, "avg_logprob": -0.2},
        {"text": " um", "start": 1.2, "end": 2.0, "no_speech_prob": 0.9, "avg_logprob": -0.3},
    ],
}


def make_client(handler, *, attempts=3, delay=0.5):
    sleeps = []
    settings = PipelineSettings(api_url=API_URL, max_attempts=attempts, retry_base_delay=delay)
    client = TranscriptionClient(
        settings,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=sleeps.append,
    )
    return client, sleeps


def make_unit(seq=0):
    return AudioUnit(sequence_number=seq, payload=b"fLaC" + b"\x00" * 6000, approximate_duration_ms=3000)


def test_submit_sends_multipart_request_and_parses_segments():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = request.content.decode("utf-8", errors="ignore")
        return httpx.Response(200, json=VERBOSE_BODY)

    client, sleeps = make_client(handler)
    segments = client.submit(make_unit(), CaptureConfig(credential="gsk_test", language="en"))

    assert seen["auth"] == "Bearer gsk_test"
    body = seen["body"]
    assert 'name="model"' in body and "whisper-large-v3-turbo" in body
    assert "verbose_json" in body
    assert 'name="temperature"' in body
    assert 'name="language"' in body
    assert 'filename="audio.flac"' in body
    assert [seg.text for seg in segments] == [" hello", " um"]
    assert segments[0].end_ms == 1200
    assert segments[1].no_speech_probability == pytest.approx(0.9)
    assert sleeps == []


def test_auto_language_is_not_sent():
    bodies = []

    def handler(request):
        bodies.append(request.content.decode("utf-8", errors="ignore"))
        return httpx.Response(200, json={"text": "", "segments": []})

    client, _ = make_client(handler)
    assert client.submit(make_unit(), CaptureConfig(credential="k", language="auto")) == []
    assert 'name="language"' not in bodies[0]


def test_server_errors_retry_with_exponential_backoff_then_drop():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={"error": {"message": "boom"}})

    client, sleeps = make_client(handler, attempts=3, delay=0.5)
    with pytest.raises(DroppedUnitError) as excinfo:
        client.transcribe(make_unit(), "k")

    assert len(calls) == 3
    assert sleeps == [0.5, 1.0, 2.0]
    assert excinfo.value.reason == "retries_exhausted"
    assert excinfo.value.status_code == 500


def test_unauthorized_is_fatal_without_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"error": {"message": "Invalid API Key", "code": "invalid_api_key"}})

    client, sleeps = make_client(handler)
    with pytest.raises(FatalSessionError) as excinfo:
        client.transcribe(make_unit(), "bad")

    assert len(calls) == 1
    assert sleeps == []
    assert excinfo.value.status_code == 401
    assert excinfo.value.code == "invalid_api_key"


def test_rate_limit_recovers_on_next_attempt():
    responses = iter([httpx.Response(429), httpx.Response(200, json=VERBOSE_BODY)])

    def handler(request):
        return next(responses)

    client, sleeps = make_client(handler, delay=1.0)
    result = client.transcribe(make_unit(), "k", "zh")

    assert sleeps == [1.0]
    assert result.text == "hello um"
    assert result.duration == pytest.approx(3.0)
    assert result.max_no_speech_probability == pytest.approx(0.9)


def test_other_client_errors_drop_immediately():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "file must be one of flac, mp3", "code": "invalid_file"}})

    client, sleeps = make_client(handler)
    with pytest.raises(DroppedUnitError) as excinfo:
        client.transcribe(make_unit(), "k")

    assert len(calls) == 1
    assert sleeps == []
    assert excinfo.value.reason == "client_error"
    assert excinfo.value.code == "invalid_file"
    assert "flac" in str(excinfo.value)


def test_transport_failures_are_retried():
    attempts = {"count": 0}

    def handler(request):
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=VERBOSE_BODY)

    client, sleeps = make_client(handler, delay=0.25)
    segments = client.submit(make_unit(), CaptureConfig(credential="k"))

    assert attempts["count"] == 3
    assert sleeps == [0.25, 0.5]
    assert len(segments) == 2


def test_non_json_success_body_drops_unit():
    client, _ = make_client(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(DroppedUnitError) as excinfo:
        client.transcribe(make_unit(), "k")
    assert excinfo.value.reason == "invalid_response"


def test_validate_credential_interprets_status():
    def handler(request):
        key = request.headers["authorization"].split(" ", 1)[1]
        if key == "bad":
            return httpx.Response(401, json={"error": {"message": "Invalid API Key"}})
        return httpx.Response(400, json={"error": {"message": "file is required"}})

    client, _ = make_client(handler)
    assert client.validate_credential("bad") is False
    assert client.validate_credential("good") is True
    assert client.validate_credential("   ") is False


def test_validate_credential_network_failure_is_invalid():
    def handler(request):
        raise httpx.ConnectError("offline", request=request)

    client, _ = make_client(handler)
    assert client.validate_credential("k") is False


def test_parse_verbose_response_tolerates_missing_fields():
    result = parse_verbose_response({"text": "hi", "segments": [{"text": "hi"}, "junk"]})
    assert len(result.segments) == 1
    assert result.segments[0].avg_log_probability == 0.0
    assert result.duration is None
    with pytest.raises(DroppedUnitError):
        parse_verbose_response(["not", "an", "object"])


def test_successful_transcription_logs_worst_no_speech(caplog):
    client, _ = make_client(lambda request: httpx.Response(200, json=VERBOSE_BODY))
    caplog.set_level(logging.DEBUG, logger="meetscribe.network")
    result = client.transcribe(make_unit(seq=7), "k")
    assert result.max_no_speech_probability == pytest.approx(0.9)
    assert "Unit 7 transcribed: 2 segments, max no_speech=0.90" in caplog.text
