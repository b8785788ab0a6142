import io
import logging
from datetime import datetime

import pytest

from meetscribe import __main__ as cli
from meetscribe.audio.devices import DeviceError
from meetscribe.audio.types import TranscriptFragment
from meetscribe.logging_config import setup_logging
from meetscribe.services.errors import FatalSessionError
from meetscribe.services.session import CaptureStatus
from meetscribe.services.sinks import ConsoleSink


class StubClient:
    instances = []

    def __init__(self, settings, **kwargs) -> None:
        self.closed = False
        self.keys = []
        StubClient.instances.append(self)

    def validate_credential(self, credential):
        self.keys.append(credential)
        return credential == "gsk_good"

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_parser_defaults(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    args = cli.build_parser().parse_args([])
    assert args.api_key == ""
    assert args.language == "auto"
    assert args.chunk_ms == 3000
    assert args.mic is True
    assert cli.build_parser().parse_args(["--no-mic"]).mic is False


def test_validate_key_reports_result(monkeypatch, capsys):
    StubClient.instances.clear()
    monkeypatch.setattr(cli, "TranscriptionClient", StubClient)

    assert cli.main(["--validate-key", "--api-key", "gsk_good"]) == 0
    assert "valid" in capsys.readouterr().out
    assert cli.main(["--validate-key", "--api-key", "gsk_bad"]) == 1
    assert "invalid" in capsys.readouterr().out
    assert all(client.closed for client in StubClient.instances)


def test_missing_key_fails_before_touching_devices(monkeypatch, capsys):
    monkeypatch.setattr(cli, "TranscriptionClient", StubClient)
    assert cli.main(["--api-key", ""]) == 1
    assert "API key missing" in capsys.readouterr().err


def test_list_devices_without_audio_backend(monkeypatch, capsys):
    def unavailable():
        raise DeviceError("PortAudio library not found")

    monkeypatch.setattr(cli, "SoundDeviceBackend", unavailable)
    assert cli.main(["--list-devices"]) == 1
    assert "PortAudio" in capsys.readouterr().err


def test_list_devices_prints_inputs_only(monkeypatch, capsys, fake_backend):
    monkeypatch.setattr(cli, "SoundDeviceBackend", lambda: fake_backend)
    assert cli.main(["--list-devices"]) == 0
    out = capsys.readouterr().out
    assert "BlackHole 2ch" in out
    assert "Speakers" not in out


def test_setup_logging_writes_file(tmp_path):
    log_path = setup_logging(verbose=True, log_dir=tmp_path / "logs")
    logging.getLogger("meetscribe.test").debug("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert log_path.parent == tmp_path / "logs"
    assert "hello from the test" in log_path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_console_sink_formats_fragments_and_errors():
    stream = io.StringIO()
    sink = ConsoleSink(stream)
    produced = datetime(2024, 5, 1, 9, 30, 15)
    sink.deliver(TranscriptFragment(sequence_number=0, text="hello", produced_at_ms=int(produced.timestamp() * 1000)))
    sink.fail(FatalSessionError("Invalid API key"))
    assert stream.getvalue().splitlines() == ["[09:30:15] hello", "Capture stopped: Invalid API key"]


def test_capture_options_reach_the_session_config(monkeypatch):
    started = []

    class RecordingController:
        def __init__(self, sink, **kwargs) -> None:
            pass

        def start(self, config):
            started.append(config)
            return CaptureStatus(is_capturing=False, last_error="no device")

    monkeypatch.setattr(cli, "TranscriptionClient", StubClient)
    monkeypatch.setattr(cli, "CaptureController", RecordingController)
    argv = ["--api-key", "k", "--no-mic", "--chunk-ms", "2000", "--mic-gain", "1.5", "--remote-gain", "0.5"]
    assert cli.main(argv) == 1
    config = started[0]
    assert config.mix_microphone is False
    assert config.chunk_duration_ms == 2000
    assert config.microphone_gain == 1.5
    assert config.remote_gain == 0.5
