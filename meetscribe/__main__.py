"""Command line runner: ``python -m meetscribe``."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from pathlib import Path
from typing import List, Optional

from prometheus_client import start_http_server

from .audio.devices import DeviceError, SoundDeviceBackend
from .logging_config import setup_logging
from .services.network import TranscriptionClient
from .services.session import CaptureConfig, CaptureController
from .services.sinks import ConsoleSink
from .settings import get_settings

LOGGER = logging.getLogger("meetscribe.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="meetscribe", description="Live meeting transcription")
    parser.add_argument("--api-key", default=os.getenv("GROQ_API_KEY", ""), help="defaults to $GROQ_API_KEY")
    parser.add_argument("--language", default="auto", help="ISO language code or 'auto'")
    parser.add_argument("--chunk-ms", type=int, default=3000, help="recording window length")
    parser.add_argument("--mic", dest="mic", action="store_true", default=True, help="mix in the microphone")
    parser.add_argument("--no-mic", dest="mic", action="store_false", help="record remote audio only")
    parser.add_argument("--mic-label", default="", help="microphone device name")
    parser.add_argument("--remote-label", default="", help="device carrying the remote audio (loopback)")
    parser.add_argument("--mic-gain", type=float, default=1.0)
    parser.add_argument("--remote-gain", type=float, default=1.0)
    parser.add_argument("--list-devices", action="store_true", help="print input devices and exit")
    parser.add_argument("--validate-key", action="store_true", help="check the API key and exit")
    parser.add_argument("--log-dir", type=Path, default=None)
    parser.add_argument("--metrics-port", type=int, default=None, help="serve prometheus metrics on this port")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def list_devices() -> int:
    try:
        backend = SoundDeviceBackend()
        devices = backend.list_devices()
    except DeviceError as exc:
        print(f"Audio devices unavailable: {exc}", file=sys.stderr)
        return 1
    for dev in devices:
        if dev.max_input_channels > 0:
            print(f"{dev.index:3d}  {dev.name}  ({dev.max_input_channels} in)")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose, log_dir=args.log_dir)

    if args.list_devices:
        return list_devices()

    settings = get_settings()
    client = TranscriptionClient(settings)
    if args.validate_key:
        try:
            valid = client.validate_credential(args.api_key)
        finally:
            client.close()
        print("API key is valid" if valid else "API key is invalid")
        return 0 if valid else 1

    config = CaptureConfig(
        credential=args.api_key,
        language=args.language,
        chunk_duration_ms=args.chunk_ms,
        mix_microphone=args.mic,
        microphone_device_label=args.mic_label,
        remote_device_label=args.remote_label,
        microphone_gain=args.mic_gain,
        remote_gain=args.remote_gain,
    )
    finished = threading.Event()

    class _CliSink(ConsoleSink):
        def fail(self, error) -> None:
            super().fail(error)
            finished.set()

    if args.metrics_port:
        start_http_server(args.metrics_port)
        LOGGER.info("Serving metrics on :%d", args.metrics_port)
    controller = CaptureController(_CliSink(), settings=settings, client=client)
    status = controller.start(config)
    if not status.is_capturing:
        print(f"Unable to start capture: {status.last_error}", file=sys.stderr)
        client.close()
        return 1
    if status.degraded:
        print(f"Microphone unavailable, recording remote audio only ({status.degraded_reason})", file=sys.stderr)
    print("Listening. Press Ctrl+C to stop.", file=sys.stderr)
    try:
        finished.wait()
    except KeyboardInterrupt:
        LOGGER.info("Stopped by user")
    finally:
        controller.stop(drain=True)
        client.close()
    return 1 if controller.get_status().last_error else 0


if __name__ == "__main__":
    sys.exit(main())
