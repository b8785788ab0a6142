"""meetscribe: live two-source meeting transcription through a Whisper API."""

__version__ = "0.1.0"
