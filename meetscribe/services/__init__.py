"""Transcription, filtering, ordering and session control."""
