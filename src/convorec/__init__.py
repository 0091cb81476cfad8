"""Conversation capture and real-time transcription."""

__version__ = "0.1.0"
