"""Producer-side client for streaming pipeline state to a Glitch consumer."""

from .recording_stream import RecordingStream

__all__ = ["RecordingStream"]
