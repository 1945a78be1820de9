from __future__ import annotations


class BeatboxError(Exception):
    """Base error for the Beatbox engine."""


class InvalidPatternError(BeatboxError):
    """Raised when a pattern or instrument reference cannot be interpreted."""


class CaptureActiveError(BeatboxError):
    """Raised when a capture is started while another session is active."""


class AudioUnavailableError(BeatboxError):
    """Raised when the audio output subsystem cannot be opened."""


class PatternGenerateError(BeatboxError):
    """Raised when the pattern-generation service fails."""


class PatternTransportError(PatternGenerateError):
    """Raised when the pattern-generation service cannot be reached."""


class PatternFormatError(PatternGenerateError):
    """Raised when the pattern-generation service returns unusable content."""
