"""Custom Exceptions for the SubAlign application."""

class SubAlignError(Exception):
    """Base class for exceptions in this module."""
    pass

class ConfigurationError(SubAlignError):
    """Exception raised for errors in configuration loading or invalid settings."""
    pass

class MalformedInput(SubAlignError):
    """Exception raised when timeline/cue data cannot be parsed at all."""
    pass

class MalformedTimeline(MalformedInput):
    """Exception raised when an operation would leave a cue with start > end."""
    pass

class AlignmentFailure(SubAlignError):
    """Exception raised when no correspondence can be established between timelines."""
    pass

class CacheIOError(SubAlignError):
    """Exception raised for unreadable or unwritable request cache entries.

    Never escapes the request cache: callers see a cache miss instead.
    """
    pass

class AudioExtractionError(SubAlignError):
    """Exception raised for errors during media probing or audio decoding."""
    pass

class TranscriptionError(SubAlignError):
    """Exception raised when the transcription backend cannot be initialized."""
    pass

class TranslationError(SubAlignError):
    """Exception raised when the translation backend cannot be initialized."""
    pass

class FormattingError(SubAlignError):
    """Exception raised for errors while writing subtitle files."""
    pass

class FileSystemError(SubAlignError):
    """Exception raised for file system related errors (permissions, not found etc)."""
    pass
