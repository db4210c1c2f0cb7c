"""
Exception hierarchy for changetail.

Fatal at startup: ConfigError, StreamConnectionError (and ResumeTokenError),
StorageError raised while reading the checkpoint.
Degraded to logging at runtime: StreamError, SinkWriteError, StorageError
raised while saving the checkpoint.
"""


class CDCError(Exception):
    """Base exception for changetail errors."""
    pass


class ConfigError(CDCError):
    """Required setting is missing or malformed."""
    pass


class StreamConnectionError(CDCError):
    """Change stream subscription could not be opened."""
    pass


class ResumeTokenError(StreamConnectionError):
    """Resume token was rejected by the server (expired or foreign)."""
    pass


class StreamError(CDCError):
    """Failure while awaiting or decoding an event mid-stream."""
    pass


class StorageError(CDCError):
    """Error reading or writing the checkpoint artifact."""
    pass


class SinkWriteError(CDCError):
    """Error writing a change event to the output sink."""
    pass
