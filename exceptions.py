"""
Error types raised by the request classifier.
"""


class BouncerError(Exception):
    """Base class for all classifier errors."""


class ModelDataMissingError(BouncerError):
    """A required model file (vocabulary, configs, weights, vectors) is absent."""

    def __init__(self, message: str, missing_files=None):
        super().__init__(message)
        self.missing_files = list(missing_files or [])


class ModelDataCorruptError(BouncerError):
    """Model data exists but cannot be used as-is."""


class InferenceError(BouncerError):
    """The embedding provider failed or produced an unusable vector."""


class ConfigurationError(BouncerError):
    """Invalid configuration or an operation the current mode does not support."""


class DownloadError(BouncerError):
    """Model files could not be fetched."""


class DeadlineExceededError(BouncerError):
    """The caller's deadline passed before a verdict was reached."""
