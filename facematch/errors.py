"""
Exceptions raised by the Face Match pipeline.

The ingestion pipeline is the only place these are turned into photo
status writes. Everything that is not a PermanentError counts against
the photo's retry budget.
"""


class FaceMatchError(Exception):
    """Base class for all pipeline errors."""


class TransientError(FaceMatchError):
    """Failure that may succeed on a later attempt."""


class PermanentError(FaceMatchError):
    """Failure that will not go away by retrying."""


class UnreadableImageError(TransientError):
    """Image bytes could not be decoded or have no usable dimensions."""


class ExtractionTimeoutError(TransientError):
    """Extraction or transform exceeded its configured timeout."""


class StorageError(TransientError):
    """Object storage put/get failed."""


class DimensionMismatchError(PermanentError):
    """Embedding length does not match the configured dimensionality."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected embedding of length {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ModelNotInitializedError(FaceMatchError):
    """Backend used before load()."""
