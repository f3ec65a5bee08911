"""
Error taxonomy for the visual matcher.

Every failure the matcher can recover from has its own class so callers
can tell a cold cache from a dead network without string matching:

    CorruptDataError        persisted or remote data could not be decoded
    EmbeddingError          the embedding collaborator rejected an image
    ClassificationError     the classifier failed on an image
    NetworkError            a fetch failed or returned a non-success status
    ImageLoadError          bytes were fetched but are not a usable image
    StorageQuotaError       the cache refused a write
    DimensionMismatchError  two feature vectors of different length met
"""


class VisualMatchError(Exception):
    """Base class for all matcher errors."""


class CorruptDataError(VisualMatchError):
    pass


class EmbeddingError(VisualMatchError):
    pass


class ClassificationError(VisualMatchError):
    pass


class NetworkError(VisualMatchError):
    pass


class ImageLoadError(VisualMatchError):
    pass


class StorageQuotaError(VisualMatchError):
    pass


class DimensionMismatchError(VisualMatchError, ValueError):
    """Raised when vectors of different dimensionality are compared or stored together."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Vector dimension {actual} doesn't match expected dimension {expected}"
        )
