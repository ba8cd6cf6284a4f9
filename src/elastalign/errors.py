"""
Exceptions raised by the elastic alignment pipeline.

Interruption is signalled with the builtin InterruptedError.
"""


class AlignmentError(Exception):
    """Base class for all elastalign exceptions."""
    pass


class InsufficientDataError(AlignmentError):
    """Too few correspondences or tiles to fit a model or relax a mesh."""
    pass


class IllDefinedDataPointsError(InsufficientDataError):
    """Point configuration does not constrain the model (collinear, coincident)."""
    pass


class NoninvertibleModelError(AlignmentError, ValueError):
    """Raised when a model has no inverse."""
    pass


class CacheIOError(AlignmentError, OSError):
    """A feature or point match cache entry could not be written."""
    pass


class ExtractionExecutionError(AlignmentError, RuntimeError):
    """A feature extraction worker failed."""
    pass


class EmptyRangeError(AlignmentError):
    """Fewer than two layers with content in the requested range."""
    pass


class DegenerateBoundingBoxError(AlignmentError):
    """The region to align has zero area."""
    pass
