from __future__ import annotations

"""Error taxonomy raised by the tracker builder and the filter."""


class TrackingError(Exception):
    """Base class for every error raised by depthtrack."""


class InvalidParameterError(TrackingError, ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class ResourceNotFoundError(TrackingError, FileNotFoundError):
    pass


class UnsupportedBackendError(TrackingError, RuntimeError):
    pass


class InvalidTimestepError(TrackingError, ValueError):
    pass


class DimensionMismatchError(TrackingError, ValueError):
    pass


class DegenerateCovarianceError(TrackingError, ArithmeticError):
    pass


class FilterStateError(TrackingError, RuntimeError):
    """Raised when predict/update is called on an uninitialized or failed filter."""
