from typing import Optional


class NovelscopeError(Exception):
    """Base class for every error raised by novelscope."""


class ValidationError(NovelscopeError):
    """Input rejected before any work was attempted."""


class InvalidParameter(ValidationError):
    pass


class PreconditionFailed(ValidationError):
    """A batch cannot start (empty queue, missing credential)."""


class NetworkError(NovelscopeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(NovelscopeError):
    """Malformed model output; callers degrade instead of failing."""


class StorageError(NovelscopeError):
    pass


class ConversionError(NovelscopeError):
    """An e-book container held no usable text."""
