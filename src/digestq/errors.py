from __future__ import annotations


class DigestqError(Exception):
    pass


class ConfigError(ValueError):
    pass


class ValidationError(DigestqError):
    """Job creation input rejected before it reaches the store."""


class NotFoundError(DigestqError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ConflictError(DigestqError):
    pass


class HandlerError(DigestqError):
    """Raised by job handlers.

    ``retryable=False`` marks failures that another attempt cannot fix, such as
    a payload the handler cannot work with.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class JobTimeoutError(DigestqError):
    """A handler ran past its time budget. Handlers may raise it for upstream timeouts too."""


class LeaseExpiredError(DigestqError):
    pass


class CancelledJobError(DigestqError):
    pass
