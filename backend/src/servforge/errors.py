"""Error taxonomy for the servforge runtime.

Every failure a caller can observe is a ServiceError carrying a kind
(the taxonomy name), a message and an optional target (field path).
Wire adapters use the ``status`` attribute to pick a response code;
the core itself is protocol-agnostic.

Programming-error-class failures (TransactionClosed, RegistryFrozen)
derive from FatalError. They indicate a broken core invariant and are
never turned into an ordinary error response.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorInfo:
    """Structured (kind, message, target) triple surfaced to callers."""

    kind: str
    message: str
    target: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.kind,
            "message": self.message,
            "target": self.target,
        }


class ServiceError(Exception):
    """Base class for all errors raised by the runtime."""

    kind = "ServiceError"
    status = 500

    def __init__(self, message: str = "", target: str | None = None):
        super().__init__(message)
        self.message = message or self.kind
        self.target = target

    def info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, message=self.message, target=self.target)

    def to_dict(self) -> dict[str, Any]:
        return self.info().to_dict()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, target={self.target!r})"


class ValidationError(ServiceError):
    kind = "ValidationError"
    status = 400


class NotFound(ServiceError):
    kind = "NotFound"
    status = 404


class UnknownEntity(NotFound):
    kind = "UnknownEntity"


class DuplicateKey(ServiceError):
    kind = "DuplicateKey"
    status = 409


class DuplicateEntity(ServiceError):
    kind = "DuplicateEntity"
    status = 409


class DuplicateOperation(ServiceError):
    kind = "DuplicateOperation"
    status = 409


class Forbidden(ServiceError):
    kind = "Forbidden"
    status = 403


class OperationNotAllowed(ServiceError):
    kind = "OperationNotAllowed"
    status = 405


class Unimplemented(ServiceError):
    kind = "Unimplemented"
    status = 501


class CommitFailed(ServiceError):
    kind = "CommitFailed"
    status = 409


class InternalError(ServiceError):
    """An unexpected exception escaped a handler or adapter."""

    kind = "InternalError"
    status = 500


class FatalError(ServiceError):
    """Core invariant violation. Not recoverable for the current request."""

    kind = "FatalError"
    status = 500


class TransactionClosed(FatalError):
    kind = "TransactionClosed"


class RegistryFrozen(FatalError):
    kind = "RegistryFrozen"


ERROR_KINDS: dict[str, type[ServiceError]] = {
    cls.kind: cls
    for cls in (
        ValidationError,
        NotFound,
        UnknownEntity,
        DuplicateKey,
        DuplicateEntity,
        DuplicateOperation,
        Forbidden,
        OperationNotAllowed,
        Unimplemented,
        CommitFailed,
        InternalError,
    )
}


def make_error(
    kind: str | type[ServiceError] | ServiceError,
    message: str = "",
    target: str | None = None,
) -> ServiceError:
    """Build a ServiceError from a kind name, an error class or an instance.

    Unknown kind names produce a plain ServiceError with that kind, so
    applications can use their own codes (e.g. ``"OUT_OF_STOCK"``) and
    still get a 400 response.
    """
    if isinstance(kind, ServiceError):
        return kind
    if isinstance(kind, type) and issubclass(kind, ServiceError):
        return kind(message, target)

    error_cls = ERROR_KINDS.get(kind)
    if error_cls is not None:
        return error_cls(message, target)

    error = ServiceError(message or kind, target)
    error.kind = kind
    error.status = 400
    return error
