"""
Collaborator call results.

Every call into the transport, the content resolver or the execution
endpoint is wrapped by ``capture()`` and comes back as a ``CallResult``.
Tick handlers inspect ``ok`` and log the error variant instead of relying
on blanket exception handlers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Generic, Optional, TypeVar

from ..exceptions import (
    ExecutionError,
    ResolutionError,
    SnapshotPublishError,
    TransportError,
    ValidationError,
)

T = TypeVar("T")


class ErrorKind(Enum):
    """Error taxonomy for collaborator failures."""
    VALIDATION = "validation"
    TRANSPORT = "transport"
    RESOLUTION = "resolution"
    EXECUTION = "execution"
    SNAPSHOT_PUBLISH = "snapshot_publish"
    UNEXPECTED = "unexpected"


# Most specific first: ResolutionError is a TransportError
_KIND_BY_EXCEPTION = (
    (ResolutionError, ErrorKind.RESOLUTION),
    (TransportError, ErrorKind.TRANSPORT),
    (ExecutionError, ErrorKind.EXECUTION),
    (SnapshotPublishError, ErrorKind.SNAPSHOT_PUBLISH),
    (ValidationError, ErrorKind.VALIDATION),
)


def classify_exception(exc: BaseException, default: ErrorKind) -> ErrorKind:
    for exc_type, kind in _KIND_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return kind
    return default


@dataclass
class CallResult(Generic[T]):
    """Outcome of a collaborator call."""
    ok: bool
    value: Optional[T] = None
    kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "CallResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "CallResult[T]":
        return cls(ok=False, kind=kind, error=error)

    def __repr__(self) -> str:
        if self.ok:
            return f"<CallResult ok value={self.value!r}>"
        return f"<CallResult {self.kind.value}: {self.error}>"


async def capture(call: Awaitable[Any], default_kind: ErrorKind) -> CallResult:
    """
    Await *call* and convert its outcome into a CallResult.

    Exceptions from the dialgov taxonomy keep their own kind; anything else
    is reported under *default_kind* (the kind of collaborator being
    called). Cancellation is never swallowed.
    """
    try:
        value = await call
    except Exception as e:
        kind = classify_exception(e, default_kind)
        return CallResult.failure(kind, f"{type(e).__name__}: {e}")
    return CallResult.success(value)
