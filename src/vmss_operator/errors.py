"""Error taxonomy for scale set reconciliation.

Every error raised out of a reconciliation pass is classified so the control
loop can decide between "retry later" and "stop retrying":

- NotFound: the resource is absent. Drives the create path, never surfaced.
- OperationNotDone: a checkpointed cloud operation is still running. Transient,
  retried after a short fixed delay.
- Conflict: concurrent modification of the scale set. Transient, longer delay.
- Validation failure: the spec cannot work with the selected VM size. Terminal,
  requires a spec edit.
- Operation failed: a checkpointed operation ended badly (e.g. a delete that
  Azure rejected). Transient; the checkpoint is dropped and the call reissued.
- Transport failure: any other Azure error. Transient unless reclassified.

Wrapping (adding resource context to a message) preserves the classification
and the suggested retry delay of the wrapped error.
"""

from __future__ import annotations

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)

# Suggested requeue delays (seconds)
OPERATION_NOT_DONE_RETRY_SECONDS = 15
CONFLICT_RETRY_SECONDS = 30
DEFAULT_TRANSIENT_RETRY_SECONDS = 15


class ReconcileError(Exception):
    """Base class for classified reconciliation errors.

    Attributes:
        retry_after: Suggested delay before the next pass, or None for
            terminal errors.
    """

    terminal: bool = False

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientError(ReconcileError):
    """Retryable failure with a suggested delay."""

    def __init__(
        self, message: str, *, retry_after: float | None = DEFAULT_TRANSIENT_RETRY_SECONDS
    ) -> None:
        super().__init__(message, retry_after=retry_after)


class OperationNotDoneError(TransientError):
    """A long running operation is still in flight."""

    def __init__(
        self, message: str, *, retry_after: float | None = OPERATION_NOT_DONE_RETRY_SECONDS
    ) -> None:
        super().__init__(message, retry_after=retry_after)


class OperationFailedError(TransientError):
    """A long running operation finished without reaching its goal."""

    pass


class ResourceConflictError(TransientError):
    """The scale set is being modified by somebody else."""

    def __init__(
        self, message: str, *, retry_after: float | None = CONFLICT_RETRY_SECONDS
    ) -> None:
        super().__init__(message, retry_after=retry_after)


class TerminalError(ReconcileError):
    """Non-retryable failure. The spec has to change before retrying."""

    terminal = True

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message, retry_after=None)


class SpecValidationError(TerminalError):
    """The fleet spec is incompatible with the platform capabilities."""

    pass


def is_resource_not_found(err: BaseException | None) -> bool:
    """Check whether an error (or anything it wraps) is an HTTP 404."""
    while err is not None:
        if isinstance(err, ResourceNotFoundError):
            return True
        if isinstance(err, HttpResponseError) and err.status_code == 404:
            return True
        err = err.__cause__
    return False


def is_conflict(err: BaseException | None) -> bool:
    """Check whether an error (or anything it wraps) is an HTTP 409."""
    while err is not None:
        if isinstance(err, ResourceExistsError | ResourceConflictError):
            return True
        if isinstance(err, HttpResponseError) and err.status_code == 409:
            return True
        err = err.__cause__
    return False


def is_operation_not_done(err: BaseException | None) -> bool:
    return isinstance(err, OperationNotDoneError)


def is_terminal(err: BaseException | None) -> bool:
    return isinstance(err, ReconcileError) and err.terminal


def is_transient(err: BaseException | None) -> bool:
    """Unclassified errors count as transient."""
    return err is not None and not is_terminal(err)


def requeue_after(err: BaseException | None) -> float | None:
    """Get the suggested retry delay for an error.

    Returns:
        Delay in seconds, or None when the error is terminal (or absent).
    """
    if err is None or is_terminal(err):
        return None
    if isinstance(err, ReconcileError) and err.retry_after is not None:
        return err.retry_after
    return DEFAULT_TRANSIENT_RETRY_SECONDS


def wrap_error(err: BaseException, message: str) -> ReconcileError:
    """Add context to an error without losing its classification.

    Args:
        err: The error being wrapped.
        message: Context prefix, e.g. "failed to get VMSS my-vmss".

    Returns:
        A ReconcileError of the same class (TransientError for unclassified
        errors) chained to the original.
    """
    text = f"{message}: {err}"
    wrapped: ReconcileError
    if isinstance(err, ReconcileError):
        wrapped = type(err)(text, retry_after=err.retry_after)
    elif is_conflict(err):
        wrapped = ResourceConflictError(text)
    else:
        wrapped = TransientError(text)
    wrapped.__cause__ = err
    return wrapped
