"""Tests for error classification and wrapping."""

from __future__ import annotations

from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError

from vmss_operator.errors import (
    CONFLICT_RETRY_SECONDS,
    DEFAULT_TRANSIENT_RETRY_SECONDS,
    OPERATION_NOT_DONE_RETRY_SECONDS,
    OperationNotDoneError,
    ResourceConflictError,
    SpecValidationError,
    TerminalError,
    TransientError,
    is_conflict,
    is_operation_not_done,
    is_resource_not_found,
    is_terminal,
    is_transient,
    requeue_after,
    wrap_error,
)


class TestClassification:
    """Tests for the error predicates."""

    def test_not_found_detected(self) -> None:
        """Test that ResourceNotFoundError counts as not found."""
        assert is_resource_not_found(ResourceNotFoundError("gone"))

    def test_not_found_detected_through_wrapping(self) -> None:
        """Test that a wrapped 404 is still recognized."""
        wrapped = wrap_error(ResourceNotFoundError("gone"), "failed to get VMSS pool0")

        assert is_resource_not_found(wrapped)
        assert isinstance(wrapped, TransientError)

    def test_other_errors_are_not_not_found(self) -> None:
        """Test that unrelated errors are not mistaken for 404s."""
        assert not is_resource_not_found(HttpResponseError("boom"))
        assert not is_resource_not_found(None)

    def test_conflict_detected(self) -> None:
        """Test conflict detection for SDK and own conflict errors."""
        assert is_conflict(ResourceExistsError("busy"))
        assert is_conflict(ResourceConflictError("busy"))
        assert not is_conflict(TransientError("flaky"))

    def test_terminal_and_transient(self) -> None:
        """Test that validation errors are terminal and others transient."""
        assert is_terminal(SpecValidationError("too small"))
        assert not is_transient(SpecValidationError("too small"))
        assert is_transient(OperationNotDoneError("running"))
        assert is_transient(ValueError("unclassified"))
        assert not is_transient(None)

    def test_operation_not_done(self) -> None:
        """Test the operation-not-done predicate."""
        assert is_operation_not_done(OperationNotDoneError("running"))
        assert not is_operation_not_done(TransientError("flaky"))


class TestRequeueAfter:
    """Tests for suggested retry delays."""

    def test_defaults_per_class(self) -> None:
        """Test each class carries its own default delay."""
        assert requeue_after(OperationNotDoneError("x")) == OPERATION_NOT_DONE_RETRY_SECONDS
        assert requeue_after(ResourceConflictError("x")) == CONFLICT_RETRY_SECONDS
        assert requeue_after(TransientError("x")) == DEFAULT_TRANSIENT_RETRY_SECONDS

    def test_terminal_has_no_delay(self) -> None:
        """Test that terminal errors are never requeued."""
        assert requeue_after(TerminalError("x", retry_after=10)) is None
        assert requeue_after(None) is None

    def test_unclassified_gets_default(self) -> None:
        """Test that plain exceptions fall back to the default delay."""
        assert requeue_after(RuntimeError("x")) == DEFAULT_TRANSIENT_RETRY_SECONDS

    def test_custom_delay_kept(self) -> None:
        """Test that an explicit delay is honored."""
        assert requeue_after(TransientError("x", retry_after=42)) == 42


class TestWrapError:
    """Tests for wrap_error."""

    def test_preserves_class_and_delay(self) -> None:
        """Test wrapping keeps the class, delay and cause."""
        original = OperationNotDoneError("still running", retry_after=7)
        wrapped = wrap_error(original, "operation Create on rg/pool0 is in progress")

        assert type(wrapped) is OperationNotDoneError
        assert wrapped.retry_after == 7
        assert wrapped.__cause__ is original
        assert str(wrapped) == "operation Create on rg/pool0 is in progress: still running"

    def test_preserves_terminal(self) -> None:
        """Test that wrapping a terminal error stays terminal."""
        wrapped = wrap_error(SpecValidationError("bad size"), "validation")

        assert is_terminal(wrapped)

    def test_sdk_conflict_becomes_conflict(self) -> None:
        """Test that an SDK 409 is classified as a conflict."""
        wrapped = wrap_error(ResourceExistsError("in use"), "failed to update")

        assert isinstance(wrapped, ResourceConflictError)
        assert wrapped.retry_after == CONFLICT_RETRY_SECONDS

    def test_unclassified_becomes_transient(self) -> None:
        """Test that unknown errors become transient."""
        wrapped = wrap_error(RuntimeError("socket closed"), "failed to get VMSS")

        assert type(wrapped) is TransientError
        assert "socket closed" in str(wrapped)
