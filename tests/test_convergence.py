"""Tests for the convergence loop and error classifiers."""

from __future__ import annotations

import asyncio
import time

import pytest
from azure.core.exceptions import HttpResponseError
from directory_mock import NO_BACKING_APPLICATION_MESSAGE, make_http_error

from minter.convergence import (
    ConvergencePolicy,
    Verdict,
    classify_role_assignment_create,
    classify_service_principal_create,
    converge,
    error_code,
)
from minter.errors import ConvergenceTimeoutError


class FlakyOperation:
    """Raises the given errors in order, then returns a value."""

    def __init__(self, errors: list[Exception], result: str = "done") -> None:
        self._errors = list(errors)
        self._result = result
        self.attempts = 0

    async def __call__(self) -> str:
        self.attempts += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._result


def always_transient(exc: Exception) -> Verdict:
    return Verdict.TRANSIENT


class TestClassifiers:
    """Tests for per-operation error classification."""

    def test_service_principal_no_backing_code(self) -> None:
        """Test the NoBackingApplicationObject code is transient."""
        exc = make_http_error("NoBackingApplicationObject", "not found")
        assert classify_service_principal_create(exc) is Verdict.TRANSIENT

    def test_service_principal_no_backing_message(self) -> None:
        """Test the Graph 'valid application object' message is transient."""
        exc = make_http_error("Request_BadRequest", NO_BACKING_APPLICATION_MESSAGE)
        assert classify_service_principal_create(exc) is Verdict.TRANSIENT

    def test_service_principal_message_without_code(self) -> None:
        """Test errors without a parsed body are matched by message."""
        exc = HttpResponseError(message="NoBackingApplicationObject: app missing")
        assert error_code(exc) is None
        assert classify_service_principal_create(exc) is Verdict.TRANSIENT

    def test_service_principal_other_error_terminal(self) -> None:
        """Test unrelated errors are terminal."""
        exc = make_http_error("Authorization_RequestDenied", "Insufficient privileges", 403)
        assert classify_service_principal_create(exc) is Verdict.TERMINAL

    def test_role_assignment_principal_not_found(self) -> None:
        """Test PrincipalNotFound is transient."""
        exc = make_http_error("PrincipalNotFound", "Principal does not exist")
        assert classify_role_assignment_create(exc) is Verdict.TRANSIENT

    def test_role_assignment_exists(self) -> None:
        """Test RoleAssignmentExists counts as already satisfied."""
        exc = make_http_error("RoleAssignmentExists", "exists", 409)
        assert classify_role_assignment_create(exc) is Verdict.SATISFIED

    def test_role_assignment_other_error_terminal(self) -> None:
        """Test any other code is terminal."""
        exc = make_http_error("AuthorizationFailed", "denied", 403)
        assert classify_role_assignment_create(exc) is Verdict.TERMINAL

    def test_role_assignment_non_azure_error_terminal(self) -> None:
        """Test errors without a code are terminal."""
        assert classify_role_assignment_create(ValueError("boom")) is Verdict.TERMINAL

    def test_message_match_does_not_apply_to_role_assignments(self) -> None:
        """Test role assignment classification relies on the code only."""
        exc = HttpResponseError(message="PrincipalNotFound")
        assert classify_role_assignment_create(exc) is Verdict.TERMINAL


class TestConverge:
    """Tests for the generic convergence loop."""

    @pytest.mark.asyncio
    async def test_first_attempt_immediate(self) -> None:
        """Test a succeeding operation runs once with no delay."""
        operation = FlakyOperation([])
        policy = ConvergencePolicy(interval_seconds=30, timeout_seconds=60)

        start = time.monotonic()
        result = await converge(operation, always_transient, policy, "op")

        assert result == "done"
        assert operation.attempts == 1
        assert time.monotonic() - start < 1

    @pytest.mark.asyncio
    async def test_retries_transient_until_success(self) -> None:
        """Test transient failures are retried on the interval."""
        operation = FlakyOperation([RuntimeError("lag")] * 3)
        policy = ConvergencePolicy(interval_seconds=0, timeout_seconds=5)

        result = await converge(operation, always_transient, policy, "op")

        assert result == "done"
        assert operation.attempts == 4

    @pytest.mark.asyncio
    async def test_satisfied_returns_none(self) -> None:
        """Test a SATISFIED verdict short-circuits to success."""
        operation = FlakyOperation([make_http_error("RoleAssignmentExists", "exists", 409)])
        policy = ConvergencePolicy(interval_seconds=0, timeout_seconds=5)

        result = await converge(operation, classify_role_assignment_create, policy, "op")

        assert result is None
        assert operation.attempts == 1

    @pytest.mark.asyncio
    async def test_terminal_reraised_untouched(self) -> None:
        """Test a TERMINAL error is re-raised as the same object."""
        error = make_http_error("AuthorizationFailed", "denied", 403)
        operation = FlakyOperation([error])
        policy = ConvergencePolicy(interval_seconds=0, timeout_seconds=5)

        with pytest.raises(HttpResponseError) as exc_info:
            await converge(operation, classify_role_assignment_create, policy, "op")

        assert exc_info.value is error
        assert operation.attempts == 1

    @pytest.mark.asyncio
    async def test_timeout_wraps_last_transient(self) -> None:
        """Test the deadline raises ConvergenceTimeoutError chained to the last error."""
        errors: list[Exception] = [RuntimeError(f"lag {i}") for i in range(1000)]
        operation = FlakyOperation(errors)
        policy = ConvergencePolicy(interval_seconds=0.01, timeout_seconds=0.05)

        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            await converge(operation, always_transient, policy, "slow op")

        assert "slow op" in str(exc_info.value)
        assert exc_info.value.timeout_seconds == 0.05
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert str(exc_info.value.__cause__) == f"lag {operation.attempts - 1}"
        assert 1 < operation.attempts < 1000

    @pytest.mark.asyncio
    async def test_zero_timeout_single_attempt(self) -> None:
        """Test a zero deadline allows exactly one attempt."""
        operation = FlakyOperation([RuntimeError("lag")] * 5)
        policy = ConvergencePolicy(interval_seconds=0, timeout_seconds=0)

        with pytest.raises(ConvergenceTimeoutError):
            await converge(operation, always_transient, policy, "op")

        assert operation.attempts == 1

    @pytest.mark.asyncio
    async def test_cancellation_aborts_polling(self) -> None:
        """Test cancelling the task stops the loop during its sleep."""
        operation = FlakyOperation([RuntimeError("lag")] * 1000)
        policy = ConvergencePolicy(interval_seconds=30, timeout_seconds=60)

        task = asyncio.ensure_future(converge(operation, always_transient, policy, "op"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert operation.attempts == 1

    def test_default_policy(self) -> None:
        """Test production defaults poll every 5s for 60s."""
        policy = ConvergencePolicy()
        assert policy.interval_seconds == 5.0
        assert policy.timeout_seconds == 60.0
