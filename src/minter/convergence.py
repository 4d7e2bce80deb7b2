"""Bounded polling for operations that depend on just-created objects.

Entra ID and ARM replicate new objects asynchronously. A service principal
created right after its application, or a role assignment created right
after its principal, can be rejected with a "not found" error for a while.

The loop here is the only place that lag is tolerated. What counts as
transient is decided per operation by a classifier returning a Verdict.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from azure.core.exceptions import HttpResponseError

from .errors import ConvergenceTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Error codes returned by Graph and ARM while objects propagate
NO_BACKING_APPLICATION_CODE = "NoBackingApplicationObject"
NO_BACKING_APPLICATION_MESSAGE = "does not reference a valid application object"
PRINCIPAL_NOT_FOUND_CODE = "PrincipalNotFound"
ROLE_ASSIGNMENT_EXISTS_CODE = "RoleAssignmentExists"


class Verdict(str, Enum):
    """Classification of an error raised by a convergent operation."""

    TRANSIENT = "transient"
    SATISFIED = "satisfied"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class ConvergencePolicy:
    """Polling parameters. The first attempt is never delayed."""

    interval_seconds: float = 5.0
    timeout_seconds: float = 60.0


def error_code(exc: BaseException) -> str | None:
    """Return the service error code carried by an Azure SDK error, if any."""
    if isinstance(exc, HttpResponseError) and exc.error is not None:
        return exc.error.code
    return None


def classify_service_principal_create(exc: Exception) -> Verdict:
    """Service principal creation fails until the application has propagated.

    The Graph SDK does not always surface the code, so the message is
    checked as well.
    """
    if error_code(exc) == NO_BACKING_APPLICATION_CODE:
        return Verdict.TRANSIENT
    message = str(exc)
    if NO_BACKING_APPLICATION_CODE in message or NO_BACKING_APPLICATION_MESSAGE in message:
        return Verdict.TRANSIENT
    return Verdict.TERMINAL


def classify_role_assignment_create(exc: Exception) -> Verdict:
    """ARM rejects assignments until the principal has propagated."""
    code = error_code(exc)
    if code == PRINCIPAL_NOT_FOUND_CODE:
        return Verdict.TRANSIENT
    if code == ROLE_ASSIGNMENT_EXISTS_CODE:
        return Verdict.SATISFIED
    return Verdict.TERMINAL


async def converge(
    operation: Callable[[], Awaitable[T]],
    classify: Callable[[Exception], Verdict],
    policy: ConvergencePolicy,
    description: str,
) -> T | None:
    """Run ``operation`` until it succeeds, fails terminally, or times out.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        classify: Maps a raised exception to a Verdict.
        policy: Poll interval and overall deadline.
        description: Human-readable operation name for logs and errors.

    Returns:
        The operation result, or None when an error was classified as
        SATISFIED (the desired state already exists).

    Raises:
        ConvergenceTimeoutError: If transient failures outlast the deadline.
        Exception: Any error classified as TERMINAL, re-raised untouched.
    """
    deadline = time.monotonic() + policy.timeout_seconds
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            verdict = classify(e)
            if verdict is Verdict.SATISFIED:
                logger.info(
                    f"{description}: already satisfied",
                    extra={"attempt": attempt},
                )
                return None
            if verdict is Verdict.TERMINAL:
                raise

            if time.monotonic() + policy.interval_seconds >= deadline:
                logger.error(
                    f"{description}: timed out waiting for convergence",
                    extra={"attempt": attempt, "timeout_seconds": policy.timeout_seconds},
                )
                raise ConvergenceTimeoutError(description, policy.timeout_seconds) from e

            logger.debug(
                f"{description}: not converged yet, retrying",
                extra={"attempt": attempt, "error": str(e)},
            )

        await asyncio.sleep(policy.interval_seconds)
