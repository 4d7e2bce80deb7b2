"""Error taxonomy for credential minting.

Transient "not found yet" and "already exists" conditions are not
represented here: they only exist as convergence verdicts and never
escape to callers.
"""

from __future__ import annotations


class MinterError(Exception):
    """Base class for all minting failures."""

    pass


class CredentialsError(MinterError):
    """Raised when a bearer token cannot be obtained. Never retried."""

    pass


class AmbiguousResourceError(MinterError):
    """Raised when a uniqueness-scoped lookup matches more than one resource.

    Requires manual cleanup. Duplicates are never merged or deleted.
    """

    def __init__(self, kind: str, key: str, count: int) -> None:
        self.kind = kind
        self.key = key
        self.count = count
        super().__init__(f"found {count} {kind} objects matching {key!r}, unable to proceed")


class RoleNotFoundError(MinterError):
    """Raised when no role definition matches the requested role name."""

    def __init__(self, role_name: str) -> None:
        self.role_name = role_name
        super().__init__(f"no role definition named {role_name!r}")


class ConvergenceTimeoutError(MinterError):
    """Raised when a convergent operation keeps failing transiently.

    The last transient error is chained as ``__cause__``.
    """

    def __init__(self, description: str, timeout_seconds: float) -> None:
        self.description = description
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{description} did not converge within {timeout_seconds}s")


class RemoteOperationError(MinterError):
    """Terminal remote failure with resource context attached.

    The original SDK exception is chained as ``__cause__``.
    """

    pass


class RoleAssignmentError(MinterError):
    """Raised when binding a role failed at one or more scopes.

    Scopes that were bound successfully stay bound.
    """

    def __init__(
        self,
        role_name: str,
        principal: str,
        failures: dict[str, Exception],
    ) -> None:
        self.role_name = role_name
        self.principal = principal
        self.failures = failures
        details = "; ".join(f"{scope}: {error}" for scope, error in failures.items())
        super().__init__(
            f"unable to assign role {role_name!r} to principal {principal} "
            f"at {len(failures)} scope(s): {details}"
        )

    @property
    def failed_scopes(self) -> list[str]:
        return list(self.failures)
