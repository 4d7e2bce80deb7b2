"""Directory mock for testing without Entra ID or ARM connectivity.

Key Features:
- In-memory applications, service principals and role assignments
- Propagation lag simulation (NoBackingApplicationObject, PrincipalNotFound)
- Duplicate objects and "already exists" conflicts
- Per-scope terminal error injection
- Deterministic name generation

Usage:
    from directory_mock import MockDirectory, SequenceNameGenerator

    directory = MockDirectory()
    minter = CredentialsMinter(
        DirectoryClient(graph=directory, authorization=directory),
        subscription_id=SUBSCRIPTION_ID,
        name_generator=SequenceNameGenerator(),
    )
"""

from __future__ import annotations

from .credential import MockTokenCredential, create_mock_credential
from .directory import (
    NO_BACKING_APPLICATION_MESSAGE,
    SUBSCRIPTION_ID,
    TENANT_ID,
    MockDirectory,
    make_http_error,
)


class SequenceNameGenerator:
    """Deterministic names: name-0001, name-0002, ..."""

    def __init__(self, prefix: str = "name") -> None:
        self._prefix = prefix
        self._count = 0

    def new_name(self) -> str:
        self._count += 1
        return f"{self._prefix}-{self._count:04d}"


__all__ = [
    "NO_BACKING_APPLICATION_MESSAGE",
    "SUBSCRIPTION_ID",
    "TENANT_ID",
    "MockDirectory",
    "MockTokenCredential",
    "SequenceNameGenerator",
    "create_mock_credential",
    "make_http_error",
]
