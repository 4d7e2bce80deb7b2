"""Find-by-unique-filter, create-if-absent, error-if-ambiguous."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from .errors import AmbiguousResourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def select_unique(items: Sequence[T], kind: str, key: str) -> T | None:
    """Return the single match, None when there is none.

    Raises:
        AmbiguousResourceError: If more than one resource matched.
    """
    if len(items) > 1:
        logger.error(
            f"Found {len(items)} {kind} objects for {key!r}",
            extra={"kind": kind, "key": key, "count": len(items)},
        )
        raise AmbiguousResourceError(kind, key, len(items))
    return items[0] if items else None


async def resolve_or_create(
    list_matches: Callable[[], Awaitable[Sequence[T]]],
    create: Callable[[], Awaitable[T]],
    kind: str,
    key: str,
) -> tuple[T, bool]:
    """Reuse the unique existing resource or create it.

    Ambiguity is detected before any mutation.

    Returns:
        Tuple of (resource, created).
    """
    existing = select_unique(await list_matches(), kind, key)
    if existing is not None:
        logger.info(f"Found {kind} {key!r}")
        return existing, False

    logger.info(f"Creating {kind} {key!r}")
    return await create(), True
