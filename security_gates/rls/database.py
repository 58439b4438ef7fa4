"""
Security Gates - Database Collaborator

Abstract connection the RLS gate drives. Implementations wrap a real
driver; tests provide in-memory fakes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

Row = Dict[str, Any]

ACCESS_DENIED_PATTERNS = (
    "permission denied",
    "access denied",
    "insufficient privilege",
    "row level security",
    "rls policy",
    "policy violation",
)

PRIVILEGE_ERROR_PATTERNS = (
    "permission denied",
    "insufficient privilege",
    "must be owner",
    "must be superuser",
    "access denied",
    "not authorized",
    "cannot execute",
    "role does not exist",
    "authentication failed",
)


def is_access_denied(message: str) -> bool:
    """True when a driver error message reads as an access-control refusal."""
    lowered = message.lower()
    return any(pattern in lowered for pattern in ACCESS_DENIED_PATTERNS)


def is_privilege_error(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in PRIVILEGE_ERROR_PATTERNS)


class DatabaseConnection(ABC):
    """
    Database access used by the RLS testers.

    ``query_as_user`` must run the statement with the session bound to
    ``user_id`` so row-level security applies. Refusals surface as
    exceptions whose message names the refusal.
    """

    @abstractmethod
    async def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Row]:
        """Run a statement with the connection's own privileges."""

    @abstractmethod
    async def query_as_user(
        self,
        sql: str,
        user_id: str,
        params: Optional[Sequence[Any]] = None,
    ) -> List[Row]:
        """Run a statement as ``user_id``."""

    @abstractmethod
    async def begin_transaction(self) -> None:
        ...

    @abstractmethod
    async def commit_transaction(self) -> None:
        ...

    @abstractmethod
    async def rollback_transaction(self) -> None:
        ...
