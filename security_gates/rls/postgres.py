"""
Security Gates - PostgreSQL Connection

asyncpg-backed DatabaseConnection. Queries run "as a user" execute in
their own transaction with the request JWT subject set and the role
switched, so row-level security policies apply.
"""

import logging
from typing import Any, List, Optional, Sequence

import asyncpg

from .database import DatabaseConnection, Row

logger = logging.getLogger(__name__)

SET_SUBJECT = "SELECT set_config('request.jwt.claim.sub', $1, true)"


class PostgresConnection(DatabaseConnection):
    """
    Single asyncpg connection.

    Args:
        connection: An open asyncpg connection
        user_role: Role assumed by end users when running as a user id
        service_accounts: User ids that are database roles themselves
    """

    def __init__(
        self,
        connection: asyncpg.Connection,
        user_role: str = "authenticated",
        service_accounts: Sequence[str] = (),
    ):
        self._conn = connection
        self.user_role = user_role
        self.service_accounts = set(service_accounts)
        self._transaction: Optional[Any] = None

    @classmethod
    async def connect(cls, dsn: str, **kwargs: Any) -> "PostgresConnection":
        logger.info("Connecting to PostgreSQL for RLS validation")
        connection = await asyncpg.connect(dsn)
        return cls(connection, **kwargs)

    async def close(self) -> None:
        await self._conn.close()

    async def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Row]:
        records = await self._conn.fetch(sql, *(params or ()))
        return [dict(record) for record in records]

    async def query_as_user(
        self,
        sql: str,
        user_id: str,
        params: Optional[Sequence[Any]] = None,
    ) -> List[Row]:
        role = user_id if user_id in self.service_accounts else self.user_role
        async with self._conn.transaction():
            await self._conn.execute(SET_SUBJECT, user_id)
            await self._conn.execute(f"SET LOCAL ROLE {_quote_ident(role)}")
            records = await self._conn.fetch(sql, *(params or ()))
        return [dict(record) for record in records]

    async def begin_transaction(self) -> None:
        self._transaction = self._conn.transaction()
        await self._transaction.start()

    async def commit_transaction(self) -> None:
        if self._transaction is None:
            return
        await self._transaction.commit()
        self._transaction = None

    async def rollback_transaction(self) -> None:
        if self._transaction is None:
            return
        await self._transaction.rollback()
        self._transaction = None


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'
