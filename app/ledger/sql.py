"""
SQLAlchemy async ledger store (PostgreSQL in production).

Optimistic concurrency comes from the `version` column on every table:
a transaction that updates a row another transaction committed in the
meantime fails its flush with StaleDataError, which is reported as
TransactionConflict. Any other database failure is wrapped in
InternalStoreError and never retried here.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import InternalStoreError, TransactionConflict
from app.ledger.store import LedgerStore, R, T, Transaction
from app.models.database import create_engine, create_session_factory
from app.models.ledger_tables import (
    Base,
    CreditHistoryRow,
    InterviewRow,
    OrganizationRow,
    StudentRow,
)
from app.schemas.ledger import CreditHistoryEntry, Interview, LedgerRecord, Organization, Student

logger = structlog.get_logger()

ROW_TYPES: dict[type[LedgerRecord], type[Base]] = {
    Organization: OrganizationRow,
    Student: StudentRow,
    Interview: InterviewRow,
    CreditHistoryEntry: CreditHistoryRow,
}


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _columns(record: LedgerRecord) -> dict[str, Any]:
    return {k: _plain(v) for k, v in record.model_dump().items()}


def _to_record(model: type[R], row: Base) -> R:
    data = {c.key: getattr(row, c.key) for c in row.__table__.columns if c.key != "version"}
    return model.model_validate(data)


class _SqlTransaction(Transaction):
    """
    Rows loaded here stay referenced until the transaction ends: the session's
    identity map holds clean rows only weakly, and a re-read row would carry
    another transaction's commit past the version check.
    """

    def __init__(self, session: AsyncSession):
        self._session = session
        self._rows: dict[tuple[type[Base], str], Optional[Base]] = {}

    async def _load(self, row_type: type[Base], key: str) -> Optional[Base]:
        if (row_type, key) not in self._rows:
            self._rows[(row_type, key)] = await self._session.get(row_type, key)
        return self._rows[(row_type, key)]

    async def get(self, model: type[R], key: str) -> Optional[R]:
        row = await self._load(ROW_TYPES[model], key)
        return _to_record(model, row) if row is not None else None

    async def set(self, record: LedgerRecord) -> None:
        row_type = ROW_TYPES[type(record)]
        row = await self._load(row_type, record.id)
        if row is None:
            row = row_type(**_columns(record))
            self._session.add(row)
            self._rows[(row_type, record.id)] = row
            return
        for k, v in _columns(record).items():
            setattr(row, k, v)

    async def update(self, model: type[R], key: str, **changes: Any) -> None:
        row = await self._require(model, key)
        for k, v in changes.items():
            setattr(row, k, _plain(v))

    async def increment(self, model: type[R], key: str, field: str, amount: int) -> None:
        row = await self._require(model, key)
        setattr(row, field, (getattr(row, field) or 0) + amount)

    async def _require(self, model: type[R], key: str) -> Base:
        row = await self._load(ROW_TYPES[model], key)
        if row is None:
            raise KeyError(f"{model.__name__} {key} does not exist")
        return row


class SqlLedgerStore(LedgerStore):

    def __init__(self, engine: AsyncEngine, sessions: Optional[async_sessionmaker] = None):
        self._engine = engine
        self._sessions = sessions or create_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: Optional[str] = None) -> "SqlLedgerStore":
        return cls(create_engine(database_url))

    async def create_schema(self) -> None:
        """Create tables directly (tests / local dev). Production uses alembic."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        try:
            async with self._sessions() as session:
                async with session.begin():
                    result = await fn(_SqlTransaction(session))
                return result
        except StaleDataError as e:
            raise TransactionConflict(str(e)) from e
        except SQLAlchemyError as e:
            logger.error("internal_store_error", operation="run_transaction", error=str(e))
            raise InternalStoreError("ledger transaction failed", cause=e) from e

    async def get(self, model: type[R], key: str) -> Optional[R]:
        try:
            async with self._sessions() as session:
                row = await session.get(ROW_TYPES[model], key)
                return _to_record(model, row) if row is not None else None
        except SQLAlchemyError as e:
            logger.error("internal_store_error", operation="get", model=model.__name__, key=key, error=str(e))
            raise InternalStoreError("ledger read failed", cause=e) from e

    async def query(self, model: type[R], **equals: Any) -> list[R]:
        row_type = ROW_TYPES[model]
        stmt = select(row_type).filter_by(**{k: _plain(v) for k, v in equals.items()})
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                return [_to_record(model, row) for row in result.scalars()]
        except SQLAlchemyError as e:
            logger.error("internal_store_error", operation="query", model=model.__name__, error=str(e))
            raise InternalStoreError("ledger query failed", cause=e) from e

    async def put(self, record: LedgerRecord) -> None:
        await self.run_transaction(lambda tx: tx.set(record))

    async def close(self) -> None:
        await self._engine.dispose()
