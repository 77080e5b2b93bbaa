"""
Ledger store contract.

The allocator and the lifecycle state machine never talk to a database API
directly; they hand a closure to `LedgerStore.run_transaction` and work through
the `Transaction` it receives:

    async def _reserve(tx: Transaction) -> str:
        student = await tx.get(Student, student_id)
        ...
        await tx.increment(Student, student_id, "credits_used", 1)
        return interview.id

    interview_id = await store.run_transaction(_reserve)

Semantics every implementation must provide:
  * all writes buffered in `tx` commit together or not at all
  * reads inside `tx` see the transaction's own writes
  * if any record read by `tx` was committed by someone else before this
    transaction commits, the commit is rejected with TransactionConflict
  * nothing is written before commit, so abandoning `fn` has no side effects

Retry policy is deliberately NOT part of the store.
"""
from __future__ import annotations

import abc
from typing import Any, Awaitable, Callable, Optional, TypeVar

from app.schemas.ledger import LedgerRecord

R = TypeVar("R", bound=LedgerRecord)
T = TypeVar("T")


class Transaction(abc.ABC):

    @abc.abstractmethod
    async def get(self, model: type[R], key: str) -> Optional[R]:
        ...

    @abc.abstractmethod
    async def set(self, record: LedgerRecord) -> None:
        """Create or overwrite a record."""

    @abc.abstractmethod
    async def update(self, model: type[R], key: str, **changes: Any) -> None:
        ...

    @abc.abstractmethod
    async def increment(self, model: type[R], key: str, field: str, amount: int) -> None:
        ...


class LedgerStore(abc.ABC):

    @abc.abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """
        Run `fn` once inside a transaction and commit.
        Raises TransactionConflict or InternalStoreError; never retries.
        """

    @abc.abstractmethod
    async def get(self, model: type[R], key: str) -> Optional[R]:
        """Non-transactional point read (pre-checks, read endpoints)."""

    @abc.abstractmethod
    async def query(self, model: type[R], **equals: Any) -> list[R]:
        """Non-transactional equality scan."""

    @abc.abstractmethod
    async def put(self, record: LedgerRecord) -> None:
        """Non-transactional upsert, used for onboarding records owned elsewhere."""

    async def close(self) -> None:
        return None
