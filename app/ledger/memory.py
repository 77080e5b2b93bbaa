"""
In-memory optimistic ledger store.

Each record carries a version counter. A transaction remembers the version of
every record it read; at commit the versions are compared and any mismatch
aborts the whole transaction with TransactionConflict. Commit itself never
awaits, so validation + apply is atomic with respect to the event loop (a
threading lock covers callers driving the store from several loops).

Reads yield to the event loop so concurrent coroutines interleave the way
they would against a networked store.
"""
from __future__ import annotations

import asyncio
import copy
import threading
from typing import Any, Awaitable, Callable, Optional

from app.core.errors import TransactionConflict
from app.ledger.store import LedgerStore, R, T, Transaction
from app.schemas.ledger import LedgerRecord

_Key = tuple[str, str]


class _MemoryTransaction(Transaction):

    def __init__(self, store: "MemoryLedgerStore"):
        self._store = store
        self._read_versions: dict[_Key, int] = {}
        self._state: dict[_Key, Optional[dict[str, Any]]] = {}
        self._dirty: set[_Key] = set()

    async def get(self, model: type[R], key: str) -> Optional[R]:
        k = (model.__name__, key)
        if k not in self._state:
            await asyncio.sleep(0)
            version, data = self._store._snapshot(k)
            self._read_versions[k] = version
            self._state[k] = data
        data = self._state[k]
        return model.model_validate(data) if data is not None else None

    async def set(self, record: LedgerRecord) -> None:
        k = (type(record).__name__, record.id)
        self._state[k] = record.model_dump()
        self._dirty.add(k)

    async def update(self, model: type[R], key: str, **changes: Any) -> None:
        data = await self._require(model, key)
        data.update(changes)
        self._dirty.add((model.__name__, key))

    async def increment(self, model: type[R], key: str, field: str, amount: int) -> None:
        data = await self._require(model, key)
        data[field] = (data.get(field) or 0) + amount
        self._dirty.add((model.__name__, key))

    async def _require(self, model: type[R], key: str) -> dict[str, Any]:
        if await self.get(model, key) is None:
            raise KeyError(f"{model.__name__} {key} does not exist")
        return self._state[(model.__name__, key)]

    def _commit(self) -> None:
        with self._store._lock:
            for k, version in self._read_versions.items():
                if self._store._versions.get(k, 0) != version:
                    raise TransactionConflict(f"{k[0]} {k[1]} changed since read")
            for k in self._dirty:
                self._store._records[k] = copy.deepcopy(self._state[k])
                self._store._versions[k] = self._store._versions.get(k, 0) + 1


class MemoryLedgerStore(LedgerStore):

    def __init__(self) -> None:
        self._records: dict[_Key, dict[str, Any]] = {}
        self._versions: dict[_Key, int] = {}
        self._lock = threading.Lock()

    def _snapshot(self, k: _Key) -> tuple[int, Optional[dict[str, Any]]]:
        with self._lock:
            data = self._records.get(k)
            return self._versions.get(k, 0), copy.deepcopy(data)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        tx = _MemoryTransaction(self)
        result = await fn(tx)
        tx._commit()
        return result

    async def get(self, model: type[R], key: str) -> Optional[R]:
        await asyncio.sleep(0)
        _, data = self._snapshot((model.__name__, key))
        return model.model_validate(data) if data is not None else None

    async def query(self, model: type[R], **equals: Any) -> list[R]:
        await asyncio.sleep(0)
        with self._lock:
            rows = [
                copy.deepcopy(data)
                for (kind, _), data in self._records.items()
                if kind == model.__name__
            ]
        records = [model.model_validate(r) for r in rows]
        return [
            r for r in records
            if all(getattr(r, field) == value for field, value in equals.items())
        ]

    async def put(self, record: LedgerRecord) -> None:
        k = (type(record).__name__, record.id)
        with self._lock:
            self._records[k] = record.model_dump()
            self._versions[k] = self._versions.get(k, 0) + 1

    def count(self, model: type[LedgerRecord]) -> int:
        with self._lock:
            return sum(1 for kind, _ in self._records if kind == model.__name__)
