"""Scoped key-value persistence port.

The job store and pending-job ledger only need get/put/delete/list over JSON
objects inside a named scope. ``SqlKeyValueStore`` keeps them in the
``kv_entries`` table so tracking survives restarts; ``MemoryKeyValueStore`` is
a drop-in for tests and throwaway sessions.
"""

from __future__ import annotations

import copy
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from newsai.services import repository


class KeyValueStore(Protocol):
    def get(self, scope: str, key: str) -> Optional[dict[str, Any]]: ...

    def put(self, scope: str, key: str, value: dict[str, Any]) -> None: ...

    def delete(self, scope: str, key: str) -> bool: ...

    def items(self, scope: str) -> list[tuple[str, dict[str, Any]]]: ...

    def scopes(self, prefix: str) -> list[str]: ...


class MemoryKeyValueStore:
    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    def get(self, scope: str, key: str) -> Optional[dict[str, Any]]:
        value = self._data.get(scope, {}).get(key)
        return copy.deepcopy(value) if value is not None else None

    def put(self, scope: str, key: str, value: dict[str, Any]) -> None:
        self._data.setdefault(scope, {})[key] = copy.deepcopy(value)

    def delete(self, scope: str, key: str) -> bool:
        bucket = self._data.get(scope)
        if not bucket or key not in bucket:
            return False
        del bucket[key]
        if not bucket:
            del self._data[scope]
        return True

    def items(self, scope: str) -> list[tuple[str, dict[str, Any]]]:
        bucket = self._data.get(scope, {})
        return [(key, copy.deepcopy(bucket[key])) for key in sorted(bucket)]

    def scopes(self, prefix: str) -> list[str]:
        return sorted(scope for scope in self._data if scope.startswith(prefix))


class SqlKeyValueStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get(self, scope: str, key: str) -> Optional[dict[str, Any]]:
        with self._session_factory() as db:
            return repository.get_entry(db, scope, key)

    def put(self, scope: str, key: str, value: dict[str, Any]) -> None:
        with self._session_factory() as db:
            repository.put_entry(db, scope, key, value)
            db.commit()

    def delete(self, scope: str, key: str) -> bool:
        with self._session_factory() as db:
            deleted = repository.delete_entry(db, scope, key)
            db.commit()
            return deleted

    def items(self, scope: str) -> list[tuple[str, dict[str, Any]]]:
        with self._session_factory() as db:
            return repository.list_entries(db, scope)

    def scopes(self, prefix: str) -> list[str]:
        with self._session_factory() as db:
            return repository.list_scopes(db, prefix)
