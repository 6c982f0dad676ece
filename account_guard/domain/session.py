"""Per-invocation view over one account's namespaced state."""

from __future__ import annotations

import json
from typing import Any, TypeVar, cast

from pydantic import BaseModel

from ..repository import AccountStore

RecordT = TypeVar("RecordT", bound=BaseModel)

CREDENTIALS = "credentials"
TIMELOCK = "timelock"
RECOVERY = "recovery"
REGISTRY = "registry"


def module_namespace(module_ref: str) -> str:
    return f"module:{module_ref}"


def _dump(record: BaseModel | dict[str, Any]) -> dict[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json")
    return record


def _fingerprint(data: dict[str, Any] | None) -> str | None:
    if data is None:
        return None
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


class AccountSession:
    """Loads state slices lazily and writes back only what changed.

    A session lives for exactly one public operation. Records handed out are
    fresh copies decoded from the store, so abandoning a session after an
    error leaves the persisted state untouched.
    """

    def __init__(self, store: AccountStore, account_id: str) -> None:
        self._store = store
        self.account_id = account_id
        self._records: dict[str, BaseModel | dict[str, Any]] = {}
        self._snapshots: dict[str, str | None] = {}

    def get(self, namespace: str, model: type[RecordT]) -> RecordT | None:
        if namespace not in self._records:
            data = self._store.load(self.account_id, namespace)
            self._snapshots[namespace] = _fingerprint(data)
            if data is None:
                return None
            self._records[namespace] = model.model_validate(data)
        return cast(RecordT, self._records[namespace])

    def put(self, namespace: str, record: BaseModel | dict[str, Any]) -> None:
        if namespace not in self._snapshots:
            self._snapshots[namespace] = _fingerprint(self._store.load(self.account_id, namespace))
        self._records[namespace] = record

    def module_data(self, namespace: str) -> dict[str, Any]:
        if namespace not in self._records:
            data = self._store.load(self.account_id, namespace)
            self._snapshots[namespace] = _fingerprint(data)
            self._records[namespace] = dict(data or {})
        return cast("dict[str, Any]", self._records[namespace])

    def exists(self) -> bool:
        return bool(self._store.namespaces(self.account_id)) or bool(self._records)

    def commit(self) -> list[str]:
        """Persist changed slices and return their namespaces."""
        written: list[str] = []
        for namespace, record in self._records.items():
            data = _dump(record)
            previous = self._snapshots.get(namespace)
            if _fingerprint(data) == previous or (previous is None and not data):
                continue
            self._store.save(self.account_id, namespace, data)
            written.append(namespace)
        return written


class ModuleStateView:
    """The only slice of account state a module may read or write."""

    def __init__(self, session: AccountSession, module_ref: str) -> None:
        self._data = session.module_data(module_namespace(module_ref))
        self.account_id = session.account_id
        self.module_ref = module_ref

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def clear(self) -> None:
        self._data.clear()

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)
