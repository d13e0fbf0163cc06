# src/app/infra/db/base.py
"""
Abstract base class for the transactional document store.
This interface allows easy swapping between different storage backends.
"""
from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from src.app.domain.models import LECTURES_COLLECTION, USERS_COLLECTION

T = TypeVar("T")


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


@dataclass(frozen=True)
class DocumentRef:
    collection: str
    doc_id: str

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.doc_id}"


def user_ref(user_id: str) -> DocumentRef:
    return DocumentRef(USERS_COLLECTION, user_id)


def lecture_ref(user_id: str, job_id: str) -> DocumentRef:
    return DocumentRef(LECTURES_COLLECTION, f"{user_id}/{job_id}")


def apply_updates(document: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """
    Merge `updates` into a copy of `document`.

    Keys may be dotted paths (``summaryTranslations.ar``) addressing nested
    maps; intermediate maps are created as needed. ``DELETE_FIELD`` removes
    the addressed key.
    """
    result = copy.deepcopy(document)
    for key, value in updates.items():
        parts = key.split(".")
        target = result
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                if value is DELETE_FIELD:
                    target = None
                    break
                child = {}
                target[part] = child
            target = child
        if target is None:
            continue
        if value is DELETE_FIELD:
            target.pop(parts[-1], None)
        else:
            target[parts[-1]] = copy.deepcopy(value)
    return result


class Transaction:
    """
    A read-modify-write unit over a single document.

    ``snapshot`` is the document as read at the start of the attempt (``None``
    when it does not exist). Writes are buffered in ``updates`` and only
    committed by the store when the callback returns without raising.
    """

    def __init__(self, ref: DocumentRef, snapshot: Optional[dict[str, Any]]):
        self.ref = ref
        self.snapshot = copy.deepcopy(snapshot) if snapshot is not None else None
        self.updates: dict[str, Any] = {}

    @property
    def exists(self) -> bool:
        return self.snapshot is not None

    @property
    def data(self) -> dict[str, Any]:
        """The snapshot with this transaction's pending writes applied."""
        return apply_updates(self.snapshot or {}, self.updates)

    def get(self, key: str, default: Any = None) -> Any:
        current: Any = self.data
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        return current

    def update(self, updates: dict[str, Any]) -> None:
        self.updates.update(updates)

    @property
    def has_writes(self) -> bool:
        return bool(self.updates)


class DocumentStore(ABC):
    """
    Abstract interface for the coordination store.

    Implementations:
    - SupabaseDocumentStore: Postgres table with a version column (CAS commits)
    - InMemoryDocumentStore: process-local, for tests and local runs
    """

    DEFAULT_MAX_ATTEMPTS = 5

    @abstractmethod
    def get(self, ref: DocumentRef) -> Optional[dict[str, Any]]:
        """
        Read a document.

        Returns:
            A copy of the document, or None if it does not exist
        """
        pass

    @abstractmethod
    def run_transaction(
        self,
        ref: DocumentRef,
        fn: Callable[[Transaction], T],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> T:
        """
        Run `fn` against a fresh snapshot of `ref` and commit its writes atomically.

        `fn` may be invoked more than once when a concurrent writer commits
        first, so it must not perform external side effects. If `fn` raises,
        nothing is written and the exception propagates.

        Raises:
            TransactionConflictError: If every attempt lost the race
        """
        pass

    @abstractmethod
    def find(
        self,
        collection: str,
        equals: dict[str, Any],
        limit: int = 50,
    ) -> list[tuple[DocumentRef, dict[str, Any]]]:
        """
        List documents whose top-level fields equal the given values.
        A value of None matches fields that are absent or null.

        Used by the sweep worker; results are not transactional.
        """
        pass

    def update(self, ref: DocumentRef, updates: dict[str, Any]) -> None:
        """Merge `updates` into the document, creating it when absent."""
        self.run_transaction(ref, lambda tx: tx.update(updates))
