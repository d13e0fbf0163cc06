from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Optional, TypeVar

from src.app.domain.errors import TransactionConflictError
from src.app.infra.db.base import DocumentRef, DocumentStore, Transaction, apply_updates

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InMemoryDocumentStore(DocumentStore):
    """Process-local store with per-document versions; commits compare-and-set like the Postgres one."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: dict[DocumentRef, dict[str, Any]] = {}
        self._versions: dict[DocumentRef, int] = {}
        self.commit_count = 0

    def get(self, ref: DocumentRef) -> Optional[dict[str, Any]]:
        with self._lock:
            document = self._documents.get(ref)
            return copy.deepcopy(document) if document is not None else None

    def put(self, ref: DocumentRef, document: dict[str, Any]) -> None:
        with self._lock:
            self._documents[ref] = copy.deepcopy(document)
            self._versions[ref] = self._versions.get(ref, 0) + 1

    def run_transaction(
        self,
        ref: DocumentRef,
        fn: Callable[[Transaction], T],
        max_attempts: int = DocumentStore.DEFAULT_MAX_ATTEMPTS,
    ) -> T:
        for _attempt in range(max_attempts):
            with self._lock:
                snapshot = copy.deepcopy(self._documents.get(ref))
                version = self._versions.get(ref, 0)

            tx = Transaction(ref, snapshot)
            result = fn(tx)

            if not tx.has_writes:
                return result

            with self._lock:
                if self._versions.get(ref, 0) != version:
                    logger.debug("Transaction conflict on %s, retrying", ref.path)
                    continue
                self._documents[ref] = apply_updates(self._documents.get(ref) or {}, tx.updates)
                self._versions[ref] = version + 1
                self.commit_count += 1
            return result

        raise TransactionConflictError(ref.path, max_attempts)

    def find(
        self,
        collection: str,
        equals: dict[str, Any],
        limit: int = 50,
    ) -> list[tuple[DocumentRef, dict[str, Any]]]:
        with self._lock:
            matches = [
                (ref, copy.deepcopy(document))
                for ref, document in self._documents.items()
                if ref.collection == collection
                and all(document.get(key) == value for key, value in equals.items())
            ]
        return matches[:limit]
