from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from postgrest.exceptions import APIError
from supabase import Client, create_client

from src.app.domain.errors import DocumentStoreError, TransactionConflictError
from src.app.infra.db.base import DocumentRef, DocumentStore, Transaction, apply_updates

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNIQUE_VIOLATION = "23505"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _to_json(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return value


def _filter_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(_to_json(value))


def _create_supabase_client() -> Client:
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
    return create_client(url, key)


class SupabaseDocumentStore(DocumentStore):
    """
    Documents live in one table keyed by (collection, id) with a jsonb body.

    Every commit is ``UPDATE ... WHERE version = <read version>``; a new
    document is an INSERT that loses to a concurrent insert through the
    primary key. Either way the loser re-reads and re-runs the callback.
    """

    TABLE_NAME = "documents"

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()
        logger.info("SupabaseDocumentStore initialized")

    def get(self, ref: DocumentRef) -> Optional[dict[str, Any]]:
        row = self._read_row(ref)
        return row[0] if row else None

    def _read_row(self, ref: DocumentRef) -> tuple[dict[str, Any], int] | None:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("data, version")
                .eq("collection", ref.collection)
                .eq("id", ref.doc_id)
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error reading %s: %s", ref.path, error)
            raise DocumentStoreError("read", str(error)) from error

        if not result.data:
            return None
        row = result.data[0]
        return dict(row.get("data") or {}), int(row.get("version") or 0)

    def run_transaction(
        self,
        ref: DocumentRef,
        fn: Callable[[Transaction], T],
        max_attempts: int = DocumentStore.DEFAULT_MAX_ATTEMPTS,
    ) -> T:
        for attempt in range(1, max_attempts + 1):
            row = self._read_row(ref)
            snapshot, version = row if row else (None, 0)

            tx = Transaction(ref, snapshot)
            result = fn(tx)

            if not tx.has_writes:
                return result

            document = apply_updates(snapshot or {}, tx.updates)
            committed = (
                self._commit_update(ref, document, version)
                if row
                else self._commit_insert(ref, document)
            )
            if committed:
                return result

            logger.debug("Transaction conflict on %s (attempt %d/%d)", ref.path, attempt, max_attempts)

        logger.warning("Transaction gave up on %s after %d attempts", ref.path, max_attempts)
        raise TransactionConflictError(ref.path, max_attempts)

    def _commit_update(self, ref: DocumentRef, document: dict[str, Any], version: int) -> bool:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .update({
                    "data": _to_json(document),
                    "version": version + 1,
                    "updated_at": _now_utc().isoformat(),
                })
                .eq("collection", ref.collection)
                .eq("id", ref.doc_id)
                .eq("version", version)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error committing %s: %s", ref.path, error)
            raise DocumentStoreError("commit", str(error)) from error
        return bool(result.data)

    def _commit_insert(self, ref: DocumentRef, document: dict[str, Any]) -> bool:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .insert({
                    "collection": ref.collection,
                    "id": ref.doc_id,
                    "data": _to_json(document),
                    "version": 1,
                    "updated_at": _now_utc().isoformat(),
                })
                .execute()
            )
        except APIError as error:
            if error.code == UNIQUE_VIOLATION:
                return False
            raise DocumentStoreError("insert", error.message or str(error)) from error
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error inserting %s: %s", ref.path, error)
            raise DocumentStoreError("insert", str(error)) from error
        return bool(result.data)

    def find(
        self,
        collection: str,
        equals: dict[str, Any],
        limit: int = 50,
    ) -> list[tuple[DocumentRef, dict[str, Any]]]:
        query = self._client.table(self.TABLE_NAME).select("id, data").eq("collection", collection)
        for key, value in equals.items():
            if value is None:
                query = query.is_(f"data->>{key}", "null")
            else:
                query = query.eq(f"data->>{key}", _filter_value(value))

        try:
            result = query.order("updated_at").limit(limit).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error listing %s: %s", collection, error)
            raise DocumentStoreError("find", str(error)) from error

        return [
            (DocumentRef(collection, str(row["id"])), dict(row.get("data") or {}))
            for row in (result.data or [])
        ]
