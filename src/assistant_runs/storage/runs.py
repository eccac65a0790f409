from __future__ import annotations

import sqlite3
from uuid import uuid4

from assistant_runs.storage.models import AssistantRunRecord, record_from_row
from assistant_runs.storage.store import ConversationStore, utc_now


class DuplicateRunError(Exception):
    def __init__(self, existing: AssistantRunRecord):
        super().__init__(f"Run already exists for idempotency key {existing.idempotency_key!r}")
        self.existing = existing


class RunRepository:
    """Assistant runs. A run leaves ``running`` exactly once; later finalize calls are no-ops."""

    def __init__(self, store: ConversationStore):
        self._store = store

    def get_run(self, run_id: str) -> AssistantRunRecord | None:
        row = self._store.execute("SELECT * FROM assistant_runs WHERE id = ? LIMIT 1", (run_id,)).fetchone()
        return record_from_row(AssistantRunRecord, row)

    def get_by_idempotency_key(self, session_id: str, idempotency_key: str) -> AssistantRunRecord | None:
        row = self._store.execute(
            "SELECT * FROM assistant_runs WHERE session_id = ? AND idempotency_key = ? LIMIT 1",
            (session_id, idempotency_key),
        ).fetchone()
        return record_from_row(AssistantRunRecord, row)

    def list_by_status(self, status: str) -> list[AssistantRunRecord]:
        rows = self._store.execute(
            "SELECT * FROM assistant_runs WHERE status = ? ORDER BY created_at ASC",
            (status,),
        ).fetchall()
        return [record_from_row(AssistantRunRecord, row) for row in rows]

    def create_run(self, *, session_id: str, idempotency_key: str, stream_id: str) -> AssistantRunRecord:
        run_id = str(uuid4())
        now = utc_now()
        try:
            with self._store.transaction():
                self._store.execute(
                    """
                    INSERT INTO assistant_runs (
                        id, session_id, idempotency_key, stream_id, status,
                        user_message_id, assistant_message_id, error_text, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, 'running', NULL, NULL, NULL, ?, ?)
                    """,
                    (run_id, session_id, idempotency_key, stream_id, now, now),
                )
        except sqlite3.IntegrityError:
            existing = self.get_by_idempotency_key(session_id, idempotency_key)
            if existing is None:
                raise
            raise DuplicateRunError(existing) from None
        run = self.get_run(run_id)
        assert run is not None
        return run

    def mark_user_message(self, run_id: str, user_message_id: str) -> None:
        self._store.execute(
            "UPDATE assistant_runs SET user_message_id = ?, updated_at = ? WHERE id = ?",
            (user_message_id, utc_now(), run_id),
        )
        self._store.commit()

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        assistant_message_id: str | None,
        error_text: str | None,
    ) -> bool:
        """Move a running run to ``status``. Returns False when the run was already terminal."""
        if status not in ("completed", "failed"):
            raise ValueError(f"Not a terminal run status: {status!r}")
        cursor = self._store.execute(
            """
            UPDATE assistant_runs
            SET status = ?, assistant_message_id = COALESCE(?, assistant_message_id), error_text = ?, updated_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (status, assistant_message_id, error_text, utc_now(), run_id),
        )
        self._store.commit()
        return cursor.rowcount == 1
