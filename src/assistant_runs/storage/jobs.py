from __future__ import annotations

import json
from uuid import uuid4

from assistant_runs.storage.models import BackgroundJobRecord, record_from_row
from assistant_runs.storage.store import ConversationStore, utc_now

ACTIVE_JOB_STATES = ("pending", "running")
TERMINAL_JOB_STATES = ("completed", "failed")


class JobRepository:
    def __init__(self, store: ConversationStore):
        self._store = store

    def create_job(self, kind: str, payload: dict) -> BackgroundJobRecord:
        job_id = str(uuid4())
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO background_jobs (id, kind, state, payload_json, attempt_count, last_error, created_at, updated_at)
            VALUES (?, ?, 'pending', ?, 0, NULL, ?, ?)
            """,
            (job_id, kind, json.dumps(payload, ensure_ascii=True), now, now),
        )
        self._store.commit()
        job = self.get_job(job_id)
        assert job is not None
        return job

    def get_job(self, job_id: str) -> BackgroundJobRecord | None:
        row = self._store.execute("SELECT * FROM background_jobs WHERE id = ? LIMIT 1", (job_id,)).fetchone()
        return record_from_row(BackgroundJobRecord, row)

    def list_active_jobs(self, kinds: list[str], *, limit: int = 25) -> list[BackgroundJobRecord]:
        if not kinds:
            return []
        kind_marks = ", ".join("?" for _ in kinds)
        rows = self._store.execute(
            f"""
            SELECT * FROM background_jobs
            WHERE state IN ('pending', 'running') AND kind IN ({kind_marks})
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (*kinds, max(1, limit)),
        ).fetchall()
        return [record_from_row(BackgroundJobRecord, row) for row in rows]

    def update_job(
        self,
        job_id: str,
        *,
        state: str,
        attempt_count: int,
        last_error: str | None,
        payload: dict | None = None,
    ) -> bool:
        """Write a job transition. Terminal jobs are never rewritten and attempts never go down."""
        payload_json = json.dumps(payload, ensure_ascii=True) if payload is not None else None
        cursor = self._store.execute(
            """
            UPDATE background_jobs
            SET state = ?,
                payload_json = COALESCE(?, payload_json),
                attempt_count = MAX(attempt_count, ?),
                last_error = ?,
                updated_at = ?
            WHERE id = ? AND state IN ('pending', 'running')
            """,
            (state, payload_json, attempt_count, last_error, utc_now(), job_id),
        )
        self._store.commit()
        return cursor.rowcount == 1
