from __future__ import annotations

from uuid import uuid4

from assistant_runs.storage.models import MessageRecord, SessionRecord, record_from_row
from assistant_runs.storage.store import ConversationStore, utc_now

DEFAULT_SESSION_TITLE = "New chat"


class SessionRepository:
    def __init__(self, store: ConversationStore):
        self._store = store

    def create_session(
        self,
        *,
        provider_id: str,
        title: str | None = None,
        workspace_id: str | None = None,
        model_profile_id: str | None = None,
        session_id: str | None = None,
    ) -> SessionRecord:
        sid = session_id or str(uuid4())
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO sessions (id, workspace_id, title, provider_id, model_profile_id, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'active', ?, ?)
            """,
            (sid, workspace_id, (title or DEFAULT_SESSION_TITLE).strip(), provider_id, model_profile_id, now, now),
        )
        self._store.commit()
        session = self.get_session(sid)
        assert session is not None
        return session

    def get_session(self, session_id: str) -> SessionRecord | None:
        row = self._store.execute("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        return record_from_row(SessionRecord, row)

    def list_sessions(self, *, include_archived: bool = False, limit: int = 100) -> list[SessionRecord]:
        status_clause = "" if include_archived else "WHERE status != 'archived'"
        rows = self._store.execute(
            f"""
            SELECT * FROM sessions
            {status_clause}
            ORDER BY COALESCE(last_message_at, updated_at) DESC, created_at DESC
            LIMIT ?
            """,
            (max(1, limit),),
        ).fetchall()
        return [record_from_row(SessionRecord, row) for row in rows]

    def archive_session(self, session_id: str) -> None:
        self._store.execute(
            "UPDATE sessions SET status = 'archived', updated_at = ? WHERE id = ?",
            (utc_now(), session_id),
        )
        self._store.commit()

    def set_session_title(self, session_id: str, title: str) -> SessionRecord:
        cleaned = title.strip()
        if not cleaned:
            raise ValueError("Session title cannot be empty")
        self._store.execute(
            "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
            (cleaned, utc_now(), session_id),
        )
        self._store.commit()
        session = self.get_session(session_id)
        if session is None:
            raise ValueError(f"Session does not exist: {session_id}")
        return session

    def set_session_provider(self, session_id: str, provider_id: str) -> None:
        self._store.execute(
            "UPDATE sessions SET provider_id = ?, updated_at = ? WHERE id = ?",
            (provider_id, utc_now(), session_id),
        )
        self._store.commit()

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        *,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cost_microunits: int | None = None,
    ) -> MessageRecord:
        with self._store.transaction():
            row = self._store.execute(
                "SELECT COALESCE(MAX(seq), -1) AS max_seq FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            next_seq = int(row["max_seq"]) + 1
            message_id = str(uuid4())
            now = utc_now()
            self._store.execute(
                """
                INSERT INTO messages (
                    id, session_id, seq, role, content, input_tokens, output_tokens, cost_microunits, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (message_id, session_id, next_seq, role, content, input_tokens, output_tokens, cost_microunits, now),
            )
            self._store.execute(
                "UPDATE sessions SET updated_at = ?, last_message_at = ? WHERE id = ?",
                (now, now, session_id),
            )
        return MessageRecord(
            id=message_id,
            session_id=session_id,
            seq=next_seq,
            role=role,
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_microunits=cost_microunits,
            created_at=now,
        )

    def get_message(self, message_id: str | None) -> MessageRecord | None:
        if not message_id:
            return None
        row = self._store.execute("SELECT * FROM messages WHERE id = ? LIMIT 1", (message_id,)).fetchone()
        return record_from_row(MessageRecord, row)

    def list_messages(self, session_id: str) -> list[MessageRecord]:
        rows = self._store.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY seq ASC",
            (session_id,),
        ).fetchall()
        return [record_from_row(MessageRecord, row) for row in rows]

    def load_history(self, session_id: str, *, window: int) -> list[dict]:
        """Last ``window`` messages as ``{"role", "content"}`` dicts, oldest first."""
        rows = self._store.execute(
            """
            SELECT role, content FROM (
                SELECT role, content, seq FROM messages
                WHERE session_id = ?
                ORDER BY seq DESC
                LIMIT ?
            )
            ORDER BY seq ASC
            """,
            (session_id, max(1, window)),
        ).fetchall()
        return [{"role": row["role"], "content": row["content"]} for row in rows]

    def count_messages(self, session_id: str, *, role: str | None = None) -> int:
        if role is None:
            row = self._store.execute(
                "SELECT COUNT(*) AS c FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        else:
            row = self._store.execute(
                "SELECT COUNT(*) AS c FROM messages WHERE session_id = ? AND role = ?",
                (session_id, role),
            ).fetchone()
        return int(row["c"])
