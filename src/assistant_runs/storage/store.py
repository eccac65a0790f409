from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class ConversationStore:
    def __init__(self, db_path: str):
        if db_path != ":memory:":
            self._db_path = Path(db_path)
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._depth = 0
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[ConversationStore]:
        """Group writes into one commit; nested blocks join the outer transaction."""
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self._conn.rollback()
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS providers (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL CHECK (type IN ('openai', 'anthropic', 'local')),
                display_name TEXT NOT NULL,
                auth_kind TEXT NOT NULL CHECK (auth_kind IN ('api_key', 'oauth_subscription')),
                secret_ref TEXT NULL,
                options_json TEXT NOT NULL DEFAULT '{}',
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_used_at TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS model_profiles (
                id TEXT PRIMARY KEY,
                provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
                model_id TEXT NOT NULL,
                display_name TEXT NOT NULL,
                is_default INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workspaces (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                root_path TEXT NOT NULL UNIQUE,
                trust_level TEXT NOT NULL CHECK (trust_level IN ('trusted', 'read_only', 'untrusted')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NULL REFERENCES workspaces(id) ON DELETE SET NULL,
                title TEXT NOT NULL,
                provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE RESTRICT,
                model_profile_id TEXT NULL REFERENCES model_profiles(id) ON DELETE SET NULL,
                status TEXT NOT NULL CHECK (status IN ('active', 'archived', 'error')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_message_at TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant', 'tool')),
                content TEXT NOT NULL,
                input_tokens INTEGER NULL,
                output_tokens INTEGER NULL,
                cost_microunits INTEGER NULL,
                created_at TEXT NOT NULL,
                UNIQUE(session_id, seq)
            );

            CREATE TABLE IF NOT EXISTS assistant_runs (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                idempotency_key TEXT NOT NULL,
                stream_id TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
                user_message_id TEXT NULL REFERENCES messages(id) ON DELETE SET NULL,
                assistant_message_id TEXT NULL REFERENCES messages(id) ON DELETE SET NULL,
                error_text TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(session_id, idempotency_key)
            );

            CREATE TABLE IF NOT EXISTS background_jobs (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                state TEXT NOT NULL CHECK (state IN ('pending', 'running', 'completed', 'failed')),
                payload_json TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS usage_events (
                id TEXT PRIMARY KEY,
                provider_id TEXT NOT NULL,
                session_id TEXT NULL REFERENCES sessions(id) ON DELETE SET NULL,
                message_id TEXT NULL REFERENCES messages(id) ON DELETE SET NULL,
                event_type TEXT NOT NULL CHECK (event_type IN ('completion', 'embedding', 'tool')),
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                cost_microunits INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_seq
                ON messages(session_id, seq);
            CREATE INDEX IF NOT EXISTS idx_sessions_status
                ON sessions(status);
            CREATE INDEX IF NOT EXISTS idx_assistant_runs_session_created
                ON assistant_runs(session_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_jobs_state_kind
                ON background_jobs(state, kind);
            CREATE INDEX IF NOT EXISTS idx_usage_provider_created
                ON usage_events(provider_id, created_at);
            """
        )
        self._conn.commit()
