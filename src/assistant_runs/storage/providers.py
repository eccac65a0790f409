from __future__ import annotations

import json
from typing import Any
from uuid import uuid4

from assistant_runs.storage.models import ModelProfileRecord, ProviderRecord, WorkspaceRecord, record_from_row
from assistant_runs.storage.store import ConversationStore, utc_now


class ProviderRepository:
    """Providers, their model profiles, workspaces and app settings."""

    def __init__(self, store: ConversationStore):
        self._store = store

    def upsert_provider(
        self,
        *,
        provider_id: str,
        type: str,
        display_name: str,
        auth_kind: str = "api_key",
        secret_ref: str | None = None,
        options: dict | None = None,
    ) -> ProviderRecord:
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO providers (id, type, display_name, auth_kind, secret_ref, options_json, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                type = excluded.type,
                display_name = excluded.display_name,
                auth_kind = excluded.auth_kind,
                secret_ref = excluded.secret_ref,
                options_json = excluded.options_json,
                updated_at = excluded.updated_at
            """,
            (
                provider_id,
                type,
                display_name,
                auth_kind,
                secret_ref,
                json.dumps(options or {}, ensure_ascii=True),
                now,
                now,
            ),
        )
        self._store.commit()
        provider = self.get_provider(provider_id)
        assert provider is not None
        return provider

    def get_provider(self, provider_id: str) -> ProviderRecord | None:
        row = self._store.execute("SELECT * FROM providers WHERE id = ? LIMIT 1", (provider_id,)).fetchone()
        return ProviderRecord.from_row(row) if row is not None else None

    def list_providers(self) -> list[ProviderRecord]:
        rows = self._store.execute("SELECT * FROM providers ORDER BY created_at ASC").fetchall()
        return [ProviderRecord.from_row(row) for row in rows]

    def mark_provider_used(self, provider_id: str) -> None:
        now = utc_now()
        self._store.execute(
            "UPDATE providers SET updated_at = ?, last_used_at = ? WHERE id = ?",
            (now, now, provider_id),
        )
        self._store.commit()

    def get_model_profile(self, model_profile_id: str | None) -> ModelProfileRecord | None:
        if not model_profile_id:
            return None
        row = self._store.execute(
            "SELECT * FROM model_profiles WHERE id = ? LIMIT 1",
            (model_profile_id,),
        ).fetchone()
        return record_from_row(ModelProfileRecord, row)

    def list_model_profiles(self, provider_id: str) -> list[ModelProfileRecord]:
        rows = self._store.execute(
            "SELECT * FROM model_profiles WHERE provider_id = ? ORDER BY is_default DESC, model_id ASC",
            (provider_id,),
        ).fetchall()
        return [record_from_row(ModelProfileRecord, row) for row in rows]

    def replace_model_profiles(
        self,
        provider_id: str,
        model_ids: list[str],
        *,
        preferred_default: str | None = None,
    ) -> list[ModelProfileRecord]:
        unique_ids = list(dict.fromkeys(m.strip() for m in model_ids if m and m.strip()))
        default_id = preferred_default if preferred_default in unique_ids else (unique_ids[0] if unique_ids else None)
        now = utc_now()
        with self._store.transaction():
            self._store.execute("DELETE FROM model_profiles WHERE provider_id = ?", (provider_id,))
            self._store.executemany(
                """
                INSERT INTO model_profiles (id, provider_id, model_id, display_name, is_default, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (str(uuid4()), provider_id, model_id, model_id, 1 if model_id == default_id else 0, now, now)
                    for model_id in unique_ids
                ],
            )
        return self.list_model_profiles(provider_id)

    def create_workspace(self, *, name: str, root_path: str, trust_level: str = "trusted") -> WorkspaceRecord:
        workspace_id = str(uuid4())
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO workspaces (id, name, root_path, trust_level, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (workspace_id, name, root_path, trust_level, now, now),
        )
        self._store.commit()
        workspace = self.get_workspace(workspace_id)
        assert workspace is not None
        return workspace

    def get_workspace(self, workspace_id: str | None) -> WorkspaceRecord | None:
        if not workspace_id:
            return None
        row = self._store.execute("SELECT * FROM workspaces WHERE id = ? LIMIT 1", (workspace_id,)).fetchone()
        return record_from_row(WorkspaceRecord, row)

    def get_setting(self, key: str) -> Any | None:
        row = self._store.execute("SELECT value_json FROM app_settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError:
            return None

    def set_setting(self, key: str, value: Any) -> None:
        self._store.execute(
            """
            INSERT INTO app_settings (key, value_json, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
            """,
            (key, json.dumps(value, ensure_ascii=True), utc_now()),
        )
        self._store.commit()
