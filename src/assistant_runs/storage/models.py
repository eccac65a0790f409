from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProviderRecord:
    id: str
    type: str
    display_name: str
    auth_kind: str
    secret_ref: str | None
    options: dict = field(default_factory=dict)
    is_active: bool = True

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ProviderRecord:
        try:
            options = json.loads(row["options_json"] or "{}")
        except json.JSONDecodeError:
            options = {}
        return cls(
            id=row["id"],
            type=row["type"],
            display_name=row["display_name"],
            auth_kind=row["auth_kind"],
            secret_ref=row["secret_ref"],
            options=options if isinstance(options, dict) else {},
            is_active=bool(row["is_active"]),
        )


@dataclass(frozen=True)
class ModelProfileRecord:
    id: str
    provider_id: str
    model_id: str
    display_name: str
    is_default: bool


@dataclass(frozen=True)
class WorkspaceRecord:
    id: str
    name: str
    root_path: str
    trust_level: str


@dataclass(frozen=True)
class SessionRecord:
    id: str
    workspace_id: str | None
    title: str
    provider_id: str
    model_profile_id: str | None
    status: str
    created_at: str
    updated_at: str
    last_message_at: str | None


@dataclass(frozen=True)
class MessageRecord:
    id: str
    session_id: str
    seq: int
    role: str
    content: str
    input_tokens: int | None
    output_tokens: int | None
    cost_microunits: int | None
    created_at: str


@dataclass(frozen=True)
class AssistantRunRecord:
    id: str
    session_id: str
    idempotency_key: str
    stream_id: str
    status: str
    user_message_id: str | None
    assistant_message_id: str | None
    error_text: str | None
    created_at: str
    updated_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status != "running"


@dataclass(frozen=True)
class BackgroundJobRecord:
    id: str
    kind: str
    state: str
    payload_json: str
    attempt_count: int
    last_error: str | None
    created_at: str
    updated_at: str


def record_from_row(cls: type, row: sqlite3.Row | None):
    if row is None:
        return None
    keys = row.keys()
    return cls(**{name: row[name] for name in cls.__dataclass_fields__ if name in keys})
