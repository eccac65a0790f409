from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from assistant_runs.storage.store import ConversationStore, utc_now


@dataclass(frozen=True)
class UsageSummary:
    input_tokens: int
    output_tokens: int
    cost_microunits: int


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


class UsageRecorder:
    def __init__(self, store: ConversationStore):
        self._store = store

    def record_usage_event(
        self,
        *,
        provider_id: str,
        session_id: str | None,
        message_id: str | None,
        event_type: str = "completion",
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cost_microunits: int | None = None,
    ) -> str:
        event_id = str(uuid4())
        self._store.execute(
            """
            INSERT INTO usage_events (
                id, provider_id, session_id, message_id, event_type,
                input_tokens, output_tokens, cost_microunits, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id,
                provider_id,
                session_id,
                message_id,
                event_type,
                input_tokens or 0,
                output_tokens or 0,
                cost_microunits or 0,
                utc_now(),
            ),
        )
        self._store.commit()
        return event_id

    def summarize_usage(self, days: int) -> UsageSummary:
        lower_bound = (datetime.now(UTC) - timedelta(days=max(0, days))).isoformat(timespec="milliseconds")
        row = self._store.execute(
            """
            SELECT
                COALESCE(SUM(input_tokens), 0) AS input_tokens,
                COALESCE(SUM(output_tokens), 0) AS output_tokens,
                COALESCE(SUM(cost_microunits), 0) AS cost_microunits
            FROM usage_events
            WHERE created_at >= ?
            """,
            (lower_bound,),
        ).fetchone()
        return UsageSummary(
            input_tokens=int(row["input_tokens"]),
            output_tokens=int(row["output_tokens"]),
            cost_microunits=int(row["cost_microunits"]),
        )
