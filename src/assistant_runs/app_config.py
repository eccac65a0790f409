from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class ProviderSeed:
    id: str
    type: str
    display_name: str
    auth_kind: str = "api_key"
    secret_ref: str | None = None
    options: dict = field(default_factory=dict)


@dataclass
class AppConfig:
    database_path: str = ".assistant_runs/conversations.db"
    log_level: str = "INFO"
    log_consumers: list | None = None
    working_directory: str | None = None
    history_window: int = 30
    scheduler_interval_seconds: float = 4.0
    job_max_attempts: int = 120
    job_batch_size: int = 25
    local_tool_max_steps: int = 24
    local_plan_attempts: int = 2
    local_max_plan_steps: int = 12
    shell_timeout_seconds: float = 120.0
    shell_output_limit: int = 20_000
    openai_background_mode: bool = False
    codex_binary: str | None = None
    providers: list[ProviderSeed] = field(default_factory=list)
    default_provider_id: str | None = None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _parse_provider_seeds(raw: object) -> list[ProviderSeed]:
    if not isinstance(raw, list):
        return []
    seeds: list[ProviderSeed] = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("Id") or not entry.get("Type"):
            continue
        seeds.append(
            ProviderSeed(
                id=str(entry["Id"]),
                type=str(entry["Type"]).strip().lower(),
                display_name=str(entry.get("DisplayName") or entry["Id"]),
                auth_kind=str(entry.get("AuthKind", "api_key")).strip().lower(),
                secret_ref=str(entry["SecretRef"]) if entry.get("SecretRef") else None,
                options=dict(entry.get("Options") or {}),
            )
        )
    return seeds


def parse_app_config(config: dict) -> AppConfig:
    providers = _parse_provider_seeds(config.get("Providers"))
    return AppConfig(
        database_path=str(config.get("DatabasePath", ".assistant_runs/conversations.db")),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
        working_directory=config.get("WorkingDirectory"),
        history_window=int(config.get("HistoryWindow", 30)),
        scheduler_interval_seconds=float(config.get("SchedulerIntervalSeconds", 4.0)),
        job_max_attempts=int(config.get("JobMaxAttempts", 120)),
        job_batch_size=int(config.get("JobBatchSize", 25)),
        local_tool_max_steps=int(config.get("LocalToolMaxSteps", 24)),
        local_plan_attempts=int(config.get("LocalPlanAttempts", 2)),
        local_max_plan_steps=int(config.get("LocalMaxPlanSteps", 12)),
        shell_timeout_seconds=float(config.get("ShellTimeoutSeconds", 120.0)),
        shell_output_limit=int(config.get("ShellOutputLimit", 20_000)),
        openai_background_mode=_to_bool(config.get("OpenAIBackgroundMode", False), default=False),
        codex_binary=str(config.get("CodexBinary", "")).strip() or None,
        providers=providers,
        default_provider_id=str(config.get("DefaultProvider", "")).strip() or (providers[0].id if providers else None),
    )
