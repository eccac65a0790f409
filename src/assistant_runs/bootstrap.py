from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from assistant_runs.app_config import AppConfig
from assistant_runs.cancellation import CancellationRegistry
from assistant_runs.events import EventHub
from assistant_runs.finalization import RunFinalizer
from assistant_runs.jobs.background_jobs import BackgroundJobProcessor
from assistant_runs.jobs.scheduler import JobScheduler
from assistant_runs.logging_config import setup_logging
from assistant_runs.orchestrator import OrchestratorLimits, RunOrchestrator
from assistant_runs.providers.openai_provider import OPENAI_BACKGROUND_JOB_KIND
from assistant_runs.providers.registry import ProviderFactory
from assistant_runs.secret_store import EnvSecretStore, SecretStore
from assistant_runs.storage import (
    ConversationStore,
    JobRepository,
    ProviderRepository,
    RunRepository,
    SessionRepository,
    UsageRecorder,
)
from assistant_runs.tools.shell_tool import ShellToolExecutor


@dataclass
class AppRuntime:
    store: ConversationStore
    sessions: SessionRepository
    runs: RunRepository
    providers: ProviderRepository
    orchestrator: RunOrchestrator
    scheduler: JobScheduler
    events: EventHub
    factory: ProviderFactory
    default_provider_id: str | None
    log_descriptions: list[str]

    def close(self) -> None:
        self.store.close()


def _database_path(configured: str) -> str:
    db_path = Path(configured)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    return str(db_path)


def seed_providers(providers: ProviderRepository, app: AppConfig) -> None:
    for seed in app.providers:
        providers.upsert_provider(
            provider_id=seed.id,
            type=seed.type,
            display_name=seed.display_name,
            auth_kind=seed.auth_kind,
            secret_ref=seed.secret_ref,
            options=seed.options,
        )
        logger.debug(f"Provider {seed.id} registered ({seed.type}/{seed.auth_kind})")


def bootstrap_runtime(app: AppConfig, *, secrets: SecretStore | None = None) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    store = ConversationStore(_database_path(app.database_path))
    sessions = SessionRepository(store)
    runs = RunRepository(store)
    jobs = JobRepository(store)
    providers = ProviderRepository(store)
    usage = UsageRecorder(store)

    seed_providers(providers, app)

    factory = ProviderFactory(
        providers,
        secrets or EnvSecretStore(),
        background_mode=app.openai_background_mode,
        codex_binary=app.codex_binary,
    )
    finalizer = RunFinalizer(store, sessions, runs, providers, usage)
    events = EventHub()

    orchestrator = RunOrchestrator(
        sessions=sessions,
        runs=runs,
        jobs=jobs,
        providers=providers,
        factory=factory,
        finalizer=finalizer,
        events=events,
        executor=ShellToolExecutor(
            timeout_seconds=app.shell_timeout_seconds,
            output_limit=app.shell_output_limit,
        ),
        cancellations=CancellationRegistry(),
        limits=OrchestratorLimits(
            history_window=app.history_window,
            local_tool_max_steps=app.local_tool_max_steps,
            local_plan_attempts=app.local_plan_attempts,
            local_max_plan_steps=app.local_max_plan_steps,
            default_cwd=app.working_directory,
        ),
    )

    scheduler = JobScheduler(
        jobs,
        {
            OPENAI_BACKGROUND_JOB_KIND: BackgroundJobProcessor(
                jobs, factory, finalizer, max_attempts=app.job_max_attempts
            ),
        },
        interval_seconds=app.scheduler_interval_seconds,
        batch_size=app.job_batch_size,
    )

    return AppRuntime(
        store=store,
        sessions=sessions,
        runs=runs,
        providers=providers,
        orchestrator=orchestrator,
        scheduler=scheduler,
        events=events,
        factory=factory,
        default_provider_id=app.default_provider_id,
        log_descriptions=log_descriptions,
    )
