from assistant_runs.storage.jobs import JobRepository
from assistant_runs.storage.providers import ProviderRepository
from assistant_runs.storage.runs import DuplicateRunError, RunRepository
from assistant_runs.storage.sessions import SessionRepository
from assistant_runs.storage.store import ConversationStore
from assistant_runs.storage.usage import UsageRecorder

__all__ = [
    "ConversationStore",
    "DuplicateRunError",
    "JobRepository",
    "ProviderRepository",
    "RunRepository",
    "SessionRepository",
    "UsageRecorder",
]
