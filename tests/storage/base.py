import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from assistant_runs.storage import (
    ConversationStore,
    JobRepository,
    ProviderRepository,
    RunRepository,
    SessionRepository,
    UsageRecorder,
)


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class ConversationStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = ConversationStore(str(self._tmp_dir / "conversations.db"))
        self._sessions = SessionRepository(self._store)
        self._runs = RunRepository(self._store)
        self._jobs = JobRepository(self._store)
        self._providers = ProviderRepository(self._store)
        self._usage = UsageRecorder(self._store)

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def make_provider(self, provider_id: str = "p-openai", type: str = "openai", **kwargs):
        return self._providers.upsert_provider(
            provider_id=provider_id,
            type=type,
            display_name=kwargs.pop("display_name", provider_id),
            **kwargs,
        )

    def make_session(self, provider_id: str = "p-openai", **kwargs):
        if self._providers.get_provider(provider_id) is None:
            self.make_provider(provider_id)
        return self._sessions.create_session(provider_id=provider_id, **kwargs)
