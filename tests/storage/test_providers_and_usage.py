from assistant_runs.storage.usage import estimate_tokens
from tests.storage.base import ConversationStoreTestCase


class ProviderRepositoryTests(ConversationStoreTestCase):
    def test_upsert_updates_existing_provider(self) -> None:
        self.make_provider("p1", secret_ref="env:ONE", options={"a": 1})
        updated = self.make_provider("p1", display_name="Renamed", secret_ref="env:TWO")
        self.assertEqual("Renamed", updated.display_name)
        self.assertEqual("env:TWO", updated.secret_ref)
        self.assertEqual({}, updated.options)
        self.assertEqual(1, len(self._providers.list_providers()))

    def test_replace_model_profiles_dedupes_and_picks_default(self) -> None:
        self.make_provider("p1")
        profiles = self._providers.replace_model_profiles(
            "p1", ["gpt-b", "gpt-a", "gpt-b", " "], preferred_default="gpt-a"
        )
        self.assertEqual(["gpt-a", "gpt-b"], [p.model_id for p in profiles])
        self.assertTrue(profiles[0].is_default)

        replaced = self._providers.replace_model_profiles("p1", ["gpt-c"])
        self.assertEqual(["gpt-c"], [p.model_id for p in replaced])
        self.assertTrue(replaced[0].is_default)

    def test_settings_round_trip_json_values(self) -> None:
        self.assertIsNone(self._providers.get_setting("missing"))
        self._providers.set_setting("default_model_id", "gpt-4.1")
        self._providers.set_setting("default_model_id", "gpt-4o")
        self.assertEqual("gpt-4o", self._providers.get_setting("default_model_id"))

    def test_workspace_lookup(self) -> None:
        workspace = self._providers.create_workspace(name="repo", root_path="/tmp/repo", trust_level="read_only")
        self.assertEqual(workspace, self._providers.get_workspace(workspace.id))
        self.assertIsNone(self._providers.get_workspace(None))


class UsageRecorderTests(ConversationStoreTestCase):
    def test_estimate_tokens_rounds_up(self) -> None:
        self.assertEqual(0, estimate_tokens(""))
        self.assertEqual(1, estimate_tokens("abc"))
        self.assertEqual(2, estimate_tokens("abcde"))

    def test_summarize_sums_recent_events(self) -> None:
        session = self.make_session()
        message = self._sessions.append_message(session.id, "assistant", "hi")
        self._usage.record_usage_event(
            provider_id="p-openai", session_id=session.id, message_id=message.id, input_tokens=10, output_tokens=5
        )
        self._usage.record_usage_event(
            provider_id="p-openai", session_id=session.id, message_id=None, input_tokens=None, output_tokens=3
        )
        summary = self._usage.summarize_usage(1)
        self.assertEqual(10, summary.input_tokens)
        self.assertEqual(8, summary.output_tokens)
        self.assertEqual(0, summary.cost_microunits)
