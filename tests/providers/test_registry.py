import asyncio

from assistant_runs.providers.base import ConfigurationError, ProviderAdapter
from assistant_runs.providers.registry import (
    DEFAULT_ANTHROPIC_MODEL,
    DEFAULT_MODEL_SETTING,
    DEFAULT_OLLAMA_MODEL,
    DEFAULT_OPENAI_MODEL,
    ProviderFactory,
    resolve_model,
)
from assistant_runs.secret_store import InMemorySecretStore
from tests.storage.base import ConversationStoreTestCase


class ProviderFactoryTests(ConversationStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._secrets = InMemorySecretStore({"openai-key": "sk-test", "anthropic-key": "sk-ant-test"})
        self._factory = ProviderFactory(self._providers, self._secrets)

    def _resolve(self, provider_id, **kwargs):
        return asyncio.run(self._factory.resolve(provider_id, **kwargs))

    def test_no_provider_selected(self) -> None:
        with self.assertRaises(ConfigurationError):
            self._resolve(None)

    def test_unknown_provider(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            self._resolve("missing")
        self.assertIn("missing", ctx.exception.message)

    def test_inactive_provider(self) -> None:
        self.make_provider("p1", secret_ref="openai-key")
        self._store.execute("UPDATE providers SET is_active = 0 WHERE id = 'p1'")
        self._store.commit()
        with self.assertRaises(ConfigurationError):
            self._resolve("p1")

    def test_unsupported_type_and_auth_combination(self) -> None:
        self.make_provider("p1", type="anthropic", auth_kind="oauth_subscription")
        with self.assertRaises(ConfigurationError) as ctx:
            self._resolve("p1")
        self.assertIn("not supported", ctx.exception.message)

    def test_missing_api_key(self) -> None:
        self.make_provider("p1", secret_ref="unknown-ref", display_name="Work OpenAI")
        with self.assertRaises(ConfigurationError) as ctx:
            self._resolve("p1")
        self.assertEqual("Missing credential for provider 'Work OpenAI'.", ctx.exception.message)

    def test_openai_background_flag_controls_async_capability(self) -> None:
        self.make_provider("p1", secret_ref="openai-key")
        self.assertFalse(self._resolve("p1").adapter.is_async)
        self.assertTrue(self._resolve("p1", background=True).adapter.is_async)

        background_factory = ProviderFactory(self._providers, self._secrets, background_mode=True)
        self.assertTrue(asyncio.run(background_factory.resolve("p1")).adapter.is_async)

    def test_anthropic_resolves_tool_native_adapter(self) -> None:
        self.make_provider("p1", type="anthropic", secret_ref="anthropic-key")
        resolved = self._resolve("p1")
        self.assertEqual("anthropic", resolved.adapter.kind)
        self.assertTrue(resolved.adapter.is_tool_native)

    def test_local_provider_needs_no_secret(self) -> None:
        self.make_provider("p1", type="local", options={"baseUrl": "gpu-box:11434"})
        resolved = self._resolve("p1")
        self.assertTrue(resolved.adapter.requires_local_tool_loop)
        self.assertEqual("http://gpu-box:11434", resolved.adapter.extras["base_url"])

    def test_subscription_provider_uses_codex(self) -> None:
        self.make_provider("p1", auth_kind="oauth_subscription")
        self.assertEqual("codex", self._resolve("p1").adapter.kind)

    def test_custom_builders_receive_secret_and_background(self) -> None:
        seen = []

        def builder(record, secret, background):
            seen.append((record.id, secret, background))
            return ProviderAdapter(kind="fake")

        factory = ProviderFactory(self._providers, self._secrets, builders={("openai", "api_key"): builder})
        self.make_provider("p1", secret_ref="openai-key")
        asyncio.run(factory.resolve("p1", background=True))
        self.assertEqual([("p1", "sk-test", True)], seen)


class ResolveModelTests(ConversationStoreTestCase):
    def test_requested_model_wins(self) -> None:
        provider = self.make_provider("p1")
        self.assertEqual("gpt-4.1", resolve_model(provider, self._providers, requested_model=" gpt-4.1 "))

    def test_model_profile_before_defaults(self) -> None:
        provider = self.make_provider("p1")
        profiles = self._providers.replace_model_profiles("p1", ["gpt-4o"])
        self.assertEqual("gpt-4o", resolve_model(provider, self._providers, model_profile_id=profiles[0].id))

    def test_openai_setting_then_default(self) -> None:
        provider = self.make_provider("p1")
        self.assertEqual(DEFAULT_OPENAI_MODEL, resolve_model(provider, self._providers))
        self._providers.set_setting(DEFAULT_MODEL_SETTING, "gpt-4.1-mini")
        self.assertEqual("gpt-4.1-mini", resolve_model(provider, self._providers))

    def test_type_defaults(self) -> None:
        local = self.make_provider("local", type="local")
        anthropic = self.make_provider("claude", type="anthropic")
        codex = self.make_provider("codex", auth_kind="oauth_subscription")
        self.assertEqual(DEFAULT_OLLAMA_MODEL, resolve_model(local, self._providers))
        self.assertEqual(DEFAULT_ANTHROPIC_MODEL, resolve_model(anthropic, self._providers))
        self.assertIsNone(resolve_model(codex, self._providers))
