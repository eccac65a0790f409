import unittest

from assistant_runs.app_config import _to_bool, parse_app_config


class AppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        config = parse_app_config({})
        self.assertEqual(".assistant_runs/conversations.db", config.database_path)
        self.assertEqual(120, config.job_max_attempts)
        self.assertEqual(24, config.local_tool_max_steps)
        self.assertFalse(config.openai_background_mode)
        self.assertEqual([], config.providers)
        self.assertIsNone(config.default_provider_id)
        self.assertIsNone(config.codex_binary)

    def test_provider_seeds(self) -> None:
        config = parse_app_config({
            "Providers": [
                {"Id": "openai-main", "Type": "OpenAI", "SecretRef": "env:OPENAI_API_KEY"},
                {"Id": "codex", "Type": "openai", "AuthKind": "oauth_subscription", "DisplayName": "Codex"},
                {"Type": "local"},
                "garbage",
            ],
        })

        self.assertEqual(["openai-main", "codex"], [p.id for p in config.providers])
        self.assertEqual("openai", config.providers[0].type)
        self.assertEqual("openai-main", config.providers[0].display_name)
        self.assertEqual("oauth_subscription", config.providers[1].auth_kind)
        self.assertIsNone(config.providers[1].secret_ref)
        self.assertEqual("openai-main", config.default_provider_id)

    def test_explicit_default_provider_and_overrides(self) -> None:
        config = parse_app_config({
            "DefaultProvider": "codex",
            "JobMaxAttempts": "5",
            "OpenAIBackgroundMode": "yes",
            "CodexBinary": "  ",
        })
        self.assertEqual("codex", config.default_provider_id)
        self.assertEqual(5, config.job_max_attempts)
        self.assertTrue(config.openai_background_mode)
        self.assertIsNone(config.codex_binary)

    def test_to_bool(self) -> None:
        self.assertTrue(_to_bool("On"))
        self.assertFalse(_to_bool("off", default=True))
        self.assertTrue(_to_bool(None, default=True))
        self.assertTrue(_to_bool(1))
