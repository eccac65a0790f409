from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from assistant_runs.providers.anthropic_provider import build_anthropic_adapter
from assistant_runs.providers.base import ConfigurationError, ProviderAdapter
from assistant_runs.providers.codex_provider import build_codex_adapter
from assistant_runs.providers.ollama_provider import build_ollama_adapter
from assistant_runs.providers.openai_provider import build_openai_adapter
from assistant_runs.secret_store import SecretStore
from assistant_runs.storage.models import ProviderRecord
from assistant_runs.storage.providers import ProviderRepository

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OLLAMA_MODEL = "llama3.2:latest"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-5"

DEFAULT_MODEL_SETTING = "default_model_id"

# (provider, secret, background) -> adapter
AdapterBuilder = Callable[[ProviderRecord, str | None, bool], ProviderAdapter]


def _openai(provider: ProviderRecord, secret: str | None, background: bool) -> ProviderAdapter:
    if not secret:
        raise ConfigurationError(f"Missing API key for provider '{provider.display_name}'.")
    return build_openai_adapter(
        secret,
        base_url=provider.options.get("baseUrl") or None,
        background=background or bool(provider.options.get("backgroundMode")),
    )


def _anthropic(provider: ProviderRecord, secret: str | None, background: bool) -> ProviderAdapter:
    if not secret:
        raise ConfigurationError(f"Missing API key for provider '{provider.display_name}'.")
    return build_anthropic_adapter(secret)


def _ollama(provider: ProviderRecord, secret: str | None, background: bool) -> ProviderAdapter:
    # The stored secret for a local provider is its base URL.
    return build_ollama_adapter(secret or provider.options.get("baseUrl"))


def _codex_builder(codex_binary: str | None) -> AdapterBuilder:
    def build(provider: ProviderRecord, secret: str | None, background: bool) -> ProviderAdapter:
        return build_codex_adapter(provider.options.get("codexBinary") or codex_binary)

    return build


def default_builders(codex_binary: str | None = None) -> dict[tuple[str, str], AdapterBuilder]:
    return {
        ("openai", "api_key"): _openai,
        ("openai", "oauth_subscription"): _codex_builder(codex_binary),
        ("anthropic", "api_key"): _anthropic,
        ("local", "api_key"): _ollama,
    }


# Providers that can run without a stored credential.
_SECRET_OPTIONAL = {("local", "api_key"), ("openai", "oauth_subscription")}


@dataclass(frozen=True)
class ResolvedProvider:
    record: ProviderRecord
    adapter: ProviderAdapter


class ProviderFactory:
    """Resolves a provider id to its record, credential and adapter."""

    def __init__(
        self,
        providers: ProviderRepository,
        secrets: SecretStore,
        *,
        background_mode: bool = False,
        codex_binary: str | None = None,
        builders: dict[tuple[str, str], AdapterBuilder] | None = None,
    ):
        self._providers = providers
        self._secrets = secrets
        self._background_mode = background_mode
        self._builders = builders if builders is not None else default_builders(codex_binary)

    async def resolve(self, provider_id: str | None, *, background: bool | None = None) -> ResolvedProvider:
        if not provider_id:
            raise ConfigurationError("No provider is selected for this session.")
        record = self._providers.get_provider(provider_id)
        if record is None:
            raise ConfigurationError(f"Provider does not exist: {provider_id}")
        if not record.is_active:
            raise ConfigurationError(f"Provider '{record.display_name}' is disabled.")

        builder = self._builders.get((record.type, record.auth_kind))
        if builder is None:
            raise ConfigurationError(
                f"Provider type '{record.type}' with auth '{record.auth_kind}' is not supported."
            )

        secret: str | None = None
        if record.secret_ref:
            secret = await self._secrets.resolve(record.secret_ref)
        if secret is None and (record.type, record.auth_kind) not in _SECRET_OPTIONAL:
            raise ConfigurationError(f"Missing credential for provider '{record.display_name}'.")

        use_background = self._background_mode if background is None else background
        adapter = builder(record, secret, use_background)
        logger.debug(f"Resolved provider {record.id} ({record.type}/{record.auth_kind}) -> {adapter.kind}")
        return ResolvedProvider(record=record, adapter=adapter)


def resolve_model(
    provider: ProviderRecord,
    providers: ProviderRepository,
    *,
    requested_model: str | None = None,
    model_profile_id: str | None = None,
) -> str | None:
    """Requested model, then the session's model profile, then per-type defaults.

    Returns None for the subscription CLI when nothing is requested so it can
    pick its own default.
    """
    if requested_model and requested_model.strip():
        return requested_model.strip()

    profile = providers.get_model_profile(model_profile_id)
    if profile is not None and profile.model_id:
        return profile.model_id

    if provider.type == "openai" and provider.auth_kind == "oauth_subscription":
        return None
    if provider.type == "openai":
        from_settings = providers.get_setting(DEFAULT_MODEL_SETTING)
        if isinstance(from_settings, str) and from_settings.strip():
            return from_settings.strip()
        return DEFAULT_OPENAI_MODEL
    if provider.type == "local":
        return DEFAULT_OLLAMA_MODEL
    return DEFAULT_ANTHROPIC_MODEL
