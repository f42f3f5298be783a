"""ModelRouter: bridge from config to ModelBackend instances."""

import logging
from typing import Any, Callable

from taskcore.llm.protocol import BackendProvider, ModelBackend, ModelConfig, ProviderConfig
from taskcore.llm.providers import OpenAICompatibleProvider

logger = logging.getLogger(__name__)


def _dict_to_provider_config(provider_id: str, data: dict[str, Any]) -> ProviderConfig:
    return ProviderConfig(
        id=provider_id,
        type=str(data.get("type", "openai_compatible")),
        base_url=data.get("base_url"),
        api_key_secret=data.get("api_key_secret"),
        api_key_literal=data.get("api_key_literal"),
        default_headers=dict(data.get("default_headers") or {}),
    )


def _dict_to_model_config(data: dict[str, Any], provider_id: str) -> ModelConfig:
    return ModelConfig(
        provider=provider_id or str(data.get("provider", "")),
        model=str(data.get("model", "")),
        temperature=float(data.get("temperature", 0.0)),
        max_tokens=data.get("max_tokens"),
        context_window=int(data.get("context_window", 128_000)),
        supports_images=bool(data.get("supports_images", True)),
        thinking=bool(data.get("thinking", False)),
        extra=dict(data.get("extra") or {}),
    )


class ModelRouter:
    """Resolves agent_id to a ModelBackend via config/settings.yaml."""

    def __init__(
        self,
        settings: dict[str, Any],
        secrets_getter: Callable[[str, str | None], str | None],
    ) -> None:
        """``secrets_getter(provider_id, secret_name)`` returns the provider key or None."""
        self._secrets = secrets_getter
        self._provider_configs: dict[str, ProviderConfig] = {}
        self._agent_configs: dict[str, ModelConfig] = {}
        self._providers: dict[str, BackendProvider] = {}
        self._cache: dict[str, ModelBackend] = {}
        self._load(settings)
        self._register_defaults()

    def _load(self, settings: dict[str, Any]) -> None:
        for pid, pdata in (settings.get("providers") or {}).items():
            if isinstance(pdata, dict):
                self._provider_configs[str(pid)] = _dict_to_provider_config(
                    str(pid), pdata
                )
        for aid, adata in (settings.get("agents") or {}).items():
            if isinstance(adata, dict):
                provider_id = adata.get("provider")
                if provider_id:
                    self._agent_configs[str(aid)] = _dict_to_model_config(
                        adata, str(provider_id)
                    )

    def _register_defaults(self) -> None:
        openai_compat = OpenAICompatibleProvider()
        self._providers["openai"] = openai_compat
        self._providers["openai_compatible"] = openai_compat

    def register_provider(self, provider_type: str, provider: BackendProvider) -> None:
        """Add a provider type (e.g. a test double or a vendor adapter)."""
        self._providers[provider_type] = provider

    def _resolve_key(self, cfg: ProviderConfig) -> str | None:
        if cfg.api_key_literal:
            return cfg.api_key_literal
        return self._secrets(cfg.id, cfg.api_key_secret)

    def get_backend(self, agent_id: str = "default") -> ModelBackend:
        """Return cached or newly built backend for the agent."""
        if agent_id in self._cache:
            return self._cache[agent_id]
        agent_cfg = self._agent_configs.get(agent_id) or self._agent_configs.get(
            "default"
        )
        if not agent_cfg:
            raise KeyError(
                f"No model config for agent_id={agent_id!r} and no 'default' in config/settings.yaml"
            )
        provider_cfg = self._provider_configs.get(agent_cfg.provider)
        if not provider_cfg:
            raise KeyError(
                f"Unknown provider {agent_cfg.provider!r} for agent_id={agent_id!r}"
            )
        provider = self._providers.get(provider_cfg.type)
        if not provider:
            raise KeyError(
                f"Unknown provider type {provider_cfg.type!r} for provider id {provider_cfg.id!r}"
            )
        backend = provider.build(provider_cfg, agent_cfg, self._resolve_key(provider_cfg))
        logger.info(
            "model backend for %s: provider=%s model=%s",
            agent_id,
            provider_cfg.id,
            agent_cfg.model,
        )
        self._cache[agent_id] = backend
        return backend

    def invalidate(self, agent_id: str | None = None) -> None:
        """Invalidate cache after config change."""
        if agent_id:
            self._cache.pop(agent_id, None)
        else:
            self._cache.clear()
