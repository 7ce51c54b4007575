"""Provider registry: resolves a provider key to a configured adapter.

The set of providers is closed: each entry of :data:`PROVIDER_CONFIG`
declares where its credentials, base URL and model come from, and
:data:`_FACTORIES` builds the matching adapter lazily so an unused SDK client
is never instantiated.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from ...domain.chat_models import ProviderCatalog, ProviderOption
from ...errors import ProviderError, ValidationError
from .base import Capabilities, ProviderAdapter
from .gemini_provider import GeminiAdapter
from .ollama_provider import OllamaAdapter
from .openai_provider import OpenAIAdapter

LOG = logging.getLogger("orbitmate.llm")


@dataclass(frozen=True)
class ProviderSelection:
    """The adapter and model chosen for one turn."""

    name: str
    model: str
    adapter: ProviderAdapter

    @property
    def capabilities(self) -> Capabilities:
        return self.adapter.capabilities


PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
    "ollama": {
        "label": "Ollama",
        "api_key_env": None,
        "base_url_env": "OLLAMA_BASE_URL",
        "model_env": "OLLAMA_MODEL",
        "default_model": "gemma3:4b",
        "default_base_url": "http://localhost:11434",
        "requires_api_key": False,
    },
    "openai": {
        "label": "OpenAI",
        "api_key_env": "OPENAI_API_KEY",
        "base_url_env": "OPENAI_BASE_URL",
        "model_env": "OPENAI_MODEL",
        "default_model": "gpt-4o-mini",
        "default_base_url": "https://api.openai.com/v1",
    },
    "geminiapi": {
        "label": "Google AI Studio",
        "api_key_env": "GEMINI_API_KEY",
        "base_url_env": "GEMINI_BASE_URL",
        "model_env": "GEMINI_MODEL",
        "default_model": "gemini-2.5-flash",
        "default_base_url": "https://generativelanguage.googleapis.com/v1beta",
    },
}


def _setting(env: Mapping[str, str], cfg: Dict[str, Optional[str] | bool], env_key: str, default_key: str) -> str:
    name = cfg.get(env_key)
    value = env.get(name) if isinstance(name, str) else None
    return value or str(cfg.get(default_key) or "")


def _api_key(env: Mapping[str, str], cfg: Dict[str, Optional[str] | bool]) -> Optional[str]:
    name = cfg.get("api_key_env")
    return env.get(name) if isinstance(name, str) else None


_FACTORIES: Dict[str, Callable[[Mapping[str, str], Dict[str, Optional[str] | bool]], ProviderAdapter]] = {
    "ollama": lambda env, cfg: OllamaAdapter(
        base_url=_setting(env, cfg, "base_url_env", "default_base_url"),
        default_model=_setting(env, cfg, "model_env", "default_model"),
    ),
    "openai": lambda env, cfg: OpenAIAdapter(
        api_key=_api_key(env, cfg),
        base_url=_setting(env, cfg, "base_url_env", "default_base_url"),
        default_model=_setting(env, cfg, "model_env", "default_model"),
    ),
    "geminiapi": lambda env, cfg: GeminiAdapter(
        api_key=_api_key(env, cfg),
        base_url=_setting(env, cfg, "base_url_env", "default_base_url"),
        default_model=_setting(env, cfg, "model_env", "default_model"),
    ),
}


class ProviderRegistry:
    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        default_provider: str = "ollama",
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._explicit: Dict[str, ProviderAdapter] = dict(adapters or {})
        self._cache: Dict[str, ProviderAdapter] = dict(self._explicit)
        self.default_provider = (default_provider or "ollama").strip().lower()

    def register(self, name: str, adapter: ProviderAdapter) -> None:
        key = name.strip().lower()
        self._explicit[key] = adapter
        self._cache[key] = adapter

    def names(self) -> List[str]:
        out = list(PROVIDER_CONFIG)
        out.extend(name for name in self._explicit if name not in PROVIDER_CONFIG)
        return out

    def get(self, name: str) -> ProviderAdapter:
        key = (name or "").strip().lower()
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        factory = _FACTORIES.get(key)
        if factory is None:
            raise ValidationError(f"Unknown AI provider '{name}'")
        adapter = factory(self._env, PROVIDER_CONFIG[key])
        self._cache[key] = adapter
        return adapter

    def provider_available(self, name: str) -> bool:
        key = (name or "").strip().lower()
        if key in self._explicit:
            return True
        cfg = PROVIDER_CONFIG.get(key)
        if not cfg:
            return False
        if bool(cfg.get("requires_api_key", True)):
            return bool(_api_key(self._env, cfg))
        return bool(_setting(self._env, cfg, "base_url_env", "default_base_url"))

    def resolve(self, provider: Optional[str] = None, model: Optional[str] = None) -> ProviderSelection:
        """Return the adapter and model for ``provider`` (default when omitted).

        Raises ``ValidationError`` for unknown keys and ``ProviderError`` when
        the provider is known but has no credentials configured.
        """
        key = (provider or self.default_provider).strip().lower()
        adapter = self.get(key)
        if not self.provider_available(key):
            raise ProviderError(
                f"AI provider '{key}' is not configured",
                provider=key,
                provider_code="not_configured",
            )
        chosen = (model or "").strip() or adapter.default_model
        LOG.info("provider_selected", extra={"provider": key, "model": chosen})
        return ProviderSelection(name=key, model=chosen, adapter=adapter)

    def catalog(self) -> ProviderCatalog:
        options: List[ProviderOption] = []
        for name in self.names():
            cfg = PROVIDER_CONFIG.get(name, {})
            adapter = self._explicit.get(name)
            if adapter is not None:
                model = adapter.default_model
                caps = adapter.capabilities
            else:
                model = _setting(self._env, cfg, "model_env", "default_model")
                caps = self.get(name).capabilities
            label = str(cfg.get("label") or name)
            options.append(
                ProviderOption(
                    provider=name,
                    model=model,
                    label=f"{label} ({model})",
                    streaming=caps.streaming,
                    tools=caps.tools,
                    available=self.provider_available(name),
                    default=name == self.default_provider,
                )
            )
        return ProviderCatalog(default_provider=self.default_provider, providers=options)
