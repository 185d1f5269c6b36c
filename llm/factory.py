"""
Recall - Provider Factory
Name-keyed registry that builds and caches ProviderClient instances.
"""

from threading import Lock
from typing import Optional, Callable, Dict, List

from core.logger import log_info
from llm.anthropic_client import AnthropicProvider
from llm.kobold_client import KoboldProvider
from llm.openai_client import OpenAIProvider
from llm.provider import ProviderClient
from llm.settings import (
    ExtractionSettings, ProviderSettings, load_provider_settings, normalize_provider_name
)
from llm.types import UnknownProviderError

ProviderBuilder = Callable[[ProviderSettings], ProviderClient]

DEFAULT_BUILDERS: Dict[str, ProviderBuilder] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "kobold": KoboldProvider,
}


class ProviderFactory:
    """
    Builds providers by name.

    Each provider is built once per factory and reused, so per-provider
    clients (HTTP sessions, SDK clients) are shared by every extraction.
    """

    def __init__(
        self,
        settings: Optional[ExtractionSettings] = None,
        builders: Optional[Dict[str, ProviderBuilder]] = None,
    ):
        self.settings = settings
        self._builders: Dict[str, ProviderBuilder] = dict(DEFAULT_BUILDERS if builders is None else builders)
        self._instances: Dict[str, ProviderClient] = {}
        self._lock = Lock()

    def register(self, name: str, builder: ProviderBuilder) -> None:
        """Register (or replace) the builder for a provider name."""
        name = normalize_provider_name(name)
        with self._lock:
            self._builders[name] = builder
            self._instances.pop(name, None)

    def register_instance(self, name: str, provider: ProviderClient) -> None:
        """Register an already-built provider."""
        name = normalize_provider_name(name)
        with self._lock:
            self._builders[name] = lambda _settings: provider
            self._instances[name] = provider

    def has(self, name: str) -> bool:
        with self._lock:
            return normalize_provider_name(name) in self._builders

    def available(self) -> List[str]:
        with self._lock:
            return sorted(self._builders)

    def _provider_settings(self, name: str) -> ProviderSettings:
        if self.settings is not None:
            configured = self.settings.provider(name)
            if configured is not None:
                return configured
        return load_provider_settings(name)

    def resolve(self, name: str) -> ProviderClient:
        """
        Get the provider registered under `name`.

        Raises:
            UnknownProviderError: if no builder is registered for the name
        """
        name = normalize_provider_name(name)
        with self._lock:
            provider = self._instances.get(name)
            if provider is not None:
                return provider
            builder = self._builders.get(name)
            if builder is None:
                raise UnknownProviderError(name)
            provider = builder(self._provider_settings(name))
            self._instances[name] = provider

        log_info(f"Provider ready: {name} ({provider.model})")
        return provider

    def find_providers(
        self,
        min_output_tokens: int = 0,
        min_input_tokens: int = 0,
        streaming: Optional[bool] = None,
        json_mode: Optional[bool] = None,
        local: Optional[bool] = None,
    ) -> List[str]:
        """
        Names of providers whose capabilities meet every given requirement.

        Only providers that can be built with the current settings are
        considered.
        """
        matches = []
        for name in self.available():
            caps = self.resolve(name).capabilities()
            if caps.max_output_tokens < min_output_tokens:
                continue
            if caps.max_input_tokens < min_input_tokens:
                continue
            if streaming is not None and caps.supports_streaming != streaming:
                continue
            if json_mode is not None and caps.json_mode != json_mode:
                continue
            if local is not None and caps.local != local:
                continue
            matches.append(name)
        return matches
