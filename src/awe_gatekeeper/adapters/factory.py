from __future__ import annotations

from awe_gatekeeper.adapters.anthropic import AnthropicAdapter
from awe_gatekeeper.adapters.base import EndpointAdapter, detect_endpoint_kind
from awe_gatekeeper.adapters.ollama import OllamaAdapter
from awe_gatekeeper.adapters.openai_compat import MoonshotAdapter, OpenAICompatibleAdapter


class EndpointAdapterFactory:
    _ADAPTERS: dict[str, type[EndpointAdapter]] = {
        'anthropic': AnthropicAdapter,
        'moonshot': MoonshotAdapter,
        'ollama': OllamaAdapter,
        'openai': OpenAICompatibleAdapter,
    }

    @classmethod
    def create(cls, *, endpoint: str, api_key: str | None = None) -> EndpointAdapter:
        kind = detect_endpoint_kind(endpoint)
        adapter_cls = cls._ADAPTERS.get(kind, OpenAICompatibleAdapter)
        return adapter_cls(endpoint=endpoint, api_key=api_key)


__all__ = ['EndpointAdapterFactory']
