from __future__ import annotations

from awe_gatekeeper.adapters.anthropic import AnthropicAdapter
from awe_gatekeeper.adapters.base import (
    DEFAULT_ENDPOINT_MODELS,
    AgentInvocationError,
    AgentInvoker,
    AgentReply,
    EndpointAdapter,
    detect_endpoint_kind,
)
from awe_gatekeeper.adapters.factory import EndpointAdapterFactory
from awe_gatekeeper.adapters.ollama import OllamaAdapter
from awe_gatekeeper.adapters.openai_compat import MoonshotAdapter, OpenAICompatibleAdapter
from awe_gatekeeper.adapters.runner import AgentRunner

__all__ = [
    'AgentInvocationError',
    'AgentInvoker',
    'AgentReply',
    'AgentRunner',
    'AnthropicAdapter',
    'DEFAULT_ENDPOINT_MODELS',
    'EndpointAdapter',
    'EndpointAdapterFactory',
    'MoonshotAdapter',
    'OllamaAdapter',
    'OpenAICompatibleAdapter',
    'detect_endpoint_kind',
]
