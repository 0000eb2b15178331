from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol

from awe_gatekeeper.participants import AgentProfile

DEFAULT_ENDPOINT_MODELS = {
    'anthropic': 'claude-sonnet-4-5-20250929',
    'moonshot': 'moonshot-v1-auto',
    'ollama': 'qwen2.5-coder:32b',
    'openai': 'gpt-4',
}

ENDPOINT_API_KEY_ENV = {
    'anthropic': ('ANTHROPIC_API_KEY',),
    'moonshot': ('MOONSHOT_API_KEY', 'KIMI_API_KEY'),
    'openai': ('OPENAI_API_KEY',),
}

_LOCAL_MARKERS = ('localhost', '127.0.0.1', '172.', 'ollama')


@dataclass(frozen=True)
class AgentReply:
    text: str
    model: str
    tokens_used: int
    response_time_ms: int


class AgentInvocationError(RuntimeError):
    def __init__(self, message: str, *, agent: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.agent = agent
        self.status_code = status_code


class AgentInvoker(Protocol):
    def invoke(
        self,
        agent: AgentProfile,
        *,
        system_prompt: str,
        message: str,
        max_tokens: int = 1024,
        timeout_seconds: float | None = None,
    ) -> AgentReply:
        ...


def detect_endpoint_kind(endpoint: str | None) -> str:
    text = str(endpoint or '').strip().lower()
    if not text:
        raise ValueError('agent endpoint is empty')
    if 'anthropic.com' in text:
        return 'anthropic'
    if 'moonshot.cn' in text:
        return 'moonshot'
    if any(marker in text for marker in _LOCAL_MARKERS):
        return 'ollama'
    return 'openai'


class EndpointAdapter(ABC):
    kind = 'openai'

    def __init__(self, *, endpoint: str, api_key: str | None = None):
        self.endpoint = str(endpoint or '').strip()
        self.api_key = api_key

    def default_model(self) -> str:
        return DEFAULT_ENDPOINT_MODELS.get(self.kind, DEFAULT_ENDPOINT_MODELS['openai'])

    def resolve_model(self, model: str | None) -> str:
        return str(model or '').strip() or self.default_model()

    def url(self) -> str:
        return self.endpoint

    def headers(self) -> dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        return headers

    @abstractmethod
    def build_payload(self, *, model: str, system_prompt: str, message: str, max_tokens: int) -> dict:
        ...

    @abstractmethod
    def parse_response(self, data: dict) -> tuple[str, int]:
        """Return ``(text, tokens_used)`` from a decoded response body."""
        ...


class ChatCompletionsAdapter(EndpointAdapter):
    def build_payload(self, *, model: str, system_prompt: str, message: str, max_tokens: int) -> dict:
        return {
            'model': model,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': message},
            ],
            'max_tokens': int(max_tokens),
        }

    def parse_response(self, data: dict) -> tuple[str, int]:
        choices = data.get('choices') or []
        text = ''
        if choices:
            text = str(((choices[0] or {}).get('message') or {}).get('content') or '')
        usage = data.get('usage') or {}
        return text or 'No response', int(usage.get('total_tokens') or 0)
