from __future__ import annotations

from awe_gatekeeper.adapters.base import ChatCompletionsAdapter

MOONSHOT_CHAT_URL = 'https://api.moonshot.cn/v1/chat/completions'


class OpenAICompatibleAdapter(ChatCompletionsAdapter):
    kind = 'openai'


class MoonshotAdapter(ChatCompletionsAdapter):
    kind = 'moonshot'

    def url(self) -> str:
        if self.endpoint.rstrip('/').endswith('/chat/completions'):
            return self.endpoint
        return MOONSHOT_CHAT_URL


__all__ = ['MoonshotAdapter', 'OpenAICompatibleAdapter']
