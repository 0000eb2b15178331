from __future__ import annotations

from awe_gatekeeper.adapters.base import EndpointAdapter

ANTHROPIC_MESSAGES_URL = 'https://api.anthropic.com/v1/messages'
ANTHROPIC_VERSION = '2023-06-01'


class AnthropicAdapter(EndpointAdapter):
    kind = 'anthropic'

    def url(self) -> str:
        if self.endpoint.rstrip('/').endswith('/messages'):
            return self.endpoint
        return ANTHROPIC_MESSAGES_URL

    def headers(self) -> dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'anthropic-version': ANTHROPIC_VERSION,
        }
        if self.api_key:
            headers['x-api-key'] = self.api_key
        return headers

    def build_payload(self, *, model: str, system_prompt: str, message: str, max_tokens: int) -> dict:
        return {
            'model': model,
            'max_tokens': int(max_tokens),
            'system': system_prompt,
            'messages': [{'role': 'user', 'content': message}],
        }

    def parse_response(self, data: dict) -> tuple[str, int]:
        blocks = data.get('content') or []
        text = ''.join(
            str(block.get('text') or '')
            for block in blocks
            if isinstance(block, dict) and block.get('type', 'text') == 'text'
        )
        usage = data.get('usage') or {}
        tokens = int(usage.get('input_tokens') or 0) + int(usage.get('output_tokens') or 0)
        return text or 'No response', tokens


__all__ = ['AnthropicAdapter']
