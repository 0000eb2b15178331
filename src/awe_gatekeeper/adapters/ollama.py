from __future__ import annotations

from urllib.parse import urlsplit

from awe_gatekeeper.adapters.base import EndpointAdapter


class OllamaAdapter(EndpointAdapter):
    kind = 'ollama'

    def url(self) -> str:
        text = self.endpoint.rstrip('/')
        if text.endswith('/api/chat'):
            return text
        parts = urlsplit(text if '://' in text else f'http://{text}')
        return f'{parts.scheme}://{parts.netloc}/api/chat'

    def headers(self) -> dict[str, str]:
        return {'Content-Type': 'application/json'}

    def build_payload(self, *, model: str, system_prompt: str, message: str, max_tokens: int) -> dict:
        return {
            'model': model,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': message},
            ],
            'stream': False,
            'options': {'num_predict': int(max_tokens)},
        }

    def parse_response(self, data: dict) -> tuple[str, int]:
        text = str((data.get('message') or {}).get('content') or '')
        tokens = int(data.get('eval_count') or 0) + int(data.get('prompt_eval_count') or 0)
        return text or 'No response', tokens


__all__ = ['OllamaAdapter']
