from __future__ import annotations

import json
import re
from typing import Callable, Protocol

import httpx

from awe_gatekeeper.observability import get_logger

_log = get_logger('awe_gatekeeper.execution')

EXECUTION_SENDER = 'EXECUTION BRIDGE'
DEFAULT_BASE_BRANCH = 'main'

_EXECUTION_BLOCK_RE = re.compile(r'```execution\s*\n(.*?)\n```', re.DOTALL)


def extract_execution_payload(text: str) -> dict | None:
    """Return the request in the first fenced ``execution`` block of an agent reply.

    Agents either send ``{"type": ..., "payload": ...}`` or the short
    ``{"files": [...], "branch": ..., "commit_message": ...}`` form, which is
    read as a ``code_commit``. Anything else is ignored.
    """
    match = _EXECUTION_BLOCK_RE.search(str(text or ''))
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
    except ValueError as exc:
        _log.warning('execution_block_unparseable error=%s', exc)
        return None
    if not isinstance(data, dict):
        return None
    files = data.get('files')
    if isinstance(files, list) and data.get('branch') and data.get('commit_message'):
        return {
            'type': 'code_commit',
            'payload': {
                'files': files,
                'branch': data['branch'],
                'commit_message': data['commit_message'],
                'base_branch': data.get('base_branch') or DEFAULT_BASE_BRANCH,
            },
        }
    if data.get('type') and data.get('payload'):
        return data
    return None


def describe_request(request: dict) -> str:
    payload = request.get('payload') if isinstance(request.get('payload'), dict) else {}
    files = [f.get('path') for f in payload.get('files') or [] if isinstance(f, dict) and f.get('path')]
    parts = [str(request.get('type'))]
    if payload.get('branch'):
        parts.append(f'on {payload["branch"]}')
    if files:
        parts.append(f'({len(files)} files: {", ".join(files)})')
    return ' '.join(parts)


class ExecutionQueue(Protocol):
    def submit(self, *, room_id: str, agent: str, message_id: str, request: dict) -> str:
        """Queue *request* for the executor and return its execution id."""
        ...


class HttpExecutionQueue:
    """Hands execution requests to the bridge over HTTP."""

    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        timeout_seconds: float = 15.0,
        client_factory: Callable[..., httpx.Client] | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.client_factory = client_factory or httpx.Client

    def submit(self, *, room_id: str, agent: str, message_id: str, request: dict) -> str:
        headers = {'Authorization': f'Bearer {self.token}'} if self.token else {}
        with self.client_factory(timeout=self.timeout_seconds) as client:
            response = client.post(
                self.url,
                headers=headers,
                json={
                    'room_id': room_id,
                    'agent': agent,
                    'message_id': message_id,
                    'execution_type': request.get('type'),
                    'payload': request.get('payload'),
                },
            )
        response.raise_for_status()
        body = response.json() if response.content else {}
        execution_id = str((body or {}).get('id') or (body or {}).get('execution_id') or '').strip()
        if not execution_id:
            raise ValueError('execution queue returned no id')
        return execution_id
