from __future__ import annotations

import json

import httpx
import pytest

from awe_gatekeeper.execution import HttpExecutionQueue, describe_request, extract_execution_payload


def _factory(handler):
    def factory(**kwargs):
        return httpx.Client(transport=httpx.MockTransport(handler), **kwargs)

    return factory


def test_short_commit_form_becomes_code_commit():
    text = (
        'Done.\n```execution\n'
        '{"files": [{"path": "a.py", "content": "", "action": "create"}], "branch": "feat/a",'
        ' "commit_message": "feat: a", "base_branch": "develop"}\n```\nThanks'
    )

    request = extract_execution_payload(text)

    assert request == {
        'type': 'code_commit',
        'payload': {
            'files': [{'path': 'a.py', 'content': '', 'action': 'create'}],
            'branch': 'feat/a',
            'commit_message': 'feat: a',
            'base_branch': 'develop',
        },
    }
    assert describe_request(request) == 'code_commit on feat/a (1 files: a.py)'


def test_typed_request_is_kept_as_is():
    text = '```execution\n{"type": "shell", "payload": {"command": "npm test"}}\n```'

    assert extract_execution_payload(text) == {'type': 'shell', 'payload': {'command': 'npm test'}}
    assert describe_request({'type': 'shell', 'payload': {'command': 'npm test'}}) == 'shell'


@pytest.mark.parametrize(
    'text',
    [
        'plain reply',
        '```typescript\n{"type": "shell", "payload": {}}\n```',
        '```execution\nnot json\n```',
        '```execution\n["a", "b"]\n```',
        '```execution\n{"files": [], "branch": "x"}\n```',
        None,
    ],
)
def test_replies_without_usable_block_yield_nothing(text):
    assert extract_execution_payload(text) is None


def test_http_queue_posts_request_and_returns_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['auth'] = request.headers.get('Authorization')
        seen['body'] = json.loads(request.content)
        return httpx.Response(201, json={'id': 'exec-42'})

    queue = HttpExecutionQueue(url='https://bridge.local/queue', token='t0k', client_factory=_factory(handler))

    execution_id = queue.submit(
        room_id='room-1',
        agent='ATLAS',
        message_id='msg-1',
        request={'type': 'shell', 'payload': {'command': 'ls'}},
    )

    assert execution_id == 'exec-42'
    assert seen['auth'] == 'Bearer t0k'
    assert seen['body'] == {
        'room_id': 'room-1',
        'agent': 'ATLAS',
        'message_id': 'msg-1',
        'execution_type': 'shell',
        'payload': {'command': 'ls'},
    }


def test_http_queue_raises_on_rejection_and_missing_id():
    rejecting = HttpExecutionQueue(
        url='https://bridge.local/queue',
        client_factory=_factory(lambda request: httpx.Response(503, text='down')),
    )
    silent = HttpExecutionQueue(
        url='https://bridge.local/queue',
        client_factory=_factory(lambda request: httpx.Response(200, json={})),
    )
    request = {'type': 'shell', 'payload': {'command': 'ls'}}

    with pytest.raises(httpx.HTTPStatusError):
        rejecting.submit(room_id='room-1', agent='ATLAS', message_id='msg-1', request=request)
    with pytest.raises(ValueError):
        silent.submit(room_id='room-1', agent='ATLAS', message_id='msg-1', request=request)
