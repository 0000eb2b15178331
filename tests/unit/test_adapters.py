from __future__ import annotations

import json

import httpx
import pytest

from awe_gatekeeper.adapters import (
    AgentInvocationError,
    AgentRunner,
    AnthropicAdapter,
    EndpointAdapterFactory,
    MoonshotAdapter,
    OllamaAdapter,
    OpenAICompatibleAdapter,
    detect_endpoint_kind,
)
from awe_gatekeeper.participants import AgentProfile


def _agent(endpoint, *, model=None, name='ATLAS'):
    return AgentProfile(name=name, role='Lead Developer', session_key='agent:atlas', api_endpoint=endpoint, api_model=model)


def _runner(handler, **kwargs):
    def factory(**client_kwargs):
        return httpx.Client(transport=httpx.MockTransport(handler), **client_kwargs)

    kwargs.setdefault('api_keys', {'anthropic': 'sk-ant', 'openai': 'sk-oa', 'moonshot': 'sk-ms'})
    return AgentRunner(client_factory=factory, **kwargs)


@pytest.mark.parametrize(
    ('endpoint', 'kind'),
    [
        ('https://api.anthropic.com/v1/messages', 'anthropic'),
        ('https://api.moonshot.cn/v1/chat/completions', 'moonshot'),
        ('http://localhost:11434', 'ollama'),
        ('http://172.17.0.1:11434/api/chat', 'ollama'),
        ('https://api.openai.com/v1/chat/completions', 'openai'),
        ('https://llm.internal.example/v1/chat/completions', 'openai'),
    ],
)
def test_detect_endpoint_kind(endpoint, kind):
    assert detect_endpoint_kind(endpoint) == kind


def test_detect_endpoint_kind_rejects_empty():
    with pytest.raises(ValueError):
        detect_endpoint_kind('  ')


def test_factory_picks_adapter_per_kind():
    assert isinstance(EndpointAdapterFactory.create(endpoint='https://api.anthropic.com'), AnthropicAdapter)
    assert isinstance(EndpointAdapterFactory.create(endpoint='https://api.moonshot.cn'), MoonshotAdapter)
    assert isinstance(EndpointAdapterFactory.create(endpoint='http://ollama:11434'), OllamaAdapter)
    assert isinstance(EndpointAdapterFactory.create(endpoint='https://example.com/v1'), OpenAICompatibleAdapter)


def test_adapter_urls_and_default_models():
    assert AnthropicAdapter(endpoint='https://api.anthropic.com').url() == 'https://api.anthropic.com/v1/messages'
    assert OllamaAdapter(endpoint='localhost:11434').url() == 'http://localhost:11434/api/chat'
    assert MoonshotAdapter(endpoint='https://api.moonshot.cn').url() == 'https://api.moonshot.cn/v1/chat/completions'
    assert OllamaAdapter(endpoint='http://localhost:11434').resolve_model(None) == 'qwen2.5-coder:32b'
    assert OpenAICompatibleAdapter(endpoint='x').resolve_model(' gpt-4o ') == 'gpt-4o'


def test_anthropic_request_and_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['url'] = str(request.url)
        seen['api_key'] = request.headers.get('x-api-key')
        seen['body'] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                'content': [{'type': 'text', 'text': 'Build is green.'}],
                'usage': {'input_tokens': 30, 'output_tokens': 12},
            },
        )

    reply = _runner(handler).invoke(
        _agent('https://api.anthropic.com/v1/messages'),
        system_prompt='You are ATLAS.',
        message='status?',
        max_tokens=200,
    )

    assert reply.text == 'Build is green.'
    assert reply.tokens_used == 42
    assert reply.model == 'claude-sonnet-4-5-20250929'
    assert seen['api_key'] == 'sk-ant'
    assert seen['body']['system'] == 'You are ATLAS.'
    assert seen['body']['max_tokens'] == 200


def test_ollama_request_and_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['url'] = str(request.url)
        seen['body'] = json.loads(request.content)
        return httpx.Response(200, json={'message': {'content': 'pong'}, 'eval_count': 5, 'prompt_eval_count': 7})

    reply = _runner(handler).invoke(
        _agent('http://localhost:11434', model='llama3'),
        system_prompt='sys',
        message='ping',
        max_tokens=64,
    )

    assert reply.text == 'pong'
    assert reply.tokens_used == 12
    assert seen['url'] == 'http://localhost:11434/api/chat'
    assert seen['body']['stream'] is False
    assert seen['body']['options'] == {'num_predict': 64}


def test_chat_completions_reply_without_choices():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers['authorization'] == 'Bearer sk-oa'
        return httpx.Response(200, json={'choices': []})

    reply = _runner(handler).invoke(_agent('https://api.openai.com/v1/chat/completions'), system_prompt='s', message='m')

    assert reply.text == 'No response'
    assert reply.tokens_used == 0


def test_http_error_status_raises_invocation_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text='internal')

    with pytest.raises(AgentInvocationError) as exc:
        _runner(handler).invoke(_agent('https://api.openai.com/v1/chat/completions'), system_prompt='s', message='m')

    assert exc.value.status_code == 500
    assert str(exc.value).startswith('api_error:')
    assert exc.value.agent == 'ATLAS'


def test_rate_limit_is_reported_as_provider_limit():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text='Too many requests')

    with pytest.raises(AgentInvocationError) as exc:
        _runner(handler).invoke(_agent('https://api.openai.com/v1/chat/completions'), system_prompt='s', message='m')

    assert str(exc.value).startswith('provider_limit:')


def test_timeout_is_retried_once_then_succeeds():
    calls = {'count': 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls['count'] += 1
        if calls['count'] == 1:
            raise httpx.ReadTimeout('slow', request=request)
        return httpx.Response(200, json={'message': {'content': 'late but here'}})

    reply = _runner(handler, timeout_retries=1).invoke(_agent('http://localhost:11434'), system_prompt='s', message='m')

    assert reply.text == 'late but here'
    assert calls['count'] == 2


def test_timeouts_exhausting_retries_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout('slow', request=request)

    with pytest.raises(AgentInvocationError) as exc:
        _runner(handler, timeout_retries=0).invoke(_agent('http://localhost:11434'), system_prompt='s', message='m')

    assert 'agent_timeout' in str(exc.value)


def test_connection_error_raises_without_retry():
    calls = {'count': 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls['count'] += 1
        raise httpx.ConnectError('refused', request=request)

    with pytest.raises(AgentInvocationError):
        _runner(handler, timeout_retries=3).invoke(_agent('http://localhost:11434'), system_prompt='s', message='m')
    assert calls['count'] == 1


def test_invalid_json_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text='<html>')

    with pytest.raises(AgentInvocationError):
        _runner(handler).invoke(_agent('http://localhost:11434'), system_prompt='s', message='m')


def test_missing_endpoint_raises():
    with pytest.raises(AgentInvocationError):
        _runner(lambda request: httpx.Response(200)).invoke(_agent(None), system_prompt='s', message='m')


def test_dry_run_never_calls_the_network():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError('network used in dry run')

    reply = _runner(handler, dry_run=True).invoke(_agent('http://localhost:11434'), system_prompt='s', message='hello')

    assert reply.text == '[dry-run agent=ATLAS] acknowledged: hello'
    assert reply.model == 'dry-run'


def test_api_keys_are_read_from_environment(monkeypatch):
    monkeypatch.setenv('ANTHROPIC_API_KEY', 'env-ant')
    monkeypatch.delenv('MOONSHOT_API_KEY', raising=False)
    monkeypatch.setenv('KIMI_API_KEY', 'env-kimi')

    runner = AgentRunner()

    assert runner.api_keys['anthropic'] == 'env-ant'
    assert runner.api_keys['moonshot'] == 'env-kimi'
