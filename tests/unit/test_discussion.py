from __future__ import annotations

import pytest

from awe_gatekeeper.adapters.base import AgentReply
from awe_gatekeeper.context import ContextBuilder
from awe_gatekeeper.directory import AgentDirectory
from awe_gatekeeper.discussion import (
    STOPPED_TEXT,
    TIME_LIMIT_TEXT,
    TOKEN_LIMIT_TEXT,
    DiscussionOrchestrator,
)
from awe_gatekeeper.errors import InputValidationError
from awe_gatekeeper.repository import InMemoryChatRepository


class ScriptedInvoker:
    def __init__(self, script=None, *, tokens=10):
        self.script = dict(script or {})
        self.tokens = tokens
        self.calls = []

    def invoke(self, agent, *, system_prompt, message, max_tokens=1024, timeout_seconds=None):
        self.calls.append({'agent': agent.name, 'system_prompt': system_prompt, 'message': message,
                           'max_tokens': max_tokens})
        value = self.script.get(agent.name, f'{agent.name} thinks we should ship.')
        if isinstance(value, Exception):
            raise value
        if callable(value):
            value = value()
        return AgentReply(text=value, model='test-model', tokens_used=self.tokens, response_time_ms=3)


class SteppingClock:
    def __init__(self, values):
        self.values = list(values)

    def __call__(self):
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


AGENTS = ['ATLAS', 'HERMES', 'ARGOS', 'MUSE']


@pytest.fixture()
def chat():
    repo = InMemoryChatRepository()
    for name in [*AGENTS, 'Claude']:
        repo.upsert_agent({'name': name, 'role': 'Engineer', 'api_endpoint': 'http://localhost:11434/api/chat'})
    room = repo.create_room(name='War Room', routing_mode='all', room_id='room-1')
    for name in AGENTS:
        repo.upsert_participant(room['room_id'], name=name, participant_type='agent')
    repo.upsert_participant(room['room_id'], name='Dana', participant_type='human')
    return repo


def _orchestrator(chat, invoker, **kwargs):
    return DiscussionOrchestrator(
        repository=chat,
        directory=AgentDirectory(chat),
        context_builder=ContextBuilder(chat),
        invoker=invoker,
        moderator_agent='Claude',
        **kwargs,
    )


def _messages(chat):
    return chat.list_recent_messages('room-1', limit=100)


def test_failed_turn_is_skipped_and_summary_still_posted(chat):
    invoker = ScriptedInvoker({'ARGOS': RuntimeError('model overloaded'), 'Claude': "Here's what we discussed: ship it."})
    orchestrator = _orchestrator(chat, invoker)

    result = orchestrator.start('room-1', topic='Launch plan', agents=list(AGENTS), discussion_id='disc-1')

    assert result == {
        'status': 'ok',
        'discussion_id': 'disc-1',
        'agents_participated': 3,
        'total_tokens': 30,
        'summary_posted': True,
    }
    senders = [m['sender_name'] for m in _messages(chat)]
    assert senders == ['System', 'ATLAS', 'HERMES', 'System', 'MUSE', 'Claude']
    notice = _messages(chat)[3]
    assert notice['content'] == '⚠️ ARGOS could not contribute: model overloaded'
    assert notice['metadata']['error'] is True
    assert notice['metadata']['discussion_id'] == 'disc-1'
    summary_call = invoker.calls[-1]
    assert summary_call['agent'] == 'Claude'
    assert '[ATLAS]:' in summary_call['message']
    assert '[MUSE]:' in summary_call['message']
    assert '[ARGOS]:' not in summary_call['message']
    assert _messages(chat)[-1]['metadata']['discussion_summary'] is True


def test_opening_message_and_turn_prompts(chat):
    invoker = ScriptedInvoker()
    orchestrator = _orchestrator(chat, invoker, max_tokens_per_agent=321)

    orchestrator.start('room-1', topic='Pricing page', deliverable='Three bullet plan', agents=['ATLAS', 'HERMES'])

    opening = _messages(chat)[0]
    assert opening['content'] == '🔄 Team Discussion: Pricing page'
    assert opening['metadata']['discussion_deliverable'] == 'Three bullet plan'
    assert opening['metadata']['discussion_agent_count'] == 2
    first, second = invoker.calls[0], invoker.calls[1]
    assert first['message'] == 'Discuss: Pricing page'
    assert first['max_tokens'] == 321
    assert 'Other agents have already said' not in first['system_prompt']
    assert '[ATLAS]: ATLAS thinks we should ship.' in second['system_prompt']


def test_default_agents_are_active_room_agents(chat):
    chat.upsert_participant('room-1', name='MUSE', participant_type='agent', active=False)
    invoker = ScriptedInvoker()

    result = _orchestrator(chat, invoker).start('room-1', topic='Retro')

    turns = [c['agent'] for c in invoker.calls if c['message'] == 'Discuss: Retro']
    assert turns == ['ATLAS', 'HERMES', 'ARGOS']
    assert result['agents_participated'] == 3


def test_moderator_in_room_only_summarizes(chat):
    chat.upsert_participant('room-1', name='Claude', participant_type='agent')
    invoker = ScriptedInvoker({'Claude': "Here's what we discussed: ship it."})

    result = _orchestrator(chat, invoker).start('room-1', topic='Retro', agents=['claude', 'ATLAS'])
    default = _orchestrator(chat, invoker).start('room-1', topic='Pricing')

    assert result['agents_participated'] == 1
    assert default['agents_participated'] == 4
    turns = [c['agent'] for c in invoker.calls if c['message'].startswith('Discuss: ')]
    assert 'Claude' not in turns
    assert [c['agent'] for c in invoker.calls].count('Claude') == 2


def test_unknown_and_human_agents_are_skipped(chat):
    chat.upsert_agent({'name': 'Dana', 'session_key': 'human:dana', 'api_endpoint': 'http://localhost:1'})
    invoker = ScriptedInvoker()

    result = _orchestrator(chat, invoker).start('room-1', topic='Retro', agents=['ghost', 'Dana', 'atlas', 'ATLAS'])

    assert result['agents_participated'] == 1


def test_token_budget_stops_turns_but_summarizes(chat):
    invoker = ScriptedInvoker(tokens=15)
    orchestrator = _orchestrator(chat, invoker, max_total_tokens=30)

    result = orchestrator.start('room-1', topic='Budget', agents=list(AGENTS))

    assert result['agents_participated'] == 2
    assert result['summary_posted'] is True
    assert TOKEN_LIMIT_TEXT in [m['content'] for m in _messages(chat)]


def test_time_budget_stops_turns(chat):
    invoker = ScriptedInvoker()
    orchestrator = _orchestrator(chat, invoker, timeout_seconds=120, clock=SteppingClock([0.0, 1.0, 500.0]))

    result = orchestrator.start('room-1', topic='Slow', agents=list(AGENTS))

    assert result['agents_participated'] == 1
    assert TIME_LIMIT_TEXT in [m['content'] for m in _messages(chat)]


def test_stop_request_ends_discussion_without_summary(chat):
    holder = {}

    def first_turn():
        holder['stopped'] = holder['orchestrator'].stop('disc-9')
        return 'First point.'

    invoker = ScriptedInvoker({'ATLAS': first_turn})
    orchestrator = _orchestrator(chat, invoker)
    holder['orchestrator'] = orchestrator

    result = orchestrator.start('room-1', topic='Stop me', agents=list(AGENTS), discussion_id='disc-9')

    assert holder['stopped'] is True
    assert result['status'] == 'stopped'
    assert result['agents_participated'] == 1
    assert result['summary_posted'] is False
    assert _messages(chat)[-1]['content'] == STOPPED_TEXT
    assert orchestrator.active() == []
    assert orchestrator.stop('disc-9') is False


def test_duplicate_running_discussion_id_is_rejected(chat):
    seen = {}

    def nested():
        try:
            seen['orchestrator'].start('room-1', topic='Again', discussion_id='disc-2')
        except InputValidationError as exc:
            seen['error'] = exc
        return 'ok'

    invoker = ScriptedInvoker({'ATLAS': nested})
    orchestrator = _orchestrator(chat, invoker)
    seen['orchestrator'] = orchestrator

    orchestrator.start('room-1', topic='Once', agents=['ATLAS'], discussion_id='disc-2')

    assert seen['error'].field == 'discussion_id'


def test_summary_skipped_without_moderator_endpoint(chat):
    chat.upsert_agent({'name': 'Claude', 'api_endpoint': None})

    result = _orchestrator(chat, ScriptedInvoker()).start('room-1', topic='No mod', agents=['ATLAS'])

    assert result['summary_posted'] is False
    assert result['status'] == 'ok'


def test_start_validates_topic_and_room(chat):
    orchestrator = _orchestrator(chat, ScriptedInvoker())

    with pytest.raises(InputValidationError):
        orchestrator.start('room-1', topic='   ')
    with pytest.raises(KeyError):
        orchestrator.start('room-missing', topic='Hello')
