from __future__ import annotations

import pytest

from awe_gatekeeper.context import NO_HISTORY_TEXT, ContextBuilder
from awe_gatekeeper.directory import AgentDirectory
from awe_gatekeeper.errors import UnknownAgentError
from awe_gatekeeper.participants import AgentProfile, Participant, mentioned_names
from awe_gatekeeper.repository import InMemoryChatRepository


def test_mentioned_names_orders_by_first_mention():
    names = ['ATLAS', 'HERMES', 'NOVA-2']

    assert mentioned_names('@hermes and @ATLAS, then @atlas again', names) == ['HERMES', 'ATLAS']
    assert mentioned_names('ping @nova-2.', names) == ['NOVA-2']
    assert mentioned_names('email atlas@example.com or @ATLASX', names) == []
    assert mentioned_names(None, names) == []


def test_agent_profile_invocability_and_prompt():
    human = AgentProfile.from_row({'name': 'Dana', 'session_key': 'human:dana', 'api_endpoint': 'http://x'})
    agent = AgentProfile.from_row({'name': 'ATLAS', 'role': 'Lead Developer', 'api_endpoint': ' http://localhost:11434 '})
    silent = AgentProfile.from_row({'name': 'MUSE'})

    assert human.is_human is True
    assert human.can_invoke is False
    assert agent.can_invoke is True
    assert agent.session_key == 'agent:atlas'
    assert silent.can_invoke is False
    assert agent.effective_system_prompt() == 'You are ATLAS, a Lead Developer on the team. Be concise and helpful.'
    custom = AgentProfile.from_row({'name': 'ATLAS', 'system_prompt': 'Be terse.'})
    assert custom.effective_system_prompt() == 'Be terse.'


def test_participant_from_row():
    participant = Participant.from_row(
        {'room_id': 'room-1', 'participant_name': ' ATLAS ', 'participant_type': 'AGENT', 'hand_raised': True}
    )
    assert participant.name == 'ATLAS'
    assert participant.is_agent is True
    assert participant.hand_raised is True


@pytest.fixture()
def chat():
    repo = InMemoryChatRepository()
    repo.upsert_agent({'name': 'ATLAS', 'role': 'Lead Developer', 'api_endpoint': 'http://localhost:11434'})
    repo.upsert_agent({'name': 'HERMES', 'api_endpoint': None})
    repo.upsert_agent({'name': 'Dana', 'session_key': 'human:dana'})
    return repo


def test_directory_resolves_case_insensitively(chat):
    directory = AgentDirectory(chat)

    assert directory.resolve('atlas').name == 'ATLAS'
    assert directory.find('ghost') is None
    with pytest.raises(UnknownAgentError) as exc:
        directory.resolve('ghost')
    assert exc.value.field == 'agent'


def test_directory_resolve_many_filters(chat):
    directory = AgentDirectory(chat)

    names = [p.name for p in directory.resolve_many(['atlas', 'ATLAS', 'ghost', 'HERMES', 'Dana'])]
    everyone = [p.name for p in directory.resolve_many(['HERMES', 'Dana'], invocable_only=False)]

    assert names == ['ATLAS']
    assert everyone == ['HERMES', 'Dana']


def test_directory_register(chat):
    profile = AgentDirectory(chat).register({'name': 'ARGOS', 'role': 'DevOps', 'api_endpoint': 'http://ollama:11434'})

    assert profile.name == 'ARGOS'
    assert profile.can_invoke is True


def test_context_builder_room_context(chat):
    room = chat.create_room(name='War Room', routing_mode='all', room_id='room-1')
    chat.upsert_participant(room['room_id'], name='ATLAS', participant_type='agent')
    chat.upsert_participant(room['room_id'], name='Dana', participant_type='human')
    builder = ContextBuilder(chat, message_limit=2)

    assert builder.build_room_context('room-1') == NO_HISTORY_TEXT

    for text in ('first', 'second', 'third'):
        chat.insert_message('room-1', sender_name='Dana', sender_type='human', content=text)
    context = builder.build_room_context('room-1', roles={'atlas': 'Lead Developer'})

    assert '- ATLAS (agent, Lead Developer)' in context
    assert '- Dana (human, Team Member)' in context
    assert 'first' not in context
    assert '] second' in context
    assert context.index('second') < context.index('third')


def test_context_builder_discussion_and_latest_human(chat):
    chat.create_room(name='War Room', routing_mode='all', room_id='room-1')
    chat.insert_message('room-1', sender_name='Dana', sender_type='human', content='Ship it?')
    chat.insert_message('room-1', sender_name='ATLAS', sender_type='agent', content='Yes.')
    builder = ContextBuilder(chat)

    assert builder.build_discussion_context('room-1') == '[Dana] Ship it?\n[ATLAS] Yes.'
    assert builder.latest_human_message('room-1')['content'] == 'Ship it?'
