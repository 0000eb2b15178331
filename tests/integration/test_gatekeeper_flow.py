from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path

from awe_gatekeeper.adapters.base import AgentReply
from awe_gatekeeper.config import load_settings
from awe_gatekeeper.domain.models import Gate
from awe_gatekeeper.gates.base import GateResult, GateRunner
from awe_gatekeeper.repository import InMemoryChatRepository, InMemoryTaskRepository
from awe_gatekeeper.service import DeployEventInput, PostMessageInput, ProjectInput, TaskInput, build_service


class CartPage:
    console_errors: list = []
    network_errors: list = []

    def wait_for_selector(self, selector, *, timeout_ms, visible=False):
        return selector == '#cart'

    def exists(self, selector):
        return selector == '#cart'

    def is_visible(self, selector):
        return selector == '#cart'

    def text_of(self, selector):
        return '3 items' if selector == '#cart' else None

    def body_text(self):
        return 'Your cart: 3 items'

    def title(self):
        return 'Shop'

    def click(self, selector):
        pass

    def fill(self, selector, text):
        pass

    def hover(self, selector):
        pass

    def pause(self, ms):
        pass


class CartBrowser:
    @contextmanager
    def open(self, url):
        yield CartPage()


class ScriptedDeployRunner(GateRunner):
    gate = Gate.DEPLOY_CHECK

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)

    def run(self, context):
        passed = self.outcomes.pop(0)
        if passed:
            return GateResult(passed=True, summary='https://shop.example.com is live (HTTP 200); 0 routes verified')
        return GateResult(passed=False, summary='https://shop.example.com returned HTTP 502')


class RecordingChannel:
    def __init__(self):
        self.sent = []

    def send(self, *, target, message):
        self.sent.append((target, message))
        return True


class TeamInvoker:
    def invoke(self, agent, *, system_prompt, message, max_tokens=1024, timeout_seconds=None):
        if agent.name == 'Claude':
            return AgentReply(text="Here's what we discussed: ship it.", model='test-model', tokens_used=8, response_time_ms=1)
        return AgentReply(text=f'{agent.name} agrees.', model='test-model', tokens_used=5, response_time_ms=1)


def _seed_workspace(workspace: Path, *, broken: bool) -> None:
    (workspace / 'src').mkdir(parents=True, exist_ok=True)
    body = 'def add(a, b)\n    return a + b\n' if broken else 'def add(a, b):\n    return a + b\n'
    (workspace / 'src' / 'app.py').write_text(body, encoding='utf-8')


def _build(tmp_path: Path, deploy_outcomes):
    settings = replace(
        load_settings(),
        workspace_root=tmp_path,
        audio_root=tmp_path / 'audio',
        moderator_agent='Claude',
        dry_run=False,
    )
    channel = RecordingChannel()
    service = build_service(
        settings,
        task_repository=InMemoryTaskRepository(),
        chat_repository=InMemoryChatRepository(),
        invoker=TeamInvoker(),
        browser=CartBrowser(),
        channel=channel,
    )
    service.engine.runners[Gate.DEPLOY_CHECK] = ScriptedDeployRunner(deploy_outcomes)
    return service, channel


def test_task_goes_through_fix_escalation_retry_and_approval(tmp_path: Path):
    workspace = tmp_path / 'shop'
    _seed_workspace(workspace, broken=True)
    service, channel = _build(tmp_path, [False, False, False, True])
    service.create_project(
        ProjectInput(
            project_id='proj-1',
            name='Shop',
            workspace_path='shop',
            stack={'build_command': 'python3 -m compileall -q src'},
            deployment={'live_url': 'https://shop.example.com'},
            notifications={'escalation_contact': '+15550100'},
        )
    )
    task = service.create_task(
        TaskInput(
            project_id='proj-1',
            title='Add cart badge',
            acceptance_criteria=[
                {'description': 'Cart shows count', 'test_selector': '#cart', 'expected_result': '#cart contains items'}
            ],
        )
    )
    task_id = task['task_id']
    service.start_pipeline(task_id)

    build_1 = service.run_gate(task_id, gate='build_check', attempt=1)
    assert build_1['passed'] is False
    assert build_1['task_status'] == 'auto_fix'

    _seed_workspace(workspace, broken=False)
    build_2 = service.auto_fix_complete(task_id)
    assert build_2['passed'] is True
    assert build_2['attempt'] == 2
    assert build_2['task_status'] == 'deploy_check'

    deploy_1 = service.run_gate(task_id, gate='deploy_check', attempt=1)
    assert deploy_1['task_status'] == 'auto_fix'
    assert service.auto_fix_complete(task_id, gate='deploy_check')['task_status'] == 'auto_fix'
    deploy_3 = service.auto_fix_complete(task_id, gate='deploy_check')
    assert deploy_3['attempt'] == 3
    assert deploy_3['task_status'] == 'escalated'
    assert channel.sent[-1][0] == '+15550100'
    assert 'Needs your decision' in channel.sent[-1][1]

    reset = service.retry_with_instructions(task_id, instructions='Restart the preview deployment')
    assert reset['status'] == 'auto_fix'
    entry = reset['gate_status']['deploy_check']
    assert (entry['status'], entry['attempts'], entry['cycle']) == ('pending', 0, 1)
    deploy_retry = service.auto_fix_complete(task_id)
    assert deploy_retry['attempt'] == 1
    assert deploy_retry['task_status'] == 'perception_check'

    perception = service.run_gate(task_id, gate='perception_check', attempt=1)
    assert perception['passed'] is True
    assert perception['task_status'] == 'human_checkpoint'

    done = service.approve(task_id, notes='Looks right')
    assert done['status'] == 'done'
    assert done['current_gate'] is None

    deploy_rows = service.list_verifications(task_id, gate='deploy_check')
    assert [(r['cycle'], r['attempt'], r['status']) for r in deploy_rows] == [
        (0, 1, 'fail'),
        (0, 2, 'fail'),
        (0, 3, 'fail'),
        (0, 3, 'escalated'),
        (1, 1, 'pass'),
    ]
    assert [r['status'] for r in service.list_verifications(task_id, gate='build_check')] == ['fail', 'pass']
    assert service.list_verifications(task_id, gate='human_checkpoint')[0]['summary'] == 'Looks right'

    replay = service.run_gate(task_id, gate='perception_check', attempt=1)
    assert replay['status'] == 'deduped'
    assert replay['task_status'] == 'done'

    quiet = service.handle_deploy_event(DeployEventInput(project_id='proj-1', commit='feedface00'))
    assert quiet['status'] == 'no_pending_tasks'


def test_war_room_conversation_and_discussion(tmp_path: Path):
    service, _ = _build(tmp_path, [])
    for name, role in [('Claude', 'Moderator'), ('ATLAS', 'Lead Developer'), ('HERMES', 'Marketing')]:
        service.register_agent({'name': name, 'role': role, 'api_endpoint': 'http://localhost:11434'})
    service.create_room(name='War Room', routing_mode='mentioned', room_id='room-1')
    service.join_room('room-1', name='ATLAS')
    service.join_room('room-1', name='HERMES')
    service.join_room('room-1', name='Dana', participant_type='human')

    posted = service.post_message(PostMessageInput(room_id='room-1', sender_name='Dana', content='@hermes launch copy?'))
    assert posted['routing']['responded'] == ['HERMES']

    result = service.start_discussion('room-1', topic='Launch plan', deliverable='A go/no-go call')

    assert result['status'] == 'ok'
    assert result['agents_participated'] == 2
    assert result['total_tokens'] == 10
    assert result['summary_posted'] is True
    messages = service.list_messages('room-1')
    assert messages[-1]['sender_name'] == 'Claude'
    assert messages[-1]['content'].startswith("Here's what we discussed:")
    assert messages[2]['content'] == '🔄 Team Discussion: Launch plan'
