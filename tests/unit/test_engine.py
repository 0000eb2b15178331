from __future__ import annotations

import threading

import pytest

from awe_gatekeeper.domain.models import Gate
from awe_gatekeeper.engine import VerificationGateEngine
from awe_gatekeeper.errors import ConfigurationError, InputValidationError
from awe_gatekeeper.gates.base import GateResult, GateRunner
from awe_gatekeeper.notifications import NotificationDispatcher
from awe_gatekeeper.repository import InMemoryTaskRepository, ProjectCreateRecord, TaskCreateRecord


class ScriptedRunner(GateRunner):
    def __init__(self, gate: Gate, outcomes=None, *, require_live_url: bool = False):
        self.gate = gate
        self.outcomes = list(outcomes or [])
        self.contexts = []
        self.require_live_url = require_live_url

    def preflight(self, context):
        if self.require_live_url and not context.project.live_url:
            raise ConfigurationError('no live_url', field='deployment.live_url')

    def run(self, context):
        self.contexts.append(context)
        outcome = self.outcomes.pop(0) if self.outcomes else GateResult(passed=True, summary='ok')
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingChannel:
    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent = []

    def send(self, *, target, message):
        self.sent.append((target, message))
        return self.delivered


def _fail(summary='npm run build exited 1'):
    return GateResult(passed=False, summary=summary)


def _pass(summary='ok'):
    return GateResult(passed=True, summary=summary)


def build_engine(
    *,
    human_checkpoint: bool = True,
    live_url: str = 'https://shop.example.com',
    runners=None,
    repository=None,
):
    repo = repository or InMemoryTaskRepository()
    repo.create_project(
        ProjectCreateRecord(
            project_id='proj-1',
            name='Shop',
            stack={'build_command': 'npm run build'},
            deployment={'live_url': live_url},
            agents={'primary_dev': 'ATLAS', 'infra': 'ARGOS'},
            notifications={'escalation_contact': '+15550100'},
            human_checkpoint=human_checkpoint,
        )
    )
    channel = RecordingChannel()
    dispatcher = NotificationDispatcher(repo, channel=channel)
    runners = runners or {
        Gate.BUILD_CHECK: ScriptedRunner(Gate.BUILD_CHECK),
        Gate.DEPLOY_CHECK: ScriptedRunner(Gate.DEPLOY_CHECK, require_live_url=True),
        Gate.PERCEPTION_CHECK: ScriptedRunner(Gate.PERCEPTION_CHECK, require_live_url=True),
    }
    engine = VerificationGateEngine(repository=repo, dispatcher=dispatcher, runners=runners)
    return engine, repo, channel, runners


def new_task(repo, engine, *, start: bool = True) -> str:
    task = repo.create_task(
        TaskCreateRecord(
            project_id='proj-1',
            title='Checkout button',
            acceptance_criteria=[{'id': '1', 'description': 'Pay button', 'test_selector': '#pay'}],
        )
    )
    if start:
        engine.start_pipeline(task['task_id'])
    return task['task_id']


def test_build_failure_on_first_attempt_routes_task_to_auto_fix():
    engine, repo, _, runners = build_engine()
    runners[Gate.BUILD_CHECK].outcomes = [_fail()]
    task_id = new_task(repo, engine)

    result = engine.run_gate(task_id, 'build_check', 1)

    assert result['status'] == 'ok'
    assert result['passed'] is False
    assert result['task_status'] == 'auto_fix'
    task = repo.get_task(task_id)
    assert task['status'] == 'auto_fix'
    assert task['gate_status']['build_check']['status'] == 'failed'
    assert task['gate_status']['build_check']['attempts'] == 1
    warnings = [n for n in repo.list_notifications() if n['type'] == 'warning']
    assert len(warnings) == 1
    assert 'ATLAS' in warnings[0]['message']
    [record] = repo.list_verifications(task_id, gate='build_check')
    assert record['status'] == 'fail'
    assert record['verified_by'] == 'ATHENA'
    assert record['auto_fix_action'] == 'routed to ATLAS'


def test_third_failed_attempt_escalates_and_forwards_to_contact():
    engine, repo, channel, runners = build_engine()
    runners[Gate.BUILD_CHECK].outcomes = [_fail(), _fail(), _fail('still broken')]
    task_id = new_task(repo, engine)

    for attempt in (1, 2, 3):
        result = engine.run_gate(task_id, Gate.BUILD_CHECK, attempt)

    assert result['task_status'] == 'escalated'
    task = repo.get_task(task_id)
    assert task['status'] == 'escalated'
    assert task['gate_status']['build_check']['attempts'] == 3
    statuses = [r['status'] for r in repo.list_verifications(task_id)]
    assert statuses == ['fail', 'fail', 'fail', 'escalated']
    escalated = repo.list_verifications(task_id)[-1]
    assert escalated['verified_by'] == 'system'
    assert escalated['escalation_context']['last_error'] == 'still broken'

    escalations = [n for n in repo.list_notifications() if n['type'] == 'escalation']
    assert len(escalations) == 1
    assert escalations[0]['forwarded'] is True
    assert channel.sent[-1][0] == '+15550100'
    assert 'build_check after 3 attempts' in channel.sent[-1][1]


def test_passing_gates_advance_to_human_checkpoint_then_done():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)

    assert engine.run_gate(task_id, 'build_check', 1)['task_status'] == 'deploy_check'
    assert repo.get_task(task_id)['current_gate'] == 'deploy_check'
    assert engine.run_gate(task_id, 'deploy_check', 1)['task_status'] == 'perception_check'
    assert engine.run_gate(task_id, 'perception_check', 1)['task_status'] == 'human_checkpoint'

    row = engine.approve(task_id, notes='looks right')
    assert row['status'] == 'done'
    assert row['current_gate'] is None
    human = repo.list_verifications(task_id, gate='human_checkpoint')
    assert [r['status'] for r in human] == ['pass']
    assert human[0]['verified_by'] == 'human'


def test_project_without_human_checkpoint_finishes_after_perception():
    engine, repo, _, _ = build_engine(human_checkpoint=False)
    task_id = new_task(repo, engine)

    engine.run_gate(task_id, 'build_check', 1)
    engine.run_gate(task_id, 'deploy_check', 1)
    result = engine.run_gate(task_id, 'perception_check', 1)

    assert result['task_status'] == 'done'
    assert repo.get_task(task_id)['current_gate'] is None


def test_repeated_trigger_for_same_attempt_is_deduped():
    engine, repo, _, runners = build_engine()
    runners[Gate.BUILD_CHECK].outcomes = [_fail()]
    task_id = new_task(repo, engine)

    engine.run_gate(task_id, 'build_check', 1)
    again = engine.run_gate(task_id, 'build_check', 1)

    assert again == {
        'status': 'deduped',
        'gate': 'build_check',
        'passed': False,
        'attempt': 1,
        'task_status': 'auto_fix',
    }
    assert len(runners[Gate.BUILD_CHECK].contexts) == 1
    assert len(repo.list_verifications(task_id)) == 1
    assert [n['type'] for n in repo.list_notifications()].count('warning') == 1


def test_trigger_for_passed_gate_is_deduped_as_passed():
    engine, repo, _, runners = build_engine()
    task_id = new_task(repo, engine)
    engine.run_gate(task_id, 'build_check', 1)

    result = engine.run_gate(task_id, 'build_check', 2)

    assert result['status'] == 'deduped'
    assert result['passed'] is True
    assert result['task_status'] == 'deploy_check'
    assert len(runners[Gate.BUILD_CHECK].contexts) == 1


def test_concurrent_trigger_while_gate_running_is_deduped():
    started = threading.Event()
    release = threading.Event()

    class BlockingRunner(GateRunner):
        gate = Gate.BUILD_CHECK

        def run(self, context):
            started.set()
            release.wait(timeout=5)
            return _pass()

    engine, repo, _, _ = build_engine(
        runners={
            Gate.BUILD_CHECK: BlockingRunner(),
            Gate.DEPLOY_CHECK: ScriptedRunner(Gate.DEPLOY_CHECK),
            Gate.PERCEPTION_CHECK: ScriptedRunner(Gate.PERCEPTION_CHECK),
        }
    )
    task_id = new_task(repo, engine)
    results = {}

    worker = threading.Thread(target=lambda: results.setdefault('first', engine.run_gate(task_id, 'build_check', 1)))
    worker.start()
    assert started.wait(timeout=5)
    second = engine.run_gate(task_id, 'build_check', 1)
    release.set()
    worker.join(timeout=5)

    assert second['status'] == 'deduped'
    assert second['passed'] is None
    assert results['first']['status'] == 'ok'
    assert len(repo.list_verifications(task_id)) == 1


@pytest.mark.parametrize('attempt', [0, 4, 'two'])
def test_attempt_outside_bounds_is_rejected(attempt):
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)

    with pytest.raises(InputValidationError) as exc:
        engine.run_gate(task_id, 'build_check', attempt)
    assert exc.value.field == 'attempt'


def test_skipping_an_attempt_is_rejected():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)

    with pytest.raises(InputValidationError) as exc:
        engine.run_gate(task_id, 'build_check', 2)
    assert 'next attempt for build_check is 1' in str(exc.value)


def test_gate_cannot_run_before_earlier_gate_passes():
    engine, repo, _, runners = build_engine()
    task_id = new_task(repo, engine)

    with pytest.raises(InputValidationError) as exc:
        engine.run_gate(task_id, 'deploy_check', 1)
    assert exc.value.field == 'gate'
    assert runners[Gate.DEPLOY_CHECK].contexts == []


def test_board_task_must_enter_pipeline_first():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine, start=False)

    with pytest.raises(InputValidationError) as exc:
        engine.run_gate(task_id, 'build_check', 1)
    assert exc.value.field == 'status'


def test_unknown_task_gate_and_manual_gate_are_rejected():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)

    with pytest.raises(KeyError):
        engine.run_gate('task-missing', 'build_check', 1)
    with pytest.raises(InputValidationError):
        engine.run_gate(task_id, 'smoke_check', 1)
    with pytest.raises(InputValidationError):
        engine.run_gate(task_id, 'human_checkpoint', 1)


def test_missing_live_url_rejects_request_without_consuming_attempt():
    engine, repo, _, runners = build_engine(live_url='')
    task_id = new_task(repo, engine)
    engine.run_gate(task_id, 'build_check', 1)

    with pytest.raises(ConfigurationError):
        engine.run_gate(task_id, 'deploy_check', 1)

    task = repo.get_task(task_id)
    assert task['gate_status']['deploy_check']['attempts'] == 0
    assert task['gate_status']['deploy_check']['status'] == 'pending'
    assert runners[Gate.DEPLOY_CHECK].contexts == []


def test_unknown_project_override_is_a_configuration_error():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)

    with pytest.raises(ConfigurationError):
        engine.run_gate(task_id, 'build_check', 1, project_id='proj-missing')


def test_runner_crash_becomes_failed_verification():
    engine, repo, _, runners = build_engine()
    runners[Gate.BUILD_CHECK].outcomes = [RuntimeError('boom')]
    task_id = new_task(repo, engine)

    result = engine.run_gate(task_id, 'build_check', 1)

    assert result['passed'] is False
    assert result['summary'] == 'RuntimeError: boom'
    [record] = repo.list_verifications(task_id)
    assert record['details']['error_type'] == 'RuntimeError'


class FlakyRepository(InMemoryTaskRepository):
    """Raises on the first *failures* gate updates, like a dropped connection."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    def update_gate(self, task_id, *, gate, entry, task_changes=None):
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError('db connection reset')
        return super().update_gate(task_id, gate=gate, entry=entry, task_changes=task_changes)


def test_store_error_after_claim_records_failed_attempt():
    engine, repo, _, runners = build_engine(repository=FlakyRepository(failures=1))
    runners[Gate.BUILD_CHECK].outcomes = [_pass(), _pass()]
    task_id = new_task(repo, engine)

    result = engine.run_gate(task_id, 'build_check', 1)

    assert result['passed'] is False
    assert result['task_status'] == 'auto_fix'
    assert 'db connection reset' in result['summary']
    entry = repo.get_task(task_id)['gate_status']['build_check']
    assert (entry['status'], entry['attempts']) == ('failed', 1)
    assert engine.run_gate(task_id, 'build_check', 1)['status'] == 'deduped'

    retried = engine.auto_fix_complete(task_id)

    assert retried['attempt'] == 2
    assert retried['passed'] is True
    assert repo.get_task(task_id)['status'] == 'deploy_check'


def test_gate_left_running_is_recovered_through_auto_fix():
    engine, repo, _, runners = build_engine(repository=FlakyRepository(failures=2))
    runners[Gate.BUILD_CHECK].outcomes = [_pass(), _pass()]
    task_id = new_task(repo, engine)

    with pytest.raises(RuntimeError, match='db connection reset'):
        engine.run_gate(task_id, 'build_check', 1)
    assert repo.get_task(task_id)['gate_status']['build_check']['status'] == 'running'
    assert engine.run_gate(task_id, 'build_check', 1)['status'] == 'deduped'
    with pytest.raises(InputValidationError):
        engine.auto_fix_complete(task_id)
    with pytest.raises(InputValidationError) as fresh:
        engine.recover_stale_gate(task_id, stale_after_seconds=3600)
    assert fresh.value.field == 'started_at'

    recovered = engine.recover_stale_gate(task_id, stale_after_seconds=0)

    assert recovered['passed'] is False
    assert recovered['task_status'] == 'auto_fix'
    assert 'abandoned while running' in recovered['summary']
    assert [r['status'] for r in repo.list_verifications(task_id)] == ['fail']
    assert 'gate_recovered' in [e['type'] for e in repo.list_events(task_id)]
    assert engine.auto_fix_complete(task_id)['task_status'] == 'deploy_check'


def test_recover_rejects_gate_that_is_not_running():
    engine, repo, _, runners = build_engine()
    runners[Gate.BUILD_CHECK].outcomes = [_fail()]
    task_id = new_task(repo, engine)
    engine.run_gate(task_id, 'build_check', 1)

    with pytest.raises(InputValidationError) as exc:
        engine.recover_stale_gate(task_id, stale_after_seconds=0)

    assert exc.value.field == 'status'


def test_auto_fix_complete_reruns_current_gate_with_next_attempt():
    engine, repo, _, runners = build_engine()
    runners[Gate.BUILD_CHECK].outcomes = [_fail(), _pass()]
    task_id = new_task(repo, engine)
    engine.run_gate(task_id, 'build_check', 1)

    result = engine.auto_fix_complete(task_id, gate='build_check')

    assert result['attempt'] == 2
    assert result['passed'] is True
    assert repo.get_task(task_id)['status'] == 'deploy_check'


def test_auto_fix_complete_rejects_wrong_gate_and_wrong_status():
    engine, repo, _, runners = build_engine()
    runners[Gate.BUILD_CHECK].outcomes = [_fail()]
    task_id = new_task(repo, engine)

    with pytest.raises(InputValidationError):
        engine.auto_fix_complete(task_id)

    engine.run_gate(task_id, 'build_check', 1)
    with pytest.raises(InputValidationError) as exc:
        engine.auto_fix_complete(task_id, gate='deploy_check')
    assert exc.value.field == 'gate'


def _escalate(engine, repo, runners) -> str:
    runners[Gate.BUILD_CHECK].outcomes = [_fail(), _fail(), _fail()]
    task_id = new_task(repo, engine)
    for attempt in (1, 2, 3):
        engine.run_gate(task_id, 'build_check', attempt)
    return task_id


def test_retry_with_instructions_starts_a_new_cycle():
    engine, repo, _, runners = build_engine()
    task_id = _escalate(engine, repo, runners)

    row = engine.retry_with_instructions(task_id, instructions='pin node to 20')

    assert row['status'] == 'auto_fix'
    assert row['human_notes'] == 'pin node to 20'
    entry = row['gate_status']['build_check']
    assert entry['attempts'] == 0
    assert entry['status'] == 'pending'
    assert entry['cycle'] == 1

    result = engine.auto_fix_complete(task_id)
    assert result['attempt'] == 1
    assert result['passed'] is True
    assert runners[Gate.BUILD_CHECK].contexts[-1].instructions == 'pin node to 20'
    cycles = [(r['cycle'], r['status']) for r in repo.list_verifications(task_id)]
    assert cycles[-1] == (1, 'pass')


def test_old_cycle_attempt_numbers_do_not_dedupe_new_cycle():
    engine, repo, _, runners = build_engine()
    task_id = _escalate(engine, repo, runners)
    engine.retry_with_instructions(task_id, instructions='try again')
    runners[Gate.BUILD_CHECK].outcomes = [_fail()]

    result = engine.run_gate(task_id, 'build_check', 1)

    assert result['status'] == 'ok'
    assert result['passed'] is False


def test_reassign_changes_agent_and_resets_gate():
    engine, repo, _, runners = build_engine()
    task_id = _escalate(engine, repo, runners)

    row = engine.reassign(task_id, agent='HERMES')

    assert row['assigned_agent'] == 'HERMES'
    assert row['status'] == 'auto_fix'
    assert row['gate_status']['build_check']['attempts'] == 0
    types = [e['type'] for e in repo.list_events(task_id)]
    assert 'task_reassigned' in types
    assert types.count('gate_reset') == 1


def test_adjust_criteria_returns_task_to_the_gate():
    engine, repo, _, runners = build_engine()
    task_id = _escalate(engine, repo, runners)

    row = engine.adjust_criteria(
        task_id,
        acceptance_criteria=[{'description': 'Header renders', 'test_selector': 'header'}],
    )

    assert row['status'] == 'build_check'
    assert row['acceptance_criteria'][0]['id'] == '1'
    assert row['acceptance_criteria'][0]['test_selector'] == 'header'
    with pytest.raises(InputValidationError):
        engine.adjust_criteria(task_id, acceptance_criteria=[])


def test_reset_operations_require_escalated_task():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)

    with pytest.raises(InputValidationError):
        engine.retry_with_instructions(task_id, instructions='x')
    with pytest.raises(InputValidationError):
        engine.reassign(task_id, agent='HERMES')


def test_reject_requires_notes_and_marks_task_rejected():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)
    for gate in ('build_check', 'deploy_check', 'perception_check'):
        engine.run_gate(task_id, gate, 1)

    with pytest.raises(InputValidationError):
        engine.reject(task_id, notes='  ')
    row = engine.reject(task_id, notes='colour is wrong')

    assert row['status'] == 'rejected'
    assert row['human_notes'] == 'colour is wrong'
    assert repo.list_notifications()[0]['type'] == 'warning'


def test_approve_outside_checkpoint_is_rejected():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)

    with pytest.raises(InputValidationError):
        engine.approve(task_id)


def test_start_pipeline_only_from_board_statuses():
    engine, repo, _, _ = build_engine()
    task_id = new_task(repo, engine)

    with pytest.raises(InputValidationError):
        engine.start_pipeline(task_id)
    assert repo.get_task(task_id)['status'] == 'build_check'


def test_gate_run_event_trail():
    engine, repo, _, runners = build_engine()
    runners[Gate.BUILD_CHECK].outcomes = [_fail()]
    task_id = new_task(repo, engine)

    engine.run_gate(task_id, 'build_check', 1)

    types = [e['type'] for e in repo.list_events(task_id)]
    assert types == [
        'pipeline_started',
        'status_changed',
        'gate_started',
        'gate_failed',
        'auto_fix_requested',
        'status_changed',
    ]
