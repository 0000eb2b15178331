from __future__ import annotations

from datetime import datetime, timezone

from awe_gatekeeper.domain.events import EventType
from awe_gatekeeper.domain.models import (
    AcceptanceCriterion,
    BOARD_STATUSES,
    GATE_SEQUENCE,
    GATE_VERIFIERS,
    Gate,
    GateState,
    MAX_GATE_ATTEMPTS,
    NotificationType,
    PIPELINE_ENTRY_STATUSES,
    ProjectConfig,
    TaskStatus,
    VerificationOutcome,
    empty_gate_entry,
    initial_gate_status,
    normalize_gate,
)
from awe_gatekeeper.errors import ConfigurationError, InputValidationError
from awe_gatekeeper.gates.base import GateContext, GateResult, GateRunner, run_safely
from awe_gatekeeper.notifications import NotificationDispatcher
from awe_gatekeeper.observability import get_logger, set_task_context, traced_span
from awe_gatekeeper.repository import TaskRepository, VerificationCreateRecord

_log = get_logger('awe_gatekeeper.engine')

ESCALATION_VERIFIER = 'system'


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class VerificationGateEngine:
    """Drive tasks through build, deploy and perception gates.

    Each automated gate gets at most ``MAX_GATE_ATTEMPTS`` attempts per reset
    cycle. A failed attempt hands the task to the responsible agent in
    ``auto_fix``; the last failed attempt escalates to a human. Attempts are
    claimed atomically in the repository so a repeated trigger for the same
    attempt is a no-op.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        dispatcher: NotificationDispatcher,
        runners: dict[Gate, GateRunner],
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.runners = dict(runners)

    # Lookups

    def _task(self, task_id: str) -> dict:
        row = self.repository.get_task(task_id)
        if row is None:
            raise KeyError(task_id)
        return row

    def _project(self, project_id: str) -> ProjectConfig:
        row = self.repository.get_project(project_id)
        if row is None:
            raise ConfigurationError(f'unknown project: {project_id}', field='project_id')
        return ProjectConfig.from_row(row)

    @staticmethod
    def _entry(task: dict, gate: Gate) -> dict:
        return dict((task.get('gate_status') or {}).get(gate.value) or empty_gate_entry())

    @staticmethod
    def _parse_attempt(value) -> int:
        try:
            attempt = int(value)
        except (TypeError, ValueError) as exc:
            raise InputValidationError('attempt must be an integer', field='attempt') from exc
        if attempt < 1 or attempt > MAX_GATE_ATTEMPTS:
            raise InputValidationError(
                f'attempt must be between 1 and {MAX_GATE_ATTEMPTS}',
                field='attempt',
            )
        return attempt

    @staticmethod
    def _criteria(raw: list | None) -> list[AcceptanceCriterion]:
        out = []
        for idx, item in enumerate(raw or []):
            if isinstance(item, AcceptanceCriterion):
                out.append(item)
            elif isinstance(item, dict):
                out.append(AcceptanceCriterion.from_dict(item, index=idx))
            else:
                raise InputValidationError('acceptance criteria must be objects', field='acceptance_criteria')
        return out

    def _status_changed(self, task_id: str, before: str, after: str) -> None:
        if before != after:
            self.repository.append_event(
                task_id,
                event_type=EventType.STATUS_CHANGED,
                payload={'from': before, 'to': after},
            )

    # Gate runs

    def run_gate(
        self,
        task_id: str,
        gate: str | Gate,
        attempt: int,
        *,
        project_id: str | None = None,
        acceptance_criteria: list | None = None,
    ) -> dict:
        try:
            gate = normalize_gate(gate)
        except ValueError as exc:
            raise InputValidationError(str(exc), field='gate') from exc
        task = self._task(task_id)
        project = self._project(project_id or task['project_id'])
        if not gate.is_automated:
            raise InputValidationError(f'{gate.value} is not an automated gate', field='gate')
        attempt = self._parse_attempt(attempt)
        set_task_context(task_id)

        entry = self._entry(task, gate)
        recorded = int(entry.get('attempts') or 0)
        state = str(entry.get('status') or GateState.PENDING.value)
        if attempt <= recorded or state in {GateState.PASSED.value, GateState.RUNNING.value}:
            return self._deduped(task, gate, attempt, entry)

        status = TaskStatus(task['status'])
        if status.is_terminal or status in BOARD_STATUSES:
            raise InputValidationError(
                f'task {task_id} is not in the verification pipeline (status={status.value})',
                field='status',
            )
        for earlier in GATE_SEQUENCE[:GATE_SEQUENCE.index(gate)]:
            if self._entry(task, earlier).get('status') != GateState.PASSED.value:
                raise InputValidationError(
                    f'{gate.value} cannot run before {earlier.value} has passed',
                    field='gate',
                )
        if attempt != recorded + 1:
            raise InputValidationError(
                f'attempt {attempt} is out of sequence; next attempt for {gate.value} is {recorded + 1}',
                field='attempt',
            )

        runner = self.runners.get(gate)
        if runner is None:
            raise ConfigurationError(f'no runner configured for {gate.value}', field='gate')
        criteria = self._criteria(
            acceptance_criteria if acceptance_criteria is not None else task.get('acceptance_criteria')
        )
        context = GateContext(
            task_id=task_id,
            gate=gate,
            attempt=attempt,
            project=project,
            acceptance_criteria=criteria,
            instructions=task.get('human_notes'),
        )
        runner.preflight(context)

        claimed = self.repository.claim_gate_attempt(task_id, gate=gate.value, attempt=attempt)
        if claimed is None:
            latest = self._task(task_id)
            return self._deduped(latest, gate, attempt, self._entry(latest, gate))

        cycle = int(self._entry(claimed, gate).get('cycle') or 0)
        # From here on the gate is running; every exit must record an outcome for it.
        try:
            self.repository.append_event(
                task_id,
                event_type=EventType.GATE_STARTED,
                payload={'gate': gate.value, 'attempt': attempt, 'cycle': cycle},
            )
            self._status_changed(task_id, task['status'], gate.value)
            _log.info('gate_started task_id=%s gate=%s attempt=%d cycle=%d', task_id, gate.value, attempt, cycle)
            with traced_span('gate.run', {'task_id': task_id, 'gate': gate.value, 'attempt': attempt}):
                result = run_safely(runner, context)
            task_status = self._record_outcome(claimed, project, gate, attempt, cycle, result)
        except Exception as exc:
            _log.exception('gate_record_failed task_id=%s gate=%s attempt=%d', task_id, gate.value, attempt)
            task_status, result = self._close_aborted_attempt(task_id, project, gate, attempt, cycle, exc)

        return {
            'status': 'ok',
            'gate': gate.value,
            'passed': result.passed,
            'attempt': attempt,
            'task_status': task_status,
            'summary': result.summary,
        }

    def _record_outcome(
        self,
        task: dict,
        project: ProjectConfig,
        gate: Gate,
        attempt: int,
        cycle: int,
        result: GateResult,
    ) -> str:
        if result.passed:
            return self._record_pass(task, project, gate, attempt, cycle, result)
        if attempt < MAX_GATE_ATTEMPTS:
            return self._record_fail(task, project, gate, attempt, cycle, result)
        return self._record_escalation(task, project, gate, attempt, cycle, result)

    @staticmethod
    def _still_running(entry: dict, attempt: int) -> bool:
        return entry.get('status') == GateState.RUNNING.value and int(entry.get('attempts') or 0) == attempt

    def _close_aborted_attempt(
        self,
        task_id: str,
        project: ProjectConfig,
        gate: Gate,
        attempt: int,
        cycle: int,
        exc: Exception,
    ) -> tuple[str, GateResult]:
        """Record a claimed attempt that blew up as a failed one.

        When the outcome already reached the store before the error, it is
        left as written. If recording the failure raises too, the gate stays
        ``running`` until :meth:`recover_stale_gate` closes it.
        """
        latest = self._task(task_id)
        entry = self._entry(latest, gate)
        if not self._still_running(entry, attempt):
            passed = entry.get('status') == GateState.PASSED.value
            return latest['status'], GateResult(passed=passed, summary=str(entry.get('last_error') or exc))
        result = GateResult(passed=False, summary=f'{gate.value} run aborted: {exc}')
        return self._record_outcome(latest, project, gate, attempt, cycle, result), result

    def recover_stale_gate(self, task_id: str, *, stale_after_seconds: int) -> dict:
        """Close a gate attempt left ``running`` by a crashed worker.

        The attempt is recorded as failed, so the task goes to ``auto_fix``
        (or escalates on the last attempt) and the usual retries apply.
        """
        task = self._task(task_id)
        current = task.get('current_gate')
        if not current:
            raise InputValidationError(f'task {task_id} has no gate in play', field='current_gate')
        gate = normalize_gate(current)
        entry = self._entry(task, gate)
        attempt = int(entry.get('attempts') or 0)
        if entry.get('status') != GateState.RUNNING.value:
            raise InputValidationError(
                f'{gate.value} is not running (state={entry.get("status")})',
                field='status',
            )
        started_at = entry.get('started_at')
        if started_at:
            age = (datetime.now(timezone.utc) - datetime.fromisoformat(str(started_at))).total_seconds()
            if age < max(0, int(stale_after_seconds)):
                raise InputValidationError(
                    f'{gate.value} attempt {attempt} has only been running for {int(age)}s',
                    field='started_at',
                )
        project = self._project(task['project_id'])
        cycle = int(entry.get('cycle') or 0)
        result = GateResult(
            passed=False,
            summary=f'{gate.value} attempt {attempt} abandoned while running (started {started_at or "unknown"})',
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.GATE_RECOVERED,
            payload={'gate': gate.value, 'attempt': attempt, 'cycle': cycle, 'started_at': started_at},
        )
        _log.warning('gate_recovered task_id=%s gate=%s attempt=%d started_at=%s',
                     task_id, gate.value, attempt, started_at)
        task_status = self._record_outcome(task, project, gate, attempt, cycle, result)
        return {
            'status': 'ok',
            'gate': gate.value,
            'passed': False,
            'attempt': attempt,
            'task_status': task_status,
            'summary': result.summary,
        }

    def _deduped(self, task: dict, gate: Gate, attempt: int, entry: dict) -> dict:
        cycle = int(entry.get('cycle') or 0)
        passed = None
        for row in self.repository.list_verifications(task['task_id'], gate=gate.value):
            if int(row['cycle']) != cycle or int(row['attempt']) != attempt:
                continue
            if row['status'] == VerificationOutcome.PASS.value:
                passed = True
            elif passed is None:
                passed = False
        if passed is None and entry.get('status') == GateState.PASSED.value:
            passed = True
        self.repository.append_event(
            task['task_id'],
            event_type=EventType.GATE_DEDUPED,
            payload={'gate': gate.value, 'attempt': attempt, 'cycle': cycle, 'gate_state': entry.get('status')},
        )
        _log.info('gate_deduped task_id=%s gate=%s attempt=%d state=%s',
                  task['task_id'], gate.value, attempt, entry.get('status'))
        return {
            'status': 'deduped',
            'gate': gate.value,
            'passed': passed,
            'attempt': attempt,
            'task_status': task['status'],
        }

    def _record_pass(
        self,
        task: dict,
        project: ProjectConfig,
        gate: Gate,
        attempt: int,
        cycle: int,
        result: GateResult,
    ) -> str:
        task_id = task['task_id']
        next_status = gate.next_status(human_checkpoint=project.human_checkpoint)
        next_gate = next_status.gate
        self.repository.update_gate(
            task_id,
            gate=gate.value,
            entry={
                'status': GateState.PASSED.value,
                'attempts': attempt,
                'passed_at': _utc_now_iso(),
            },
            task_changes={
                'status': next_status.value,
                'current_gate': next_gate.value if next_gate else None,
            },
        )
        self.repository.append_verification(
            VerificationCreateRecord(
                task_id=task_id,
                gate=gate.value,
                attempt=attempt,
                cycle=cycle,
                verified_by=GATE_VERIFIERS[gate],
                status=VerificationOutcome.PASS.value,
                summary=result.summary,
                details=result.to_details(),
            )
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.GATE_PASSED,
            payload={'gate': gate.value, 'attempt': attempt, 'summary': result.summary},
        )
        self._status_changed(task_id, gate.value, next_status.value)
        self.dispatcher.emit(
            NotificationType.INFO,
            f'{gate.value} passed (attempt {attempt}). {result.summary}',
            project_id=project.project_id,
            task_id=task_id,
        )
        _log.info('gate_passed task_id=%s gate=%s attempt=%d next=%s',
                  task_id, gate.value, attempt, next_status.value)
        return next_status.value

    def _record_fail(
        self,
        task: dict,
        project: ProjectConfig,
        gate: Gate,
        attempt: int,
        cycle: int,
        result: GateResult,
    ) -> str:
        task_id = task['task_id']
        agent = project.fix_agent_for(gate)
        self.repository.update_gate(
            task_id,
            gate=gate.value,
            entry={
                'status': GateState.FAILED.value,
                'attempts': attempt,
                'last_error': result.summary,
            },
            task_changes={'status': TaskStatus.AUTO_FIX.value},
        )
        self.repository.append_verification(
            VerificationCreateRecord(
                task_id=task_id,
                gate=gate.value,
                attempt=attempt,
                cycle=cycle,
                verified_by=GATE_VERIFIERS[gate],
                status=VerificationOutcome.FAIL.value,
                summary=result.summary,
                details=result.to_details(),
                auto_fix_action=f'routed to {agent}',
            )
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.GATE_FAILED,
            payload={'gate': gate.value, 'attempt': attempt, 'summary': result.summary},
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.AUTO_FIX_REQUESTED,
            payload={'gate': gate.value, 'agent': agent, 'next_attempt': attempt + 1},
        )
        self._status_changed(task_id, gate.value, TaskStatus.AUTO_FIX.value)
        self.dispatcher.emit(
            NotificationType.WARNING,
            f'{gate.value} failed (attempt {attempt}/{MAX_GATE_ATTEMPTS}). '
            f'{agent} auto-fixing. Error: {result.summary}',
            project_id=project.project_id,
            task_id=task_id,
        )
        _log.warning('gate_failed task_id=%s gate=%s attempt=%d agent=%s', task_id, gate.value, attempt, agent)
        return TaskStatus.AUTO_FIX.value

    def _record_escalation(
        self,
        task: dict,
        project: ProjectConfig,
        gate: Gate,
        attempt: int,
        cycle: int,
        result: GateResult,
    ) -> str:
        task_id = task['task_id']
        details = result.to_details()
        self.repository.update_gate(
            task_id,
            gate=gate.value,
            entry={
                'status': GateState.FAILED.value,
                'attempts': attempt,
                'last_error': result.summary,
            },
            task_changes={'status': TaskStatus.ESCALATED.value},
        )
        self.repository.append_verification(
            VerificationCreateRecord(
                task_id=task_id,
                gate=gate.value,
                attempt=attempt,
                cycle=cycle,
                verified_by=GATE_VERIFIERS[gate],
                status=VerificationOutcome.FAIL.value,
                summary=result.summary,
                details=details,
            )
        )
        self.repository.append_verification(
            VerificationCreateRecord(
                task_id=task_id,
                gate=gate.value,
                attempt=attempt,
                cycle=cycle,
                verified_by=ESCALATION_VERIFIER,
                status=VerificationOutcome.ESCALATED.value,
                summary=f'Escalated after {attempt} failed attempts',
                escalation_context={'gate': gate.value, 'last_error': result.summary, 'details': details},
            )
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.GATE_FAILED,
            payload={'gate': gate.value, 'attempt': attempt, 'summary': result.summary},
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.GATE_ESCALATED,
            payload={'gate': gate.value, 'attempts': attempt},
        )
        self._status_changed(task_id, gate.value, TaskStatus.ESCALATED.value)
        self.dispatcher.emit(
            NotificationType.ESCALATION,
            f'Task failed {gate.value} after {attempt} attempts. Needs your decision.',
            project_id=project.project_id,
            task_id=task_id,
            details=details,
            target=project.escalation_contact or None,
        )
        _log.warning('gate_escalated task_id=%s gate=%s attempts=%d', task_id, gate.value, attempt)
        return TaskStatus.ESCALATED.value

    def auto_fix_complete(self, task_id: str, *, gate: str | Gate | None = None) -> dict:
        task = self._task(task_id)
        if task['status'] != TaskStatus.AUTO_FIX.value:
            raise InputValidationError(
                f'task {task_id} is not in auto_fix (status={task["status"]})',
                field='status',
            )
        current = task.get('current_gate')
        if not current:
            raise InputValidationError(f'task {task_id} has no gate in play', field='current_gate')
        current_gate = normalize_gate(current)
        if gate is not None:
            try:
                requested = normalize_gate(gate)
            except ValueError as exc:
                raise InputValidationError(str(exc), field='gate') from exc
            if requested is not current_gate:
                raise InputValidationError(
                    f'auto-fix was requested for {current_gate.value}, not {requested.value}',
                    field='gate',
                )
        attempt = int(self._entry(task, current_gate).get('attempts') or 0) + 1
        return self.run_gate(task_id, current_gate, attempt)

    # Pipeline entry and human checkpoint

    def start_pipeline(self, task_id: str) -> dict:
        task = self._task(task_id)
        status = TaskStatus(task['status'])
        if status not in PIPELINE_ENTRY_STATUSES:
            raise InputValidationError(
                f'task {task_id} cannot enter the pipeline from {status.value}',
                field='status',
            )
        row = self.repository.update_task(
            task_id,
            {
                'status': TaskStatus.BUILD_CHECK.value,
                'current_gate': Gate.BUILD_CHECK.value,
                'gate_status': initial_gate_status(),
            },
        )
        self.repository.append_event(task_id, event_type=EventType.PIPELINE_STARTED, payload={})
        self._status_changed(task_id, status.value, TaskStatus.BUILD_CHECK.value)
        _log.info('pipeline_started task_id=%s', task_id)
        return row

    def _checkpoint_task(self, task_id: str) -> dict:
        task = self._task(task_id)
        if task['status'] != TaskStatus.HUMAN_CHECKPOINT.value:
            raise InputValidationError(
                f'task {task_id} is not awaiting human review (status={task["status"]})',
                field='status',
            )
        return task

    def _decide(self, task: dict, *, approved: bool, notes: str | None) -> dict:
        task_id = task['task_id']
        gate = Gate.HUMAN_CHECKPOINT
        entry = self._entry(task, gate)
        attempt = int(entry.get('attempts') or 0) + 1
        cycle = int(entry.get('cycle') or 0)
        outcome = VerificationOutcome.PASS if approved else VerificationOutcome.FAIL
        target = TaskStatus.DONE if approved else TaskStatus.REJECTED
        gate_entry = {'status': GateState.PASSED.value, 'attempts': attempt, 'passed_at': _utc_now_iso()}
        if not approved:
            gate_entry = {'status': GateState.FAILED.value, 'attempts': attempt, 'last_error': notes}
        changes = {'status': target.value, 'current_gate': None}
        if notes:
            changes['human_notes'] = notes
        row = self.repository.update_gate(task_id, gate=gate.value, entry=gate_entry, task_changes=changes)
        self.repository.append_verification(
            VerificationCreateRecord(
                task_id=task_id,
                gate=gate.value,
                attempt=attempt,
                cycle=cycle,
                verified_by=GATE_VERIFIERS[gate],
                status=outcome.value,
                summary=notes or ('Approved by human' if approved else 'Rejected by human'),
            )
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.HUMAN_APPROVED if approved else EventType.HUMAN_REJECTED,
            payload={'notes': notes},
        )
        self._status_changed(task_id, gate.value, target.value)
        self.dispatcher.emit(
            NotificationType.INFO if approved else NotificationType.WARNING,
            f'Task "{task.get("title")}" {"approved" if approved else "rejected"} at human checkpoint.'
            + (f' Notes: {notes}' if notes else ''),
            project_id=task.get('project_id'),
            task_id=task_id,
        )
        return row

    def approve(self, task_id: str, *, notes: str | None = None) -> dict:
        task = self._checkpoint_task(task_id)
        return self._decide(task, approved=True, notes=(str(notes).strip() or None) if notes else None)

    def reject(self, task_id: str, *, notes: str) -> dict:
        text = str(notes or '').strip()
        if not text:
            raise InputValidationError('notes are required to reject a task', field='notes')
        task = self._checkpoint_task(task_id)
        return self._decide(task, approved=False, notes=text)

    # Escalation resets

    def _escalated(self, task_id: str) -> tuple[dict, Gate, ProjectConfig]:
        task = self._task(task_id)
        if task['status'] != TaskStatus.ESCALATED.value:
            raise InputValidationError(
                f'task {task_id} is not escalated (status={task["status"]})',
                field='status',
            )
        if not task.get('current_gate'):
            raise InputValidationError(f'task {task_id} has no gate in play', field='current_gate')
        return task, normalize_gate(task['current_gate']), self._project(task['project_id'])

    def _reset(self, task: dict, gate: Gate, *, task_changes: dict, reason: str) -> dict:
        task_id = task['task_id']
        entry = self._entry(task, gate)
        cycle = int(entry.get('cycle') or 0) + 1
        row = self.repository.update_gate(
            task_id,
            gate=gate.value,
            entry={'status': GateState.PENDING.value, 'attempts': 0, 'cycle': cycle},
            task_changes=task_changes,
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.GATE_RESET,
            payload={'gate': gate.value, 'cycle': cycle, 'reason': reason},
        )
        self._status_changed(task_id, task['status'], row['status'])
        _log.info('gate_reset task_id=%s gate=%s cycle=%d reason=%s', task_id, gate.value, cycle, reason)
        return row

    def retry_with_instructions(self, task_id: str, *, instructions: str) -> dict:
        text = str(instructions or '').strip()
        if not text:
            raise InputValidationError('instructions are required', field='instructions')
        task, gate, project = self._escalated(task_id)
        row = self._reset(
            task,
            gate,
            task_changes={'status': TaskStatus.AUTO_FIX.value, 'human_notes': text},
            reason='retry_with_instructions',
        )
        agent = project.fix_agent_for(gate)
        self.repository.append_event(
            task_id,
            event_type=EventType.AUTO_FIX_REQUESTED,
            payload={'gate': gate.value, 'agent': agent, 'instructions': text},
        )
        self.dispatcher.emit(
            NotificationType.WARNING,
            f'{gate.value} retry requested. {agent} auto-fixing with instructions: {text}',
            project_id=project.project_id,
            task_id=task_id,
        )
        return row

    def reassign(self, task_id: str, *, agent: str) -> dict:
        name = str(agent or '').strip()
        if not name:
            raise InputValidationError('agent is required', field='agent')
        task, gate, project = self._escalated(task_id)
        row = self._reset(
            task,
            gate,
            task_changes={'status': TaskStatus.AUTO_FIX.value, 'assigned_agent': name},
            reason='reassign',
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.TASK_REASSIGNED,
            payload={'gate': gate.value, 'from': task.get('assigned_agent'), 'to': name},
        )
        self.dispatcher.emit(
            NotificationType.WARNING,
            f'{gate.value} reassigned to {name} after escalation. {name} auto-fixing.',
            project_id=project.project_id,
            task_id=task_id,
        )
        return row

    def adjust_criteria(self, task_id: str, *, acceptance_criteria: list) -> dict:
        criteria = self._criteria(acceptance_criteria)
        if not criteria:
            raise InputValidationError('acceptance_criteria must not be empty', field='acceptance_criteria')
        task, gate, _ = self._escalated(task_id)
        row = self._reset(
            task,
            gate,
            task_changes={
                'status': gate.value,
                'acceptance_criteria': [c.to_dict() for c in criteria],
            },
            reason='adjust_criteria',
        )
        self.repository.append_event(
            task_id,
            event_type=EventType.CRITERIA_ADJUSTED,
            payload={'gate': gate.value, 'count': len(criteria)},
        )
        return row
