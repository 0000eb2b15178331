from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

MAX_GATE_ATTEMPTS = 3


class TaskStatus(str, Enum):
    INBOX = 'inbox'
    ASSIGNED = 'assigned'
    IN_PROGRESS = 'in_progress'
    BUILD_CHECK = 'build_check'
    DEPLOY_CHECK = 'deploy_check'
    PERCEPTION_CHECK = 'perception_check'
    AUTO_FIX = 'auto_fix'
    HUMAN_CHECKPOINT = 'human_checkpoint'
    ESCALATED = 'escalated'
    REJECTED = 'rejected'
    DONE = 'done'
    # Board-only states from the plain task flow; never touched by gates.
    REVIEW = 'review'
    BLOCKED = 'blocked'

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def gate(self) -> 'Gate | None':
        try:
            return Gate(self.value)
        except ValueError:
            return None


_TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.REJECTED})

BOARD_STATUSES = frozenset(
    {
        TaskStatus.INBOX,
        TaskStatus.ASSIGNED,
        TaskStatus.IN_PROGRESS,
        TaskStatus.REVIEW,
        TaskStatus.BLOCKED,
    }
)

PIPELINE_ENTRY_STATUSES = frozenset(
    {
        TaskStatus.INBOX,
        TaskStatus.ASSIGNED,
        TaskStatus.IN_PROGRESS,
        TaskStatus.REVIEW,
    }
)


class Gate(str, Enum):
    BUILD_CHECK = 'build_check'
    DEPLOY_CHECK = 'deploy_check'
    PERCEPTION_CHECK = 'perception_check'
    HUMAN_CHECKPOINT = 'human_checkpoint'

    @property
    def is_automated(self) -> bool:
        return self is not Gate.HUMAN_CHECKPOINT

    @property
    def status(self) -> TaskStatus:
        return TaskStatus(self.value)

    def next_status(self, *, human_checkpoint: bool = True) -> TaskStatus:
        """Task status after this gate passes."""
        nxt = _NEXT_GATE[self]
        if nxt is Gate.HUMAN_CHECKPOINT and not human_checkpoint:
            return TaskStatus.DONE
        if nxt is None:
            return TaskStatus.DONE
        return nxt.status

    @property
    def next_gate(self) -> 'Gate | None':
        return _NEXT_GATE[self]

    @property
    def is_terminal(self) -> bool:
        return _NEXT_GATE[self] is None


GATE_SEQUENCE: tuple[Gate, ...] = (
    Gate.BUILD_CHECK,
    Gate.DEPLOY_CHECK,
    Gate.PERCEPTION_CHECK,
    Gate.HUMAN_CHECKPOINT,
)

_NEXT_GATE: dict[Gate, Gate | None] = {
    gate: (GATE_SEQUENCE[idx + 1] if idx + 1 < len(GATE_SEQUENCE) else None)
    for idx, gate in enumerate(GATE_SEQUENCE)
}

# Verifier identity written into verification records per gate.
GATE_VERIFIERS: dict[Gate, str] = {
    Gate.BUILD_CHECK: 'ATHENA',
    Gate.DEPLOY_CHECK: 'ARGOS',
    Gate.PERCEPTION_CHECK: 'PROMETHEUS',
    Gate.HUMAN_CHECKPOINT: 'human',
}

# Project agent role consulted for auto-fix routing, with its fallback name.
GATE_FIX_ROLES: dict[Gate, tuple[str, str]] = {
    Gate.BUILD_CHECK: ('primary_dev', 'ATLAS'),
    Gate.DEPLOY_CHECK: ('infra', 'ARGOS'),
    Gate.PERCEPTION_CHECK: ('primary_dev', 'ATLAS'),
}
DEFAULT_FIX_ROLE: tuple[str, str] = ('qa', 'ATHENA')


def normalize_gate(value: str | Gate) -> Gate:
    if isinstance(value, Gate):
        return value
    text = str(value or '').strip().lower()
    try:
        return Gate(text)
    except ValueError as exc:
        raise ValueError(f'unknown gate: {value}') from exc


class GateState(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    PASSED = 'passed'
    FAILED = 'failed'


class VerificationOutcome(str, Enum):
    PASS = 'pass'
    FAIL = 'fail'
    ESCALATED = 'escalated'


class NotificationType(str, Enum):
    INFO = 'info'
    WARNING = 'warning'
    ESCALATION = 'escalation'
    PROD_ALERT = 'prod_alert'

    @property
    def forwarded(self) -> bool:
        return self in {NotificationType.ESCALATION, NotificationType.PROD_ALERT}


class RoutingMode(str, Enum):
    ALL = 'all'
    MENTIONED = 'mentioned'
    MODERATED = 'moderated'


class SenderType(str, Enum):
    HUMAN = 'human'
    AGENT = 'agent'
    SYSTEM = 'system'


def empty_gate_entry(*, cycle: int = 0) -> dict:
    return {
        'status': GateState.PENDING.value,
        'attempts': 0,
        'max_attempts': MAX_GATE_ATTEMPTS,
        'last_error': None,
        'passed_at': None,
        'cycle': int(cycle),
    }


def initial_gate_status() -> dict[str, dict]:
    return {gate.value: empty_gate_entry() for gate in GATE_SEQUENCE}


@dataclass(frozen=True)
class AcceptanceCriterion:
    id: str
    description: str
    type: str = 'visual'
    test_selector: str | None = None
    test_action: str | None = None
    expected_result: str | None = None

    @classmethod
    def from_dict(cls, raw: dict, *, index: int = 0) -> 'AcceptanceCriterion':
        def opt(key: str) -> str | None:
            text = str(raw.get(key) or '').strip()
            return text or None

        return cls(
            id=str(raw.get('id') or index + 1).strip(),
            description=str(raw.get('description') or '').strip(),
            type=str(raw.get('type') or 'visual').strip().lower() or 'visual',
            test_selector=opt('test_selector'),
            test_action=opt('test_action'),
            expected_result=opt('expected_result'),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'description': self.description,
            'type': self.type,
            'test_selector': self.test_selector,
            'test_action': self.test_action,
            'expected_result': self.expected_result,
        }


@dataclass(frozen=True)
class ProjectConfig:
    project_id: str
    name: str
    workspace_path: str = '.'
    framework: str = ''
    build_command: str = ''
    typecheck_command: str = ''
    lint_command: str = ''
    live_url: str = ''
    platform: str = ''
    deploy_branch: str = 'main'
    routes: list[str] = field(default_factory=list)
    expected_elements: list[str] = field(default_factory=list)
    agents: dict[str, str] = field(default_factory=dict)
    escalation_channel: str = ''
    escalation_contact: str = ''
    human_checkpoint: bool = True

    @classmethod
    def from_row(cls, row: dict) -> 'ProjectConfig':
        stack = dict(row.get('stack') or {})
        deployment = dict(row.get('deployment') or {})
        notifications = dict(row.get('notifications') or {})
        return cls(
            project_id=str(row['project_id']),
            name=str(row.get('name') or row['project_id']),
            workspace_path=str(row.get('workspace_path') or '.'),
            framework=str(stack.get('framework') or ''),
            build_command=str(stack.get('build_command') or ''),
            typecheck_command=str(stack.get('typecheck_command') or ''),
            lint_command=str(stack.get('lint_command') or ''),
            live_url=str(deployment.get('live_url') or ''),
            platform=str(deployment.get('platform') or ''),
            deploy_branch=str(deployment.get('deploy_branch') or 'main'),
            routes=[str(v) for v in (deployment.get('routes') or []) if str(v).strip()],
            expected_elements=[str(v) for v in (deployment.get('expected_elements') or []) if str(v).strip()],
            agents={str(k): str(v) for k, v in dict(row.get('agents') or {}).items() if str(v).strip()},
            escalation_channel=str(notifications.get('escalation_channel') or ''),
            escalation_contact=str(notifications.get('escalation_contact') or ''),
            human_checkpoint=bool(row.get('human_checkpoint', True)),
        )

    def fix_agent_for(self, gate: Gate) -> str:
        role, fallback = GATE_FIX_ROLES.get(gate, DEFAULT_FIX_ROLE)
        return self.agents.get(role) or fallback
