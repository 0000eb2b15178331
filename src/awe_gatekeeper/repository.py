from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Protocol
from uuid import uuid4

from awe_gatekeeper.domain.events import EventType, normalize_event_type
from awe_gatekeeper.domain.models import (
    GateState,
    MAX_GATE_ATTEMPTS,
    TaskStatus,
    empty_gate_entry,
    initial_gate_status,
)

TASK_MUTABLE_FIELDS = frozenset(
    {
        'status',
        'current_gate',
        'gate_status',
        'acceptance_criteria',
        'assigned_agent',
        'human_notes',
    }
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ProjectCreateRecord:
    name: str
    workspace_path: str = '.'
    stack: dict = field(default_factory=dict)
    deployment: dict = field(default_factory=dict)
    agents: dict = field(default_factory=dict)
    notifications: dict = field(default_factory=dict)
    human_checkpoint: bool = True
    project_id: str | None = None


@dataclass(frozen=True)
class TaskCreateRecord:
    project_id: str
    title: str
    description: str = ''
    assigned_agent: str | None = None
    acceptance_criteria: list[dict] = field(default_factory=list)
    status: str = TaskStatus.INBOX.value


@dataclass(frozen=True)
class VerificationCreateRecord:
    task_id: str
    gate: str
    attempt: int
    cycle: int
    verified_by: str
    status: str
    summary: str
    details: dict = field(default_factory=dict)
    auto_fix_action: str | None = None
    auto_fix_result: str | None = None
    escalation_context: dict | None = None


@dataclass(frozen=True)
class NotificationCreateRecord:
    type: str
    message: str
    project_id: str | None = None
    task_id: str | None = None
    details: dict = field(default_factory=dict)


def claim_gate_entry(gate_status: dict, *, gate: str, attempt: int) -> dict | None:
    """Return the running entry for *attempt*, or ``None`` when it must not run.

    Shared by every repository so the claim rule is identical across stores:
    a passed gate is never re-entered, an in-flight gate is never re-entered,
    and only the attempt directly after the recorded one may start.
    """
    entry = dict(gate_status.get(gate) or empty_gate_entry())
    if entry.get('status') in {GateState.PASSED.value, GateState.RUNNING.value}:
        return None
    attempts = int(entry.get('attempts') or 0)
    if int(attempt) != attempts + 1:
        return None
    entry['status'] = GateState.RUNNING.value
    entry['attempts'] = int(attempt)
    entry['max_attempts'] = int(entry.get('max_attempts') or MAX_GATE_ATTEMPTS)
    entry['started_at'] = _utc_now_iso()
    return entry


class TaskRepository(Protocol):
    def create_project(self, record: ProjectCreateRecord) -> dict:
        ...

    def get_project(self, project_id: str) -> dict | None:
        ...

    def list_projects(self) -> list[dict]:
        ...

    def create_task(self, record: TaskCreateRecord) -> dict:
        ...

    def get_task(self, task_id: str) -> dict | None:
        ...

    def list_tasks(
        self,
        *,
        project_id: str | None = None,
        statuses: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict]:
        ...

    def update_task(self, task_id: str, changes: dict) -> dict:
        ...

    def claim_gate_attempt(self, task_id: str, *, gate: str, attempt: int) -> dict | None:
        """Atomically mark *gate* running for *attempt* and move the task onto it.

        Returns the updated task row, or ``None`` when the attempt was already
        claimed, the gate already passed, or the attempt is out of sequence.
        """
        ...

    def update_gate(self, task_id: str, *, gate: str, entry: dict, task_changes: dict | None = None) -> dict:
        ...

    def append_verification(self, record: VerificationCreateRecord) -> tuple[dict, bool]:
        """Append one verification record; returns ``(row, created)``.

        A record with the same (task, gate, cycle, attempt, status) key is never
        duplicated; the existing row is returned with ``created=False``.
        """
        ...

    def list_verifications(self, task_id: str, *, gate: str | None = None) -> list[dict]:
        ...

    def append_event(self, task_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        ...

    def list_events(self, task_id: str) -> list[dict]:
        ...

    def append_notification(self, record: NotificationCreateRecord) -> dict:
        ...

    def mark_notification_forwarded(self, notification_id: str) -> dict:
        ...

    def list_notifications(self, *, project_id: str | None = None, limit: int = 100) -> list[dict]:
        ...


class ChatRepository(Protocol):
    def upsert_agent(self, record: dict) -> dict:
        ...

    def get_agent(self, name: str) -> dict | None:
        ...

    def list_agents(self) -> list[dict]:
        ...

    def create_room(self, *, name: str, routing_mode: str, room_id: str | None = None) -> dict:
        ...

    def get_room(self, room_id: str) -> dict | None:
        ...

    def set_routing_mode(self, room_id: str, routing_mode: str) -> dict:
        ...

    def upsert_participant(self, room_id: str, *, name: str, participant_type: str, active: bool = True) -> dict:
        ...

    def list_participants(self, room_id: str, *, active_only: bool = True) -> list[dict]:
        ...

    def set_hand(self, room_id: str, name: str, *, raised: bool, reason: str | None = None) -> dict:
        ...

    def clear_hands(self, room_id: str) -> int:
        ...

    def insert_message(
        self,
        room_id: str,
        *,
        sender_name: str,
        sender_type: str,
        content: str,
        content_type: str = 'text',
        metadata: dict | None = None,
        audio_url: str | None = None,
    ) -> dict:
        ...

    def get_message(self, message_id: str) -> dict | None:
        ...

    def update_message(
        self,
        message_id: str,
        *,
        content: str | None = None,
        metadata: dict | None = None,
        audio_url: str | None = None,
    ) -> dict:
        ...

    def list_recent_messages(self, room_id: str, *, limit: int = 20) -> list[dict]:
        """Return the newest *limit* messages of a room in chronological order."""
        ...


class InMemoryTaskRepository:
    def __init__(self):
        self.projects: dict[str, dict] = {}
        self.items: dict[str, dict] = {}
        self.events: dict[str, list[dict]] = {}
        self.verifications: list[dict] = []
        self.notifications: list[dict] = []
        self._lock = RLock()

    def create_project(self, record: ProjectCreateRecord) -> dict:
        project_id = str(record.project_id or '').strip() or f'proj-{uuid4().hex[:10]}'
        row = {
            'project_id': project_id,
            'name': str(record.name).strip(),
            'workspace_path': str(record.workspace_path or '.').strip() or '.',
            'stack': copy.deepcopy(dict(record.stack or {})),
            'deployment': copy.deepcopy(dict(record.deployment or {})),
            'agents': {str(k): str(v) for k, v in dict(record.agents or {}).items() if str(v).strip()},
            'notifications': copy.deepcopy(dict(record.notifications or {})),
            'human_checkpoint': bool(record.human_checkpoint),
            'created_at': _utc_now_iso(),
        }
        with self._lock:
            self.projects[project_id] = row
            return copy.deepcopy(row)

    def get_project(self, project_id: str) -> dict | None:
        with self._lock:
            row = self.projects.get(project_id)
            return copy.deepcopy(row) if row else None

    def list_projects(self) -> list[dict]:
        with self._lock:
            rows = sorted(self.projects.values(), key=lambda r: r.get('created_at', ''))
            return [copy.deepcopy(r) for r in rows]

    def create_task(self, record: TaskCreateRecord) -> dict:
        task_id = f'task-{uuid4().hex[:12]}'
        now = _utc_now_iso()
        row = {
            'task_id': task_id,
            'project_id': record.project_id,
            'title': record.title,
            'description': record.description,
            'assigned_agent': (str(record.assigned_agent).strip() if record.assigned_agent else None),
            'status': record.status,
            'current_gate': None,
            'gate_status': initial_gate_status(),
            'acceptance_criteria': copy.deepcopy(list(record.acceptance_criteria or [])),
            'human_notes': None,
            'created_at': now,
            'updated_at': now,
        }
        with self._lock:
            self.items[task_id] = row
            self.events[task_id] = []
            return copy.deepcopy(row)

    def get_task(self, task_id: str) -> dict | None:
        with self._lock:
            row = self.items.get(task_id)
            return copy.deepcopy(row) if row else None

    def list_tasks(
        self,
        *,
        project_id: str | None = None,
        statuses: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict]:
        wanted = {str(s) for s in statuses} if statuses else None
        with self._lock:
            rows = [
                r for r in self.items.values()
                if (project_id is None or r.get('project_id') == project_id)
                and (wanted is None or r.get('status') in wanted)
            ]
            rows.sort(key=lambda r: r.get('created_at', ''), reverse=True)
            return [copy.deepcopy(r) for r in rows[:limit]]

    def update_task(self, task_id: str, changes: dict) -> dict:
        unknown = set(changes) - TASK_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f'unsupported task fields: {sorted(unknown)}')
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            row = self.items[task_id]
            for key, value in changes.items():
                row[key] = copy.deepcopy(value)
            row['updated_at'] = _utc_now_iso()
            return copy.deepcopy(row)

    def claim_gate_attempt(self, task_id: str, *, gate: str, attempt: int) -> dict | None:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            row = self.items[task_id]
            entry = claim_gate_entry(row['gate_status'], gate=gate, attempt=attempt)
            if entry is None:
                return None
            row['gate_status'][gate] = entry
            row['status'] = gate
            row['current_gate'] = gate
            row['updated_at'] = _utc_now_iso()
            return copy.deepcopy(row)

    def update_gate(self, task_id: str, *, gate: str, entry: dict, task_changes: dict | None = None) -> dict:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            row = self.items[task_id]
            merged = dict(row['gate_status'].get(gate) or empty_gate_entry())
            merged.update(copy.deepcopy(entry))
            row['gate_status'][gate] = merged
            row['updated_at'] = _utc_now_iso()
            if task_changes:
                return self.update_task(task_id, task_changes)
            return copy.deepcopy(row)

    def append_verification(self, record: VerificationCreateRecord) -> tuple[dict, bool]:
        key = (record.task_id, record.gate, int(record.cycle), int(record.attempt), record.status)
        with self._lock:
            if record.task_id not in self.items:
                raise KeyError(record.task_id)
            for existing in self.verifications:
                existing_key = (
                    existing['task_id'],
                    existing['gate'],
                    existing['cycle'],
                    existing['attempt'],
                    existing['status'],
                )
                if existing_key == key:
                    return copy.deepcopy(existing), False
            row = {
                'id': f'ver-{uuid4().hex[:12]}',
                'task_id': record.task_id,
                'gate': record.gate,
                'attempt': int(record.attempt),
                'cycle': int(record.cycle),
                'verified_by': record.verified_by,
                'status': record.status,
                'summary': record.summary,
                'details': copy.deepcopy(dict(record.details or {})),
                'auto_fix_action': record.auto_fix_action,
                'auto_fix_result': record.auto_fix_result,
                'escalation_context': copy.deepcopy(record.escalation_context),
                'created_at': _utc_now_iso(),
            }
            self.verifications.append(row)
            return copy.deepcopy(row), True

    def list_verifications(self, task_id: str, *, gate: str | None = None) -> list[dict]:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            return [
                copy.deepcopy(r) for r in self.verifications
                if r['task_id'] == task_id and (gate is None or r['gate'] == gate)
            ]

    def append_event(self, task_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            seq = len(self.events.setdefault(task_id, [])) + 1
            event = {
                'seq': seq,
                'task_id': task_id,
                'type': normalize_event_type(event_type),
                'payload': copy.deepcopy(payload),
                'created_at': _utc_now_iso(),
            }
            self.events[task_id].append(event)
            return copy.deepcopy(event)

    def list_events(self, task_id: str) -> list[dict]:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            return copy.deepcopy(self.events.get(task_id, []))

    def append_notification(self, record: NotificationCreateRecord) -> dict:
        row = {
            'id': f'ntf-{uuid4().hex[:12]}',
            'type': record.type,
            'project_id': record.project_id,
            'task_id': record.task_id,
            'message': record.message,
            'details': copy.deepcopy(dict(record.details or {})),
            'forwarded': False,
            'created_at': _utc_now_iso(),
        }
        with self._lock:
            self.notifications.append(row)
            return copy.deepcopy(row)

    def mark_notification_forwarded(self, notification_id: str) -> dict:
        with self._lock:
            for row in self.notifications:
                if row['id'] == notification_id:
                    row['forwarded'] = True
                    return copy.deepcopy(row)
        raise KeyError(notification_id)

    def list_notifications(self, *, project_id: str | None = None, limit: int = 100) -> list[dict]:
        with self._lock:
            rows = [r for r in self.notifications if project_id is None or r.get('project_id') == project_id]
            rows = list(reversed(rows))[:limit]
            return [copy.deepcopy(r) for r in rows]


class InMemoryChatRepository:
    def __init__(self):
        self.agents: dict[str, dict] = {}
        self.rooms: dict[str, dict] = {}
        self.participants: dict[str, dict[str, dict]] = {}
        self.messages: list[dict] = []
        self._lock = RLock()

    @staticmethod
    def _key(name: str) -> str:
        return str(name or '').strip().casefold()

    def upsert_agent(self, record: dict) -> dict:
        name = str(record.get('name') or '').strip()
        if not name:
            raise ValueError('agent name is required')
        with self._lock:
            row = dict(self.agents.get(self._key(name)) or {})
            row.update(
                {
                    'name': name,
                    'role': str(record.get('role') or row.get('role') or '').strip(),
                    'session_key': str(record.get('session_key') or row.get('session_key') or f'agent:{name.lower()}'),
                    'api_endpoint': record.get('api_endpoint', row.get('api_endpoint')),
                    'api_model': record.get('api_model', row.get('api_model')),
                    'system_prompt': record.get('system_prompt', row.get('system_prompt')),
                    'voice_id': record.get('voice_id', row.get('voice_id')),
                }
            )
            self.agents[self._key(name)] = row
            return dict(row)

    def get_agent(self, name: str) -> dict | None:
        with self._lock:
            row = self.agents.get(self._key(name))
            return dict(row) if row else None

    def list_agents(self) -> list[dict]:
        with self._lock:
            return [dict(r) for r in sorted(self.agents.values(), key=lambda r: r['name'].lower())]

    def create_room(self, *, name: str, routing_mode: str, room_id: str | None = None) -> dict:
        rid = str(room_id or '').strip() or f'room-{uuid4().hex[:10]}'
        row = {
            'room_id': rid,
            'name': str(name).strip(),
            'routing_mode': routing_mode,
            'created_at': _utc_now_iso(),
        }
        with self._lock:
            self.rooms[rid] = row
            self.participants.setdefault(rid, {})
            return dict(row)

    def get_room(self, room_id: str) -> dict | None:
        with self._lock:
            row = self.rooms.get(room_id)
            return dict(row) if row else None

    def set_routing_mode(self, room_id: str, routing_mode: str) -> dict:
        with self._lock:
            if room_id not in self.rooms:
                raise KeyError(room_id)
            self.rooms[room_id]['routing_mode'] = routing_mode
            return dict(self.rooms[room_id])

    def upsert_participant(self, room_id: str, *, name: str, participant_type: str, active: bool = True) -> dict:
        with self._lock:
            if room_id not in self.rooms:
                raise KeyError(room_id)
            members = self.participants.setdefault(room_id, {})
            row = dict(members.get(self._key(name)) or {'hand_raised': False, 'hand_reason': None, 'hand_raised_at': None})
            row.update(
                {
                    'room_id': room_id,
                    'participant_name': str(name).strip(),
                    'participant_type': participant_type,
                    'is_active': bool(active),
                }
            )
            members[self._key(name)] = row
            return dict(row)

    def list_participants(self, room_id: str, *, active_only: bool = True) -> list[dict]:
        with self._lock:
            if room_id not in self.rooms:
                raise KeyError(room_id)
            rows = list(self.participants.get(room_id, {}).values())
            return [dict(r) for r in rows if r['is_active'] or not active_only]

    def set_hand(self, room_id: str, name: str, *, raised: bool, reason: str | None = None) -> dict:
        with self._lock:
            members = self.participants.get(room_id)
            if members is None:
                raise KeyError(room_id)
            row = members.get(self._key(name))
            if row is None:
                raise KeyError(name)
            row['hand_raised'] = bool(raised)
            row['hand_reason'] = reason if raised else None
            row['hand_raised_at'] = _utc_now_iso() if raised else None
            return dict(row)

    def clear_hands(self, room_id: str) -> int:
        with self._lock:
            members = self.participants.get(room_id)
            if members is None:
                raise KeyError(room_id)
            cleared = 0
            for row in members.values():
                if row['hand_raised']:
                    cleared += 1
                row['hand_raised'] = False
                row['hand_reason'] = None
                row['hand_raised_at'] = None
            return cleared

    def insert_message(
        self,
        room_id: str,
        *,
        sender_name: str,
        sender_type: str,
        content: str,
        content_type: str = 'text',
        metadata: dict | None = None,
        audio_url: str | None = None,
    ) -> dict:
        row = {
            'id': f'msg-{uuid4().hex[:12]}',
            'room_id': room_id,
            'sender_name': sender_name,
            'sender_type': sender_type,
            'content': content,
            'content_type': content_type,
            'audio_url': audio_url,
            'metadata': copy.deepcopy(dict(metadata or {})),
            'created_at': _utc_now_iso(),
        }
        with self._lock:
            if room_id not in self.rooms:
                raise KeyError(room_id)
            self.messages.append(row)
            return copy.deepcopy(row)

    def get_message(self, message_id: str) -> dict | None:
        with self._lock:
            for row in self.messages:
                if row['id'] == message_id:
                    return copy.deepcopy(row)
        return None

    def update_message(
        self,
        message_id: str,
        *,
        content: str | None = None,
        metadata: dict | None = None,
        audio_url: str | None = None,
    ) -> dict:
        with self._lock:
            for row in self.messages:
                if row['id'] != message_id:
                    continue
                if content is not None:
                    row['content'] = content
                if metadata is not None:
                    row['metadata'] = {**row['metadata'], **copy.deepcopy(metadata)}
                if audio_url is not None:
                    row['audio_url'] = audio_url
                return copy.deepcopy(row)
        raise KeyError(message_id)

    def list_recent_messages(self, room_id: str, *, limit: int = 20) -> list[dict]:
        with self._lock:
            rows = [r for r in self.messages if r['room_id'] == room_id]
            return [copy.deepcopy(r) for r in rows[-max(0, int(limit)):]] if limit > 0 else []
