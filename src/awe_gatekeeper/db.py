from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import time
from typing import Callable, Iterator, TypeVar
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from awe_gatekeeper.domain.events import EventType, normalize_event_type
from awe_gatekeeper.domain.models import empty_gate_entry, initial_gate_status
from awe_gatekeeper.repository import (
    TASK_MUTABLE_FIELDS,
    NotificationCreateRecord,
    ProjectCreateRecord,
    TaskCreateRecord,
    VerificationCreateRecord,
    claim_gate_entry,
)

T = TypeVar('T')

_CAS_ATTEMPTS = 5


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _dumps(value) -> str:
    return json.dumps(value, ensure_ascii=True)


def _loads(text: str | None, default):
    if not text:
        return default
    try:
        return json.loads(text)
    except ValueError:
        return default


class Base(DeclarativeBase):
    pass


class ProjectEntity(Base):
    __tablename__ = 'projects'

    project_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    workspace_path: Mapped[str] = mapped_column(Text(), nullable=False)
    config_json: Mapped[str] = mapped_column(Text(), nullable=False)
    human_checkpoint: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskEntity(Base):
    __tablename__ = 'tasks'

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), ForeignKey('projects.project_id'), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    assigned_agent: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    current_gate: Mapped[str | None] = mapped_column(String(32), nullable=True)
    gate_status_json: Mapped[str] = mapped_column(Text(), nullable=False)
    acceptance_criteria_json: Mapped[str] = mapped_column(Text(), nullable=False)
    human_notes: Mapped[str | None] = mapped_column(Text(), nullable=True)
    version: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    event_seq: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskEventEntity(Base):
    __tablename__ = 'task_events'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_task_events_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.task_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class VerificationEntity(Base):
    __tablename__ = 'verification_records'
    __table_args__ = (
        UniqueConstraint('task_id', 'gate', 'cycle', 'attempt', 'status', name='uq_verification_attempt'),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    position: Mapped[int] = mapped_column(Integer(), nullable=False)
    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.task_id'), nullable=False, index=True)
    gate: Mapped[str] = mapped_column(String(32), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer(), nullable=False)
    cycle: Mapped[int] = mapped_column(Integer(), nullable=False)
    verified_by: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    summary: Mapped[str] = mapped_column(Text(), nullable=False)
    details_json: Mapped[str] = mapped_column(Text(), nullable=False)
    auto_fix_action: Mapped[str | None] = mapped_column(Text(), nullable=True)
    auto_fix_result: Mapped[str | None] = mapped_column(Text(), nullable=True)
    escalation_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class NotificationEntity(Base):
    __tablename__ = 'notifications'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    position: Mapped[int] = mapped_column(Integer(), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    message: Mapped[str] = mapped_column(Text(), nullable=False)
    details_json: Mapped[str] = mapped_column(Text(), nullable=False)
    forwarded: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AgentEntity(Base):
    __tablename__ = 'agents'

    name_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(255), nullable=False)
    session_key: Mapped[str] = mapped_column(String(255), nullable=False)
    api_endpoint: Mapped[str | None] = mapped_column(Text(), nullable=True)
    api_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    system_prompt: Mapped[str | None] = mapped_column(Text(), nullable=True)
    voice_id: Mapped[str | None] = mapped_column(String(128), nullable=True)


class RoomEntity(Base):
    __tablename__ = 'war_rooms'

    room_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    routing_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ParticipantEntity(Base):
    __tablename__ = 'war_room_participants'
    __table_args__ = (
        UniqueConstraint('room_id', 'name_key', name='uq_participant_room_name'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    room_id: Mapped[str] = mapped_column(String(64), ForeignKey('war_rooms.room_id'), nullable=False, index=True)
    name_key: Mapped[str] = mapped_column(String(128), nullable=False)
    participant_name: Mapped[str] = mapped_column(String(128), nullable=False)
    participant_type: Mapped[str] = mapped_column(String(16), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=True)
    hand_raised: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    hand_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    hand_raised_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MessageEntity(Base):
    __tablename__ = 'war_room_messages'

    seq: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    room_id: Mapped[str] = mapped_column(String(64), ForeignKey('war_rooms.room_id'), nullable=False, index=True)
    sender_name: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    content_type: Mapped[str] = mapped_column(String(16), nullable=False)
    audio_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Router fan-out writes from worker threads.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        if ':memory:' in str(self.engine.url):
            return
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class _SqlRepositoryBase:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        # Small exponential backoff capped to keep API responsive.
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _retrying(self, name: str, fn: Callable[[], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{name}_retry_exhausted')

    @staticmethod
    def _next_position(session: Session, entity) -> int:
        current = session.execute(select(entity.position).order_by(entity.position.desc()).limit(1)).scalar()
        return int(current or 0) + 1


class SqlTaskRepository(_SqlRepositoryBase):
    def create_project(self, record: ProjectCreateRecord) -> dict:
        project_id = str(record.project_id or '').strip() or f'proj-{uuid4().hex[:10]}'
        config = {
            'stack': dict(record.stack or {}),
            'deployment': dict(record.deployment or {}),
            'agents': {str(k): str(v) for k, v in dict(record.agents or {}).items() if str(v).strip()},
            'notifications': dict(record.notifications or {}),
        }

        def op() -> dict:
            with self.db.session() as session:
                row = session.get(ProjectEntity, project_id)
                if row is None:
                    row = ProjectEntity(project_id=project_id, created_at=datetime.now(timezone.utc))
                    session.add(row)
                row.name = str(record.name).strip()
                row.workspace_path = str(record.workspace_path or '.').strip() or '.'
                row.config_json = _dumps(config)
                row.human_checkpoint = bool(record.human_checkpoint)
                session.flush()
                return self._project_to_dict(row)

        return self._retrying('create_project', op)

    def get_project(self, project_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(ProjectEntity, project_id)
            return self._project_to_dict(row) if row else None

    def list_projects(self) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(select(ProjectEntity).order_by(ProjectEntity.created_at.asc())).scalars().all()
            return [self._project_to_dict(r) for r in rows]

    def create_task(self, record: TaskCreateRecord) -> dict:
        now = datetime.now(timezone.utc)
        task = TaskEntity(
            task_id=f'task-{uuid4().hex[:12]}',
            project_id=record.project_id,
            title=record.title,
            description=record.description,
            assigned_agent=(str(record.assigned_agent).strip() if record.assigned_agent else None),
            status=record.status,
            current_gate=None,
            gate_status_json=_dumps(initial_gate_status()),
            acceptance_criteria_json=_dumps(list(record.acceptance_criteria or [])),
            human_notes=None,
            version=0,
            event_seq=0,
            created_at=now,
            updated_at=now,
        )

        def op() -> dict:
            with self.db.session() as session:
                session.add(task)
                session.flush()
                return self._task_to_dict(task)

        return self._retrying('create_task', op)

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            return self._task_to_dict(row) if row else None

    def list_tasks(
        self,
        *,
        project_id: str | None = None,
        statuses: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict]:
        with self.db.session() as session:
            stmt = select(TaskEntity)
            if project_id is not None:
                stmt = stmt.where(TaskEntity.project_id == project_id)
            if statuses:
                stmt = stmt.where(TaskEntity.status.in_([str(s) for s in statuses]))
            rows = session.execute(stmt.order_by(TaskEntity.created_at.desc()).limit(limit)).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    def update_task(self, task_id: str, changes: dict) -> dict:
        unknown = set(changes) - TASK_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f'unsupported task fields: {sorted(unknown)}')

        def op() -> dict:
            with self.db.session() as session:
                row = session.get(TaskEntity, task_id)
                if row is None:
                    raise KeyError(task_id)
                self._apply_task_changes(row, changes)
                row.version = int(row.version or 0) + 1
                row.updated_at = datetime.now(timezone.utc)
                session.flush()
                return self._task_to_dict(row)

        return self._retrying('update_task', op)

    def claim_gate_attempt(self, task_id: str, *, gate: str, attempt: int) -> dict | None:
        for _ in range(_CAS_ATTEMPTS):
            def op() -> tuple[bool, dict | None]:
                with self.db.session() as session:
                    row = session.get(TaskEntity, task_id)
                    if row is None:
                        raise KeyError(task_id)
                    gate_status = _loads(row.gate_status_json, {})
                    entry = claim_gate_entry(gate_status, gate=gate, attempt=attempt)
                    if entry is None:
                        return True, None
                    gate_status[gate] = entry
                    expected_version = int(row.version or 0)
                    result = session.execute(
                        update(TaskEntity)
                        .where(TaskEntity.task_id == task_id, TaskEntity.version == expected_version)
                        .values(
                            gate_status_json=_dumps(gate_status),
                            status=gate,
                            current_gate=gate,
                            version=expected_version + 1,
                            updated_at=datetime.now(timezone.utc),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if int(result.rowcount or 0) != 1:
                        return False, None
                    session.expire(row)
                    refreshed = session.get(TaskEntity, task_id)
                    return True, self._task_to_dict(refreshed)

            settled, claimed = self._retrying('claim_gate_attempt', op)
            if settled:
                return claimed
        return None

    def update_gate(self, task_id: str, *, gate: str, entry: dict, task_changes: dict | None = None) -> dict:
        changes = dict(task_changes or {})
        unknown = set(changes) - TASK_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f'unsupported task fields: {sorted(unknown)}')

        def op() -> dict:
            with self.db.session() as session:
                row = session.get(TaskEntity, task_id)
                if row is None:
                    raise KeyError(task_id)
                gate_status = _loads(row.gate_status_json, {})
                merged = dict(gate_status.get(gate) or empty_gate_entry())
                merged.update(entry)
                gate_status[gate] = merged
                row.gate_status_json = _dumps(gate_status)
                self._apply_task_changes(row, changes)
                row.version = int(row.version or 0) + 1
                row.updated_at = datetime.now(timezone.utc)
                session.flush()
                return self._task_to_dict(row)

        return self._retrying('update_gate', op)

    def append_verification(self, record: VerificationCreateRecord) -> tuple[dict, bool]:
        def find(session: Session) -> VerificationEntity | None:
            return session.execute(
                select(VerificationEntity).where(
                    VerificationEntity.task_id == record.task_id,
                    VerificationEntity.gate == record.gate,
                    VerificationEntity.cycle == int(record.cycle),
                    VerificationEntity.attempt == int(record.attempt),
                    VerificationEntity.status == record.status,
                )
            ).scalar_one_or_none()

        def op() -> tuple[dict, bool]:
            with self.db.session() as session:
                if session.get(TaskEntity, record.task_id) is None:
                    raise KeyError(record.task_id)
                existing = find(session)
                if existing is not None:
                    return self._verification_to_dict(existing), False
                row = VerificationEntity(
                    id=f'ver-{uuid4().hex[:12]}',
                    position=self._next_position(session, VerificationEntity),
                    task_id=record.task_id,
                    gate=record.gate,
                    attempt=int(record.attempt),
                    cycle=int(record.cycle),
                    verified_by=record.verified_by,
                    status=record.status,
                    summary=record.summary,
                    details_json=_dumps(dict(record.details or {})),
                    auto_fix_action=record.auto_fix_action,
                    auto_fix_result=record.auto_fix_result,
                    escalation_json=(_dumps(record.escalation_context) if record.escalation_context is not None else None),
                    created_at=datetime.now(timezone.utc),
                )
                session.add(row)
                session.flush()
                return self._verification_to_dict(row), True

        try:
            return self._retrying('append_verification', op)
        except IntegrityError:
            # Lost a race against a concurrent writer of the same attempt.
            with self.db.session() as session:
                existing = find(session)
                if existing is None:
                    raise
                return self._verification_to_dict(existing), False

    def list_verifications(self, task_id: str, *, gate: str | None = None) -> list[dict]:
        with self.db.session() as session:
            if session.get(TaskEntity, task_id) is None:
                raise KeyError(task_id)
            stmt = select(VerificationEntity).where(VerificationEntity.task_id == task_id)
            if gate is not None:
                stmt = stmt.where(VerificationEntity.gate == gate)
            rows = session.execute(stmt.order_by(VerificationEntity.position.asc())).scalars().all()
            return [self._verification_to_dict(r) for r in rows]

    def append_event(self, task_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        type_text = normalize_event_type(event_type)
        max_attempts = max(3, self._sqlite_lock_retry_attempts())
        for attempt in range(max_attempts):
            try:
                with self.db.session() as session:
                    task = session.get(TaskEntity, task_id)
                    if task is None:
                        raise KeyError(task_id)
                    next_seq = int(task.event_seq or 0) + 1
                    task.event_seq = next_seq
                    event = TaskEventEntity(
                        task_id=task_id,
                        seq=next_seq,
                        event_type=type_text,
                        payload_json=_dumps(payload),
                        created_at=datetime.now(timezone.utc),
                    )
                    session.add(event)
                    session.flush()
                    return self._event_to_dict(event)
            except IntegrityError:
                if attempt + 1 >= max_attempts:
                    raise
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt + 1 >= max_attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt + 1))
        raise RuntimeError('append_event_retry_exhausted')

    def list_events(self, task_id: str) -> list[dict]:
        with self.db.session() as session:
            if session.get(TaskEntity, task_id) is None:
                raise KeyError(task_id)
            rows = session.execute(
                select(TaskEventEntity)
                .where(TaskEventEntity.task_id == task_id)
                .order_by(TaskEventEntity.seq.asc())
            ).scalars().all()
            return [self._event_to_dict(r) for r in rows]

    def append_notification(self, record: NotificationCreateRecord) -> dict:
        def op() -> dict:
            with self.db.session() as session:
                row = NotificationEntity(
                    id=f'ntf-{uuid4().hex[:12]}',
                    position=self._next_position(session, NotificationEntity),
                    type=record.type,
                    project_id=record.project_id,
                    task_id=record.task_id,
                    message=record.message,
                    details_json=_dumps(dict(record.details or {})),
                    forwarded=False,
                    created_at=datetime.now(timezone.utc),
                )
                session.add(row)
                session.flush()
                return self._notification_to_dict(row)

        return self._retrying('append_notification', op)

    def mark_notification_forwarded(self, notification_id: str) -> dict:
        def op() -> dict:
            with self.db.session() as session:
                row = session.get(NotificationEntity, notification_id)
                if row is None:
                    raise KeyError(notification_id)
                row.forwarded = True
                session.flush()
                return self._notification_to_dict(row)

        return self._retrying('mark_notification_forwarded', op)

    def list_notifications(self, *, project_id: str | None = None, limit: int = 100) -> list[dict]:
        with self.db.session() as session:
            stmt = select(NotificationEntity)
            if project_id is not None:
                stmt = stmt.where(NotificationEntity.project_id == project_id)
            rows = session.execute(stmt.order_by(NotificationEntity.position.desc()).limit(limit)).scalars().all()
            return [self._notification_to_dict(r) for r in rows]

    @staticmethod
    def _apply_task_changes(row: TaskEntity, changes: dict) -> None:
        for key, value in changes.items():
            if key == 'gate_status':
                row.gate_status_json = _dumps(value)
            elif key == 'acceptance_criteria':
                row.acceptance_criteria_json = _dumps(list(value or []))
            else:
                setattr(row, key, value)

    @staticmethod
    def _project_to_dict(row: ProjectEntity) -> dict:
        config = _loads(row.config_json, {})
        return {
            'project_id': row.project_id,
            'name': row.name,
            'workspace_path': row.workspace_path,
            'stack': dict(config.get('stack') or {}),
            'deployment': dict(config.get('deployment') or {}),
            'agents': dict(config.get('agents') or {}),
            'notifications': dict(config.get('notifications') or {}),
            'human_checkpoint': bool(row.human_checkpoint),
            'created_at': _iso_utc(row.created_at),
        }

    @staticmethod
    def _task_to_dict(row: TaskEntity) -> dict:
        return {
            'task_id': row.task_id,
            'project_id': row.project_id,
            'title': row.title,
            'description': row.description,
            'assigned_agent': row.assigned_agent,
            'status': row.status,
            'current_gate': row.current_gate,
            'gate_status': _loads(row.gate_status_json, initial_gate_status()),
            'acceptance_criteria': _loads(row.acceptance_criteria_json, []),
            'human_notes': row.human_notes,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }

    @staticmethod
    def _verification_to_dict(row: VerificationEntity) -> dict:
        return {
            'id': row.id,
            'task_id': row.task_id,
            'gate': row.gate,
            'attempt': int(row.attempt),
            'cycle': int(row.cycle),
            'verified_by': row.verified_by,
            'status': row.status,
            'summary': row.summary,
            'details': _loads(row.details_json, {}),
            'auto_fix_action': row.auto_fix_action,
            'auto_fix_result': row.auto_fix_result,
            'escalation_context': _loads(row.escalation_json, None),
            'created_at': _iso_utc(row.created_at),
        }

    @staticmethod
    def _event_to_dict(row: TaskEventEntity) -> dict:
        return {
            'seq': int(row.seq),
            'task_id': row.task_id,
            'type': row.event_type,
            'payload': _loads(row.payload_json, {}),
            'created_at': _iso_utc(row.created_at),
        }

    @staticmethod
    def _notification_to_dict(row: NotificationEntity) -> dict:
        return {
            'id': row.id,
            'type': row.type,
            'project_id': row.project_id,
            'task_id': row.task_id,
            'message': row.message,
            'details': _loads(row.details_json, {}),
            'forwarded': bool(row.forwarded),
            'created_at': _iso_utc(row.created_at),
        }


class SqlChatRepository(_SqlRepositoryBase):
    @staticmethod
    def _key(name: str) -> str:
        return str(name or '').strip().casefold()

    def upsert_agent(self, record: dict) -> dict:
        name = str(record.get('name') or '').strip()
        if not name:
            raise ValueError('agent name is required')

        def op() -> dict:
            with self.db.session() as session:
                row = session.get(AgentEntity, self._key(name))
                if row is None:
                    row = AgentEntity(
                        name_key=self._key(name),
                        name=name,
                        role='',
                        session_key=f'agent:{name.lower()}',
                    )
                    session.add(row)
                row.name = name
                if record.get('role') is not None:
                    row.role = str(record.get('role') or '').strip()
                if record.get('session_key'):
                    row.session_key = str(record['session_key'])
                for attr in ('api_endpoint', 'api_model', 'system_prompt', 'voice_id'):
                    if attr in record:
                        setattr(row, attr, record.get(attr))
                session.flush()
                return self._agent_to_dict(row)

        return self._retrying('upsert_agent', op)

    def get_agent(self, name: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(AgentEntity, self._key(name))
            return self._agent_to_dict(row) if row else None

    def list_agents(self) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(select(AgentEntity).order_by(AgentEntity.name_key.asc())).scalars().all()
            return [self._agent_to_dict(r) for r in rows]

    def create_room(self, *, name: str, routing_mode: str, room_id: str | None = None) -> dict:
        rid = str(room_id or '').strip() or f'room-{uuid4().hex[:10]}'

        def op() -> dict:
            with self.db.session() as session:
                row = RoomEntity(
                    room_id=rid,
                    name=str(name).strip(),
                    routing_mode=routing_mode,
                    created_at=datetime.now(timezone.utc),
                )
                session.add(row)
                session.flush()
                return self._room_to_dict(row)

        return self._retrying('create_room', op)

    def get_room(self, room_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(RoomEntity, room_id)
            return self._room_to_dict(row) if row else None

    def set_routing_mode(self, room_id: str, routing_mode: str) -> dict:
        def op() -> dict:
            with self.db.session() as session:
                row = session.get(RoomEntity, room_id)
                if row is None:
                    raise KeyError(room_id)
                row.routing_mode = routing_mode
                session.flush()
                return self._room_to_dict(row)

        return self._retrying('set_routing_mode', op)

    def _participant(self, session: Session, room_id: str, name: str) -> ParticipantEntity | None:
        return session.execute(
            select(ParticipantEntity).where(
                ParticipantEntity.room_id == room_id,
                ParticipantEntity.name_key == self._key(name),
            )
        ).scalar_one_or_none()

    def upsert_participant(self, room_id: str, *, name: str, participant_type: str, active: bool = True) -> dict:
        def op() -> dict:
            with self.db.session() as session:
                if session.get(RoomEntity, room_id) is None:
                    raise KeyError(room_id)
                row = self._participant(session, room_id, name)
                if row is None:
                    row = ParticipantEntity(
                        room_id=room_id,
                        name_key=self._key(name),
                        participant_name=str(name).strip(),
                        participant_type=participant_type,
                        hand_raised=False,
                    )
                    session.add(row)
                row.participant_name = str(name).strip()
                row.participant_type = participant_type
                row.is_active = bool(active)
                session.flush()
                return self._participant_to_dict(row)

        return self._retrying('upsert_participant', op)

    def list_participants(self, room_id: str, *, active_only: bool = True) -> list[dict]:
        with self.db.session() as session:
            if session.get(RoomEntity, room_id) is None:
                raise KeyError(room_id)
            stmt = select(ParticipantEntity).where(ParticipantEntity.room_id == room_id)
            if active_only:
                stmt = stmt.where(ParticipantEntity.is_active.is_(True))
            rows = session.execute(stmt.order_by(ParticipantEntity.id.asc())).scalars().all()
            return [self._participant_to_dict(r) for r in rows]

    def set_hand(self, room_id: str, name: str, *, raised: bool, reason: str | None = None) -> dict:
        def op() -> dict:
            with self.db.session() as session:
                row = self._participant(session, room_id, name)
                if row is None:
                    raise KeyError(name)
                row.hand_raised = bool(raised)
                row.hand_reason = reason if raised else None
                row.hand_raised_at = datetime.now(timezone.utc) if raised else None
                session.flush()
                return self._participant_to_dict(row)

        return self._retrying('set_hand', op)

    def clear_hands(self, room_id: str) -> int:
        def op() -> int:
            with self.db.session() as session:
                if session.get(RoomEntity, room_id) is None:
                    raise KeyError(room_id)
                result = session.execute(
                    update(ParticipantEntity)
                    .where(ParticipantEntity.room_id == room_id, ParticipantEntity.hand_raised.is_(True))
                    .values(hand_raised=False, hand_reason=None, hand_raised_at=None)
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

        return self._retrying('clear_hands', op)

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
        def op() -> dict:
            with self.db.session() as session:
                if session.get(RoomEntity, room_id) is None:
                    raise KeyError(room_id)
                row = MessageEntity(
                    message_id=f'msg-{uuid4().hex[:12]}',
                    room_id=room_id,
                    sender_name=sender_name,
                    sender_type=sender_type,
                    content=content,
                    content_type=content_type,
                    audio_url=audio_url,
                    metadata_json=_dumps(dict(metadata or {})),
                    created_at=datetime.now(timezone.utc),
                )
                session.add(row)
                session.flush()
                return self._message_to_dict(row)

        return self._retrying('insert_message', op)

    def get_message(self, message_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.execute(
                select(MessageEntity).where(MessageEntity.message_id == message_id)
            ).scalar_one_or_none()
            return self._message_to_dict(row) if row else None

    def update_message(
        self,
        message_id: str,
        *,
        content: str | None = None,
        metadata: dict | None = None,
        audio_url: str | None = None,
    ) -> dict:
        def op() -> dict:
            with self.db.session() as session:
                row = session.execute(
                    select(MessageEntity).where(MessageEntity.message_id == message_id)
                ).scalar_one_or_none()
                if row is None:
                    raise KeyError(message_id)
                if content is not None:
                    row.content = content
                if metadata is not None:
                    row.metadata_json = _dumps({**_loads(row.metadata_json, {}), **metadata})
                if audio_url is not None:
                    row.audio_url = audio_url
                session.flush()
                return self._message_to_dict(row)

        return self._retrying('update_message', op)

    def list_recent_messages(self, room_id: str, *, limit: int = 20) -> list[dict]:
        if limit <= 0:
            return []
        with self.db.session() as session:
            rows = session.execute(
                select(MessageEntity)
                .where(MessageEntity.room_id == room_id)
                .order_by(MessageEntity.seq.desc())
                .limit(limit)
            ).scalars().all()
            return [self._message_to_dict(r) for r in reversed(rows)]

    @staticmethod
    def _agent_to_dict(row: AgentEntity) -> dict:
        return {
            'name': row.name,
            'role': row.role,
            'session_key': row.session_key,
            'api_endpoint': row.api_endpoint,
            'api_model': row.api_model,
            'system_prompt': row.system_prompt,
            'voice_id': row.voice_id,
        }

    @staticmethod
    def _room_to_dict(row: RoomEntity) -> dict:
        return {
            'room_id': row.room_id,
            'name': row.name,
            'routing_mode': row.routing_mode,
            'created_at': _iso_utc(row.created_at),
        }

    @staticmethod
    def _participant_to_dict(row: ParticipantEntity) -> dict:
        return {
            'room_id': row.room_id,
            'participant_name': row.participant_name,
            'participant_type': row.participant_type,
            'is_active': bool(row.is_active),
            'hand_raised': bool(row.hand_raised),
            'hand_reason': row.hand_reason,
            'hand_raised_at': (_iso_utc(row.hand_raised_at) if row.hand_raised_at else None),
        }

    @staticmethod
    def _message_to_dict(row: MessageEntity) -> dict:
        return {
            'id': row.message_id,
            'room_id': row.room_id,
            'sender_name': row.sender_name,
            'sender_type': row.sender_type,
            'content': row.content,
            'content_type': row.content_type,
            'audio_url': row.audio_url,
            'metadata': _loads(row.metadata_json, {}),
            'created_at': _iso_utc(row.created_at),
        }
