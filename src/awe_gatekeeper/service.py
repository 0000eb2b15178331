from __future__ import annotations

from dataclasses import dataclass, field
import os

from awe_gatekeeper.adapters import AgentInvoker, AgentRunner
from awe_gatekeeper.config import Settings
from awe_gatekeeper.context import ContextBuilder
from awe_gatekeeper.directory import AgentDirectory
from awe_gatekeeper.discussion import DiscussionOrchestrator
from awe_gatekeeper.domain.events import EventType
from awe_gatekeeper.domain.models import (
    AcceptanceCriterion,
    BOARD_STATUSES,
    Gate,
    NotificationType,
    ProjectConfig,
    RoutingMode,
    SenderType,
    TaskStatus,
)
from awe_gatekeeper.engine import VerificationGateEngine
from awe_gatekeeper.errors import ConfigurationError, InputValidationError
from awe_gatekeeper.execution import ExecutionQueue, HttpExecutionQueue
from awe_gatekeeper.gates.browser import BrowserPort, PlaywrightBrowser
from awe_gatekeeper.gates.build import BuildCheckRunner, ShellCommandExecutor
from awe_gatekeeper.gates.deploy import DeployCheckRunner
from awe_gatekeeper.gates.perception import PerceptionCheckRunner, verify_criteria
from awe_gatekeeper.monitor import HealthMonitor
from awe_gatekeeper.notifications import HttpNotificationChannel, NotificationChannel, NotificationDispatcher
from awe_gatekeeper.observability import get_logger
from awe_gatekeeper.repository import ChatRepository, ProjectCreateRecord, TaskCreateRecord, TaskRepository
from awe_gatekeeper.router import MessageRouter, ModeratedStrategy, RespondAll, RespondMentioned
from awe_gatekeeper.storage.audio import AudioStore
from awe_gatekeeper.voice import ElevenLabsSynthesizer, SpeechSynthesizer, Transcriber, WhisperTranscriber

_log = get_logger('awe_gatekeeper.service')

DEPLOY_GATES = (Gate.BUILD_CHECK, Gate.DEPLOY_CHECK)


@dataclass(frozen=True)
class ProjectInput:
    name: str
    workspace_path: str = '.'
    stack: dict = field(default_factory=dict)
    deployment: dict = field(default_factory=dict)
    agents: dict = field(default_factory=dict)
    notifications: dict = field(default_factory=dict)
    human_checkpoint: bool = True
    project_id: str | None = None


@dataclass(frozen=True)
class TaskInput:
    project_id: str
    title: str
    description: str = ''
    assigned_agent: str | None = None
    acceptance_criteria: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class DeployEventInput:
    project_id: str
    commit: str
    deploy_url: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class PostMessageInput:
    room_id: str
    sender_name: str
    content: str
    sender_type: str | None = None
    content_type: str = 'text'
    audio_url: str | None = None
    route: bool = True


class GatekeeperService:
    """Single entry point for the HTTP layer and the CLI."""

    def __init__(
        self,
        *,
        task_repository: TaskRepository,
        chat_repository: ChatRepository,
        engine: VerificationGateEngine,
        router: MessageRouter,
        discussions: DiscussionOrchestrator,
        monitor: HealthMonitor,
        dispatcher: NotificationDispatcher,
        directory: AgentDirectory,
        context_builder: ContextBuilder,
        browser: BrowserPort,
        stale_gate_seconds: int = 900,
    ):
        self.tasks = task_repository
        self.chat = chat_repository
        self.engine = engine
        self.router = router
        self.discussions = discussions
        self.monitor = monitor
        self.dispatcher = dispatcher
        self.directory = directory
        self.context_builder = context_builder
        self.browser = browser
        self.stale_gate_seconds = stale_gate_seconds

    # Projects

    def create_project(self, payload: ProjectInput) -> dict:
        name = str(payload.name or '').strip()
        if not name:
            raise InputValidationError('name is required', field='name')
        return self.tasks.create_project(
            ProjectCreateRecord(
                name=name,
                workspace_path=payload.workspace_path,
                stack=dict(payload.stack or {}),
                deployment=dict(payload.deployment or {}),
                agents=dict(payload.agents or {}),
                notifications=dict(payload.notifications or {}),
                human_checkpoint=payload.human_checkpoint,
                project_id=payload.project_id,
            )
        )

    def get_project(self, project_id: str) -> dict:
        row = self.tasks.get_project(project_id)
        if row is None:
            raise KeyError(project_id)
        return row

    def list_projects(self) -> list[dict]:
        return self.tasks.list_projects()

    # Board

    def create_task(self, payload: TaskInput) -> dict:
        title = str(payload.title or '').strip()
        if not title:
            raise InputValidationError('title is required', field='title')
        if self.tasks.get_project(payload.project_id) is None:
            raise ConfigurationError(f'unknown project: {payload.project_id}', field='project_id')
        criteria = [
            AcceptanceCriterion.from_dict(dict(item), index=idx).to_dict()
            for idx, item in enumerate(payload.acceptance_criteria or [])
        ]
        row = self.tasks.create_task(
            TaskCreateRecord(
                project_id=payload.project_id,
                title=title,
                description=str(payload.description or ''),
                assigned_agent=payload.assigned_agent,
                acceptance_criteria=criteria,
            )
        )
        self.tasks.append_event(row['task_id'], event_type=EventType.TASK_CREATED, payload={'title': title})
        return row

    def get_task(self, task_id: str) -> dict:
        row = self.tasks.get_task(task_id)
        if row is None:
            raise KeyError(task_id)
        return row

    def list_tasks(
        self,
        *,
        project_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        statuses = None
        if status:
            try:
                statuses = [TaskStatus(str(status).strip().lower()).value]
            except ValueError as exc:
                raise InputValidationError(f'unknown status: {status}', field='status') from exc
        return self.tasks.list_tasks(project_id=project_id, statuses=statuses, limit=limit)

    def move_task(self, task_id: str, *, status: str) -> dict:
        try:
            target = TaskStatus(str(status or '').strip().lower())
        except ValueError as exc:
            raise InputValidationError(f'unknown status: {status}', field='status') from exc
        if target not in BOARD_STATUSES:
            raise InputValidationError(f'{target.value} is managed by the verification pipeline', field='status')
        task = self.get_task(task_id)
        current = TaskStatus(task['status'])
        if current not in BOARD_STATUSES:
            raise InputValidationError(
                f'task {task_id} is in the verification pipeline (status={current.value})',
                field='status',
            )
        row = self.tasks.update_task(task_id, {'status': target.value})
        if current is not target:
            self.tasks.append_event(
                task_id,
                event_type=EventType.STATUS_CHANGED,
                payload={'from': current.value, 'to': target.value},
            )
        return row

    def list_events(self, task_id: str) -> list[dict]:
        return self.tasks.list_events(task_id)

    def list_verifications(self, task_id: str, *, gate: str | None = None) -> list[dict]:
        return self.tasks.list_verifications(task_id, gate=gate)

    # Verification pipeline

    def start_pipeline(self, task_id: str) -> dict:
        return self.engine.start_pipeline(task_id)

    def run_gate(
        self,
        task_id: str,
        *,
        gate: str,
        attempt: int,
        project_id: str | None = None,
        acceptance_criteria: list[dict] | None = None,
    ) -> dict:
        return self.engine.run_gate(
            task_id,
            gate,
            attempt,
            project_id=project_id,
            acceptance_criteria=acceptance_criteria,
        )

    def auto_fix_complete(self, task_id: str, *, gate: str | None = None) -> dict:
        return self.engine.auto_fix_complete(task_id, gate=gate)

    def approve(self, task_id: str, *, notes: str | None = None) -> dict:
        return self.engine.approve(task_id, notes=notes)

    def reject(self, task_id: str, *, notes: str) -> dict:
        return self.engine.reject(task_id, notes=notes)

    def retry_with_instructions(self, task_id: str, *, instructions: str) -> dict:
        return self.engine.retry_with_instructions(task_id, instructions=instructions)

    def reassign(self, task_id: str, *, agent: str) -> dict:
        return self.engine.reassign(task_id, agent=agent)

    def adjust_criteria(self, task_id: str, *, acceptance_criteria: list[dict]) -> dict:
        return self.engine.adjust_criteria(task_id, acceptance_criteria=acceptance_criteria)

    def recover_stale_gate(self, task_id: str, *, stale_after_seconds: int | None = None) -> dict:
        threshold = self.stale_gate_seconds if stale_after_seconds is None else stale_after_seconds
        return self.engine.recover_stale_gate(task_id, stale_after_seconds=threshold)

    def handle_deploy_event(self, payload: DeployEventInput) -> dict:
        commit = str(payload.commit or '').strip()
        if not commit:
            raise InputValidationError('commit is required', field='commit')
        project = ProjectConfig.from_row(self.get_project(payload.project_id))
        short = commit[:7]

        if str(payload.status or '').strip().lower() == 'failure':
            self.dispatcher.emit(
                NotificationType.WARNING,
                f'Deploy failed for {project.name} (commit {short})',
                project_id=project.project_id,
                details={'commit': commit, 'deploy_url': payload.deploy_url},
            )
            return {'status': 'deploy_failure_logged', 'commit': commit}

        pending = self.tasks.list_tasks(
            project_id=project.project_id,
            statuses=[g.value for g in DEPLOY_GATES],
            limit=500,
        )
        if not pending:
            self.dispatcher.emit(
                NotificationType.INFO,
                f'Deploy succeeded for {project.name} (commit {short}). No tasks pending verification.',
                project_id=project.project_id,
                details={'commit': commit, 'deploy_url': payload.deploy_url},
            )
            return {'status': 'no_pending_tasks', 'commit': commit}

        results = []
        for task in reversed(pending):
            gate = Gate(task['status'])
            attempt = int(((task.get('gate_status') or {}).get(gate.value) or {}).get('attempts') or 0) + 1
            self.tasks.append_event(
                task['task_id'],
                event_type=EventType.DEPLOY_RECEIVED,
                payload={'commit': commit, 'gate': gate.value, 'attempt': attempt},
            )
            try:
                outcome = self.engine.run_gate(task['task_id'], gate, attempt, project_id=project.project_id)
            except (InputValidationError, ConfigurationError, KeyError) as exc:
                _log.warning('deploy_trigger_rejected task_id=%s gate=%s error=%s', task['task_id'], gate.value, exc)
                outcome = {'status': 'rejected', 'error': str(exc)}
            results.append({'task_id': task['task_id'], 'gate': gate.value, 'result': outcome})

        return {
            'status': 'verification_triggered',
            'commit': commit,
            'tasks_checked': len(results),
            'results': results,
        }

    def check_criteria(self, url: str, criteria: list[dict]) -> dict:
        """Run the perception checks against *url* without touching any task."""
        target = str(url or '').strip()
        if not target:
            raise InputValidationError('url is required', field='url')
        parsed = [AcceptanceCriterion.from_dict(dict(c), index=i) for i, c in enumerate(criteria or [])]
        if not parsed:
            raise InputValidationError('at least one acceptance criterion is required', field='acceptance_criteria')
        result = verify_criteria(self.browser, target, parsed)
        return {
            'overall': 'pass' if result.passed else 'fail',
            'summary': result.summary,
            'results': [r.to_dict() for r in result.criteria_results],
            'console_errors': result.details.get('console_errors', []),
            'network_errors': result.details.get('network_errors', []),
        }

    # Notifications and health

    def emit_notification(
        self,
        *,
        type: str,
        message: str,
        project_id: str | None = None,
        task_id: str | None = None,
        details: dict | None = None,
    ) -> dict:
        try:
            kind = NotificationType(str(type or '').strip().lower())
        except ValueError as exc:
            raise InputValidationError(f'unknown notification type: {type}', field='type') from exc
        if not str(message or '').strip():
            raise InputValidationError('message is required', field='message')
        return self.dispatcher.emit(kind, message, project_id=project_id, task_id=task_id, details=details)

    def list_notifications(self, *, project_id: str | None = None, limit: int = 100) -> list[dict]:
        return self.dispatcher.list(project_id=project_id, limit=limit)

    def check_health(self, project_id: str) -> dict:
        return self.monitor.check_project(project_id)

    def check_all_health(self) -> list[dict]:
        return self.monitor.run_all()

    # Agents and rooms

    def register_agent(self, record: dict) -> dict:
        name = str(record.get('name') or '').strip()
        if not name:
            raise InputValidationError('name is required', field='name')
        self.directory.register(record)
        return self.chat.get_agent(name) or {}

    def list_agents(self) -> list[dict]:
        return self.chat.list_agents()

    def create_room(self, *, name: str, routing_mode: str = RoutingMode.ALL.value, room_id: str | None = None) -> dict:
        if not str(name or '').strip():
            raise InputValidationError('name is required', field='name')
        mode = self._routing_mode(routing_mode)
        return self.chat.create_room(name=name, routing_mode=mode.value, room_id=room_id)

    def get_room(self, room_id: str) -> dict:
        row = self.chat.get_room(room_id)
        if row is None:
            raise KeyError(room_id)
        return row

    def set_routing_mode(self, room_id: str, routing_mode: str) -> dict:
        return self.chat.set_routing_mode(room_id, self._routing_mode(routing_mode).value)

    @staticmethod
    def _routing_mode(value: str) -> RoutingMode:
        try:
            return RoutingMode(str(value or '').strip().lower())
        except ValueError as exc:
            raise InputValidationError(f'unknown routing mode: {value}', field='routing_mode') from exc

    def join_room(self, room_id: str, *, name: str, participant_type: str = 'agent', active: bool = True) -> dict:
        kind = str(participant_type or '').strip().lower()
        if kind not in {'agent', 'human'}:
            raise InputValidationError('participant_type must be agent or human', field='participant_type')
        if kind == 'agent' and self.directory.find(name) is None:
            raise ConfigurationError(f'unknown agent: {name}', field='name')
        return self.chat.upsert_participant(room_id, name=name, participant_type=kind, active=active)

    def list_participants(self, room_id: str, *, active_only: bool = False) -> list[dict]:
        return self.chat.list_participants(room_id, active_only=active_only)

    def list_messages(self, room_id: str, *, limit: int = 50) -> list[dict]:
        self.get_room(room_id)
        return self.chat.list_recent_messages(room_id, limit=limit)

    def post_message(self, payload: PostMessageInput) -> dict:
        self.get_room(payload.room_id)
        content = str(payload.content or '')
        if not content.strip() and not payload.audio_url:
            raise InputValidationError('content is required', field='content')
        sender_type = payload.sender_type or self.router.infer_sender_type(payload.room_id, payload.sender_name)
        message = self.chat.insert_message(
            payload.room_id,
            sender_name=payload.sender_name,
            sender_type=sender_type,
            content=content,
            content_type=payload.content_type,
            audio_url=payload.audio_url,
        )
        routing = None
        if payload.route and sender_type != SenderType.SYSTEM.value:
            routing = self.route_message(
                room_id=payload.room_id,
                message_id=message['id'],
                sender_name=payload.sender_name,
                sender_type=sender_type,
                content=content,
                content_type=payload.content_type,
                audio_url=payload.audio_url,
            )
        return {'message': self.chat.get_message(message['id']) or message, 'routing': routing}

    def route_message(self, **kwargs) -> dict:
        return self.router.route(**kwargs)

    def raise_hand(self, room_id: str, *, agent: str, reason: str | None = None) -> dict:
        return self.router.raise_hand(room_id, agent, reason=reason)

    def ask_hand_raise(self, room_id: str, *, content: str, exclude: list[str] | None = None) -> dict:
        return self.router.ask_hand_raise(room_id, content=content, exclude=exclude)

    def request_responses(self, room_id: str, *, targets: list[str] | None = None, content: str | None = None) -> dict:
        return self.router.request_responses(room_id, targets=targets, content=content)

    def lower_all_hands(self, room_id: str) -> dict:
        return self.router.lower_all_hands(room_id)

    def start_discussion(
        self,
        room_id: str,
        *,
        topic: str,
        deliverable: str = '',
        agents: list[str] | None = None,
        discussion_id: str | None = None,
    ) -> dict:
        return self.discussions.start(
            room_id,
            topic=topic,
            deliverable=deliverable,
            agents=agents,
            discussion_id=discussion_id,
        )

    def stop_discussion(self, discussion_id: str) -> dict:
        stopped = self.discussions.stop(discussion_id)
        return {'discussion_id': discussion_id, 'stopping': stopped}

    def read_audio(self, message_id: str) -> bytes | None:
        store = self.router.audio_store
        if store is None:
            return None
        try:
            return store.read(message_id)
        except ValueError:
            return None


def build_service(
    settings: Settings,
    *,
    task_repository: TaskRepository,
    chat_repository: ChatRepository,
    invoker: AgentInvoker | None = None,
    browser: BrowserPort | None = None,
    channel: NotificationChannel | None = None,
    executor: ShellCommandExecutor | None = None,
    transcriber: Transcriber | None = None,
    synthesizer: SpeechSynthesizer | None = None,
    execution_queue: ExecutionQueue | None = None,
) -> GatekeeperService:
    """Wire every component from *settings*; any port may be swapped for a fake."""
    invoker = invoker or AgentRunner(
        timeout_seconds=settings.agent_timeout_seconds,
        timeout_retries=settings.agent_timeout_retries,
        dry_run=settings.dry_run,
    )
    browser = browser or PlaywrightBrowser(page_load_timeout_seconds=settings.page_load_timeout_seconds)
    if channel is None:
        channel = HttpNotificationChannel(
            gateway_url=settings.notification_gateway_url,
            gateway_token=os.getenv('AWE_GK_NOTIFICATION_TOKEN'),
            webhook_url=settings.notification_webhook_url,
        )
    dispatcher = NotificationDispatcher(
        task_repository,
        channel=channel,
        default_target=settings.notification_target,
    )
    if execution_queue is None and settings.execution_queue_url:
        execution_queue = HttpExecutionQueue(
            url=settings.execution_queue_url,
            token=os.getenv('AWE_GK_EXECUTION_QUEUE_TOKEN'),
            timeout_seconds=settings.http_check_timeout_seconds,
        )
    directory = AgentDirectory(chat_repository)
    context_builder = ContextBuilder(chat_repository, message_limit=settings.context_message_limit)

    engine = VerificationGateEngine(
        repository=task_repository,
        dispatcher=dispatcher,
        runners={
            Gate.BUILD_CHECK: BuildCheckRunner(
                executor=executor,
                workspace_root=settings.workspace_root,
                timeout_seconds=settings.command_timeout_seconds,
            ),
            Gate.DEPLOY_CHECK: DeployCheckRunner(
                browser=browser,
                http_timeout_seconds=settings.http_check_timeout_seconds,
            ),
            Gate.PERCEPTION_CHECK: PerceptionCheckRunner(browser=browser),
        },
    )
    router = MessageRouter(
        repository=chat_repository,
        directory=directory,
        context_builder=context_builder,
        invoker=invoker,
        strategies={
            RoutingMode.ALL: RespondAll(),
            RoutingMode.MENTIONED: RespondMentioned(),
            RoutingMode.MODERATED: ModeratedStrategy(
                invoker=invoker,
                directory=directory,
                moderator_agent=settings.moderator_agent,
            ),
        },
        transcriber=transcriber or WhisperTranscriber(
            url=settings.transcription_url,
            timeout_seconds=settings.agent_timeout_seconds,
        ),
        synthesizer=synthesizer or ElevenLabsSynthesizer(
            url=settings.tts_url,
            timeout_seconds=settings.agent_timeout_seconds,
        ),
        audio_store=AudioStore(settings.audio_root),
        max_workers=settings.router_max_workers,
        agent_timeout_seconds=settings.agent_timeout_seconds,
        execution_queue=execution_queue,
    )
    discussions = DiscussionOrchestrator(
        repository=chat_repository,
        directory=directory,
        context_builder=context_builder,
        invoker=invoker,
        moderator_agent=settings.moderator_agent,
        timeout_seconds=settings.discussion_timeout_seconds,
        max_total_tokens=settings.discussion_max_total_tokens,
        max_tokens_per_agent=settings.discussion_max_tokens_per_agent,
    )
    monitor = HealthMonitor(
        repository=task_repository,
        dispatcher=dispatcher,
        browser=browser,
        http_timeout_seconds=settings.http_check_timeout_seconds,
    )
    return GatekeeperService(
        task_repository=task_repository,
        chat_repository=chat_repository,
        engine=engine,
        router=router,
        discussions=discussions,
        monitor=monitor,
        dispatcher=dispatcher,
        directory=directory,
        context_builder=context_builder,
        browser=browser,
        stale_gate_seconds=settings.stale_gate_seconds,
    )
