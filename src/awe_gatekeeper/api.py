from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from awe_gatekeeper.errors import ConfigurationError, InputValidationError
from awe_gatekeeper.service import (
    DeployEventInput,
    GatekeeperService,
    PostMessageInput,
    ProjectInput,
    TaskInput,
)
from awe_gatekeeper.voice import VoiceError

_log = logging.getLogger(__name__)


class CreateProjectRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    project_id: str | None = Field(default=None, max_length=64)
    workspace_path: str = Field(default='.', min_length=1)
    stack: dict[str, Any] = Field(default_factory=dict)
    deployment: dict[str, Any] = Field(default_factory=dict)
    agents: dict[str, str] = Field(default_factory=dict)
    notifications: dict[str, Any] = Field(default_factory=dict)
    human_checkpoint: bool = Field(default=True)


class CriterionPayload(BaseModel):
    id: str | None = Field(default=None, max_length=64)
    description: str = Field(default='', max_length=2000)
    type: str = Field(default='visual', max_length=32)
    test_selector: str | None = Field(default=None, max_length=500)
    test_action: str | None = Field(default=None, max_length=500)
    expected_result: str | None = Field(default=None, max_length=500)


class CreateTaskRequest(BaseModel):
    project_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(default='')
    assigned_agent: str | None = Field(default=None, max_length=64)
    acceptance_criteria: list[CriterionPayload] = Field(default_factory=list)


class BoardStatusRequest(BaseModel):
    status: str = Field(min_length=1, max_length=32)


class RunGateRequest(BaseModel):
    task_id: str = Field(min_length=1)
    gate: str = Field(min_length=1, max_length=32)
    attempt: int
    project_id: str | None = Field(default=None)
    acceptance_criteria: list[CriterionPayload] | None = Field(default=None)


class AutoFixCompleteRequest(BaseModel):
    gate: str | None = Field(default=None, max_length=32)


class RecoverGateRequest(BaseModel):
    stale_after_seconds: int | None = Field(default=None, ge=0)


class DecisionRequest(BaseModel):
    decision: Literal['approve', 'reject']
    notes: str | None = Field(default=None, max_length=4000)


class RetryRequest(BaseModel):
    instructions: str = Field(min_length=1, max_length=8000)


class ReassignRequest(BaseModel):
    agent: str = Field(min_length=1, max_length=64)


class AdjustCriteriaRequest(BaseModel):
    acceptance_criteria: list[CriterionPayload] = Field(min_length=1)


class DeployEventRequest(BaseModel):
    project_id: str = Field(min_length=1)
    commit: str = Field(min_length=1, max_length=64)
    deploy_url: str | None = Field(default=None, max_length=2000)
    status: str | None = Field(default=None, max_length=32)


class PerceptionCheckRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2000)
    acceptance_criteria: list[CriterionPayload] = Field(default_factory=list)


class NotificationRequest(BaseModel):
    type: str = Field(min_length=1, max_length=32)
    message: str = Field(min_length=1)
    project_id: str | None = Field(default=None)
    task_id: str | None = Field(default=None)
    details: dict[str, Any] = Field(default_factory=dict)


class AgentRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    role: str = Field(default='', max_length=255)
    session_key: str | None = Field(default=None, max_length=255)
    api_endpoint: str | None = Field(default=None, max_length=2000)
    api_model: str | None = Field(default=None, max_length=255)
    system_prompt: str | None = Field(default=None)
    voice_id: str | None = Field(default=None, max_length=255)


class CreateRoomRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    routing_mode: str = Field(default='all', max_length=32)
    room_id: str | None = Field(default=None, max_length=64)


class RoutingModeRequest(BaseModel):
    routing_mode: str = Field(min_length=1, max_length=32)


class ParticipantRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    participant_type: Literal['agent', 'human'] = Field(default='agent')
    active: bool = Field(default=True)


class PostMessageRequest(BaseModel):
    sender_name: str = Field(min_length=1, max_length=64)
    sender_type: Literal['human', 'agent', 'system'] | None = Field(default=None)
    content: str = Field(default='')
    content_type: Literal['text', 'voice', 'system'] = Field(default='text')
    audio_url: str | None = Field(default=None, max_length=2000)
    route: bool = Field(default=True)


class RouteMessageRequest(BaseModel):
    room_id: str = Field(min_length=1)
    sender_name: str = Field(min_length=1, max_length=64)
    content: str = Field(default='')
    message_id: str | None = Field(default=None)
    sender_type: Literal['human', 'agent', 'system'] | None = Field(default=None)
    content_type: Literal['text', 'voice', 'system'] = Field(default='text')
    audio_url: str | None = Field(default=None, max_length=2000)


class RaiseHandRequest(BaseModel):
    agent: str = Field(min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=255)


class AskHandsRequest(BaseModel):
    content: str = Field(min_length=1)
    exclude: list[str] = Field(default_factory=list)


class RequestResponsesRequest(BaseModel):
    targets: list[str] = Field(default_factory=list)
    content: str | None = Field(default=None)


class StartDiscussionRequest(BaseModel):
    room_id: str = Field(min_length=1)
    topic: str = Field(min_length=1, max_length=2000)
    deliverable: str = Field(default='', max_length=2000)
    agents: list[str] = Field(default_factory=list)
    discussion_id: str | None = Field(default=None, max_length=64)


class StopDiscussionRequest(BaseModel):
    discussion_id: str = Field(min_length=1, max_length=64)


class GateResponse(BaseModel):
    status: str
    gate: str
    passed: bool | None = None
    attempt: int
    task_status: str
    summary: str | None = None


class TaskResponse(BaseModel):
    task_id: str
    project_id: str
    title: str
    description: str
    assigned_agent: str | None = None
    status: str
    current_gate: str | None = None
    gate_status: dict[str, dict[str, Any]]
    acceptance_criteria: list[dict[str, Any]]
    human_notes: str | None = None
    created_at: str
    updated_at: str


class EventResponse(BaseModel):
    seq: int
    task_id: str
    type: str
    payload: dict[str, Any]
    created_at: str


class AppState:
    def __init__(self, service: GatekeeperService):
        self.service = service


def _criteria(items: list[CriterionPayload] | None) -> list[dict] | None:
    if items is None:
        return None
    return [item.model_dump(exclude_none=True) for item in items]


def _to_task_response(row: dict) -> TaskResponse:
    return TaskResponse(
        task_id=str(row['task_id']),
        project_id=str(row['project_id']),
        title=str(row['title']),
        description=str(row.get('description') or ''),
        assigned_agent=row.get('assigned_agent'),
        status=str(row['status']),
        current_gate=row.get('current_gate'),
        gate_status=dict(row.get('gate_status') or {}),
        acceptance_criteria=list(row.get('acceptance_criteria') or []),
        human_notes=row.get('human_notes'),
        created_at=str(row['created_at']),
        updated_at=str(row['updated_at']),
    )


def create_app(*, service: GatekeeperService) -> FastAPI:
    app = FastAPI(title='awe-gatekeeper api', version='0.1.0')
    app.state.container = AppState(service=service)

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = list(loc)
        if parts and str(parts[0]) in source_prefixes:
            parts = parts[1:]
        if not parts:
            return None

        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
                continue
            text = str(part)
            field = f'{field}.{text}' if field else text
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {'code': code, 'message': message}
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError):  # noqa: ARG001
        return JSONResponse(
            status_code=422,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(VoiceError)
    async def handle_voice_error(request: Request, exc: VoiceError):  # noqa: ARG001
        _log.warning('voice_error path=%s error=%s', request.url.path, exc)
        return JSONResponse(status_code=502, content=_error_payload(message=str(exc), code='voice_error'))

    def get_service() -> GatekeeperService:
        return app.state.container.service

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    # Projects

    @app.post('/api/projects', status_code=201)
    def create_project(payload: CreateProjectRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        return service.create_project(ProjectInput(**payload.model_dump()))

    @app.get('/api/projects')
    def list_projects(service: GatekeeperService = Depends(get_service)) -> list[dict]:
        return service.list_projects()

    @app.get('/api/projects/{project_id}')
    def get_project(project_id: str, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.get_project(project_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='project not found') from exc

    # Tasks

    @app.post('/api/tasks', response_model=TaskResponse, status_code=201)
    def create_task(payload: CreateTaskRequest, service: GatekeeperService = Depends(get_service)) -> TaskResponse:
        row = service.create_task(
            TaskInput(
                project_id=payload.project_id,
                title=payload.title,
                description=payload.description,
                assigned_agent=payload.assigned_agent,
                acceptance_criteria=_criteria(payload.acceptance_criteria) or [],
            )
        )
        return _to_task_response(row)

    @app.get('/api/tasks', response_model=list[TaskResponse])
    def list_tasks(
        service: GatekeeperService = Depends(get_service),
        project_id: str | None = Query(default=None),
        status: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[TaskResponse]:
        rows = service.list_tasks(project_id=project_id, status=status, limit=limit)
        return [_to_task_response(r) for r in rows]

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: str, service: GatekeeperService = Depends(get_service)) -> TaskResponse:
        try:
            return _to_task_response(service.get_task(task_id))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/status', response_model=TaskResponse)
    def move_task(
        task_id: str,
        payload: BoardStatusRequest,
        service: GatekeeperService = Depends(get_service),
    ) -> TaskResponse:
        try:
            return _to_task_response(service.move_task(task_id, status=payload.status))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/pipeline', response_model=TaskResponse)
    def start_pipeline(task_id: str, service: GatekeeperService = Depends(get_service)) -> TaskResponse:
        try:
            return _to_task_response(service.start_pipeline(task_id))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.get('/api/tasks/{task_id}/events', response_model=list[EventResponse])
    def list_events(task_id: str, service: GatekeeperService = Depends(get_service)) -> list[EventResponse]:
        try:
            rows = service.list_events(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return [
            EventResponse(
                seq=int(row['seq']),
                task_id=str(row['task_id']),
                type=str(row['type']),
                payload=dict(row.get('payload', {})),
                created_at=str(row['created_at']),
            )
            for row in rows
        ]

    @app.get('/api/tasks/{task_id}/verifications')
    def list_verifications(
        task_id: str,
        service: GatekeeperService = Depends(get_service),
        gate: str | None = Query(default=None),
    ) -> list[dict]:
        try:
            service.get_task(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return service.list_verifications(task_id, gate=gate)

    # Verification pipeline

    @app.post('/api/gates/run', response_model=GateResponse)
    def run_gate(payload: RunGateRequest, service: GatekeeperService = Depends(get_service)) -> GateResponse:
        try:
            result = service.run_gate(
                payload.task_id,
                gate=payload.gate,
                attempt=payload.attempt,
                project_id=payload.project_id,
                acceptance_criteria=_criteria(payload.acceptance_criteria),
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return GateResponse(**result)

    @app.post('/api/tasks/{task_id}/auto-fix-complete', response_model=GateResponse)
    def auto_fix_complete(
        task_id: str,
        payload: AutoFixCompleteRequest,
        service: GatekeeperService = Depends(get_service),
    ) -> GateResponse:
        try:
            result = service.auto_fix_complete(task_id, gate=payload.gate)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return GateResponse(**result)

    @app.post('/api/tasks/{task_id}/recover-gate', response_model=GateResponse)
    def recover_gate(
        task_id: str,
        payload: RecoverGateRequest,
        service: GatekeeperService = Depends(get_service),
    ) -> GateResponse:
        try:
            result = service.recover_stale_gate(task_id, stale_after_seconds=payload.stale_after_seconds)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return GateResponse(**result)

    @app.post('/api/tasks/{task_id}/decision', response_model=TaskResponse)
    def decide(task_id: str, payload: DecisionRequest, service: GatekeeperService = Depends(get_service)) -> TaskResponse:
        try:
            if payload.decision == 'approve':
                row = service.approve(task_id, notes=payload.notes)
            else:
                row = service.reject(task_id, notes=payload.notes or '')
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_task_response(row)

    @app.post('/api/tasks/{task_id}/retry', response_model=TaskResponse)
    def retry(task_id: str, payload: RetryRequest, service: GatekeeperService = Depends(get_service)) -> TaskResponse:
        try:
            return _to_task_response(service.retry_with_instructions(task_id, instructions=payload.instructions))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/reassign', response_model=TaskResponse)
    def reassign(task_id: str, payload: ReassignRequest, service: GatekeeperService = Depends(get_service)) -> TaskResponse:
        try:
            return _to_task_response(service.reassign(task_id, agent=payload.agent))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/criteria', response_model=TaskResponse)
    def adjust_criteria(
        task_id: str,
        payload: AdjustCriteriaRequest,
        service: GatekeeperService = Depends(get_service),
    ) -> TaskResponse:
        try:
            row = service.adjust_criteria(task_id, acceptance_criteria=_criteria(payload.acceptance_criteria) or [])
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_task_response(row)

    @app.post('/api/deploy-events')
    def deploy_event(payload: DeployEventRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.handle_deploy_event(DeployEventInput(**payload.model_dump()))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='project not found') from exc

    @app.post('/api/perception-check')
    def perception_check(payload: PerceptionCheckRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        return service.check_criteria(payload.url, _criteria(payload.acceptance_criteria) or [])

    # Notifications and health

    @app.post('/api/notifications', status_code=201)
    def emit_notification(payload: NotificationRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        return service.emit_notification(**payload.model_dump())

    @app.get('/api/notifications')
    def list_notifications(
        service: GatekeeperService = Depends(get_service),
        project_id: str | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[dict]:
        return service.list_notifications(project_id=project_id, limit=limit)

    @app.get('/api/health')
    def check_all_health(service: GatekeeperService = Depends(get_service)) -> list[dict]:
        return service.check_all_health()

    @app.get('/api/health/{project_id}')
    def check_health(project_id: str, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.check_health(project_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='project not found') from exc

    # Agents and rooms

    @app.post('/api/agents', status_code=201)
    def register_agent(payload: AgentRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        return service.register_agent(payload.model_dump(exclude_none=True))

    @app.get('/api/agents')
    def list_agents(service: GatekeeperService = Depends(get_service)) -> list[dict]:
        return service.list_agents()

    @app.post('/api/rooms', status_code=201)
    def create_room(payload: CreateRoomRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        return service.create_room(name=payload.name, routing_mode=payload.routing_mode, room_id=payload.room_id)

    @app.get('/api/rooms/{room_id}')
    def get_room(room_id: str, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            room = service.get_room(room_id)
            room['participants'] = service.list_participants(room_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc
        return room

    @app.post('/api/rooms/{room_id}/routing-mode')
    def set_routing_mode(
        room_id: str,
        payload: RoutingModeRequest,
        service: GatekeeperService = Depends(get_service),
    ) -> dict:
        try:
            return service.set_routing_mode(room_id, payload.routing_mode)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.post('/api/rooms/{room_id}/participants', status_code=201)
    def join_room(room_id: str, payload: ParticipantRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.join_room(
                room_id,
                name=payload.name,
                participant_type=payload.participant_type,
                active=payload.active,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.get('/api/rooms/{room_id}/messages')
    def list_messages(
        room_id: str,
        service: GatekeeperService = Depends(get_service),
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[dict]:
        try:
            return service.list_messages(room_id, limit=limit)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.post('/api/rooms/{room_id}/messages', status_code=201)
    def post_message(room_id: str, payload: PostMessageRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.post_message(PostMessageInput(room_id=room_id, **payload.model_dump()))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.post('/api/route')
    def route_message(payload: RouteMessageRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.route_message(**payload.model_dump())
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.post('/api/rooms/{room_id}/hands/raise')
    def raise_hand(room_id: str, payload: RaiseHandRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.raise_hand(room_id, agent=payload.agent, reason=payload.reason)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room or participant not found') from exc

    @app.post('/api/rooms/{room_id}/hands/ask')
    def ask_hands(room_id: str, payload: AskHandsRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.ask_hand_raise(room_id, content=payload.content, exclude=payload.exclude)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.post('/api/rooms/{room_id}/hands/request')
    def request_responses(
        room_id: str,
        payload: RequestResponsesRequest,
        service: GatekeeperService = Depends(get_service),
    ) -> dict:
        try:
            return service.request_responses(room_id, targets=payload.targets or None, content=payload.content)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.post('/api/rooms/{room_id}/hands/clear')
    def clear_hands(room_id: str, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.lower_all_hands(room_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.post('/api/discussions')
    def start_discussion(payload: StartDiscussionRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        try:
            return service.start_discussion(
                payload.room_id,
                topic=payload.topic,
                deliverable=payload.deliverable,
                agents=payload.agents or None,
                discussion_id=payload.discussion_id,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='room not found') from exc

    @app.post('/api/discussions/stop')
    def stop_discussion(payload: StopDiscussionRequest, service: GatekeeperService = Depends(get_service)) -> dict:
        return service.stop_discussion(payload.discussion_id)

    @app.get('/api/audio/war-room-voice/{filename}')
    def get_audio(filename: str, service: GatekeeperService = Depends(get_service)) -> Response:
        message_id = filename[:-4] if filename.endswith('.mp3') else filename
        data = service.read_audio(message_id)
        if data is None:
            raise HTTPException(status_code=404, detail='audio not found')
        return Response(content=data, media_type='audio/mpeg')

    return app
