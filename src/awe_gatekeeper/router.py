from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import json
import re
from typing import Protocol

from awe_gatekeeper.adapters.base import AgentInvoker
from awe_gatekeeper.context import ContextBuilder
from awe_gatekeeper.directory import AgentDirectory
from awe_gatekeeper.domain.models import RoutingMode, SenderType
from awe_gatekeeper.errors import ConfigurationError
from awe_gatekeeper.execution import EXECUTION_SENDER, ExecutionQueue, describe_request, extract_execution_payload
from awe_gatekeeper.observability import get_logger, set_room_context
from awe_gatekeeper.participants import AgentProfile, Participant, mentioned_names
from awe_gatekeeper.repository import ChatRepository
from awe_gatekeeper.storage.audio import AudioStore
from awe_gatekeeper.voice import SpeechSynthesizer, Transcriber

_log = get_logger('awe_gatekeeper.router')

DEFAULT_PROMPT = 'Please respond.'
HAND_REASON_MAX_CHARS = 50
REPLY_MAX_TOKENS = 1024
HAND_RAISE_MAX_TOKENS = 60
MODERATOR_MAX_TOKENS = 256

INFRA_KEYWORDS = (
    'server', 'deploy', 'ollama', 'docker', 'git', 'terminal',
    'shell', 'n8n', 'workflow', 'infra', 'local',
)
ARCHITECTURE_KEYWORDS = (
    'architecture', 'design', 'pattern', 'review', 'strategy',
    'plan', 'spec', 'structure',
)

_JSON_OBJECT_RE = re.compile(r'\{.*\}', re.DOTALL)


def extract_json_object(text: str) -> dict:
    match = _JSON_OBJECT_RE.search(str(text or ''))
    if not match:
        raise ValueError('no JSON object in reply')
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError('reply is not a JSON object')
    return data


def _match_names(candidates: list[str], pool: list[str]) -> list[str]:
    """Map *candidates* onto names in *pool*, case-insensitively, keeping pool spelling."""
    by_key = {name.casefold(): name for name in pool}
    out: list[str] = []
    for raw in candidates:
        name = by_key.get(str(raw or '').strip().lstrip('@').casefold())
        if name and name not in out:
            out.append(name)
    return out


@dataclass(frozen=True)
class Selection:
    names: list[str]
    reason: str


class ResponderStrategy(Protocol):
    def select(self, *, content: str, agents: list[Participant]) -> Selection:
        ...


class RespondAll:
    def select(self, *, content: str, agents: list[Participant]) -> Selection:
        return Selection([a.name for a in agents], 'mode_all')


class RespondMentioned:
    def select(self, *, content: str, agents: list[Participant]) -> Selection:
        return Selection(mentioned_names(content, [a.name for a in agents]), 'mentioned')


def keyword_fallback(content: str, names: list[str], *, devops_agent: str, architect_agent: str) -> list[str]:
    lowered = str(content or '').lower()
    mentioned = mentioned_names(content, names)
    if mentioned:
        return mentioned
    infra = any(k in lowered for k in INFRA_KEYWORDS)
    architecture = any(k in lowered for k in ARCHITECTURE_KEYWORDS)
    if infra and architecture:
        return list(names)
    if infra:
        return _match_names([devops_agent], names)
    if architecture:
        return _match_names([architect_agent], names)
    return names[:1]


class ModeratedStrategy:
    """Ask a moderator agent who should answer; fall back to keyword rules."""

    def __init__(
        self,
        *,
        invoker: AgentInvoker,
        directory: AgentDirectory,
        moderator_agent: str,
        devops_agent: str = 'ARGOS',
        architect_agent: str = 'Claude',
    ):
        self.invoker = invoker
        self.directory = directory
        self.moderator_agent = moderator_agent
        self.devops_agent = devops_agent
        self.architect_agent = architect_agent

    def _prompt(self, content: str, agents: list[AgentProfile | str]) -> str:
        lines = []
        for agent in agents:
            if isinstance(agent, AgentProfile):
                lines.append(f'- {agent.name}: {agent.role or "AI agent"}')
            else:
                lines.append(f'- {agent}')
        return (
            'You are a message router. Given a message and AI participants, decide who should respond.\n\n'
            'PARTICIPANTS:\n'
            f'{chr(10).join(lines)}\n\n'
            'RULES:\n'
            '1. @mentioned: route ONLY to them\n'
            '2. Human-to-human message: route to NOBODY\n'
            f'3. Infrastructure/DevOps/tools: {self.devops_agent}\n'
            f'4. Architecture/code review/strategy/analysis: {self.architect_agent}\n'
            '5. Broad discussion: ALL AI agents\n'
            '6. Casual/greeting: most relevant agent\n'
            f'7. Unsure: {self.devops_agent}\n\n'
            f'MESSAGE: "{content}"\n\n'
            'Respond JSON only:\n'
            '{"respond": ["AgentName"], "reason": "brief reason"}'
        )

    def select(self, *, content: str, agents: list[Participant]) -> Selection:
        names = [a.name for a in agents]
        try:
            moderator = self.directory.resolve(self.moderator_agent)
            if not moderator.can_invoke:
                raise ConfigurationError(f'No API endpoint configured for {moderator.name}')
            profiles = [self.directory.find(n) or n for n in names]
            reply = self.invoker.invoke(
                moderator,
                system_prompt='You are a message router. Respond only with valid JSON.',
                message=self._prompt(content, profiles),
                max_tokens=MODERATOR_MAX_TOKENS,
            )
            data = extract_json_object(reply.text)
            chosen = _match_names([str(v) for v in (data.get('respond') or [])], names)
            reason = str(data.get('reason') or '').strip()
            return Selection(chosen, f'moderator: {reason}' if reason else 'moderator')
        except Exception as exc:
            _log.warning('moderator_failed moderator=%s error=%s', self.moderator_agent, exc)
            chosen = keyword_fallback(
                content,
                names,
                devops_agent=self.devops_agent,
                architect_agent=self.architect_agent,
            )
            return Selection(chosen, 'keyword_fallback')


@dataclass
class FanOutResult:
    responded: list[str] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    messages: list[dict] = field(default_factory=list)


class MessageRouter:
    """Decide which agents answer a War Room message and collect their replies.

    Replies are gathered concurrently; each agent branch is isolated so one
    failure becomes a system message without touching its siblings.
    """

    def __init__(
        self,
        *,
        repository: ChatRepository,
        directory: AgentDirectory,
        context_builder: ContextBuilder,
        invoker: AgentInvoker,
        strategies: dict[RoutingMode, ResponderStrategy] | None = None,
        transcriber: Transcriber | None = None,
        synthesizer: SpeechSynthesizer | None = None,
        audio_store: AudioStore | None = None,
        max_workers: int = 8,
        agent_timeout_seconds: float | None = None,
        execution_queue: ExecutionQueue | None = None,
    ):
        self.repository = repository
        self.directory = directory
        self.context_builder = context_builder
        self.invoker = invoker
        self.strategies = dict(strategies or {RoutingMode.ALL: RespondAll(), RoutingMode.MENTIONED: RespondMentioned()})
        self.transcriber = transcriber
        self.synthesizer = synthesizer
        self.audio_store = audio_store
        self.max_workers = max(1, int(max_workers))
        self.agent_timeout_seconds = agent_timeout_seconds
        self.execution_queue = execution_queue

    def _room(self, room_id: str) -> dict:
        room = self.repository.get_room(room_id)
        if room is None:
            raise KeyError(room_id)
        return room

    def _active_agents(self, room_id: str) -> list[Participant]:
        rows = self.repository.list_participants(room_id, active_only=True)
        return [p for p in (Participant.from_row(r) for r in rows) if p.is_agent]

    def _infer_sender_type(self, sender_name: str, room_agents: list[str]) -> str:
        # Registered non-human agents count as agents even when absent from the room.
        profile = self.directory.find(sender_name)
        if profile is not None:
            return SenderType.HUMAN.value if profile.is_human else SenderType.AGENT.value
        if sender_name.casefold() in {n.casefold() for n in room_agents}:
            return SenderType.AGENT.value
        return SenderType.HUMAN.value

    def infer_sender_type(self, room_id: str, sender_name: str) -> str:
        return self._infer_sender_type(sender_name, [a.name for a in self._active_agents(room_id)])

    def route(
        self,
        *,
        room_id: str,
        sender_name: str,
        content: str,
        message_id: str | None = None,
        sender_type: str | None = None,
        content_type: str = 'text',
        audio_url: str | None = None,
    ) -> dict:
        room = self._room(room_id)
        set_room_context(room_id)
        text = str(content or '')

        if content_type == 'voice' and audio_url and self.transcriber is not None:
            text = self.transcriber.transcribe(audio_url)
            if message_id:
                self.repository.update_message(message_id, content=text, metadata={'original_type': 'voice'})

        agents = self._active_agents(room_id)
        if not agents:
            return {'status': 'no_agents', 'responded': [], 'failed': [], 'routing_reason': 'no_active_agents'}

        agent_names = [a.name for a in agents]
        if sender_type is None:
            sender_type = self._infer_sender_type(sender_name, agent_names)

        if sender_type == SenderType.AGENT.value:
            names = [n for n in mentioned_names(text, agent_names) if n.casefold() != sender_name.casefold()]
            selection = Selection(names, 'agent_mention')
        else:
            mode = RoutingMode(str(room.get('routing_mode') or RoutingMode.ALL.value))
            strategy = self.strategies.get(mode) or self.strategies[RoutingMode.ALL]
            selection = strategy.select(content=text, agents=agents)

        _log.info('route_selected room_id=%s sender=%s responders=%s reason=%s',
                  room_id, sender_name, ','.join(selection.names), selection.reason)
        if not selection.names:
            return {'status': 'no_response_needed', 'responded': [], 'failed': [], 'routing_reason': selection.reason}

        outcome = self.fan_out(room_id, selection.names, content=text, routing_reason=selection.reason)
        return {
            'status': 'ok',
            'responded': outcome.responded,
            'failed': outcome.failed,
            'routing_reason': selection.reason,
        }

    def fan_out(self, room_id: str, names: list[str], *, content: str, routing_reason: str) -> FanOutResult:
        roles = {p.name: p.role for p in self.directory.list_agents() if p.role}
        context = self.context_builder.build_room_context(room_id, roles=roles)
        result = FanOutResult()
        workers = min(self.max_workers, len(names))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='gk-router') as pool:
            futures = [
                (name, pool.submit(self._respond, room_id, name, content, context, routing_reason))
                for name in names
            ]
            for name, future in futures:
                ok, payload = future.result()
                if ok:
                    result.responded.append(name)
                    result.messages.append(payload)
                else:
                    result.failed.append(payload)
        return result

    def _respond(self, room_id: str, name: str, content: str, context: str, routing_reason: str) -> tuple[bool, dict]:
        set_room_context(room_id)
        try:
            agent = self.directory.resolve(name)
            if not agent.can_invoke:
                raise ConfigurationError(f'No API endpoint configured for {agent.name}')
            reply = self.invoker.invoke(
                agent,
                system_prompt=f'{agent.effective_system_prompt()}\n\n{context}',
                message=content,
                max_tokens=REPLY_MAX_TOKENS,
                timeout_seconds=self.agent_timeout_seconds,
            )
            execution = extract_execution_payload(reply.text)
            metadata = {
                'model_used': reply.model,
                'tokens_used': reply.tokens_used,
                'response_time_ms': reply.response_time_ms,
                'routing_reason': routing_reason,
            }
            if execution is not None:
                metadata['execution'] = execution
            message = self.repository.insert_message(
                room_id,
                sender_name=agent.name,
                sender_type=SenderType.AGENT.value,
                content=reply.text,
                metadata=metadata,
            )
            self._lower_hand(room_id, agent.name)
        except Exception as exc:
            _log.warning('agent_reply_failed room_id=%s agent=%s error=%s', room_id, name, exc)
            try:
                self.repository.insert_message(
                    room_id,
                    sender_name='System',
                    sender_type=SenderType.SYSTEM.value,
                    content=f'⚠️ {name} could not respond: {exc}',
                    content_type='system',
                    metadata={'error': True, 'agent': name},
                )
            except Exception:
                _log.exception('agent_failure_message_failed room_id=%s agent=%s', room_id, name)
            return False, {'agent': name, 'error': str(exc)}

        if execution is not None and self.execution_queue is not None:
            self._queue_execution(room_id, agent.name, message, execution)
        if agent.voice_id and self.synthesizer is not None and self.audio_store is not None:
            message = self._attach_voice(message, agent)
        return True, message

    def _queue_execution(self, room_id: str, agent: str, message: dict, request: dict) -> None:
        what = describe_request(request)
        try:
            execution_id = self.execution_queue.submit(
                room_id=room_id,
                agent=agent,
                message_id=message['id'],
                request=request,
            )
        except Exception as exc:
            _log.warning('execution_queue_failed room_id=%s agent=%s error=%s', room_id, agent, exc)
            content = f'❌ Could not queue {what} from {agent}: {exc}'
            metadata = {'error': True, 'agent': agent, 'message_id': message['id']}
        else:
            _log.info('execution_queued room_id=%s agent=%s execution_id=%s', room_id, agent, execution_id)
            content = f'📦 Queued {what} from {agent} (execution {execution_id})'
            metadata = {'agent': agent, 'message_id': message['id'], 'execution_id': execution_id}
        self.repository.insert_message(
            room_id,
            sender_name=EXECUTION_SENDER,
            sender_type=SenderType.SYSTEM.value,
            content=content,
            content_type='system',
            metadata=metadata,
        )

    def _attach_voice(self, message: dict, agent: AgentProfile) -> dict:
        try:
            audio = self.synthesizer.synthesize(message['content'], voice_id=agent.voice_id)
            url = self.audio_store.save(message['id'], audio)
            return self.repository.update_message(message['id'], audio_url=url)
        except Exception as exc:
            _log.warning('tts_failed agent=%s message_id=%s error=%s', agent.name, message['id'], exc)
            return message

    def _lower_hand(self, room_id: str, name: str) -> None:
        try:
            self.repository.set_hand(room_id, name, raised=False)
        except KeyError:
            pass

    # Hand raising

    def raise_hand(self, room_id: str, agent: str, *, reason: str | None = None) -> dict:
        self._room(room_id)
        text = str(reason or '').strip()[:HAND_REASON_MAX_CHARS] or None
        return self.repository.set_hand(room_id, agent, raised=True, reason=text)

    def ask_hand_raise(self, room_id: str, *, content: str, exclude: list[str] | None = None) -> dict:
        """Ask every idle agent whether it has something to add; raise hands for those that do."""
        self._room(room_id)
        set_room_context(room_id)
        self.repository.clear_hands(room_id)
        skip = {str(n).casefold() for n in (exclude or [])}
        names = [a.name for a in self._active_agents(room_id) if a.name.casefold() not in skip]
        raised: list[dict] = []
        if not names:
            return {'status': 'ok', 'raised': raised, 'asked': []}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(names)), thread_name_prefix='gk-hands') as pool:
            futures = [(name, pool.submit(self._wants_to_speak, name, content)) for name in names]
            for name, future in futures:
                wants, reason = future.result()
                if wants:
                    self.repository.set_hand(room_id, name, raised=True, reason=reason)
                    raised.append({'agent': name, 'reason': reason})
        return {'status': 'ok', 'raised': raised, 'asked': names}

    def _wants_to_speak(self, name: str, content: str) -> tuple[bool, str | None]:
        try:
            agent = self.directory.resolve(name)
            if not agent.can_invoke:
                return False, None
            system_prompt = (
                f'You are {agent.name}, a {agent.role or "team member"}. '
                "Based on the user's message, decide if you have relevant expertise to contribute. "
                'Respond ONLY with JSON: {"wants_to_speak": true or false, "reason": "max 5 words"}'
            )
            reply = self.invoker.invoke(
                agent,
                system_prompt=system_prompt,
                message=content,
                max_tokens=HAND_RAISE_MAX_TOKENS,
                timeout_seconds=self.agent_timeout_seconds,
            )
            data = extract_json_object(reply.text)
        except Exception as exc:
            _log.info('hand_raise_skipped agent=%s error=%s', name, exc)
            return False, None
        reason = str(data.get('reason') or '').strip()[:HAND_REASON_MAX_CHARS] or None
        return data.get('wants_to_speak') is True, reason

    def request_responses(
        self,
        room_id: str,
        *,
        targets: list[str] | None = None,
        content: str | None = None,
    ) -> dict:
        self._room(room_id)
        set_room_context(room_id)
        agent_names = [a.name for a in self._active_agents(room_id)]
        if targets:
            names = _match_names(targets, agent_names)
            reason = 'requested'
        else:
            raised = [r['participant_name'] for r in self.repository.list_participants(room_id) if r.get('hand_raised')]
            names = _match_names(raised, agent_names)
            reason = 'hand_raised'
        if not names:
            return {'status': 'no_targets', 'responded': [], 'failed': [], 'routing_reason': reason}
        prompt = str(content or '').strip()
        if not prompt:
            latest = self.context_builder.latest_human_message(room_id)
            prompt = str((latest or {}).get('content') or '').strip() or DEFAULT_PROMPT
        outcome = self.fan_out(room_id, names, content=prompt, routing_reason=reason)
        return {'status': 'ok', 'responded': outcome.responded, 'failed': outcome.failed, 'routing_reason': reason}

    def lower_all_hands(self, room_id: str) -> dict:
        self._room(room_id)
        return {'status': 'ok', 'lowered': self.repository.clear_hands(room_id)}
