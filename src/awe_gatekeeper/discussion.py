from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event, Lock
import time
from typing import Callable
from uuid import uuid4

from awe_gatekeeper.adapters.base import AgentInvoker
from awe_gatekeeper.context import ContextBuilder
from awe_gatekeeper.directory import AgentDirectory
from awe_gatekeeper.domain.models import SenderType
from awe_gatekeeper.errors import InputValidationError
from awe_gatekeeper.observability import get_logger, set_room_context, traced_span
from awe_gatekeeper.participants import Participant
from awe_gatekeeper.repository import ChatRepository

_log = get_logger('awe_gatekeeper.discussion')

SYSTEM_SENDER = 'System'
TIME_LIMIT_TEXT = '⏱️ Discussion time limit reached. Moving to summary.'
TOKEN_LIMIT_TEXT = '📊 Token budget reached. Moving to summary.'
STOPPED_TEXT = '🛑 Discussion stopped.'
SUMMARY_MAX_TOKENS = 1024


@dataclass
class Contribution:
    agent: str
    text: str
    tokens_used: int


@dataclass
class _Run:
    discussion_id: str
    room_id: str
    cancel: Event = field(default_factory=Event)


class DiscussionOrchestrator:
    """Round-robin team discussion with a moderator summary.

    Every resolved agent gets one turn, in order. Before each turn the run
    checks for a stop request, the wall-clock budget and the token budget.
    Running discussions are kept in an in-process registry so ``stop`` can
    reach them from another request thread.
    """

    def __init__(
        self,
        *,
        repository: ChatRepository,
        directory: AgentDirectory,
        context_builder: ContextBuilder,
        invoker: AgentInvoker,
        moderator_agent: str = 'Claude',
        timeout_seconds: float = 120.0,
        max_total_tokens: int = 5000,
        max_tokens_per_agent: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.directory = directory
        self.context_builder = context_builder
        self.invoker = invoker
        self.moderator_agent = moderator_agent
        self.timeout_seconds = float(timeout_seconds)
        self.max_total_tokens = int(max_total_tokens)
        self.max_tokens_per_agent = int(max_tokens_per_agent)
        self.clock = clock
        self._runs: dict[str, _Run] = {}
        self._lock = Lock()

    def active(self) -> list[str]:
        with self._lock:
            return sorted(self._runs)

    def stop(self, discussion_id: str) -> bool:
        with self._lock:
            run = self._runs.get(str(discussion_id or '').strip())
        if run is None:
            return False
        run.cancel.set()
        _log.info('discussion_stop_requested discussion_id=%s', discussion_id)
        return True

    def _system_message(self, room_id: str, content: str, metadata: dict) -> dict:
        return self.repository.insert_message(
            room_id,
            sender_name=SYSTEM_SENDER,
            sender_type=SenderType.SYSTEM.value,
            content=content,
            content_type='system',
            metadata=metadata,
        )

    def _default_agents(self, room_id: str) -> list[str]:
        rows = self.repository.list_participants(room_id, active_only=True)
        return [p.name for p in (Participant.from_row(r) for r in rows) if p.is_agent]

    def start(
        self,
        room_id: str,
        *,
        topic: str,
        deliverable: str = '',
        agents: list[str] | None = None,
        discussion_id: str | None = None,
    ) -> dict:
        topic = str(topic or '').strip()
        if not topic:
            raise InputValidationError('topic is required', field='topic')
        if self.repository.get_room(room_id) is None:
            raise KeyError(room_id)
        deliverable = str(deliverable or '').strip() or 'A short recommendation'
        names = list(agents) if agents else self._default_agents(room_id)
        # The moderator summarizes; it never takes a turn.
        names = [n for n in names if str(n or '').strip().casefold() != self.moderator_agent.casefold()]

        run = _Run(discussion_id=str(discussion_id or '').strip() or f'disc-{uuid4().hex[:12]}', room_id=room_id)
        with self._lock:
            if run.discussion_id in self._runs:
                raise InputValidationError(f'discussion {run.discussion_id} is already running', field='discussion_id')
            self._runs[run.discussion_id] = run
        set_room_context(room_id)
        try:
            with traced_span('discussion.run', {'room_id': room_id, 'discussion_id': run.discussion_id}):
                return self._run(run, topic=topic, deliverable=deliverable, names=names)
        finally:
            with self._lock:
                self._runs.pop(run.discussion_id, None)

    def _run(self, run: _Run, *, topic: str, deliverable: str, names: list[str]) -> dict:
        room_id = run.room_id
        did = run.discussion_id
        started = self.clock()
        self._system_message(
            room_id,
            f'🔄 Team Discussion: {topic}',
            {
                'discussion_topic': topic,
                'discussion_id': did,
                'discussion_deliverable': deliverable,
                'discussion_agent_count': len(names),
            },
        )
        participants = self.directory.resolve_many(names, invocable_only=True)
        recent = self.context_builder.build_discussion_context(room_id)
        contributions: list[Contribution] = []
        total_tokens = 0
        stopped = False

        for agent in participants:
            if run.cancel.is_set():
                stopped = True
                break
            if self.clock() - started > self.timeout_seconds:
                self._system_message(room_id, TIME_LIMIT_TEXT, {'discussion': True, 'discussion_id': did})
                break
            if total_tokens >= self.max_total_tokens:
                self._system_message(room_id, TOKEN_LIMIT_TEXT, {'discussion': True, 'discussion_id': did})
                break

            earlier = ''
            if contributions:
                earlier = '\n\nOther agents have already said:\n' + '\n'.join(
                    f'[{c.agent}]: {c.text}' for c in contributions
                )
            system_prompt = (
                f'You are {agent.name}, a {agent.role or "team member"} on the team. '
                'You are in a focused team discussion.\n\n'
                f'TOPIC: {topic}\n'
                f'DELIVERABLE: {deliverable}\n\n'
                'Recent conversation context:\n'
                f'{recent}\n'
                f'{earlier}\n\n'
                "Share your perspective concisely. Stay on topic. Don't repeat what others said. "
                'Focus on your area of expertise. Max 3-4 sentences.'
            )
            try:
                reply = self.invoker.invoke(
                    agent,
                    system_prompt=system_prompt,
                    message=f'Discuss: {topic}',
                    max_tokens=self.max_tokens_per_agent,
                )
            except Exception as exc:
                _log.warning('discussion_turn_failed discussion_id=%s agent=%s error=%s', did, agent.name, exc)
                self._system_message(
                    room_id,
                    f'⚠️ {agent.name} could not contribute: {exc}',
                    {'error': True, 'agent': agent.name, 'discussion': True, 'discussion_id': did},
                )
                continue
            total_tokens += int(reply.tokens_used or 0)
            contributions.append(Contribution(agent.name, reply.text, int(reply.tokens_used or 0)))
            self.repository.insert_message(
                room_id,
                sender_name=agent.name,
                sender_type=SenderType.AGENT.value,
                content=reply.text,
                metadata={'discussion': True, 'discussion_id': did, 'tokens_used': reply.tokens_used},
            )

        if run.cancel.is_set():
            stopped = True
        if stopped:
            self._system_message(room_id, STOPPED_TEXT, {'discussion': True, 'discussion_id': did})
            _log.info('discussion_stopped discussion_id=%s contributions=%d', did, len(contributions))
            return self._result('stopped', did, contributions, total_tokens, summary_posted=False)

        summary_posted = False
        if contributions:
            summary_posted = self._summarize(room_id, did, topic, deliverable, contributions)
        _log.info('discussion_finished discussion_id=%s contributions=%d tokens=%d summary=%s',
                  did, len(contributions), total_tokens, summary_posted)
        return self._result('ok', did, contributions, total_tokens, summary_posted=summary_posted)

    def _summarize(
        self,
        room_id: str,
        discussion_id: str,
        topic: str,
        deliverable: str,
        contributions: list[Contribution],
    ) -> bool:
        moderator = self.directory.find(self.moderator_agent)
        if moderator is None or not moderator.can_invoke:
            _log.warning('discussion_summary_skipped moderator=%s reason=unavailable', self.moderator_agent)
            return False
        transcript = '\n\n'.join(f'[{c.agent}]: {c.text}' for c in contributions)
        prompt = (
            f'You are {moderator.name}, the team moderator. '
            'Summarize this team discussion and provide the deliverable.\n\n'
            f'TOPIC: {topic}\n'
            f'DELIVERABLE REQUESTED: {deliverable}\n\n'
            'CONTRIBUTIONS:\n'
            f'{transcript}\n\n'
            'Write a concise summary (2-3 paragraphs max) that:\n'
            '1. Captures the key points from each contributor\n'
            '2. Identifies areas of agreement and disagreement\n'
            f'3. Provides the requested deliverable: {deliverable}\n\n'
            'Address the human directly. Start with: "Here\'s what we discussed:"'
        )
        try:
            reply = self.invoker.invoke(
                moderator,
                system_prompt=(
                    f'You are {moderator.name}, a thoughtful team moderator '
                    'who synthesizes discussions into actionable summaries.'
                ),
                message=prompt,
                max_tokens=SUMMARY_MAX_TOKENS,
            )
            self.repository.insert_message(
                room_id,
                sender_name=moderator.name,
                sender_type=SenderType.AGENT.value,
                content=reply.text,
                metadata={
                    'discussion_summary': True,
                    'discussion_id': discussion_id,
                    'model_used': reply.model,
                    'tokens_used': reply.tokens_used,
                },
            )
        except Exception as exc:
            _log.error('discussion_summary_failed discussion_id=%s error=%s', discussion_id, exc)
            return False
        return True

    @staticmethod
    def _result(
        status: str,
        discussion_id: str,
        contributions: list[Contribution],
        total_tokens: int,
        *,
        summary_posted: bool,
    ) -> dict:
        return {
            'status': status,
            'discussion_id': discussion_id,
            'agents_participated': len(contributions),
            'total_tokens': total_tokens,
            'summary_posted': summary_posted,
        }
