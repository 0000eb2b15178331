from __future__ import annotations

from awe_gatekeeper.errors import UnknownAgentError
from awe_gatekeeper.observability import get_logger
from awe_gatekeeper.participants import AgentProfile
from awe_gatekeeper.repository import ChatRepository

_log = get_logger('awe_gatekeeper.directory')


class AgentDirectory:
    """Resolve agent names to invocation profiles.

    Lookups are case-insensitive; ``@atlas`` and ``ATLAS`` name the same agent.
    """

    def __init__(self, repository: ChatRepository):
        self.repository = repository

    def resolve(self, name: str) -> AgentProfile:
        row = self.repository.get_agent(str(name or '').strip())
        if row is None:
            raise UnknownAgentError(str(name or ''))
        return AgentProfile.from_row(row)

    def find(self, name: str) -> AgentProfile | None:
        row = self.repository.get_agent(str(name or '').strip())
        return AgentProfile.from_row(row) if row else None

    def list_agents(self) -> list[AgentProfile]:
        return [AgentProfile.from_row(row) for row in self.repository.list_agents()]

    def resolve_many(self, names: list[str], *, invocable_only: bool = True) -> list[AgentProfile]:
        """Resolve *names* in order, dropping unknown, duplicate and (optionally) non-invocable entries."""
        out: list[AgentProfile] = []
        seen: set[str] = set()
        for raw in names:
            profile = self.find(raw)
            if profile is None:
                _log.warning('agent_unresolved name=%s', raw)
                continue
            key = profile.name.casefold()
            if key in seen:
                continue
            if invocable_only and not profile.can_invoke:
                _log.info('agent_skipped name=%s reason=%s', profile.name, 'human' if profile.is_human else 'no_endpoint')
                continue
            seen.add(key)
            out.append(profile)
        return out

    def register(self, record: dict) -> AgentProfile:
        row = self.repository.upsert_agent(record)
        return AgentProfile.from_row(row)
