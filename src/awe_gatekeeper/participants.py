from __future__ import annotations

from dataclasses import dataclass
import re

HUMAN_SESSION_PREFIX = 'human:'


@dataclass(frozen=True)
class AgentProfile:
    name: str
    role: str
    session_key: str
    api_endpoint: str | None = None
    api_model: str | None = None
    system_prompt: str | None = None
    voice_id: str | None = None

    @property
    def is_human(self) -> bool:
        return str(self.session_key or '').startswith(HUMAN_SESSION_PREFIX)

    @property
    def can_invoke(self) -> bool:
        return bool(str(self.api_endpoint or '').strip()) and not self.is_human

    def effective_system_prompt(self) -> str:
        text = str(self.system_prompt or '').strip()
        if text:
            return text
        role = self.role or 'team member'
        return f'You are {self.name}, a {role} on the team. Be concise and helpful.'

    @classmethod
    def from_row(cls, row: dict) -> 'AgentProfile':
        def opt(key: str) -> str | None:
            text = str(row.get(key) or '').strip()
            return text or None

        name = str(row.get('name') or '').strip()
        return cls(
            name=name,
            role=str(row.get('role') or '').strip(),
            session_key=str(row.get('session_key') or f'agent:{name.lower()}'),
            api_endpoint=opt('api_endpoint'),
            api_model=opt('api_model'),
            system_prompt=opt('system_prompt'),
            voice_id=opt('voice_id'),
        )


@dataclass(frozen=True)
class Participant:
    room_id: str
    name: str
    participant_type: str
    is_active: bool = True
    hand_raised: bool = False
    hand_reason: str | None = None

    @property
    def is_agent(self) -> bool:
        return self.participant_type == 'agent'

    @classmethod
    def from_row(cls, row: dict) -> 'Participant':
        return cls(
            room_id=str(row.get('room_id') or ''),
            name=str(row.get('participant_name') or '').strip(),
            participant_type=str(row.get('participant_type') or 'agent').strip().lower(),
            is_active=bool(row.get('is_active', True)),
            hand_raised=bool(row.get('hand_raised', False)),
            hand_reason=row.get('hand_reason'),
        )


def mentioned_names(text: str, names: list[str]) -> list[str]:
    """Return the *names* mentioned as ``@name`` in *text*, ordered by first mention.

    Matching is case-insensitive and works for names containing ``-`` or ``.``;
    ``@ATLAS`` does not match inside ``@ATLAS-2``.
    """
    lowered = str(text or '').casefold()
    found: list[tuple[int, str]] = []
    seen: set[str] = set()
    for name in names:
        key = str(name or '').strip().casefold()
        if not key or key in seen:
            continue
        seen.add(key)
        match = re.search(rf'@{re.escape(key)}(?![\w-])', lowered)
        if match:
            found.append((match.start(), name))
    return [name for _, name in sorted(found, key=lambda item: item[0])]
