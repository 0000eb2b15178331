from __future__ import annotations

from datetime import datetime

from awe_gatekeeper.repository import ChatRepository

NO_HISTORY_TEXT = 'No previous messages.'

_RESPONSE_GUIDANCE = (
    'Respond naturally. Be concise. Don\'t repeat what others said. Add your unique perspective.\n'
    'If you have nothing meaningful to add, say so briefly.\n'
    'Match the language of the conversation.'
)


def _clock(created_at: str | None) -> str:
    text = str(created_at or '').strip()
    if not text:
        return '--:--'
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).strftime('%H:%M')
    except ValueError:
        return '--:--'


class ContextBuilder:
    """Assemble bounded, chronological conversation history for prompts."""

    def __init__(self, repository: ChatRepository, *, message_limit: int = 20, discussion_limit: int = 10):
        self.repository = repository
        self.message_limit = max(1, int(message_limit))
        self.discussion_limit = max(1, int(discussion_limit))

    def recent_messages(self, room_id: str, *, limit: int | None = None) -> list[dict]:
        size = self.message_limit if limit is None else max(0, int(limit))
        return self.repository.list_recent_messages(room_id, limit=size)

    def build_room_context(
        self,
        room_id: str,
        *,
        roles: dict[str, str] | None = None,
        limit: int | None = None,
    ) -> str:
        messages = self.recent_messages(room_id, limit=limit)
        if not messages:
            return NO_HISTORY_TEXT
        roles = {str(k).casefold(): str(v) for k, v in dict(roles or {}).items() if str(v).strip()}
        lines = []
        for row in self.repository.list_participants(room_id, active_only=False):
            name = str(row.get('participant_name') or '')
            kind = str(row.get('participant_type') or 'agent')
            default_role = 'AI Agent' if kind == 'agent' else 'Team Member'
            lines.append(f'- {name} ({kind}, {roles.get(name.casefold(), default_role)})')
        history = '\n'.join(
            f'[{m.get("sender_name")} {_clock(m.get("created_at"))}] {m.get("content")}'
            for m in messages
        )
        return (
            'PARTICIPANTS IN THIS WAR ROOM:\n'
            f'{chr(10).join(lines)}\n\n'
            'RECENT CONVERSATION:\n'
            f'{history}\n\n'
            f'{_RESPONSE_GUIDANCE}'
        )

    def build_discussion_context(self, room_id: str) -> str:
        messages = self.recent_messages(room_id, limit=self.discussion_limit)
        if not messages:
            return NO_HISTORY_TEXT
        return '\n'.join(f'[{m.get("sender_name")}] {m.get("content")}' for m in messages)

    def latest_human_message(self, room_id: str) -> dict | None:
        for row in reversed(self.recent_messages(room_id)):
            if row.get('sender_type') == 'human':
                return row
        return None
