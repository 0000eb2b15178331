from __future__ import annotations

from pathlib import Path

AUDIO_PREFIX = 'war-room-voice'


class AudioStore:
    """Synthesized speech on local disk, one mp3 per chat message."""

    def __init__(self, root: Path, *, public_base: str = '/api/audio/'):
        self.root = Path(root)
        self.public_base = public_base if public_base.endswith('/') else public_base + '/'

    def key_for(self, message_id: str) -> str:
        return f'{AUDIO_PREFIX}/{self._safe_id(message_id)}.mp3'

    def path_for(self, message_id: str) -> Path:
        base = (self.root / AUDIO_PREFIX).resolve()
        path = (base / f'{self._safe_id(message_id)}.mp3').resolve(strict=False)
        try:
            path.relative_to(base)
        except ValueError as exc:
            raise ValueError('invalid message_id') from exc
        return path

    def save(self, message_id: str, data: bytes) -> str:
        if not data:
            raise ValueError('audio payload is empty')
        path = self.path_for(message_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(bytes(data))
        return self.public_base + self.key_for(message_id)

    def read(self, message_id: str) -> bytes | None:
        path = self.path_for(message_id)
        if not path.exists():
            return None
        return path.read_bytes()

    @staticmethod
    def _safe_id(message_id: str) -> str:
        text = str(message_id or '').strip()
        if not text:
            raise ValueError('message_id is required')
        return text.replace('\\', '_').replace('/', '_')
