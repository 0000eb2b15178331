from __future__ import annotations

import os
from typing import Callable, Protocol

import httpx

from awe_gatekeeper.observability import get_logger

_log = get_logger('awe_gatekeeper.voice')

WHISPER_URL = 'https://api.openai.com/v1/audio/transcriptions'
ELEVENLABS_URL = 'https://api.elevenlabs.io/v1/text-to-speech'
TTS_MODEL = 'eleven_multilingual_v2'
VOICE_SETTINGS = {'stability': 0.5, 'similarity_boost': 0.75}


class VoiceError(RuntimeError):
    pass


class Transcriber(Protocol):
    def transcribe(self, audio_url: str) -> str:
        ...


class SpeechSynthesizer(Protocol):
    def synthesize(self, text: str, *, voice_id: str) -> bytes:
        ...


class WhisperTranscriber:
    """Download a recorded clip and send it to a Whisper-compatible endpoint."""

    def __init__(
        self,
        *,
        url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        client_factory: Callable[..., httpx.Client] | None = None,
    ):
        self.url = url or WHISPER_URL
        self.api_key = api_key if api_key is not None else os.getenv('OPENAI_API_KEY', '')
        self.timeout_seconds = timeout_seconds
        self.client_factory = client_factory or httpx.Client

    def transcribe(self, audio_url: str) -> str:
        with self.client_factory(timeout=self.timeout_seconds, follow_redirects=True) as client:
            audio = client.get(audio_url)
            if audio.status_code >= 400:
                raise VoiceError(f'audio download failed: {audio.status_code}')
            response = client.post(
                self.url,
                headers={'Authorization': f'Bearer {self.api_key}'} if self.api_key else {},
                files={'file': ('voice.webm', audio.content, 'audio/webm')},
                data={'model': 'whisper-1'},
            )
        if response.status_code >= 400:
            raise VoiceError(f'Whisper API error: {response.status_code}')
        text = str((response.json() or {}).get('text') or '').strip()
        _log.info('voice_transcribed chars=%d', len(text))
        return text


class ElevenLabsSynthesizer:
    def __init__(
        self,
        *,
        url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        client_factory: Callable[..., httpx.Client] | None = None,
    ):
        self.url = (url or ELEVENLABS_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else os.getenv('ELEVENLABS_API_KEY', '')
        self.timeout_seconds = timeout_seconds
        self.client_factory = client_factory or httpx.Client

    def synthesize(self, text: str, *, voice_id: str) -> bytes:
        with self.client_factory(timeout=self.timeout_seconds) as client:
            response = client.post(
                f'{self.url}/{voice_id}',
                headers={'xi-api-key': self.api_key, 'Accept': 'audio/mpeg'},
                json={'text': text, 'model_id': TTS_MODEL, 'voice_settings': dict(VOICE_SETTINGS)},
            )
        if response.status_code >= 400:
            raise VoiceError(f'TTS failed: {response.status_code}')
        return response.content
