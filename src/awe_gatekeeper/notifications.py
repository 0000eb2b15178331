from __future__ import annotations

from typing import Callable, Protocol

import httpx

from awe_gatekeeper.domain.models import NotificationType
from awe_gatekeeper.observability import get_logger
from awe_gatekeeper.repository import NotificationCreateRecord, TaskRepository

_log = get_logger('awe_gatekeeper.notifications')

MAX_FORWARDED_CHARS = 500


def format_outbound(message: str, *, sender: str = 'Gatekeeper') -> str:
    text = str(message or '')
    clipped = text[:MAX_FORWARDED_CHARS] + ('...' if len(text) > MAX_FORWARDED_CHARS else '')
    return f'🔔 *{sender}*:\n{clipped}'


class NotificationChannel(Protocol):
    def send(self, *, target: str | None, message: str) -> bool:
        """Deliver *message*; return ``True`` only on confirmed delivery."""
        ...


class HttpNotificationChannel:
    """Messaging gateway first, plain webhook as fallback."""

    def __init__(
        self,
        *,
        gateway_url: str | None = None,
        gateway_token: str | None = None,
        webhook_url: str | None = None,
        gateway_timeout_seconds: float = 5.0,
        webhook_timeout_seconds: float = 30.0,
        client_factory: Callable[..., httpx.Client] | None = None,
    ):
        self.gateway_url = (gateway_url or '').rstrip('/') or None
        self.gateway_token = gateway_token
        self.webhook_url = webhook_url
        self.gateway_timeout_seconds = gateway_timeout_seconds
        self.webhook_timeout_seconds = webhook_timeout_seconds
        self.client_factory = client_factory or httpx.Client

    def send(self, *, target: str | None, message: str) -> bool:
        if self.gateway_url and self._send_gateway(target, message):
            return True
        return self._send_webhook(target, message)

    def _send_gateway(self, target: str | None, message: str) -> bool:
        headers = {'Authorization': f'Bearer {self.gateway_token}'} if self.gateway_token else {}
        try:
            with self.client_factory(timeout=self.gateway_timeout_seconds) as client:
                response = client.post(
                    f'{self.gateway_url}/v1/messages/send',
                    headers=headers,
                    json={'to': target, 'message': message},
                )
        except httpx.HTTPError as exc:
            _log.warning('notification_gateway_error error=%s', exc)
            return False
        if response.status_code >= 400:
            _log.warning('notification_gateway_rejected status=%d', response.status_code)
            return False
        return True

    def _send_webhook(self, target: str | None, message: str) -> bool:
        if not self.webhook_url:
            _log.info('notification_webhook_unconfigured')
            return False
        try:
            with self.client_factory(timeout=self.webhook_timeout_seconds) as client:
                response = client.post(
                    self.webhook_url,
                    json={'to': target, 'message': message, 'source': 'awe_gatekeeper'},
                )
        except httpx.HTTPError as exc:
            _log.warning('notification_webhook_error error=%s', exc)
            return False
        return response.status_code < 400


class NotificationDispatcher:
    """Write dashboard feed rows and forward escalations to the human channel.

    The feed row is written first and always survives; delivery failures
    only leave ``forwarded`` false.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        channel: NotificationChannel | None = None,
        default_target: str | None = None,
    ):
        self.repository = repository
        self.channel = channel
        self.default_target = default_target

    def emit(
        self,
        type: NotificationType | str,
        message: str,
        *,
        project_id: str | None = None,
        task_id: str | None = None,
        details: dict | None = None,
        target: str | None = None,
    ) -> dict:
        kind = NotificationType(type)
        row = self.repository.append_notification(
            NotificationCreateRecord(
                type=kind.value,
                message=message,
                project_id=project_id,
                task_id=task_id,
                details=dict(details or {}),
            )
        )
        _log.info('notification type=%s project_id=%s task_id=%s', kind.value, project_id, task_id)
        if not kind.forwarded or self.channel is None:
            return row

        recipient = target or self.default_target
        try:
            delivered = self.channel.send(target=recipient, message=format_outbound(message))
        except Exception as exc:
            _log.error('notification_forward_failed id=%s error=%s', row['id'], exc)
            return row
        if not delivered:
            _log.warning('notification_not_delivered id=%s target=%s', row['id'], recipient)
            return row
        return self.repository.mark_notification_forwarded(row['id'])

    def list(self, *, project_id: str | None = None, limit: int = 100) -> list[dict]:
        return self.repository.list_notifications(project_id=project_id, limit=limit)
