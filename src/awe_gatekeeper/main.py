from __future__ import annotations

import logging

from awe_gatekeeper.api import create_app
from awe_gatekeeper.config import load_settings
from awe_gatekeeper.db import Database, SqlChatRepository, SqlTaskRepository
from awe_gatekeeper.observability import configure_observability
from awe_gatekeeper.repository import InMemoryChatRepository, InMemoryTaskRepository
from awe_gatekeeper.service import build_service

_log = logging.getLogger(__name__)


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    try:
        db = Database(settings.database_url)
        db.create_schema()
        task_repo = SqlTaskRepository(db)
        chat_repo = SqlChatRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repositories')
        task_repo = InMemoryTaskRepository()
        chat_repo = InMemoryChatRepository()

    service = build_service(settings, task_repository=task_repo, chat_repository=chat_repo)
    return create_app(service=service)


app = build_app()
