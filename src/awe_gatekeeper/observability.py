from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from threading import Lock
from typing import Iterator

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_room_id_var: ContextVar[str | None] = ContextVar('room_id', default=None)


def set_task_context(task_id: str | None = None) -> None:
    """Set task correlation context for structured log output."""
    _task_id_var.set(task_id)


def set_room_context(room_id: str | None = None) -> None:
    """Set War Room correlation context for structured log output."""
    _room_id_var.set(room_id)


def get_task_id() -> str | None:
    return _task_id_var.get(None)


def get_room_id() -> str | None:
    return _room_id_var.get(None)


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        task_id = getattr(record, 'task_id', None) or _task_id_var.get(None)
        if task_id:
            payload['task_id'] = task_id
        room_id = getattr(record, 'room_id', None) or _room_id_var.get(None)
        if room_id:
            payload['room_id'] = room_id
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('awe_gatekeeper')
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    if not otlp_endpoint:
        return
    endpoint = str(otlp_endpoint).strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logging.getLogger('awe_gatekeeper.observability').warning(
            'OpenTelemetry import failed; tracing disabled', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint


@contextmanager
def traced_span(name: str, attributes: dict | None = None) -> Iterator[object | None]:
    """Open an OpenTelemetry span when tracing is installed, otherwise a no-op."""
    try:
        from opentelemetry import trace
    except Exception:
        trace = None
    if trace is None:
        yield None
        return
    tracer = trace.get_tracer('awe_gatekeeper')
    with tracer.start_as_current_span(name) as span:
        for key, value in dict(attributes or {}).items():
            if value is None:
                continue
            span.set_attribute(key, value)
        yield span
