from __future__ import annotations

from datetime import datetime, timezone
import time
from typing import Callable

import httpx

from awe_gatekeeper.domain.models import NotificationType, ProjectConfig
from awe_gatekeeper.gates.browser import BrowserPort
from awe_gatekeeper.notifications import NotificationDispatcher
from awe_gatekeeper.observability import get_logger
from awe_gatekeeper.repository import TaskRepository

_log = get_logger('awe_gatekeeper.monitor')

MAX_REPORTED_ERRORS = 10


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthMonitor:
    """Check live deployments and raise ``prod_alert`` notifications.

    A project is healthy when its live URL answers below HTTP 400 and the
    loaded page reports no console or network errors.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        dispatcher: NotificationDispatcher,
        browser: BrowserPort,
        http_timeout_seconds: int = 15,
        client_factory: Callable[..., httpx.Client] | None = None,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.browser = browser
        self.http_timeout_seconds = max(1, int(http_timeout_seconds))
        self.client_factory = client_factory or httpx.Client

    def check_project(self, project_id: str) -> dict:
        row = self.repository.get_project(project_id)
        if row is None:
            raise KeyError(project_id)
        project = ProjectConfig.from_row(row)
        if not project.live_url:
            return {'project_id': project.project_id, 'healthy': None, 'skipped': 'no live_url'}
        return self._check(project)

    def _check(self, project: ProjectConfig) -> dict:
        url = project.live_url
        report = {
            'project_id': project.project_id,
            'url': url,
            'healthy': False,
            'http_status': None,
            'response_time_ms': None,
            'console_errors': [],
            'network_errors': [],
            'checked_at': _utc_now_iso(),
        }
        try:
            started = time.monotonic()
            with self.client_factory(timeout=self.http_timeout_seconds, follow_redirects=True) as client:
                response = client.get(url)
            report['http_status'] = response.status_code
            report['response_time_ms'] = int((time.monotonic() - started) * 1000)
            if response.status_code >= 400:
                return self._alert(project, report, f'{project.name} ({url}) returned HTTP {response.status_code}')

            with self.browser.open(url) as page:
                report['console_errors'] = list(page.console_errors)[:MAX_REPORTED_ERRORS]
                report['network_errors'] = list(page.network_errors)[:MAX_REPORTED_ERRORS]
        except Exception as exc:
            report['error'] = str(exc)
            return self._alert(project, report, f'{project.name} ({url}) unreachable: {exc}')

        if report['console_errors'] or report['network_errors']:
            parts = []
            if report['console_errors']:
                parts.append(f'{len(report["console_errors"])} console errors')
            if report['network_errors']:
                parts.append(f'{len(report["network_errors"])} network errors')
            return self._alert(project, report, f'{project.name} has ' + ' and '.join(parts))

        report['healthy'] = True
        _log.info('health_ok project_id=%s url=%s', project.project_id, url)
        return report

    def _alert(self, project: ProjectConfig, report: dict, message: str) -> dict:
        _log.warning('health_alert project_id=%s message=%s', project.project_id, message)
        self.dispatcher.emit(
            NotificationType.PROD_ALERT,
            message,
            project_id=project.project_id,
            details=dict(report),
            target=project.escalation_contact or None,
        )
        return report

    def run_all(self) -> list[dict]:
        reports = []
        for row in self.repository.list_projects():
            project = ProjectConfig.from_row(row)
            if not project.live_url:
                _log.info('health_skipped project_id=%s reason=no_live_url', project.project_id)
                continue
            reports.append(self._check(project))
        return reports
