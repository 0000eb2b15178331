from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Callable
from urllib.parse import urljoin

import httpx

from awe_gatekeeper.domain.models import Gate
from awe_gatekeeper.errors import ConfigurationError
from awe_gatekeeper.gates.base import GateContext, GateResult, GateRunner
from awe_gatekeeper.gates.browser import BrowserPort
from awe_gatekeeper.observability import get_logger

_log = get_logger('awe_gatekeeper.gates.deploy')

_SHORT_BODY_CHARS = 500


@dataclass
class DeployDiff:
    live_url: str
    routes_checked: list[str] = field(default_factory=list)
    missing_routes: list[str] = field(default_factory=list)
    missing_elements: list[str] = field(default_factory=list)
    console_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_routes and not self.missing_elements

    def to_dict(self) -> dict:
        return {
            'live_url': self.live_url,
            'routes_checked': list(self.routes_checked),
            'missing_routes': list(self.missing_routes),
            'missing_elements': list(self.missing_elements),
            'console_errors': list(self.console_errors),
        }


def looks_like_not_found(title: str, body: str) -> bool:
    lowered_title = str(title or '').lower()
    if '404' in lowered_title or 'not found' in lowered_title:
        return True
    text = str(body or '')
    return '404' in text and len(text) < _SHORT_BODY_CHARS


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out


def diff_deployment(
    browser: BrowserPort,
    live_url: str,
    *,
    routes: list[str] | None = None,
    expected_elements: list[str] | None = None,
) -> DeployDiff:
    """Load every expected route and look for every expected element on the base page."""
    diff = DeployDiff(live_url=live_url)
    errors: list[str] = []
    for route in routes or ['/']:
        target = urljoin(live_url, route)
        diff.routes_checked.append(route)
        try:
            with browser.open(target) as page:
                if looks_like_not_found(page.title(), page.body_text()):
                    diff.missing_routes.append(route)
                errors.extend(page.console_errors)
        except Exception as exc:
            _log.warning('deploy_route_unreachable url=%s error=%s', target, exc)
            diff.missing_routes.append(route)

    elements = list(expected_elements or [])
    if elements:
        try:
            with browser.open(live_url) as page:
                diff.missing_elements.extend(sel for sel in elements if not page.exists(sel))
                errors.extend(page.console_errors)
        except Exception as exc:
            _log.warning('deploy_elements_unchecked url=%s error=%s', live_url, exc)
            diff.missing_elements.extend(elements)

    diff.console_errors = _dedupe(errors)
    return diff


class DeployCheckRunner(GateRunner):
    gate = Gate.DEPLOY_CHECK

    def __init__(
        self,
        *,
        browser: BrowserPort,
        http_timeout_seconds: int = 15,
        client_factory: Callable[..., httpx.Client] | None = None,
    ):
        self.browser = browser
        self.http_timeout_seconds = max(1, int(http_timeout_seconds))
        self.client_factory = client_factory or httpx.Client

    def preflight(self, context: GateContext) -> None:
        if not context.project.live_url:
            raise ConfigurationError(
                f'project {context.project.project_id} has no live_url',
                field='deployment.live_url',
            )

    def _ping(self, url: str) -> tuple[int, int]:
        started = time.monotonic()
        with self.client_factory(timeout=self.http_timeout_seconds, follow_redirects=True) as client:
            response = client.get(url)
        return response.status_code, int((time.monotonic() - started) * 1000)

    def run(self, context: GateContext) -> GateResult:
        project = context.project
        url = project.live_url
        status_code, elapsed_ms = self._ping(url)
        if status_code >= 400:
            return GateResult(
                passed=False,
                summary=f'Live URL {url} returned HTTP {status_code}',
                details={'http_status': status_code, 'response_time_ms': elapsed_ms},
            )

        diff = diff_deployment(
            self.browser,
            url,
            routes=project.routes,
            expected_elements=project.expected_elements,
        )
        details = {'http_status': status_code, 'response_time_ms': elapsed_ms, **diff.to_dict()}
        _log.info('deploy_check task_id=%s url=%s status=%d missing_routes=%d missing_elements=%d',
                  context.task_id, url, status_code, len(diff.missing_routes), len(diff.missing_elements))
        if diff.ok:
            return GateResult(
                passed=True,
                summary=f'{url} is live (HTTP {status_code}); {len(diff.routes_checked)} routes verified',
                details=details,
            )
        problems = []
        if diff.missing_routes:
            problems.append('missing routes: ' + ', '.join(diff.missing_routes))
        if diff.missing_elements:
            problems.append('missing elements: ' + ', '.join(diff.missing_elements))
        return GateResult(passed=False, summary=f'Deploy diff failed for {url}; ' + '; '.join(problems), details=details)


__all__ = ['DeployCheckRunner', 'DeployDiff', 'diff_deployment', 'looks_like_not_found']
