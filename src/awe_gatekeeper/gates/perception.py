from __future__ import annotations

from dataclasses import dataclass
import re

from awe_gatekeeper.domain.models import AcceptanceCriterion, Gate
from awe_gatekeeper.errors import ConfigurationError
from awe_gatekeeper.gates.base import CriterionResult, GateContext, GateResult, GateRunner
from awe_gatekeeper.gates.browser import BrowserPort, PageSession
from awe_gatekeeper.observability import get_logger

_log = get_logger('awe_gatekeeper.gates.perception')

SELECTOR_TIMEOUT_MS = 10_000
EXPECTATION_TIMEOUT_MS = 5_000
TYPE_INPUT_TEXT = 'test-input'
NO_SELECTOR_MESSAGE = 'No test_selector defined; requires manual verification or build check'
NO_CRITERIA_SUMMARY = 'No acceptance criteria defined; nothing to verify'

# Settle time after each action, in milliseconds.
_ACTION_SETTLE_MS = {
    'click': 1000,
    'type': 500,
    'hover': 500,
}

_VISIBLE_RE = re.compile(r'^(.+?)\s+is\s+visible$', re.IGNORECASE)
_HIDDEN_RE = re.compile(r'^(.+?)\s+is\s+hidden$', re.IGNORECASE)
_TEXT_RE = re.compile(r'^text:(.+)$', re.IGNORECASE)
_CONTAINS_RE = re.compile(r'^(.+?)\s+contains\s+(.+)$', re.IGNORECASE)


@dataclass(frozen=True)
class Expectation:
    kind: str
    selector: str | None = None
    text: str | None = None


def parse_expectation(expected: str) -> Expectation:
    """Read one ``expected_result`` line.

    Forms, tried in order: ``<sel> is visible``, ``<sel> is hidden``,
    ``text:<substring>``, ``<sel> contains <substring>``. Anything else
    is itself a selector that must become visible.
    """
    text = str(expected or '').strip()
    match = _VISIBLE_RE.match(text)
    if match:
        return Expectation('visible', selector=match.group(1).strip())
    match = _HIDDEN_RE.match(text)
    if match:
        return Expectation('hidden', selector=match.group(1).strip())
    match = _TEXT_RE.match(text)
    if match:
        return Expectation('text', text=match.group(1).strip())
    match = _CONTAINS_RE.match(text)
    if match:
        return Expectation('contains', selector=match.group(1).strip(), text=match.group(2).strip())
    return Expectation('visible', selector=text)


def _expectation_met(page: PageSession, expectation: Expectation) -> bool:
    if expectation.kind == 'visible':
        return page.wait_for_selector(expectation.selector, timeout_ms=EXPECTATION_TIMEOUT_MS, visible=True)
    if expectation.kind == 'hidden':
        return not page.exists(expectation.selector) or not page.is_visible(expectation.selector)
    if expectation.kind == 'text':
        return expectation.text in page.body_text()
    if expectation.kind == 'contains':
        content = page.text_of(expectation.selector)
        return content is not None and expectation.text in content
    return False


def check_criterion(page: PageSession, criterion: AcceptanceCriterion) -> CriterionResult:
    def result(passed: bool, message: str) -> CriterionResult:
        return CriterionResult(id=criterion.id, description=criterion.description, passed=passed, message=message)

    selector = criterion.test_selector
    if not selector:
        return result(False, NO_SELECTOR_MESSAGE)
    try:
        if not page.wait_for_selector(selector, timeout_ms=SELECTOR_TIMEOUT_MS):
            return result(False, f'Element not found: {selector}')

        action = str(criterion.test_action or '').strip().lower()
        if action == 'click':
            page.click(selector)
        elif action == 'type':
            page.fill(selector, TYPE_INPUT_TEXT)
        elif action == 'hover':
            page.hover(selector)
        if action in _ACTION_SETTLE_MS:
            page.pause(_ACTION_SETTLE_MS[action])

        if not criterion.expected_result:
            return result(True, 'Criterion passed')
        expectation = parse_expectation(criterion.expected_result)
        if _expectation_met(page, expectation):
            return result(True, f'Expected result verified: {criterion.expected_result}')
        return result(False, f'Expected result not met: {criterion.expected_result}')
    except Exception as exc:
        return result(False, f'Error testing criterion: {exc}')


def summarize(results: list[CriterionResult]) -> str:
    total = len(results)
    passed = sum(1 for r in results if r.passed)
    if passed == total:
        return f'All {total} criteria passed'
    failing = ', '.join(f'#{r.id}' for r in results if not r.passed)
    return f'{passed}/{total} passed. Failing: {failing}'


def verify_criteria(browser: BrowserPort, url: str, criteria: list[AcceptanceCriterion]) -> GateResult:
    """Load *url* once and check every criterion against the live page."""
    with browser.open(url) as page:
        results = [check_criterion(page, criterion) for criterion in criteria]
        console_errors = list(page.console_errors)
        network_errors = list(page.network_errors)
    return GateResult(
        passed=all(r.passed for r in results),
        summary=summarize(results),
        details={'url': url, 'console_errors': console_errors, 'network_errors': network_errors},
        criteria_results=results,
    )


class PerceptionCheckRunner(GateRunner):
    gate = Gate.PERCEPTION_CHECK

    def __init__(self, *, browser: BrowserPort):
        self.browser = browser

    def preflight(self, context: GateContext) -> None:
        if not context.project.live_url:
            raise ConfigurationError(
                f'project {context.project.project_id} has no live_url',
                field='deployment.live_url',
            )

    def run(self, context: GateContext) -> GateResult:
        if not context.acceptance_criteria:
            _log.warning('perception_check task_id=%s attempt=%d passed=False reason=no_criteria',
                         context.task_id, context.attempt)
            return GateResult(passed=False, summary=NO_CRITERIA_SUMMARY, details={'url': context.project.live_url})
        outcome = verify_criteria(self.browser, context.project.live_url, list(context.acceptance_criteria))
        _log.info(
            'perception_check task_id=%s attempt=%d passed=%s summary=%s',
            context.task_id, context.attempt, outcome.passed, outcome.summary,
        )
        return outcome
