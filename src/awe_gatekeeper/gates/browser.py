from __future__ import annotations

from contextlib import contextmanager
from typing import ContextManager, Iterator, Protocol

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from awe_gatekeeper.observability import get_logger

_log = get_logger('awe_gatekeeper.gates.browser')

VIEWPORT = {'width': 1280, 'height': 800}
USER_AGENT = (
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) '
    'Chrome/120.0.0.0 Safari/537.36 awe-gatekeeper/0.1'
)
_LAUNCH_ARGS = ['--no-sandbox', '--disable-setuid-sandbox', '--disable-dev-shm-usage']


class PageSession(Protocol):
    console_errors: list[str]
    network_errors: list[str]

    def wait_for_selector(self, selector: str, *, timeout_ms: int, visible: bool = False) -> bool:
        ...

    def exists(self, selector: str) -> bool:
        ...

    def is_visible(self, selector: str) -> bool:
        ...

    def text_of(self, selector: str) -> str | None:
        ...

    def body_text(self) -> str:
        ...

    def title(self) -> str:
        ...

    def click(self, selector: str) -> None:
        ...

    def fill(self, selector: str, text: str) -> None:
        ...

    def hover(self, selector: str) -> None:
        ...

    def pause(self, ms: int) -> None:
        ...


class BrowserPort(Protocol):
    def open(self, url: str) -> ContextManager[PageSession]:
        """Load *url* and yield a live page; errors during load propagate."""
        ...


class PlaywrightPage:
    def __init__(self, page):
        self.page = page
        self.console_errors: list[str] = []
        self.network_errors: list[str] = []
        page.on('console', self._on_console)
        page.on('pageerror', self._on_page_error)
        page.on('requestfailed', self._on_request_failed)

    def _on_console(self, msg) -> None:
        if msg.type == 'error':
            self.console_errors.append(msg.text)

    def _on_page_error(self, error) -> None:
        self.console_errors.append(str(getattr(error, 'message', error)))

    def _on_request_failed(self, request) -> None:
        failure = request.failure or 'unknown error'
        self.network_errors.append(f'{request.method} {request.url} - {failure}')

    def wait_for_selector(self, selector: str, *, timeout_ms: int, visible: bool = False) -> bool:
        try:
            handle = self.page.wait_for_selector(
                selector,
                timeout=timeout_ms,
                state=('visible' if visible else 'attached'),
            )
        except PlaywrightTimeoutError:
            return False
        return handle is not None

    def exists(self, selector: str) -> bool:
        return self.page.query_selector(selector) is not None

    def is_visible(self, selector: str) -> bool:
        handle = self.page.query_selector(selector)
        return bool(handle is not None and handle.is_visible())

    def text_of(self, selector: str) -> str | None:
        handle = self.page.query_selector(selector)
        if handle is None:
            return None
        return handle.text_content() or ''

    def body_text(self) -> str:
        return self.page.text_content('body') or ''

    def title(self) -> str:
        return self.page.title() or ''

    def click(self, selector: str) -> None:
        self.page.click(selector)

    def fill(self, selector: str, text: str) -> None:
        self.page.fill(selector, text)

    def hover(self, selector: str) -> None:
        self.page.hover(selector)

    def pause(self, ms: int) -> None:
        self.page.wait_for_timeout(ms)


class PlaywrightBrowser:
    """Headless chromium through playwright's sync API; one browser per session."""

    def __init__(self, *, page_load_timeout_seconds: int = 30, headless: bool = True):
        self.page_load_timeout_ms = max(1, int(page_load_timeout_seconds)) * 1000
        self.headless = headless

    @contextmanager
    def open(self, url: str) -> Iterator[PlaywrightPage]:
        with sync_playwright() as pw:
            browser = pw.chromium.launch(headless=self.headless, args=_LAUNCH_ARGS)
            try:
                context = browser.new_context(viewport=VIEWPORT, user_agent=USER_AGENT)
                page = context.new_page()
                session = PlaywrightPage(page)
                _log.info('browser_open url=%s', url)
                try:
                    page.goto(url, wait_until='networkidle', timeout=self.page_load_timeout_ms)
                except PlaywrightTimeoutError as exc:
                    raise TimeoutError(f'page load timed out after {self.page_load_timeout_ms}ms: {url}') from exc
                except PlaywrightError as exc:
                    raise ConnectionError(f'page load failed for {url}: {exc}') from exc
                yield session
            finally:
                browser.close()
