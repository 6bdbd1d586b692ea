"""reqchain oauth - browser-driven OAuth authorization-code flow.

The flow opens a browser on the authorization URL and waits for the
identity provider to redirect to redirect_uri. That URI is not expected to
resolve: the browser lands on an error page whose title starts with the
callback URL, and the authorization code is read from its query string.
"""

import enum
import logging
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from reqchain import core
from reqchain.errors import (
    ExecutionCancelled,
    ReqchainError,
    SessionAcquisitionError,
    Timeout,
    UnknownOAuthAction,
)
from reqchain.executor import Step, StepResponse

log = logging.getLogger(__name__)

DEFAULT_BROWSER = "chromium"
POLL_INTERVAL = 0.5


class BrowserSession:
    """The five browser capabilities the authorization flow relies on.

    Subclasses provide goto(), title() and close(); creating the session is
    the job of the session factory. wait_until() polls and is shared.
    """

    def goto(self, url: str) -> None:
        raise NotImplementedError

    def title(self) -> str:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def wait_until(
        self,
        predicate: Callable[[], bool],
        timeout: float,
        cancel: threading.Event | None = None,
        interval: float = POLL_INTERVAL,
    ) -> None:
        """Poll predicate until it holds.

        Raises Timeout once `timeout` seconds pass, ExecutionCancelled as
        soon as `cancel` is set.
        """
        deadline = time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_set():
                raise ExecutionCancelled("Authorization flow cancelled")
            if predicate():
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise Timeout(f"Waiting timed out after {timeout}s")
            pause = min(interval, remaining)
            if cancel is not None:
                cancel.wait(pause)
            else:
                time.sleep(pause)


class PlaywrightSession(BrowserSession):
    """BrowserSession on Playwright's sync API.

    "chrome" runs the installed Chrome against a persistent profile so that
    logins and cookies survive between flows; any other name is a Playwright
    browser type (chromium, firefox, webkit) in a throwaway context.
    """

    def __init__(self, browser: str = DEFAULT_BROWSER, headless: bool = True, profile_dir: Path | None = None):
        from playwright.sync_api import sync_playwright

        self.browser_name = browser
        self._playwright = sync_playwright().start()
        self._browser = None
        try:
            if browser == "chrome":
                profile_dir = Path(profile_dir or core.CHROME_PROFILE_DIR)
                profile_dir.mkdir(parents=True, exist_ok=True)
                self._context = self._playwright.chromium.launch_persistent_context(
                    str(profile_dir),
                    channel="chrome",
                    headless=False,
                )
            else:
                browser_type = getattr(self._playwright, browser, None)
                if browser_type is None:
                    raise ValueError(f"Unsupported browser: {browser}")
                self._browser = browser_type.launch(headless=headless)
                self._context = self._browser.new_context()
            self._page = self._context.pages[0] if self._context.pages else self._context.new_page()
        except BaseException:
            self._playwright.stop()
            raise

    def goto(self, url: str) -> None:
        from playwright.sync_api import Error as PlaywrightError

        try:
            self._page.goto(url)
        except PlaywrightError as e:
            # An already-authorized profile redirects straight to the
            # unresolvable callback; polling the title still finds it.
            log.warning("navigation to %s ended with: %s", url, e)

    def title(self) -> str:
        from playwright.sync_api import Error as PlaywrightError

        try:
            return self._page.title()
        except PlaywrightError:
            # Page is mid-navigation.
            return ""

    def close(self) -> None:
        try:
            self._context.close()
            if self._browser is not None:
                self._browser.close()
        finally:
            self._playwright.stop()


def open_browser_session(browser: str | None = None, headless: bool = True) -> BrowserSession:
    """Default session factory."""
    return PlaywrightSession(browser or DEFAULT_BROWSER, headless=headless)


# ── Authorization flow ───────────────────────────────────────────────────


class FlowState(enum.Enum):
    STARTING = "starting"
    NAVIGATED = "navigated"
    POLLING = "polling"
    CODE_EXTRACTED = "code_extracted"
    SESSION_CLOSED = "session_closed"


def flow_params(compiled: Mapping) -> Mapping:
    """Where browser and redirect_uri live: under data, else top level."""
    data = compiled.get("data")
    if isinstance(data, Mapping) and ("redirect_uri" in data or "browser" in data):
        return data
    return compiled


def extract_code(title: str) -> str | None:
    """Read the code query parameter from '<callback-url> <page title>'."""
    tokens = title.split()
    if not tokens:
        return None
    values = parse_qs(urlparse(tokens[0]).query).get("code")
    return values[0] if values else None


class AuthorizationFlow:
    """One authorization-code exchange, driven as an explicit state machine.

    The session is owned by this flow alone and is closed exactly once on
    every exit path.
    """

    def __init__(
        self,
        step: Step,
        session_factory: Callable[[str | None], BrowserSession] | None = None,
        timeout: float = core.DEFAULT_OAUTH_TIMEOUT,
        cancel: threading.Event | None = None,
        default_browser: str | None = None,
    ):
        self.step = step
        self.session_factory = session_factory or open_browser_session
        self.timeout = timeout
        self.cancel = cancel
        self.default_browser = default_browser
        self.state = FlowState.STARTING

    def _transition(self, state: FlowState) -> None:
        log.debug("authorization flow %s -> %s", self.state.value, state.value)
        self.state = state

    def run(self) -> StepResponse:
        compiled = self.step.compiled if isinstance(self.step.compiled, Mapping) else {}
        params = flow_params(compiled)
        redirect_uri = params.get("redirect_uri")
        if not redirect_uri:
            raise ReqchainError("OAuth authorize step needs a redirect_uri")
        browser = params.get("browser") or self.default_browser

        if self.cancel is not None and self.cancel.is_set():
            raise ExecutionCancelled("Authorization flow cancelled before start")

        try:
            session = self.session_factory(browser)
        except Exception as e:
            raise SessionAcquisitionError(f"Could not start browser {browser or DEFAULT_BROWSER!r}: {e}") from e

        try:
            session.goto(compiled.get("url"))
            self._transition(FlowState.NAVIGATED)

            self._transition(FlowState.POLLING)
            try:
                session.wait_until(
                    lambda: session.title().startswith(redirect_uri),
                    timeout=self.timeout,
                    cancel=self.cancel,
                )
            except Timeout:
                log.warning("no redirect to %s within %ss", redirect_uri, self.timeout)
                raise
            except ExecutionCancelled:
                log.warning("authorization flow cancelled while waiting for %s", redirect_uri)
                raise

            result = StepResponse()
            result.code = extract_code(session.title())
            result.completed = True
            self.step.response = result
            self._transition(FlowState.CODE_EXTRACTED)
            return result
        finally:
            try:
                session.close()
            except Exception:
                log.warning("closing browser session failed", exc_info=True)
            self._transition(FlowState.SESSION_CLOSED)


def run_oauth(
    step: Step,
    timeout: float = core.DEFAULT_OAUTH_TIMEOUT,
    cancel: threading.Event | None = None,
    session_factory: Callable[[str | None], BrowserSession] | None = None,
    default_browser: str | None = None,
) -> StepResponse:
    """Run the OAuth action named by the step's request."""
    action = step.request.get("action") if isinstance(step.request, Mapping) else None
    if action == "authorize":
        flow = AuthorizationFlow(
            step,
            session_factory=session_factory,
            timeout=timeout,
            cancel=cancel,
            default_browser=default_browser,
        )
        return flow.run()
    raise UnknownOAuthAction(action)
