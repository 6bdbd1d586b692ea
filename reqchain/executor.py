"""reqchain executor - step dispatch and HTTP request execution."""

import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

import requests

from reqchain.core import DEFAULT_OAUTH_TIMEOUT, DEFAULT_TIMEOUT, compile_request
from reqchain.errors import ExecutionCancelled, StepInFlight, UnknownStepType

log = logging.getLogger(__name__)

_RESPONSE_FIELDS = ("status", "completed", "error", "headers", "body", "code", "elapsed_ms")


class StepResponse:
    """Outcome of the latest execution of a step."""

    def __init__(self):
        self.status: int | None = None
        self.completed: bool = False
        self.error: bool | str | None = None  # True, or a failure detail
        self.headers: dict[str, str] | None = None
        self.body: str | None = None
        self.code: str | None = None  # OAuth authorization code
        self.elapsed_ms: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping | None) -> "StepResponse":
        resp = cls()
        for key in _RESPONSE_FIELDS:
            if data and key in data:
                setattr(resp, key, data[key])
        resp.completed = bool(resp.completed)
        return resp

    def to_dict(self) -> dict:
        """Fields that were set; absent ones are omitted."""
        data = {}
        for key in _RESPONSE_FIELDS:
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def __repr__(self):
        return f"StepResponse({self.to_dict()!r})"


class Step:
    """One request definition plus its latest execution outcome.

    `request` and `type` belong to whoever edits the step. `compiled` and
    `response` are overwritten by every execution; `compiled` is never saved.
    """

    def __init__(self, type, request=None, response=None, name=None):
        self.name: str | None = name
        self.type = type
        self.request: Any = request if request is not None else {}
        self.response: StepResponse = response or StepResponse()
        self.compiled: Any = None

    def __repr__(self):
        return f"Step(name={self.name!r}, type={self.type!r})"


# ── In-flight guard ──────────────────────────────────────────────────────

_in_flight: set[int] = set()
_in_flight_lock = threading.Lock()


def _claim(step: Step) -> None:
    with _in_flight_lock:
        if id(step) in _in_flight:
            raise StepInFlight(f"Step {step.name or id(step)} is already executing")
        _in_flight.add(id(step))


def _release(step: Step) -> None:
    with _in_flight_lock:
        _in_flight.discard(id(step))


# ── Dispatch ─────────────────────────────────────────────────────────────


def _read_context(context: Mapping | Callable[[], Mapping] | None) -> dict:
    """Take one snapshot of the context at the start of an execution."""
    if context is None:
        return {}
    if callable(context):
        context = context()
    return dict(context)


def execute_step(
    step: Step,
    context: Mapping | Callable[[], Mapping] | None = None,
    cancel: threading.Event | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    oauth_timeout: float = DEFAULT_OAUTH_TIMEOUT,
    session_factory=None,
    browser: str | None = None,
) -> StepResponse:
    """Compile the step's request and run it with the runner for its type.

    context is a mapping or a zero-argument callable returning one; it is
    read once per execution. Raises UnknownStepType for types other than
    HTTP and OAUTH without touching step.response.
    """
    _claim(step)
    try:
        step.compiled = compile_request(step.request, _read_context(context))
        log.debug("compiled %r: %r", step, step.compiled)

        if step.type == "HTTP":
            return run_http(step, timeout=timeout, cancel=cancel)
        if step.type == "OAUTH":
            from reqchain.oauth import run_oauth

            return run_oauth(
                step,
                timeout=oauth_timeout,
                cancel=cancel,
                session_factory=session_factory,
                default_browser=browser,
            )
        raise UnknownStepType(step.type)
    finally:
        _release(step)


# ── HTTP ─────────────────────────────────────────────────────────────────


def _set_form(kwargs: dict[str, Any], payload: Any) -> None:
    if isinstance(payload, str):
        kwargs["data"] = payload.encode("utf-8")
        kwargs["headers"].setdefault("Content-Type", "application/x-www-form-urlencoded")
    else:
        kwargs["data"] = payload


def build_request_kwargs(compiled: Mapping, timeout: float = DEFAULT_TIMEOUT) -> dict[str, Any]:
    """Translate a compiled request description into requests.request kwargs.

    Body selection, first match wins:
      - json: <mapping|list>        → JSON body
      - json: true + body <object>  → JSON body
      - body: <string>              → raw body
      - body: <mapping|list>        → JSON body
      - form: <mapping|string>      → form-encoded body
      - data: <mapping|string>      → form-encoded body
    """
    kwargs: dict[str, Any] = {
        "method": str(compiled.get("method") or "GET").upper(),
        "url": compiled.get("url") or compiled.get("uri"),
        "headers": dict(compiled.get("headers") or {}),
        "timeout": timeout,
        "allow_redirects": True,
    }
    if compiled.get("qs"):
        kwargs["params"] = compiled["qs"]

    json_opt = compiled.get("json")
    body = compiled.get("body")
    form = compiled.get("form")
    data = compiled.get("data")

    if isinstance(json_opt, dict | list):
        kwargs["json"] = json_opt
    elif isinstance(body, dict | list):
        kwargs["json"] = body
    elif body is not None:
        kwargs["data"] = str(body).encode("utf-8")
    elif form:
        _set_form(kwargs, form)
    elif data:
        _set_form(kwargs, data)

    return kwargs


def run_http(
    step: Step,
    timeout: float = DEFAULT_TIMEOUT,
    cancel: threading.Event | None = None,
) -> StepResponse:
    """Issue one HTTP request from step.compiled and record the outcome.

    - Never raises for transport failures: they land on the response
    - completed is always set
    - Only status 200 counts as success; anything else sets error=True
    - headers and body are kept whenever a response arrived
    """
    if cancel is not None and cancel.is_set():
        raise ExecutionCancelled(f"{step!r} cancelled before the request was sent")

    result = StepResponse()
    compiled = step.compiled if isinstance(step.compiled, Mapping) else {}

    try:
        kwargs = build_request_kwargs(compiled, timeout)
        log.info("%s %s", kwargs["method"], kwargs["url"])
        start = time.monotonic()
        resp = requests.request(**kwargs)
        result.elapsed_ms = (time.monotonic() - start) * 1000

        result.status = resp.status_code
        result.headers = dict(resp.headers)
        result.body = resp.text
        if resp.status_code != 200:
            result.error = True
    except requests.exceptions.Timeout:
        result.error = f"Request timed out after {timeout}s"
    except requests.exceptions.ConnectionError as e:
        result.error = f"Connection error: {e}"
    except requests.exceptions.RequestException as e:
        result.error = f"Request failed: {e}"
    except Exception as e:
        result.error = f"Unexpected error: {e}"

    result.completed = True
    if result.error:
        log.info("request failed: status=%s error=%s", result.status, result.error)
    step.response = result
    return result
