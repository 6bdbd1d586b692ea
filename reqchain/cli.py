"""reqchain CLI - compile and execute request steps from the terminal."""

import functools
import json
import logging
import sys
from pathlib import Path

import click
import yaml

TOOL_HELP = """\
reqchain — template and execute HTTP and OAuth request steps.

\b
STEP FILES
──────────
  A step is a YAML file:

  \b
    name: get-user
    type: HTTP                      # HTTP | OAUTH
    request:
      method: GET
      url: "{{base_url}}/users/{{user_id}}"
      headers:
        Authorization: "Bearer {{env.API_TOKEN}}"

  Request keys: url, method, headers, qs, body, json, form, data.
  With json: true a mapping body is sent as JSON.

\b
OAUTH STEPS
───────────
  \b
    type: OAUTH
    request:
      action: authorize
      url: "https://idp.example.com/authorize?client_id={{client_id}}&redirect_uri=http://callback.invalid"
      data:
        browser: chrome             # default: headless chromium
        redirect_uri: http://callback.invalid

  A browser opens the authorization URL; once the page title starts with
  redirect_uri the code query parameter is recorded as the response code.

\b
CONTEXT
───────
  Variables for {{...}} come from a YAML mapping (-x/--context or
  context_file in the config). The environment is available as {{env.VAR}}.
  Undefined variables render as empty strings.

\b
CONFIG FILE FORMAT (.reqchain.yaml)
──────────────────────────────────
  Config resolution order:
    1. -c/--config flag (explicit path)
    2. .reqchain.yaml / .reqchain.yml / reqchain.yaml / reqchain.yml in CWD
    3. ~/.reqchain/config.yaml (global)

  \b
  defaults:
    env_file: .env
    context_file: context.yaml
    timeout: 30                     # HTTP timeout, seconds
    oauth_timeout: 60               # wait for the OAuth redirect, seconds
    browser: chromium
    headless: true
"""

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class ClickHandler(logging.Handler):
    """Send log records to stderr through click, resolved at emit time."""

    def emit(self, record):
        try:
            click.echo(self.format(record), err=True)
        except Exception:
            self.handleError(record)


def _configure_logging(verbose: bool, debug: bool) -> None:
    logger = logging.getLogger("reqchain")
    if not any(isinstance(h, ClickHandler) for h in logger.handlers):
        handler = ClickHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    if debug:
        logger.setLevel(logging.DEBUG)
    elif verbose:
        logger.setLevel(logging.INFO)
    else:
        logger.setLevel(logging.WARNING)


def _load_settings(config_file, context_file):
    """Resolve config, env and context path the way every command needs them."""
    from reqchain.core import config_relative, load_config, load_env, resolve_config_path

    config_path = resolve_config_path(config_file)
    config = load_config(config_path)
    env_path = config_relative(config, config.get("defaults", {}).get("env_file"))
    env = load_env(env_path)
    if context_file:
        context_path = Path(context_file)
    else:
        context_path = config_relative(config, config.get("defaults", {}).get("context_file"))
    return config, env, context_path


def _read_step(step_file):
    from reqchain.core import load_step

    try:
        return load_step(step_file)
    except (OSError, yaml.YAMLError, ValueError) as e:
        click.echo(f"ERROR: cannot read step {step_file}: {e}", err=True)
        sys.exit(1)


@click.group(help=TOOL_HELP, context_settings={"max_content_width": 88})
@click.version_option(package_name="reqchain")
def main():
    pass


@main.command("run")
@click.argument("step_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-x", "--context", "context_file", default=None, help="YAML file with template variables.")
@click.option("-c", "--config", "config_file", default=None, help="Path to config file.")
@click.option("--save", is_flag=True, default=False, help="Write the response back into the step file.")
@click.option("--raw", is_flag=True, default=False, help="Print only the response body (or code).")
@click.option("--show-compiled", is_flag=True, default=False, help="Print the compiled request first.")
@click.option("--verbose", is_flag=True, default=False, help="Show response headers and info logs.")
@click.option("--debug", is_flag=True, default=False, help="Debug logging.")
def run_cmd(step_file, context_file, config_file, save, raw, show_compiled, verbose, debug):
    """Execute a step and print its response."""
    from reqchain.core import (
        DEFAULT_OAUTH_TIMEOUT,
        DEFAULT_TIMEOUT,
        load_context,
        reset_step,
        save_step,
        setting,
    )
    from reqchain.errors import ReqchainError
    from reqchain.executor import execute_step
    from reqchain.oauth import open_browser_session

    _configure_logging(verbose, debug)
    config, env, context_path = _load_settings(config_file, context_file)
    step = _read_step(step_file)

    headless = setting(config, env, "headless", True)
    if isinstance(headless, str):
        headless = headless.lower() not in ("false", "0", "no")
    session_factory = functools.partial(open_browser_session, headless=headless)

    reset_step(step)
    failed = False
    try:
        execute_step(
            step,
            context=functools.partial(load_context, context_path, env),
            timeout=float(setting(config, env, "timeout", DEFAULT_TIMEOUT)),
            oauth_timeout=float(setting(config, env, "oauth_timeout", DEFAULT_OAUTH_TIMEOUT)),
            session_factory=session_factory,
            browser=setting(config, env, "browser"),
        )
    except ReqchainError as e:
        step.response.error = str(e)
        failed = True
    except KeyboardInterrupt:
        step.response.error = "Interrupted"
        failed = True

    if show_compiled and step.compiled is not None:
        click.echo("COMPILED:")
        click.echo(yaml.safe_dump(step.compiled, sort_keys=False).rstrip())
    click.echo(format_response(step.response, verbose=verbose, raw=raw))

    if save:
        path = save_step(step, step_file)
        click.echo(f"Saved: {path}", err=True)

    if failed or step.response.error:
        sys.exit(1)


@main.command("compile")
@click.argument("step_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-x", "--context", "context_file", default=None, help="YAML file with template variables.")
@click.option("-c", "--config", "config_file", default=None, help="Path to config file.")
def compile_cmd(step_file, context_file, config_file):
    """Print the step's request with every template resolved."""
    from reqchain.core import compile_request, load_context
    from reqchain.errors import ReqchainError

    config, env, context_path = _load_settings(config_file, context_file)
    step = _read_step(step_file)
    try:
        compiled = compile_request(step.request, load_context(context_path, env))
    except ReqchainError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    click.echo(yaml.safe_dump(compiled, sort_keys=False).rstrip())


@main.command("reset")
@click.argument("step_file", type=click.Path(exists=True, dir_okay=False))
def reset_cmd(step_file):
    """Clear the stored response of a step."""
    from reqchain.core import reset_step, save_step

    step = _read_step(step_file)
    reset_step(step)
    save_step(step, step_file)
    click.echo(f"Reset: {step_file}")


def format_response(response, verbose: bool = False, raw: bool = False) -> str:
    """Format a step response for terminal output.

    STATUS / TIME / HEADERS (verbose) / BODY for HTTP, CODE for OAuth,
    ERROR whenever the attempt failed.
    """
    if raw:
        if response.code is not None:
            return response.code
        return response.body if response.body is not None else ""

    lines: list[str] = []
    if isinstance(response.error, str):
        lines.append(f"ERROR: {response.error}")
    if response.status is not None:
        lines.append(f"STATUS: {response.status}")
    if response.elapsed_ms is not None:
        lines.append(f"TIME: {int(response.elapsed_ms)}ms")
    if verbose and response.headers:
        lines.append("HEADERS:")
        for key, value in response.headers.items():
            lines.append(f"  {key}: {value}")
    if response.code is not None:
        lines.append(f"CODE: {response.code}")
    elif response.completed and response.status is None and not response.error:
        lines.append("CODE: (none)")
    if response.body is not None:
        lines.append("BODY:")
        lines.append(_pretty_body(response.body))
    return "\n".join(lines)


def _pretty_body(body: str) -> str:
    try:
        return json.dumps(json.loads(body), indent=2)
    except (json.JSONDecodeError, TypeError, ValueError):
        return body
