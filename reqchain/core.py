"""reqchain core - config loading, context loading, step files, template compilation."""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values
from jinja2 import Environment, TemplateError

from reqchain.errors import ContextError, TemplateRenderError

log = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".reqchain"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"
CHROME_PROFILE_DIR = GLOBAL_DIR / "chrome-profile"

CWD_CONFIG_CANDIDATES = [
    ".reqchain.yaml",
    ".reqchain.yml",
    "reqchain.yaml",
    "reqchain.yml",
]

DEFAULT_TIMEOUT = 30
DEFAULT_OAUTH_TIMEOUT = 60

# Raw substitution: rendered values are used verbatim, never HTML-escaped.
# Missing variables render as "" (jinja2's default Undefined).
_template_env = Environment(autoescape=False, keep_trailing_newline=True)


def _config_candidates(config_file: str | None) -> list[Path]:
    if config_file:
        return [Path(config_file)]
    return [Path(name) for name in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG]


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    An explicit -c path is the only candidate when given, even if it does
    not exist. Otherwise the CWD variants are tried, then the global file.
    """
    found = next((p for p in _config_candidates(config_file) if p.exists()), None)
    return found.resolve() if found else None


def load_config(config_path: str | Path | None) -> dict:
    """Read the config file's defaults section.

    '_config_dir' records where the file lives so env_file and
    context_file can be given relative to it.
    """
    config: dict[str, Any] = {"defaults": {}, "_config_dir": None}
    if config_path is None or not Path(config_path).exists():
        return config
    path = Path(config_path).resolve()
    data = yaml.safe_load(path.read_text()) or {}
    config["defaults"] = data.get("defaults") or {}
    config["_config_dir"] = path.parent
    return config


def config_relative(config: dict, value: str | None) -> Path | None:
    """Resolve a path from the config relative to the config file's directory."""
    if not value:
        return None
    p = Path(value)
    config_dir = config.get("_config_dir")
    if not p.is_absolute() and config_dir:
        p = Path(config_dir) / p
    return p


def load_env(env_file: str | Path | None, base_dir: str = ".") -> dict[str, str]:
    """The process environment overlaid with the names an .env file sets."""
    env = dict(os.environ)
    if not env_file:
        return env
    dotenv_path = Path(base_dir) / env_file
    if not dotenv_path.exists():
        log.debug("env file %s not found", dotenv_path)
        return env
    for name, value in dotenv_values(dotenv_path).items():
        if value is not None:
            env[name] = value
    return env


_ENV_REF = re.compile(r"\$\{(?P<braced>[^}]+)\}|\$(?P<bare>[A-Za-z_]\w*)")


def resolve_value(value: Any, env: dict[str, str]) -> Any:
    """Expand $VAR and ${VAR} in a config string; unknown names stay as written."""
    if not isinstance(value, str):
        return value

    def _lookup(m: re.Match) -> str:
        name = m.group("braced") or m.group("bare")
        if name in env:
            return env[name]
        return os.environ.get(name, m.group(0))

    return _ENV_REF.sub(_lookup, value)


def setting(config: dict, env: dict[str, str], key: str, default: Any = None) -> Any:
    """Read one key from the config defaults with env references resolved."""
    value = config.get("defaults", {}).get(key)
    if value is None:
        return default
    return resolve_value(value, env)


# ── Context ──────────────────────────────────────────────────────────────


def load_context(
    context_path: str | Path | None,
    env: dict[str, str] | None = None,
) -> dict:
    """Read the full variable mapping used to compile a step.

    The YAML mapping at context_path supplies the variables; the environment
    is exposed under "env" so templates can say {{env.API_TOKEN}}. A context
    file that defines its own "env" key wins over the environment.
    """
    context: dict[str, Any] = {}
    if env is not None:
        context["env"] = dict(env)
    if context_path is None:
        return context

    path = Path(context_path)
    if not path.exists():
        log.debug("context file %s not found", path)
        return context
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ContextError(f"Cannot read context file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ContextError(f"Context file {path} must contain a mapping")
    context.update(data)
    return context


# ── Template compilation ─────────────────────────────────────────────────


def render_string(template: str, context: dict) -> str:
    """Render one string leaf against the context."""
    try:
        return _template_env.from_string(template).render(context)
    except TemplateError as e:
        raise TemplateRenderError(template, e) from e


def compile_request(value: Any, context: dict) -> Any:
    """Recursively render every string leaf of a nested request description.

    Lists keep their order and length, dicts keep their keys, and scalars
    that are not strings (numbers, booleans, None) pass through unchanged.
    The input is never mutated.
    """
    if isinstance(value, list | tuple):
        return [compile_request(item, context) for item in value]
    if isinstance(value, dict):
        return {k: compile_request(v, context) for k, v in value.items()}
    if isinstance(value, str):
        return render_string(value, context)
    return value


# ── Step files ───────────────────────────────────────────────────────────


def load_step(path: str | Path):
    """Load a step from a YAML file.

    The file holds {name, type, request, response}; a missing response
    starts out empty.
    """
    from reqchain.executor import Step, StepResponse

    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Step file {path} must contain a mapping")
    return Step(
        type=data.get("type"),
        request=data.get("request") or {},
        response=StepResponse.from_dict(data.get("response")),
        name=data.get("name") or path.stem,
    )


def save_step(step, path: str | Path) -> Path:
    """Write a step back to YAML. The compiled request is never persisted."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "name": step.name,
        "type": step.type,
        "request": step.request,
        "response": step.response.to_dict(),
    }
    with open(path, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
    return path


def reset_step(step) -> None:
    """Discard the step's last outcome."""
    from reqchain.executor import StepResponse

    step.response = StepResponse()
    step.compiled = None
