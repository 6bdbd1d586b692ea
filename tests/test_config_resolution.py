"""Tests for config file resolution, env loading and context loading."""

import pytest
import yaml

from reqchain import core
from reqchain.errors import ContextError, ReqchainError


def _write_config(path, **defaults):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump({"defaults": defaults or {"timeout": 10}}))


# ── resolve_config_path ─────────────────────────────────────────────────


class TestResolveConfigPath:
    def test_explicit_flag_takes_priority(self, tmp_project, global_reqchain_dir):
        explicit = tmp_project / "custom" / "my.yaml"
        _write_config(explicit)
        _write_config(tmp_project / ".reqchain.yaml", timeout=1)
        _write_config(global_reqchain_dir / "config.yaml", timeout=2)

        assert core.resolve_config_path(str(explicit)) == explicit.resolve()

    def test_explicit_flag_nonexistent_returns_none(self, tmp_project, global_reqchain_dir):
        _write_config(tmp_project / ".reqchain.yaml")
        assert core.resolve_config_path("/nonexistent/config.yaml") is None

    def test_cwd_config_found(self, tmp_project, global_reqchain_dir):
        _write_config(tmp_project / ".reqchain.yaml")
        _write_config(global_reqchain_dir / "config.yaml")
        assert core.resolve_config_path(None) == (tmp_project / ".reqchain.yaml").resolve()

    def test_cwd_variants(self, tmp_project, global_reqchain_dir):
        _write_config(tmp_project / "reqchain.yml")
        assert core.resolve_config_path(None) == (tmp_project / "reqchain.yml").resolve()

    def test_global_fallback(self, tmp_project, global_reqchain_dir):
        _write_config(global_reqchain_dir / "config.yaml")
        assert core.resolve_config_path(None) == (global_reqchain_dir / "config.yaml").resolve()

    def test_nothing_found(self, tmp_project, global_reqchain_dir):
        assert core.resolve_config_path(None) is None


# ── load_config / setting ───────────────────────────────────────────────


class TestLoadConfig:
    def test_missing_file(self):
        assert core.load_config(None) == {"defaults": {}, "_config_dir": None}

    def test_defaults_and_config_dir(self, tmp_path):
        path = tmp_path / "cfg" / "reqchain.yaml"
        _write_config(path, timeout=12, browser="firefox")
        config = core.load_config(path)
        assert config["defaults"] == {"timeout": 12, "browser": "firefox"}
        assert config["_config_dir"] == path.resolve().parent

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert core.load_config(path)["defaults"] == {}

    def test_setting_resolves_env_refs(self):
        config = {"defaults": {"browser": "${BROWSER}", "timeout": 5}}
        env = {"BROWSER": "chrome"}
        assert core.setting(config, env, "browser") == "chrome"
        assert core.setting(config, env, "timeout") == 5
        assert core.setting(config, env, "headless", True) is True

    def test_config_relative(self, tmp_path):
        config = {"defaults": {}, "_config_dir": tmp_path}
        assert core.config_relative(config, "ctx.yaml") == tmp_path / "ctx.yaml"
        assert core.config_relative(config, "/abs/ctx.yaml").as_posix() == "/abs/ctx.yaml"
        assert core.config_relative(config, None) is None


class TestResolveValue:
    def test_braced_and_bare(self):
        env = {"HOST": "api", "PORT": "8080"}
        assert core.resolve_value("http://${HOST}:$PORT", env) == "http://api:8080"

    def test_unknown_left_alone(self, monkeypatch):
        monkeypatch.delenv("NOPE_NOT_SET", raising=False)
        assert core.resolve_value("$NOPE_NOT_SET", {}) == "$NOPE_NOT_SET"

    def test_non_string(self):
        assert core.resolve_value(30, {}) == 30


# ── load_env / load_context ─────────────────────────────────────────────


class TestLoadEnv:
    def test_dotenv_overrides_environ(self, tmp_path, monkeypatch):
        monkeypatch.setenv("API_TOKEN", "from-environ")
        (tmp_path / ".env").write_text("API_TOKEN=from-dotenv\nEXTRA=1\n")
        env = core.load_env(".env", base_dir=str(tmp_path))
        assert env["API_TOKEN"] == "from-dotenv"
        assert env["EXTRA"] == "1"

    def test_missing_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ONLY_ENVIRON", "yes")
        env = core.load_env("missing.env", base_dir=str(tmp_path))
        assert env["ONLY_ENVIRON"] == "yes"


class TestLoadContext:
    def test_yaml_variables_and_env(self, tmp_path):
        path = tmp_path / "context.yaml"
        path.write_text(yaml.dump({"base_url": "http://api", "user": {"id": 4}}))
        ctx = core.load_context(path, {"API_TOKEN": "t"})
        assert ctx["base_url"] == "http://api"
        assert ctx["user"] == {"id": 4}
        assert ctx["env"] == {"API_TOKEN": "t"}

    def test_no_file(self):
        assert core.load_context(None) == {}
        assert core.load_context(None, {"A": "1"}) == {"env": {"A": "1"}}

    def test_missing_file(self, tmp_path):
        assert core.load_context(tmp_path / "nope.yaml") == {}

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "context.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            core.load_context(path)

    def test_malformed_yaml_rejected(self, tmp_path):
        path = tmp_path / "context.yaml"
        path.write_text("base: [unclosed\n")
        with pytest.raises(ContextError) as exc_info:
            core.load_context(path)
        assert "Cannot read context file" in str(exc_info.value)

    def test_non_mapping_is_reqchain_error(self, tmp_path):
        path = tmp_path / "context.yaml"
        path.write_text("- a\n")
        with pytest.raises(ReqchainError):
            core.load_context(path)
