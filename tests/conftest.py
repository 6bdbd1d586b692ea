"""Shared fixtures for reqchain tests."""

import os
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from reqchain import core
from reqchain.executor import Step
from reqchain.oauth import BrowserSession


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def tmp_project(tmp_path):
    """Create a temporary project directory and cd into it."""
    original = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(original)


@pytest.fixture
def global_reqchain_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqchain directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqchain"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    monkeypatch.setattr(core, "CHROME_PROFILE_DIR", fake_global / "chrome-profile")
    return fake_global


def make_http_response(status_code=200, text="", headers=None):
    """Factory for mock requests.Response objects."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.headers = headers if headers is not None else {"Content-Type": "text/plain"}
    return resp


def make_oauth_step(url="https://idp.test/authorize", redirect_uri="https://cb", **data):
    data.setdefault("redirect_uri", redirect_uri)
    return Step(
        type="OAUTH",
        request={"action": "authorize", "url": url, "data": data},
        name="authorize",
    )


class FakeSession(BrowserSession):
    """Scripted browser: title() walks through `titles`, then repeats the last."""

    def __init__(self, titles=("",)):
        self.titles = list(titles)
        self.visited = []
        self.close_calls = 0

    def goto(self, url):
        self.visited.append(url)

    def title(self):
        if len(self.titles) > 1:
            return self.titles.pop(0)
        return self.titles[0]

    def close(self):
        self.close_calls += 1
