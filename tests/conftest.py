from __future__ import annotations

import base64
import json
import os
import tempfile
from pathlib import Path

import pytest

TEST_HOME_DIR = Path(tempfile.mkdtemp(prefix="codex-rotator-tests-"))

os.environ["CODEX_ROTATOR_HOME_DIR"] = str(TEST_HOME_DIR)
os.environ["CODEX_ROTATOR_AUTH_BASE_URL"] = "https://auth.example.invalid"
os.environ["CODEX_ROTATOR_USAGE_BASE_URL"] = "https://usage.example.invalid/backend-api"
os.environ.pop("CODEX_ROTATOR_ROTATION_STRATEGY", None)
os.environ.pop("CODEX_ROTATOR_SESSIONS_DIR", None)

from codex_rotator.core.config.settings import Settings, get_settings  # noqa: E402


def make_jwt(payload: dict[str, object]) -> str:
    def _segment(value: dict[str, object]) -> str:
        raw = json.dumps(value).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{_segment({'alg': 'none'})}.{_segment(payload)}.sig"


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(home_dir=tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def jwt_factory():
    return make_jwt
