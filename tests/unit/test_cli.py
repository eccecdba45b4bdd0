from __future__ import annotations

import json
from pathlib import Path

import pytest

from codex_rotator import cli
from codex_rotator import dependencies as dependencies_module
from codex_rotator.core.auth.refresh import TokenRefreshResult
from codex_rotator.core.storage import write_json_atomic
from codex_rotator.core.utils.time import now_ms

pytestmark = pytest.mark.unit

KEY_A = "a|a@example.com|plus"
KEY_B = "b|b@example.com|plus"


@pytest.fixture
def home(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("CODEX_ROTATOR_HOME_DIR", str(tmp_path))
    future = now_ms() + 3_600_000
    write_json_atomic(
        tmp_path / "codex-accounts.json",
        {
            "version": 1,
            "openai": {
                "type": "oauth",
                "native": {
                    "accounts": [
                        {"accountId": "a", "email": "a@example.com", "plan": "plus", "refresh": "r-a", "expires": 1},
                        {
                            "accountId": "b",
                            "email": "b@example.com",
                            "plan": "plus",
                            "refresh": "r-b",
                            "access": "tok-b",
                            "expires": future,
                            "cooldownUntil": future,
                        },
                    ],
                    "activeIdentityKey": KEY_A,
                },
            },
        },
    )
    return tmp_path


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return excinfo.value.code


def _native(home: Path) -> dict:
    return json.loads((home / "codex-accounts.json").read_text(encoding="utf-8"))["openai"]["native"]


def test_status_lists_accounts(home: Path, capsys):
    assert _run(["status"]) == 0

    out = capsys.readouterr().out.splitlines()
    assert out[0] == f"mode=native strategy=sticky accounts=2 active={KEY_A}"
    assert f"identity_key={KEY_A} state=ready" in out[1]
    assert f"identity_key={KEY_B} state=cooldown" in out[2]


def test_status_for_missing_domain(home: Path, capsys):
    assert _run(["--mode", "codex", "status"]) == 0
    assert capsys.readouterr().out.strip() == "mode=codex accounts=0"


def test_disable_then_enable(home: Path, capsys):
    assert _run(["disable", KEY_A]) == 0
    native = _native(home)
    assert native["accounts"][0]["enabled"] is False
    assert native["activeIdentityKey"] == KEY_B

    assert _run(["enable", KEY_B]) == 0
    assert "cooldownUntil" not in _native(home)["accounts"][1]
    assert capsys.readouterr().out.splitlines() == ["disabled=1", "enabled=1"]


def test_unknown_account_exits_nonzero(home: Path, capsys):
    assert _run(["remove", "nobody|x@y.z|pro"]) == 1
    assert capsys.readouterr().out.strip() == "removed=0"


def test_remove_account(home: Path):
    assert _run(["remove", KEY_A]) == 0
    native = _native(home)
    assert [account["identityKey"] for account in native["accounts"]] == [KEY_B]
    assert native["activeIdentityKey"] == KEY_B


def test_strategy_is_stored_and_cleared(home: Path, capsys):
    assert _run(["strategy", "round_robin"]) == 0
    assert _native(home)["strategy"] == "round_robin"

    assert _run(["strategy", "default"]) == 0
    assert "strategy" not in _native(home)
    assert capsys.readouterr().out.splitlines() == ["strategy=round_robin", "strategy=default"]


def test_prune_affinity_without_sessions_dir_keeps_entries(home: Path, capsys):
    write_json_atomic(
        home / "session-affinity.json",
        {"native": {"seenSessionKeys": {"s1": 1}, "stickyBySessionKey": {"s1": KEY_A}}},
    )

    assert _run(["prune-affinity"]) == 0

    assert capsys.readouterr().out.strip() == "pruned=0 remaining=1"


def test_prune_affinity_drops_dead_sessions(home: Path, monkeypatch, capsys):
    sessions_dir = home / "sessions"
    sessions_dir.mkdir()
    (sessions_dir / "alive.json").write_text("{}", encoding="utf-8")
    monkeypatch.setenv("CODEX_ROTATOR_SESSIONS_DIR", str(sessions_dir))
    monkeypatch.setenv("CODEX_ROTATOR_SESSION_MISSING_GRACE_SECONDS", "0")
    write_json_atomic(
        home / "session-affinity.json",
        {"native": {"seenSessionKeys": {"alive": 1, "dead": 2}, "stickyBySessionKey": {"dead": KEY_A}}},
    )

    assert _run(["prune-affinity"]) == 0

    assert capsys.readouterr().out.strip() == "pruned=1 remaining=1"
    persisted = json.loads((home / "session-affinity.json").read_text(encoding="utf-8"))
    assert persisted["native"]["seenSessionKeys"] == {"alive": 1}
    assert persisted["native"]["stickyBySessionKey"] == {}


def test_refresh_runs_one_tick(home: Path, monkeypatch, capsys):
    calls: list[str] = []

    async def _fake_refresh(refresh_token: str, **_: object) -> TokenRefreshResult:
        calls.append(refresh_token)
        return TokenRefreshResult(
            access_token="tok-a",
            refresh_token="r-a2",
            id_token=None,
            expires_in=3600,
            account_id=None,
            email=None,
            plan_type=None,
        )

    monkeypatch.setattr(dependencies_module, "refresh_access_token", _fake_refresh)

    assert _run(["refresh"]) == 0

    assert calls == ["r-a"]
    assert capsys.readouterr().out.strip() == "refreshed=1 failed=0 disabled=0"
    assert _native(home)["accounts"][0]["access"] == "tok-a"
