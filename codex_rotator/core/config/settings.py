from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DOCKER_DATA_DIR = Path("/var/lib/codex-rotator")


def _in_container() -> bool:
    return Path("/.dockerenv").exists() or Path("/run/.containerenv").exists()


def _default_home_dir() -> Path:
    if _in_container():
        return DOCKER_DATA_DIR
    return Path.home() / ".codex-rotator"


DEFAULT_HOME_DIR = _default_home_dir()
ACCOUNTS_FILE_NAME = "codex-accounts.json"
SESSION_AFFINITY_FILE_NAME = "session-affinity.json"
QUARANTINE_DIR_NAME = "quarantine"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CODEX_ROTATOR_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    home_dir: Path = DEFAULT_HOME_DIR
    # Derived from home_dir when left unset.
    accounts_file: Path | None = None
    session_affinity_file: Path | None = None
    quarantine_dir: Path | None = None
    quarantine_keep: int = Field(default=5, ge=1)
    # Directory holding one `<session_key>.json` per live client session. Without it every
    # session is treated as alive and affinity entries are only bounded by count.
    sessions_dir: Path | None = None

    lock_timeout_seconds: float = Field(default=10.0, gt=0)
    lock_retry_interval_seconds: float = Field(default=0.05, gt=0)

    refresh_lease_seconds: float = Field(default=30.0, gt=0)
    refresh_failure_cooldown_seconds: float = Field(default=30.0, ge=0)
    missing_refresh_cooldown_seconds: float = Field(default=30.0, ge=0)
    last_used_write_interval_seconds: float = Field(default=60.0, ge=0)

    rotation_strategy: Literal["sticky", "hybrid", "round_robin"] | None = None
    sticky_pid_offset_enabled: bool = False
    rotation_debug: bool = False

    session_affinity_max_entries: int = Field(default=200, gt=0)
    session_missing_grace_seconds: float = Field(default=15 * 60, ge=0)

    fetch_max_attempts: int = Field(default=3, gt=0)
    rate_limit_default_cooldown_seconds: float = Field(default=60.0, ge=0)

    auth_base_url: str = "https://auth.openai.com"
    oauth_client_id: str = "app_EMoamEEZ73f0CkXaXp7hrann"
    oauth_timeout_seconds: float = Field(default=30.0, gt=0)
    usage_base_url: str = "https://chatgpt.com/backend-api"
    usage_fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    usage_fetch_max_retries: int = Field(default=2, ge=0)

    proactive_refresh_buffer_seconds: float = Field(default=5 * 60, ge=0)

    @field_validator(
        "home_dir",
        "accounts_file",
        "session_affinity_file",
        "quarantine_dir",
        "sessions_dir",
        mode="before",
    )
    @classmethod
    def _expand_path(cls, value: str | Path | None) -> Path | None:
        if value is None or value == "":
            return None
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("path settings must be strings or paths")

    @model_validator(mode="after")
    def _derive_paths(self) -> Settings:
        if self.accounts_file is None:
            self.accounts_file = self.home_dir / ACCOUNTS_FILE_NAME
        if self.session_affinity_file is None:
            self.session_affinity_file = self.home_dir / SESSION_AFFINITY_FILE_NAME
        if self.quarantine_dir is None:
            self.quarantine_dir = self.accounts_file.parent / QUARANTINE_DIR_NAME
        return self

    @property
    def accounts_path(self) -> Path:
        return self.accounts_file or self.home_dir / ACCOUNTS_FILE_NAME

    @property
    def session_affinity_path(self) -> Path:
        return self.session_affinity_file or self.home_dir / SESSION_AFFINITY_FILE_NAME

    @property
    def quarantine_path(self) -> Path:
        return self.quarantine_dir or self.accounts_path.parent / QUARANTINE_DIR_NAME

    @property
    def refresh_lease_ms(self) -> int:
        return int(self.refresh_lease_seconds * 1000)

    @property
    def refresh_failure_cooldown_ms(self) -> int:
        return int(self.refresh_failure_cooldown_seconds * 1000)

    @property
    def missing_refresh_cooldown_ms(self) -> int:
        return int(self.missing_refresh_cooldown_seconds * 1000)

    @property
    def last_used_write_interval_ms(self) -> int:
        return int(self.last_used_write_interval_seconds * 1000)

    @property
    def session_missing_grace_ms(self) -> int:
        return int(self.session_missing_grace_seconds * 1000)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
