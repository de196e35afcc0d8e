from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: int = 60
    worker_count: int = 4
    max_review_cycles: int = 5
    ci_timeout_seconds: int = 1800
    checkout_retention: int = 30
    build_command_timeout_seconds: int = 300
    max_build_output_chars: int = 2000
    git_command_timeout_seconds: int = 600

    @property
    def checkouts_dir(self) -> Path:
        return self.base_dir / "checkouts"

    @property
    def transcripts_dir(self) -> Path:
        return self.base_dir / "transcripts"


@dataclass(frozen=True)
class AgentConfig:
    command: str = "claude"
    model: str | None = None
    max_review_turns: int = 30
    max_write_turns: int = 50
    review_timeout_seconds: int = 600
    write_timeout_seconds: int = 900
    conflict_timeout_seconds: int = 600
    guides_dir: Path | None = None
    transcript_retention: int = 30
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class BotIdentityConfig:
    git_user_name: str = "review-bot"
    git_user_email: str = "review-bot@noreply"


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    owner: str
    name: str
    remote_url: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def effective_remote_url(self) -> str:
        if self.remote_url:
            return self.remote_url
        return f"git@github.com:{self.owner}/{self.name}.git"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    agent: AgentConfig
    bot: BotIdentityConfig
    repos: tuple[RepoConfig, ...]

    def repo_for(self, owner: str, name: str) -> RepoConfig:
        for repo in self.repos:
            if repo.owner == owner and repo.name == name:
                return repo
        raise KeyError(f"{owner}/{name} is not a configured repo")


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    agent_data = _optional_table(data, "agent") or {}
    bot_data = _optional_table(data, "bot") or {}
    repo_data = _require_table(data, "repo")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 60),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
        max_review_cycles=_int_with_default(runtime_data, "max_review_cycles", 5),
        ci_timeout_seconds=_int_with_default(runtime_data, "ci_timeout_seconds", 1800),
        checkout_retention=_int_with_default(runtime_data, "checkout_retention", 30),
        build_command_timeout_seconds=_int_with_default(
            runtime_data, "build_command_timeout_seconds", 300
        ),
        max_build_output_chars=_int_with_default(runtime_data, "max_build_output_chars", 2000),
        git_command_timeout_seconds=_int_with_default(
            runtime_data, "git_command_timeout_seconds", 600
        ),
    )
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    for key in (
        "worker_count",
        "max_review_cycles",
        "ci_timeout_seconds",
        "checkout_retention",
        "build_command_timeout_seconds",
        "max_build_output_chars",
        "git_command_timeout_seconds",
    ):
        if getattr(runtime, key) < 1:
            raise ConfigError(f"runtime.{key} must be >= 1")

    agent = AgentConfig(
        command=_str_with_default(agent_data, "command", "claude"),
        model=_optional_str(agent_data, "model"),
        max_review_turns=_int_with_default(agent_data, "max_review_turns", 30),
        max_write_turns=_int_with_default(agent_data, "max_write_turns", 50),
        review_timeout_seconds=_int_with_default(agent_data, "review_timeout_seconds", 600),
        write_timeout_seconds=_int_with_default(agent_data, "write_timeout_seconds", 900),
        conflict_timeout_seconds=_int_with_default(agent_data, "conflict_timeout_seconds", 600),
        guides_dir=_optional_path(agent_data, "guides_dir"),
        transcript_retention=_int_with_default(agent_data, "transcript_retention", 30),
        extra_args=_tuple_of_str(agent_data, "extra_args"),
    )
    for key in (
        "max_review_turns",
        "max_write_turns",
        "review_timeout_seconds",
        "write_timeout_seconds",
        "conflict_timeout_seconds",
        "transcript_retention",
    ):
        if getattr(agent, key) < 1:
            raise ConfigError(f"agent.{key} must be >= 1")

    bot = BotIdentityConfig(
        git_user_name=_str_with_default(bot_data, "git_user_name", "review-bot"),
        git_user_email=_str_with_default(bot_data, "git_user_email", "review-bot@noreply"),
    )

    return AppConfig(
        runtime=runtime,
        agent=agent,
        bot=bot,
        repos=_load_repo_configs(repo_data),
    )


def _load_repo_configs(repo_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define at least one [repo.<id>] table")

    repos: list[RepoConfig] = []
    for repo_id, raw_value in sorted(repo_data.items()):
        table = _require_nested_table(raw_value, table_name=f"[repo.{repo_id}]")
        repos.append(
            RepoConfig(
                repo_id=repo_id,
                owner=_require_str(table, "owner"),
                name=_str_with_default(table, "name", repo_id),
                remote_url=_optional_str(table, "remote_url"),
            )
        )

    seen: dict[str, str] = {}
    for repo in repos:
        existing_id = seen.get(repo.full_name)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repo full_name {repo.full_name!r} across repo ids "
                f"{existing_id!r} and {repo.repo_id!r}"
            )
        seen[repo.full_name] = repo.repo_id
    return tuple(repos)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_nested_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
