from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    merge_queue_interval_seconds: int = 30
    pr_monitor_interval_seconds: int = 120
    max_review_cycles: int = 3
    github_token_env: str = "GITHUB_TOKEN"


@dataclass(frozen=True)
class ProjectConfig:
    project_id: str
    owner: str
    name: str
    default_branch: str = "main"
    remote_url: str | None = None
    delegate: str = "team-lead"
    directive_command: tuple[str, ...] = ()
    pipeline_enabled: bool = False
    re_review_command: tuple[str, ...] = ()
    review_feedback_command: tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def effective_remote_url(self) -> str:
        if self.remote_url:
            return self.remote_url
        return f"https://github.com/{self.owner}/{self.name}.git"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    projects: tuple[ProjectConfig, ...]

    def project(self, project_id: str) -> ProjectConfig | None:
        for project in self.projects:
            if project.project_id == project_id:
                return project
        return None

    def require_project(self, project_id: str) -> ProjectConfig:
        project = self.project(project_id)
        if project is None:
            available = ", ".join(sorted(item.project_id for item in self.projects))
            raise ConfigError(f"Unknown project id {project_id!r}; expected one of: {available}")
        return project


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    project_data = _require_table(data, "project")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        merge_queue_interval_seconds=_int_with_default(
            runtime_data, "merge_queue_interval_seconds", 30
        ),
        pr_monitor_interval_seconds=_int_with_default(
            runtime_data, "pr_monitor_interval_seconds", 120
        ),
        max_review_cycles=_int_with_default(runtime_data, "max_review_cycles", 3),
        github_token_env=_str_with_default(runtime_data, "github_token_env", "GITHUB_TOKEN"),
    )

    if runtime.merge_queue_interval_seconds < 1:
        raise ConfigError("runtime.merge_queue_interval_seconds must be >= 1")
    if runtime.pr_monitor_interval_seconds < 1:
        raise ConfigError("runtime.pr_monitor_interval_seconds must be >= 1")
    if runtime.max_review_cycles < 1:
        raise ConfigError("runtime.max_review_cycles must be >= 1")

    return AppConfig(runtime=runtime, projects=_load_project_configs(project_data))


def _load_project_configs(project_data: dict[str, object]) -> tuple[ProjectConfig, ...]:
    if not project_data:
        raise ConfigError("[project] must define at least one [project.<id>] table")

    projects: list[ProjectConfig] = []
    for project_id, raw_value in sorted(project_data.items()):
        table = _require_project_table(raw_value, table_name=f"[project.{project_id}]")
        projects.append(_parse_project_config(project_id=project_id, project_data=table))
    _ensure_unique_full_names(projects)
    return tuple(projects)


def _parse_project_config(*, project_id: str, project_data: dict[str, object]) -> ProjectConfig:
    project = ProjectConfig(
        project_id=project_id,
        owner=_require_str(project_data, "owner"),
        name=_str_with_default(project_data, "name", project_id),
        default_branch=_str_with_default(project_data, "default_branch", "main"),
        remote_url=_optional_str(project_data, "remote_url"),
        delegate=_str_with_default(project_data, "delegate", "team-lead"),
        directive_command=_tuple_of_str(project_data, "directive_command"),
        pipeline_enabled=_bool_with_default(project_data, "pipeline_enabled", False),
        re_review_command=_tuple_of_str(project_data, "re_review_command"),
        review_feedback_command=_tuple_of_str(project_data, "review_feedback_command"),
    )
    if project.pipeline_enabled:
        if not project.re_review_command:
            raise ConfigError(
                f"[project.{project_id}] re_review_command is required when pipeline_enabled"
            )
        if not project.review_feedback_command:
            raise ConfigError(
                f"[project.{project_id}] review_feedback_command is required when "
                "pipeline_enabled"
            )
    return project


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_project_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
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


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{key} must be a list of non-empty strings")
        out.append(item)
    return tuple(out)


def _ensure_unique_full_names(projects: list[ProjectConfig]) -> None:
    seen: dict[str, str] = {}
    for project in projects:
        existing_id = seen.get(project.full_name)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate project full_name {project.full_name!r} across project ids "
                f"{existing_id!r} and {project.project_id!r}"
            )
        seen[project.full_name] = project.project_id
