from __future__ import annotations

from pathlib import Path

import pytest

from prlander.config import (
    AppConfig,
    ConfigError,
    ProjectConfig,
    RuntimeConfig,
    _int_with_default,
    _optional_str,
    _tuple_of_str,
    load_config,
)


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "prlander.toml"
    path.write_text(body, encoding="utf-8")
    return path


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    cfg = load_config(
        _write(
            tmp_path,
            f"""
[runtime]
base_dir = "{tmp_path / 'state'}"

[project.web]
owner = "acme"
""",
        )
    )

    assert cfg.runtime == RuntimeConfig(base_dir=tmp_path / "state")
    assert cfg.runtime.merge_queue_interval_seconds == 30
    assert cfg.runtime.pr_monitor_interval_seconds == 120
    assert cfg.runtime.max_review_cycles == 3
    assert cfg.runtime.github_token_env == "GITHUB_TOKEN"
    (project,) = cfg.projects
    assert project.project_id == "web"
    assert project.full_name == "acme/web"
    assert project.default_branch == "main"
    assert project.delegate == "team-lead"
    assert project.pipeline_enabled is False
    assert project.effective_remote_url == "https://github.com/acme/web.git"


def test_load_config_reads_every_field(tmp_path: Path) -> None:
    cfg = load_config(
        _write(
            tmp_path,
            """
[runtime]
base_dir = "~/prlander-state"
merge_queue_interval_seconds = 5
pr_monitor_interval_seconds = 15
max_review_cycles = 4
github_token_env = "PRLANDER_PAT"

[project.api]
owner = "acme"
name = "api-server"
default_branch = "trunk"
remote_url = "git@github.com:acme/api-server.git"
delegate = "lead-api"
directive_command = ["agent", "directive"]
pipeline_enabled = true
re_review_command = ["agent", "review"]
review_feedback_command = ["agent", "fix"]

[project.web]
owner = "acme"
""",
        )
    )

    assert cfg.runtime.base_dir == Path("~/prlander-state").expanduser()
    assert cfg.runtime.merge_queue_interval_seconds == 5
    assert cfg.runtime.pr_monitor_interval_seconds == 15
    assert cfg.runtime.max_review_cycles == 4
    assert cfg.runtime.github_token_env == "PRLANDER_PAT"
    api = cfg.require_project("api")
    assert api.full_name == "acme/api-server"
    assert api.default_branch == "trunk"
    assert api.effective_remote_url == "git@github.com:acme/api-server.git"
    assert api.delegate == "lead-api"
    assert api.directive_command == ("agent", "directive")
    assert api.pipeline_enabled is True
    assert api.re_review_command == ("agent", "review")
    assert api.review_feedback_command == ("agent", "fix")
    assert [project.project_id for project in cfg.projects] == ["api", "web"]


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("[project.web]\nowner = 'a'\n", r"\[runtime\] is required"),
        ("[runtime]\nbase_dir = '/tmp/x'\n", r"\[project\] is required"),
        ("[runtime]\nbase_dir = '/tmp/x'\n[project]\n", "at least one"),
        ("[runtime]\nbase_dir = ''\n[project.web]\nowner = 'a'\n", "base_dir is required"),
        (
            "[runtime]\nbase_dir = '/tmp/x'\nmax_review_cycles = 0\n[project.web]\nowner = 'a'\n",
            "max_review_cycles must be >= 1",
        ),
        (
            "[runtime]\nbase_dir = '/tmp/x'\nmerge_queue_interval_seconds = 0\n"
            "[project.web]\nowner = 'a'\n",
            "merge_queue_interval_seconds must be >= 1",
        ),
        (
            "[runtime]\nbase_dir = '/tmp/x'\npr_monitor_interval_seconds = true\n"
            "[project.web]\nowner = 'a'\n",
            "pr_monitor_interval_seconds must be an integer",
        ),
        ("[runtime]\nbase_dir = '/tmp/x'\n[project.web]\nname = 'w'\n", "owner is required"),
        (
            "[runtime]\nbase_dir = '/tmp/x'\n[project.web]\nowner = 'a'\n"
            "pipeline_enabled = 'yes'\n",
            "pipeline_enabled must be a boolean",
        ),
        (
            "[runtime]\nbase_dir = '/tmp/x'\n[project.web]\nowner = 'a'\npipeline_enabled = true\n",
            "re_review_command is required",
        ),
        (
            "[runtime]\nbase_dir = '/tmp/x'\n[project.web]\nowner = 'a'\npipeline_enabled = true\n"
            "re_review_command = ['r']\n",
            "review_feedback_command is required",
        ),
        (
            "[runtime]\nbase_dir = '/tmp/x'\n[project]\nweb = 3\n",
            r"\[project.web\] must be a TOML table",
        ),
        (
            "[runtime]\nbase_dir = '/tmp/x'\n[project.a]\nowner = 'o'\nname = 'n'\n"
            "[project.b]\nowner = 'o'\nname = 'n'\n",
            "Duplicate project full_name 'o/n'",
        ),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, body: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path, body))


def test_require_project_lists_known_ids(tmp_path: Path) -> None:
    cfg = AppConfig(
        runtime=RuntimeConfig(base_dir=tmp_path),
        projects=(
            ProjectConfig(project_id="web", owner="acme", name="web"),
            ProjectConfig(project_id="api", owner="acme", name="api"),
        ),
    )

    assert cfg.project("web") is cfg.projects[0]
    assert cfg.project("missing") is None
    with pytest.raises(ConfigError, match="expected one of: api, web"):
        cfg.require_project("missing")


def test_value_helpers() -> None:
    assert _int_with_default({}, "n", 7) == 7
    with pytest.raises(ConfigError):
        _int_with_default({"n": "7"}, "n", 1)
    assert _optional_str({}, "k") is None
    with pytest.raises(ConfigError):
        _optional_str({"k": ""}, "k")
    assert _tuple_of_str({"k": ["a", "b"]}, "k") == ("a", "b")
    with pytest.raises(ConfigError, match="list of strings"):
        _tuple_of_str({"k": "a"}, "k")
    with pytest.raises(ConfigError, match="non-empty strings"):
        _tuple_of_str({"k": ["a", ""]}, "k")
