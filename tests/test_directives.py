from __future__ import annotations

from pathlib import Path

import pytest

from prlander.config import AppConfig, ProjectConfig, RuntimeConfig
from prlander.directives import CommandDirectiveDispatcher, Directive


def _config(tmp_path: Path, *, directive_command: tuple[str, ...] = ()) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(base_dir=tmp_path),
        projects=(
            ProjectConfig(
                project_id="web",
                owner="acme",
                name="web",
                directive_command=directive_command,
            ),
        ),
    )


def _directive(project_id: str = "web") -> Directive:
    return Directive(
        project_id=project_id,
        delegate="team-lead",
        task_id="t1",
        content="PR REVIEW FEEDBACK for existing task",
    )


def test_dispatch_pipes_content_into_command(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls: list[tuple[list[str], object]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        calls.append((cmd, kwargs.get("input_text")))
        return ""

    monkeypatch.setattr("prlander.directives.run", fake_run)
    dispatcher = CommandDirectiveDispatcher(
        _config(tmp_path, directive_command=("agent", "direct"))
    )

    dispatcher.dispatch(_directive())

    assert calls == [
        (["agent", "direct", "team-lead", "t1"], "PR REVIEW FEEDBACK for existing task")
    ]


def test_dispatch_without_command_only_logs(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    def fail_run(cmd: list[str], **kwargs: object) -> str:
        raise AssertionError(f"unexpected command {cmd} {kwargs}")

    monkeypatch.setattr("prlander.directives.run", fail_run)
    dispatcher = CommandDirectiveDispatcher(_config(tmp_path))

    dispatcher.dispatch(_directive())
    dispatcher.dispatch(_directive(project_id="unknown"))
