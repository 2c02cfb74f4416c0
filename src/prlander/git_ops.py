from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os

from prlander.config import ProjectConfig, RuntimeConfig
from prlander.observability import log_event
from prlander.shell import CommandError, run


LOGGER = logging.getLogger("prlander.git_ops")
_CREDENTIAL_HELPER = (
    "credential.helper=!f() { echo username=x-access-token; echo password=$GIT_PAT; }; f"
)


@dataclass(frozen=True)
class GitCredentials:
    """Personal access token handed to git through the environment, never the remote URL."""

    token: str

    @classmethod
    def from_env(cls, env_var: str) -> GitCredentials | None:
        token = os.environ.get(env_var, "").strip()
        if not token:
            return None
        return cls(token=token)

    def env(self) -> dict[str, str]:
        return {"GIT_TERMINAL_PROMPT": "0", "GIT_PAT": self.token}

    def config_args(self) -> list[str]:
        return ["-c", _CREDENTIAL_HELPER]


class GitRepoManager:
    def __init__(
        self,
        runtime: RuntimeConfig,
        project: ProjectConfig,
        *,
        credentials: GitCredentials | None = None,
    ) -> None:
        self.runtime = runtime
        self.project = project
        self.credentials = credentials
        self.checkout_path = runtime.base_dir / "checkouts" / project.owner / project.name

    def ensure_checkout(self) -> Path:
        remote_url = self.project.effective_remote_url
        if not self.checkout_path.exists():
            self.checkout_path.parent.mkdir(parents=True, exist_ok=True)
            log_event(
                LOGGER,
                "git_checkout_cloned",
                project_id=self.project.project_id,
                checkout_path=str(self.checkout_path),
            )
            self._git_global(["clone", remote_url, str(self.checkout_path)])
        else:
            log_event(
                LOGGER,
                "git_checkout_remote_set",
                project_id=self.project.project_id,
                checkout_path=str(self.checkout_path),
            )
            self._git(["remote", "set-url", "origin", remote_url])
        return self.checkout_path

    def rebase_branch(self, branch: str, base_branch: str) -> bool:
        """Rebase `branch` onto `origin/<base_branch>`.

        Returns False when the rebase itself stops on conflicts; the in-progress
        rebase is aborted so the working copy is left clean for the next entry.
        Clone, fetch and checkout failures propagate as CommandError.
        """
        self.ensure_checkout()
        log_event(
            LOGGER,
            "git_rebase_started",
            project_id=self.project.project_id,
            branch=branch,
            base_branch=base_branch,
        )
        self._git(["fetch", "origin", "--prune"])
        self._git(["checkout", "-B", branch, f"origin/{branch}"])
        self._git(["reset", "--hard", f"origin/{branch}"])
        try:
            self._git(["rebase", f"origin/{base_branch}"])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_rebase_conflict",
                project_id=self.project.project_id,
                branch=branch,
                base_branch=base_branch,
                error=exc.summary,
            )
            self._git(["rebase", "--abort"], check=False)
            return False
        log_event(
            LOGGER,
            "git_rebase_succeeded",
            project_id=self.project.project_id,
            branch=branch,
            base_branch=base_branch,
        )
        return True

    def force_push_branch(self, branch: str) -> None:
        log_event(
            LOGGER,
            "git_force_push",
            project_id=self.project.project_id,
            branch=branch,
        )
        try:
            self._git(["push", "--force-with-lease", "origin", f"{branch}:{branch}"])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_force_push_failed",
                project_id=self.project.project_id,
                branch=branch,
                error=exc.summary,
            )
            raise

    def _git(self, args: list[str], *, check: bool = True) -> str:
        return self._git_global(["-C", str(self.checkout_path), *args], check=check)

    def _git_global(self, args: list[str], *, check: bool = True) -> str:
        cmd = ["git"]
        extra_env: dict[str, str] | None = None
        if self.credentials is not None:
            cmd.extend(self.credentials.config_args())
            extra_env = self.credentials.env()
        cmd.extend(args)
        return run(cmd, extra_env=extra_env, check=check)
