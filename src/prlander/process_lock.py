from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import secrets
from typing import Iterator

from prlander.observability import log_event


LOGGER = logging.getLogger("prlander.process_lock")
LOCK_FILENAME = "service.lock"


class ProcessLockError(RuntimeError):
    """Another process already owns the service lock."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None = None
    command: str | None = None
    started_at: str | None = None
    token: str | None = None

    @classmethod
    def read(cls, path: Path) -> LockOwner:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return cls()
        if not isinstance(payload, dict):
            return cls()
        return cls(
            pid=_int_or_none(payload.get("pid")),
            command=_str_or_none(payload.get("command")),
            started_at=_str_or_none(payload.get("started_at")),
            token=_str_or_none(payload.get("token")),
        )

    def describe(self) -> str:
        details = [
            f"{key}={value}"
            for key, value in (("pid", self.pid), ("command", self.command))
            if value is not None
        ]
        return f" ({', '.join(details)})" if details else ""


class ServiceLock:
    """Exclusive lock file guarding the state DB against concurrent writers.

    The file is created with O_EXCL. A lock left behind by a dead pid is
    reclaimed once; release only unlinks a file that still carries our token.
    """

    def __init__(self, path: Path, *, command: str) -> None:
        self.path = path
        self.command = command
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if attempt == 0 and self._reclaim_stale():
                    continue
                break
            token = secrets.token_hex(16)
            payload = {
                "pid": os.getpid(),
                "command": self.command,
                "started_at": datetime.now(timezone.utc).isoformat(),
                "token": token,
            }
            try:
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except OSError:
                os.close(fd)
                self.path.unlink(missing_ok=True)
                raise
            os.close(fd)
            self._token = token
            log_event(LOGGER, "service_lock_acquired", path=str(self.path), command=self.command)
            return

        owner = LockOwner.read(self.path)
        raise ProcessLockError(
            f"Another prlander writer process appears active{owner.describe()}. "
            f"Lock file: {self.path}. If the lock is stale, stop running services, "
            "remove the lock file and retry."
        )

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        if LockOwner.read(self.path).token != token:
            log_event(LOGGER, "service_lock_foreign", path=str(self.path))
            return
        self.path.unlink(missing_ok=True)
        log_event(LOGGER, "service_lock_released", path=str(self.path))

    def _reclaim_stale(self) -> bool:
        owner = LockOwner.read(self.path)
        if owner.pid is None or owner.pid == os.getpid() or pid_is_running(owner.pid):
            return False
        log_event(LOGGER, "service_lock_reclaimed", path=str(self.path), stale_pid=owner.pid)
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            return False
        return True


@contextmanager
def service_lock(*, base_dir: Path, command: str) -> Iterator[ServiceLock]:
    lock = ServiceLock(base_dir / LOCK_FILENAME, command=command)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


def pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _int_or_none(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _str_or_none(value: object) -> str | None:
    return value if isinstance(value, str) else None
