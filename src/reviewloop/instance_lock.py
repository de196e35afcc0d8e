"""Single-instance guard for the orchestrator loop.

The in-flight registry only deduplicates work inside one process, so two
orchestrators sharing a ``base_dir`` would race on every PR. The lock file is
created with ``O_EXCL`` and records the owner's pid and a random token; a lock
left behind by a dead pid is cleared on the next start.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import json
import logging
import os
from pathlib import Path
import secrets

from reviewloop.observability import log_event, log_warning


LOGGER = logging.getLogger("reviewloop.instance_lock")
LOCK_FILENAME = "orchestrator.lock"


class InstanceLockError(RuntimeError):
    pass


@contextmanager
def orchestrator_lock(base_dir: Path) -> Iterator[None]:
    lock = InstanceLock(base_dir / LOCK_FILENAME)
    lock.acquire()
    try:
        yield
    finally:
        lock.release()


class InstanceLock:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._clear_if_stale():
                    continue
                raise InstanceLockError(self._held_message()) from None

            token = secrets.token_hex(16)
            try:
                os.write(fd, json.dumps({"pid": os.getpid(), "token": token}).encode("utf-8"))
            except OSError:
                os.close(fd)
                self.path.unlink(missing_ok=True)
                raise
            os.close(fd)
            self._token = token
            log_event(LOGGER, "instance_lock_acquired", path=str(self.path))
            return
        raise InstanceLockError(self._held_message())

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        # Leave the file alone if another process replaced it.
        if _read_owner(self.path).get("token") != token:
            return
        self.path.unlink(missing_ok=True)

    def _clear_if_stale(self) -> bool:
        pid = _read_owner(self.path).get("pid")
        if not isinstance(pid, int) or pid == os.getpid() or pid_is_running(pid):
            return False
        log_warning(LOGGER, "instance_lock_stale_cleared", path=str(self.path), pid=pid)
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            return False
        return True

    def _held_message(self) -> str:
        pid = _read_owner(self.path).get("pid")
        owner = f" (pid={pid})" if isinstance(pid, int) else ""
        return (
            f"Another reviewloop orchestrator appears active{owner}. Lock file: {self.path}. "
            "Remove the file if no orchestrator is running."
        )


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


def _read_owner(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(payload, dict):
        return {}
    return payload
