from __future__ import annotations

from pathlib import Path
import logging
import shutil
import time

from reviewloop.config import BotIdentityConfig, RepoConfig, RuntimeConfig
from reviewloop.models import PullRequestTask
from reviewloop.observability import log_event, log_warning
from reviewloop.shell import CommandError, capture, run


LOGGER = logging.getLogger("reviewloop.git_ops")

CHECKOUT_PREFIX = "review-"
CONFLICT_MARKER = "<<<<<<<"


class CheckoutManager:
    def __init__(
        self, runtime: RuntimeConfig, repo: RepoConfig, bot: BotIdentityConfig
    ) -> None:
        self.runtime = runtime
        self.repo = repo
        self.bot = bot

    @property
    def checkouts_root(self) -> Path:
        return self.runtime.checkouts_dir

    def clone_pull_request(self, task: PullRequestTask, *, shallow: bool = True) -> Path:
        self.checkouts_root.mkdir(parents=True, exist_ok=True)
        checkout_path = self.checkouts_root / (
            f"{CHECKOUT_PREFIX}{task.owner}-{task.repo}-{task.number}-{int(time.time() * 1000)}"
        )
        log_event(
            LOGGER,
            "git_checkout_cloned",
            pr=task.display_name,
            branch=task.head_branch,
            checkout_path=str(checkout_path),
            shallow=shallow,
        )
        cmd = ["git", "clone"]
        if shallow:
            cmd.extend(["--depth", "1"])
        cmd.extend(
            ["--branch", task.head_branch, self.repo.effective_remote_url, str(checkout_path)]
        )
        self._git(cmd)
        return checkout_path

    def prune_checkouts(self, keep: int | None = None) -> int:
        retention = self.runtime.checkout_retention if keep is None else keep
        if not self.checkouts_root.is_dir():
            return 0
        checkouts = sorted(
            (
                path
                for path in self.checkouts_root.iterdir()
                if path.is_dir() and path.name.startswith(CHECKOUT_PREFIX)
            ),
            key=lambda path: path.stat().st_mtime,
            reverse=True,
        )
        stale = checkouts[retention:]
        for path in stale:
            shutil.rmtree(path, ignore_errors=True)
        if stale:
            log_event(LOGGER, "git_checkouts_pruned", removed=len(stale), kept=retention)
        return len(stale)

    def fetch_base(self, checkout_path: Path, base_branch: str) -> None:
        log_event(
            LOGGER, "git_fetch_base", checkout_path=str(checkout_path), base_branch=base_branch
        )
        self._git(
            [
                "git",
                "-C",
                str(checkout_path),
                "fetch",
                "origin",
                f"+refs/heads/{base_branch}:refs/remotes/origin/{base_branch}",
            ]
        )

    def find_merge_conflicts(self, checkout_path: Path, base_branch: str) -> tuple[str, ...]:
        out = capture(
            self._merge_cmd(checkout_path, base_branch, "--no-commit", "--no-ff"),
            timeout_seconds=self.runtime.git_command_timeout_seconds,
        )
        conflicts = () if out.ok else self._conflicted_files(checkout_path)
        self.abort_merge(checkout_path)
        if out.ok:
            return ()
        if not conflicts:
            raise CommandError(
                f"Dry-run merge of origin/{base_branch} failed without conflicts\n"
                f"stderr:\n{out.stderr}"
            )
        log_event(
            LOGGER,
            "git_merge_conflicts_found",
            checkout_path=str(checkout_path),
            files=conflicts,
        )
        return conflicts

    def start_merge(self, checkout_path: Path, base_branch: str) -> bool:
        """Merge the base branch, leaving conflict markers; True when it merged cleanly."""
        self.configure_identity(checkout_path)
        out = capture(
            self._merge_cmd(checkout_path, base_branch, "--no-ff"),
            timeout_seconds=self.runtime.git_command_timeout_seconds,
        )
        log_event(
            LOGGER,
            "git_merge_started",
            checkout_path=str(checkout_path),
            base_branch=base_branch,
            clean=out.ok,
        )
        return out.ok

    def files_with_conflict_markers(self, checkout_path: Path) -> tuple[str, ...]:
        out = capture(
            ["git", "-C", str(checkout_path), "grep", "-l", CONFLICT_MARKER],
            timeout_seconds=self.runtime.git_command_timeout_seconds,
        )
        # git grep exits 1 when nothing matches.
        if out.returncode == 1:
            return ()
        if not out.ok:
            raise CommandError(f"git grep failed in {checkout_path}: {out.stderr.strip()}")
        return _lines(out.stdout)

    def abort_merge(self, checkout_path: Path) -> None:
        out = capture(
            ["git", "-C", str(checkout_path), "merge", "--abort"],
            timeout_seconds=self.runtime.git_command_timeout_seconds,
        )
        if not out.ok:
            log_event(
                LOGGER,
                "git_merge_abort_skipped",
                checkout_path=str(checkout_path),
                stderr=out.stderr.strip()[:200],
            )

    def complete_merge(self, checkout_path: Path) -> None:
        self.configure_identity(checkout_path)
        self._git(["git", "-C", str(checkout_path), "add", "-A"])
        self._git(["git", "-C", str(checkout_path), "commit", "--no-edit"])
        log_event(LOGGER, "git_merge_completed", checkout_path=str(checkout_path))

    def has_changes(self, checkout_path: Path) -> bool:
        status = self._git(["git", "-C", str(checkout_path), "status", "--porcelain"])
        return bool(status.strip())

    def configure_identity(self, checkout_path: Path) -> None:
        self._git(
            ["git", "-C", str(checkout_path), "config", "user.name", self.bot.git_user_name]
        )
        self._git(
            ["git", "-C", str(checkout_path), "config", "user.email", self.bot.git_user_email]
        )

    def commit_and_push(self, checkout_path: Path, message: str) -> None:
        self.configure_identity(checkout_path)
        self._git(["git", "-C", str(checkout_path), "add", "-A"])
        self._git(["git", "-C", str(checkout_path), "commit", "-m", message])
        log_event(LOGGER, "git_commit", checkout_path=str(checkout_path))
        try:
            self._git(["git", "-C", str(checkout_path), "push", "origin", "HEAD"])
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "git_push_failed",
                checkout_path=str(checkout_path),
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "git_push", checkout_path=str(checkout_path))

    def _conflicted_files(self, checkout_path: Path) -> tuple[str, ...]:
        return _lines(
            self._git(
                ["git", "-C", str(checkout_path), "diff", "--name-only", "--diff-filter=U"]
            )
        )

    def _merge_cmd(self, checkout_path: Path, base_branch: str, *flags: str) -> list[str]:
        return ["git", "-C", str(checkout_path), "merge", *flags, f"origin/{base_branch}"]

    def _git(self, argv: list[str]) -> str:
        return run(argv, timeout_seconds=self.runtime.git_command_timeout_seconds)


def _lines(text: str) -> tuple[str, ...]:
    return tuple(line.strip() for line in text.splitlines() if line.strip())
