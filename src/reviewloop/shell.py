from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import subprocess


class CommandError(RuntimeError):
    pass


class CommandTimeoutError(CommandError):
    pass


@dataclass(frozen=True)
class CommandOutput:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


LOGGER = logging.getLogger("reviewloop.shell")


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def capture(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    timeout_seconds: float | None = None,
) -> CommandOutput:
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            " ".join(argv),
            timeout_seconds,
        )
        raise CommandTimeoutError(
            "Command timed out\n"
            f"cmd: {' '.join(argv)}\n"
            f"timeout: {timeout_seconds}s\n"
            f"stdout:\n{_as_text(exc.stdout)}\n"
            f"stderr:\n{_as_text(exc.stderr)}"
        ) from exc
    return CommandOutput(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout_seconds: float | None = None,
) -> str:
    out = capture(argv, cwd=cwd, input_text=input_text, timeout_seconds=timeout_seconds)
    if check and not out.ok:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            out.returncode,
            _preview(out.stderr),
            _preview(out.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {out.returncode}\n"
            f"stdout:\n{out.stdout}\n"
            f"stderr:\n{out.stderr}"
        )
    return out.stdout


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
