from __future__ import annotations

from pathlib import Path
import logging
import tempfile
import time

from reviewloop.agent_adapter import AgentAdapter, AgentInvocationError, AgentRequest, AgentRun
from reviewloop.config import AgentConfig
from reviewloop.observability import log_event, log_warning
from reviewloop.shell import CommandTimeoutError, capture


LOGGER = logging.getLogger("reviewloop.claude_adapter")


class ClaudeCodeAdapter(AgentAdapter):
    def __init__(self, config: AgentConfig, *, transcripts_dir: Path) -> None:
        self._config = config
        self._transcripts_dir = transcripts_dir

    def invoke(self, request: AgentRequest) -> AgentRun:
        run_id = f"{int(time.time() * 1000)}-{request.label}"
        log_event(
            LOGGER,
            "agent_invocation_started",
            run_id=run_id,
            cwd=str(request.cwd),
            max_turns=request.max_turns,
            timeout_seconds=request.timeout_seconds,
        )
        with tempfile.TemporaryDirectory(prefix="reviewloop-agent-") as tmp:
            instructions_path = Path(tmp) / "instructions.md"
            instructions_path.write_text(request.instructions, encoding="utf-8")
            cmd = self._build_command(request=request, instructions_path=instructions_path)
            try:
                out = capture(
                    cmd,
                    cwd=request.cwd,
                    input_text=request.user_message,
                    timeout_seconds=request.timeout_seconds,
                )
            except CommandTimeoutError as exc:
                raise AgentInvocationError(
                    f"Agent run {run_id} timed out after {request.timeout_seconds}s"
                ) from exc

        self._save_transcript(run_id=run_id, stdout=out.stdout, stderr=out.stderr)
        self._prune_transcripts()
        log_event(
            LOGGER,
            "agent_invocation_finished",
            run_id=run_id,
            exit_code=out.returncode,
            output_chars=len(out.stdout),
        )
        if not out.ok:
            raise AgentInvocationError(
                f"Agent run {run_id} exited with code {out.returncode}: {out.stderr.strip()[:500]}"
            )
        return AgentRun(run_id=run_id, output=out.stdout)

    def _build_command(self, *, request: AgentRequest, instructions_path: Path) -> list[str]:
        cmd = [self._config.command, "--print", "--output-format", "json"]
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        cmd.extend(
            [
                "--max-turns",
                str(request.max_turns),
                "--append-system-prompt-file",
                str(instructions_path),
                "--dangerously-skip-permissions",
            ]
        )
        cmd.extend(self._config.extra_args)
        return cmd

    def _save_transcript(self, *, run_id: str, stdout: str, stderr: str) -> None:
        try:
            self._transcripts_dir.mkdir(parents=True, exist_ok=True)
            (self._transcripts_dir / f"{run_id}.json").write_text(stdout, encoding="utf-8")
            if stderr.strip():
                (self._transcripts_dir / f"{run_id}.stderr.log").write_text(
                    stderr, encoding="utf-8"
                )
        except OSError as exc:
            log_warning(LOGGER, "transcript_write_failed", run_id=run_id, error=str(exc))

    def _prune_transcripts(self) -> None:
        keep = self._config.transcript_retention
        try:
            transcripts = sorted(
                self._transcripts_dir.glob("*.json"),
                key=lambda path: path.stat().st_mtime,
                reverse=True,
            )
            for stale in transcripts[keep:]:
                stale.unlink(missing_ok=True)
                stale.with_name(f"{stale.stem}.stderr.log").unlink(missing_ok=True)
        except OSError as exc:
            log_warning(LOGGER, "transcript_prune_failed", error=str(exc))
