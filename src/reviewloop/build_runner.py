"""Build/test gate driven by commands documented in the checkout itself.

Commands come from the project's CLAUDE.md and README.md. Only sections whose
heading names a build, test or setup topic are considered.
"""

from __future__ import annotations

from pathlib import Path
import logging
import re

from reviewloop.models import BuildResult
from reviewloop.observability import log_event
from reviewloop.shell import CommandTimeoutError, capture


LOGGER = logging.getLogger("reviewloop.build_runner")

COMMAND_SOURCES = ("CLAUDE.md", "README.md")
NO_COMMANDS_OUTPUT = "No build/test commands found"

_SECTION_TITLE_PATTERN = re.compile(
    r"^(build|test|quick reference|development|getting started)", re.IGNORECASE
)
_HEADING_PATTERN = re.compile(r"^#{1,6}\s+(.*?)\s*#*\s*$")
_FENCE_PATTERN = re.compile(r"^```\s*([A-Za-z0-9_+-]*)\s*$")
_SHELL_FENCE_LANGS = frozenset({"", "bash", "sh", "shell"})


def extract_commands(markdown: str) -> list[str]:
    commands: list[str] = []
    in_section = False
    fence_lang: str | None = None
    for raw_line in markdown.splitlines():
        line = raw_line.strip()
        if fence_lang is not None:
            if line.startswith("```"):
                fence_lang = None
                continue
            if in_section and fence_lang in _SHELL_FENCE_LANGS:
                command = line[2:] if line.startswith("$ ") else line
                if command and not command.startswith("#"):
                    commands.append(command)
            continue

        fence = _FENCE_PATTERN.match(line)
        if fence is not None:
            fence_lang = fence.group(1).lower()
            continue

        heading = _HEADING_PATTERN.match(line)
        if heading is not None:
            in_section = _SECTION_TITLE_PATTERN.match(heading.group(1)) is not None
            continue

        if in_section and line.startswith("$ "):
            command = line[2:].strip()
            if command:
                commands.append(command)
    return commands


def discover_commands(checkout: Path) -> list[str]:
    commands: list[str] = []
    for name in COMMAND_SOURCES:
        path = checkout / name
        if not path.is_file():
            continue
        for command in extract_commands(path.read_text(encoding="utf-8", errors="replace")):
            if command not in commands:
                commands.append(command)
    return commands


def run_build_and_tests(
    checkout: Path, *, timeout_seconds: int, max_output_chars: int
) -> BuildResult:
    commands = discover_commands(checkout)
    if not commands:
        log_event(LOGGER, "build_gate_skipped", checkout=str(checkout))
        return BuildResult(success=True, output=NO_COMMANDS_OUTPUT)

    chunks: list[str] = []
    for command in commands:
        chunks.append(f"$ {command}")
        try:
            out = capture(["sh", "-c", command], cwd=checkout, timeout_seconds=timeout_seconds)
        except CommandTimeoutError:
            chunks.append(f"Command timed out after {timeout_seconds}s")
            log_event(LOGGER, "build_gate_failed", command=command, reason="timeout")
            return BuildResult(success=False, output=_tail("\n".join(chunks), max_output_chars))

        chunks.append(out.stdout + out.stderr)
        if not out.ok:
            log_event(
                LOGGER,
                "build_gate_failed",
                command=command,
                exit_code=out.returncode,
            )
            return BuildResult(success=False, output=_tail("\n".join(chunks), max_output_chars))

    log_event(LOGGER, "build_gate_passed", command_count=len(commands))
    return BuildResult(success=True, output=_tail("\n".join(chunks), max_output_chars))


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[-limit:]
