from __future__ import annotations

from pathlib import Path
from typing import Literal

from reviewloop.models import Platform, PullRequestTask


InstructionKind = Literal["architecture", "detailed", "fix", "conflict"]
_SECTION_SEPARATOR = "\n\n---\n\n"


_BASE_REVIEW_INSTRUCTIONS = """
You are an automated code reviewer for a pull request checked out in the current directory.

General rules:
- Read the diff against the base branch before commenting.
- Read the existing review threads on the PR. Every bot comment ends with a footer such as
  `thread::<id>`; use that id (or the numeric GitHub comment id) as thread_id when you
  respond to a thread.
- For every thread you consider addressed by the current code, report resolved=true.
- For threads that are still open, report resolved=false and explain what is missing.
- Only raise new comments for concrete, actionable problems. Do not repeat an open thread.
- Do not modify files in the working tree.
""".strip()


_ARCHITECTURE_INSTRUCTIONS = """
Pass: architecture.

Focus on structure: module boundaries, data flow, ownership of state, error handling
strategy, and whether the change fits the existing architecture of the project.
If the change alters the architecture in a way the project's architecture notes should
record, set architecture_update_needed.needed to true and give the reason.

Return a single JSON object in a ```json fenced block with this shape:
{
  "summary": "one paragraph summary of the architecture review",
  "new_comments": [{"path": "src/file.ext", "line": 42, "body": "comment"}],
  "thread_responses": [{"thread_id": "id", "resolved": true, "response": "optional"}],
  "architecture_update_needed": {"needed": false, "reason": "optional"}
}
Use "path": null and "line": null for a comment that is not tied to a line.
""".strip()


_DETAILED_INSTRUCTIONS = """
Pass: detailed.

Focus on line-level correctness: bugs, edge cases, naming, missing tests, resource
handling, and consistency with the surrounding code. Leave structural concerns to the
architecture pass.

Return a single JSON object in a ```json fenced block with this shape:
{
  "summary": "one paragraph summary of the detailed review",
  "new_comments": [{"path": "src/file.ext", "line": 42, "body": "comment"}],
  "thread_responses": [{"thread_id": "id", "resolved": false, "response": "what is missing"}]
}
Use "path": null and "line": null for a comment that is not tied to a line.
""".strip()


_FIX_INSTRUCTIONS = """
You are an automated engineer addressing review feedback on a pull request checked out
in the current directory.

Rules:
- Read every unresolved review thread on the PR. Thread ids appear in comment footers as
  `thread::<id>`, or use the numeric GitHub comment id.
- Edit repository files to address the feedback. Keep changes focused.
- Run the project's build and tests before finishing.
- Do not commit, push, rebase, or otherwise change git history. The orchestrator commits.

Return a single JSON object in a ```json fenced block with this shape:
{
  "threads_addressed": [{"thread_id": "id", "explanation": "what changed"}],
  "build_passed": true,
  "summary": "short summary of the changes"
}
""".strip()


_CONFLICT_INSTRUCTIONS = """
You are resolving merge conflicts left in the working tree of the current directory by a
merge of the base branch into the pull request branch.

Rules:
- Edit every conflicted file so that no conflict markers (<<<<<<<, =======, >>>>>>>) remain.
- Preserve the intent of both sides. Prefer the base branch for unrelated changes.
- Do not run git commit, git merge --abort, or git reset. The orchestrator completes the merge.

Return a single JSON object in a ```json fenced block with this shape:
{
  "conflicts_resolved": [{"file": "path", "explanation": "how it was resolved"}],
  "build_passed": true,
  "summary": "short summary"
}
""".strip()


_LAYERS: dict[InstructionKind, tuple[str, ...]] = {
    "architecture": (_BASE_REVIEW_INSTRUCTIONS, _ARCHITECTURE_INSTRUCTIONS),
    "detailed": (_BASE_REVIEW_INSTRUCTIONS, _DETAILED_INSTRUCTIONS),
    "fix": (_FIX_INSTRUCTIONS,),
    "conflict": (_CONFLICT_INSTRUCTIONS,),
}


def build_instructions(
    kind: InstructionKind,
    *,
    platform: Platform | None = None,
    guides_dir: Path | None = None,
) -> str:
    sections = list(_LAYERS[kind])
    guide = _load_platform_guide(platform=platform, guides_dir=guides_dir)
    if guide is not None:
        sections.append(guide)
    return _SECTION_SEPARATOR.join(sections)


def _load_platform_guide(*, platform: Platform | None, guides_dir: Path | None) -> str | None:
    if platform is None or guides_dir is None:
        return None
    guide_path = guides_dir / f"{platform.upper()}_CODE_REVIEW.md"
    if not guide_path.is_file():
        return None
    text = guide_path.read_text(encoding="utf-8").strip()
    return text or None


def build_review_message(task: PullRequestTask) -> str:
    return f"""
Review PR #{task.number} in {task.owner}/{task.repo}.
Title: {task.title}
Branch: {task.head_branch}
Base branch: {task.base_branch}
Read the PR comments and threads with the GitHub tools available to you.
Read the diff with: git diff origin/{task.base_branch}...HEAD
""".strip()


def build_fix_message(task: PullRequestTask) -> str:
    return f"""
Fix review comments on PR #{task.number} in {task.owner}/{task.repo}.
Title: {task.title}
Branch: {task.head_branch}
Base branch: {task.base_branch}
Read the PR review comments and threads with the GitHub tools available to you.
Read the diff with: git diff origin/{task.base_branch}...HEAD
""".strip()


def build_conflict_message(task: PullRequestTask, conflict_files: tuple[str, ...]) -> str:
    return f"""
Resolve merge conflicts in this repository.
Conflicted files: {", ".join(conflict_files)}
Base branch: {task.base_branch}
PR branch: {task.head_branch}
""".strip()
