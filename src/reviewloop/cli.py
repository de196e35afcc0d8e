from __future__ import annotations

import argparse
import json
from pathlib import Path

from reviewloop.board_tui import BoardRow, load_board_rows, run_board
from reviewloop.config import AppConfig, load_config
from reviewloop.dispatcher import Dispatcher, build_repo_runtimes
from reviewloop.github_gateway import GitHubGateway
from reviewloop.instance_lock import orchestrator_lock
from reviewloop.observability import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reviewloop")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", help="Create the base, checkout and log directories"
    )
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser(
        "run", help="Poll bot labels and run review, fix and CI pipelines"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--once", action="store_true", help="Poll once and wait for dispatched pipelines"
    )

    board_parser = subparsers.add_parser("board", help="Interactive board of PRs by bot label")
    _add_common_arguments(board_parser)
    board_parser.add_argument(
        "--refresh-seconds", type=int, default=30, help="Board refresh interval"
    )

    status_parser = subparsers.add_parser("status", help="Print open PRs grouped by bot label")
    _add_common_arguments(status_parser)
    status_parser.add_argument("--json", action="store_true", help="Print rows as JSON")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("reviewloop.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="low",
        choices=("low", "high"),
        default=None,
        help="Log to stderr and base_dir/logs (low: lifecycle events only)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(args.verbose, state_dir=config.runtime.base_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "board":
        _cmd_board(config, refresh_seconds=int(args.refresh_seconds))
        return
    if args.command == "status":
        _cmd_status(config, as_json=bool(args.json))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    for path in (
        config.runtime.base_dir,
        config.runtime.checkouts_dir,
        config.runtime.transcripts_dir,
        config.runtime.base_dir / "logs",
    ):
        path.mkdir(parents=True, exist_ok=True)
    print(f"Initialized reviewloop base dir: {config.runtime.base_dir}")
    print(f"Checkouts: {config.runtime.checkouts_dir}")
    print(f"Transcripts: {config.runtime.transcripts_dir}")
    for repo in config.repos:
        print(f"Repo: {repo.full_name}")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    with orchestrator_lock(config.runtime.base_dir):
        Dispatcher(config, repos=build_repo_runtimes(config)).run(once=once)


def _cmd_board(config: AppConfig, *, refresh_seconds: int) -> None:
    gateways = _gateways(config)
    run_board(load_rows=lambda: load_board_rows(gateways), refresh_seconds=refresh_seconds)


def _cmd_status(config: AppConfig, *, as_json: bool) -> None:
    rows = load_board_rows(_gateways(config))
    if as_json:
        print(json.dumps([_row_payload(row) for row in rows], indent=2))
        return
    if not rows:
        print("No open pull requests carry a bot label.")
        return
    for row in rows:
        print(f"{row.repo_full_name}#{row.pr_number} label={row.label} title={row.title}")


def _row_payload(row: BoardRow) -> dict[str, object]:
    return {
        "repo_full_name": row.repo_full_name,
        "pr_number": row.pr_number,
        "label": row.label,
        "title": row.title,
    }


def _gateways(config: AppConfig) -> tuple[GitHubGateway, ...]:
    return tuple(GitHubGateway(repo.owner, repo.name) for repo in config.repos)
