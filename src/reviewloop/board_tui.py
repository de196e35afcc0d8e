from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
from typing import Protocol

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from reviewloop import labels
from reviewloop.models import BotLabel
from reviewloop.observability import log_warning


LOGGER = logging.getLogger("reviewloop.board_tui")
_TITLE_MAX_CHARS = 72


class BoardSource(Protocol):
    @property
    def full_name(self) -> str: ...

    def list_open_pull_requests_with_label(self, label: str) -> list[int]: ...


@dataclass(frozen=True)
class BoardRow:
    repo_full_name: str
    pr_number: int
    label: BotLabel
    title: str


def load_board_rows(sources: Sequence[BoardSource]) -> tuple[BoardRow, ...]:
    """One row per (repo, PR, bot label); titles are fetched when the source supports it."""
    rows: list[BoardRow] = []
    for source in sources:
        for label in labels.BOT_LABELS:
            try:
                pr_numbers = source.list_open_pull_requests_with_label(label)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "board_listing_failed",
                    repo=source.full_name,
                    label=label,
                    error_type=type(exc).__name__,
                )
                continue
            for pr_number in pr_numbers:
                rows.append(
                    BoardRow(
                        repo_full_name=source.full_name,
                        pr_number=pr_number,
                        label=label,
                        title=_title_for(source, pr_number),
                    )
                )
    rows.sort(key=lambda row: (row.repo_full_name, row.pr_number))
    return tuple(rows)


def _title_for(source: BoardSource, pr_number: int) -> str:
    get_pull_request = getattr(source, "get_pull_request", None)
    if get_pull_request is None:
        return ""
    try:
        return str(get_pull_request(pr_number).title)
    except Exception as exc:  # noqa: BLE001
        log_warning(
            LOGGER,
            "board_title_failed",
            repo=source.full_name,
            pr_number=pr_number,
            error_type=type(exc).__name__,
        )
        return ""


class LabelBoardApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    #summary {
        height: 1;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        load_rows: Callable[[], tuple[BoardRow, ...]],
        refresh_seconds: int = 30,
    ) -> None:
        super().__init__()
        self._load_rows = load_rows
        self._refresh_seconds = refresh_seconds
        self._rows: tuple[BoardRow, ...] = ()

    @property
    def rows(self) -> tuple[BoardRow, ...]:
        return self._rows

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield DataTable(id="board-table")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#board-table", DataTable)
        table.cursor_type = "row"
        table.add_columns("Repo", "PR", "Label", "Title")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def refresh_data(self) -> None:
        self._rows = self._load_rows()
        table = self.query_one("#board-table", DataTable)
        table.clear()
        for row in self._rows:
            table.add_row(
                row.repo_full_name,
                f"#{row.pr_number}",
                row.label,
                _truncate(row.title, _TITLE_MAX_CHARS),
            )
        self.query_one("#summary", Static).update(render_summary(self._rows))


def render_summary(rows: Sequence[BoardRow]) -> str:
    counts = {label: 0 for label in labels.BOT_LABELS}
    for row in rows:
        counts[row.label] += 1
    return "  ".join(f"{label}={count}" for label, count in counts.items())


def run_board(*, load_rows: Callable[[], tuple[BoardRow, ...]], refresh_seconds: int) -> None:
    LabelBoardApp(load_rows=load_rows, refresh_seconds=refresh_seconds).run()


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[: limit - 3]}..."
