from __future__ import annotations

from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from prlander.observability_queries import (
    OverviewStats,
    QueueRow,
    ReviewRow,
    load_overview,
    load_project_ids,
    load_queue_rows,
    load_review_rows,
)


_ERROR_MAX_CHARS = 48


class ObservabilityApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("f", "cycle_project_filter", "Project Filter"),
        Binding("t", "toggle_terminal", "Show Terminal"),
        Binding("tab", "cycle_focus", "Focus"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        db_path: Path,
        refresh_seconds: int = 2,
        row_limit: int | None = 200,
    ) -> None:
        super().__init__()
        self._db_path = db_path
        self._refresh_seconds = refresh_seconds
        self._row_limit = row_limit
        self._project_filter: str | None = None
        self._available_projects: tuple[str, ...] = ()
        self._include_terminal = False
        self._queue_rows: tuple[QueueRow, ...] = ()
        self._review_rows: tuple[ReviewRow, ...] = ()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Merge Queue", classes="panel-title")
            yield DataTable(id="queue-table")
            yield Static("Review Cycles", classes="panel-title")
            yield DataTable(id="review-table")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#queue-table", DataTable).add_columns(
            "Pos", "Project", "Task", "PR", "Branch", "Status", "Rebases", "Last Error", "Updated"
        )
        self.query_one("#review-table", DataTable).add_columns(
            "Project", "Task", "Title", "Column", "PR", "Cycles", "Retries", "Updated"
        )
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_project_filter(self) -> None:
        self._project_filter = _next_project_filter(
            self._project_filter, self._available_projects
        )
        self.refresh_data()

    def action_toggle_terminal(self) -> None:
        self._include_terminal = not self._include_terminal
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def refresh_data(self) -> None:
        overview = load_overview(self._db_path, self._project_filter)
        self._available_projects = load_project_ids(self._db_path)
        self._queue_rows = load_queue_rows(
            self._db_path,
            self._project_filter,
            include_terminal=self._include_terminal,
            limit=self._row_limit,
        )
        self._review_rows = load_review_rows(
            self._db_path,
            self._project_filter,
            limit=self._row_limit,
        )
        self.query_one("#summary", Static).update(
            _summary_text(
                overview=overview,
                project_filter=self._project_filter,
                include_terminal=self._include_terminal,
            )
        )
        _fill_queue_table(self.query_one("#queue-table", DataTable), self._queue_rows)
        _fill_review_table(self.query_one("#review-table", DataTable), self._review_rows)


def run_observability_tui(*, db_path: Path, refresh_seconds: int, row_limit: int | None) -> None:
    app = ObservabilityApp(
        db_path=db_path,
        refresh_seconds=refresh_seconds,
        row_limit=row_limit,
    )
    app.run()


def _fill_queue_table(table: DataTable, rows: tuple[QueueRow, ...]) -> None:
    table.clear(columns=False)
    if not rows:
        table.add_row("-", "-", "-", "-", "-", "-", "-", "Merge queue is empty", "-")
        return
    for row in rows:
        table.add_row(
            str(row.position),
            row.project_id,
            row.task_id,
            f"#{row.pr_number}",
            row.pr_branch,
            row.status,
            str(row.rebase_attempts),
            _render_snippet(row.last_error, max_chars=_ERROR_MAX_CHARS),
            row.updated_at,
        )


def _fill_review_table(table: DataTable, rows: tuple[ReviewRow, ...]) -> None:
    table.clear(columns=False)
    if not rows:
        table.add_row("-", "-", "No open pull requests", "-", "-", "-", "-", "-")
        return
    for row in rows:
        table.add_row(
            row.project_id,
            row.task_id,
            row.title,
            row.column,
            f"#{row.pr_number}" if row.pr_number is not None else "-",
            str(row.pipeline_attempt),
            str(row.retry_count),
            row.updated_at,
        )


def _summary_text(
    *, overview: OverviewStats, project_filter: str | None, include_terminal: bool
) -> str:
    return (
        " | ".join(
            [
                f"project={project_filter or 'all'}",
                f"queued={overview.queued}",
                f"active={overview.active}",
                f"conflicts={overview.conflicts}",
                f"failed={overview.failed}",
                f"merged={overview.merged}",
                f"in_review={overview.in_review}",
                f"review_cycles={overview.review_cycles}",
                f"terminal={'shown' if include_terminal else 'hidden'}",
            ]
        )
        + "\nKeys: r refresh | f project filter | t terminal entries | tab focus | q quit"
    )


def _next_project_filter(current: str | None, available: tuple[str, ...]) -> str | None:
    options: tuple[str | None, ...] = (None, *available)
    if current not in options:
        return options[0]
    idx = options.index(current)
    return options[(idx + 1) % len(options)]


def _render_snippet(value: str | None, *, max_chars: int) -> str:
    if value is None or not value.strip():
        return "-"
    text = " ".join(value.split())
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."
