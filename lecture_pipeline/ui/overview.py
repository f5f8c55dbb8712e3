"""A Rich-powered console overview of drafts and their pipeline progress."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ..pipeline import LectureOverview, LecturePipeline
from ..services.lifecycle import LectureStage
from ..services.work_queue import STATUSES


STAGE_LABELS: Dict[LectureStage, str] = {
    LectureStage.PENDING_REVIEW: "📝 Pending review",
    LectureStage.APPROVED: "✅ Approved",
    LectureStage.SUMMARIZED: "📄 Summarized",
    LectureStage.QUIZ_READY: "🧩 Quiz ready",
}

STAGE_STYLES: Dict[LectureStage, str] = {
    LectureStage.PENDING_REVIEW: "yellow",
    LectureStage.APPROVED: "cyan",
    LectureStage.SUMMARIZED: "blue",
    LectureStage.QUIZ_READY: "green",
}


@dataclass
class OverviewSnapshot:
    lectures: List[LectureOverview]
    course_count: int
    stage_totals: Dict[LectureStage, int]
    work_totals: Dict[str, int]


def collect_overview(pipeline: LecturePipeline, *, course_id: Optional[str] = None) -> OverviewSnapshot:
    """Aggregate pipeline state into a convenient snapshot for UIs."""

    lectures = pipeline.overview(course_id=course_id)
    stage_totals = {stage: 0 for stage in LectureStage}
    for entry in lectures:
        stage_totals[entry.stage] += 1
    work_totals = {status: 0 for status in STATUSES}
    for item in pipeline.queue.list_items():
        work_totals[item.status] = work_totals.get(item.status, 0) + 1
    return OverviewSnapshot(
        lectures=lectures,
        course_count=len({entry.draft.course_id for entry in lectures}),
        stage_totals=stage_totals,
        work_totals=work_totals,
    )


class OverviewUI:
    """Render the pipeline overview using Rich widgets."""

    def __init__(self, pipeline: LecturePipeline, *, console: Optional[Console] = None) -> None:
        self._pipeline = pipeline
        self._console = console or Console()

    def run(self, *, course_id: Optional[str] = None) -> None:
        snapshot = collect_overview(self._pipeline, course_id=course_id)
        console = self._console

        console.rule("[bold magenta]Lecture Pipeline Overview")
        if not snapshot.lectures:
            console.print(
                Panel(
                    "No drafts have been ingested yet.\n"
                    "Use [bold]python run.py ingest[/bold] to add your first lecture.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        console.print(self._build_table(snapshot.lectures))
        console.print(Columns([self._build_stats_panel(snapshot)], expand=True))

    @staticmethod
    def _build_table(lectures: Iterable[LectureOverview]) -> Table:
        table = Table(box=box.SIMPLE_HEAVY, expand=True, header_style="bold cyan")
        table.add_column("Course")
        table.add_column("Lecture")
        table.add_column("Title")
        table.add_column("Stage")
        table.add_column("Difficulty")
        table.add_column("Duration")
        table.add_column("Questions", justify="right")
        table.add_column("Quizzes", justify="right")
        table.add_column("ID", style="dim")

        for entry in lectures:
            draft = entry.draft
            table.add_row(
                draft.course_id,
                draft.lecture_id,
                draft.title or Text("untitled", style="dim"),
                Text(STAGE_LABELS[entry.stage], style=STAGE_STYLES[entry.stage]),
                draft.difficulty,
                draft.duration,
                str(entry.question_count),
                str(entry.quiz_count),
                draft.id,
            )
        return table

    @staticmethod
    def _build_stats_panel(snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Courses", str(snapshot.course_count))
        metrics.add_row("Lectures", str(len(snapshot.lectures)))
        for stage, label in STAGE_LABELS.items():
            metrics.add_row(label, str(snapshot.stage_totals.get(stage, 0)))

        work = Table.grid(expand=True, padding=(0, 1))
        work.add_column(style="dim")
        work.add_column(justify="right", style="bold")
        for status, count in snapshot.work_totals.items():
            work.add_row(f"Work items {status}", str(count))

        body = Group(metrics, Rule(style="magenta"), work)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = ["OverviewSnapshot", "OverviewUI", "STAGE_LABELS", "collect_overview"]
