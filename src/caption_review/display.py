"""Terminal renderables for review sessions and ingestion jobs."""

from typing import Iterable

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import (
    IngestionJob,
    IngestionStage,
    JobStatus,
    QueueSnapshot,
    QueueStatus,
    RemoteVoteRecord,
    VoteState,
)

VOTE_STYLES = {
    VoteState.UPVOTED: ("👍 liked", "green"),
    VoteState.DOWNVOTED: ("👎 disliked", "red"),
    VoteState.UNVOTED: ("not voted", "dim"),
}

KEY_HELP = "[u] upvote  [d] downvote  [s] skip  [b] back  [q] quit"


def render_card(snapshot: QueueSnapshot) -> Panel:
    """Current card with its vote, progress and available keys."""
    if snapshot.status is QueueStatus.EMPTY:
        return Panel(
            Text("No captions yet. Upload an image to get started.", justify="center"),
            title="Nothing to review",
            border_style="yellow",
        )
    if snapshot.card is None:
        return render_summary(snapshot)

    card = snapshot.card
    label, style = VOTE_STYLES[snapshot.vote]

    body = Table(show_header=False, expand=True, box=None)
    body.add_column("Field", style="dim", width=8)
    body.add_column("Value")
    body.add_row("Image", Text(card.image_url, style="cyan"))
    body.add_row("Caption", Text(card.content, style="bold"))
    body.add_row("Vote", Text(label, style=style))

    keys = KEY_HELP if snapshot.can_go_back else KEY_HELP.replace("  [b] back", "")
    return Panel(
        body,
        title=f"{snapshot.position + 1} / {snapshot.total}",
        subtitle=keys,
        border_style=style if snapshot.vote is not VoteState.UNVOTED else "bright_blue",
    )


def render_summary(snapshot: QueueSnapshot) -> Panel:
    """Tally shown once the queue is done."""
    table = Table(show_header=False, expand=True)
    table.add_column("Metric")
    table.add_column("Value", style="cyan")
    table.add_row("Reviewed", f"{min(snapshot.position, snapshot.total)} / {snapshot.total}")
    table.add_row(Text("Liked", style="green"), str(snapshot.upvoted))
    table.add_row(Text("Disliked", style="red"), str(snapshot.downvoted))

    title = "🎉 All done!" if snapshot.status is QueueStatus.COMPLETED else "Review summary"
    return Panel(table, title=title, border_style="green")


def render_job(job: IngestionJob) -> Panel:
    """Stage progress and outcome of an ingestion job."""
    stages = Table(expand=True)
    stages.add_column("#", style="yellow", width=3)
    stages.add_column("Stage")
    stages.add_column("Status")

    for stage in IngestionStage:
        stages.add_row(str(stage.value), stage.label.capitalize(), _stage_status(job, stage))

    if job.status is JobStatus.COMPLETED:
        captions = Table(title=f"Generated {len(job.generated_captions)} captions", expand=True)
        captions.add_column("Caption")
        for caption in job.generated_captions:
            captions.add_row(caption.content)
        return Panel(
            _stack(stages, captions),
            title=f"✅ {job.file.name}",
            border_style="green",
        )

    border = "red" if job.status is JobStatus.FAILED else "yellow"
    return Panel(stages, title=job.file.name, border_style=border)


def render_votes(records: Iterable[RemoteVoteRecord]) -> Table:
    table = Table(expand=True)
    table.add_column("Caption")
    table.add_column("Vote")
    table.add_column("Modified", style="dim")
    for record in records:
        label, style = VOTE_STYLES[VoteState.from_value(record.vote_value)]
        modified = record.modified_at.strftime("%Y-%m-%d %H:%M:%S") if record.modified_at else ""
        table.add_row(record.caption_id, Text(label, style=style), modified)
    return table


def _stage_status(job: IngestionJob, stage: IngestionStage) -> Text:
    if job.failure is not None and job.failure.stage is stage:
        return Text(f"failed: {job.failure.reason}", style="red")
    if job.current_stage is None or stage.value > job.current_stage.value:
        return Text("skipped" if job.is_finished else "waiting", style="dim")
    if stage is job.current_stage and not job.is_finished:
        return Text("running", style="yellow")
    if stage is job.current_stage and job.status is JobStatus.CANCELLED:
        return Text("cancelled", style="yellow")
    return Text("done", style="green")


def _stack(*renderables) -> Table:
    grid = Table.grid(expand=True)
    grid.add_column()
    for renderable in renderables:
        grid.add_row(renderable)
    return grid
