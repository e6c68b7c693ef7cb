"""Rich progress display for pipeline runs.

Two tiers:

* **Pipeline level** -- overall progress across all sources
* **Job level** -- one line per source showing its current stage
"""

from __future__ import annotations

from pathlib import PurePath

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from rvtmeta.models import PipelineResult, RunStatus, Stage


class PipelineProgressTracker:
    """Rich progress tracker for :class:`~rvtmeta.orchestrator.PipelineRunner`.

    Usage::

        tracker = PipelineProgressTracker(total_jobs=3)
        with tracker:
            tracker.job_started("tower.rvt")
            tracker.stage_changed("tower.rvt", Stage.UPLOAD)
            tracker.job_finished(result)
    """

    def __init__(self, total_jobs: int) -> None:
        self._total_jobs = total_jobs
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
        )
        self._pipeline_task: TaskID | None = None
        self._job_tasks: dict[str, TaskID] = {}
        self._stats: dict[str, int] = {status.value: 0 for status in RunStatus}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()
        self._pipeline_task = self._progress.add_task(
            "[green]Pipeline", total=self._total_jobs, status="starting..."
        )

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> PipelineProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Job events
    # ------------------------------------------------------------------

    def job_started(self, source: str) -> None:
        self._job_tasks[source] = self._progress.add_task(
            f"[blue]{_short_name(source)}", total=len(Stage), status="queued"
        )

    def stage_changed(self, source: str, stage: Stage) -> None:
        task = self._job_tasks.get(source)
        if task is not None:
            self._progress.update(
                task, completed=list(Stage).index(stage), status=stage.value
            )

    def job_finished(self, result: PipelineResult) -> None:
        self._stats[result.status.value] += 1
        task = self._job_tasks.get(result.source)
        if task is not None:
            if result.ok:
                self._progress.update(task, completed=len(Stage), status="[green]done[/green]")
            else:
                stage = result.failed_stage.value if result.failed_stage else "-"
                self._progress.update(
                    task, status=f"[red]{result.status.value}[/red] at {stage}"
                )
        if self._pipeline_task is not None:
            self._progress.advance(self._pipeline_task, 1)
            self._progress.update(
                self._pipeline_task,
                status=f"{self._stats['succeeded']} ok / {self._stats['failed']} failed",
            )

    @property
    def stats(self) -> dict[str, int]:
        """Copy of the per-outcome counters."""
        return dict(self._stats)


def _short_name(source: str, max_len: int = 40) -> str:
    name = PurePath(source).name
    if len(name) <= max_len:
        return name
    return "..." + name[-(max_len - 3) :]
