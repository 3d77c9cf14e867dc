#!/usr/bin/env python3
"""
Admin console for the event import pipeline.

Runs imports locally with the inline task queue and exposes the operator
tools: schema approval, retries, manual resets and progress reports.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from event_import.core.config import settings
from event_import.core.exceptions import EventImportError
from event_import.core.logging_config import configure_logging
from event_import.db.models import Catalog, Dataset, ImportFile
from event_import.db.session import get_engine, get_session_local, init_db
from event_import.domain.imports.fingerprinting import calculate_file_hash
from event_import.domain.imports.orchestrator import RunOutcome, StagePipelineController, StageRunResult
from event_import.domain.imports.recovery import ErrorRecoveryService, RetryConfig
from event_import.domain.imports.stages import ProcessingStage
from event_import.domain.schemas.freshness import get_schema_freshness
from event_import.domain.schemas.inference import infer_schema_from_events
from event_import.domain.schemas.versioning import get_latest_schema

OUTCOME_STYLES = {
    RunOutcome.ADVANCED: "green",
    RunOutcome.WAITING: "yellow",
    RunOutcome.FAILED: "red",
    RunOutcome.NOOP: "dim",
}


class ImportConsole:
    """Thin presentation layer over the pipeline controller."""

    def __init__(
        self,
        controller: Optional[StagePipelineController] = None,
        console: Optional[Console] = None,
        session_factory=None,
    ):
        self.console = console or Console()
        self.session_factory = session_factory or get_session_local()
        self.controller = controller or StagePipelineController(self.session_factory, settings=settings)

    def print_runs(self, results: List[StageRunResult]) -> None:
        if not results:
            self.console.print("[dim]Nothing to run.[/dim]")
            return
        table = Table(title="Stage runs")
        table.add_column("Job", style="cyan", no_wrap=True)
        table.add_column("From")
        table.add_column("To")
        table.add_column("Outcome")
        table.add_column("Error", style="red")
        for result in results:
            style = OUTCOME_STYLES[result.outcome]
            table.add_row(
                str(result.job_id),
                result.from_stage.value,
                result.stage.value,
                f"[{style}]{result.outcome.value}[/{style}]",
                result.error or "",
            )
        self.console.print(table)

    def register_file(self, path: Path, catalog_name: str, source_key: Optional[str]) -> int:
        content = path.read_bytes()
        with self.session_factory() as session:
            catalog = session.query(Catalog).filter(Catalog.name == catalog_name).first()
            if catalog is None:
                catalog = Catalog(name=catalog_name)
                session.add(catalog)
                session.flush()
            import_file = ImportFile(
                catalog_id=catalog.id,
                file_name=path.name,
                content=content,
                content_hash=calculate_file_hash(content),
                source_key=source_key,
            )
            session.add(import_file)
            session.commit()
            return import_file.id

    def start(self, path: Path, catalog_name: str, source_key: Optional[str], run: bool) -> None:
        import_file_id = self.register_file(path, catalog_name, source_key)
        job_ids = self.controller.start_import(import_file_id)
        if not job_ids:
            with self.session_factory() as session:
                import_file = session.get(ImportFile, import_file_id)
                self.console.print(
                    f"[yellow]Import file {import_file_id} skipped:[/yellow] {import_file.skip_reason or import_file.status}"
                )
            return
        self.console.print(f"[green]Import file {import_file_id}[/green] queued job(s) {job_ids}")
        if run:
            self.print_runs(self.controller.drain())
            self.progress(import_file_id)

    def run(self, job_id: int) -> None:
        result = self.controller.run_until_settled(job_id)
        self.print_runs([result])

    def approve(self, job_id: int, approved_by: str) -> None:
        self.controller.approve_schema(job_id, approved_by)
        self.console.print(f"[green]Schema of job {job_id} approved by {approved_by}[/green]")
        self.print_runs(self.controller.drain())

    def retry(self, job_id: int) -> None:
        result = self.controller.recover_failed_job(job_id)
        style = "green" if result.success else "red"
        self.console.print(Panel(json.dumps(result.to_json(), indent=2), title=f"Retry job {job_id}", border_style=style))

    def reset(self, job_id: int, stage: str, clear_retries: bool) -> None:
        result = self.controller.reset_job_to_stage(job_id, stage, clear_retries=clear_retries)
        style = "green" if result.success else "red"
        self.console.print(Panel(json.dumps(result.to_json(), indent=2), title=f"Reset job {job_id}", border_style=style))

    def recommendations(self) -> None:
        with self.session_factory() as session:
            service = ErrorRecoveryService(session, RetryConfig.from_settings(settings))
            entries = service.get_recovery_recommendations()
        if not entries:
            self.console.print("[green]No failed jobs.[/green]")
            return
        table = Table(title="Recovery recommendations")
        table.add_column("Job", style="cyan", no_wrap=True)
        table.add_column("Failed in")
        table.add_column("Error")
        table.add_column("Class")
        table.add_column("Retries", justify="right")
        table.add_column("Recommendation")
        for entry in entries:
            table.add_row(
                str(entry["jobId"]),
                entry["failedStage"] or "",
                entry["lastError"] or "",
                entry["classification"]["type"],
                str(entry["retryCount"]),
                entry["recommendedAction"],
            )
        self.console.print(table)

    def process_retries(self, run: bool) -> None:
        job_ids = self.controller.process_pending_retries()
        self.console.print(f"Queued {len(job_ids)} retr{'y' if len(job_ids) == 1 else 'ies'}: {job_ids}")
        if run and job_ids:
            self.print_runs(self.controller.drain())

    def progress(self, import_file_id: int) -> None:
        report = self.controller.progress(import_file_id)
        self.console.print(Panel(
            json.dumps(report.to_json(), indent=2),
            title=f"Import {import_file_id}: {report.status} ({report.progress.percentage}%)",
            border_style="blue",
        ))

    def infer_schema(self, dataset_id: int, sample_size: Optional[int], force: bool) -> None:
        with self.session_factory() as session:
            result = infer_schema_from_events(session, dataset_id, sample_size=sample_size, force_regenerate=force)
            dataset = session.get(Dataset, dataset_id)
            freshness = get_schema_freshness(session, dataset, get_latest_schema(session, dataset_id))
            payload = {**result.to_json(), "freshness": freshness.to_json()}
        style = "green" if result.generated else "blue"
        self.console.print(Panel(json.dumps(payload, indent=2), title=f"Dataset {dataset_id} schema", border_style=style))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="event-import",
        description="Event import pipeline - admin console",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s init-db
  %(prog)s start events.csv --catalog "City events"
  %(prog)s approve 12 --by alice
  %(prog)s reset 12 geocode-batch
        """,
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create missing tables")

    start = subparsers.add_parser("start", help="Register a local CSV/Excel file and import it")
    start.add_argument("path", type=Path)
    start.add_argument("--catalog", default="Default", help="Catalog name (created when missing)")
    start.add_argument("--source-key", default=None, help="Identifier of a recurring source")
    start.add_argument("--no-run", action="store_true", help="Only create and queue the jobs")

    run = subparsers.add_parser("run", help="Run a job until it completes, fails or waits")
    run.add_argument("job_id", type=int)

    approve = subparsers.add_parser("approve", help="Approve a pending schema change")
    approve.add_argument("job_id", type=int)
    approve.add_argument("--by", dest="approved_by", required=True)

    retry = subparsers.add_parser("retry", help="Schedule a retry of a failed job")
    retry.add_argument("job_id", type=int)

    reset = subparsers.add_parser("reset", help="Move a job to a stage unconditionally")
    reset.add_argument("job_id", type=int)
    reset.add_argument("stage", choices=[stage.value for stage in ProcessingStage])
    reset.add_argument("--keep-retries", action="store_true", help="Keep the retry counter")

    subparsers.add_parser("recommendations", help="List failed jobs with recovery advice")

    retries = subparsers.add_parser("process-retries", help="Queue jobs whose retry time has come")
    retries.add_argument("--run", action="store_true", help="Run the queued jobs right away")

    progress = subparsers.add_parser("progress", help="Show the progress of an import file")
    progress.add_argument("import_file_id", type=int)

    infer = subparsers.add_parser("infer-schema", help="Infer a dataset schema from its stored events")
    infer.add_argument("dataset_id", type=int)
    infer.add_argument("--sample-size", type=int, default=None)
    infer.add_argument("--force", action="store_true", help="Regenerate even when the schema is fresh")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "init-db":
        init_db(get_engine())
        Console().print("[green]Database ready.[/green]")
        return 0

    app = ImportConsole()
    try:
        if args.command == "start":
            app.start(args.path, args.catalog, args.source_key, run=not args.no_run)
        elif args.command == "run":
            app.run(args.job_id)
        elif args.command == "approve":
            app.approve(args.job_id, args.approved_by)
        elif args.command == "retry":
            app.retry(args.job_id)
        elif args.command == "reset":
            app.reset(args.job_id, args.stage, clear_retries=not args.keep_retries)
        elif args.command == "recommendations":
            app.recommendations()
        elif args.command == "process-retries":
            app.process_retries(args.run)
        elif args.command == "progress":
            app.progress(args.import_file_id)
        elif args.command == "infer-schema":
            app.infer_schema(args.dataset_id, args.sample_size, args.force)
    except EventImportError as exc:
        app.console.print(f"[red]Error:[/red] {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
