import pytest
from rich.console import Console

from event_import.console import ImportConsole, build_parser
from tests.fakes import EVENTS_CSV


@pytest.fixture
def app(controller, session_factory):
    return ImportConsole(
        controller=controller,
        console=Console(record=True, width=200),
        session_factory=session_factory,
    )


def test_parser_knows_every_command():
    parser = build_parser()
    args = parser.parse_args(["reset", "7", "geocode-batch", "--keep-retries"])
    assert (args.command, args.job_id, args.stage, args.keep_retries) == ("reset", 7, "geocode-batch", True)

    args = parser.parse_args(["infer-schema", "3", "--force"])
    assert (args.dataset_id, args.force, args.sample_size) == (3, True, None)

    with pytest.raises(SystemExit):
        parser.parse_args(["reset", "7", "somewhere"])


def test_start_runs_the_import_and_reports_progress(app, tmp_path):
    path = tmp_path / "events.csv"
    path.write_text(EVENTS_CSV, encoding="utf-8")

    app.start(path, "City events", source_key="city-feed", run=True)

    output = app.console.export_text()
    assert "queued job(s)" in output
    assert "completed" in output
    assert '"createdEvents": 4' in output


def test_resubmitted_file_is_reported_as_skipped(app, tmp_path):
    path = tmp_path / "events.csv"
    path.write_text(EVENTS_CSV, encoding="utf-8")
    app.start(path, "City events", source_key=None, run=True)
    app.console.export_text()

    app.start(path, "City events", source_key=None, run=True)

    assert "skipped" in app.console.export_text()


def test_recommendations_without_failures(app):
    app.recommendations()
    assert "No failed jobs" in app.console.export_text()


def test_infer_schema_reports_freshness(app, tmp_path):
    path = tmp_path / "events.csv"
    path.write_text(EVENTS_CSV, encoding="utf-8")
    app.start(path, "City events", source_key=None, run=True)
    app.console.export_text()

    # The version stored during the import predates its events
    app.infer_schema(1, sample_size=None, force=False)
    output = app.console.export_text()
    assert "Schema generated from 4 events" in output
    assert '"stale": false' in output

    app.infer_schema(1, sample_size=None, force=False)
    assert "Schema is up-to-date" in app.console.export_text()
