"""meter_etl.cli

CLI entrypoint for bulk meter CSV imports.

Modes (--mode):
  UpdateAndAdd    update existing matches, add missing records (default)
  AddOnly         add missing records, leave existing ones untouched
  DropAndReplace  empty the four tables first, then import

Usage:
    python -m meter_etl.cli \\
        --db-dsn "$METER_ETL_DB_DSN" \\
        --csv-path "data/meters.csv" \\
        --mode UpdateAndAdd \\
        --config config/meter_import.yml

Exit codes: 0 success (skipped rows are warnings), 1 failure, 130 cancelled.
"""

from __future__ import annotations

import csv
import json
import logging
import signal
import sys
import uuid
from contextlib import nullcontext
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from meter_etl.cancel import CancelToken, ImportCancelled
from meter_etl.config import ImportSettings, SettingsValidationError, load_settings
from meter_etl.events import (
    FanOutSink,
    ImportEventSink,
    LoggingEventSink,
    WebhookProgressSink,
)
from meter_etl.models import ImportMode
from meter_etl.pipeline import ImportFailed, ImportPipeline
from meter_etl.shared import (
    RejectWriter,
    count_data_rows,
    open_csv_file,
    open_csv_rows,
    write_run_report,
)
from meter_etl.store import PostgresRecordStore
from meter_etl.validation import CsvFormatError

EXIT_FAILURE = 1
EXIT_CANCELLED = 130


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_upload(csv_path: Path, settings: ImportSettings, run_id: str) -> None:
    """Enforce extension, size and non-empty constraints on the input file."""
    if csv_path.suffix.lower() not in settings.allowed_extensions:
        click.echo(
            f"[{run_id}] FATAL: {csv_path.name} is not an allowed file type "
            f"({', '.join(settings.allowed_extensions)})",
            err=True,
        )
        sys.exit(EXIT_FAILURE)
    if not csv_path.is_file():
        click.echo(f"[{run_id}] FATAL: {csv_path} does not exist", err=True)
        sys.exit(EXIT_FAILURE)
    size = csv_path.stat().st_size
    if size == 0:
        click.echo(f"[{run_id}] FATAL: {csv_path} is empty", err=True)
        sys.exit(EXIT_FAILURE)
    if size > settings.max_upload_bytes:
        click.echo(
            f"[{run_id}] FATAL: {csv_path} is {size} bytes; "
            f"limit is {settings.max_upload_bytes}",
            err=True,
        )
        sys.exit(EXIT_FAILURE)


def _build_sink(settings: ImportSettings) -> ImportEventSink:
    sink = LoggingEventSink()
    if settings.progress_url:
        return FanOutSink(
            sink,
            WebhookProgressSink(settings.progress_url, settings.progress_timeout_seconds),
        )
    return sink


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------

@click.command()
@click.option("--db-dsn", required=True, envvar="METER_ETL_DB_DSN", help="PostgreSQL DSN")
@click.option("--csv-path", required=True, type=click.Path(), help="Input CSV")
@click.option(
    "--mode",
    default=None,
    type=click.Choice([m.value for m in ImportMode], case_sensitive=False),
    help="Import mode (default: from config, else UpdateAndAdd)",
)
@click.option("--batch-size", default=None, type=int, help="Rows per flush (default 500)")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True), help="YAML settings file")
@click.option("--rejects-path", default=None, type=click.Path(), help="CSV file for skipped rows")
@click.option("--progress-url", default=None, help="Webhook receiving progress percentages")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--dry-run", is_flag=True, default=False, help="Roll back everything at the end")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
def main(
    db_dsn: str,
    csv_path: str,
    mode: str | None,
    batch_size: int | None,
    config_path: str | None,
    rejects_path: str | None,
    progress_url: str | None,
    run_id: str | None,
    dry_run: bool,
    log_level: str | None,
) -> None:
    """Import a meter CSV into the address/meter/endpoint/GIS tables."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    try:
        settings = load_settings(Path(config_path) if config_path else None)
        settings = settings.with_overrides(
            mode=mode,
            batch_size=batch_size,
            rejects_path=rejects_path,
            progress_url=progress_url,
            log_level=log_level,
        )
    except SettingsValidationError as exc:
        click.echo(f"[{run_id}] FATAL: invalid settings: {exc}", err=True)
        sys.exit(EXIT_FAILURE)

    logging.basicConfig(
        level=settings.log_level_number,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    csv_file = Path(csv_path)
    _validate_upload(csv_file, settings, run_id)

    click.echo(
        f"[{run_id}] Starting {settings.mode.value} run "
        f"(batch_size={settings.batch_size}, dry_run={dry_run})"
    )

    cancel = CancelToken()
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel())
    rejects = RejectWriter(settings.rejects_path)
    status = "failed"
    pipeline: ImportPipeline | None = None
    exit_code = 0

    try:
        expected_rows = count_data_rows(csv_file, settings.max_upload_bytes)
        with psycopg.connect(db_dsn, autocommit=True) as conn:
            store = PostgresRecordStore(conn)
            pipeline = ImportPipeline(
                store,
                mode=settings.mode,
                batch_size=settings.batch_size,
                sink=_build_sink(settings),
                cancel=cancel,
                rejects=rejects,
                expected_rows=expected_rows,
            )
            with open_csv_file(csv_file) as fh:
                rows = open_csv_rows(fh, settings.max_upload_bytes)
                with store.dry_run() if dry_run else nullcontext():
                    pipeline.run(rows)
        status = "succeeded"
        if dry_run:
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
    except (CsvFormatError, csv.Error) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        exit_code = EXIT_FAILURE
    except ImportCancelled:
        status = "cancelled"
        click.echo(f"[{run_id}] Import cancelled; earlier batches remain committed.", err=True)
        exit_code = EXIT_CANCELLED
    except ImportFailed as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        exit_code = EXIT_FAILURE
    except psycopg.OperationalError as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
        exit_code = EXIT_FAILURE
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        rejects.close()

    summary = pipeline.summary.to_dict() if pipeline is not None else {}
    if summary:
        click.echo(json.dumps(summary, indent=2))
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} skipped rows written to {rejects.path}")

    report_path = write_run_report(
        run_id, started_at, settings.mode.value, dry_run, status,
        {"csv_path": str(csv_file)},
        summary,
        reports_dir=settings.reports_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
