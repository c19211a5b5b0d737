"""meter_etl.shared

Run artifacts and CSV plumbing shared by the pipeline and the CLI.
Includes RejectWriter, header normalization, CSV opening with the header
contract, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from collections.abc import Iterator, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from meter_etl.config import DEFAULT_MAX_UPLOAD_BYTES
from meter_etl.validation import CsvFormatError, validate_headers

CSV_ENCODING = "utf-8-sig"
CSV_DECODE_ERRORS = "replace"


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, str | None], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# CSV input
# ---------------------------------------------------------------------------

def normalize_headers(raw: Mapping[str, Any]) -> dict[str, str | None]:
    """Return a new dict with header keys whitespace-stripped.

    Surplus cells that DictReader collects under the ``None`` key are
    dropped.
    """
    return {k.strip(): v for k, v in raw.items() if k is not None}


def allow_field_size(limit: int) -> None:
    """Raise the csv module's per-cell limit to at least ``limit`` characters.

    The default (131072) is far below the upload cap, so a single long cell
    would otherwise end the stream with csv.Error.
    """
    if limit > csv.field_size_limit():
        csv.field_size_limit(limit)


def open_csv_file(path: Path) -> IO[str]:
    """Open an import file for reading; undecodable bytes become U+FFFD."""
    return open(path, newline="", encoding=CSV_ENCODING, errors=CSV_DECODE_ERRORS)


def open_csv_rows(
    fh: IO[str],
    max_field_size: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> Iterator[dict[str, str | None]]:
    """Return a streaming row iterator over ``fh`` after checking its header.

    Raises CsvFormatError before any row is read if the header cannot be
    parsed or a required column is missing.
    """
    allow_field_size(max_field_size)
    reader = csv.DictReader(fh)
    try:
        fieldnames = reader.fieldnames
    except csv.Error as exc:
        raise CsvFormatError(f"unreadable header: {exc}") from exc
    validate_headers(fieldnames)
    return iter(reader)


def count_data_rows(path: Path, max_field_size: int = DEFAULT_MAX_UPLOAD_BYTES) -> int:
    """Count data rows (excluding the header) for progress reporting.

    A row the csv module cannot parse still counts; the pipeline skips it.
    Blank lines do not count, as with DictReader.
    """
    allow_field_size(max_field_size)
    count = 0
    with open_csv_file(path) as fh:
        reader = csv.reader(fh)
        try:
            next(reader)
        except (StopIteration, csv.Error):
            return 0
        while True:
            try:
                row = next(reader)
            except StopIteration:
                return count
            except csv.Error:
                row = None
            if row != []:
                count += 1


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    status: str,
    source_paths: dict[str, str],
    summary: dict[str, Any],
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "status": status,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "summary": summary,
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
