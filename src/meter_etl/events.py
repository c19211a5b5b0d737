"""meter_etl.events

Progress/log sink injected into the import pipeline.

The pipeline reports what happens through an ImportEventSink instead of
logging directly, so callers choose where events go:

  LoggingEventSink     meter_etl.events logger (WARNING for skips and
                       cancellation, INFO otherwise)
  RecordingEventSink   keeps every event in lists (tests, dry runs)
  WebhookProgressSink  POSTs progress percentages to an HTTP endpoint
  FanOutSink           forwards each event to several sinks
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

import requests

if TYPE_CHECKING:
    from meter_etl.pipeline import ImportSummary
    from meter_etl.writer import FlushResult

log = logging.getLogger(__name__)


class ImportEventSink(Protocol):
    def row_skipped(
        self,
        row_number: int,
        reason: str,
        row: Mapping[str, str | None],
        detail: str = "",
    ) -> None: ...

    def batch_flushed(self, result: FlushResult) -> None: ...

    def progress(self, percentage: int, message: str) -> None: ...

    def import_finished(self, summary: ImportSummary) -> None: ...

    def import_cancelled(self, summary: ImportSummary) -> None: ...


# ---------------------------------------------------------------------------
# Logging sink
# ---------------------------------------------------------------------------

class LoggingEventSink:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or log

    def row_skipped(
        self,
        row_number: int,
        reason: str,
        row: Mapping[str, str | None],
        detail: str = "",
    ) -> None:
        self._log.warning(
            "Skipping row %d (%s)%s", row_number, reason, f": {detail}" if detail else ""
        )

    def batch_flushed(self, result: FlushResult) -> None:
        counts = ", ".join(
            f"{kind}={n}" for kind, n in result.to_dict()["inserted"].items()
        )
        self._log.info(
            "Flush committed via %s strategy: inserted [%s], updated %d, adopted %d, failures %d",
            result.strategy, counts, result.total_updated, result.total_adopted,
            len(result.failures),
        )

    def progress(self, percentage: int, message: str) -> None:
        self._log.info("%d%% %s", percentage, message)

    def import_finished(self, summary: ImportSummary) -> None:
        self._log.info(
            "Import completed. Total records: %d, Processed: %d, Added: %d, "
            "Updated: %d, Skipped: %d",
            summary.total_rows, summary.processed_rows, summary.added,
            summary.updated, summary.skipped,
        )

    def import_cancelled(self, summary: ImportSummary) -> None:
        self._log.warning(
            "CSV import was cancelled after %d processed rows; %d staged entities discarded",
            summary.processed_rows, summary.discarded_entities,
        )


# ---------------------------------------------------------------------------
# Recording sink
# ---------------------------------------------------------------------------

@dataclass
class SkippedRow:
    row_number: int
    reason: str
    row: dict[str, str | None]
    detail: str = ""


@dataclass
class RecordingEventSink:
    skipped: list[SkippedRow] = field(default_factory=list)
    flushes: list[Any] = field(default_factory=list)
    progress_events: list[tuple[int, str]] = field(default_factory=list)
    finished: list[Any] = field(default_factory=list)
    cancelled: list[Any] = field(default_factory=list)

    def row_skipped(
        self,
        row_number: int,
        reason: str,
        row: Mapping[str, str | None],
        detail: str = "",
    ) -> None:
        self.skipped.append(SkippedRow(row_number, reason, dict(row), detail))

    def batch_flushed(self, result: FlushResult) -> None:
        self.flushes.append(result)

    def progress(self, percentage: int, message: str) -> None:
        self.progress_events.append((percentage, message))

    def import_finished(self, summary: ImportSummary) -> None:
        self.finished.append(summary)

    def import_cancelled(self, summary: ImportSummary) -> None:
        self.cancelled.append(summary)


# ---------------------------------------------------------------------------
# Webhook progress sink
# ---------------------------------------------------------------------------

class WebhookProgressSink:
    """Push-progress channel: POSTs {message, percentage, timestamp} as JSON.

    Only progress, completion and cancellation are pushed.  Network errors
    are logged and never fail the import.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def _post(self, percentage: int, message: str) -> None:
        payload = {
            "message": message,
            "percentage": percentage,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            resp = self._session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            log.warning("Progress webhook %s failed: %s", self.url, exc)

    def row_skipped(
        self,
        row_number: int,
        reason: str,
        row: Mapping[str, str | None],
        detail: str = "",
    ) -> None:
        pass

    def batch_flushed(self, result: FlushResult) -> None:
        pass

    def progress(self, percentage: int, message: str) -> None:
        self._post(percentage, message)

    def import_finished(self, summary: ImportSummary) -> None:
        self._post(100, f"Import completed: {summary.added} added, "
                        f"{summary.updated} updated, {summary.skipped} skipped")

    def import_cancelled(self, summary: ImportSummary) -> None:
        self._post(summary.percentage, "Import cancelled")


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

class FanOutSink:
    def __init__(self, *sinks: ImportEventSink) -> None:
        self.sinks = list(sinks)

    def row_skipped(
        self,
        row_number: int,
        reason: str,
        row: Mapping[str, str | None],
        detail: str = "",
    ) -> None:
        for sink in self.sinks:
            sink.row_skipped(row_number, reason, row, detail)

    def batch_flushed(self, result: FlushResult) -> None:
        for sink in self.sinks:
            sink.batch_flushed(result)

    def progress(self, percentage: int, message: str) -> None:
        for sink in self.sinks:
            sink.progress(percentage, message)

    def import_finished(self, summary: ImportSummary) -> None:
        for sink in self.sinks:
            sink.import_finished(summary)

    def import_cancelled(self, summary: ImportSummary) -> None:
        for sink in self.sinks:
            sink.import_cancelled(summary)
