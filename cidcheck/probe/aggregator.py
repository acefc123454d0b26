"""Tally probe results and route them to output and export."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from cidcheck.core.messages import ProbeStatus

if TYPE_CHECKING:  # pragma: no cover
    from cidcheck.core.messages import ProbeResult
    from cidcheck.export.pipeline import ExportPipeline
    from cidcheck.output.sink import OutputSink
    from cidcheck.probe.dispatcher import BatchOutcome

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Counters describing one probe run."""

    total: int = 0
    found: int = 0
    not_found: int = 0
    unresponded: int = 0
    errors: int = 0
    conflicts: int = 0
    batches: int = 0
    duplicates: int = 0
    exports_ok: int = 0
    exports_failed: int = 0
    write_errors: int = 0
    elapsed: float = 0.0
    cancelled: bool = False

    @property
    def absent(self) -> int:
        return self.total - self.found

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["absent"] = self.absent
        return data


class ResultAggregator:
    """Accepts exactly one result per input line."""

    def __init__(
        self,
        sink: OutputSink | None = None,
        exporter: ExportPipeline | None = None,
    ):
        self.sink = sink
        self.exporter = exporter
        self.summary = RunSummary()
        self._lines: set[int] = set()

    def has_line(self, line: int) -> bool:
        return line in self._lines

    async def handle_result(self, result: ProbeResult) -> None:
        if result.line in self._lines:
            self.summary.duplicates += 1
            logger.error("Duplicate result for line %d (%s) ignored", result.line, result.cid)
            return
        self._lines.add(result.line)

        summary = self.summary
        summary.total += 1
        status = result.status
        if status is ProbeStatus.FOUND:
            summary.found += 1
        elif status is ProbeStatus.NOT_FOUND:
            summary.not_found += 1
        elif status is ProbeStatus.ERROR:
            summary.errors += 1
        else:
            summary.unresponded += 1

        if self.sink is not None:
            await self.sink.record_result(result)
        if self.exporter is not None and self.exporter.wants(result):
            await self.exporter.submit(result.cid)

    async def handle_batch(self, outcome: BatchOutcome) -> None:
        self.summary.batches += 1
        self.summary.conflicts += outcome.conflicts
        batch = outcome.batch
        logger.info(
            "Batch %d (lines %d-%d): %d/%d found in %.2fs%s",
            batch.index,
            batch.first_line,
            batch.last_line,
            outcome.found,
            len(batch),
            outcome.elapsed,
            " (timed out)" if outcome.timed_out else "",
        )
        # cancelled batches stay out of the progress log so a resumed run covers them
        if self.sink is not None and not outcome.cancelled:
            await self.sink.record_batch(outcome)
