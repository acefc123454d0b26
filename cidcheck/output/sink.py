"""Durable, append-only run output.

Each run creates its own timestamped files and never reuses an existing
one. Every handle has its own lock, so many workers can write safely.
Write failures are logged and counted; they never abort the run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles

from cidcheck.utils.exceptions import OutputError

if TYPE_CHECKING:  # pragma: no cover
    from cidcheck.core.messages import ProbeResult
    from cidcheck.models import OutputConfig
    from cidcheck.probe.dispatcher import BatchOutcome

logger = logging.getLogger(__name__)

FAILED_SUFFIX = "failed.cids"
PROGRESS_SUFFIX = "progress"
DEBUG_SUFFIX = "debug"


class _LogFile:
    """One append-only output handle guarded by its own lock."""

    def __init__(self, path: Path):
        self.path = path
        self.lock = asyncio.Lock()
        self.handle: Any = None
        self.lines = 0


class OutputSink:
    """Not-found, progress and (optional) debug logs for one run."""

    def __init__(self, config: OutputConfig, timestamp: int | None = None):
        """Prepare file names; nothing is created until :meth:`open`."""
        self.config = config
        self.timestamp = int(time.time()) if timestamp is None else timestamp
        self.output_dir = Path(config.output_dir)
        self.write_errors = 0
        self._files: dict[str, _LogFile] = {}

    def _stem_paths(self, attempt: int) -> dict[str, Path]:
        stamp = str(self.timestamp) if attempt == 0 else f"{self.timestamp}-{attempt}"
        suffixes = [FAILED_SUFFIX, PROGRESS_SUFFIX]
        if self.config.debug_log:
            suffixes.append(DEBUG_SUFFIX)
        return {
            suffix: self.output_dir / f"{self.config.file_prefix}.{suffix}.{stamp}"
            for suffix in suffixes
        }

    async def open(self) -> OutputSink:
        """Create this run's files exclusively."""
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Cannot create output directory {self.output_dir}: {e}"
            raise OutputError(msg) from e

        attempt = 0
        paths = self._stem_paths(attempt)
        while any(p.exists() for p in paths.values()):
            attempt += 1
            paths = self._stem_paths(attempt)

        for name, path in paths.items():
            log_file = _LogFile(path)
            try:
                log_file.handle = await aiofiles.open(path, "x", encoding="utf-8")
            except OSError as e:
                await self.close()
                msg = f"Cannot create output file {path}: {e}"
                raise OutputError(msg) from e
            self._files[name] = log_file
            logger.debug("Created %s", path)
        return self

    @property
    def failed_path(self) -> Path | None:
        return self._path(FAILED_SUFFIX)

    @property
    def progress_path(self) -> Path | None:
        return self._path(PROGRESS_SUFFIX)

    @property
    def debug_path(self) -> Path | None:
        return self._path(DEBUG_SUFFIX)

    def _path(self, name: str) -> Path | None:
        log_file = self._files.get(name)
        return log_file.path if log_file else None

    async def _append(self, name: str, line: str) -> None:
        log_file = self._files.get(name)
        if log_file is None or log_file.handle is None:
            return
        async with log_file.lock:
            try:
                await log_file.handle.write(line + "\n")
                await log_file.handle.flush()
                log_file.lines += 1
            except (OSError, ValueError) as e:
                self.write_errors += 1
                logger.warning("Write to %s failed: %s", log_file.path, e)

    async def record_result(self, result: ProbeResult) -> None:
        """Persist one result: not-found list, plus debug record if enabled."""
        if not result.found:
            await self._append(FAILED_SUFFIX, str(result.cid))
        if DEBUG_SUFFIX in self._files:
            await self._append(DEBUG_SUFFIX, json.dumps(result.to_dict()))

    async def record_start(self, offset: int) -> None:
        """Record the first input line this run covers."""
        await self._append(PROGRESS_SUFFIX, json.dumps({"run_start": offset}))

    async def record_batch(self, outcome: BatchOutcome) -> None:
        """Append the progress line for a finished batch."""
        batch = outcome.batch
        entry = {
            "batch": batch.index,
            "offset": batch.first_line,
            "end": batch.last_line,
            "count": len(batch),
            "sent": outcome.sent,
            "found": outcome.found,
            "error": outcome.error,
            "cids": [str(cid) for cid in batch.cids],
        }
        await self._append(PROGRESS_SUFFIX, json.dumps(entry))

    async def close(self) -> None:
        """Flush and close every handle."""
        for log_file in self._files.values():
            if log_file.handle is None:
                continue
            async with log_file.lock:
                try:
                    await log_file.handle.close()
                except OSError as e:
                    self.write_errors += 1
                    logger.warning("Closing %s failed: %s", log_file.path, e)
                log_file.handle = None

    async def __aenter__(self) -> OutputSink:
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def resume_offset(progress_file: str | Path) -> int:
    """First input line (1-indexed) not covered by completed batches.

    Batches finish out of order, so only the contiguous run of batches
    starting at the recorded run start counts. Logs without a run start
    record begin at the earliest batch. Rerunning with the returned offset
    covers exactly the rest of the input.
    """
    path = Path(progress_file)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        msg = f"Cannot read progress file {path}: {e}"
        raise OutputError(msg) from e

    starts: list[int] = []
    spans: list[tuple[int, int]] = []
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
            if "run_start" in entry:
                starts.append(int(entry["run_start"]))
                continue
            spans.append((int(entry["offset"]), int(entry["end"])))
        except (ValueError, KeyError, TypeError):
            logger.warning("Skipping malformed progress line %d in %s", number, path)

    spans.sort()
    if starts:
        next_line = min(starts)
    elif spans:
        next_line = spans[0][0]
    else:
        return 1

    for first, last in spans:
        if first > next_line:
            break
        next_line = max(next_line, last + 1)
    return next_line
