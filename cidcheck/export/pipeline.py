"""Archival export of selected CIDs.

A separate, bounded worker pool runs beside the probe pool. Submitting
waits for a free slot, so a slow exporter slows probing instead of
queueing work in memory. By default each selected CID is exported with
``ipfs dag export <cid>`` and the archive is written to
``<output_dir>/<cid>.car``.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

import aiofiles

from cidcheck.core.messages import ProbeStatus
from cidcheck.models import ExportSelection
from cidcheck.utils.exceptions import ExportError, ProbeCancelledError
from cidcheck.utils.tasks import BackgroundTaskGroup, await_or_cancel

if TYPE_CHECKING:  # pragma: no cover
    from cidcheck.core.content_id import ContentID
    from cidcheck.core.messages import ProbeResult
    from cidcheck.models import ExportConfig

logger = logging.getLogger(__name__)

Exporter = Callable[["ContentID"], Awaitable[bytes]]


async def run_export_command(
    command: Sequence[str],
    timeout: float,
    cid: ContentID,
) -> bytes:
    """Run the export argv for ``cid`` and return its standard output.

    Raises:
        ExportError: The command is missing, fails or exceeds ``timeout``.

    """
    argv = [part.replace("{cid}", str(cid)) for part in command]
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        msg = f"Export command not found: {argv[0]}"
        raise ExportError(msg) from None
    except OSError as e:
        msg = f"Cannot start export command: {e}"
        raise ExportError(msg) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        msg = f"Export of {cid} timed out after {timeout}s"
        raise ExportError(msg) from None

    if process.returncode != 0:
        error_msg = stderr.decode("utf-8", errors="ignore").strip()
        msg = f"Export of {cid} failed ({process.returncode}): {error_msg}"
        raise ExportError(msg)
    return stdout


def archive_name(cid: ContentID) -> str:
    """File name of the archive for ``cid``."""
    return str(cid).replace("/", "_") + ".car"


class ExportPipeline:
    """Bounded pool exporting each selected ContentID at most once."""

    def __init__(
        self,
        config: ExportConfig,
        exporter: Exporter | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        """Initialize export pipeline.

        Args:
            config: Export configuration
            exporter: Coroutine returning the archive bytes for a CID;
                defaults to running ``config.command``
            cancel_event: Run-wide cancellation signal; stops waiting for a slot

        """
        self.config = config
        self.output_dir = Path(config.output_dir)
        self._exporter = exporter or self._default_exporter
        self.cancel_event = cancel_event or asyncio.Event()
        self._semaphore = asyncio.Semaphore(config.concurrency)
        self._tasks = BackgroundTaskGroup()
        self._submitted: set[ContentID] = set()
        self._closed = False

        self.succeeded = 0
        self.failed = 0
        self.active = 0
        self.max_active = 0

    async def _default_exporter(self, cid: ContentID) -> bytes:
        return await run_export_command(self.config.command, self.config.timeout, cid)

    def wants(self, result: ProbeResult) -> bool:
        """Whether ``result`` belongs to the configured export selection."""
        if not self.config.enabled:
            return False
        selection = self.config.selection
        if selection is ExportSelection.FOUND:
            return result.found
        if selection is ExportSelection.ABSENT:
            return not result.found
        return result.status is ProbeStatus.NOT_FOUND

    async def submit(self, cid: ContentID) -> bool:
        """Queue ``cid`` for export, waiting while every slot is busy.

        Returns False when ``cid`` was already submitted or the run was
        cancelled before a slot opened.
        """
        if self._closed:
            msg = "export pipeline is closed"
            raise ExportError(msg)
        if cid in self._submitted:
            return False
        self._submitted.add(cid)
        try:
            await await_or_cancel(self._semaphore.acquire(), self.cancel_event)
        except ProbeCancelledError:
            logger.debug("Run cancelled; export of %s skipped", cid)
            return False
        if self._closed:
            self._semaphore.release()
            return False
        task = self._tasks.create(self._export_one(cid))
        task.add_done_callback(lambda _t: self._semaphore.release())
        return True

    async def _export_one(self, cid: ContentID) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            data = await self._exporter(cid)
            path = self.output_dir / archive_name(cid)
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except (ExportError, OSError) as e:
            self.failed += 1
            logger.warning("Export of %s failed: %s", cid, e)
        except Exception:
            self.failed += 1
            logger.exception("Unexpected error exporting %s", cid)
        else:
            self.succeeded += 1
            logger.debug("Exported %s to %s (%d bytes)", cid, path, len(data))
        finally:
            self.active -= 1

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every submitted export to finish."""
        if self._tasks:
            logger.info("Waiting for %d exports to finish", len(self._tasks))
        await self._tasks.wait()

    async def close(self, timeout: float | None = None) -> None:
        """Stop accepting work and cancel outstanding exports."""
        self._closed = True
        await self._tasks.cancel_and_wait(timeout)

    async def start(self) -> None:
        """Create the archive directory."""
        if not self.config.enabled:
            return
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Cannot create export directory {self.output_dir}: {e}"
            raise ExportError(msg) from e
