"""Bounded-concurrency execution of one worker per batch."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

from cidcheck.probe.batcher import iter_batches
from cidcheck.probe.classifier import PendingBatch
from cidcheck.probe.correlator import EventKind
from cidcheck.utils.exceptions import ProbeCancelledError
from cidcheck.utils.tasks import BackgroundTaskGroup, await_or_cancel

if TYPE_CHECKING:  # pragma: no cover
    from cidcheck.core.content_id import ContentID
    from cidcheck.core.messages import Batch, ProbeResult
    from cidcheck.models import ProbeConfig
    from cidcheck.probe.correlator import Correlator, Subscription
    from cidcheck.session.base import ProbeSession

logger = logging.getLogger(__name__)

CANCELLED = "run cancelled"

ResultHandler = Callable[["ProbeResult"], Awaitable[None]]
BatchHandler = Callable[["BatchOutcome"], Awaitable[None]]


@dataclass(frozen=True)
class BatchOutcome:
    """How one batch ended."""

    batch: Batch
    sent: bool
    found: int
    results: int
    elapsed: float
    timed_out: bool = False
    error: str | None = None
    conflicts: int = 0

    @property
    def cancelled(self) -> bool:
        return self.error == CANCELLED


class Dispatcher:
    """Runs batches through a fixed-size worker pool.

    Each worker sends its batch's query through the shared session and then
    reads the shared result stream until its pending set is empty, its
    timeout elapses, an error naming the target arrives, or the run is
    cancelled. Every CID of every batch yields exactly one result.
    """

    def __init__(
        self,
        session: ProbeSession,
        correlator: Correlator,
        config: ProbeConfig,
        on_result: ResultHandler,
        on_batch: BatchHandler | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        """Initialize dispatcher."""
        self.session = session
        self.correlator = correlator
        self.config = config
        self._on_result = on_result
        self._on_batch = on_batch
        self.cancel_event = cancel_event or asyncio.Event()

        self.in_flight = 0
        self.max_in_flight = 0
        self.batches_started = 0

    async def run(self, cids: Sequence[ContentID], offset: int = 0) -> None:
        """Probe ``cids[offset:]``; returns once every batch has finished."""
        semaphore = asyncio.Semaphore(self.config.concurrency)
        workers = BackgroundTaskGroup()

        for batch in iter_batches(cids, offset, self.config.batch_size):
            try:
                await await_or_cancel(semaphore.acquire(), self.cancel_event)
            except ProbeCancelledError:
                await self._skip(batch)
                continue
            task = workers.create(self._run_batch(batch))
            task.add_done_callback(lambda _t: semaphore.release())

        await workers.wait()

    async def _emit(self, results: list[ProbeResult]) -> None:
        for result in results:
            await self._on_result(result)

    async def _finish(self, outcome: BatchOutcome) -> None:
        if self._on_batch is not None:
            await self._on_batch(outcome)

    async def _skip(self, batch: Batch) -> None:
        """Resolve a batch that was never admitted because the run was cancelled."""
        pending = PendingBatch(batch)
        results = pending.abandon(responded=False, elapsed=0.0, error=CANCELLED)
        await self._emit(results)
        await self._finish(
            BatchOutcome(
                batch=batch,
                sent=False,
                found=0,
                results=len(results),
                elapsed=0.0,
                error=CANCELLED,
            )
        )

    async def _run_batch(self, batch: Batch) -> None:
        pending = PendingBatch(batch)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.batches_started += 1

        started = time.monotonic()
        sent = False
        timed_out = False
        error: str | None = None
        found = 0
        emitted = 0

        async def emit(results: list[ProbeResult]) -> None:
            nonlocal found, emitted
            found += sum(1 for r in results if r.found)
            emitted += len(results)
            await self._emit(results)

        try:
            with self.correlator.subscribe() as stream:
                try:
                    await await_or_cancel(
                        self.session.send(pending.query),
                        self.cancel_event,
                        self.config.send_timeout,
                    )
                except ProbeCancelledError:
                    error = CANCELLED
                except asyncio.TimeoutError:
                    error = f"send timed out after {self.config.send_timeout}s"
                except Exception as e:
                    error = f"send failed: {e}"
                else:
                    sent = True
                    error, timed_out = await self._collect(pending, stream, started, emit)

                if pending:
                    responded = sent and error != CANCELLED and pending.responded
                    await emit(
                        pending.abandon(
                            responded=responded,
                            elapsed=time.monotonic() - started,
                            error=error,
                            timed_out=timed_out,
                        )
                    )
        except Exception as e:
            logger.exception("Batch %d failed unexpectedly", batch.index)
            error = f"internal error: {e}"
            if pending:
                await emit(
                    pending.abandon(
                        responded=False,
                        elapsed=time.monotonic() - started,
                        error=error,
                    )
                )
        finally:
            self.in_flight -= 1

        if error and error != CANCELLED:
            logger.warning(
                "Batch %d (lines %d-%d): %s",
                batch.index,
                batch.first_line,
                batch.last_line,
                error,
            )

        await self._finish(
            BatchOutcome(
                batch=batch,
                sent=sent,
                found=found,
                results=emitted,
                elapsed=time.monotonic() - started,
                timed_out=timed_out,
                error=error,
                conflicts=pending.conflicts,
            )
        )

    async def _collect(
        self,
        pending: PendingBatch,
        stream: Subscription,
        started: float,
        emit: Callable[[list[ProbeResult]], Awaitable[None]],
    ) -> tuple[str | None, bool]:
        """Read the shared stream until ``pending`` empties.

        Returns ``(error, timed_out)`` describing why reading stopped; any
        CIDs still pending are resolved by the caller.
        """
        deadline = started + self.config.batch_timeout
        while pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None, True
            try:
                event = await stream.get(remaining, self.cancel_event)
            except ProbeCancelledError:
                return CANCELLED, False
            if event is None:
                continue

            if event.kind is EventKind.REPLY and event.reply is not None:
                await emit(pending.apply(event.reply, time.monotonic() - started))
                continue

            if event.kind is EventKind.PEER_MISMATCH and not self.config.abort_on_mismatch:
                continue
            if event.target == self.correlator.target:
                return str(event.error), False

        return None, False
