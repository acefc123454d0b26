"""Run orchestration: setup, probe, teardown.

Setup failures (bad peer address, unreadable or malformed input, missing
session backend, unreachable peer, output files that cannot be created)
raise before any query is sent. Everything after setup is captured in
per-CID results and the run always covers every input line.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from cidcheck.core.content_id import ContentID, PeerAddress, load_cid_file
from cidcheck.export.pipeline import ExportPipeline
from cidcheck.output.sink import OutputSink
from cidcheck.probe.aggregator import ResultAggregator, RunSummary
from cidcheck.probe.batcher import count_batches
from cidcheck.probe.correlator import Correlator
from cidcheck.probe.dispatcher import Dispatcher
from cidcheck.session.base import SessionState, load_session_factory
from cidcheck.utils.exceptions import (
    ConfigurationError,
    PeerConnectionError,
    SessionBackendError,
)

if TYPE_CHECKING:  # pragma: no cover
    from cidcheck.core.content_id import PeerIdentity
    from cidcheck.export.pipeline import Exporter
    from cidcheck.models import Config
    from cidcheck.session.base import ProbeSession, SessionFactory

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """Everything one run shares; built once by :func:`run_check`."""

    config: Config
    address: PeerAddress
    session: ProbeSession
    sink: OutputSink
    exporter: ExportPipeline
    cancel_event: asyncio.Event
    correlator: Correlator | None = None
    cids: list[ContentID] = field(default_factory=list)

    @property
    def target(self) -> PeerIdentity:
        return self.address.peer_id

    async def close(self) -> None:
        """Release the connection, the exports and the output files."""
        if self.correlator is not None:
            await self.correlator.close()
        await self.exporter.close(timeout=5.0)
        try:
            await self.session.close()
        except Exception as e:
            logger.warning("Error closing session: %s", e)
        await self.sink.close()


async def _connect(
    factory: SessionFactory,
    config: Config,
    address: PeerAddress,
) -> ProbeSession:
    try:
        session = factory(config)
    except Exception as e:
        msg = f"Session backend failed to create a session: {e}"
        raise SessionBackendError(msg) from e

    timeout = config.probe.connect_timeout
    try:
        await asyncio.wait_for(session.connect(address, timeout), timeout)
    except PeerConnectionError:
        await session.close()
        raise
    except asyncio.TimeoutError:
        await session.close()
        msg = f"Timed out connecting to {address} after {timeout}s"
        raise PeerConnectionError(msg) from None
    except Exception as e:
        await session.close()
        msg = f"Cannot connect to {address}: {e}"
        raise PeerConnectionError(msg) from e

    session.state = SessionState.CONNECTED
    logger.info("Connected to %s", address.peer_id)
    return session


async def run_check(
    config: Config,
    peer: str,
    cid_file: str | Path,
    offset: int = 1,
    *,
    session_factory: SessionFactory | None = None,
    cancel_event: asyncio.Event | None = None,
    timestamp: int | None = None,
    exporter: Exporter | None = None,
) -> RunSummary:
    """Probe every CID of ``cid_file`` from line ``offset`` (1-indexed) on.

    Args:
        config: Validated run configuration
        peer: Target multiaddr including ``/p2p/<peer-id>``
        cid_file: Newline-delimited CID input
        offset: First input line to probe
        session_factory: Overrides ``config.probe.session_backend``
        cancel_event: Run-wide cancellation signal
        timestamp: Output file timestamp (defaults to now)
        exporter: Overrides the export command

    Returns:
        Counters for the run

    """
    if offset < 1:
        msg = f"offset must be at least 1, got {offset}"
        raise ConfigurationError(msg)
    cancel_event = cancel_event or asyncio.Event()

    address = PeerAddress.parse(peer)
    cids = await load_cid_file(cid_file)
    if offset > len(cids) + 1:
        logger.warning("Offset %d is past the end of %s (%d lines)", offset, cid_file, len(cids))

    factory = session_factory or load_session_factory(config.probe.session_backend)
    session = await _connect(factory, config, address)

    sink = OutputSink(config.output, timestamp)
    pipeline = ExportPipeline(config.export, exporter, cancel_event)
    state = RunState(
        config=config,
        address=address,
        session=session,
        sink=sink,
        exporter=pipeline,
        cancel_event=cancel_event,
        cids=cids,
    )

    started = time.monotonic()
    try:
        await sink.open()
        await sink.record_start(offset)
        await pipeline.start()
        logger.info("Not-found CIDs: %s", sink.failed_path)
        logger.info("Progress log: %s", sink.progress_path)

        state.correlator = Correlator(state.target, config.probe.stream_queue_size)
        state.correlator.attach(session)

        aggregator = ResultAggregator(sink, pipeline)
        dispatcher = Dispatcher(
            session,
            state.correlator,
            config.probe,
            on_result=aggregator.handle_result,
            on_batch=aggregator.handle_batch,
            cancel_event=cancel_event,
        )

        start = offset - 1
        logger.info(
            "Probing %d CIDs in %d batches (batch size %d, %d workers)",
            max(len(cids) - start, 0),
            count_batches(len(cids), start, config.probe.batch_size),
            config.probe.batch_size,
            config.probe.concurrency,
        )
        await dispatcher.run(cids, start)

        missing = [line for line in range(offset, len(cids) + 1) if not aggregator.has_line(line)]
        if missing:
            logger.error("%d input lines produced no result (first: %d)", len(missing), missing[0])

        if pipeline.pending and not cancel_event.is_set():
            await pipeline.drain()

        summary = aggregator.summary
        summary.exports_ok = pipeline.succeeded
        summary.exports_failed = pipeline.failed
        summary.write_errors = sink.write_errors
        summary.cancelled = cancel_event.is_set()
        summary.elapsed = time.monotonic() - started
        if state.correlator.mismatches:
            logger.warning("%d replies came from unexpected peers", state.correlator.mismatches)
        logger.info(
            "Done: %d found, %d not found, %d unresponded, %d errors in %.2fs",
            summary.found,
            summary.not_found,
            summary.unresponded,
            summary.errors,
            summary.elapsed,
        )
        return summary
    finally:
        await state.close()
