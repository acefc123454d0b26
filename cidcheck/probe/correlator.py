"""Funnel session callbacks into one ordered, shared event stream.

The content-exchange protocol has no request identifiers: every reply from
the target arrives on the same channel whichever query prompted it. The
Correlator therefore fans each accepted event out to every open
:class:`Subscription`; batch workers subscribe before sending and pick out
the CIDs they still need.

Session callbacks may run on a transport-owned thread. Their events are
handed to the event loop with ``run_coroutine_threadsafe`` and the thread
waits until the bounded inbound queue accepts them. All Correlator state is
only touched on the loop thread.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from cidcheck.utils.exceptions import CorrelationError, ProbeCancelledError
from cidcheck.utils.tasks import BackgroundTaskGroup, await_or_cancel

if TYPE_CHECKING:  # pragma: no cover
    from cidcheck.core.content_id import PeerIdentity
    from cidcheck.core.messages import Reply
    from cidcheck.session.base import ProbeSession

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Kinds of events published on the result stream."""

    REPLY = "reply"
    PEER_MISMATCH = "peer_mismatch"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class CorrelationEvent:
    """One entry of the shared result stream.

    ``target`` is the peer the run expects; error events name it so workers
    can tell they concern their own queries.
    """

    kind: EventKind
    target: PeerIdentity
    sender: PeerIdentity | None = None
    reply: Reply | None = None
    error: BaseException | None = None

    @property
    def is_error(self) -> bool:
        return self.kind is not EventKind.REPLY


class Subscription:
    """A worker's bounded view of the shared result stream."""

    def __init__(self, correlator: Correlator, maxsize: int):
        """Create an open subscription."""
        self._correlator = correlator
        self._queue: asyncio.Queue[CorrelationEvent] = asyncio.Queue(maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def put(self, event: CorrelationEvent) -> None:
        """Deliver ``event``, waiting for room unless the subscription closes."""
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass
        with contextlib.suppress(ProbeCancelledError):
            await await_or_cancel(self._queue.put(event), self._closed)

    async def get(
        self,
        timeout: float,
        cancel_event: asyncio.Event,
    ) -> CorrelationEvent | None:
        """Next event, or None if ``timeout`` elapses first.

        Raises:
            ProbeCancelledError: ``cancel_event`` fired while waiting.
        """
        try:
            return await await_or_cancel(self._queue.get(), cancel_event, timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self._closed.set()
        self._correlator._unsubscribe(self)  # noqa: SLF001

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class Correlator:
    """Validates sender identity and republishes session events.

    Must be constructed inside the running event loop that will consume
    the stream. Accepted events wait in one bounded inbound queue that a
    single publisher task drains into every subscription. A transport
    thread delivering an event blocks until the queue has room. Callbacks
    already running on the loop thread cannot wait, so their events are
    dropped and counted when the queue is full.
    """

    def __init__(
        self,
        target: PeerIdentity,
        queue_size: int = 256,
        inbound_size: int | None = None,
    ):
        """Initialize the correlator for a single target peer."""
        self.target = target
        self.queue_size = queue_size
        self._loop = asyncio.get_running_loop()
        self._subscribers: set[Subscription] = set()
        self._inbound: asyncio.Queue[CorrelationEvent] = asyncio.Queue(inbound_size or queue_size)
        self._stopped = asyncio.Event()
        self._tasks = BackgroundTaskGroup()
        self._tasks.create(self._publish_events())
        self._closed = False

        self.replies = 0
        self.mismatches = 0
        self.transport_errors = 0
        self.dropped = 0

    def attach(self, session: ProbeSession) -> None:
        """Register this correlator's callbacks on ``session``."""
        session.on_reply(self.receive_reply)
        session.on_transport_error(self.receive_error)

    def subscribe(self) -> Subscription:
        """Open a subscription; use as a context manager to close it."""
        subscription = Subscription(self, self.queue_size)
        self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def backlog(self) -> int:
        """Events accepted but not yet handed to the publisher."""
        return self._inbound.qsize()

    def receive_reply(self, sender: PeerIdentity, reply: Reply) -> None:
        """Session callback for inbound replies; safe from any thread."""
        if sender != self.target:
            error = CorrelationError(
                f"expected peer {self.target}, got {sender}",
                {"expected": str(self.target), "sender": str(sender)},
            )
            event = CorrelationEvent(
                kind=EventKind.PEER_MISMATCH,
                target=self.target,
                sender=sender,
                error=error,
            )
        else:
            event = CorrelationEvent(
                kind=EventKind.REPLY,
                target=self.target,
                sender=sender,
                reply=reply,
            )
        self._submit(event)

    def receive_error(self, error: BaseException) -> None:
        """Session callback for transport failures; safe from any thread."""
        self._submit(
            CorrelationEvent(
                kind=EventKind.TRANSPORT_ERROR,
                target=self.target,
                error=error,
            )
        )

    def _submit(self, event: CorrelationEvent) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._offer(event)
            return
        try:
            future = asyncio.run_coroutine_threadsafe(self._put(event), self._loop)
        except RuntimeError:
            logger.debug("Event loop closed; dropping %s event", event.kind.value)
            return
        try:
            future.result()
        except concurrent.futures.CancelledError:
            logger.debug("Correlator stopped; dropping %s event", event.kind.value)

    def _offer(self, event: CorrelationEvent) -> None:
        if self._closed:
            logger.debug("Correlator closed; dropping %s event", event.kind.value)
            return
        try:
            self._inbound.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Result stream full; dropped %s event", event.kind.value)
            return
        self._record(event)

    async def _put(self, event: CorrelationEvent) -> None:
        if self._closed:
            logger.debug("Correlator closed; dropping %s event", event.kind.value)
            return
        try:
            await await_or_cancel(self._inbound.put(event), self._stopped)
        except ProbeCancelledError:
            logger.debug("Correlator closed; dropping %s event", event.kind.value)
            return
        self._record(event)

    def _record(self, event: CorrelationEvent) -> None:
        if event.kind is EventKind.REPLY:
            self.replies += 1
        elif event.kind is EventKind.PEER_MISMATCH:
            self.mismatches += 1
            logger.warning("Reply from unexpected peer: %s", event.error)
        else:
            self.transport_errors += 1
            logger.warning("Transport error: %s", event.error)

    async def _publish_events(self) -> None:
        while True:
            event = await self._inbound.get()
            try:
                for subscription in list(self._subscribers):
                    await subscription.put(event)
            finally:
                self._inbound.task_done()

    async def flush(self) -> None:
        """Wait until every accepted event has been published."""
        await self._inbound.join()

    async def close(self) -> None:
        """Stop accepting events and cancel the publisher."""
        self._closed = True
        self._stopped.set()
        for subscription in list(self._subscribers):
            subscription.close()
        await self._tasks.cancel_and_wait()
