"""Batching, correlation, dispatch and classification of presence probes."""

from __future__ import annotations

from cidcheck.probe.aggregator import ResultAggregator, RunSummary
from cidcheck.probe.batcher import count_batches, iter_batches
from cidcheck.probe.classifier import PendingBatch
from cidcheck.probe.correlator import Correlator, CorrelationEvent, EventKind
from cidcheck.probe.dispatcher import BatchOutcome, Dispatcher
from cidcheck.probe.runner import RunState, run_check

__all__ = [
    "BatchOutcome",
    "CorrelationEvent",
    "Correlator",
    "Dispatcher",
    "EventKind",
    "PendingBatch",
    "ResultAggregator",
    "RunState",
    "RunSummary",
    "count_batches",
    "iter_batches",
    "run_check",
]
