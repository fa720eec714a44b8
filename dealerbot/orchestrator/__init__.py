"""Batch scheduling, per-source pipeline, job bookkeeping and metrics.

Public API
----------
* :func:`~dealerbot.orchestrator.runner.run_batch_once`: one trigger
  invocation with all resources wired; used by the API and the CLI.
* :func:`~dealerbot.orchestrator.runner.reassign_ranks_once`: rotation
  maintenance.
* :func:`~dealerbot.orchestrator.scheduler.run_batch`: the batch loop over
  injected collaborators; useful for testing.
* :func:`~dealerbot.orchestrator.pipeline.run_one`: one source through
  explore → extract → validate → gate → persist.
* :class:`~dealerbot.orchestrator.metrics.BatchResult` /
  :class:`~dealerbot.orchestrator.metrics.MetricsRecorder`: batch
  aggregates and the metrics table writer.
"""

from dealerbot.orchestrator.metrics import BatchResult, MetricsRecorder
from dealerbot.orchestrator.pipeline import (
    ItemOutcome,
    ItemState,
    PipelineDeps,
    SourceRunResult,
    process_candidate,
    run_one,
)
from dealerbot.orchestrator.runner import (
    lookup_batch,
    lookup_job,
    reassign_ranks_once,
    run_batch_once,
)
from dealerbot.orchestrator.scheduler import (
    BatchDeps,
    BatchSelector,
    reassign_rotation_ranks,
    run_batch,
)

__all__ = [
    # Invocation entry-points
    "run_batch_once",
    "reassign_ranks_once",
    "lookup_job",
    "lookup_batch",
    # Batch scheduler
    "BatchSelector",
    "BatchDeps",
    "run_batch",
    "reassign_rotation_ranks",
    # Per-source pipeline
    "ItemState",
    "ItemOutcome",
    "SourceRunResult",
    "PipelineDeps",
    "process_candidate",
    "run_one",
    # Metrics
    "BatchResult",
    "MetricsRecorder",
]
