"""
Resume scheduling for failed WorkItems.

First-pass failures are bucketed by the stage they failed at. Each bucket is
re-entered at that stage's entry point, so an item that failed after a
certificate was already obtained is not issued a second one. Every failure
gets exactly one resume attempt per cycle.
"""

from typing import Callable, Dict, Iterable, List, Optional

from .capabilities import CapabilitySet
from .context import CallContext
from .logger import get_logger
from .pipeline import PipelineOutcome, Stage, WorkItem, run_pipeline

# Failing stage -> stage the retry starts at.
RESUME_ENTRY_POINTS: Dict[Stage, Stage] = {
    Stage.OBTAIN: Stage.OBTAIN,
    Stage.PUBLISH: Stage.PUBLISH,
    Stage.ENFORCE_TLS: Stage.ENFORCE_TLS,
    Stage.RETIRE_OLD: Stage.RETIRE_OLD,
}

Runner = Callable[[Callable[[WorkItem], PipelineOutcome], List[WorkItem]], List[PipelineOutcome]]


def resume_entry_point(stage: Stage) -> Stage:
    """Return the stage a retry of a ``stage`` failure starts at."""
    return RESUME_ENTRY_POINTS[stage]


def bucket_failures(outcomes: Iterable[PipelineOutcome]) -> Dict[Stage, List[WorkItem]]:
    """
    Group failed outcomes by failing stage.

    Buckets are ordered by stage; items keep their input order.
    """
    buckets: Dict[Stage, List[WorkItem]] = {}
    for outcome in outcomes:
        if outcome.failure is not None:
            buckets.setdefault(outcome.failure.stage, []).append(outcome.item)
    return dict(sorted(buckets.items()))


def _run_sequentially(
    run: Callable[[WorkItem], PipelineOutcome],
    items: List[WorkItem],
) -> List[PipelineOutcome]:
    return [run(item) for item in items]


def resume_failures(
    buckets: Dict[Stage, List[WorkItem]],
    capabilities: CapabilitySet,
    context: CallContext,
    runner: Optional[Runner] = None,
) -> List[PipelineOutcome]:
    """
    Give every bucketed item its single resume attempt.

    Args:
        buckets: Failed items grouped by failing stage
        capabilities: Capability snapshot for this cycle
        context: Cycle context
        runner: Optional executor for a batch of items (defaults to sequential)

    Returns:
        Outcomes of the resume attempts; failed outcomes are residual failures
    """
    logger = get_logger()
    runner = runner or _run_sequentially
    outcomes: List[PipelineOutcome] = []

    for stage, items in buckets.items():
        entry = resume_entry_point(stage)
        logger.info(f"  Resuming {len(items)} item(s) at {entry.label}")

        def run(item: WorkItem, entry: Stage = entry) -> PipelineOutcome:
            return run_pipeline(item, capabilities, context, start=entry)

        outcomes.extend(runner(run, items))

    return outcomes
