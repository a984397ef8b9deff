"""
Certificate renewal stage pipeline.

A WorkItem moves through a fixed, ordered table of stages:

    OBTAIN -> PUBLISH -> ENFORCE_TLS -> RETIRE_OLD -> done

Each stage consumes the artifacts of the one before it, so a failure halts
the pass at that stage. ``run_pipeline`` takes an explicit start stage, which
is how a failed item is resumed without repeating completed work.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, List, Optional, Tuple

from .capabilities import CapabilitySet
from .context import CallContext, CallCancelledError
from .logger import get_logger


class Stage(IntEnum):
    """Pipeline stages in execution order."""
    OBTAIN = 0
    PUBLISH = 1
    ENFORCE_TLS = 2
    RETIRE_OLD = 3

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")


@dataclass
class WorkItem:
    """
    Per-domain record carried through the pipeline for one cycle.

    ``old_cert_id`` is empty when the domain had no certificate.
    """
    name: str
    old_cert_id: str = ""
    cert_id: str = ""
    key_pem: str = ""
    cert_pem: str = ""
    completed_stages: List[Stage] = field(default_factory=list)

    def __repr__(self) -> str:
        # Keep private key material out of logs and tracebacks.
        return (
            f"WorkItem(name={self.name!r}, old_cert_id={self.old_cert_id!r}, "
            f"cert_id={self.cert_id!r}, completed={[s.label for s in self.completed_stages]})"
        )


@dataclass(frozen=True)
class FailureRecord:
    """A stage failure for one domain."""
    domain: str
    stage: Stage
    cause: str

    @property
    def cause_text(self) -> str:
        return f"{self.stage.label}: {self.cause}"


@dataclass
class PipelineOutcome:
    """Result of one pipeline pass over a WorkItem."""
    item: WorkItem
    failure: Optional[FailureRecord] = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None


def obtain_certificate(item: WorkItem, capabilities: CapabilitySet, context: CallContext) -> None:
    issuer = capabilities.require("issuer")
    key_pem, cert_pem = issuer.obtain(item.name, context)
    item.key_pem = key_pem
    item.cert_pem = cert_pem


def publish_certificate(item: WorkItem, capabilities: CapabilitySet, context: CallContext) -> None:
    publisher = capabilities.require("publisher")
    item.cert_id = publisher.upload(item.key_pem, item.cert_pem, item.name, context)


def enforce_tls(item: WorkItem, capabilities: CapabilitySet, context: CallContext) -> None:
    publisher = capabilities.require("publisher")
    publisher.force_https(item.name, item.cert_id, context)


def retire_old_certificate(item: WorkItem, capabilities: CapabilitySet, context: CallContext) -> None:
    if not item.old_cert_id:
        return
    publisher = capabilities.require("publisher")
    publisher.remove(item.old_cert_id, context)


StageFunction = Callable[[WorkItem, CapabilitySet, CallContext], None]

STAGES: Tuple[Tuple[Stage, StageFunction], ...] = (
    (Stage.OBTAIN, obtain_certificate),
    (Stage.PUBLISH, publish_certificate),
    (Stage.ENFORCE_TLS, enforce_tls),
    (Stage.RETIRE_OLD, retire_old_certificate),
)


def run_pipeline(
    item: WorkItem,
    capabilities: CapabilitySet,
    context: CallContext,
    start: Stage = Stage.OBTAIN,
) -> PipelineOutcome:
    """
    Run ``item`` through the stages from ``start`` onwards.

    Stages before ``start``, and stages already recorded as completed on the
    item, are not executed. The first exception raised by a stage is turned
    into a FailureRecord and no later stage runs.

    Args:
        item: WorkItem to advance (mutated in place)
        capabilities: Capability snapshot for this cycle
        context: Cycle context; each stage gets its own per-call deadline
        start: Stage to begin at

    Returns:
        PipelineOutcome
    """
    logger = get_logger()

    for stage, stage_function in STAGES:
        if stage < start or stage in item.completed_stages:
            continue

        call_context = context.for_call()
        try:
            call_context.check()
            stage_function(item, capabilities, call_context)
        except CallCancelledError as e:
            logger.stage(item.name, stage.label, f"cancelled ({e})", level=logging.WARNING)
            return PipelineOutcome(item, FailureRecord(item.name, stage, str(e)))
        except Exception as e:
            logger.stage(item.name, stage.label, f"FAILED - {e}", level=logging.ERROR)
            return PipelineOutcome(item, FailureRecord(item.name, stage, str(e) or type(e).__name__))

        item.completed_stages.append(stage)
        logger.stage(item.name, stage.label, "ok", level=logging.DEBUG)

    return PipelineOutcome(item)
