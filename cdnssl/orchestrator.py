"""
Cycle orchestration.

One cycle reconciles the capability set with the latest configuration,
selects the working set, runs the first pass, resumes first-pass failures at
their failing stage, and e-mails the failures that are still unresolved.
``run_forever`` repeats cycles until stopped.
"""

import json
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .capabilities import CapabilityRegistry, CapabilitySet
from .config_loader import ConfigSnapshot, ConfigSource
from .context import CallContext, CancellationToken
from .logger import get_logger
from .pipeline import FailureRecord, PipelineOutcome, WorkItem, run_pipeline
from .report import load_template, render_failure_report
from .resume import Runner, bucket_failures, resume_failures
from .selector import build_working_set


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CycleReport:
    """Everything that happened in one cycle."""
    cycle: int
    started_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None
    dry_run: bool = False
    cancelled: bool = False

    discovered: int = 0
    selected: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)

    renewed: List[str] = field(default_factory=list)
    resumed: List[str] = field(default_factory=list)  # renewed on the resume attempt
    first_pass_failures: List[FailureRecord] = field(default_factory=list)
    residual_failures: List[FailureRecord] = field(default_factory=list)

    global_errors: List[str] = field(default_factory=list)
    notified: bool = False

    @property
    def success(self) -> bool:
        return not self.residual_failures and not self.global_errors

    def finalize(self) -> None:
        self.completed_at = _now_iso()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        def failures(records: List[FailureRecord]) -> List[Dict[str, str]]:
            return [
                {"domain": r.domain, "stage": r.stage.label, "cause": r.cause}
                for r in records
            ]

        return {
            "cycle": self.cycle,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "success": self.success,
            "summary": {
                "discovered": self.discovered,
                "selected": len(self.selected),
                "skipped": len(self.skipped),
                "ignored": len(self.ignored),
                "deferred": len(self.deferred),
                "renewed": len(self.renewed),
                "resumed": len(self.resumed),
                "failed": len(self.residual_failures),
            },
            "selected": self.selected,
            "renewed": self.renewed,
            "first_pass_failures": failures(self.first_pass_failures),
            "residual_failures": failures(self.residual_failures),
            "global_errors": self.global_errors,
            "notified": self.notified,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def make_runner(workers: int) -> Optional[Runner]:
    """
    Build a batch runner for ``workers`` parallel items.

    Returns None (sequential) for a single worker. Each item still runs its
    stages in order on one thread.
    """
    if workers <= 1:
        return None

    def runner(run: Callable[[WorkItem], PipelineOutcome], items: List[WorkItem]) -> List[PipelineOutcome]:
        if not items:
            return []
        with ThreadPoolExecutor(
            max_workers=min(workers, len(items)),
            thread_name_prefix="renewal",
        ) as pool:
            return list(pool.map(run, items))

    return runner


class CycleOrchestrator:
    """
    Drives renewal cycles.

    The orchestrator owns the capability registry and the cancellation token;
    ``stop()`` cancels in-flight capability calls and ends ``run_forever``.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        token: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.token = token or CancellationToken()
        self.clock = clock
        self.cycle_count = 0
        self.logger = get_logger()

    def stop(self) -> None:
        self.logger.warning("Stop requested, cancelling in-flight work")
        self.token.cancel()

    @property
    def stopped(self) -> bool:
        return self.token.is_cancelled

    def run_cycle(self, snapshot: ConfigSnapshot) -> CycleReport:
        """
        Run one full cycle.

        Args:
            snapshot: Configuration for this cycle

        Returns:
            CycleReport
        """
        logger = self.logger
        settings = snapshot.settings
        self.cycle_count += 1
        report = CycleReport(cycle=self.cycle_count, dry_run=settings.dry_run)

        logger.section(f"CYCLE {self.cycle_count}")

        capabilities = self.registry.reconcile(snapshot)
        context = CallContext(self.token, call_timeout=settings.call_timeout)
        runner = make_runner(settings.workers)

        logger.subsection("Selecting domains")
        selection = build_working_set(
            capabilities.inventory,
            context,
            lookahead_days=settings.lookahead_days,
            include=settings.include_domains,
            ignore=settings.ignore_domains,
            max_items=settings.max_renewals_per_cycle,
            now=self.clock(),
        )
        report.discovered = selection.total_discovered
        report.selected = [item.name for item in selection.selected]
        report.skipped = selection.skipped
        report.ignored = selection.ignored
        report.deferred = selection.deferred
        if selection.error:
            report.global_errors.append(selection.error)

        if settings.dry_run:
            for item in selection.selected:
                action = f"replace {item.old_cert_id}" if item.old_cert_id else "first certificate"
                logger.info(f"  [{item.name}] DRY RUN - would renew ({action})")
            return self._finish(report)

        if not selection.selected:
            logger.info("  Nothing to renew")
            return self._finish(report)

        logger.subsection(f"First pass ({len(selection.selected)} domain(s))")
        first_pass = self._run_batch(selection.selected, capabilities, context, runner)
        report.renewed = [o.item.name for o in first_pass if o.succeeded]
        report.first_pass_failures = [o.failure for o in first_pass if o.failure is not None]

        if report.first_pass_failures:
            logger.subsection(f"Resuming {len(report.first_pass_failures)} failure(s)")
            buckets = bucket_failures(first_pass)
            resumed = resume_failures(buckets, capabilities, context, runner=runner)
            report.resumed = [o.item.name for o in resumed if o.succeeded]
            report.renewed.extend(report.resumed)
            report.residual_failures = [o.failure for o in resumed if o.failure is not None]

        if self.stopped:
            report.cancelled = True
            logger.warning("Cycle cancelled, skipping failure report")
            return self._finish(report)

        if report.residual_failures:
            report.notified = self._send_failure_report(
                report.residual_failures, snapshot, capabilities, context
            )

        return self._finish(report)

    def _run_batch(
        self,
        items: List[WorkItem],
        capabilities: CapabilitySet,
        context: CallContext,
        runner: Optional[Runner],
    ) -> List[PipelineOutcome]:
        def run(item: WorkItem) -> PipelineOutcome:
            return run_pipeline(item, capabilities, context)

        if runner is None:
            return [run(item) for item in items]
        return runner(run, items)

    def _send_failure_report(
        self,
        failures: List[FailureRecord],
        snapshot: ConfigSnapshot,
        capabilities: CapabilitySet,
        context: CallContext,
    ) -> bool:
        """
        E-mail the residual failures. Delivery problems are logged only.

        Returns:
            True if the report was handed to the notifier successfully
        """
        logger = self.logger
        recipients = snapshot.recipients

        if capabilities.notifier is None:
            logger.error("No notifier configured, failure report not sent")
            return False
        if not recipients:
            logger.warning("No alert recipients configured, failure report not sent")
            return False

        template = load_template(snapshot.config.notifications.report_template)
        subject, text_body, html_body = render_failure_report(
            failures, template=template, generated_at=self.clock()
        )

        try:
            capabilities.notifier.send(
                recipients,
                subject,
                text_body,
                html_body,
                context=context.for_call(),
            )
        except Exception as e:
            logger.failure(f"Failed to send failure report: {e}")
            return False

        logger.success(f"Failure report sent to {', '.join(recipients)}")
        return True

    def _finish(self, report: CycleReport) -> CycleReport:
        report.finalize()
        log_cycle_summary(report)
        return report

    def run_forever(
        self,
        source: ConfigSource,
        first_snapshot: Optional[ConfigSnapshot] = None,
        max_cycles: int = 0,
        on_cycle: Optional[Callable[[CycleReport], None]] = None,
    ) -> Optional[CycleReport]:
        """
        Run cycles until stopped (or until ``max_cycles`` have run).

        Cycle starts are spaced at least ``min_cycle_interval`` seconds apart.
        Errors inside a cycle are logged and never end the loop.

        Args:
            source: Configuration source re-read before every cycle
            first_snapshot: Snapshot already loaded for the first cycle
            max_cycles: Stop after this many cycles (0 = unlimited)
            on_cycle: Callback invoked with every completed CycleReport

        Returns:
            The last CycleReport, if any cycle completed
        """
        logger = self.logger
        last_report: Optional[CycleReport] = None
        snapshot = first_snapshot
        interval = 0

        while not self.stopped:
            started = time.monotonic()
            try:
                if snapshot is None:
                    snapshot = source.load()
                interval = snapshot.settings.min_cycle_interval
                last_report = self.run_cycle(snapshot)
                if on_cycle is not None:
                    on_cycle(last_report)
            except Exception as e:
                logger.exception(f"Cycle failed unexpectedly: {e}")
            snapshot = None

            if max_cycles and self.cycle_count >= max_cycles:
                break

            wait = interval - (time.monotonic() - started)
            if wait > 0:
                logger.info(f"Next cycle in {int(wait)}s")
                if self.token.wait(wait):
                    break

        return last_report


def log_cycle_summary(report: CycleReport) -> None:
    """
    Log a summary block at the end of a cycle.

    Args:
        report: Completed CycleReport
    """
    logger = get_logger()
    separator = "-" * 40

    status = "SUCCESS" if report.success else "FAILED"
    if report.dry_run:
        status += " (DRY RUN)"
    if report.cancelled:
        status += " (CANCELLED)"

    logger.info("")
    logger.info(separator)
    logger.info(f"CYCLE {report.cycle} SUMMARY: {status}")
    logger.info(separator)
    logger.info(f"  Domains discovered:        {report.discovered}")
    logger.info(f"  Selected for renewal:      {len(report.selected)}")
    logger.info(f"  Valid (not expiring):      {len(report.skipped)}")
    logger.info(f"  Ignored:                   {len(report.ignored)}")
    logger.info(f"  Deferred:                  {len(report.deferred)}")
    logger.info(f"  Renewed:                   {len(report.renewed)}")
    logger.info(f"  Renewed on resume:         {len(report.resumed)}")
    logger.info(f"  Failed:                    {len(report.residual_failures)}")

    for error in report.global_errors:
        logger.error(f"  Cycle error: {error}")
    for failure in report.residual_failures:
        logger.error(f"  [FAILED] {failure.domain}: {failure.cause_text}")
    for name in report.renewed:
        logger.info(f"  [RENEWED] {name}")
