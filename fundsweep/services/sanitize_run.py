"""
Sanitize run: one end-to-end pass over a tenant's data.

State machine:
    PENDING -> SCANNING -> RESOLVING -> EVALUATING -> DRY_RUN_REPORT -> REPORTING -> DONE
                                                   \\-> COMMITTING ----/
A scan, resolve or evaluation failure (or a stop request) skips straight to
REPORTING so the operator always gets a report of what completed.

Evaluation runs the enabled rules collection by collection in
COLLECTION_ORDER, overlaying each pass's corrections on the reference
snapshot so later collections see repaired parents. Passes repeat until one
plans nothing new (derivations between users, athletes and coaches run both
ways); the net change per document is then planned as a single write. Dry
run and apply plan exactly the same writes.
"""

import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..config import RunSettings
from ..constants import (
    COLLECTION_ORDER,
    DONATIONS,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    MAX_EVALUATION_PASSES,
    PUBLIC_DONORS,
)
from ..db.base import RecordStore
from ..errors import FundsweepError, RunStateError
from ..schemas.corrections import PlannedWrite
from ..schemas.issues import Issue
from ..schemas.policy import SanitizePolicy
from ..utils.logger import RunLogger
from ..utils.worker_pool import WorkerPool
from .batch_writer import BatchWriter, WriteResult
from .reconciliation_reporter import ReconciliationReporter, write_report
from .resolver import CrossReferenceResolver
from .rule_engine import FieldRuleEngine
from .scanner import CollectionScanner
from .write_planner import WritePlanner

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    RESOLVING = "resolving"
    EVALUATING = "evaluating"
    DRY_RUN_REPORT = "dry_run_report"
    COMMITTING = "committing"
    REPORTING = "reporting"
    DONE = "done"


TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.PENDING: {RunState.SCANNING},
    RunState.SCANNING: {RunState.RESOLVING, RunState.REPORTING},
    RunState.RESOLVING: {RunState.EVALUATING, RunState.REPORTING},
    RunState.EVALUATING: {RunState.DRY_RUN_REPORT, RunState.COMMITTING, RunState.REPORTING},
    RunState.DRY_RUN_REPORT: {RunState.REPORTING},
    RunState.COMMITTING: {RunState.REPORTING},
    RunState.REPORTING: {RunState.DONE},
    RunState.DONE: set(),
}


@dataclass
class RunResult:
    """What a finished run hands back to the runner."""

    state: RunState
    exit_code: int
    report: dict[str, Any]
    planned: list[PlannedWrite] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    write_result: Optional[WriteResult] = None
    report_path: Optional[Path] = None
    error: Optional[Exception] = None
    interrupted: bool = False
    passes: int = 0
    history: list[RunState] = field(default_factory=list)


class SanitizeRun:
    """
    Orchestrates scan, resolve, evaluate, commit and report for one project.

    Args:
        store: Record store for the target project
        settings: Run settings (project, mode, collections, report output)
        policy: Active sanitize policy
        stop_event: Set to stop at the next safe boundary (between
            collections while evaluating, between chunks while committing)
        run_logger: Optional RunLogger for operator-facing step timing
        writer: Optional BatchWriter (tests inject one with a fake sleep)
    """

    def __init__(
        self,
        store: RecordStore,
        settings: RunSettings,
        policy: SanitizePolicy,
        stop_event: Optional[threading.Event] = None,
        run_logger: Optional[RunLogger] = None,
        writer: Optional[BatchWriter] = None,
    ):
        self.store = store
        self.settings = settings
        self.policy = policy
        self.stop_event = stop_event or threading.Event()
        self.run_logger = run_logger
        self.pool = WorkerPool(max_workers=policy.max_workers)
        self.writer = writer or BatchWriter(store, policy, stop_event=self.stop_event)

        self.state = RunState.PENDING
        self.history: list[RunState] = [RunState.PENDING]
        self.reporter = ReconciliationReporter(settings.project_id, dry_run=not settings.apply)
        self.resolver = CrossReferenceResolver(store, self.pool)
        self.engine = FieldRuleEngine(self.resolver, policy)

    # ─── State ───────────────────────────────────────────────────────────────

    def _transition(self, target: RunState):
        if target not in TRANSITIONS[self.state]:
            raise RunStateError(f"Illegal transition {self.state.value} -> {target.value}")
        logger.debug(f"Run state {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def _step(self, name: str, **kwargs):
        if self.run_logger is None:
            return nullcontext()
        return self.run_logger.time_step(name, **kwargs)

    def _stopped(self) -> bool:
        return self.stop_event.is_set()

    # ─── Steps ───────────────────────────────────────────────────────────────

    def _scan(self) -> dict:
        self._transition(RunState.SCANNING)
        scanner = CollectionScanner(self.store, self.pool)
        with self._step("scan", collections=len(self.settings.collections)):
            scanned = scanner.scan_all(self.settings.collections)
        for collection in self.settings.collections:
            self.reporter.record_scanned(collection, len(scanned.get(collection, [])))
        return scanned

    def _resolve(self, scanned: dict):
        self._transition(RunState.RESOLVING)
        with self._step("resolve"):
            for collection, records in scanned.items():
                self.resolver.add(collection, records)
            self.resolver.load([c for c in COLLECTION_ORDER if c not in scanned])
            if self.policy.features.public_donors and DONATIONS in self.settings.collections:
                self.resolver.load_group(PUBLIC_DONORS)

    def _evaluate_pass(self, planner: WritePlanner, issues: dict[str, list[Issue]]) -> tuple[int, bool]:
        """
        Evaluate every selected collection once against the current snapshot.

        Returns:
            (writes planned in this pass, whether a stop was requested)
        """
        planned = 0
        for collection in self.settings.collections:
            if self._stopped():
                return planned, True
            records = self.resolver.documents(collection)
            results = self.pool.map(self.engine.evaluate_safe, records, desc=f"Evaluating {collection}")
            failures = [error for success, _, error in results if not success]
            if failures:
                raise failures[0]
            for outcome in sorted((r for _, _, r in results), key=lambda o: o.record.doc_id):
                # a code keeps the detail of the first pass that raised it
                recorded = issues.setdefault(outcome.path, [])
                known = {i.code for i in recorded}
                recorded.extend(i for i in outcome.issues if i.code not in known)
                planner.track_all(outcome.writes)
                self.resolver.apply_all(outcome.writes)
                planned += len(outcome.writes)
        return planned, False

    def _evaluate(self) -> tuple[list[PlannedWrite], list[Issue], int, bool]:
        self._transition(RunState.EVALUATING)
        planner = WritePlanner(self.resolver.fork())
        issues: dict[str, list[Issue]] = {}
        passes = 0
        interrupted = False
        with self._step("evaluate", collections=len(self.settings.collections)):
            while passes < MAX_EVALUATION_PASSES:
                passes += 1
                planned, interrupted = self._evaluate_pass(planner, issues)
                logger.info(f"Evaluation pass {passes}: {planned} writes planned")
                if interrupted or planned == 0:
                    break
            else:
                logger.warning(f"Evaluation did not settle after {MAX_EVALUATION_PASSES} passes")

        writes = planner.plan(self.resolver)
        logger.info(f"{planner.touched} documents touched, {len(writes)} net writes planned")
        rank = {c: i for i, c in enumerate(COLLECTION_ORDER)}
        ordered_issues = [
            issue
            for path in sorted(issues, key=lambda p: (rank.get(p.rsplit("/", 1)[0], len(rank)), p))
            for issue in issues[path]
        ]
        return writes, ordered_issues, passes, interrupted

    # ─── Run ─────────────────────────────────────────────────────────────────

    def run(self) -> RunResult:
        """Execute the run. Store failures end up in the result, never raised."""
        started = time.monotonic()
        if self.run_logger is not None:
            self.run_logger.log_run_start(self.settings.project_id, self.settings.apply, self.settings.collections)

        writes: list[PlannedWrite] = []
        issues: list[Issue] = []
        write_result: Optional[WriteResult] = None
        error: Optional[Exception] = None
        interrupted = False
        passes = 0

        try:
            scanned = self._scan()
            self._resolve(scanned)
            writes, issues, passes, interrupted = self._evaluate()
        except RunStateError:
            raise
        except FundsweepError as e:
            error = e
            logger.error(f"Run aborted in {self.state.value}: {e}")

        for write in writes:
            self.reporter.record_write(write)
        for issue in issues:
            self.reporter.record_issue(issue)

        if error is None and not interrupted:
            if self.settings.apply:
                self._transition(RunState.COMMITTING)
                with self._step("commit", writes=len(writes)):
                    write_result = self.writer.write(writes, dry_run=False)
                interrupted = write_result.interrupted
            else:
                self._transition(RunState.DRY_RUN_REPORT)
                write_result = self.writer.write(writes, dry_run=True)
        elif interrupted:
            logger.warning("Stop requested during evaluation, nothing committed")

        if error is not None or (write_result is not None and write_result.error is not None):
            exit_code, outcome = EXIT_FAILURE, "failed"
        elif interrupted:
            exit_code, outcome = EXIT_INTERRUPTED, "interrupted"
        else:
            exit_code, outcome = EXIT_OK, "completed"

        self._transition(RunState.REPORTING)
        commit = write_result.to_dict() if write_result is not None else None
        report = self.reporter.build_report(outcome, commit=commit, features=self.policy.features.model_dump())
        report["meta"]["passes"] = passes
        report["meta"]["states"] = [s.value for s in self.history]
        report["meta"]["workers"] = self.pool.get_stats()
        if error is not None:
            report["meta"]["error"] = str(error)
        report_path = None
        if self.settings.write_report:
            report_path = write_report(report, self.settings.report_dir, self.settings.project_id)

        self._transition(RunState.DONE)

        if self.run_logger is not None:
            self.run_logger.log_run_complete(
                self.state.value,
                planned=len(writes),
                committed=write_result.committed if write_result is not None else 0,
                issues=len(issues),
                duration_seconds=time.monotonic() - started,
            )

        return RunResult(
            state=self.state,
            exit_code=exit_code,
            report=report,
            planned=writes,
            issues=issues,
            write_result=write_result,
            report_path=report_path,
            error=error,
            interrupted=interrupted,
            passes=passes,
            history=list(self.history),
        )
