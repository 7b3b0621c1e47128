"""
Execution scheduler.

Resolves the units of a triggered category, skips once-units the ledger
already knows, and runs the rest one by one in directory order. A failing
unit is recorded and the queue moves on; a successful once-unit is written
to the ledger before the next unit starts.
stop() kills the running unit, which counts as failed, and no further units
start.

A scheduler belongs to one privilege context. Categories owned by the other
context are refused, except login-privileged from the user context: those
are handed to the system-context service by firing its trigger marker.
"""

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from outset.errors import ContextMismatch, LedgerError, UnitExecutionError
from outset.jobs import HistoryStore, UnitExecutor
from outset.ledger import RunLedger, unit_identity
from outset.registry import (
    BOOT, LOGIN, SYSTEM, USER, Category, Unit, get_category, list_categories, units_in,
)
from outset.triggers import TriggerSignal

logger = logging.getLogger(__name__)

# Unit statuses
SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"
DISPATCHED = "dispatched"

# Category order per lifecycle event and context
LIFECYCLE_CATEGORIES = {
    (BOOT, SYSTEM): ["boot-once", "boot-every"],
    (LOGIN, USER): ["login-once", "login-every", "login-privileged"],
    (LOGIN, SYSTEM): ["login-window"],
}


@dataclass
class UnitResult:
    """Outcome of one unit in a category run"""
    unit: str  # absolute path
    status: str  # 'success', 'failed', 'skipped' or 'dispatched'
    returncode: Optional[int] = None
    error: Optional[str] = None


@dataclass
class RunReport:
    """Ordered per-unit results of one category run"""
    run_id: str
    category: str
    context: str
    start_time: str
    end_time: Optional[str] = None
    results: List[UnitResult] = field(default_factory=list)

    @property
    def failed(self) -> List[UnitResult]:
        return [r for r in self.results if r.status == FAILED]

    @property
    def executed(self) -> List[UnitResult]:
        return [r for r in self.results if r.status in (SUCCESS, FAILED)]

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return asdict(self)


class ExecutionScheduler:
    """
    Runs queue categories for one privilege context.

    Example:
        scheduler = ExecutionScheduler(root, "system", RunLedger(ledger_path))
        report = scheduler.run_category("boot-once")
    """

    def __init__(
        self,
        root: Union[str, Path],
        context: str,
        ledger: RunLedger,
        executor: Optional[UnitExecutor] = None,
        history: Optional[HistoryStore] = None,
        privileged_signal: Optional[TriggerSignal] = None,
    ):
        """
        Args:
            root: Queue root directory
            context: 'system' or 'user'
            ledger: Once-ledger of this context
            executor: Unit executor (default: UnitExecutor())
            history: Where run reports are appended (optional)
            privileged_signal: Marker watched by the system-context service
                for login-privileged runs (required to dispatch them)
        """
        self.root = Path(root)
        self.context = context
        self.ledger = ledger
        self.executor = executor or UnitExecutor()
        self.history = history
        self.privileged_signal = privileged_signal
        self._stop = threading.Event()

    def stop(self):
        """
        Stop processing: kill the running unit and start no further units.

        The interrupted unit is recorded as failed and never marked as run.
        """
        self._stop.set()
        self.executor.terminate()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_category(self, category: Union[str, Category]) -> RunReport:
        """
        Run every eligible unit of a category.

        Raises:
            InvalidRoot: If the queue root is missing
            CategoryNotFound: If the category is unknown or has no directory
            ContextMismatch: If the category belongs to the other context
        """
        if isinstance(category, str):
            category = get_category(category)

        report = RunReport(
            run_id=str(uuid.uuid4())[:8],
            category=category.name,
            context=self.context,
            start_time=datetime.now().isoformat(timespec="seconds"),
        )
        log_prefix = f"[{category.name}:{report.run_id}]"

        if category.context != self.context:
            if category.name == "login-privileged" and self.context == USER:
                return self._dispatch_privileged(category, report)
            raise ContextMismatch(
                f"Category '{category.name}' runs in the {category.context} context, "
                f"not {self.context}"
            )

        units = units_in(self.root, category)
        logger.info(f"{log_prefix} {len(units)} unit(s) in queue")

        for unit in units:
            if self._stop.is_set():
                logger.warning(f"{log_prefix} Stopped, {unit.name} and later units not started")
                break
            report.results.append(self._run_unit(unit, log_prefix))

        report.end_time = datetime.now().isoformat(timespec="seconds")
        self._record(report)

        if report.failed:
            logger.warning(f"{log_prefix} Finished with {len(report.failed)} failed unit(s)")
        else:
            logger.info(f"{log_prefix} Finished, {len(report.executed)} unit(s) executed")
        return report

    def _run_unit(self, unit: Unit, log_prefix: str) -> UnitResult:
        identity = None
        if unit.category.run_once:
            try:
                identity = unit_identity(unit)
            except OSError as e:
                logger.error(f"{log_prefix} Cannot read {unit.path}: {e}")
                return UnitResult(unit=str(unit.path), status=FAILED, error=str(e))
            if self.ledger.has_run(identity, self.context):
                logger.info(f"{log_prefix} Already ran, skipping: {unit.name}")
                return UnitResult(unit=str(unit.path), status=SKIPPED)

        try:
            result = self.executor.execute_unit(unit)
        except UnitExecutionError as e:
            logger.error(f"{log_prefix} {unit.name} failed: {e}")
            return UnitResult(unit=str(unit.path), status=FAILED,
                              returncode=e.returncode, error=str(e))

        if identity is not None:
            try:
                self.ledger.mark_run(identity, self.context)
            except LedgerError as e:
                logger.error(f"{log_prefix} {e}")

        return UnitResult(unit=str(unit.path), status=SUCCESS, returncode=result['returncode'])

    def _dispatch_privileged(self, category: Category, report: RunReport) -> RunReport:
        """Hand a system-context category to the system-context service."""
        if self.privileged_signal is None:
            raise ContextMismatch(
                f"Category '{category.name}' needs the system context and no dispatch trigger is configured"
            )
        units = units_in(self.root, category)
        if units:
            self.privileged_signal.fire()
            logger.info(f"[{category.name}] Dispatched {len(units)} unit(s) to the system context")
        else:
            logger.debug(f"[{category.name}] Nothing to dispatch")
        report.results = [UnitResult(unit=str(u.path), status=DISPATCHED) for u in units]
        report.end_time = datetime.now().isoformat(timespec="seconds")
        return report

    def _record(self, report: RunReport):
        if self.history is None:
            return
        try:
            self.history.add_run(report.to_dict())
        except OSError as e:
            logger.warning(f"Failed to record run history: {e}")

    def run_lifecycle(self, event: str) -> List[RunReport]:
        """
        Run every category bound to a lifecycle event in this context.

        Categories without a directory are skipped.

        Raises:
            InvalidRoot: If the queue root is missing
        """
        names = LIFECYCLE_CATEGORIES.get((event, self.context), [])
        if not names:
            logger.warning(f"No categories for {event} in the {self.context} context")

        available = list_categories(self.root)
        reports = []
        for name in names:
            category = get_category(name)
            if category not in available:
                logger.debug(f"Skipping {name}: no directory under {self.root}")
                continue
            reports.append(self.run_category(category))
        return reports
