"""
Resident service for one privilege context, using APScheduler.

The service blocks in the scheduler between activations. One interval job
per watched trigger marker polls the marker; a consumed marker runs the
bound category. Job defaults keep a single instance per marker and
coalesce missed polls, so a slow category run never stacks up polls.

    system context: login-privileged marker -> login-privileged
    user context:   on-demand marker        -> on-demand

A PID file and an info file per context let `outset status` find it.
"""

import atexit
import json
import logging
import os
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler

from outset import sysinfo
from outset.atomic import atomic_write_json
from outset.config import OutsetConfig
from outset.errors import InvalidRoot
from outset.jobs import HistoryStore, UnitExecutor
from outset.ledger import RunLedger
from outset.registration import ServiceState
from outset.registry import SYSTEM, USER
from outset.runner import ExecutionScheduler
from outset.triggers import SignalWatcher, TriggerSignal

logger = logging.getLogger(__name__)


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_service_running(config: OutsetConfig, context: str) -> Tuple[bool, Optional[int]]:
    """
    Check if the resident service of a context is running.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = config.pid_path(context)
    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, OSError):
        return False, None

    if _is_process_running(pid):
        return True, pid
    return False, None


def get_service_info(config: OutsetConfig, context: str) -> Optional[Dict[str, Any]]:
    """
    Information about the running service of a context.

    Returns:
        Dict with service info or None if not running
    """
    running, pid = is_service_running(config, context)
    if not running:
        return None

    info_file = config.info_path(context)
    try:
        with open(info_file, 'r') as f:
            info = json.load(f)
    except (json.JSONDecodeError, OSError):
        info = {}
    info['running'] = True
    info['pid'] = pid
    return info


def build_scheduler(config: OutsetConfig, context: str) -> ExecutionScheduler:
    """Execution scheduler wired to the configured state of a context."""
    return ExecutionScheduler(
        root=config.root,
        context=context,
        ledger=RunLedger(config.ledger_path(context)),
        executor=UnitExecutor(config.installer_command),
        history=HistoryStore(config.history_path(context)),
        privileged_signal=TriggerSignal(config.login_privileged_trigger, "login-privileged"),
    )


def watched_signals(config: OutsetConfig, context: str) -> Dict[str, TriggerSignal]:
    """Category name -> trigger marker watched by the service of a context."""
    if context == SYSTEM:
        return {"login-privileged": TriggerSignal(config.login_privileged_trigger, "login-privileged")}
    return {"on-demand": TriggerSignal(config.on_demand_trigger, "on-demand")}


class ResidentService:
    """
    Long-running service owning one privilege context.

    Uses a BlockingScheduler in foreground mode (the normal case under a
    service manager) and a BackgroundScheduler otherwise.
    """

    def __init__(
        self,
        config: OutsetConfig,
        context: str,
        scheduler: Optional[ExecutionScheduler] = None,
        foreground: bool = True,
    ):
        """
        Args:
            config: Resolved configuration
            context: 'system' or 'user'
            scheduler: Execution scheduler (default: built from config)
            foreground: If True, start() blocks until shutdown
        """
        if context not in (SYSTEM, USER):
            raise ValueError(f"Unknown context: {context}")

        self.config = config
        self.context = context
        self.runner = scheduler or build_scheduler(config, context)
        self.state = ServiceState.REGISTERED
        self.watchers: List[SignalWatcher] = [
            SignalWatcher(trigger, self._handler(category))
            for category, trigger in watched_signals(config, context).items()
        ]

        executors = {'default': ThreadPoolExecutor(1)}
        job_defaults = {
            'coalesce': True,  # Combine missed polls into one
            'max_instances': 1,  # Never poll a marker twice at once
            'misfire_grace_time': None,
        }
        scheduler_cls = BlockingScheduler if foreground else BackgroundScheduler
        self.scheduler = scheduler_cls(executors=executors, job_defaults=job_defaults)

        for watcher in self.watchers:
            self.scheduler.add_job(
                self.poll_watcher,
                'interval',
                seconds=config.poll_seconds,
                args=[watcher],
                id=f"watch-{watcher.signal.name}",
                next_run_time=datetime.now(),
                replace_existing=True,
            )

        self._setup_event_listeners()

    def _handler(self, category: str):
        def run():
            return self.runner.run_category(category)
        return run

    def poll_watcher(self, watcher: SignalWatcher) -> int:
        """Poll one marker, running its category while it keeps firing."""
        if not watcher.signal.pending():
            return 0
        self.state = ServiceState.ACTIVE
        try:
            return watcher.poll()
        finally:
            self.state = ServiceState.IDLE

    def poll_once(self) -> int:
        """Poll every watched marker once (used for service-manager activations)."""
        return sum(self.poll_watcher(w) for w in self.watchers)

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_error_listener(event):
            if isinstance(event.exception, InvalidRoot):
                logger.critical(f"Queue root is gone, stopping {self.context} service: {event.exception}")
                self.stop(wait=False)
                return
            logger.error(f"Job '{event.job_id}' raised exception: {event.exception}")

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed scheduled run time")

        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop(wait=False)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def start(self):
        """Start the service; blocks in foreground mode."""
        running, pid = is_service_running(self.config, self.context)
        if running and pid != os.getpid():
            logger.warning(f"The {self.context} service is already running (PID: {pid})")
            return

        logger.info(f"Starting {self.context} service, watching: "
                    f"{', '.join(str(w.signal.path) for w in self.watchers)}")
        logger.info(f"Host: {sysinfo.host_facts()}")

        self._write_pid_file()
        self._setup_signal_handlers()
        self.state = ServiceState.IDLE
        self.scheduler.start()

    def _write_pid_file(self):
        """Write the current process PID and service info files."""
        pid_file = self.config.pid_path(self.context)
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))

        info = {
            'pid': os.getpid(),
            'context': self.context,
            'started_at': datetime.now().isoformat(),
            'root': str(self.config.root),
            'config_path': str(self.config.config_path),
            'watching': [str(w.signal.path) for w in self.watchers],
            'poll_seconds': self.config.poll_seconds,
            'log_file': str(self.config.log_file),
            'history_file': str(self.config.history_path(self.context)),
        }
        try:
            atomic_write_json(self.config.info_path(self.context), info)
        except OSError as e:
            logger.warning(f"Failed to write service info file: {e}")

        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        """Remove the PID and info files."""
        for path in (self.config.pid_path(self.context), self.config.info_path(self.context)):
            try:
                Path(path).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.debug(f"Failed to remove {path}: {e}")

    def stop(self, wait: bool = True):
        """
        Stop the service.

        A running category is interrupted: its current unit is killed and
        recorded as failed, and the remaining units are not started.

        Args:
            wait: If True, wait for the interrupted category run to wind down
        """
        if self.scheduler.running:
            logger.info(f"Stopping {self.context} service...")
            self.runner.stop()
            self.scheduler.shutdown(wait=wait)
            self._remove_pid_file()
            logger.info(f"{self.context.capitalize()} service stopped")
        self.state = ServiceState.REGISTERED
