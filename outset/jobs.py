"""
Unit execution and run history.

Runs a single queue unit as a child process with its output streamed into
the log, and persists category run reports to a JSON history file.
No timeout is imposed here; a surrounding supervisor or a stopping service
may kill the child, which is then reported as a failure.
"""

import json
import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from outset.atomic import atomic_write_json
from outset.config import DEFAULT_INSTALLER_COMMAND
from outset.errors import UnitExecutionError
from outset.registry import Unit

logger = logging.getLogger(__name__)


class HistoryStore:
    """
    Persists category run reports to a JSON file.

    Each record contains:
    - run_id: Unique run identifier
    - category: Category name
    - context: Privilege context that ran it
    - start_time / end_time: ISO timestamps
    - results: List of {unit, status, returncode, error}
    """

    def __init__(self, history_file: Path, max_entries: int = 1000):
        """
        Initialize history store.

        Args:
            history_file: Path to history JSON file
            max_entries: Maximum number of history entries to keep
        """
        self.history_file = Path(history_file)
        self.max_entries = max_entries

    def _read_history(self) -> List[Dict[str, Any]]:
        """Read history from file."""
        try:
            with open(self.history_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, FileNotFoundError, UnicodeDecodeError):
            return []
        return data if isinstance(data, list) else []

    def add_run(self, record: Dict[str, Any]):
        """
        Add a run record to history.

        Args:
            record: Run record dictionary
        """
        history = self._read_history()
        history.append(record)

        # Keep most recent
        if len(history) > self.max_entries:
            history = history[-self.max_entries:]

        atomic_write_json(self.history_file, history)

    def get_history(
        self,
        category: Optional[str] = None,
        failed_only: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get run history with optional filters.

        Args:
            category: Filter by category name
            failed_only: Only runs with at least one failed unit
            limit: Maximum number of entries to return

        Returns:
            List of run records (most recent first)
        """
        history = self._read_history()

        if category:
            history = [r for r in history if r.get('category') == category]
        if failed_only:
            history = [
                r for r in history
                if any(u.get('status') == 'failed' for u in r.get('results', []))
            ]

        history.sort(key=lambda r: r.get('start_time', ''), reverse=True)

        if limit:
            history = history[:limit]
        return history

    def clear_history(self):
        atomic_write_json(self.history_file, [])


class UnitExecutor:
    """
    Runs units as child processes.

    Scripts are executed directly (no shell) and must carry the executable
    bit. Installer packages are handed to the installer command, where the
    '{path}' placeholder is replaced by the package path.

    Each child runs in its own process group. terminate() kills the group of
    the running child and refuses further units, so a stopping service never
    waits for, or starts, queued work.
    """

    def __init__(self, installer_command: Optional[List[str]] = None):
        self.installer_command = list(installer_command or DEFAULT_INSTALLER_COMMAND)
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._terminated = False

    def build_command(self, unit: Unit) -> List[str]:
        """
        Argument vector for a unit.

        Raises:
            UnitExecutionError: If a script is not executable
        """
        if unit.is_package:
            return [part.replace('{path}', str(unit.path)) for part in self.installer_command]
        if not unit.executable:
            raise UnitExecutionError(f"{unit.path} is not executable")
        return [str(unit.path)]

    def terminate(self):
        """Kill the running child (if any) and refuse to start new ones."""
        with self._lock:
            self._terminated = True
            process = self._process
        if process is not None:
            logger.warning(f"Terminating unit process {process.pid}")
            _kill_process_group(process)

    def execute_unit(self, unit: Unit, env: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Execute a unit and wait for it.

        Args:
            unit: Unit to run
            env: Environment for the child (inherits ours if None)

        Returns:
            Dict with stdout, stderr, returncode

        Raises:
            UnitExecutionError: If the unit cannot be launched, exits non-zero
                or is killed by terminate()
        """
        log_prefix = f"[{unit.category.name}:{unit.name}] "
        command = self.build_command(unit)

        with self._lock:
            if self._terminated:
                raise UnitExecutionError(f"{log_prefix}Not started, executor is terminated")
            logger.info(f"{log_prefix}Executing: {' '.join(command)}")
            try:
                process = subprocess.Popen(
                    command,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    stdin=subprocess.DEVNULL,
                    text=True,
                    errors='replace',
                    cwd=str(unit.path.parent),
                    env=env,
                    start_new_session=True
                )
            except OSError as e:
                raise UnitExecutionError(f"{log_prefix}Failed to launch: {e}") from e
            self._process = process

        stdout_lines = []
        stderr_lines = []

        def read_stream(stream, output_list, log_func):
            for line in stream:
                line = line.rstrip('\n')
                output_list.append(line)
                log_func(f"{log_prefix}{line}")

        stdout_thread = threading.Thread(
            target=read_stream,
            args=(process.stdout, stdout_lines, logger.info)
        )
        stderr_thread = threading.Thread(
            target=read_stream,
            args=(process.stderr, stderr_lines, logger.warning)
        )
        stdout_thread.start()
        stderr_thread.start()

        try:
            process.wait()
        except BaseException:
            # Interrupted in the calling thread: take the child down with us
            _kill_process_group(process)
            process.wait()
            raise
        finally:
            stdout_thread.join()
            stderr_thread.join()
            with self._lock:
                self._process = None

        stdout = '\n'.join(stdout_lines)
        stderr = '\n'.join(stderr_lines)

        if process.returncode != 0:
            raise UnitExecutionError(
                f"{log_prefix}Exited with status {process.returncode}",
                returncode=process.returncode
            )

        return {
            'stdout': stdout,
            'stderr': stderr,
            'returncode': process.returncode
        }


def _kill_process_group(process: subprocess.Popen):
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.debug(f"Failed to kill process group {process.pid}: {e}")
        process.kill()
