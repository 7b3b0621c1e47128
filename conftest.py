"""Shared fixtures: a queue root and helpers that seed it with shell scripts."""

import json
import stat

import pytest

from outset.config import OutsetConfig
from outset.ledger import RunLedger
from outset.registry import SYSTEM, USER, ensure_layout
from outset.runner import ExecutionScheduler
from outset.triggers import TriggerSignal


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("OUTSET_ROOT", "OUTSET_CONFIG_PATH", "OUTSET_STATE_DIR", "OUTSET_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def queue_root(tmp_path):
    return ensure_layout(tmp_path / "outset")


@pytest.fixture
def run_log(tmp_path):
    """File every seeded script appends its own name to."""
    return tmp_path / "run.log"


@pytest.fixture
def make_script(queue_root, run_log):
    def _make(category, name, exit_code=0, body="", executable=True):
        path = queue_root / category / name
        path.write_text(
            "#!/bin/sh\n"
            f"echo {name} >> '{run_log}'\n"
            f"{body}\n"
            f"exit {exit_code}\n"
        )
        if executable:
            path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path
    return _make


@pytest.fixture
def executed(run_log):
    """Names of the scripts that ran, in order."""
    def _read():
        if not run_log.exists():
            return []
        return run_log.read_text().split()
    return _read


@pytest.fixture
def config(tmp_path, queue_root):
    (tmp_path / "config.json").write_text(json.dumps({
        "trigger_dir": str(tmp_path / "triggers"),
        "daemon_dir": str(tmp_path / "LaunchDaemons"),
        "agent_dir": str(tmp_path / "LaunchAgents"),
        "system_state_dir": str(tmp_path / "system-state"),
        "log_dir": str(tmp_path / "logs"),
        "loader_command": [],
        "unloader_command": [],
    }))
    return OutsetConfig.load(
        root=str(queue_root),
        config_path=str(tmp_path / "config.json"),
        state_dir=str(tmp_path / "user-state"),
    )


@pytest.fixture
def privileged_signal(tmp_path):
    return TriggerSignal(tmp_path / "triggers" / "login-privileged", "login-privileged")


@pytest.fixture
def system_scheduler(queue_root, tmp_path, privileged_signal):
    return ExecutionScheduler(queue_root, SYSTEM, RunLedger(tmp_path / "ledger-system.json"),
                              privileged_signal=privileged_signal)


@pytest.fixture
def user_scheduler(queue_root, tmp_path, privileged_signal):
    return ExecutionScheduler(queue_root, USER, RunLedger(tmp_path / "ledger-user.json"),
                              privileged_signal=privileged_signal)
