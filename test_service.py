"""Tests for the resident service."""

import os
import shutil
import time

import pytest

from outset.jobs import HistoryStore
from outset.registration import ServiceState
from outset.registry import SYSTEM, USER
from outset.runner import FAILED
from outset.service import ResidentService, get_service_info, is_service_running
from outset.triggers import TriggerSignal


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def no_signal_handlers(monkeypatch):
    monkeypatch.setattr("outset.service.signal.signal", lambda *args: None)


def test_user_service_runs_on_demand_when_marker_appears(config, make_script, executed):
    make_script("on-demand", "01-refresh")
    service = ResidentService(config, USER, foreground=False)

    assert service.poll_once() == 0
    assert executed() == []

    TriggerSignal(config.on_demand_trigger).fire()
    assert service.poll_once() == 1
    assert executed() == ["01-refresh"]
    assert not config.on_demand_trigger.exists()
    assert service.state == ServiceState.IDLE


def test_rapid_markers_result_in_one_additional_run(config, make_script, executed):
    make_script("on-demand", "01-refresh")
    service = ResidentService(config, USER, foreground=False)
    trigger = TriggerSignal(config.on_demand_trigger)

    trigger.fire()
    trigger.fire()
    assert service.poll_once() == 1
    assert service.poll_once() == 0
    assert executed() == ["01-refresh"]


def test_system_service_runs_login_privileged(config, make_script, executed):
    make_script("login-privileged", "01-admin")
    service = ResidentService(config, SYSTEM, foreground=False)

    TriggerSignal(config.on_demand_trigger).fire()
    assert service.poll_once() == 0

    TriggerSignal(config.login_privileged_trigger).fire()
    assert service.poll_once() == 1
    assert executed() == ["01-admin"]
    assert service.runner.context == SYSTEM


def test_failed_units_do_not_stop_the_service(config, make_script, executed):
    make_script("on-demand", "01-bad", exit_code=1)
    make_script("on-demand", "02-good")
    service = ResidentService(config, USER, foreground=False)
    trigger = TriggerSignal(config.on_demand_trigger)

    trigger.fire()
    service.poll_once()
    trigger.fire()
    service.poll_once()

    assert executed() == ["01-bad", "02-good", "01-bad", "02-good"]


def test_pid_and_info_files(config):
    service = ResidentService(config, USER, foreground=False)
    assert is_service_running(config, USER) == (False, None)

    service._write_pid_file()
    try:
        assert is_service_running(config, USER) == (True, os.getpid())
        info = get_service_info(config, USER)
        assert info["context"] == USER
        assert info["watching"] == [str(config.on_demand_trigger)]
    finally:
        service._remove_pid_file()

    assert not config.pid_path(USER).exists()
    assert get_service_info(config, USER) is None


def test_background_service_picks_up_marker(config, make_script, executed, no_signal_handlers):
    config.poll_seconds = 1
    make_script("on-demand", "01-refresh")
    TriggerSignal(config.on_demand_trigger).fire()

    service = ResidentService(config, USER, foreground=False)
    service.start()
    try:
        assert _wait_for(lambda: executed() == ["01-refresh"])
    finally:
        service.stop()

    assert not service.scheduler.running
    assert not config.pid_path(USER).exists()


def test_vanished_root_stops_the_service(config, no_signal_handlers):
    config.poll_seconds = 1
    shutil.rmtree(config.root)
    TriggerSignal(config.on_demand_trigger).fire()

    service = ResidentService(config, USER, foreground=False)
    service.start()
    try:
        assert _wait_for(lambda: not service.scheduler.running)
    finally:
        service.stop()


def test_unknown_context(config):
    with pytest.raises(ValueError):
        ResidentService(config, "root", foreground=False)


def test_stop_interrupts_a_running_category(config, make_script, executed, no_signal_handlers):
    config.poll_seconds = 1
    make_script("on-demand", "01-slow", body="sleep 30")
    make_script("on-demand", "02-after")
    TriggerSignal(config.on_demand_trigger).fire()

    service = ResidentService(config, USER, foreground=False)
    service.start()
    try:
        assert _wait_for(lambda: executed() == ["01-slow"])
        time.sleep(0.2)
    finally:
        service.stop()

    time.sleep(0.5)
    assert executed() == ["01-slow"]
    (record,) = HistoryStore(config.history_path(USER)).get_history()
    assert [r["status"] for r in record["results"]] == [FAILED]
