"""Tests for service registration."""

import plistlib

import pytest

from outset.errors import RegistrationError
from outset.registration import (
    TRIGGER_BOOT, TRIGGER_LOGIN, TRIGGER_LOGIN_WINDOW, TRIGGER_ON_DEMAND,
    ServiceDescriptor, ServiceManager, ServiceState, default_descriptors,
)
from outset.registry import SYSTEM, USER


@pytest.fixture
def manager(tmp_path):
    return ServiceManager(tmp_path / "LaunchDaemons", tmp_path / "LaunchAgents")


def test_default_descriptors(config):
    descriptors = {d.label: d for d in default_descriptors(config, program=["outset"])}

    assert set(descriptors) == {
        "io.outset.boot", "io.outset.cleanup", "io.outset.login-privileged",
        "io.outset.login-window", "io.outset.login", "io.outset.on-demand",
    }
    assert descriptors["io.outset.boot"].context == SYSTEM
    assert descriptors["io.outset.boot"].trigger == TRIGGER_BOOT
    assert descriptors["io.outset.login"].context == USER
    assert descriptors["io.outset.login"].trigger == TRIGGER_LOGIN
    assert descriptors["io.outset.on-demand"].watch_paths == [str(config.on_demand_trigger)]
    assert descriptors["io.outset.login-privileged"].context == SYSTEM
    assert descriptors["io.outset.login-privileged"].watch_paths == [str(config.login_privileged_trigger)]
    assert descriptors["io.outset.on-demand"].program_arguments == [
        "outset", "--root", str(config.root), "on-demand"
    ]

    # login-window units run as root at the login window, through the system login lifecycle
    login_window = descriptors["io.outset.login-window"]
    assert login_window.context == SYSTEM
    assert login_window.trigger == TRIGGER_LOGIN_WINDOW
    assert login_window.program_arguments == [
        "outset", "--root", str(config.root), "--context", "system", "login"
    ]
    assert plistlib.loads(login_window.to_bytes())["LimitLoadToSessionType"] == "LoginWindow"


def test_plist_content():
    descriptor = ServiceDescriptor("io.outset.on-demand", USER, TRIGGER_ON_DEMAND,
                                   ["outset", "on-demand"], watch_paths=["/tmp/.trigger"])
    plist = plistlib.loads(descriptor.to_bytes())
    assert plist == {
        "Label": "io.outset.on-demand",
        "ProgramArguments": ["outset", "on-demand"],
        "WatchPaths": ["/tmp/.trigger"],
    }

    login = ServiceDescriptor("io.outset.login", USER, TRIGGER_LOGIN, ["outset", "login"],
                              log_path="/var/log/outset.log")
    plist = plistlib.loads(login.to_bytes())
    assert plist["RunAtLoad"] is True
    assert plist["LimitLoadToSessionType"] == "Aqua"
    assert plist["StandardOutPath"] == plist["StandardErrorPath"] == "/var/log/outset.log"


def test_register_writes_descriptor_by_context(manager, config, tmp_path):
    outcome = manager.register_all(default_descriptors(config))

    assert all(error is None for error in outcome.values())
    assert sorted(p.name for p in (tmp_path / "LaunchDaemons").iterdir()) == [
        "io.outset.boot.plist", "io.outset.cleanup.plist", "io.outset.login-privileged.plist",
    ]
    assert sorted(p.name for p in (tmp_path / "LaunchAgents").iterdir()) == [
        "io.outset.login-window.plist", "io.outset.login.plist", "io.outset.on-demand.plist",
    ]


def test_register_is_idempotent(manager, config, tmp_path):
    boot = default_descriptors(config)[0]
    assert manager.register(boot) is True
    assert manager.register(boot) is False
    assert len(list((tmp_path / "LaunchDaemons").iterdir())) == 1
    assert manager.state(boot) == ServiceState.REGISTERED


def test_one_failure_does_not_block_the_others(tmp_path, config):
    # Daemon directory cannot be created: a file is in the way
    blocker = tmp_path / "blocked"
    blocker.write_text("")
    manager = ServiceManager(blocker / "LaunchDaemons", tmp_path / "LaunchAgents")

    outcome = manager.register_all(default_descriptors(config))

    failed = {label for label, error in outcome.items() if error is not None}
    assert failed == {"io.outset.boot", "io.outset.cleanup", "io.outset.login-privileged"}
    assert isinstance(outcome["io.outset.boot"], RegistrationError)
    assert outcome["io.outset.login"] is None
    assert outcome["io.outset.on-demand"] is None


def test_loader_failure_is_reported(tmp_path, config):
    manager = ServiceManager(tmp_path / "d", tmp_path / "a", loader_command=["false", "{path}"])
    boot = default_descriptors(config)[0]
    with pytest.raises(RegistrationError) as excinfo:
        manager.register(boot)
    assert excinfo.value.label == boot.label


def test_failed_load_leaves_service_unregistered_and_retryable(tmp_path, config):
    boot = default_descriptors(config)[0]
    failing = ServiceManager(tmp_path / "d", tmp_path / "a", loader_command=["false", "{path}"])
    with pytest.raises(RegistrationError):
        failing.register(boot)

    assert failing.state(boot) == ServiceState.UNREGISTERED
    assert not failing.descriptor_path(boot).exists()

    calls = tmp_path / "calls.log"
    loader = tmp_path / "loader"
    loader.write_text(f"#!/bin/sh\necho \"$1\" >> '{calls}'\n")
    loader.chmod(0o755)
    working = ServiceManager(tmp_path / "d", tmp_path / "a", loader_command=[str(loader), "{path}"])

    assert working.register(boot) is True
    assert calls.read_text().split() == [str(working.descriptor_path(boot))]
    assert working.state(boot) == ServiceState.REGISTERED


def test_loader_is_called_with_descriptor_path(tmp_path, config):
    calls = tmp_path / "calls.log"
    loader = tmp_path / "loader"
    loader.write_text(f"#!/bin/sh\necho \"$1\" >> '{calls}'\n")
    loader.chmod(0o755)
    manager = ServiceManager(tmp_path / "d", tmp_path / "a", loader_command=[str(loader), "{path}"])

    login = [d for d in default_descriptors(config) if d.label == "io.outset.login"][0]
    manager.register(login)
    manager.register(login)

    assert calls.read_text().split() == [str(tmp_path / "a" / "io.outset.login.plist")]


def test_unregister(manager, config):
    boot = default_descriptors(config)[0]
    manager.register(boot)

    assert manager.unregister(boot) is True
    assert manager.state(boot) == ServiceState.UNREGISTERED
    assert manager.unregister(boot) is False


def test_state_transitions(manager, config):
    boot = default_descriptors(config)[0]
    assert manager.state(boot) == ServiceState.UNREGISTERED
    with pytest.raises(RegistrationError):
        manager.mark(boot, ServiceState.ACTIVE)

    manager.register(boot)
    manager.mark(boot, ServiceState.ACTIVE)
    assert manager.state(boot) == ServiceState.ACTIVE
    manager.mark(boot, ServiceState.IDLE)
    assert manager.state(boot) == ServiceState.IDLE
