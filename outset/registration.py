"""
Service registration for the two privilege contexts.

Each resident service is described by a launchd-style property list. System
context services are daemons (run as root), user context services are agents
(run in every user session). The login-window service is the exception: a
system context agent loaded into the login window session, where it runs as
root. Registration writes the descriptor and asks the service manager to load
it; it is idempotent and done once at install time.

    io.outset.boot               system  boot          outset boot
    io.outset.cleanup            system  boot          outset cleanup
    io.outset.login-privileged   system  on-demand     outset login-privileged
    io.outset.login-window       system  login-window  outset --context system login
    io.outset.login              user    login         outset login
    io.outset.on-demand          user    on-demand     outset on-demand

Each registration is attempted on its own; a failure is reported for that
label and does not stop the others. A service whose loader fails is left
unregistered so the next attempt starts from scratch.
"""

import logging
import plistlib
import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from outset.atomic import atomic_write_bytes
from outset.config import OutsetConfig
from outset.errors import RegistrationError
from outset.registry import SYSTEM, USER

logger = logging.getLogger(__name__)

# Descriptor trigger kinds
TRIGGER_BOOT = "boot"
TRIGGER_LOGIN = "login"
TRIGGER_ON_DEMAND = "on-demand"
TRIGGER_LOGIN_WINDOW = "login-window"


class ServiceState(Enum):
    """Lifecycle of a resident service."""
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    ACTIVE = "active"
    IDLE = "idle"


@dataclass
class ServiceDescriptor:
    """Declarative record of one resident service."""
    label: str
    context: str  # 'system' or 'user'
    trigger: str  # 'boot', 'login', 'login-window' or 'on-demand'
    program_arguments: List[str]
    watch_paths: List[str] = field(default_factory=list)
    log_path: Optional[str] = None

    def to_plist(self) -> Dict:
        """launchd property list for this descriptor."""
        plist = {
            "Label": self.label,
            "ProgramArguments": list(self.program_arguments),
        }
        if self.trigger in (TRIGGER_BOOT, TRIGGER_LOGIN, TRIGGER_LOGIN_WINDOW):
            plist["RunAtLoad"] = True
        if self.trigger == TRIGGER_LOGIN:
            plist["LimitLoadToSessionType"] = "Aqua"
        elif self.trigger == TRIGGER_LOGIN_WINDOW:
            plist["LimitLoadToSessionType"] = "LoginWindow"
        if self.watch_paths:
            plist["WatchPaths"] = list(self.watch_paths)
        if self.log_path:
            plist["StandardOutPath"] = self.log_path
            plist["StandardErrorPath"] = self.log_path
        return plist

    @property
    def is_agent(self) -> bool:
        """Whether launchd loads this descriptor per session (agent) rather than once (daemon)."""
        return self.context == USER or self.trigger == TRIGGER_LOGIN_WINDOW

    def to_bytes(self) -> bytes:
        return plistlib.dumps(self.to_plist(), fmt=plistlib.FMT_XML, sort_keys=True)


def default_descriptors(config: OutsetConfig, program: Optional[List[str]] = None) -> List[ServiceDescriptor]:
    """
    The six outset services.

    Args:
        config: Resolved configuration
        program: Command prefix that runs the outset CLI
            (default: current interpreter with -m outset.cli)
    """
    program = list(program or [sys.executable, "-m", "outset.cli"])
    prefix = config.label_prefix
    root_args = ["--root", str(config.root)]

    def make(name, context, trigger, command, watch=None):
        command = command if isinstance(command, list) else [command]
        return ServiceDescriptor(
            label=f"{prefix}.{name}",
            context=context,
            trigger=trigger,
            program_arguments=program + root_args + command,
            watch_paths=[str(watch)] if watch else [],
        )

    return [
        make("boot", SYSTEM, TRIGGER_BOOT, "boot"),
        make("cleanup", SYSTEM, TRIGGER_BOOT, "cleanup"),
        make("login-privileged", SYSTEM, TRIGGER_ON_DEMAND, "login-privileged",
             watch=config.login_privileged_trigger),
        make("login-window", SYSTEM, TRIGGER_LOGIN_WINDOW, ["--context", SYSTEM, "login"]),
        make("login", USER, TRIGGER_LOGIN, "login"),
        make("on-demand", USER, TRIGGER_ON_DEMAND, "on-demand",
             watch=config.on_demand_trigger),
    ]


class ServiceManager:
    """
    Registers service descriptors with the host's service manager.

    Descriptors are written to the daemon directory or, for agents (user
    context and login-window), to the agent directory. The loader/unloader
    commands are run with '{path}' replaced by the descriptor path; an empty
    command skips that step.
    """

    def __init__(
        self,
        daemon_dir: Path,
        agent_dir: Path,
        loader_command: Optional[List[str]] = None,
        unloader_command: Optional[List[str]] = None,
    ):
        self.daemon_dir = Path(daemon_dir)
        self.agent_dir = Path(agent_dir)
        self.loader_command = list(loader_command or [])
        self.unloader_command = list(unloader_command or [])
        self._states: Dict[str, ServiceState] = {}

    @classmethod
    def from_config(cls, config: OutsetConfig) -> "ServiceManager":
        return cls(
            daemon_dir=config.daemon_dir,
            agent_dir=config.agent_dir,
            loader_command=config.loader_command,
            unloader_command=config.unloader_command,
        )

    def descriptor_path(self, descriptor: ServiceDescriptor) -> Path:
        directory = self.agent_dir if descriptor.is_agent else self.daemon_dir
        return directory / f"{descriptor.label}.plist"

    def _run(self, command: List[str], path: Path, label: str):
        if not command:
            return
        argv = [part.replace("{path}", str(path)) for part in command]
        try:
            result = subprocess.run(argv, capture_output=True, text=True, check=False)
        except OSError as e:
            raise RegistrationError(label, f"failed to run {argv[0]}: {e}") from e
        if result.returncode != 0:
            raise RegistrationError(
                label, f"{' '.join(argv)} exited {result.returncode}: {result.stderr.strip()}"
            )

    def register(self, descriptor: ServiceDescriptor) -> bool:
        """
        Register one service.

        Returns:
            True if the descriptor was written, False if an identical one
            was already registered

        Raises:
            RegistrationError: If the descriptor cannot be written or loaded;
                a descriptor that failed to load is removed again
        """
        path = self.descriptor_path(descriptor)
        payload = descriptor.to_bytes()

        try:
            if path.exists() and path.read_bytes() == payload:
                logger.info(f"Service '{descriptor.label}' already registered")
                self._states[descriptor.label] = ServiceState.REGISTERED
                return False
            atomic_write_bytes(path, payload, mode=0o644)
        except OSError as e:
            raise RegistrationError(descriptor.label, f"cannot write {path}: {e}") from e

        try:
            self._run(self.loader_command, path, descriptor.label)
        except RegistrationError:
            # Not loaded: drop the descriptor so a retry loads it again
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove unloaded descriptor {path}: {e}")
            self._states[descriptor.label] = ServiceState.UNREGISTERED
            raise
        self._states[descriptor.label] = ServiceState.REGISTERED
        logger.info(f"Registered service '{descriptor.label}' ({descriptor.context}, {descriptor.trigger})")
        return True

    def register_all(self, descriptors: List[ServiceDescriptor]) -> Dict[str, Optional[RegistrationError]]:
        """
        Register every descriptor independently.

        Returns:
            Map of label -> None on success, or the RegistrationError
        """
        outcome = {}
        for descriptor in descriptors:
            try:
                self.register(descriptor)
                outcome[descriptor.label] = None
            except RegistrationError as e:
                logger.error(f"Failed to register service: {e}")
                outcome[descriptor.label] = e
        return outcome

    def unregister(self, descriptor: ServiceDescriptor) -> bool:
        """
        Unregister one service (uninstall).

        Returns:
            True if a descriptor was removed, False if none was registered

        Raises:
            RegistrationError: If the service cannot be unloaded or removed
        """
        path = self.descriptor_path(descriptor)
        if not path.exists():
            self._states[descriptor.label] = ServiceState.UNREGISTERED
            return False

        self._run(self.unloader_command, path, descriptor.label)
        try:
            path.unlink()
        except OSError as e:
            raise RegistrationError(descriptor.label, f"cannot remove {path}: {e}") from e

        self._states[descriptor.label] = ServiceState.UNREGISTERED
        logger.info(f"Unregistered service '{descriptor.label}'")
        return True

    def is_registered(self, descriptor: ServiceDescriptor) -> bool:
        return self.descriptor_path(descriptor).exists()

    def state(self, descriptor: ServiceDescriptor) -> ServiceState:
        """Current state; active/idle are only known to the running service."""
        if not self.is_registered(descriptor):
            return ServiceState.UNREGISTERED
        state = self._states.get(descriptor.label, ServiceState.REGISTERED)
        return ServiceState.REGISTERED if state == ServiceState.UNREGISTERED else state

    def mark(self, descriptor: ServiceDescriptor, state: ServiceState):
        """Record an active/idle transition of a registered service."""
        if state in (ServiceState.ACTIVE, ServiceState.IDLE) and not self.is_registered(descriptor):
            raise RegistrationError(descriptor.label, f"cannot become {state.value} while unregistered")
        self._states[descriptor.label] = state
