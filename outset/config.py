"""
Configuration management for outset.

Every setting is resolved in the same order:
1. Explicitly passed argument
2. OUTSET_* environment variable
3. JSON config file ({root}/share/config.json)
4. Default

Directory structure:
    {root}/
    ├── boot-once/ ... on-demand/   # Queue categories
    └── share/
        ├── config.json             # Optional overrides
        ├── ledger-system.json      # Once-ledger of the system context
        └── history.json            # Run history of the system context
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from outset.atomic import atomic_write_json
from outset.errors import ConfigurationError
from outset.registry import SYSTEM, USER

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_ROOT = "/usr/local/outset"
DEFAULT_USER_STATE_DIR = "~/.outset"
DEFAULT_TRIGGER_DIR = "/tmp"
DEFAULT_DAEMON_DIR = "/Library/LaunchDaemons"
DEFAULT_AGENT_DIR = "/Library/LaunchAgents"
DEFAULT_LABEL_PREFIX = "io.outset"
DEFAULT_INSTALLER_COMMAND = ["/usr/sbin/installer", "-pkg", "{path}", "-target", "/"]
DEFAULT_LOADER_COMMAND = ["/bin/launchctl", "load", "-w", "{path}"]
DEFAULT_UNLOADER_COMMAND = ["/bin/launchctl", "unload", "-w", "{path}"]

# Environment variables
ENV_ROOT = "OUTSET_ROOT"
ENV_CONFIG_PATH = "OUTSET_CONFIG_PATH"
ENV_STATE_DIR = "OUTSET_STATE_DIR"
ENV_LOG_DIR = "OUTSET_LOG_DIR"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None  # Defaults to {log_dir}/outset.log


@dataclass
class OutsetConfig:
    """
    Resolved outset configuration.

    Use OutsetConfig.load() rather than the constructor so the resolution
    order is applied; the constructor takes already resolved values.
    """
    root: Path
    config_path: Path
    system_state_dir: Path
    user_state_dir: Path
    log_dir: Path
    on_demand_trigger: Path
    login_privileged_trigger: Path
    daemon_dir: Path = Path(DEFAULT_DAEMON_DIR)
    agent_dir: Path = Path(DEFAULT_AGENT_DIR)
    label_prefix: str = DEFAULT_LABEL_PREFIX
    poll_seconds: int = 10
    installer_command: List[str] = field(default_factory=lambda: list(DEFAULT_INSTALLER_COMMAND))
    loader_command: List[str] = field(default_factory=lambda: list(DEFAULT_LOADER_COMMAND))
    unloader_command: List[str] = field(default_factory=lambda: list(DEFAULT_UNLOADER_COMMAND))
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(
        cls,
        root: Optional[str] = None,
        config_path: Optional[str] = None,
        state_dir: Optional[str] = None,
    ) -> "OutsetConfig":
        """
        Resolve configuration from arguments, environment, file and defaults.

        Args:
            root: Queue root directory
            config_path: JSON config file
            state_dir: Directory for user-context state (ledger, history)

        Raises:
            ConfigurationError: If the config file exists but cannot be parsed
                or holds invalid values
        """
        root_path = _resolve_path(root, ENV_ROOT, None)
        if config_path or os.getenv(ENV_CONFIG_PATH):
            file_path = _resolve_path(config_path, ENV_CONFIG_PATH, None)
        else:
            file_path = (root_path or Path(DEFAULT_ROOT)) / "share" / "config.json"

        data = _load_config_file(file_path)

        if root_path is None:
            root_path = Path(data.get("root") or DEFAULT_ROOT).expanduser()

        user_state_dir = _resolve_path(state_dir, ENV_STATE_DIR, data.get("user_state_dir")) \
            or Path(DEFAULT_USER_STATE_DIR).expanduser()
        system_state_dir = Path(data.get("system_state_dir") or root_path / "share").expanduser()
        log_dir = _resolve_path(None, ENV_LOG_DIR, data.get("log_dir"))
        if log_dir is None:
            log_dir = system_state_dir / "logs" if _is_privileged() else user_state_dir / "logs"

        trigger_dir = Path(data.get("trigger_dir") or DEFAULT_TRIGGER_DIR)
        prefix = data.get("label_prefix", DEFAULT_LABEL_PREFIX)

        config = cls(
            root=root_path,
            config_path=file_path,
            system_state_dir=system_state_dir,
            user_state_dir=user_state_dir,
            log_dir=log_dir,
            on_demand_trigger=Path(data.get("on_demand_trigger")
                                   or trigger_dir / f".{prefix}.on-demand.trigger"),
            login_privileged_trigger=Path(data.get("login_privileged_trigger")
                                          or trigger_dir / f".{prefix}.login-privileged.trigger"),
            daemon_dir=Path(data.get("daemon_dir", DEFAULT_DAEMON_DIR)),
            agent_dir=Path(data.get("agent_dir", DEFAULT_AGENT_DIR)),
            label_prefix=prefix,
            poll_seconds=_config_int(data, "poll_seconds", 10),
            installer_command=list(data.get("installer_command", DEFAULT_INSTALLER_COMMAND)),
            loader_command=list(data.get("loader_command", DEFAULT_LOADER_COMMAND)),
            unloader_command=list(data.get("unloader_command", DEFAULT_UNLOADER_COMMAND)),
            logging=_logging_config(data.get("logging", {})),
        )
        logger.debug(f"Resolved configuration: {config}")
        return config

    def state_dir(self, context: str) -> Path:
        """State directory of a privilege context."""
        return self.system_state_dir if context == SYSTEM else self.user_state_dir

    def ledger_path(self, context: str) -> Path:
        return self.state_dir(context) / f"ledger-{context}.json"

    def history_path(self, context: str) -> Path:
        return self.state_dir(context) / f"history-{context}.json"

    def pid_path(self, context: str) -> Path:
        return self.state_dir(context) / f"outset-{context}.pid"

    def info_path(self, context: str) -> Path:
        return self.state_dir(context) / f"outset-{context}-info.json"

    @property
    def log_file(self) -> Path:
        if self.logging.file:
            return Path(self.logging.file).expanduser()
        return self.log_dir / "outset.log"

    def save(self):
        """Save the overridable settings to the config file."""
        data = {
            "root": str(self.root),
            "system_state_dir": str(self.system_state_dir),
            "user_state_dir": str(self.user_state_dir),
            "log_dir": str(self.log_dir),
            "on_demand_trigger": str(self.on_demand_trigger),
            "login_privileged_trigger": str(self.login_privileged_trigger),
            "daemon_dir": str(self.daemon_dir),
            "agent_dir": str(self.agent_dir),
            "label_prefix": self.label_prefix,
            "poll_seconds": self.poll_seconds,
            "installer_command": self.installer_command,
            "loader_command": self.loader_command,
            "unloader_command": self.unloader_command,
            "logging": asdict(self.logging),
        }
        atomic_write_json(self.config_path, data)
        logger.info(f"Saved configuration to {self.config_path}")

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.root.is_dir():
            errors.append(f"Queue root does not exist: {self.root}")
        if self.poll_seconds <= 0:
            errors.append("'poll_seconds' must be positive")
        if not self.installer_command or not any("{path}" in part for part in self.installer_command):
            errors.append("'installer_command' must contain a '{path}' placeholder")
        if self.loader_command and not any("{path}" in part for part in self.loader_command):
            errors.append("'loader_command' must contain a '{path}' placeholder")
        if self.on_demand_trigger == self.login_privileged_trigger:
            errors.append("On-demand and login-privileged triggers must be different files")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Unknown logging level: {self.logging.level}")

        return errors


def _resolve_path(explicit: Optional[str], env_var: str, from_file: Optional[str]) -> Optional[Path]:
    if explicit:
        logger.debug(f"Using explicitly provided value: {explicit}")
        return Path(explicit).expanduser()
    env_value = os.getenv(env_var)
    if env_value:
        logger.debug(f"Using value from {env_var}: {env_value}")
        return Path(env_value).expanduser()
    if from_file:
        return Path(from_file).expanduser()
    return None


def _config_int(data: Dict[str, Any], key: str, default: int) -> int:
    try:
        return int(data.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid '{key}' in config: {data.get(key)!r}") from e


def _logging_config(data: Any) -> LoggingConfig:
    if not isinstance(data, dict):
        raise ConfigurationError("'logging' in config must be a JSON object")
    try:
        return LoggingConfig(**data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid 'logging' section in config: {e}") from e


def _load_config_file(config_path: Path) -> Dict[str, Any]:
    """Load overrides from the config file, or {} if it does not exist."""
    if not config_path.exists():
        logger.debug(f"No config found at {config_path}, using defaults")
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a JSON object")
    return data


def _is_privileged() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def current_context() -> str:
    """Privilege context of the running process."""
    return SYSTEM if _is_privileged() else USER
