"""
Trigger sources.

Lifecycle triggers (boot, login) are delivered by the host's service
manager, which simply invokes the matching CLI command; nothing here polls
for them.

External signals are marker files. Whoever wants a run creates the marker;
the resident service that owns it deletes it and then runs. Deleting before
running means a marker created mid-run is seen on the next check, and any
number of creations before a check collapse into a single run.
"""

import logging
import os
from pathlib import Path
from typing import Callable, Optional

from outset.errors import InvalidRoot

logger = logging.getLogger(__name__)


class TriggerSignal:
    """A marker file whose presence means a run is pending."""

    def __init__(self, path: Path, name: Optional[str] = None):
        self.path = Path(path)
        self.name = name or self.path.name

    def fire(self):
        """Create the marker. Firing an already pending signal is a no-op."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
        logger.debug(f"Fired trigger '{self.name}': {self.path}")

    def pending(self) -> bool:
        return self.path.exists()

    def consume(self) -> bool:
        """
        Delete the marker.

        Returns:
            True if this call removed it, False if it was not there
        """
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            return False
        logger.debug(f"Consumed trigger '{self.name}'")
        return True

    def __repr__(self):
        return f"TriggerSignal(name={self.name!r}, path={self.path})"


class SignalWatcher:
    """
    Single-consumer watcher for one TriggerSignal.

    poll() is called periodically. A consumed marker sets a boolean pending
    flag; the handler then runs until no new marker showed up while it was
    running. Signals are never counted, only coalesced.
    """

    def __init__(self, signal: TriggerSignal, handler: Callable[[], object]):
        self.signal = signal
        self.handler = handler
        self._pending = False
        self.runs = 0

    def poll(self) -> int:
        """
        Check the marker and run the handler if it was pending.

        Returns:
            Number of handler runs performed by this call
        """
        if self.signal.consume():
            self._pending = True

        runs = 0
        while self._pending:
            self._pending = False
            logger.info(f"Trigger '{self.signal.name}' received, running handler")
            try:
                self.handler()
            except InvalidRoot:
                raise
            except Exception as e:
                logger.error(f"Handler for trigger '{self.signal.name}' failed: {e}", exc_info=True)
            runs += 1
            if self.signal.consume():
                logger.info(f"Trigger '{self.signal.name}' fired again during run, queued")
                self._pending = True

        self.runs += runs
        return runs
