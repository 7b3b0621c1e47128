"""
Run-state ledger for "once" units.

Records which once-units completed successfully, per privilege context.
The file layout is:

    {
      "system": {"/usr/local/outset/boot-once/01-setup:3b1f...": "2026-10-18T09:12:44"},
      "user":   {...}
    }

A unit identity is its absolute path plus a SHA-256 of its content, so
replacing a script's content under the same name makes it eligible again,
while an untouched script is never re-run.

The ledger fails open: an unreadable or corrupt file reads as empty and
is logged, because skipping a once-suppression is less harmful than
halting boot or login processing.
"""

import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from outset.atomic import atomic_write_json
from outset.errors import LedgerError
from outset.registry import Unit

logger = logging.getLogger(__name__)


def _file_fingerprint(file_path: Path) -> str:
    """SHA-256 of the file content"""
    sha = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha.update(chunk)
    return sha.hexdigest()


def unit_identity(unit: Unit) -> str:
    """
    Ledger key for a unit.

    Raises:
        OSError: If the unit cannot be read
    """
    return f"{unit.path}:{_file_fingerprint(unit.path)}"


class RunLedger:
    """
    Persistent (context, identity) -> completion marker mapping.

    Every write replaces the whole file atomically. The file is re-read
    before each write so that records made by another process since the
    last read are kept.
    """

    def __init__(self, ledger_file: Path):
        """
        Initialize the ledger.

        Args:
            ledger_file: Path of the JSON ledger file (created on first write)
        """
        self.ledger_file = Path(ledger_file)

    def _read(self) -> Dict[str, Dict[str, str]]:
        """Read the ledger, treating anything unusable as empty."""
        if not self.ledger_file.exists():
            return {}
        try:
            with open(self.ledger_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Ledger {self.ledger_file} is unreadable, treating as empty: {e}")
            return {}

        if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
            logger.warning(f"Ledger {self.ledger_file} has an unexpected shape, treating as empty")
            return {}
        return data

    def _write(self, data: Dict[str, Dict[str, str]]):
        try:
            atomic_write_json(self.ledger_file, data)
        except OSError as e:
            raise LedgerError(f"Failed to write ledger {self.ledger_file}: {e}") from e

    def has_run(self, identity: str, context: str) -> bool:
        """Whether identity has completed under context."""
        return identity in self._read().get(context, {})

    def mark_run(self, identity: str, context: str):
        """
        Record identity as completed under context. Idempotent.

        Raises:
            LedgerError: If the ledger file cannot be written
        """
        data = self._read()
        records = data.setdefault(context, {})
        if identity in records:
            return
        records[identity] = datetime.now().isoformat(timespec="seconds")
        self._write(data)
        logger.debug(f"Marked as run [{context}]: {identity}")

    def records(self, context: Optional[str] = None) -> Dict[str, Dict[str, str]]:
        """All records, or only those of one context."""
        data = self._read()
        if context:
            return {context: data.get(context, {})}
        return data

    def clear(self, context: str, identity: Optional[str] = None) -> int:
        """
        Remove records of a context (all, or a single identity).

        Returns:
            Number of records removed

        Raises:
            LedgerError: If the ledger file cannot be written
        """
        data = self._read()
        records = data.get(context, {})
        if identity is None:
            removed = len(records)
            data.pop(context, None)
        else:
            removed = 1 if records.pop(identity, None) is not None else 0

        if removed:
            self._write(data)
            logger.info(f"Removed {removed} ledger record(s) for context '{context}'")
        return removed

    def __repr__(self):
        return f"RunLedger(path={self.ledger_file})"
