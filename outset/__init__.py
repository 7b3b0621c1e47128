"""
Outset

Runs administrator-supplied scripts and packages at boot, at user login
and on demand, in a system (root) or user privilege context.

Main Components:
- Directory registry: queue categories and their units
- RunLedger: which "once" units already ran, per context
- TriggerSignal / SignalWatcher: on-demand trigger markers
- ServiceManager: registration of the resident services
- ExecutionScheduler: runs a category and reports per-unit results
"""

from outset.config import OutsetConfig
from outset.ledger import RunLedger, unit_identity
from outset.registration import ServiceDescriptor, ServiceManager, ServiceState
from outset.registry import CATEGORIES, Category, Unit, list_categories, units_in
from outset.runner import ExecutionScheduler, RunReport, UnitResult
from outset.triggers import SignalWatcher, TriggerSignal

__version__ = "4.0.0"

__all__ = [
    "OutsetConfig",
    "RunLedger",
    "unit_identity",
    "ServiceDescriptor",
    "ServiceManager",
    "ServiceState",
    "CATEGORIES",
    "Category",
    "Unit",
    "list_categories",
    "units_in",
    "ExecutionScheduler",
    "RunReport",
    "UnitResult",
    "SignalWatcher",
    "TriggerSignal",
]
