"""
Command-line interface for outset.

This is the host-integration layer: the service descriptors invoke these
commands when the host's service manager fires a lifecycle event or sees a
trigger marker appear. It also covers install-time registration, status
and history.

    outset boot               # boot-once, boot-every (system)
    outset login              # login-once, login-every, dispatch login-privileged (user)
                              # login-window (system)
    outset login-privileged   # consume marker, run login-privileged (system)
    outset on-demand          # consume marker, run on-demand (user)
    outset watch              # resident service for the current context
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from outset import sysinfo
from outset.config import OutsetConfig, current_context
from outset.errors import ConfigurationError, OutsetError
from outset.jobs import HistoryStore
from outset.ledger import RunLedger
from outset.registration import ServiceManager, default_descriptors
from outset.registry import BOOT, LOGIN, SYSTEM, USER, ensure_layout, list_categories, units_in
from outset.runner import FAILED, SKIPPED
from outset.service import ResidentService, build_scheduler, get_service_info, watched_signals
from outset.triggers import SignalWatcher, TriggerSignal

logger = logging.getLogger(__name__)


def setup_logging(log_file: str = None, verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
        except OSError as e:
            logger.warning(f"Cannot log to {log_path}: {e}")
            return
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)


def _context(args) -> str:
    return args.context or current_context()


def _report_exit(reports) -> int:
    """Exit status for a list of run reports."""
    return 1 if any(not r.ok for r in reports) else 0


def _print_report(report):
    print(f"\n{report.category} [{report.context}] run {report.run_id}")
    if not report.results:
        print("  (no units)")
    for result in report.results:
        line = f"  {result.status:<10} {result.unit}"
        if result.status == FAILED and result.error:
            line += f"  ({result.error})"
        print(line)


def cmd_lifecycle(args):
    """Run the categories bound to a lifecycle event."""
    context = _context(args)
    event = BOOT if args.command == 'boot' else LOGIN
    scheduler = build_scheduler(args.config_obj, context)
    reports = scheduler.run_lifecycle(event)
    if args.verbose:
        for report in reports:
            _print_report(report)
    return _report_exit(reports)


def cmd_triggered(args):
    """Consume a category's trigger marker and run it."""
    context = SYSTEM if args.command == 'login-privileged' else USER
    config = args.config_obj
    scheduler = build_scheduler(config, context)
    trigger = watched_signals(config, context)[args.command]

    reports = []
    watcher = SignalWatcher(trigger, lambda: reports.append(scheduler.run_category(args.command)))
    if args.force and not trigger.pending():
        trigger.fire()
    if watcher.poll() == 0:
        logger.info(f"No pending '{args.command}' trigger")
    return _report_exit(reports)


def cmd_run(args):
    """Run a single category in the current context."""
    scheduler = build_scheduler(args.config_obj, _context(args))
    report = scheduler.run_category(args.category)
    _print_report(report)
    return _report_exit([report])


def cmd_fire(args):
    """Create a trigger marker (e.g. from a package postinstall step)."""
    config = args.config_obj
    path = config.on_demand_trigger if args.trigger == 'on-demand' else config.login_privileged_trigger
    TriggerSignal(path, args.trigger).fire()
    logger.info(f"Fired '{args.trigger}' trigger: {path}")
    return 0


def cmd_cleanup(args):
    """Remove trigger markers left over from before boot."""
    config = args.config_obj
    removed = 0
    for context in (SYSTEM, USER):
        for trigger in watched_signals(config, context).values():
            if trigger.consume():
                logger.info(f"Removed stale trigger: {trigger.path}")
                removed += 1
    logger.info(f"Cleanup finished, {removed} stale trigger(s) removed")
    return 0


def cmd_watch(args):
    """Run the resident service of the current context in the foreground."""
    config = args.config_obj
    if args.poll_seconds:
        config.poll_seconds = args.poll_seconds
    service = ResidentService(config, _context(args), foreground=True)
    service.start()
    return 0


def _descriptors(args):
    descriptors = default_descriptors(args.config_obj)
    if args.only:
        descriptors = [d for d in descriptors if d.label in args.only or d.label.endswith(
            tuple(f".{name}" for name in args.only))]
    return descriptors


def cmd_register(args):
    """Register the service descriptors."""
    manager = ServiceManager.from_config(args.config_obj)
    if args.no_load:
        manager.loader_command = []
    outcome = manager.register_all(_descriptors(args))

    for label, error in outcome.items():
        mark = "✓" if error is None else "✗"
        print(f"  {mark} {label}" + ("" if error is None else f"  ({error})"))
    return 1 if any(outcome.values()) else 0


def cmd_unregister(args):
    """Unregister the service descriptors (uninstall)."""
    manager = ServiceManager.from_config(args.config_obj)
    if args.no_load:
        manager.unloader_command = []
    status = 0
    for descriptor in _descriptors(args):
        try:
            removed = manager.unregister(descriptor)
            print(f"  {'✓ removed' if removed else '- not registered'} {descriptor.label}")
        except OutsetError as e:
            logger.error(f"Failed to unregister: {e}")
            status = 1
    return status


def cmd_status(args):
    """Show registration, service and queue status."""
    config = args.config_obj
    manager = ServiceManager.from_config(config)

    print(f"\nQueue root: {config.root}")
    print("\nServices:")
    for descriptor in default_descriptors(config):
        state = manager.state(descriptor)
        print(f"  {descriptor.label:<36} {descriptor.context:<7} {state.value}")

    for context in (SYSTEM, USER):
        info = get_service_info(config, context)
        if info:
            print(f"\n  {context} service running (PID {info['pid']}), "
                  f"started {info.get('started_at', 'N/A')}")

    print("\nCategories:")
    try:
        categories = sorted(list_categories(config.root), key=lambda c: c.name)
    except ConfigurationError as e:
        print(f"  {e}")
        return 1
    for category in categories:
        count = len(units_in(config.root, category))
        print(f"  {category.name:<18} {category.context:<7} {category.policy:<6} {count} unit(s)")

    for context in (SYSTEM, USER):
        records = RunLedger(config.ledger_path(context)).records(context)[context]
        print(f"\nLedger [{context}]: {len(records)} completed once-unit(s)")
    print()
    return 0


def cmd_history(args):
    """Show category run history of a context."""
    store = HistoryStore(args.config_obj.history_path(_context(args)))
    if args.clear:
        store.clear_history()
        print("Run history cleared")
        return 0

    history = store.get_history(
        category=args.category,
        failed_only=args.failed,
        limit=None if args.show_all else args.limit
    )

    if args.json:
        print(json.dumps(history, indent=2))
        return 0

    if not history:
        print("No run history")
        return 0

    for record in history:
        results = record.get('results', [])
        failed = sum(1 for r in results if r.get('status') == FAILED)
        skipped = sum(1 for r in results if r.get('status') == SKIPPED)
        print(f"  {record.get('start_time', ''):<20} {record.get('category', ''):<18} "
              f"{record.get('run_id', '')}  {len(results)} unit(s), "
              f"{failed} failed, {skipped} skipped")
    return 0


def cmd_ledger(args):
    """Show or reset the once-ledger of a context."""
    context = _context(args)
    ledger = RunLedger(args.config_obj.ledger_path(context))
    if args.clear or args.forget:
        removed = ledger.clear(context, args.forget)
        print(f"Removed {removed} record(s)")
        return 0

    records = ledger.records(context)[context]
    for identity, completed in sorted(records.items()):
        print(f"  {completed}  {identity}")
    if not records:
        print("Ledger is empty")
    return 0


def cmd_sysinfo(args):
    """Print host facts."""
    for key, value in sysinfo.host_facts().items():
        print(f"  {key:<16} {value}")
    return 0


def cmd_init(args):
    """Create the queue layout and save the configuration."""
    config = args.config_obj
    ensure_layout(config.root)
    config.save()
    logger.info(f"Initialized queue at {config.root}")
    return 0


def cmd_show_config(args):
    """Show current configuration."""
    config = args.config_obj
    print(f"\nConfiguration file: {config.config_path}")
    print(f"Queue root:         {config.root}")
    print(f"On-demand trigger:  {config.on_demand_trigger}")
    print(f"Privileged trigger: {config.login_privileged_trigger}")
    print(f"System ledger:      {config.ledger_path(SYSTEM)}")
    print(f"User ledger:        {config.ledger_path(USER)}")
    print(f"Poll interval:      {config.poll_seconds}s")
    print(f"Log file:           {config.log_file}")

    errors = config.validate()
    for error in errors:
        print(f"  ! {error}")
    return 1 if errors else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='outset',
        description="Outset - run queued scripts and packages at boot, login and on demand",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('-r', '--root', type=str, help='Queue root directory')
    parser.add_argument('-c', '--config', type=str, help='Path to configuration file')
    parser.add_argument('--state-dir', type=str, help='State directory for the user context')
    parser.add_argument('--context', choices=[SYSTEM, USER],
                        help='Privilege context (default: derived from the effective user)')
    parser.add_argument('--log-file', type=str, help='Log file path')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    for name, help_text in (('boot', 'Run boot categories'),
                            ('login', 'Run login categories')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.set_defaults(func=cmd_lifecycle)

    for name in ('login-privileged', 'on-demand'):
        sub = subparsers.add_parser(name, help=f'Consume the {name} trigger and run the category')
        sub.add_argument('--force', action='store_true', help='Run even if no trigger is pending')
        sub.set_defaults(func=cmd_triggered)

    run_parser = subparsers.add_parser('run', help='Run a single category')
    run_parser.add_argument('category', help='Category name')
    run_parser.set_defaults(func=cmd_run)

    fire_parser = subparsers.add_parser('fire', help='Create a trigger marker')
    fire_parser.add_argument('trigger', choices=['on-demand', 'login-privileged'])
    fire_parser.set_defaults(func=cmd_fire)

    cleanup_parser = subparsers.add_parser('cleanup', help='Remove stale trigger markers')
    cleanup_parser.set_defaults(func=cmd_cleanup)

    watch_parser = subparsers.add_parser('watch', help='Run the resident service')
    watch_parser.add_argument('--poll-seconds', type=int, help='Trigger poll interval')
    watch_parser.set_defaults(func=cmd_watch)

    for name, func, help_text in (('register', cmd_register, 'Register services'),
                                  ('unregister', cmd_unregister, 'Unregister services')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('--only', nargs='+', help='Labels (or short names) to act on')
        sub.add_argument('--no-load', action='store_true',
                         help='Only write/remove descriptors, do not call the service manager')
        sub.set_defaults(func=func)

    status_parser = subparsers.add_parser('status', help='Show status')
    status_parser.set_defaults(func=cmd_status)

    history_parser = subparsers.add_parser('history', help='View category run history')
    history_parser.add_argument('--category', type=str, help='Filter by category')
    history_parser.add_argument('--failed', action='store_true', help='Only runs with failures')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of entries to show (default: 20)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all history entries')
    history_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    history_parser.add_argument('--clear', action='store_true', help='Delete the run history')
    history_parser.set_defaults(func=cmd_history)

    ledger_parser = subparsers.add_parser('ledger', help='Show or reset the once-ledger')
    ledger_parser.add_argument('--clear', action='store_true', help='Remove all records')
    ledger_parser.add_argument('--forget', type=str, help='Remove one identity')
    ledger_parser.set_defaults(func=cmd_ledger)

    sysinfo_parser = subparsers.add_parser('sysinfo', help='Show host facts')
    sysinfo_parser.set_defaults(func=cmd_sysinfo)

    init_parser = subparsers.add_parser('init', help='Create the queue layout and config file')
    init_parser.set_defaults(func=cmd_init)

    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.config_obj = OutsetConfig.load(args.root, args.config, args.state_dir)
    except ConfigurationError as e:
        setup_logging(verbose=args.verbose)
        logger.error(str(e))
        sys.exit(1)

    setup_logging(
        log_file=args.log_file or str(args.config_obj.log_file),
        verbose=args.verbose,
        level=args.config_obj.logging.level
    )

    try:
        status = args.func(args)
    except ConfigurationError as e:
        logger.error(str(e))
        status = 1
    except OutsetError as e:
        logger.error(f"{args.command} failed: {e}", exc_info=args.verbose)
        status = 1

    sys.exit(status)


if __name__ == '__main__':
    main()
