from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional, Sequence

from .auth.providers import AuthContext, resolve_auth, verify_credential
from .cloud.base import ResourceClient
from .cloud.network import AzureResourceClient
from .config import MigrationConfig, dump_config, load_config, to_orchestrator_settings
from .logging import LogConfig, add_run_log_file, get_logger, setup_logging
from .migration.discovery import build_inventory, merge_with_previous
from .migration.orchestrator import CLEANUP_CONFIRMATION_TOKEN, MigrationOrchestrator, PhaseResult, soak_status
from .migration.schema import InventoryRecord, Phase
from .migration.selector import resolve_subscriptions
from .report import render_inventory_summary_md, write_phase_result
from .store.snapshot import CsvSnapshotStore, InventoryStore
from .util.errors import ConfigurationError, ExitCode, as_exit_code
from .util.rich_progress import PhaseProgress, render_phase_summary_table
from .util.time import utc_now

LOG = get_logger(__name__)

PhaseAction = Callable[[MigrationOrchestrator, List[InventoryRecord]], PhaseResult]


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    timer_key: Optional[str] = None,
    **extra: Any,
) -> None:
    key = timer_key or step
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(key)
        elif phase in {"complete", "error", "cancelled", "skipped"}:
            duration_ms = timers.finish(key)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


def _resolve_auth(cfg: MigrationConfig) -> AuthContext:
    return resolve_auth(cfg.auth, cfg.tenant_id)


def _build_client(cfg: MigrationConfig) -> ResourceClient:
    return AzureResourceClient(_resolve_auth(cfg))


def _build_store(cfg: MigrationConfig) -> InventoryStore:
    return CsvSnapshotStore(cfg.outdir, source=cfg.inventory)


def _interactive() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def _install_cancel_handlers(cancel: threading.Event) -> Callable[[], None]:
    """
    First SIGINT/SIGTERM asks the orchestrator to stop after the current record;
    a second one interrupts immediately.
    """
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    def _handler(signum: int, frame: Any) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()
        LOG.warning("Cancellation requested; stopping after the current record", extra={"signal": signum})

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)

    def _restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return _restore


def _print_phase_result(result: PhaseResult, snapshot: Optional[Path]) -> None:
    for line in result.planned:
        print(line)
    for line in result.messages:
        print(line)
    rows: Dict[str, Any] = {"Dry run": "yes" if result.dry_run else "no"}
    rows.update({outcome.capitalize(): count for outcome, count in result.counts.items()})
    if result.failed:
        rows["Failed records"] = ", ".join(result.failed)
    if result.cancelled:
        rows["Cancelled"] = "yes"
    rows["Snapshot"] = str(snapshot) if snapshot else "(not written)"
    render_phase_summary_table(enabled=sys.stdout.isatty(), title=f"{result.phase.capitalize()} Summary", rows=rows)


def _phase_exit_code(result: PhaseResult) -> int:
    if result.cancelled:
        return int(ExitCode.CANCELLED)
    if result.any_failed:
        return int(ExitCode.RECORD_FAILURES)
    return int(ExitCode.OK)


def _run_phase(cfg: MigrationConfig, step: str, action: PhaseAction) -> int:
    """
    Shared load -> run -> save loop for create/validate/cleanup.
    The snapshot is written even when the phase aborts, so completed work is kept.
    """
    timers = _StepTimers()
    _log_event(
        LOG,
        logging.INFO,
        f"{step.capitalize()} phase started",
        step=step,
        phase="start",
        timers=timers,
        dry_run=cfg.dry_run,
    )
    store = _build_store(cfg)
    records = store.load()
    client = _build_client(cfg)

    cancel = threading.Event()
    restore = _install_cancel_handlers(cancel)
    orchestrator = MigrationOrchestrator(
        client,
        to_orchestrator_settings(cfg),
        cancel=cancel,
        checkpoint=None if cfg.dry_run else store.save,
    )
    result: Optional[PhaseResult] = None
    snapshot: Optional[Path] = None
    try:
        result = action(orchestrator, records)
    finally:
        restore()
        if not cfg.dry_run:
            snapshot = store.save(records)
        if result is None:
            _log_event(LOG, logging.ERROR, f"{step.capitalize()} phase aborted", step=step, phase="error", timers=timers)

    run_file = write_phase_result(result, cfg.outdir, extra={"snapshot": str(snapshot) if snapshot else None})
    _print_phase_result(result, snapshot)
    _log_event(
        LOG,
        logging.WARNING if result.cancelled else logging.INFO,
        f"{step.capitalize()} phase finished",
        step=step,
        phase="cancelled" if result.cancelled else "complete",
        timers=timers,
        counts=dict(result.counts),
        run_file=str(run_file),
    )
    return _phase_exit_code(result)


def cmd_discover(cfg: MigrationConfig) -> int:
    timers = _StepTimers()
    _log_event(LOG, logging.INFO, "Discovery started", step="discover", phase="start", timers=timers)
    client = _build_client(cfg)
    subscriptions = resolve_subscriptions(
        client,
        scan_all=cfg.scan_all_subscriptions,
        include=cfg.include_subscriptions,
        exclude=cfg.exclude_subscriptions,
        default=cfg.default_subscription,
    )

    with PhaseProgress(enabled=sys.stderr.isatty()) as progress:
        progress.start("Discovery")
        result = build_inventory(
            client,
            subscriptions,
            on_record=lambda r: progress.advance(r.subscription_name or r.subscription_id),
        )

    store = _build_store(cfg)
    previous: Sequence[InventoryRecord] = []
    if store.has_snapshot():
        previous = store.load()
    records = merge_with_previous(result.records, previous)
    snapshot = store.save(records)

    for skipped in result.skipped:
        print(f"SKIPPED {skipped['subscription']}: {skipped['reason']}")
    rows: Dict[str, Any] = {
        "Subscriptions scanned": len(result.scanned),
        "Subscriptions skipped": len(result.skipped),
        "Legacy addresses": len(result.records),
    }
    rows.update({f"  {kind}": count for kind, count in result.counts_by_kind().items()})
    rows["Snapshot"] = str(snapshot) if snapshot else "(in memory)"
    render_phase_summary_table(enabled=sys.stdout.isatty(), title="Discovery Summary", rows=rows)
    print(f"Discovered {len(result.records)} legacy address(es) in {len(result.scanned)} subscription(s)")

    _log_event(
        LOG,
        logging.INFO,
        "Discovery finished",
        step="discover",
        phase="complete",
        timers=timers,
        records=len(result.records),
        kinds=result.counts_by_kind(),
        snapshot=str(snapshot) if snapshot else None,
    )
    if result.skipped and not result.scanned:
        return int(ExitCode.PROVIDER_ERROR)
    return int(ExitCode.OK)


def cmd_create(cfg: MigrationConfig) -> int:
    return _run_phase(cfg, "create", lambda orch, records: orch.create(records))


def cmd_validate(cfg: MigrationConfig) -> int:
    return _run_phase(cfg, "validate", lambda orch, records: orch.validate(records))


def _ask_confirmation(due: int) -> Optional[str]:
    from rich.prompt import Prompt

    return Prompt.ask(
        f"{due} legacy address(es) will be deleted. Type {CLEANUP_CONFIRMATION_TOKEN} to continue",
        default="",
    )


def cmd_cleanup(cfg: MigrationConfig) -> int:
    def _cleanup(orch: MigrationOrchestrator, records: List[InventoryRecord]) -> PhaseResult:
        confirmation = cfg.confirm
        if confirmation is None and not cfg.dry_run and _interactive():
            due, _ = orch.soak_status(records)
            if due:
                confirmation = _ask_confirmation(len(due))
        return orch.cleanup(records, confirmation=confirmation)

    return _run_phase(cfg, "cleanup", _cleanup)


def cmd_summary(cfg: MigrationConfig) -> int:
    store = _build_store(cfg)
    records = store.load()
    print(render_inventory_summary_md(records))

    due, waiting = soak_status(records, cfg.soak_period_hours, utc_now())
    if due or waiting:
        print("## Soak Status")
        print("")
        for record in due:
            print(f"- {record.name}: due for cleanup")
        for record, hours in waiting:
            print(f"- {record.name}: {hours} hours remaining")
        print("")

    phases = {p.value: sum(1 for r in records if r.phase == p) for p in Phase}
    render_phase_summary_table(enabled=sys.stdout.isatty(), title="Inventory", rows=phases)
    return int(ExitCode.OK)


def cmd_validate_auth(cfg: MigrationConfig) -> int:
    ctx = _resolve_auth(cfg)
    verify_credential(ctx)
    subscriptions = AzureResourceClient(ctx).list_subscriptions()
    LOG.info(
        "Authentication validated",
        extra={"method": ctx.method, "tenant": cfg.tenant_id, "subscriptions": len(subscriptions)},
    )
    # Print to stdout a concise success message (no secrets)
    print(f"OK: authentication validated ({ctx.method}); {len(subscriptions)} subscription(s) visible")
    return int(ExitCode.OK)


def cmd_list_subscriptions(cfg: MigrationConfig) -> int:
    client = _build_client(cfg)
    for sub in client.list_subscriptions():
        print(f"{sub.subscription_id},{sub.display_name},{sub.state}")
    return int(ExitCode.OK)


COMMANDS: Dict[str, Callable[[MigrationConfig], int]] = {
    "discover": cmd_discover,
    "create": cmd_create,
    "validate": cmd_validate,
    "cleanup": cmd_cleanup,
    "summary": cmd_summary,
    "list-subscriptions": cmd_list_subscriptions,
    "validate-auth": cmd_validate_auth,
}
LOGGED_COMMANDS = {"discover", "create", "validate", "cleanup"}


def main(argv: Optional[List[str]] = None) -> None:
    try:
        command, cfg = load_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))
        if command in LOGGED_COMMANDS:
            stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
            add_run_log_file(cfg.outdir / "logs" / f"{command}_{stamp}.log")
        LOG.debug("Effective configuration", extra={"command": command, "config": dump_config(cfg)})

        handler = COMMANDS.get(command)
        if handler is None:
            raise ConfigurationError(f"Unknown command: {command}")
        sys.exit(handler(cfg))
    except SystemExit:
        raise
    except BrokenPipeError:
        # Piping to `head` and friends closes stdout early.
        sys.exit(0)
    except KeyboardInterrupt:
        LOG.warning("Interrupted")
        sys.exit(int(ExitCode.CANCELLED))
    except Exception as e:
        # Map to consistent exit code and log
        setup_logging(LogConfig())
        LOG.error("Execution failed", extra={"error": str(e), "error_type": type(e).__name__})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
