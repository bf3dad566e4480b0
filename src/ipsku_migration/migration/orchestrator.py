from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..cloud.base import AddressSpec, ResourceClient, SubscriptionContext
from ..logging import get_logger
from ..util.errors import (
    AuthenticationError,
    CleanupNotConfirmed,
    InvalidTransition,
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
)
from ..util.time import format_iso, soak_remaining, utc_now, whole_hours_remaining
from .consumers import NetworkInterfaceRef
from .schema import ConsumerKind, InventoryRecord, Phase
from .validation import DEFAULT_PORTS, ValidationResult, check_security_rules, validate_address

LOG = get_logger(__name__)

CLEANUP_CONFIRMATION_TOKEN = "DELETE-LEGACY"
SUCCEEDED_PROVISIONING_STATES = {"", "succeeded"}


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    RETRYABLE = "retryable"
    PLANNED = "planned"


@dataclass(frozen=True)
class OrchestratorSettings:
    batch_size: int = 10
    delay_between_batches_seconds: float = 300.0
    soak_period_hours: float = 48.0
    allocation_method: str = "Static"
    ip_version: str = "IPv4"
    zones: Tuple[str, ...] = ()
    tags: Mapping[str, str] = field(default_factory=dict)
    validation_ports: Tuple[int, ...] = DEFAULT_PORTS
    validation_timeout: float = 5.0
    validation_icmp: bool = True
    workers_validate: int = 4
    dry_run: bool = False


@dataclass
class PhaseResult:
    phase: str
    dry_run: bool = False
    counts: Dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in Outcome})
    failed: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: str = ""
    finished_at: str = ""

    def add(self, outcome: Outcome, record: Optional[InventoryRecord] = None) -> None:
        self.counts[outcome.value] = self.counts.get(outcome.value, 0) + 1
        if outcome == Outcome.FAILED and record is not None:
            self.failed.append(record.key)

    @property
    def any_failed(self) -> bool:
        return bool(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "dry_run": self.dry_run,
            "counts": dict(self.counts),
            "failed": list(self.failed),
            "planned": list(self.planned),
            "messages": list(self.messages),
            "cancelled": self.cancelled,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


Validator = Callable[..., ValidationResult]


def subscription_of(record: InventoryRecord) -> SubscriptionContext:
    return SubscriptionContext(subscription_id=record.subscription_id, display_name=record.subscription_name)


def interface_id_of(record: InventoryRecord) -> str:
    return NetworkInterfaceRef(
        subscription_id=record.subscription_id,
        resource_group=record.consumer_resource_group or record.resource_group,
        interface_name=record.consumer_ref,
        config_name=record.consumer_config,
    ).interface_id


def soak_status(
    records: Sequence[InventoryRecord], soak_period_hours: float, now: datetime
) -> Tuple[List[InventoryRecord], List[Tuple[InventoryRecord, int]]]:
    """
    Split Validated records into (due, waiting). Waiting entries carry the whole
    hours of soak left. Pure; does not touch the records.
    """
    due: List[InventoryRecord] = []
    waiting: List[Tuple[InventoryRecord, int]] = []
    for record in records:
        if not record.automatable or record.phase != Phase.VALIDATED:
            continue
        if record.phase_timestamp is None:
            waiting.append((record, int(math.ceil(soak_period_hours))))
            continue
        remaining = soak_remaining(record.phase_timestamp, soak_period_hours, now)
        if remaining.total_seconds() > 0:
            waiting.append((record, whole_hours_remaining(remaining)))
        else:
            due.append(record)
    return due, waiting


class MigrationOrchestrator:
    """
    Drives inventory records through Create -> Validate -> Cleanup.

    Records are handled one at a time in inventory order. The record's own phase
    is the precondition gate for every step; errors are caught per record and turned
    into notes so one failing record never stops its siblings. Only authentication
    failures and programming errors (InvalidTransition) abort the phase.
    """

    def __init__(
        self,
        client: ResourceClient,
        settings: OrchestratorSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
        cancel: Optional[threading.Event] = None,
        wait: Optional[Callable[[float], bool]] = None,
        checkpoint: Optional[Callable[[Sequence[InventoryRecord]], None]] = None,
        validator: Validator = validate_address,
    ) -> None:
        self._client = client
        self._settings = settings
        self._clock = clock
        self._cancel = cancel or threading.Event()
        self._wait = wait or self._cancel.wait
        self._checkpoint = checkpoint
        self._validator = validator

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    # ------------
    # Batch runner
    # ------------

    def _run(
        self,
        result: PhaseResult,
        records: Sequence[InventoryRecord],
        eligible: Sequence[InventoryRecord],
        action: Callable[[InventoryRecord], Outcome],
    ) -> PhaseResult:
        batch_size = max(1, int(self._settings.batch_size))
        delay = max(0.0, float(self._settings.delay_between_batches_seconds))
        total = len(eligible)
        for start in range(0, total, batch_size):
            batch = eligible[start : start + batch_size]
            LOG.info(
                "Batch started",
                extra={
                    "step": result.phase,
                    "phase": "batch",
                    "batch": start // batch_size + 1,
                    "size": len(batch),
                    "remaining": total - start,
                },
            )
            for record in batch:
                if self._cancel.is_set():
                    result.cancelled = True
                    LOG.warning("Cancellation requested; stopping before next record", extra={"step": result.phase})
                    return result
                result.add(self._guarded(result.phase, record, action), record)

            more = start + batch_size < total
            if more and not result.dry_run:
                if self._checkpoint is not None:
                    self._checkpoint(records)
                if delay > 0:
                    LOG.info(
                        "Pausing between batches",
                        extra={"step": result.phase, "phase": "delay", "seconds": delay},
                    )
                    if self._wait(delay):
                        result.cancelled = True
                        LOG.warning("Cancellation requested during batch delay", extra={"step": result.phase})
                        return result
        return result

    def _guarded(self, step: str, record: InventoryRecord, action: Callable[[InventoryRecord], Outcome]) -> Outcome:
        try:
            return action(record)
        except (AuthenticationError, InvalidTransition):
            raise
        except ProviderTransientError as e:
            record.add_note(step, f"transient error, re-run {step} to retry: {e}", now=self._clock())
            LOG.warning(
                "Transient provider error; record left unchanged",
                extra={"step": step, "address": record.name, "error": str(e)},
            )
            return Outcome.RETRYABLE
        except ProviderError as e:
            return self._fail(step, record, e)
        except Exception as e:
            LOG.exception("Unexpected error while processing record", extra={"step": step, "address": record.name})
            return self._fail(step, record, ProviderPermanentError(f"unexpected error: {e}"))

    def _fail(self, step: str, record: InventoryRecord, error: BaseException) -> Outcome:
        record.mark_failed(step, error, now=self._clock())
        LOG.error(
            "Record failed",
            extra={"step": step, "address": record.name, "subscription": record.subscription_id, "error": str(error)},
        )
        return Outcome.FAILED

    def _start(self, phase: str) -> PhaseResult:
        return PhaseResult(phase=phase, dry_run=self._settings.dry_run, started_at=format_iso(self._clock()))

    def _finish(self, result: PhaseResult) -> PhaseResult:
        result.finished_at = format_iso(self._clock())
        LOG.info(
            "Phase finished",
            extra={"step": result.phase, "phase": "complete", "counts": dict(result.counts), "cancelled": result.cancelled},
        )
        return result

    def _skip_ineligible(self, step: str, records: Sequence[InventoryRecord], result: PhaseResult) -> None:
        for record in records:
            if record.automatable:
                continue
            # The discovery note already explains these; the record itself stays untouched.
            result.add(Outcome.SKIPPED, record)
            result.messages.append(f"{record.name}: skipped, {record.consumer_kind.value} requires manual handling")
            LOG.info(
                "Record excluded from automation",
                extra={"step": step, "address": record.name, "consumer_kind": record.consumer_kind.value},
            )

    # ------
    # Create
    # ------

    def _address_spec(self, record: InventoryRecord) -> AddressSpec:
        tags = {str(k): str(v) for k, v in self._settings.tags.items()}
        tags["migratedFromAddress"] = record.name
        return AddressSpec(
            name=record.replacement_name,
            resource_group=record.resource_group,
            location=record.location,
            allocation_method=self._settings.allocation_method,
            ip_version=self._settings.ip_version or record.address_version or "IPv4",
            zones=tuple(self._settings.zones),
            tags=tags,
        )

    def _security_warnings(self, subscription: SubscriptionContext, interface_id: str) -> List[str]:
        # Runs after the replacement is bound, so a failed read is only a warning.
        try:
            interface = self._client.resolve_interface(subscription, interface_id)
        except AuthenticationError:
            raise
        except ProviderError as e:
            return [f"Security rules not checked; interface could not be read: {e}"]
        return check_security_rules(self._client, subscription, interface, self._settings.validation_ports)

    def _create_one(self, record: InventoryRecord, result: PhaseResult) -> Outcome:
        subscription = subscription_of(record)
        spec = self._address_spec(record)
        is_nic = record.consumer_kind == ConsumerKind.NETWORK_INTERFACE

        if self._settings.dry_run:
            plan = (
                f"[dry-run] create {spec.name} in {spec.resource_group}/{spec.location} "
                f"(sku=Standard, allocation={spec.allocation_method}, version={spec.ip_version}, "
                f"zones={','.join(spec.zones) or 'none'})"
            )
            if is_nic:
                plan += f"; attach {record.secondary_config_name} to interface {record.consumer_ref}"
            result.planned.append(plan)
            LOG.info(plan, extra={"step": "create", "address": record.name, "subscription": record.subscription_id})
            return Outcome.PLANNED

        created = self._client.create_address(subscription, spec)
        now = self._clock()
        record.add_note("create", f"allocated {created.name} {created.ip_address or '(no address)'} ({created.id})", now=now)
        if not created.ip_address:
            raise ProviderPermanentError(
                f"replacement {created.id} has no address assigned (allocation={spec.allocation_method})"
            )

        if is_nic:
            interface_id = interface_id_of(record)
            attached = self._client.attach_secondary_config(
                subscription, interface_id, record.secondary_config_name, created.id
            )
            if attached:
                record.add_note(
                    "create", f"secondary configuration {record.secondary_config_name} attached to {record.consumer_ref}",
                    now=now,
                )
            else:
                record.add_note(
                    "create",
                    f"secondary configuration {record.secondary_config_name} already present on {record.consumer_ref}",
                    now=now,
                )
            for warning in self._security_warnings(subscription, interface_id):
                record.add_note("create", f"WARNING: {warning}", now=now)
                LOG.warning(warning, extra={"step": "create", "address": record.name})

        record.replacement_address = created.ip_address
        record.replacement_resource_id = created.id
        record.advance(Phase.CREATED, now=self._clock())
        LOG.info(
            "Replacement address created",
            extra={"step": "create", "address": record.name, "replacement": created.name, "ip": created.ip_address},
        )
        return Outcome.SUCCEEDED

    def create(self, records: Sequence[InventoryRecord]) -> PhaseResult:
        """
        Allocate Standard replacements for Pending Unattached/NetworkInterface records.
        Records already past Pending are never recreated.
        """
        result = self._start("create")
        self._skip_ineligible("create", records, result)
        eligible = [r for r in records if r.automatable and r.phase == Phase.PENDING]
        result.counts[Outcome.SKIPPED.value] += sum(1 for r in records if r.automatable and r.phase != Phase.PENDING)
        self._run(result, records, eligible, lambda r: self._create_one(r, result))
        return self._finish(result)

    # --------
    # Validate
    # --------

    def _validate_one(self, record: InventoryRecord, result: PhaseResult) -> Outcome:
        subscription = subscription_of(record)
        if not record.replacement_address:
            record.add_note("validate", "WARNING: no replacement address recorded; cannot validate", now=self._clock())
            return Outcome.RETRYABLE

        if record.consumer_kind == ConsumerKind.UNATTACHED:
            # Nothing sits behind an unattached address; check it is provisioned instead.
            current = self._client.get_address(subscription, record.replacement_resource_id)
            passed = bool(
                current is not None
                and current.ip_address
                and current.provisioning_state.lower() in SUCCEEDED_PROVISIONING_STATES
            )
            detail = (
                "replacement not found"
                if current is None
                else f"provisioning={current.provisioning_state or 'unknown'}, address={current.ip_address or 'none'}"
            )
        else:
            outcome = self._validator(
                record.replacement_address,
                self._settings.validation_ports,
                timeout=self._settings.validation_timeout,
                icmp=self._settings.validation_icmp,
                workers=self._settings.workers_validate,
            )
            passed = outcome.reachable
            detail = outcome.describe()
            for warning in outcome.warnings:
                LOG.warning(warning, extra={"step": "validate", "address": record.name})

        if record.dns_fqdn:
            resolved = self._client.resolve_dns(record.dns_fqdn)
            if record.legacy_address and record.legacy_address in resolved:
                dns_note = f"DNS {record.dns_fqdn} still resolves to legacy {record.legacy_address}; update DNS manually"
            elif record.replacement_address in resolved:
                dns_note = f"DNS {record.dns_fqdn} resolves to replacement {record.replacement_address}"
            else:
                dns_note = f"DNS {record.dns_fqdn} resolves to {', '.join(resolved) or 'nothing'}"
            if not self._settings.dry_run:
                record.add_note("validate", dns_note, now=self._clock())

        if self._settings.dry_run:
            verdict = "pass" if passed else "fail"
            result.planned.append(f"[dry-run] {record.name}: validation would {verdict} ({detail})")
            return Outcome.PLANNED

        if not passed:
            record.add_note("validate", f"WARNING: validation failed, record stays Created ({detail})", now=self._clock())
            LOG.warning("Validation failed", extra={"step": "validate", "address": record.name, "detail": detail})
            return Outcome.RETRYABLE

        record.add_note("validate", f"validated ({detail})", now=self._clock())
        record.advance(Phase.VALIDATED, now=self._clock())
        return Outcome.SUCCEEDED

    def validate(self, records: Sequence[InventoryRecord]) -> PhaseResult:
        """Validate Created records. Safe to repeat; failures leave records Created."""
        result = self._start("validate")
        eligible = [r for r in records if r.automatable and r.phase == Phase.CREATED]
        result.counts[Outcome.SKIPPED.value] += len(records) - len(eligible)
        self._run(result, records, eligible, lambda r: self._validate_one(r, result))
        return self._finish(result)

    # -------
    # Cleanup
    # -------

    def soak_status(
        self, records: Sequence[InventoryRecord], now: Optional[datetime] = None
    ) -> Tuple[List[InventoryRecord], List[Tuple[InventoryRecord, int]]]:
        return soak_status(records, self._settings.soak_period_hours, now or self._clock())

    def _cleanup_one(self, record: InventoryRecord, result: PhaseResult) -> Outcome:
        subscription = subscription_of(record)
        is_nic = record.consumer_kind == ConsumerKind.NETWORK_INTERFACE

        if self._settings.dry_run:
            plan = f"[dry-run] delete legacy {record.name} ({record.legacy_address or 'no address'})"
            if is_nic:
                plan = f"{plan} after releasing {record.consumer_config} on {record.consumer_ref}"
            result.planned.append(plan)
            LOG.info(plan, extra={"step": "cleanup", "address": record.name})
            return Outcome.PLANNED

        if is_nic and record.consumer_config:
            detached = self._client.detach_config(
                subscription, interface_id_of(record), record.consumer_config, record.legacy_resource_id or None
            )
            if detached:
                record.add_note(
                    "cleanup", f"legacy configuration {record.consumer_config} released from {record.consumer_ref}",
                    now=self._clock(),
                )
            else:
                record.add_note(
                    "cleanup", f"legacy configuration {record.consumer_config} already absent", now=self._clock()
                )

        self._client.delete_address(subscription, record.legacy_resource_id)
        record.add_note("cleanup", f"legacy address {record.name} deleted", now=self._clock())
        record.advance(Phase.COMPLETED, now=self._clock())
        LOG.info("Legacy address removed", extra={"step": "cleanup", "address": record.name})
        return Outcome.SUCCEEDED

    def cleanup(self, records: Sequence[InventoryRecord], *, confirmation: Optional[str] = None) -> PhaseResult:
        """
        Delete legacy addresses whose replacement has soaked long enough.

        Deletion requires `confirmation` to equal CLEANUP_CONFIRMATION_TOKEN whenever at
        least one record is due; without it nothing is mutated and CleanupNotConfirmed
        is raised. Records still soaking are reported with hours remaining.
        """
        result = self._start("cleanup")
        due, waiting = self.soak_status(records)
        for record, hours in waiting:
            message = f"{record.name}: {hours} hours remaining"
            result.messages.append(message)
            result.add(Outcome.SKIPPED, record)
            LOG.info(
                "Soak period not elapsed",
                extra={"step": "cleanup", "address": record.name, "hours_remaining": hours},
            )
        result.counts[Outcome.SKIPPED.value] += len(records) - len(due) - len(waiting)

        if due and not self._settings.dry_run and (confirmation or "").strip() != CLEANUP_CONFIRMATION_TOKEN:
            raise CleanupNotConfirmed(
                f"{len(due)} legacy address(es) are due for deletion; "
                f"re-run cleanup with --confirm {CLEANUP_CONFIRMATION_TOKEN} to proceed"
            )

        self._run(result, records, due, lambda r: self._cleanup_one(r, result))
        return self._finish(result)
