from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import SUB_A, T0, FakeClock, make_record
from ipsku_migration.migration.orchestrator import (
    CLEANUP_CONFIRMATION_TOKEN,
    MigrationOrchestrator,
    OrchestratorSettings,
    Outcome,
    soak_status,
)
from ipsku_migration.migration.schema import ConsumerKind, Phase
from ipsku_migration.migration.validation import ValidationResult
from ipsku_migration.util.errors import (
    AuthenticationError,
    CleanupNotConfirmed,
    ProviderPermanentError,
    ProviderTransientError,
)

PHASE_ORDER = [Phase.PENDING, Phase.CREATED, Phase.VALIDATED, Phase.COMPLETED]


def _settings(**overrides) -> OrchestratorSettings:
    values = dict(batch_size=10, delay_between_batches_seconds=0, soak_period_hours=48, validation_icmp=False)
    values.update(overrides)
    return OrchestratorSettings(**values)


def _reachable(address, ports, **kwargs) -> ValidationResult:
    return ValidationResult(address=address, reachable=True, icmp=False, per_port={80: True})


def _unreachable(address, ports, **kwargs) -> ValidationResult:
    return ValidationResult(address=address, reachable=False, icmp=False, per_port={80: False})


def _orchestrator(client, clock, **kwargs) -> MigrationOrchestrator:
    settings = kwargs.pop("settings", None) or _settings()
    kwargs.setdefault("validator", _reachable)
    return MigrationOrchestrator(client, settings, clock=clock, **kwargs)


def _validated(name: str, clock: FakeClock, *, kind: ConsumerKind = ConsumerKind.UNATTACHED, hours_ago: float = 0):
    record = make_record(name, kind=kind)
    record.advance(Phase.CREATED, now=clock() - timedelta(hours=hours_ago))
    record.replacement_address = "20.0.0.99"
    record.replacement_resource_id = record.legacy_resource_id + "-std"
    record.advance(Phase.VALIDATED, now=clock())
    return record


def test_create_allocates_replacements_for_unattached_records(fake_client, clock) -> None:
    records = [make_record(f"pip-{i}") for i in range(9)]
    result = _orchestrator(fake_client, clock).create(records)

    assert result.counts["succeeded"] == 9
    assert all(r.phase == Phase.CREATED for r in records)
    assert all(r.replacement_address for r in records)
    assert all(r.phase_timestamp == T0 for r in records)
    spec = fake_client.calls[0][2]
    assert spec.name == "pip-0-std"
    assert spec.sku == "Standard"
    assert spec.resource_group == "rg-app" and spec.location == "eastus"
    assert spec.tags["migratedFromAddress"] == "pip-0"


def test_create_attaches_secondary_config_for_nic_records(fake_client, clock) -> None:
    fake_client.add_interface(SUB_A.subscription_id, "rg-app", "vm1-nic")
    record = make_record("vm1-pip", kind=ConsumerKind.NETWORK_INTERFACE, nic="vm1-nic")

    result = _orchestrator(fake_client, clock).create([record])

    assert result.counts["succeeded"] == 1
    assert record.phase == Phase.CREATED
    assert record.has_note_containing("secondary configuration ipconfig-vm1-pip-std attached to vm1-nic")
    attach = [c for c in fake_client.calls if c[0] == "attach_secondary_config"]
    assert attach[0][2] == "ipconfig-vm1-pip-std"
    # No NSG anywhere -> warning note, not a failure.
    assert record.has_note_containing("WARNING:")


def test_create_reattach_is_noop_when_config_exists(fake_client, clock) -> None:
    nic = fake_client.add_interface(SUB_A.subscription_id, "rg-app", "vm1-nic")
    fake_client.attached[nic.id.lower()] = {"ipconfig-vm1-pip-std"}
    record = make_record("vm1-pip", kind=ConsumerKind.NETWORK_INTERFACE, nic="vm1-nic")

    _orchestrator(fake_client, clock).create([record])

    assert record.phase == Phase.CREATED
    assert record.has_note_containing("already present on vm1-nic")


def test_create_dry_run_is_pure(fake_client, clock) -> None:
    fake_client.add_interface(SUB_A.subscription_id, "rg-app", "vm1-nic")
    records = [make_record("pip-a"), make_record("vm1-pip", kind=ConsumerKind.NETWORK_INTERFACE, nic="vm1-nic")]
    before = [(r.phase, r.replacement_address, list(r.notes)) for r in records]

    result = _orchestrator(fake_client, clock, settings=_settings(dry_run=True)).create(records)

    assert [(r.phase, r.replacement_address, list(r.notes)) for r in records] == before
    assert fake_client.mutating_calls == []
    assert result.counts["planned"] == 2
    assert any("pip-a-std" in line and "sku=Standard" in line for line in result.planned)
    assert any("attach ipconfig-vm1-pip-std" in line for line in result.planned)


def test_create_isolates_permanent_failures(fake_client, clock) -> None:
    fake_client.fail_on["b-std"] = ProviderPermanentError("quota exceeded")
    records = [make_record("a"), make_record("b"), make_record("c")]

    result = _orchestrator(fake_client, clock).create(records)

    assert [r.phase for r in records] == [Phase.CREATED, Phase.FAILED, Phase.CREATED]
    assert records[1].has_note_containing("quota exceeded")
    assert records[1].replacement_address == ""
    assert result.failed == [records[1].key]
    assert result.any_failed


def test_create_transient_error_leaves_record_pending(fake_client, clock) -> None:
    fake_client.fail_on["a-std"] = ProviderTransientError("429 throttled")
    record = make_record("a")

    result = _orchestrator(fake_client, clock).create([record])

    assert record.phase == Phase.PENDING
    assert result.counts["retryable"] == 1
    assert not result.any_failed
    assert record.has_note_containing("re-run create to retry")


def test_create_unexpected_error_marks_failed(fake_client, clock) -> None:
    fake_client.fail_on["a-std"] = RuntimeError("boom")
    record = make_record("a")

    _orchestrator(fake_client, clock).create([record])

    assert record.phase == Phase.FAILED


def test_authentication_error_aborts_phase(fake_client, clock) -> None:
    fake_client.fail_on["a-std"] = AuthenticationError("token expired")
    records = [make_record("a"), make_record("b")]

    with pytest.raises(AuthenticationError):
        _orchestrator(fake_client, clock).create(records)
    assert records[1].phase == Phase.PENDING


def test_create_skips_records_already_past_pending(fake_client, clock) -> None:
    record = _validated("a", clock)
    result = _orchestrator(fake_client, clock).create([record])

    assert record.phase == Phase.VALIDATED
    assert fake_client.mutating_calls == []
    assert result.counts["skipped"] == 1


def test_load_balancer_record_is_never_touched(fake_client, clock) -> None:
    lb = make_record("lb-pip", kind=ConsumerKind.LOAD_BALANCER)
    lb.add_note("discover", "Attached to a Basic load balancer", now=clock())
    snapshot = (lb.phase, list(lb.notes), lb.replacement_address)
    orch = _orchestrator(fake_client, clock)

    create = orch.create([lb])
    orch.validate([lb])
    clock.advance(hours=100)
    orch.cleanup([lb], confirmation=CLEANUP_CONFIRMATION_TOKEN)

    assert (lb.phase, list(lb.notes), lb.replacement_address) == snapshot
    assert fake_client.calls == []
    assert any("requires manual handling" in m for m in create.messages)


def test_validate_nic_record_passes_and_fails(fake_client, clock) -> None:
    record = make_record("vm1-pip", kind=ConsumerKind.NETWORK_INTERFACE)
    record.advance(Phase.CREATED, now=clock())
    record.replacement_address = "20.0.0.5"

    failing = _orchestrator(fake_client, clock, validator=_unreachable).validate([record])
    assert record.phase == Phase.CREATED
    assert failing.counts["retryable"] == 1
    assert record.has_note_containing("validation failed")

    passing = _orchestrator(fake_client, clock).validate([record])
    assert record.phase == Phase.VALIDATED
    assert passing.counts["succeeded"] == 1
    # Validation never moves the soak anchor.
    assert record.phase_timestamp == T0


def test_validate_unattached_checks_provisioning(fake_client, clock) -> None:
    record = make_record("pip-a")
    _orchestrator(fake_client, clock).create([record])

    _orchestrator(fake_client, clock, validator=_unreachable).validate([record])

    assert record.phase == Phase.VALIDATED
    assert record.has_note_containing("provisioning=Succeeded")


def test_validate_reports_dns_still_on_legacy(fake_client, clock) -> None:
    record = make_record("pip-a", dns_fqdn="app.eastus.cloudapp.azure.com")
    _orchestrator(fake_client, clock).create([record])
    fake_client.dns["app.eastus.cloudapp.azure.com"] = ["10.1.1.1"]

    _orchestrator(fake_client, clock).validate([record])

    assert record.has_note_containing("still resolves to legacy 10.1.1.1")


def test_validate_dry_run_does_not_advance(fake_client, clock) -> None:
    record = make_record("vm1-pip", kind=ConsumerKind.NETWORK_INTERFACE)
    record.advance(Phase.CREATED, now=clock())
    record.replacement_address = "20.0.0.5"

    result = _orchestrator(fake_client, clock, settings=_settings(dry_run=True)).validate([record])

    assert record.phase == Phase.CREATED
    assert result.planned and "would pass" in result.planned[0]


def test_cleanup_reports_hours_remaining(fake_client, clock) -> None:
    record = _validated("a", clock, hours_ago=2)

    result = _orchestrator(fake_client, clock).cleanup([record], confirmation=CLEANUP_CONFIRMATION_TOKEN)

    assert record.phase == Phase.VALIDATED
    assert "a: 46 hours remaining" in result.messages
    assert fake_client.mutating_calls == []


def test_cleanup_soak_gate_holds_one_second_short(fake_client, clock) -> None:
    record = _validated("a", clock)
    orch = _orchestrator(fake_client, clock)

    clock.advance(hours=48, seconds=-1)
    orch.cleanup([record], confirmation=CLEANUP_CONFIRMATION_TOKEN)
    assert record.phase == Phase.VALIDATED

    clock.advance(seconds=1)
    orch.cleanup([record], confirmation=CLEANUP_CONFIRMATION_TOKEN)
    assert record.phase == Phase.COMPLETED
    assert fake_client.deleted == [record.legacy_resource_id]


def test_cleanup_requires_confirmation_before_mutation(fake_client, clock) -> None:
    record = _validated("a", clock, hours_ago=72)

    with pytest.raises(CleanupNotConfirmed):
        _orchestrator(fake_client, clock).cleanup([record], confirmation="yes")
    assert record.phase == Phase.VALIDATED
    assert fake_client.mutating_calls == []


def test_cleanup_releases_nic_config_before_delete(fake_client, clock) -> None:
    record = _validated("vm1-pip", clock, kind=ConsumerKind.NETWORK_INTERFACE, hours_ago=72)

    _orchestrator(fake_client, clock).cleanup([record], confirmation=CLEANUP_CONFIRMATION_TOKEN)

    names = [c[0] for c in fake_client.mutating_calls]
    assert names == ["detach_config", "delete_address"]
    assert fake_client.mutating_calls[0][2] == "ipconfig1"
    assert record.phase == Phase.COMPLETED


def test_cleanup_dry_run_needs_no_token(fake_client, clock) -> None:
    record = _validated("a", clock, hours_ago=72)

    result = _orchestrator(fake_client, clock, settings=_settings(dry_run=True)).cleanup([record])

    assert record.phase == Phase.VALIDATED
    assert result.counts["planned"] == 1
    assert fake_client.mutating_calls == []


def test_full_lifecycle_is_monotonic(fake_client, clock) -> None:
    records = [make_record("a"), make_record("b")]
    fake_client.fail_on["b-std"] = ProviderPermanentError("denied")
    orch = _orchestrator(fake_client, clock)
    history = {r.name: [r.phase] for r in records}

    def _snap() -> None:
        for r in records:
            if history[r.name][-1] != r.phase:
                history[r.name].append(r.phase)

    orch.create(records)
    _snap()
    orch.validate(records)
    _snap()
    clock.advance(hours=49)
    orch.cleanup(records, confirmation=CLEANUP_CONFIRMATION_TOKEN)
    _snap()

    assert history["a"] == PHASE_ORDER
    assert history["b"] == [Phase.PENDING, Phase.FAILED]


def test_batches_checkpoint_and_wait(fake_client, clock) -> None:
    records = [make_record(f"pip-{i}") for i in range(5)]
    checkpoints = []
    waits = []

    def _wait(seconds: float) -> bool:
        waits.append(seconds)
        return False

    orch = _orchestrator(
        fake_client,
        clock,
        settings=_settings(batch_size=2, delay_between_batches_seconds=300),
        wait=_wait,
        checkpoint=lambda recs: checkpoints.append(sum(1 for r in recs if r.phase == Phase.CREATED)),
    )
    orch.create(records)

    assert checkpoints == [2, 4]
    assert waits == [300, 300]
    assert all(r.phase == Phase.CREATED for r in records)


def test_cancel_during_batch_delay_stops_phase(fake_client, clock) -> None:
    records = [make_record(f"pip-{i}") for i in range(4)]
    cancel = threading.Event()

    def _wait(seconds: float) -> bool:
        cancel.set()
        return True

    orch = _orchestrator(
        fake_client,
        clock,
        settings=_settings(batch_size=2, delay_between_batches_seconds=60),
        cancel=cancel,
        wait=_wait,
    )
    result = orch.create(records)

    assert result.cancelled
    assert [r.phase for r in records] == [Phase.CREATED, Phase.CREATED, Phase.PENDING, Phase.PENDING]


def test_soak_status_splits_due_and_waiting(clock) -> None:
    due_record = _validated("old", clock, hours_ago=50)
    waiting_record = _validated("new", clock, hours_ago=1.5)
    pending = make_record("pending")

    due, waiting = soak_status([due_record, waiting_record, pending], 48, clock())

    assert due == [due_record]
    assert waiting == [(waiting_record, 47)]


def test_outcome_values_cover_result_counts() -> None:
    orch = MigrationOrchestrator(object(), _settings())
    result = orch.create([])
    assert set(result.counts) == {o.value for o in Outcome}


def test_create_interface_reread_failure_is_only_a_warning(fake_client, clock) -> None:
    nic = fake_client.add_interface(SUB_A.subscription_id, "rg-app", "vm1-nic")
    fake_client.resolve_errors[nic.id.lower()] = ProviderPermanentError("interface read denied")
    record = make_record("vm1-pip", kind=ConsumerKind.NETWORK_INTERFACE, nic="vm1-nic")

    result = _orchestrator(fake_client, clock).create([record])

    assert [c[0] for c in fake_client.mutating_calls] == ["create_address", "attach_secondary_config"]
    assert result.counts["succeeded"] == 1
    assert record.phase == Phase.CREATED
    assert record.replacement_address
    assert record.has_note_containing("WARNING: Security rules not checked; interface could not be read")


def test_create_never_targets_the_legacy_address(fake_client, clock) -> None:
    records = [make_record("web-std"), make_record("web")]

    _orchestrator(fake_client, clock).create(records)

    names = [c[1] for c in fake_client.calls if c[0] == "create_address"]
    assert names == ["web-std-std", "web-std"]
    assert all(r.replacement_resource_id != r.legacy_resource_id for r in records)
