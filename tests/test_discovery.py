from __future__ import annotations

import logging

from conftest import SUB_A, SUB_B, T0, address_id, lb_frontend_id, make_record, nic_config_id
from ipsku_migration.cloud.base import AddressDescriptor
from ipsku_migration.migration.discovery import build_inventory, merge_with_previous
from ipsku_migration.migration.schema import ConsumerKind, Phase
from ipsku_migration.util.errors import ProviderPermanentError, ProviderTransientError


def _address(sub: str, name: str, *, rg: str = "rg-app", attachment: str = "", fqdn=None) -> AddressDescriptor:
    return AddressDescriptor(
        id=address_id(sub, rg, name),
        name=name,
        resource_group=rg,
        location="eastus",
        ip_address="10.0.0.1",
        allocation_method="Dynamic",
        attachment_id=attachment,
        fqdn=fqdn,
    )


def test_eleven_addresses_nine_unattached_two_nics(fake_client, clock) -> None:
    sub = SUB_A.subscription_id
    addresses = [_address(sub, f"pip-{i:02d}") for i in range(9)]
    for nic in ("vm1-nic", "vm2-nic"):
        fake_client.add_interface(sub, "rg-compute", nic)
        addresses.append(_address(sub, f"{nic}-pip", attachment=nic_config_id(sub, "rg-compute", nic)))
    fake_client.addresses[sub] = addresses

    result = build_inventory(fake_client, [SUB_A], clock=clock)

    assert len(result.records) == 11
    assert result.counts_by_kind() == {"NetworkInterface": 2, "Unattached": 9}
    assert all(r.phase == Phase.PENDING for r in result.records)
    assert all(r.replacement_name == f"{r.name}-std" for r in result.records)
    nic_record = [r for r in result.records if r.consumer_kind == ConsumerKind.NETWORK_INTERFACE][0]
    assert nic_record.consumer_ref == "vm1-nic"
    assert nic_record.consumer_resource_group == "rg-compute"
    assert nic_record.consumer_config == "ipconfig1"


def test_load_balancer_record_gets_manual_note(fake_client, clock) -> None:
    sub = SUB_A.subscription_id
    fake_client.addresses[sub] = [_address(sub, "lb-pip", attachment=lb_frontend_id(sub, "rg-app", "lb-web"))]

    record = build_inventory(fake_client, [SUB_A], clock=clock).records[0]

    assert record.consumer_kind == ConsumerKind.LOAD_BALANCER
    assert record.consumer_ref == "lb-web"
    assert record.phase == Phase.PENDING
    assert record.has_note_containing("upgrade the load balancer manually")
    assert not record.automatable


def test_unrecognized_attachment_is_other_with_warning(fake_client, clock, caplog) -> None:
    sub = SUB_A.subscription_id
    raw = f"/subscriptions/{sub}/resourceGroups/rg/providers/Microsoft.Network/natGateways/nat1"
    fake_client.addresses[sub] = [_address(sub, "odd-pip", attachment=raw)]

    with caplog.at_level(logging.WARNING):
        record = build_inventory(fake_client, [SUB_A], clock=clock).records[0]

    assert record.consumer_kind == ConsumerKind.OTHER
    assert record.consumer_ref == raw
    assert any("Unrecognized attachment" in m for m in caplog.messages)


def test_interface_lookup_failure_degrades_to_other(fake_client, clock) -> None:
    sub = SUB_A.subscription_id
    nic = fake_client.add_interface(sub, "rg-compute", "vm1-nic")
    fake_client.resolve_errors[nic.id.lower()] = ProviderPermanentError("forbidden")
    fake_client.addresses[sub] = [_address(sub, "vm1-pip", attachment=nic_config_id(sub, "rg-compute", "vm1-nic"))]

    record = build_inventory(fake_client, [SUB_A], clock=clock).records[0]

    assert record.consumer_kind == ConsumerKind.OTHER
    assert record.has_note_containing("Could not resolve network interface vm1-nic")


def test_failed_subscription_is_skipped_not_fatal(fake_client, clock) -> None:
    fake_client.list_errors[SUB_A.subscription_id] = ProviderTransientError("503")
    fake_client.addresses[SUB_B.subscription_id] = [_address(SUB_B.subscription_id, "dev-pip")]

    result = build_inventory(fake_client, [SUB_A, SUB_B], clock=clock)

    assert [r.name for r in result.records] == ["dev-pip"]
    assert result.records[0].subscription_name == "dev"
    assert result.scanned == [SUB_B]
    assert result.skipped[0]["subscription"] == SUB_A.subscription_id


def test_each_subscription_switch_is_logged(fake_client, clock, caplog) -> None:
    with caplog.at_level(logging.INFO):
        build_inventory(fake_client, [SUB_A, SUB_B], clock=clock)
    switches = [r for r in caplog.records if getattr(r, "phase", None) == "switch"]
    assert [r.subscription for r in switches] == [SUB_A.subscription_id, SUB_B.subscription_id]


def test_merge_keeps_progress_and_retired_records() -> None:
    fresh_a = make_record("a")
    fresh_b = make_record("b")
    old_a = make_record("a")
    old_a.advance(Phase.CREATED, now=T0)
    old_a.replacement_address = "20.0.0.1"
    old_pending_b = make_record("b", legacy_address="10.9.9.9")
    done = make_record("gone")
    done.phase = Phase.COMPLETED

    merged = merge_with_previous([fresh_a, fresh_b], [old_a, old_pending_b, done])

    assert merged[0] is old_a
    assert merged[1] is fresh_b
    assert merged[2] is done


def test_merge_keeps_notes_of_pending_records(fake_client, clock) -> None:
    sub = SUB_A.subscription_id
    fake_client.addresses[sub] = [
        _address(sub, "pip-a"),
        _address(sub, "lb-pip", attachment=lb_frontend_id(sub, "rg-app", "lb-web")),
    ]
    previous = build_inventory(fake_client, [SUB_A], clock=clock).records
    previous[0].add_note("create", "transient error, re-run create to retry: 429 throttled", now=T0)

    clock.advance(hours=1)
    fresh = build_inventory(fake_client, [SUB_A], clock=clock).records
    merged = merge_with_previous(fresh, previous)

    assert merged[0] is fresh[0]
    assert merged[0].notes == previous[0].notes
    assert merged[0].has_note_containing("429 throttled")
    # The manual-handling note from the first scan is not repeated.
    assert len(merged[1].notes) == 1
    assert merged[1].has_note_containing("upgrade the load balancer manually")


def test_replacement_name_taken_by_legacy_address_is_excluded(fake_client, clock) -> None:
    sub = SUB_A.subscription_id
    fake_client.addresses[sub] = [
        _address(sub, "web"),
        _address(sub, "web-std"),
        _address(sub, "api", rg="rg-one"),
        _address(sub, "api-std", rg="rg-two"),
    ]

    records = {r.name: r for r in build_inventory(fake_client, [SUB_A], clock=clock).records}

    web = records["web"]
    assert web.consumer_kind == ConsumerKind.OTHER
    assert not web.automatable
    assert web.has_note_containing("Replacement name web-std is already used")
    assert records["web-std"].replacement_name == "web-std-std"
    assert records["web-std"].automatable
    # Different resource groups do not collide.
    assert records["api"].automatable and records["api-std"].automatable
