from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from ..cloud.base import AddressDescriptor, ResourceClient, SubscriptionContext
from ..logging import get_logger
from ..util.errors import AuthenticationError, ProviderError
from ..util.time import utc_now
from .consumers import (
    NetworkInterfaceRef,
    UnrecognizedRef,
    consumer_kind_of,
    owner_config,
    owner_name,
    owner_resource_group,
    parse_attachment,
)
from .schema import MANUAL_HANDLING_NOTES, ConsumerKind, InventoryRecord, Phase

LOG = get_logger(__name__)


@dataclass
class DiscoveryResult:
    records: List[InventoryRecord] = field(default_factory=list)
    scanned: List[SubscriptionContext] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)

    def counts_by_kind(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for r in self.records:
            out[r.consumer_kind.value] = out.get(r.consumer_kind.value, 0) + 1
        return dict(sorted(out.items()))


def _record_from_address(
    subscription: SubscriptionContext,
    address: AddressDescriptor,
    client: ResourceClient,
    now: datetime,
) -> InventoryRecord:
    record = InventoryRecord(
        subscription_id=subscription.subscription_id,
        subscription_name=subscription.display_name,
        name=address.name,
        resource_group=address.resource_group,
        location=address.location,
        legacy_address=address.ip_address,
        legacy_resource_id=address.id,
        legacy_allocation_method=address.allocation_method,
        address_version=address.ip_version or "IPv4",
        attachment_id=address.attachment_id,
        dns_label=address.dns_label,
        dns_fqdn=address.fqdn,
    )
    ref = parse_attachment(address.attachment_id)
    record.consumer_kind = consumer_kind_of(ref)
    record.consumer_ref = owner_name(ref)
    record.consumer_resource_group = owner_resource_group(ref)
    record.consumer_config = owner_config(ref)

    if isinstance(ref, UnrecognizedRef):
        LOG.warning(
            "Unrecognized attachment for legacy address",
            extra={"address": address.name, "attachment": ref.raw, "subscription": subscription.subscription_id},
        )

    if isinstance(ref, NetworkInterfaceRef):
        try:
            nic = client.resolve_interface(subscription, ref.interface_id)
        except AuthenticationError:
            raise
        except ProviderError as e:
            record.consumer_kind = ConsumerKind.OTHER
            record.add_note("discover", f"Could not resolve network interface {ref.interface_name}: {e}", now=now)
            LOG.warning(
                "Network interface lookup failed; record degraded to Other",
                extra={"address": address.name, "interface": ref.interface_name, "error": str(e)},
            )
        else:
            record.consumer_resource_group = nic.resource_group or ref.resource_group

    manual = MANUAL_HANDLING_NOTES.get(record.consumer_kind)
    if manual:
        record.add_note("discover", manual, now=now)
    return record


def _exclude_name_collisions(records: Sequence[InventoryRecord], now: datetime) -> None:
    # Address names are unique per resource group, case-insensitively.
    taken = {(r.resource_group.lower(), r.name.lower()) for r in records}
    for record in records:
        if not record.automatable:
            continue
        if (record.resource_group.lower(), record.replacement_name.lower()) not in taken:
            continue
        record.consumer_kind = ConsumerKind.OTHER
        record.add_note(
            "discover",
            f"Replacement name {record.replacement_name} is already used by a legacy address in "
            f"{record.resource_group}. Excluded from automated migration.",
            now=now,
        )
        LOG.warning(
            "Replacement name collides with a legacy address; record excluded",
            extra={"address": record.name, "replacement": record.replacement_name, "subscription": record.subscription_id},
        )


def build_inventory(
    client: ResourceClient,
    subscriptions: Sequence[SubscriptionContext],
    *,
    clock: Callable[[], datetime] = utc_now,
    on_record: Optional[Callable[[InventoryRecord], None]] = None,
) -> DiscoveryResult:
    """
    Enumerate Basic addresses in every subscription and classify their consumers.

    A subscription whose listing fails is logged and skipped; the scan goes on.
    Records come back Pending, in subscription order then (resource group, name).
    """
    result = DiscoveryResult()
    for subscription in subscriptions:
        LOG.info(
            "Switching subscription context",
            extra={
                "step": "subscription",
                "phase": "switch",
                "subscription": subscription.subscription_id,
                "subscription_name": subscription.display_name,
            },
        )
        try:
            addresses = client.list_legacy_addresses(subscription)
        except AuthenticationError:
            raise
        except ProviderError as e:
            LOG.error(
                "Listing legacy addresses failed; subscription skipped",
                extra={"subscription": subscription.subscription_id, "error": str(e)},
            )
            result.skipped.append({"subscription": subscription.subscription_id, "reason": str(e)})
            continue

        result.scanned.append(subscription)
        now = clock()
        records = [_record_from_address(subscription, address, client, now) for address in addresses]
        _exclude_name_collisions(records, now)
        for record in records:
            result.records.append(record)
            if on_record is not None:
                on_record(record)
        LOG.info(
            "Legacy addresses discovered",
            extra={"subscription": subscription.subscription_id, "count": len(addresses)},
        )
    return result


def _note_text(note: str) -> str:
    # Drop the leading timestamp so repeated discovery notes compare equal.
    return note.split(" ", 1)[-1]


def _carry_notes(previous: Sequence[str], fresh: Sequence[str]) -> List[str]:
    known = {_note_text(n) for n in previous}
    return list(previous) + [n for n in fresh if _note_text(n) not in known]


def merge_with_previous(
    discovered: Sequence[InventoryRecord],
    previous: Sequence[InventoryRecord],
) -> List[InventoryRecord]:
    """
    Fold a fresh scan into the prior snapshot.

    Records that already left Pending keep their previous state. Pending records
    take the fresh scan but keep their earlier notes. Previous records
    missing from the scan (Completed ones whose legacy address is gone) are kept
    at the end, so nothing ever drops out of the inventory.
    """
    prior: Dict[str, InventoryRecord] = {r.key: r for r in previous}
    merged: List[InventoryRecord] = []
    seen = set()
    for record in discovered:
        seen.add(record.key)
        old = prior.get(record.key)
        if old is None:
            merged.append(record)
        elif old.phase != Phase.PENDING:
            merged.append(old)
        else:
            record.notes = _carry_notes(old.notes, record.notes)
            merged.append(record)
    carried = [r for r in previous if r.key not in seen]
    if carried:
        LOG.info("Carrying records not seen in this scan", extra={"count": len(carried)})
    return merged + carried
