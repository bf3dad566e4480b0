from __future__ import annotations

import csv
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from ..logging import get_logger
from ..migration.schema import NOTE_SEPARATOR, ConsumerKind, InventoryRecord, Phase, record_invariant_problems
from ..util.errors import InventoryStoreError
from ..util.time import format_iso, parse_iso_utc, utc_now

LOG = get_logger(__name__)

SNAPSHOT_PREFIX = "inventory_"
SNAPSHOT_SUFFIX = ".csv"
SUMMARY_SUFFIX = "_summary.md"

CSV_FIELDS = [
    "subscriptionId",
    "subscriptionName",
    "name",
    "resourceGroup",
    "location",
    "legacyAddress",
    "legacyResourceId",
    "legacyAllocationMethod",
    "addressVersion",
    "consumerKind",
    "consumerRef",
    "consumerResourceGroup",
    "consumerConfig",
    "attachmentId",
    "dnsLabel",
    "dnsFqdn",
    "replacementName",
    "replacementAddress",
    "replacementResourceId",
    "phase",
    "phaseTimestamp",
    "notes",
]


class InventoryStore(Protocol):
    def has_snapshot(self) -> bool: ...

    def load(self) -> List[InventoryRecord]: ...

    def save(self, records: Sequence[InventoryRecord]) -> Optional[Path]: ...


def record_to_row(record: InventoryRecord) -> Dict[str, str]:
    return {
        "subscriptionId": record.subscription_id,
        "subscriptionName": record.subscription_name,
        "name": record.name,
        "resourceGroup": record.resource_group,
        "location": record.location,
        "legacyAddress": record.legacy_address,
        "legacyResourceId": record.legacy_resource_id,
        "legacyAllocationMethod": record.legacy_allocation_method,
        "addressVersion": record.address_version,
        "consumerKind": record.consumer_kind.value,
        "consumerRef": record.consumer_ref,
        "consumerResourceGroup": record.consumer_resource_group,
        "consumerConfig": record.consumer_config,
        "attachmentId": record.attachment_id,
        "dnsLabel": record.dns_label or "",
        "dnsFqdn": record.dns_fqdn or "",
        "replacementName": record.replacement_name,
        "replacementAddress": record.replacement_address,
        "replacementResourceId": record.replacement_resource_id,
        "phase": record.phase.value,
        "phaseTimestamp": format_iso(record.phase_timestamp, timespec="microseconds"),
        "notes": NOTE_SEPARATOR.join(n.replace(NOTE_SEPARATOR, " / ") for n in record.notes),
    }


def row_to_record(row: Dict[str, str]) -> InventoryRecord:
    def _get(key: str) -> str:
        return str(row.get(key) or "").strip()

    try:
        kind = ConsumerKind(_get("consumerKind") or ConsumerKind.UNATTACHED.value)
        phase = Phase(_get("phase") or Phase.PENDING.value)
    except ValueError as e:
        raise InventoryStoreError(f"Invalid value in inventory row for {_get('name')!r}: {e}") from e
    notes_raw = str(row.get("notes") or "")
    return InventoryRecord(
        subscription_id=_get("subscriptionId"),
        subscription_name=_get("subscriptionName"),
        name=_get("name"),
        resource_group=_get("resourceGroup"),
        location=_get("location"),
        legacy_address=_get("legacyAddress"),
        legacy_resource_id=_get("legacyResourceId"),
        legacy_allocation_method=_get("legacyAllocationMethod"),
        address_version=_get("addressVersion") or "IPv4",
        consumer_kind=kind,
        consumer_ref=_get("consumerRef"),
        consumer_resource_group=_get("consumerResourceGroup"),
        consumer_config=_get("consumerConfig"),
        attachment_id=_get("attachmentId"),
        dns_label=_get("dnsLabel") or None,
        dns_fqdn=_get("dnsFqdn") or None,
        replacement_name=_get("replacementName"),
        replacement_address=_get("replacementAddress"),
        replacement_resource_id=_get("replacementResourceId"),
        phase=phase,
        phase_timestamp=parse_iso_utc(_get("phaseTimestamp")),
        notes=[n for n in notes_raw.split(NOTE_SEPARATOR) if n.strip()],
    )


def write_inventory_csv(records: Sequence[InventoryRecord], path: Path) -> None:
    """
    Write all records, one header row, in inventory (discovery) order.
    Written to a temporary file first so a crash never leaves a truncated snapshot.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for rec in records:
            writer.writerow(record_to_row(rec))
    os.replace(tmp, path)


def read_inventory_csv(path: Path) -> List[InventoryRecord]:
    if not path.exists():
        raise InventoryStoreError(f"Inventory file not found: {path}")
    with path.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        missing = sorted(set(CSV_FIELDS) - set(reader.fieldnames or []))
        if missing:
            raise InventoryStoreError(f"Inventory file {path} is missing columns: {', '.join(missing)}")
        records = [row_to_record(row) for row in reader]
    for rec in records:
        for problem in record_invariant_problems(rec):
            LOG.warning("Inventory record violates invariant", extra={"path": str(path), "problem": problem})
    return records


def snapshot_name(now: datetime) -> str:
    return f"{SNAPSHOT_PREFIX}{now.strftime('%Y%m%dT%H%M%S_%f')}Z{SNAPSHOT_SUFFIX}"


def latest_snapshot(directory: Path) -> Optional[Path]:
    """Most recently written snapshot; names sort chronologically."""
    if not directory.is_dir():
        return None
    candidates = sorted(
        p
        for p in directory.glob(f"{SNAPSHOT_PREFIX}*{SNAPSHOT_SUFFIX}")
        if p.is_file() and not p.name.endswith(".tmp")
    )
    return candidates[-1] if candidates else None


class CsvSnapshotStore:
    """
    File-based snapshot store: every save writes a new timestamped CSV (plus a
    Markdown summary) under <outdir>/inventory; load reads the newest one, or an
    explicit path when given.
    """

    def __init__(
        self,
        outdir: Path,
        *,
        source: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
        write_summary: bool = True,
    ) -> None:
        self.directory = Path(outdir) / "inventory"
        self._source = Path(source) if source else None
        self._clock = clock
        self._write_summary = write_summary
        self.last_saved: Optional[Path] = None

    def latest(self) -> Optional[Path]:
        return self._source or latest_snapshot(self.directory)

    def has_snapshot(self) -> bool:
        return self.latest() is not None

    def load(self) -> List[InventoryRecord]:
        path = self.latest()
        if path is None:
            raise InventoryStoreError(f"No inventory snapshot found in {self.directory}; run discover first")
        LOG.info("Loading inventory snapshot", extra={"path": str(path)})
        return read_inventory_csv(path)

    def save(self, records: Sequence[InventoryRecord]) -> Optional[Path]:
        path = self.directory / snapshot_name(self._clock())
        try:
            write_inventory_csv(records, path)
            if self._write_summary:
                from ..report import write_inventory_summary_md

                write_inventory_summary_md(records, path.with_name(path.stem + SUMMARY_SUFFIX))
        except OSError as e:
            raise InventoryStoreError(f"Failed to write inventory snapshot {path}: {e}") from e
        self.last_saved = path
        # Later loads in this process continue from what was just written.
        self._source = None
        LOG.info("Inventory snapshot saved", extra={"path": str(path), "records": len(records)})
        return path


class MemoryInventoryStore:
    """In-memory snapshots, newest last."""

    def __init__(self, records: Optional[Sequence[InventoryRecord]] = None) -> None:
        self.snapshots: List[List[InventoryRecord]] = []
        if records is not None:
            self.snapshots.append(list(records))

    def has_snapshot(self) -> bool:
        return bool(self.snapshots)

    def load(self) -> List[InventoryRecord]:
        if not self.snapshots:
            raise InventoryStoreError("No inventory snapshot saved yet")
        return list(self.snapshots[-1])

    def save(self, records: Sequence[InventoryRecord]) -> Optional[Path]:
        self.snapshots.append(list(records))
        return None
