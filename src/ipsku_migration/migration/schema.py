from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from ..util.errors import InvalidTransition
from ..util.time import format_iso, utc_now

REPLACEMENT_SUFFIX = "-std"
SECONDARY_CONFIG_PREFIX = "ipconfig-"
NOTE_SEPARATOR = " | "


class Phase(str, Enum):
    PENDING = "Pending"
    CREATED = "Created"
    VALIDATED = "Validated"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ConsumerKind(str, Enum):
    UNATTACHED = "Unattached"
    NETWORK_INTERFACE = "NetworkInterface"
    LOAD_BALANCER = "LoadBalancer"
    APPLICATION_GATEWAY = "ApplicationGateway"
    VPN_GATEWAY = "VpnGateway"
    OTHER = "Other"


# Only these kinds go through Create/Validate/Cleanup; everything else is manual.
AUTOMATABLE_KINDS: FrozenSet[ConsumerKind] = frozenset({ConsumerKind.UNATTACHED, ConsumerKind.NETWORK_INTERFACE})

MANUAL_HANDLING_NOTES: Dict[ConsumerKind, str] = {
    ConsumerKind.LOAD_BALANCER: (
        "Attached to a Basic load balancer; upgrade the load balancer manually. "
        "Excluded from automated migration."
    ),
    ConsumerKind.VPN_GATEWAY: (
        "Attached to a virtual network gateway; gateway SKU migration is manual. "
        "Excluded from automated migration."
    ),
    ConsumerKind.APPLICATION_GATEWAY: (
        "Attached to an application gateway; migrate the gateway to v2 manually. "
        "Excluded from automated migration."
    ),
    ConsumerKind.OTHER: "Attachment not recognized; review manually. Excluded from automated migration.",
}

# Forward moves plus the sideways divert into Failed.
ALLOWED_TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.PENDING: frozenset({Phase.CREATED, Phase.FAILED}),
    Phase.CREATED: frozenset({Phase.VALIDATED, Phase.FAILED}),
    Phase.VALIDATED: frozenset({Phase.COMPLETED, Phase.FAILED}),
    Phase.COMPLETED: frozenset(),
    Phase.FAILED: frozenset(),
}

PHASES_WITH_REPLACEMENT: FrozenSet[Phase] = frozenset({Phase.CREATED, Phase.VALIDATED, Phase.COMPLETED})


def replacement_name(name: str) -> str:
    """
    Deterministic name of the Standard address that replaces `name`.
    The suffix is always appended, so `web-std` maps to `web-std-std` and
    never to itself.
    """
    base = (name or "").strip()
    if not base:
        raise ValueError("Address name is required to derive a replacement name")
    return f"{base}{REPLACEMENT_SUFFIX}"


def secondary_config_name(name: str) -> str:
    """Name of the secondary NIC ip configuration that binds the replacement address."""
    return f"{SECONDARY_CONFIG_PREFIX}{replacement_name(name)}"


def can_transition(current: Phase, target: Phase) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class InventoryRecord:
    subscription_id: str
    subscription_name: str
    name: str
    resource_group: str
    location: str
    legacy_address: str = ""
    legacy_resource_id: str = ""
    legacy_allocation_method: str = ""
    address_version: str = "IPv4"
    consumer_kind: ConsumerKind = ConsumerKind.UNATTACHED
    consumer_ref: str = ""
    consumer_resource_group: str = ""
    consumer_config: str = ""
    attachment_id: str = ""
    dns_label: Optional[str] = None
    dns_fqdn: Optional[str] = None
    replacement_name: str = ""
    replacement_address: str = ""
    replacement_resource_id: str = ""
    phase: Phase = Phase.PENDING
    phase_timestamp: Optional[datetime] = None
    notes: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.replacement_name:
            self.replacement_name = replacement_name(self.name)

    @property
    def key(self) -> str:
        return self.legacy_resource_id or f"{self.subscription_id}/{self.resource_group}/{self.name}"

    @property
    def automatable(self) -> bool:
        return self.consumer_kind in AUTOMATABLE_KINDS

    @property
    def secondary_config_name(self) -> str:
        return secondary_config_name(self.name)

    def add_note(self, step: str, text: str, *, now: Optional[datetime] = None) -> None:
        stamp = format_iso(now or utc_now())
        self.notes.append(f"{stamp} {step}: {text}")

    def has_note_containing(self, text: str) -> bool:
        return any(text in n for n in self.notes)

    def advance(self, target: Phase, *, now: Optional[datetime] = None) -> None:
        """
        Move to `target`, enforcing the transition table.
        Entering Created stamps phase_timestamp (the soak anchor).
        """
        if not can_transition(self.phase, target):
            raise InvalidTransition(f"{self.name}: {self.phase.value} -> {target.value} is not allowed")
        if target == Phase.CREATED:
            self.phase_timestamp = now or utc_now()
        self.phase = target

    def mark_failed(self, step: str, error: BaseException, *, now: Optional[datetime] = None) -> None:
        self.add_note(step, f"FAILED: {error}", now=now)
        self.advance(Phase.FAILED, now=now)


def record_invariant_problems(record: InventoryRecord) -> List[str]:
    problems: List[str] = []
    has_replacement = bool(record.replacement_address)
    in_replacement_phase = record.phase in PHASES_WITH_REPLACEMENT
    if in_replacement_phase and not has_replacement:
        problems.append(f"{record.name}: phase {record.phase.value} but replacementAddress is empty")
    # Failed keeps whatever replacement it already had so operators can repair it.
    if has_replacement and not in_replacement_phase and record.phase != Phase.FAILED:
        problems.append(f"{record.name}: replacementAddress set while phase is {record.phase.value}")
    if record.replacement_name != replacement_name(record.name):
        problems.append(f"{record.name}: replacementName {record.replacement_name!r} does not match derived name")
    if record.phase in PHASES_WITH_REPLACEMENT and record.phase_timestamp is None:
        problems.append(f"{record.name}: phase {record.phase.value} without phaseTimestamp")
    if not record.automatable and record.phase != Phase.PENDING:
        problems.append(f"{record.name}: {record.consumer_kind.value} record moved to {record.phase.value}")
    return problems
