from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence


@dataclass(frozen=True)
class SubscriptionContext:
    """Explicit subscription handle passed to every provider call."""

    subscription_id: str
    display_name: str = ""
    tenant_id: Optional[str] = None
    state: str = "Enabled"

    @property
    def label(self) -> str:
        if self.display_name:
            return f"{self.display_name} ({self.subscription_id})"
        return self.subscription_id


@dataclass(frozen=True)
class AddressDescriptor:
    id: str
    name: str
    resource_group: str
    location: str
    ip_address: str = ""
    sku: str = "Basic"
    allocation_method: str = ""
    ip_version: str = "IPv4"
    attachment_id: str = ""
    dns_label: Optional[str] = None
    fqdn: Optional[str] = None
    zones: Sequence[str] = ()
    tags: Dict[str, str] = field(default_factory=dict)
    provisioning_state: str = ""


@dataclass(frozen=True)
class AddressSpec:
    """Request body for a new Standard address."""

    name: str
    resource_group: str
    location: str
    allocation_method: str = "Static"
    ip_version: str = "IPv4"
    zones: Sequence[str] = ()
    tags: Dict[str, str] = field(default_factory=dict)
    dns_label: Optional[str] = None
    sku: str = "Standard"


@dataclass(frozen=True)
class IpConfigDescriptor:
    name: str
    primary: bool = False
    public_ip_id: Optional[str] = None
    subnet_id: Optional[str] = None


@dataclass(frozen=True)
class InterfaceDescriptor:
    id: str
    name: str
    resource_group: str
    location: str
    ip_configurations: Sequence[IpConfigDescriptor] = ()
    security_group_id: Optional[str] = None

    def config(self, name: str) -> Optional[IpConfigDescriptor]:
        for cfg in self.ip_configurations:
            if cfg.name.lower() == name.lower():
                return cfg
        return None

    @property
    def subnet_ids(self) -> List[str]:
        out: List[str] = []
        for cfg in self.ip_configurations:
            if cfg.subnet_id and cfg.subnet_id not in out:
                out.append(cfg.subnet_id)
        return out


@dataclass(frozen=True)
class RuleDescriptor:
    name: str
    direction: str
    access: str
    protocol: str = "*"
    priority: int = 0
    source_prefixes: Sequence[str] = ("*",)
    destination_ports: Sequence[str] = ("*",)

    @property
    def inbound_allow(self) -> bool:
        return self.direction.lower() == "inbound" and self.access.lower() == "allow"

    def covers_port(self, port: int) -> bool:
        for spec in self.destination_ports:
            text = str(spec).strip()
            if text in {"*", "Any", "any"}:
                return True
            if "-" in text:
                lo, _, hi = text.partition("-")
                try:
                    if int(lo) <= port <= int(hi):
                        return True
                except ValueError:
                    continue
                continue
            try:
                if int(text) == port:
                    return True
            except ValueError:
                continue
        return False


class ResourceClient(Protocol):
    """
    Cloud control-plane boundary consumed by discovery and the orchestrator.
    Implementations raise ProviderTransientError / ProviderPermanentError /
    AuthenticationError, never raw SDK exceptions.
    """

    def list_subscriptions(self) -> List[SubscriptionContext]: ...

    def list_legacy_addresses(self, subscription: SubscriptionContext) -> List[AddressDescriptor]: ...

    def get_address(self, subscription: SubscriptionContext, resource_id: str) -> Optional[AddressDescriptor]: ...

    def resolve_interface(self, subscription: SubscriptionContext, interface_id: str) -> InterfaceDescriptor: ...

    def create_address(self, subscription: SubscriptionContext, spec: AddressSpec) -> AddressDescriptor: ...

    def attach_secondary_config(
        self,
        subscription: SubscriptionContext,
        interface_id: str,
        config_name: str,
        address_id: str,
    ) -> bool: ...

    def detach_config(
        self,
        subscription: SubscriptionContext,
        interface_id: str,
        config_name: str,
        address_id: Optional[str] = None,
    ) -> bool: ...

    def delete_address(self, subscription: SubscriptionContext, resource_id: str) -> None: ...

    def get_security_rules(
        self, subscription: SubscriptionContext, resource_id: str
    ) -> Optional[List[RuleDescriptor]]: ...

    def resolve_dns(self, fqdn: str) -> List[str]: ...
