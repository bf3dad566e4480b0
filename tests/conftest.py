from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from ipsku_migration.cloud.base import (
    AddressDescriptor,
    AddressSpec,
    InterfaceDescriptor,
    IpConfigDescriptor,
    RuleDescriptor,
    SubscriptionContext,
)
from ipsku_migration.migration.schema import ConsumerKind, InventoryRecord
from ipsku_migration.util.errors import ProviderPermanentError

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

SUB_A = SubscriptionContext(subscription_id="00000000-0000-0000-0000-00000000000a", display_name="prod")
SUB_B = SubscriptionContext(subscription_id="00000000-0000-0000-0000-00000000000b", display_name="dev")


def address_id(sub: str, rg: str, name: str) -> str:
    return f"/subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.Network/publicIPAddresses/{name}"


def nic_config_id(sub: str, rg: str, nic: str, cfg: str = "ipconfig1") -> str:
    return (
        f"/subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.Network/networkInterfaces/{nic}"
        f"/ipConfigurations/{cfg}"
    )


def lb_frontend_id(sub: str, rg: str, lb: str, fe: str = "frontend") -> str:
    return (
        f"/subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.Network/loadBalancers/{lb}"
        f"/frontendIPConfigurations/{fe}"
    )


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeResourceClient:
    """In-memory ResourceClient that records every call."""

    def __init__(self) -> None:
        self.subscriptions: List[SubscriptionContext] = [SUB_A, SUB_B]
        self.addresses: Dict[str, List[AddressDescriptor]] = {}
        self.interfaces: Dict[str, InterfaceDescriptor] = {}
        self.rules: Dict[str, Optional[List[RuleDescriptor]]] = {}
        self.dns: Dict[str, List[str]] = {}
        self.created: Dict[str, AddressDescriptor] = {}
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        self.list_errors: Dict[str, Exception] = {}
        self.resolve_errors: Dict[str, Exception] = {}
        self.attached: Dict[str, set] = {}
        self.deleted: List[str] = []
        self.next_ip = 1

    @property
    def mutating_calls(self) -> List[tuple]:
        mutating = {"create_address", "attach_secondary_config", "detach_config", "delete_address"}
        return [c for c in self.calls if c[0] in mutating]

    def add_interface(self, sub: str, rg: str, name: str, *, nsg: Optional[str] = None) -> InterfaceDescriptor:
        nic_id = f"/subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.Network/networkInterfaces/{name}"
        subnet = f"/subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.Network/virtualNetworks/vnet/subnets/default"
        nic = InterfaceDescriptor(
            id=nic_id,
            name=name,
            resource_group=rg,
            location="eastus",
            ip_configurations=(IpConfigDescriptor(name="ipconfig1", primary=True, subnet_id=subnet),),
            security_group_id=nsg,
        )
        self.interfaces[nic_id.lower()] = nic
        return nic

    def list_subscriptions(self) -> List[SubscriptionContext]:
        self.calls.append(("list_subscriptions",))
        return list(self.subscriptions)

    def list_legacy_addresses(self, subscription: SubscriptionContext) -> List[AddressDescriptor]:
        self.calls.append(("list_legacy_addresses", subscription.subscription_id))
        if subscription.subscription_id in self.list_errors:
            raise self.list_errors[subscription.subscription_id]
        return list(self.addresses.get(subscription.subscription_id, []))

    def get_address(self, subscription: SubscriptionContext, resource_id: str) -> Optional[AddressDescriptor]:
        self.calls.append(("get_address", resource_id))
        return self.created.get(resource_id)

    def resolve_interface(self, subscription: SubscriptionContext, interface_id: str) -> InterfaceDescriptor:
        self.calls.append(("resolve_interface", interface_id))
        if interface_id.lower() in self.resolve_errors:
            raise self.resolve_errors[interface_id.lower()]
        nic = self.interfaces.get(interface_id.lower())
        if nic is None:
            raise ProviderPermanentError(f"interface not found: {interface_id}")
        return nic

    def create_address(self, subscription: SubscriptionContext, spec: AddressSpec) -> AddressDescriptor:
        self.calls.append(("create_address", spec.name, spec))
        if spec.name in self.fail_on:
            raise self.fail_on[spec.name]
        rid = address_id(subscription.subscription_id, spec.resource_group, spec.name)
        created = AddressDescriptor(
            id=rid,
            name=spec.name,
            resource_group=spec.resource_group,
            location=spec.location,
            ip_address=f"20.0.0.{self.next_ip}",
            sku="Standard",
            allocation_method=spec.allocation_method,
            zones=tuple(spec.zones),
            tags=dict(spec.tags),
            provisioning_state="Succeeded",
        )
        self.next_ip += 1
        self.created[rid] = created
        return created

    def attach_secondary_config(
        self, subscription: SubscriptionContext, interface_id: str, config_name: str, address_id: str
    ) -> bool:
        self.calls.append(("attach_secondary_config", interface_id, config_name, address_id))
        names = self.attached.setdefault(interface_id.lower(), set())
        if config_name in names:
            return False
        names.add(config_name)
        return True

    def detach_config(
        self,
        subscription: SubscriptionContext,
        interface_id: str,
        config_name: str,
        address_id: Optional[str] = None,
    ) -> bool:
        self.calls.append(("detach_config", interface_id, config_name, address_id))
        return True

    def delete_address(self, subscription: SubscriptionContext, resource_id: str) -> None:
        self.calls.append(("delete_address", resource_id))
        if resource_id in self.fail_on:
            raise self.fail_on[resource_id]
        self.deleted.append(resource_id)

    def get_security_rules(self, subscription: SubscriptionContext, resource_id: str) -> Optional[List[RuleDescriptor]]:
        self.calls.append(("get_security_rules", resource_id))
        return self.rules.get(resource_id)

    def resolve_dns(self, fqdn: str) -> List[str]:
        self.calls.append(("resolve_dns", fqdn))
        return list(self.dns.get(fqdn, []))


def make_record(
    name: str,
    *,
    kind: ConsumerKind = ConsumerKind.UNATTACHED,
    sub: SubscriptionContext = SUB_A,
    rg: str = "rg-app",
    nic: str = "",
    **overrides,
) -> InventoryRecord:
    fields = dict(
        subscription_id=sub.subscription_id,
        subscription_name=sub.display_name,
        name=name,
        resource_group=rg,
        location="eastus",
        legacy_address="10.1.1.1",
        legacy_resource_id=address_id(sub.subscription_id, rg, name),
        legacy_allocation_method="Dynamic",
        consumer_kind=kind,
    )
    if kind == ConsumerKind.NETWORK_INTERFACE:
        fields.update(consumer_ref=nic or f"{name}-nic", consumer_resource_group=rg, consumer_config="ipconfig1")
    elif kind == ConsumerKind.LOAD_BALANCER:
        fields.update(consumer_ref="lb-web", consumer_resource_group=rg, consumer_config="frontend")
    fields.update(overrides)
    return InventoryRecord(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeResourceClient:
    return FakeResourceClient()
