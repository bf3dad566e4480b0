from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from azure.mgmt.core.tools import is_valid_resource_id, parse_resource_id

from .schema import ConsumerKind

_NETWORK_NAMESPACE = "microsoft.network"


@dataclass(frozen=True)
class NetworkInterfaceRef:
    subscription_id: str
    resource_group: str
    interface_name: str
    config_name: str

    @property
    def interface_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Network/networkInterfaces/{self.interface_name}"
        )


@dataclass(frozen=True)
class LoadBalancerRef:
    resource_group: str
    load_balancer_name: str
    frontend_name: str


@dataclass(frozen=True)
class ApplicationGatewayRef:
    resource_group: str
    gateway_name: str
    frontend_name: str


@dataclass(frozen=True)
class VpnGatewayRef:
    resource_group: str
    gateway_name: str
    config_name: str


@dataclass(frozen=True)
class UnrecognizedRef:
    raw: str


ConsumerRef = Union[NetworkInterfaceRef, LoadBalancerRef, ApplicationGatewayRef, VpnGatewayRef, UnrecognizedRef]


def parse_attachment(attachment_id: Optional[str]) -> Optional[ConsumerRef]:
    """
    Parse the ARM id of the configuration a public address is bound to.

    Known shapes (all under Microsoft.Network):
      networkInterfaces/<nic>/ipConfigurations/<cfg>
      loadBalancers/<lb>/frontendIPConfigurations/<fe>
      applicationGateways/<agw>/frontendIPConfigurations/<fe>
      virtualNetworkGateways/<gw>/ipConfigurations/<cfg>

    Returns None when there is no attachment and UnrecognizedRef for anything else.
    """
    raw = (attachment_id or "").strip()
    if not raw:
        return None
    if not is_valid_resource_id(raw):
        return UnrecognizedRef(raw=raw)
    parts = parse_resource_id(raw)
    namespace = str(parts.get("namespace") or "").lower()
    rtype = str(parts.get("type") or "").lower()
    child_type = str(parts.get("child_type_1") or "").lower()
    name = parts.get("name") or ""
    child_name = parts.get("child_name_1") or ""
    resource_group = parts.get("resource_group") or ""
    if namespace != _NETWORK_NAMESPACE or not name or not child_name:
        return UnrecognizedRef(raw=raw)

    if rtype == "networkinterfaces" and child_type == "ipconfigurations":
        return NetworkInterfaceRef(
            subscription_id=parts.get("subscription") or "",
            resource_group=resource_group,
            interface_name=name,
            config_name=child_name,
        )
    if rtype == "loadbalancers" and child_type == "frontendipconfigurations":
        return LoadBalancerRef(resource_group=resource_group, load_balancer_name=name, frontend_name=child_name)
    if rtype == "applicationgateways" and child_type == "frontendipconfigurations":
        return ApplicationGatewayRef(resource_group=resource_group, gateway_name=name, frontend_name=child_name)
    if rtype == "virtualnetworkgateways" and child_type == "ipconfigurations":
        return VpnGatewayRef(resource_group=resource_group, gateway_name=name, config_name=child_name)
    return UnrecognizedRef(raw=raw)


def consumer_kind_of(ref: Optional[ConsumerRef]) -> ConsumerKind:
    if ref is None:
        return ConsumerKind.UNATTACHED
    if isinstance(ref, NetworkInterfaceRef):
        return ConsumerKind.NETWORK_INTERFACE
    if isinstance(ref, LoadBalancerRef):
        return ConsumerKind.LOAD_BALANCER
    if isinstance(ref, ApplicationGatewayRef):
        return ConsumerKind.APPLICATION_GATEWAY
    if isinstance(ref, VpnGatewayRef):
        return ConsumerKind.VPN_GATEWAY
    return ConsumerKind.OTHER


def owner_name(ref: Optional[ConsumerRef]) -> str:
    if ref is None:
        return ""
    if isinstance(ref, NetworkInterfaceRef):
        return ref.interface_name
    if isinstance(ref, LoadBalancerRef):
        return ref.load_balancer_name
    if isinstance(ref, (ApplicationGatewayRef, VpnGatewayRef)):
        return ref.gateway_name
    return ref.raw


def owner_config(ref: Optional[ConsumerRef]) -> str:
    if isinstance(ref, (NetworkInterfaceRef, VpnGatewayRef)):
        return ref.config_name
    if isinstance(ref, (LoadBalancerRef, ApplicationGatewayRef)):
        return ref.frontend_name
    return ""


def owner_resource_group(ref: Optional[ConsumerRef]) -> str:
    if ref is None or isinstance(ref, UnrecognizedRef):
        return ""
    return ref.resource_group
