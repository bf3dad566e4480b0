from __future__ import annotations

import socket
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from azure.mgmt.core.tools import parse_resource_id

from ..auth.providers import AuthContext
from ..logging import get_logger
from ..util.errors import ProviderPermanentError, is_not_found, map_provider_error
from .base import (
    AddressDescriptor,
    AddressSpec,
    InterfaceDescriptor,
    IpConfigDescriptor,
    RuleDescriptor,
    SubscriptionContext,
)
from .clients import get_network_client
from .subscriptions import list_subscriptions

try:
    from azure.mgmt.network import models as network_models  # type: ignore
except Exception:  # pragma: no cover
    network_models = None  # type: ignore

LOG = get_logger(__name__)

T = TypeVar("T")

LEGACY_SKU = "basic"


def _call(context: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except Exception as e:
        mapped = map_provider_error(e, context)
        if mapped is not None and mapped is not e:
            raise mapped from e
        raise


def _id_of(obj: Any) -> str:
    return str(getattr(obj, "id", None) or "")


def _sku_name(address: Any) -> str:
    sku = getattr(address, "sku", None)
    # Addresses created before SKUs existed report no sku and are Basic.
    return str(getattr(sku, "name", None) or "Basic")


def _str_enum(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(getattr(value, "value", value))


def address_from_model(address: Any) -> AddressDescriptor:
    rid = _id_of(address)
    parts = parse_resource_id(rid) if rid else {}
    dns = getattr(address, "dns_settings", None)
    return AddressDescriptor(
        id=rid,
        name=str(getattr(address, "name", None) or parts.get("name") or ""),
        resource_group=str(parts.get("resource_group") or ""),
        location=str(getattr(address, "location", None) or ""),
        ip_address=str(getattr(address, "ip_address", None) or ""),
        sku=_sku_name(address),
        allocation_method=_str_enum(getattr(address, "public_ip_allocation_method", None)),
        ip_version=_str_enum(getattr(address, "public_ip_address_version", None), "IPv4"),
        attachment_id=_id_of(getattr(address, "ip_configuration", None)),
        dns_label=getattr(dns, "domain_name_label", None) if dns else None,
        fqdn=getattr(dns, "fqdn", None) if dns else None,
        zones=tuple(getattr(address, "zones", None) or ()),
        tags=dict(getattr(address, "tags", None) or {}),
        provisioning_state=_str_enum(getattr(address, "provisioning_state", None)),
    )


def interface_from_model(nic: Any) -> InterfaceDescriptor:
    rid = _id_of(nic)
    parts = parse_resource_id(rid) if rid else {}
    configs: List[IpConfigDescriptor] = []
    for cfg in getattr(nic, "ip_configurations", None) or []:
        configs.append(
            IpConfigDescriptor(
                name=str(getattr(cfg, "name", None) or ""),
                primary=bool(getattr(cfg, "primary", False)),
                public_ip_id=_id_of(getattr(cfg, "public_ip_address", None)) or None,
                subnet_id=_id_of(getattr(cfg, "subnet", None)) or None,
            )
        )
    return InterfaceDescriptor(
        id=rid,
        name=str(getattr(nic, "name", None) or parts.get("name") or ""),
        resource_group=str(parts.get("resource_group") or ""),
        location=str(getattr(nic, "location", None) or ""),
        ip_configurations=tuple(configs),
        security_group_id=_id_of(getattr(nic, "network_security_group", None)) or None,
    )


def _prefixes(single: Any, many: Any) -> List[str]:
    out = [str(v) for v in (many or []) if v]
    if single:
        out.append(str(single))
    return out or ["*"]


def rule_from_model(rule: Any) -> RuleDescriptor:
    return RuleDescriptor(
        name=str(getattr(rule, "name", None) or ""),
        direction=_str_enum(getattr(rule, "direction", None)),
        access=_str_enum(getattr(rule, "access", None)),
        protocol=_str_enum(getattr(rule, "protocol", None), "*"),
        priority=int(getattr(rule, "priority", None) or 0),
        source_prefixes=tuple(
            _prefixes(getattr(rule, "source_address_prefix", None), getattr(rule, "source_address_prefixes", None))
        ),
        destination_ports=tuple(
            _prefixes(
                getattr(rule, "destination_port_range", None),
                getattr(rule, "destination_port_ranges", None),
            )
        ),
    )


class AzureResourceClient:
    """
    Azure implementation of the ResourceClient boundary.
    Every call takes the subscription explicitly; there is no ambient active subscription.
    """

    def __init__(self, ctx: AuthContext, *, client_factory: Optional[Callable[[AuthContext, str], Any]] = None):
        self._ctx = ctx
        self._client_factory = client_factory or get_network_client

    def _network(self, subscription: SubscriptionContext) -> Any:
        return self._client_factory(self._ctx, subscription.subscription_id)

    def list_subscriptions(self) -> List[SubscriptionContext]:
        return list_subscriptions(self._ctx)

    def list_legacy_addresses(self, subscription: SubscriptionContext) -> List[AddressDescriptor]:
        network = self._network(subscription)
        addresses = _call(
            f"Azure SDK error while listing public IP addresses in {subscription.label}",
            lambda: list(network.public_ip_addresses.list_all()),
        )
        legacy = [address_from_model(a) for a in addresses if _sku_name(a).lower() == LEGACY_SKU]
        legacy.sort(key=lambda a: (a.resource_group.lower(), a.name.lower()))
        return legacy

    def get_address(self, subscription: SubscriptionContext, resource_id: str) -> Optional[AddressDescriptor]:
        parts = parse_resource_id(resource_id)
        network = self._network(subscription)
        try:
            model = network.public_ip_addresses.get(parts["resource_group"], parts["name"])
        except Exception as e:
            if is_not_found(e):
                return None
            mapped = map_provider_error(e, f"Azure SDK error while reading {resource_id}")
            if mapped is not None:
                raise mapped from e
            raise
        return address_from_model(model)

    def resolve_interface(self, subscription: SubscriptionContext, interface_id: str) -> InterfaceDescriptor:
        parts = parse_resource_id(interface_id)
        network = self._network(subscription)
        nic = _call(
            f"Azure SDK error while reading network interface {parts.get('name')}",
            lambda: network.network_interfaces.get(parts["resource_group"], parts["name"]),
        )
        return interface_from_model(nic)

    def create_address(self, subscription: SubscriptionContext, spec: AddressSpec) -> AddressDescriptor:
        if network_models is None:  # pragma: no cover
            raise ProviderPermanentError("azure-mgmt-network is not installed.")
        body = network_models.PublicIPAddress(
            location=spec.location,
            sku=network_models.PublicIPAddressSku(name=spec.sku, tier="Regional"),
            public_ip_allocation_method=spec.allocation_method,
            public_ip_address_version=spec.ip_version,
            zones=list(spec.zones) or None,
            tags=dict(spec.tags) or None,
        )
        network = self._network(subscription)
        # PUT semantics: re-running against an existing name updates it in place.
        poller = _call(
            f"Azure SDK error while creating public IP {spec.name}",
            lambda: network.public_ip_addresses.begin_create_or_update(spec.resource_group, spec.name, body),
        )
        created = _call(f"Azure SDK error while waiting for public IP {spec.name}", poller.result)
        return address_from_model(created)

    def attach_secondary_config(
        self,
        subscription: SubscriptionContext,
        interface_id: str,
        config_name: str,
        address_id: str,
    ) -> bool:
        """
        Add a secondary ip configuration binding `address_id`.
        Returns False (no-op) when a configuration with that name already exists.
        """
        if network_models is None:  # pragma: no cover
            raise ProviderPermanentError("azure-mgmt-network is not installed.")
        parts = parse_resource_id(interface_id)
        network = self._network(subscription)
        nic = _call(
            f"Azure SDK error while reading network interface {parts.get('name')}",
            lambda: network.network_interfaces.get(parts["resource_group"], parts["name"]),
        )
        configs = list(getattr(nic, "ip_configurations", None) or [])
        for cfg in configs:
            if str(getattr(cfg, "name", "")).lower() == config_name.lower():
                LOG.info(
                    "Secondary ip configuration already present",
                    extra={"interface": parts.get("name"), "config": config_name},
                )
                return False
        primary = next((c for c in configs if getattr(c, "primary", False)), configs[0] if configs else None)
        if primary is None or getattr(primary, "subnet", None) is None:
            raise ProviderPermanentError(f"Network interface {parts.get('name')} has no subnet-bound ip configuration")
        configs.append(
            network_models.NetworkInterfaceIPConfiguration(
                name=config_name,
                primary=False,
                private_ip_allocation_method="Dynamic",
                subnet=network_models.Subnet(id=_id_of(primary.subnet)),
                public_ip_address=network_models.PublicIPAddress(id=address_id),
            )
        )
        nic.ip_configurations = configs
        poller = _call(
            f"Azure SDK error while updating network interface {parts.get('name')}",
            lambda: network.network_interfaces.begin_create_or_update(parts["resource_group"], parts["name"], nic),
        )
        _call(f"Azure SDK error while waiting for network interface {parts.get('name')}", poller.result)
        return True

    def detach_config(
        self,
        subscription: SubscriptionContext,
        interface_id: str,
        config_name: str,
        address_id: Optional[str] = None,
    ) -> bool:
        """
        Release the legacy address from `config_name`. Secondary configurations are
        removed; the primary one cannot be, so only its public address is dissociated.
        Returns False when there was nothing to detach.
        """
        parts = parse_resource_id(interface_id)
        network = self._network(subscription)
        try:
            nic = network.network_interfaces.get(parts["resource_group"], parts["name"])
        except Exception as e:
            if is_not_found(e):
                return False
            mapped = map_provider_error(e, f"Azure SDK error while reading network interface {parts.get('name')}")
            if mapped is not None:
                raise mapped from e
            raise
        configs = list(getattr(nic, "ip_configurations", None) or [])
        target = next((c for c in configs if str(getattr(c, "name", "")).lower() == config_name.lower()), None)
        if target is None:
            return False
        bound = _id_of(getattr(target, "public_ip_address", None))
        if address_id and bound.lower() != address_id.lower():
            # The configuration no longer carries the legacy address.
            return False
        if getattr(target, "primary", False):
            if not bound:
                return False
            target.public_ip_address = None
        else:
            nic.ip_configurations = [c for c in configs if c is not target]
        poller = _call(
            f"Azure SDK error while updating network interface {parts.get('name')}",
            lambda: network.network_interfaces.begin_create_or_update(parts["resource_group"], parts["name"], nic),
        )
        _call(f"Azure SDK error while waiting for network interface {parts.get('name')}", poller.result)
        return True

    def delete_address(self, subscription: SubscriptionContext, resource_id: str) -> None:
        parts = parse_resource_id(resource_id)
        network = self._network(subscription)
        try:
            poller = network.public_ip_addresses.begin_delete(parts["resource_group"], parts["name"])
            poller.result()
        except Exception as e:
            if is_not_found(e):
                return
            mapped = map_provider_error(e, f"Azure SDK error while deleting public IP {parts.get('name')}")
            if mapped is not None:
                raise mapped from e
            raise

    def _security_group_of(self, network: Any, resource_id: str) -> Optional[str]:
        parts = parse_resource_id(resource_id)
        rtype = str(parts.get("type") or "").lower()
        if rtype == "networkinterfaces":
            nic = network.network_interfaces.get(parts["resource_group"], parts["name"])
            return _id_of(getattr(nic, "network_security_group", None)) or None
        if rtype == "virtualnetworks" and str(parts.get("child_type_1") or "").lower() == "subnets":
            subnet = network.subnets.get(parts["resource_group"], parts["name"], parts["child_name_1"])
            return _id_of(getattr(subnet, "network_security_group", None)) or None
        if rtype == "networksecuritygroups":
            return resource_id
        return None

    def get_security_rules(
        self, subscription: SubscriptionContext, resource_id: str
    ) -> Optional[List[RuleDescriptor]]:
        """
        Custom rules of the NSG associated with an interface or subnet.
        Returns None when no NSG is associated.
        """
        network = self._network(subscription)
        nsg_id = _call(
            f"Azure SDK error while resolving security group of {resource_id}",
            lambda: self._security_group_of(network, resource_id),
        )
        if not nsg_id:
            return None
        parts = parse_resource_id(nsg_id)
        nsg = _call(
            f"Azure SDK error while reading security group {parts.get('name')}",
            lambda: network.network_security_groups.get(parts["resource_group"], parts["name"]),
        )
        rules: Sequence[Any] = getattr(nsg, "security_rules", None) or []
        return sorted((rule_from_model(r) for r in rules), key=lambda r: (r.priority, r.name))

    def resolve_dns(self, fqdn: str) -> List[str]:
        try:
            infos = socket.getaddrinfo(fqdn, None)
        except (socket.gaierror, UnicodeError):
            return []
        return sorted({str(info[4][0]) for info in infos})
