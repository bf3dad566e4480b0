from __future__ import annotations

import ipaddress
import socket
import subprocess
import sys
from dataclasses import dataclass, field
from shutil import which
from typing import Callable, Dict, List, Optional, Sequence

from ..cloud.base import InterfaceDescriptor, ResourceClient, RuleDescriptor, SubscriptionContext
from ..logging import get_logger
from ..util.concurrency import parallel_map_ordered
from ..util.errors import AuthenticationError, ProviderError

LOG = get_logger(__name__)

DEFAULT_PORTS = (80, 443)
DEFAULT_TIMEOUT_SECONDS = 5.0

TcpProbe = Callable[[str, int, float], bool]
IcmpProbe = Callable[[str, float], Optional[bool]]


@dataclass(frozen=True)
class ValidationResult:
    address: str
    reachable: bool
    icmp: bool
    per_port: Dict[int, bool] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def describe(self) -> str:
        ports = ", ".join(f"{p}={'open' if ok else 'closed'}" for p, ok in sorted(self.per_port.items()))
        icmp = "reply" if self.icmp else "no reply"
        return f"icmp={icmp}; tcp: {ports or 'none probed'}"


def tcp_probe(address: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


def _ping_command(ping: str, address: str, timeout: float) -> List[str]:
    wait = max(1, int(round(timeout)))
    if sys.platform.startswith("win"):
        return [ping, "-n", "1", "-w", str(wait * 1000), address]
    cmd = [ping, "-c", "1", "-W", str(wait)]
    try:
        if ipaddress.ip_address(address).version == 6:
            cmd.append("-6")
    except ValueError:
        pass
    cmd.append(address)
    return cmd


def icmp_probe(address: str, timeout: float) -> Optional[bool]:
    """
    One echo request through the system ping binary.
    Returns None when ping is not available on this host.
    """
    ping = which("ping")
    if ping is None:
        return None
    try:
        proc = subprocess.run(
            _ping_command(ping, address, timeout),
            text=True,
            capture_output=True,
            timeout=timeout + 5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0


def validate_address(
    address: str,
    ports: Sequence[int] = DEFAULT_PORTS,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    icmp: bool = True,
    tcp: TcpProbe = tcp_probe,
    ping: IcmpProbe = icmp_probe,
    workers: int = 4,
) -> ValidationResult:
    """
    Probe a public address. ICMP is best-effort: no reply is a warning since
    ICMP is frequently filtered. reachable = icmp reply or any TCP port open.
    """
    warnings: List[str] = []
    icmp_ok = False
    if icmp:
        reply = ping(address, timeout)
        if reply is None:
            warnings.append("ping is not available on this host; ICMP probe skipped")
        elif not reply:
            warnings.append(f"No ICMP reply from {address} (ICMP may be filtered)")
        icmp_ok = bool(reply)

    unique_ports = list(dict.fromkeys(int(p) for p in ports))
    results: List[bool] = []
    if unique_ports:
        results = parallel_map_ordered(
            lambda p: tcp(address, p, timeout),
            unique_ports,
            max_workers=max(1, min(workers, len(unique_ports))),
        )
    per_port = dict(zip(unique_ports, results))
    reachable = icmp_ok or any(per_port.values())
    return ValidationResult(address=address, reachable=reachable, icmp=icmp_ok, per_port=per_port, warnings=warnings)


def _missing_ports(rules: Sequence[RuleDescriptor], ports: Sequence[int]) -> List[int]:
    allows = [r for r in rules if r.inbound_allow]
    return [p for p in ports if not any(r.covers_port(p) for r in allows)]


def check_security_rules(
    client: ResourceClient,
    subscription: SubscriptionContext,
    interface: InterfaceDescriptor,
    ports: Sequence[int] = DEFAULT_PORTS,
) -> List[str]:
    """
    Look for explicit inbound Allow rules on the interface NSG, falling back to the
    subnet NSG. Standard addresses deny inbound traffic unless an NSG allows it, so
    anything missing comes back as a warning string. Never raises provider errors.
    """
    targets = [("interface", interface.id)] + [("subnet", sid) for sid in interface.subnet_ids]
    for scope, resource_id in targets:
        try:
            rules = client.get_security_rules(subscription, resource_id)
        except AuthenticationError:
            raise
        except ProviderError as e:
            return [f"Security rules on {scope} could not be read: {e}"]
        if rules is None:
            continue
        if not any(r.inbound_allow for r in rules):
            return [f"No inbound Allow rule on the {scope} security group; Standard addresses deny inbound by default"]
        missing = _missing_ports(rules, ports)
        if missing:
            joined = ", ".join(str(p) for p in missing)
            return [f"No inbound Allow rule on the {scope} security group covers port(s) {joined}"]
        return []
    return [
        f"No security group on interface {interface.name} or its subnet; "
        "Standard addresses deny inbound traffic without one"
    ]
