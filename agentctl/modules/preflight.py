"""
Host health checks run before provisioning.

Checks run per node in a fixed order: firewall, SELinux, clock, kernel
parameters, ulimits. By default the whole run stops at the first node and
check that reports a blocking error; ``check_all`` runs everything and
aggregates.
"""
import ipaddress
import logging
import math
import re
import socket
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

import paramiko
import psutil

from ..config import ProvisionConfig, get_config
from .errors import NodeConnectionError
from .models import CheckItem, NodeDescriptor
from .ssh import ClientFactory, HostConnection, open_connections

logger = logging.getLogger("agentctl.preflight")

INF = math.inf

CheckResult = Tuple[List[CheckItem], List[CheckItem]]

FIREWALL_ITEM = CheckItem("the firewalld service is up", "please stop the firewalld service.")
SELINUX_ITEM = CheckItem("the selinux is not Disabled", "please disabled the selinux.")
CLOCK_ITEM = CheckItem("clock not sync", "please sync clock.")

UFW_DISTROS = ('ubuntu', 'debian')
FIREWALLD_DISTROS = ('fedora', 'centos', 'redhat')


@dataclass(frozen=True)
class KernelRule:
    name: str
    need: Union[int, Tuple[float, float]]
    recommend: int

    def accepts(self, value: int) -> bool:
        if value == self.recommend:
            return True
        if isinstance(self.need, tuple):
            low, high = self.need
            return low <= value <= high
        return value == self.need


@dataclass(frozen=True)
class UlimitRule:
    key: str
    name: str
    need: Callable[[int], float]
    recommend: float
    below_need_error: bool = True
    below_recd_error_strict: bool = True


KERNEL_RULES = (
    KernelRule("vm.max_map_count", (327600, 1310720), 655360),
    KernelRule("vm.min_free_kbytes", (32768, 2097152), 2097152),
    KernelRule("vm.overcommit_memory", 0, 0),
    KernelRule("fs.file-max", (6573688, INF), 6573688),
)

ULIMIT_RULES = (
    UlimitRule("open files", "nofile", lambda n: 20000 * n, 655350),
    UlimitRule("max user processes", "nproc", lambda n: 120000, 655350),
    UlimitRule("core file size", "core", lambda n: 0, INF,
               below_need_error=False, below_recd_error_strict=False),
    UlimitRule("stack size", "stack", lambda n: 1024, INF, below_recd_error_strict=False),
)


@dataclass
class CheckContext:
    config: ProvisionConfig
    node_count: int
    local_ips: Sequence[str]


def local_ipv4_addresses() -> List[str]:
    """Non-loopback IPv4 addresses of this machine."""
    addresses = []
    for addrs in psutil.net_if_addrs().values():
        for addr in addrs:
            if addr.family == socket.AF_INET and not ipaddress.ip_address(addr.address).is_loopback:
                addresses.append(addr.address)
    return addresses


def _fmt(value: float) -> str:
    return 'unlimited' if value == INF else str(int(value))


def os_id(conn: HostConnection) -> str:
    """The ID field of /etc/os-release, or '' if it cannot be read."""
    result = conn.execute("cat /etc/os-release")
    if not result.ok:
        logger.debug(f"Cannot read os-release on {conn.node}: {result.stderr.strip()}")
        return ''
    for line in result.stdout.splitlines():
        if line.startswith("ID="):
            return line.split("=", 1)[1].strip().strip('"').lower()
    return ''


def check_firewall(conn: HostConnection, ctx: CheckContext) -> CheckResult:
    distro = os_id(conn)
    if any(d in distro for d in UFW_DISTROS):
        active = "Status: active" in conn.execute("ufw status").stdout
    elif any(d in distro for d in FIREWALLD_DISTROS):
        active = "Active: active" in conn.execute("systemctl status firewalld").stdout
    else:
        out = conn.execute("iptables -L -n").stdout
        active = all(f"Chain {chain}" in out for chain in ("INPUT", "FORWARD", "OUTPUT"))
    return ([FIREWALL_ITEM] if active else []), []


def check_selinux(conn: HostConnection, ctx: CheckContext) -> CheckResult:
    result = conn.execute("/usr/sbin/getenforce")
    if result.exit_code == 127:
        # getenforce is not installed, so SELinux is not either
        return [], []
    if not result.ok or "Enforcing" in result.stdout:
        return [SELINUX_ITEM], []
    return [], []


def check_clock(conn: HostConnection, ctx: CheckContext) -> CheckResult:
    max_skew = ctx.config.preflight.max_clock_skew
    for ip in ctx.local_ips:
        result = conn.execute(f"sudo /usr/sbin/clockdiff -o {ip}")
        fields = result.stdout.split()
        try:
            delta_ms = int(fields[1])
        except (IndexError, ValueError):
            logger.debug(f"Unexpected clockdiff output on {conn.node}: {result.stdout!r} {result.stderr!r}")
            return [CLOCK_ITEM], []
        if abs(delta_ms) / 1000 > max_skew:
            logger.debug(f"{conn.node} is {delta_ms} ms away from {ip}")
            return [CLOCK_ITEM], []
    return [], []


def parse_sysctl(output: str) -> dict:
    params = {}
    for line in output.splitlines():
        if '=' not in line:
            continue
        key, value = line.split('=', 1)
        params[key.strip()] = [int(v) for v in re.findall(r'[-+]?\d+', value)]
    return params


def check_kernel(conn: HostConnection, ctx: CheckContext) -> CheckResult:
    ip = conn.node.ip
    result = conn.execute("sudo /usr/sbin/sysctl -a")
    if not result.stdout.strip():
        return [CheckItem(f"{ip} -> failed to read kernel parameters: {result.stderr.strip()}")], []

    params = parse_sysctl(result.stdout)
    for rule in KERNEL_RULES:
        for value in params.get(rule.name, []):
            if not rule.accepts(value):
                return [CheckItem(f"{ip} -> {rule.name} current value: {value}, recommend: {rule.recommend}")], []
    return [], []


def parse_ulimits(output: str) -> dict:
    limits = {}
    for line in output.splitlines():
        if '(' not in line or ')' not in line:
            continue
        limits[line.split('(', 1)[0].strip()] = line.split(')', 1)[1].strip()
    return limits


def check_ulimits(conn: HostConnection, ctx: CheckContext) -> CheckResult:
    ip = conn.node.ip
    limits = parse_ulimits(conn.execute("ulimit -a").stdout)
    warnings = []
    for rule in ULIMIT_RULES:
        raw = limits.get(rule.key)
        if raw is None or raw == 'unlimited':
            continue
        try:
            value = int(raw)
        except ValueError:
            logger.debug(f"Ignoring unparsable ulimit '{rule.key}' on {conn.node}: {raw!r}")
            continue

        need = rule.need(ctx.node_count)
        if value < need:
            item = CheckItem(f"{ip} -> {rule.key}{{{rule.name}}} current value: {value}, recommend: {_fmt(need)}")
            if rule.below_need_error:
                return [item], warnings
            warnings.append(item)
        elif value < rule.recommend and rule.below_recd_error_strict:
            warnings.append(CheckItem(
                f"{ip} -> {rule.key}{{{rule.name}}} current value: {value}, recommend: {_fmt(rule.recommend)}"
            ))
    return [], warnings


CHECKS: Tuple[Callable[[HostConnection, CheckContext], CheckResult], ...] = (
    check_firewall,
    check_selinux,
    check_clock,
    check_kernel,
    check_ulimits,
)


def check_nodes(*nodes: NodeDescriptor, config: Optional[ProvisionConfig] = None,
                check_all: Optional[bool] = None,
                client_factory: ClientFactory = paramiko.SSHClient) -> Tuple[List[CheckItem], List[CheckItem]]:
    """Run the preflight checks on every node.

    Args:
        *nodes: Nodes to check
        config: Configuration (defaults to the global one)
        check_all: Run every check on every node instead of stopping at the
            first blocking error (defaults to ``preflight.check_all``)
        client_factory: Callable building paramiko clients

    Returns:
        tuple: (errors, warnings). A connection failure is reported as a
        single error.
    """
    config = config or get_config()
    if check_all is None:
        check_all = config.preflight.check_all
    errors: List[CheckItem] = []
    warnings: List[CheckItem] = []

    try:
        with open_connections(nodes, config=config, client_factory=client_factory) as connections:
            ctx = CheckContext(config=config, node_count=len(connections), local_ips=local_ipv4_addresses())
            for conn in connections.values():
                for check in CHECKS:
                    errs, warns = check(conn, ctx)
                    errors.extend(errs)
                    warnings.extend(warns)
                    if errs:
                        logger.info(f"❌ {check.__name__} failed on {conn.node}")
                        if not check_all:
                            return errors, warnings
    except NodeConnectionError as e:
        return [CheckItem(str(e), "")], []

    return errors, warnings
