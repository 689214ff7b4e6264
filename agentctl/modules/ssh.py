"""
SSH connection management for provisioning targets.

A node whose IP belongs to this machine (and whose configured user is the
user we run as) is handled locally: commands go through ``bash -c`` and
files are written straight to the filesystem. Every other node gets its own
paramiko session.
"""
import ipaddress
import logging
import os
import socket
import subprocess
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional, Set

import paramiko
import psutil

from ..config import ProvisionConfig, SSHSettings, get_config
from .errors import NodeConnectionError, RemoteCommandError
from .models import CommandResult, Credentials, NodeDescriptor, default_user

logger = logging.getLogger("agentctl.ssh")

KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)

# Exit code reported when a command could not be run at all.
EXIT_NOT_RUN = 127

ClientFactory = Callable[[], paramiko.SSHClient]


def load_private_key(path: str) -> Optional[paramiko.PKey]:
    """Try every supported key type on ``path``.

    Returns:
        The parsed key, or None if the file is not a usable private key
    """
    for key_cls in KEY_CLASSES:
        try:
            return key_cls.from_private_key_file(path)
        except (paramiko.SSHException, ValueError):
            continue
        except OSError as e:
            logger.debug(f"Cannot read key file {path}: {e}")
            return None
    return None


def discover_keys(settings: SSHSettings) -> List[str]:
    """List the private key files in the key directory that actually parse.

    Unparseable files are skipped, never fatal.
    """
    key_dir = settings.key_dir
    if not os.path.isdir(key_dir):
        return []

    found = []
    for name in sorted(os.listdir(key_dir)):
        if name in settings.excluded_key_files:
            continue
        path = os.path.join(key_dir, name)
        if not os.path.isfile(path):
            continue
        if load_private_key(path) is None:
            logger.debug(f"Skipping {path}: not a private key")
            continue
        found.append(path)
    return found


def auth_options(credentials: Credentials, settings: SSHSettings) -> Dict[str, object]:
    """Build paramiko ``connect`` keyword arguments for the credentials.

    Order: explicit password or key file, then discovered keys, then an
    empty password as the last resort.

    Raises:
        NodeConnectionError: If an explicit key file cannot be loaded
    """
    if credentials.password is not None:
        return {'password': credentials.password}

    if credentials.key_file:
        key_path = os.path.expanduser(credentials.key_file)
        pkey = load_private_key(key_path)
        if pkey is None:
            raise NodeConnectionError(f"unable to load private key {key_path}")
        return {'pkey': pkey}

    keys = discover_keys(settings)
    if keys:
        return {'key_filename': keys, 'password': ''}
    return {'password': ''}


def resolve_ip(host: str) -> str:
    """Return ``host`` as an IP literal, resolving names through DNS."""
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        pass
    try:
        return socket.gethostbyname(host)
    except OSError as e:
        raise NodeConnectionError(f"cannot resolve {host}: {e}") from e


def format_address(ip: str, port: int) -> str:
    """host:port, with IPv6 literals in brackets."""
    if ipaddress.ip_address(ip).version == 6:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def local_addresses() -> Set[str]:
    """Addresses bound to local network interfaces that are up."""
    stats = psutil.net_if_stats()
    addresses = set()
    for name, addrs in psutil.net_if_addrs().items():
        if name not in stats or not stats[name].isup:
            continue
        for addr in addrs:
            if addr.family in (socket.AF_INET, socket.AF_INET6):
                # Drop the zone index of link-local IPv6 addresses
                addresses.add(addr.address.split('%', 1)[0])
    return addresses


def is_local_address(ip: str, user: str, addresses: Optional[Iterable[str]] = None) -> bool:
    """Decide whether a node can be served without SSH.

    Loopback is always local. Any other locally bound address is local only
    when the node's user is the user this process runs as.
    """
    addr = ipaddress.ip_address(ip)
    if addr.is_loopback:
        return True
    if user != default_user():
        return False
    if addresses is None:
        addresses = local_addresses()
    return str(addr) in set(addresses)


class HostConnection:
    """An open session bound to one node.

    ``is_local`` and ``address`` are fixed when the connection is created.
    """

    def __init__(self, node: NodeDescriptor, client: Optional[paramiko.SSHClient],
                 is_local: bool, address: str, config: ProvisionConfig,
                 client_factory: ClientFactory = paramiko.SSHClient):
        self._node = node
        self._client = client
        self._is_local = is_local
        self._address = address
        self._client_factory = client_factory
        self.config = config

    @property
    def node(self) -> NodeDescriptor:
        return self._node

    @property
    def is_local(self) -> bool:
        return self._is_local

    @property
    def address(self) -> str:
        return self._address

    @property
    def client(self) -> Optional[paramiko.SSHClient]:
        return self._client

    def execute(self, command: str) -> CommandResult:
        """Run a shell command on the node.

        Never raises: failures to run the command at all are reported with
        exit code 127 and the reason in stderr.
        """
        logger.debug(f"[{self._address}] $ {command}")
        timeout = self.config.ssh.command_timeout
        if self._is_local:
            return self._execute_local(command, timeout)
        return self._execute_remote(command, timeout)

    def _execute_local(self, command: str, timeout: Optional[float]) -> CommandResult:
        try:
            proc = subprocess.run(
                ['bash', '-c', command],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            return CommandResult('', f"command timed out after {timeout} seconds", EXIT_NOT_RUN)
        except OSError as e:
            return CommandResult('', str(e), EXIT_NOT_RUN)
        return CommandResult(proc.stdout, proc.stderr, proc.returncode)

    def _execute_remote(self, command: str, timeout: Optional[float]) -> CommandResult:
        if self._client is None:
            return CommandResult('', f"connection to {self._address} is closed", EXIT_NOT_RUN)
        try:
            _, stdout, stderr = self._client.exec_command(command, timeout=timeout)
            out = stdout.read().decode('utf-8', errors='replace')
            err = stderr.read().decode('utf-8', errors='replace')
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as e:
            return CommandResult('', f"failed to run command on {self._address}: {e}", EXIT_NOT_RUN)
        return CommandResult(out, err, exit_code)

    def run(self, command: str, message: str) -> CommandResult:
        """Execute and raise RemoteCommandError on a non-zero exit code."""
        result = self.execute(command)
        if not result.ok:
            raise RemoteCommandError(
                f"{message} on {self._node}", node=self._node, command=command, result=result
            )
        return result

    def open_sftp(self) -> paramiko.SFTPClient:
        if self._client is None:
            raise NodeConnectionError(f"no SSH session for local node {self._node}")
        return self._client.open_sftp()

    def reopen(self) -> 'HostConnection':
        """Open an independent session to the same node."""
        return connect(self._node, config=self.config, client_factory=self._client_factory)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        kind = 'local' if self._is_local else 'ssh'
        return f"HostConnection({self._node}, {kind}, {self._address})"


def connect(node: NodeDescriptor, config: Optional[ProvisionConfig] = None,
            client_factory: ClientFactory = paramiko.SSHClient) -> HostConnection:
    """Open a connection to ``node``.

    Host keys are accepted on first use unless
    ``ssh.strict_host_key_checking`` is enabled, in which case only hosts
    present in ``ssh.known_hosts_file`` are accepted.

    Args:
        node: Target node
        config: Configuration (defaults to the global one)
        client_factory: Callable building the paramiko client

    Returns:
        HostConnection: An open connection owned by the caller

    Raises:
        NodeConnectionError: If the host cannot be resolved, reached or
            authenticated against
    """
    config = config or get_config()
    settings = config.ssh
    ip = resolve_ip(node.ip)
    port = node.ssh_port or settings.default_port
    address = format_address(ip, port)
    user = node.credentials.user

    if is_local_address(ip, user):
        logger.debug(f"{node} is local, commands run in-process")
        return HostConnection(node, None, True, address, config, client_factory)

    options = auth_options(node.credentials, settings)
    client = client_factory()
    if settings.strict_host_key_checking:
        if os.path.exists(settings.known_hosts_file):
            client.load_host_keys(settings.known_hosts_file)
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    try:
        client.connect(
            hostname=ip,
            port=port,
            username=user,
            timeout=settings.connect_timeout,
            look_for_keys=False,
            allow_agent=False,
            **options
        )
    except (paramiko.SSHException, OSError) as e:
        client.close()
        raise NodeConnectionError(f"failed to connect to {user}@{address}: {e}") from e

    logger.debug(f"Connected to {user}@{address}")
    return HostConnection(node, client, False, address, config, client_factory)


@contextmanager
def open_connections(nodes: Iterable[NodeDescriptor], config: Optional[ProvisionConfig] = None,
                     client_factory: ClientFactory = paramiko.SSHClient):
    """Connect to every node, closing all of them when the block exits.

    The first connection failure closes what was already opened and
    propagates.

    Yields:
        Dict[NodeDescriptor, HostConnection]
    """
    connections: Dict[NodeDescriptor, HostConnection] = {}
    try:
        for node in nodes:
            if node not in connections:
                connections[node] = connect(node, config=config, client_factory=client_factory)
        yield connections
    finally:
        for conn in connections.values():
            conn.close()
