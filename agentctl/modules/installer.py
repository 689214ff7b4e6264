"""Package installation across a fleet of nodes.

Nodes are grouped by the physical address their connection resolves to.
The first node of each group (the leader) extracts and receives every
package; the others are filled with ``cp -p`` on the same host.
"""
import logging
import posixpath
import shlex
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import paramiko

from ..config import ProvisionConfig, get_config
from .errors import PackageReadError, ProvisionError, WorkDirNotEmptyError
from .lifecycle import clean_node
from .models import NodeDescriptor, TransferPlan
from .package import RpmPackage
from .ssh import ClientFactory, HostConnection, open_connections
from .transfer import BatchItem, FileDistributor, plan_transfer

logger = logging.getLogger("agentctl.installer")

# Commands issued per round trip when replicating or linking
COMMAND_BATCH = 100


@dataclass
class InstallRecord:
    """What a leader installed, keyed by package entry name."""
    files: List[str] = field(default_factory=list)
    links: Dict[str, str] = field(default_factory=dict)


def get_dest_path(work_dir: str, name: str, prefixes: Sequence[str]) -> str:
    """Map a package entry name into ``work_dir``.

    The first matching installation prefix is stripped; names outside every
    prefix are joined as they are.

    Raises:
        PackageReadError: If the entry would land outside ``work_dir``
    """
    rel = name
    for prefix in prefixes:
        prefix = prefix.rstrip('/')
        if name == prefix or name.startswith(prefix + '/'):
            rel = name[len(prefix):]
            break

    work_dir = posixpath.normpath(work_dir)
    dest = posixpath.normpath(posixpath.join(work_dir, rel.lstrip('/')))
    if dest != work_dir and not dest.startswith(work_dir.rstrip('/') + '/'):
        raise PackageReadError(f"package entry {name} escapes {work_dir}")
    return dest


def link_target(work_dir: str, target: str, prefixes: Sequence[str]) -> str:
    """Relative targets are kept; absolute ones are mapped into ``work_dir``."""
    if not target.startswith('/'):
        return target
    return get_dest_path(work_dir, '.' + target, prefixes)


def group_by_address(nodes: Sequence[NodeDescriptor],
                     connections: Dict[NodeDescriptor, HostConnection]) -> Dict[str, List[NodeDescriptor]]:
    """Group nodes sharing one physical address, keeping input order."""
    groups: Dict[str, List[NodeDescriptor]] = {}
    for node in nodes:
        members = groups.setdefault(connections[node].address, [])
        if node not in members:
            members.append(node)
    return groups


def ensure_empty(conn: HostConnection) -> None:
    """Raise WorkDirNotEmptyError if the node's work directory has content."""
    work_dir = shlex.quote(conn.node.work_dir)
    result = conn.run(f"if [ -d {work_dir} ]; then ls -A {work_dir}; fi",
                      "failed to inspect work directory")
    if result.stdout.strip():
        raise WorkDirNotEmptyError(
            f"{conn.node.ip}:{conn.node.work_dir} is not empty, please clean it first"
        )


def _run_batched(conn: HostConnection, commands: List[str], message: str) -> None:
    for i in range(0, len(commands), COMMAND_BATCH):
        conn.run(' && '.join(commands[i:i + COMMAND_BATCH]), message)


def create_links(conn: HostConnection, links: Dict[str, str], prefixes: Sequence[str]) -> None:
    """Create the package symlinks under the node's work directory."""
    work_dir = conn.node.work_dir
    commands = []
    for name, target in sorted(links.items()):
        dest = get_dest_path(work_dir, name, prefixes)
        commands.append(
            f"mkdir -p {shlex.quote(posixpath.dirname(dest))} && "
            f"ln -sfn {shlex.quote(link_target(work_dir, target, prefixes))} {shlex.quote(dest)}"
        )
    _run_batched(conn, commands, "failed to create symlinks")


def install_on_node(distributor: FileDistributor, conn: HostConnection,
                    paths: Sequence[str]) -> InstallRecord:
    """Extract every package onto one node.

    Symlinks are created only after all regular files are written.

    Returns:
        InstallRecord: The files and links that were installed
    """
    settings = distributor.settings
    prefixes = distributor.config.service.install_prefixes
    work_dir = conn.node.work_dir
    record = InstallRecord()

    for path in paths:
        with RpmPackage.open(path) as pkg:
            logger.info(f"📦 Installing {pkg.name}-{pkg.version}-{pkg.release} on {conn.node}")
            batch: List[BatchItem] = []
            batch_bytes = 0
            for entry in pkg:
                if entry.is_symlink:
                    record.links[entry.name] = entry.link_target
                    continue

                dest = get_dest_path(work_dir, entry.name, prefixes)
                if plan_transfer(entry.size, settings) is TransferPlan.BATCHED:
                    batch.append((dest, entry.read_all(), entry.perm))
                    batch_bytes += entry.size
                    # Bound the memory held by buffered small files
                    if batch_bytes >= settings.chunk_size:
                        distributor.write_batch(conn, batch)
                        batch, batch_bytes = [], 0
                else:
                    distributor.write_stream(conn, dest, entry, entry.size, entry.perm)
                record.files.append(entry.name)
            distributor.write_batch(conn, batch)

    create_links(conn, record.links, prefixes)
    logger.info(f"✅ Installed {len(record.files)} files and {len(record.links)} links on {conn.node}")
    return record


def replicate(conn: HostConnection, leader: NodeDescriptor, record: InstallRecord,
              prefixes: Sequence[str]) -> None:
    """Copy a leader's installed tree into a co-located node's work directory."""
    node = conn.node
    logger.info(f"📋 Copying installed files from {leader} to {node}")
    commands = []
    for name in record.files:
        src = get_dest_path(leader.work_dir, name, prefixes)
        dst = get_dest_path(node.work_dir, name, prefixes)
        commands.append(
            f"mkdir -p {shlex.quote(posixpath.dirname(dst))} && cp -p {shlex.quote(src)} {shlex.quote(dst)}"
        )
    _run_batched(conn, commands, "failed to copy installed files")
    create_links(conn, record.links, prefixes)


def _install_group(distributor: FileDistributor, connections: Dict[NodeDescriptor, HostConnection],
                   members: List[NodeDescriptor], paths: Sequence[str]) -> None:
    leader = members[0]
    record = install_on_node(distributor, connections[leader], paths)
    prefixes = distributor.config.service.install_prefixes
    for follower in members[1:]:
        replicate(connections[follower], leader, record, prefixes)


def _install(paths: Sequence[str], nodes: Sequence[NodeDescriptor], config: ProvisionConfig,
             client_factory: ClientFactory,
             prepare: Callable[[HostConnection], None]) -> None:
    with open_connections(nodes, config=config, client_factory=client_factory) as connections:
        for node in connections:
            prepare(connections[node])

        groups = group_by_address(nodes, connections)
        distributor = FileDistributor(config)
        errors = []
        with ThreadPoolExecutor(max_workers=len(groups)) as executor:
            future_to_address = {
                executor.submit(_install_group, distributor, connections, members, paths): address
                for address, members in groups.items()
            }
            for future in as_completed(future_to_address):
                address = future_to_address[future]
                try:
                    future.result()
                except ProvisionError as e:
                    logger.error(f"❌ Installation on {address} failed: {e}")
                    errors.append(e)
        if errors:
            raise errors[0]


def install_package(path: str, *nodes: NodeDescriptor, config: Optional[ProvisionConfig] = None,
                    client_factory: ClientFactory = paramiko.SSHClient) -> None:
    """Install one package on every node.

    Every work directory must be empty (or absent).

    Raises:
        NodeConnectionError: If any node is unreachable
        WorkDirNotEmptyError: If a work directory already has content
        PackageFormatError: If the package payload is not supported
        TransferError: If files could not be transferred
    """
    initialize_nodes([path], False, *nodes, config=config, client_factory=client_factory)


def initialize_nodes(paths: Sequence[str], force_clean: bool, *nodes: NodeDescriptor,
                     config: Optional[ProvisionConfig] = None,
                     client_factory: ClientFactory = paramiko.SSHClient) -> None:
    """Prepare work directories and install every package on every node.

    Args:
        paths: Local package files, installed in order
        force_clean: Stop the service and wipe each work directory first;
            otherwise a non-empty work directory is an error
        *nodes: Target nodes
        config: Configuration (defaults to the global one)
        client_factory: Callable building paramiko clients
    """
    if not nodes:
        return
    config = config or get_config()

    def prepare(conn: HostConnection) -> None:
        if force_clean:
            clean_node(conn)
        else:
            ensure_empty(conn)
        conn.run(f"mkdir -p {shlex.quote(conn.node.work_dir)}", "failed to create work directory")

    _install(paths, nodes, config, client_factory, prepare)
