"""Starting, stopping, cleaning and taking over agent nodes."""
import logging
import posixpath
import shlex
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional

import paramiko

from ..config import ProvisionConfig, get_config
from .errors import (DagFailedError, ManagementApiError, ProvisionError,
                     TakeoverFailedError, TakeoverTimeoutError)
from .management import AgentIdentity, ManagementClient, RestManagementClient
from .models import NodeDescriptor, TakeoverState
from .ssh import ClientFactory, HostConnection, open_connections

logger = logging.getLogger("agentctl.lifecycle")

ManagementFactory = Callable[[NodeDescriptor, ProvisionConfig], ManagementClient]


def pid_path(work_dir: str, pid_file: str) -> str:
    return posixpath.join(work_dir, 'run', pid_file)


def stop_process(conn: HostConnection, pid_file: str) -> None:
    """Kill the process recorded in ``<work_dir>/run/<pid_file>``.

    A missing PID file or a stale PID is not an error.

    Raises:
        RemoteCommandError: If the process could not be killed
    """
    path = shlex.quote(pid_path(conn.node.work_dir, pid_file))
    conn.run(
        f"if [ -f {path} ]; then pid=$(cat {path}); "
        f"if [ -n \"$pid\" ] && kill -0 $pid 2>/dev/null; then kill -9 $pid; fi; fi",
        f"failed to stop the process in {pid_file}"
    )


def stop_node(conn: HostConnection) -> None:
    """Stop the agent daemon on one node."""
    for pid_file in conn.config.service.daemon_pid_files:
        stop_process(conn, pid_file)


def clean_node(conn: HostConnection) -> None:
    """Stop every managed process on the node and remove its work directory.

    Running it on an already clean node is a no-op.
    """
    work_dir = posixpath.normpath(conn.node.work_dir)
    if work_dir in ('/', '.', ''):
        raise ProvisionError(f"refusing to remove work directory '{conn.node.work_dir}' on {conn.node.ip}")

    for pid_file in conn.config.service.pid_files:
        stop_process(conn, pid_file)
    conn.run(f"rm -rf {shlex.quote(work_dir)}", "failed to remove work directory")
    logger.info(f"🧹 Cleaned {conn.node}")


def start_command(conn: HostConnection, password: Optional[str] = None) -> str:
    """Build the start command for the node.

    With a password, the binary's help output decides whether it is passed
    as a flag or through the environment.
    """
    node = conn.node
    service = conn.config.service
    port = node.service_port or service.default_port
    work_dir = shlex.quote(node.work_dir)
    command = f"cd {work_dir} && ./bin/{service.binary} admin start --ip {node.ip} --port {port}"
    if password is None:
        return command

    probe = conn.execute(
        f"{work_dir}/bin/{service.binary} admin start -h | grep {shlex.quote(service.password_flag)}"
    )
    if probe.ok:
        return f"{command} --{service.password_flag}={shlex.quote(password)}"
    return f"export {service.password_env}={shlex.quote(password)}; {command}"


def start_node(conn: HostConnection, password: Optional[str] = None) -> None:
    conn.run(start_command(conn, password), f"failed to start {conn.config.service.binary}")
    logger.info(f"🚀 Started {conn.config.service.binary} on {conn.node}")


def start_nodes(*nodes: NodeDescriptor, config: Optional[ProvisionConfig] = None,
                client_factory: ClientFactory = paramiko.SSHClient) -> None:
    """Start the agent on every node, stopping at the first failure."""
    with open_connections(nodes, config=config or get_config(), client_factory=client_factory) as connections:
        for conn in connections.values():
            start_node(conn)


def stop_nodes(*nodes: NodeDescriptor, config: Optional[ProvisionConfig] = None,
               client_factory: ClientFactory = paramiko.SSHClient) -> None:
    """Stop the agent daemon on every node.

    Every node is attempted; the first failure is raised afterwards.
    """
    errors = []
    with open_connections(nodes, config=config or get_config(), client_factory=client_factory) as connections:
        for conn in connections.values():
            try:
                stop_node(conn)
            except ProvisionError as e:
                logger.error(f"❌ Failed to stop {conn.node}: {e}")
                errors.append(e)
    if errors:
        raise errors[0]


def clean_nodes(*nodes: NodeDescriptor, config: Optional[ProvisionConfig] = None,
                client_factory: ClientFactory = paramiko.SSHClient) -> None:
    """Stop all managed processes and remove the work directory of every node."""
    with open_connections(nodes, config=config or get_config(), client_factory=client_factory) as connections:
        for conn in connections.values():
            clean_node(conn)


def default_management_factory(node: NodeDescriptor, config: ProvisionConfig) -> ManagementClient:
    """Unauthenticated REST client.

    Only the status endpoint answers without credentials, so with this factory
    a takeover converges through the CLUSTER AGENT count. Pass a factory that
    sets ``auth`` to follow the master's maintenance task.
    """
    return RestManagementClient.for_node(node, timeout=config.takeover.request_timeout,
                                         default_port=config.service.default_port)


class Takeover:
    """Restart a fleet with a takeover password and wait for it to converge.

    States advance STOPPING -> STARTING -> POLLING and end in CONVERGED,
    FAILED or TIMEOUT.
    """

    def __init__(self, password: str, nodes: List[NodeDescriptor], config: ProvisionConfig,
                 client_factory: ClientFactory = paramiko.SSHClient,
                 management_factory: ManagementFactory = default_management_factory,
                 sleep: Callable[[float], None] = time.sleep):
        self.password = password
        self.nodes = list(dict.fromkeys(nodes))
        self.config = config
        self.client_factory = client_factory
        self.management_factory = management_factory
        self.sleep = sleep
        self.state: Optional[TakeoverState] = None
        self.history: List[TakeoverState] = []
        self.rounds = 0

    def _enter(self, state: TakeoverState) -> None:
        logger.info(f"Takeover: {state.value}")
        self.state = state
        self.history.append(state)

    def run(self) -> None:
        """Drive the state machine to a terminal state.

        Raises:
            TakeoverFailedError: If the maintenance task graph failed
            TakeoverTimeoutError: If the fleet did not converge in time
            ProvisionError: If a node could not be reached or restarted
        """
        try:
            with open_connections(self.nodes, config=self.config,
                                  client_factory=self.client_factory) as connections:
                self._enter(TakeoverState.STOPPING)
                self._stop_all(connections)
                self._enter(TakeoverState.STARTING)
                self._start_all(connections)

            self._enter(TakeoverState.POLLING)
            if self._poll():
                self._enter(TakeoverState.CONVERGED)
                return
        except ProvisionError:
            self._enter(TakeoverState.FAILED)
            raise

        self._enter(TakeoverState.TIMEOUT)
        raise TakeoverTimeoutError("takeover timeout")

    def _stop_all(self, connections: Dict[NodeDescriptor, HostConnection]) -> None:
        for conn in connections.values():
            try:
                stop_node(conn)
            except ProvisionError as e:
                logger.warning(f"⚠️ Could not stop {conn.node}: {e}")

    def _start_all(self, connections: Dict[NodeDescriptor, HostConnection]) -> None:
        errors = []
        with ThreadPoolExecutor(max_workers=len(connections)) as executor:
            future_to_node = {
                executor.submit(start_node, conn, self.password): node
                for node, conn in connections.items()
            }
            for future in as_completed(future_to_node):
                try:
                    future.result()
                except ProvisionError as e:
                    logger.error(f"❌ Failed to restart {future_to_node[future]}: {e}")
                    errors.append(e)
        if errors:
            raise errors[0]

    def _poll(self) -> bool:
        settings = self.config.takeover
        clients = {node: self.management_factory(node, self.config) for node in self.nodes}
        for round_no in range(1, settings.poll_rounds + 1):
            self.rounds = round_no
            if self._poll_round(clients):
                return True
            if round_no < settings.poll_rounds:
                self.sleep(settings.poll_interval)
        return False

    def _poll_round(self, clients: Dict[NodeDescriptor, ManagementClient]) -> bool:
        """One pass over the fleet; True once the takeover has converged."""
        agents = 0
        for node, client in clients.items():
            try:
                status = client.get_status()
            except ManagementApiError as e:
                logger.debug(f"Round {self.rounds}: status of {node} unavailable: {e}")
                continue

            if status.identity is AgentIdentity.CLUSTER_AGENT:
                agents += 1
                continue
            if status.identity is not AgentIdentity.TAKE_OVER_MASTER:
                continue

            logger.info(f"{node} is {status.identity.value}, following its maintenance task")
            try:
                dag = client.get_agent_last_maintenance_dag()
                if dag is None:
                    return False
                client.wait_until_succeeded(
                    dag, interval=self.config.takeover.dag_poll_interval, sleep=self.sleep
                )
            except DagFailedError as e:
                raise TakeoverFailedError(f"takeover task failed: {e}") from e
            except ManagementApiError as e:
                logger.debug(f"Round {self.rounds}: task query on {node} failed: {e}")
                return False
            return True

        return agents == len(clients)


def takeover(password: str, *nodes: NodeDescriptor, config: Optional[ProvisionConfig] = None,
             client_factory: ClientFactory = paramiko.SSHClient,
             management_factory: ManagementFactory = default_management_factory,
             sleep: Callable[[float], None] = time.sleep) -> None:
    """Restart every node with ``password`` and wait for the cluster to form.

    Raises:
        TakeoverFailedError: If the maintenance task graph failed
        TakeoverTimeoutError: If no terminal state was reached in time
    """
    if not nodes:
        return
    Takeover(password, list(nodes), config or get_config(), client_factory=client_factory,
             management_factory=management_factory, sleep=sleep).run()
