"""
Client for the agent's management API.

Only the calls used while converging a takeover are implemented: the agent
status, the agent's last maintenance task graph, and task graph lookup.
"""
import ipaddress
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from .errors import DagFailedError, ManagementApiError
from .models import NodeDescriptor

logger = logging.getLogger("agentctl.management")

STATUS_PATH = "/api/v1/status"
LAST_MAINTENANCE_DAG_PATH = "/api/v1/task/dag/maintain/agent"
DAG_PATH = "/api/v1/task/dag/{id}"


class AgentIdentity(str, Enum):
    """Role an agent reports for itself."""
    MASTER = "MASTER"
    FOLLOWER = "FOLLOWER"
    SINGLE = "SINGLE"
    CLUSTER_AGENT = "CLUSTER AGENT"
    TAKE_OVER_MASTER = "TAKE OVER MASTER"
    TAKE_OVER_FOLLOWER = "TAKE OVER FOLLOWER"
    SCALING_OUT = "SCALING OUT"
    UNIDENTIFIED = "UNIDENTIFIED"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'AgentIdentity':
        try:
            return cls(value)
        except ValueError:
            return cls.UNIDENTIFIED


class DagState(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    RUNNING = "RUNNING"
    FAILED = "FAILED"
    SUCCEED = "SUCCEED"


class DagOperator(str, Enum):
    RUN = "RUN"
    RETRY = "RETRY"
    ROLLBACK = "ROLLBACK"
    CANCEL = "CANCEL"
    PASS = "PASS"


@dataclass
class AgentStatus:
    """Parsed ``/api/v1/status`` payload."""
    identity: AgentIdentity
    ip: str = ''
    port: int = 0
    version: str = ''
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> 'AgentStatus':
        data = data or {}
        agent = data.get('agent') or {}
        return cls(
            identity=AgentIdentity.parse(agent.get('identity')),
            ip=agent.get('ip', ''),
            port=agent.get('port', 0),
            version=data.get('version', ''),
            raw=data,
        )


@dataclass
class DagDetail:
    """A maintenance task graph as returned by the management API."""
    generic_id: str
    name: str = ''
    state: str = ''
    operator: str = ''
    nodes: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'DagDetail':
        return cls(
            generic_id=str(data.get('id', '')),
            name=data.get('name', ''),
            state=data.get('state', ''),
            operator=data.get('operator', ''),
            nodes=list(data.get('nodes') or []),
        )

    @property
    def is_succeeded(self) -> bool:
        return self.state == DagState.SUCCEED.value

    @property
    def is_failed(self) -> bool:
        return self.state == DagState.FAILED.value

    def failure_logs(self) -> List[str]:
        """Last log line of every failed sub-task of the first failed node."""
        for node in self.nodes:
            if node.get('state') != DagState.FAILED.value:
                continue
            if node.get('operator') == DagOperator.CANCEL.value:
                return [f"Task '{self.name}' was cancelled"]

            logs = []
            for task in node.get('sub_tasks') or []:
                if task.get('state') != DagState.FAILED.value:
                    continue
                agent = task.get('execute_agent') or {}
                task_logs = task.get('task_logs') or ['']
                logs.append(f"{agent.get('ip', '')}:{agent.get('port', '')} {task_logs[-1]}")
            return logs
        return ["No failed task log found, please check the task details"]


class ManagementClient(ABC):
    """The three management calls the takeover loop depends on."""

    @abstractmethod
    def get_status(self) -> AgentStatus:
        """Return the agent status, raising ManagementApiError on failure."""

    @abstractmethod
    def get_agent_last_maintenance_dag(self) -> Optional[DagDetail]:
        """Return the agent's last maintenance task graph, if any."""

    @abstractmethod
    def get_dag(self, generic_id: str) -> DagDetail:
        """Return the current state of a task graph."""

    def wait_until_succeeded(self, dag: DagDetail, interval: float = 2.0,
                             sleep: Callable[[float], None] = time.sleep) -> DagDetail:
        """Poll a task graph until it finishes.

        Raises:
            DagFailedError: If the task graph failed
            ManagementApiError: If a query failed
        """
        while True:
            dag = self.get_dag(dag.generic_id)
            if dag.is_succeeded:
                return dag
            if dag.is_failed:
                raise DagFailedError('\n'.join(dag.failure_logs()))
            logger.debug(f"Task '{dag.name}' is {dag.state}, waiting")
            sleep(interval)


class RestManagementClient(ManagementClient):
    """``requests`` implementation of the management API.

    Authentication is left to the ``auth`` object (any ``requests`` auth
    callable); the status endpoint does not need one.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, auth=None,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.auth = auth
        self.session = session or requests.Session()

    @classmethod
    def for_node(cls, node: NodeDescriptor, timeout: float = 10.0, auth=None,
                 default_port: int = 2886) -> 'RestManagementClient':
        host = node.ip
        try:
            if ipaddress.ip_address(host).version == 6:
                host = f"[{host}]"
        except ValueError:
            pass
        return cls(f"http://{host}:{node.service_port or default_port}", timeout=timeout, auth=auth)

    def _request(self, method: str, path: str, authenticated: bool = True, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, timeout=self.timeout,
                auth=self.auth if authenticated else None, **kwargs
            )
        except requests.RequestException as e:
            raise ManagementApiError(f"{method} {url} failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise ManagementApiError(
                f"{method} {url} returned an invalid response (HTTP {response.status_code})",
                status_code=response.status_code
            ) from e

        if not isinstance(body, dict) or not body.get('successful'):
            error = (body.get('error') if isinstance(body, dict) else None) or {}
            message = error.get('message') or f"HTTP {response.status_code}"
            raise ManagementApiError(
                f"{method} {url} failed: {message}",
                status_code=response.status_code,
                code=error.get('code')
            )
        return body.get('data')

    def get_status(self) -> AgentStatus:
        return AgentStatus.from_payload(self._request('GET', STATUS_PATH, authenticated=False))

    def get_agent_last_maintenance_dag(self) -> Optional[DagDetail]:
        data = self._request('GET', LAST_MAINTENANCE_DAG_PATH, json={'showDetail': True})
        if not data:
            return None
        return DagDetail.from_payload(data)

    def get_dag(self, generic_id: str) -> DagDetail:
        data = self._request('GET', DAG_PATH.format(id=generic_id), json={'showDetail': True})
        if not data:
            raise ManagementApiError(f"task {generic_id} not found")
        return DagDetail.from_payload(data)
