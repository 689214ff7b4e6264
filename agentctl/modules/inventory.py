"""
Node inventory loading.

An inventory is a YAML file listing the nodes to operate on:

    defaults:
      user: admin
      key_file: ~/.ssh/id_ed25519
    nodes:
      - ip: 10.0.0.1
        work_dir: /home/admin/agent
      - address: 10.0.0.1:2887
        work_dir: /home/admin/agent2
"""
import ipaddress
from pathlib import Path
from typing import List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .models import Credentials, NodeDescriptor, default_user

MIN_PORT = 1025
MAX_PORT = 65535


def parse_addr(addr: str) -> Tuple[str, Optional[int]]:
    """Split ``ip[:port]`` into its parts.

    Raises:
        ValueError: If the IP is not IPv4 or the port is out of range
    """
    ip, sep, port = addr.strip().partition(':')
    try:
        ipaddress.IPv4Address(ip)
    except ValueError as e:
        raise ValueError(f"invalid ip address: {ip}") from e
    if not sep or port == '':
        return ip, None
    if not port.isdigit() or not MIN_PORT <= int(port) <= MAX_PORT:
        raise ValueError(f"invalid port: {port}, must be in [{MIN_PORT}, {MAX_PORT}]")
    return ip, int(port)


class NodeDefaults(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user: Optional[str] = None
    password: Optional[str] = None
    key_file: Optional[str] = None
    ssh_port: Optional[int] = None
    service_port: Optional[int] = None
    work_dir: Optional[str] = None


class NodeEntry(BaseModel):
    """One node as written in the inventory."""
    model_config = ConfigDict(extra="forbid")

    ip: str
    work_dir: Optional[str] = None
    ssh_port: Optional[int] = None
    service_port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    key_file: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def split_address(cls, data):
        """Accept ``address: ip:port`` as a shorthand for ip + service_port."""
        if isinstance(data, dict) and 'address' in data:
            data = dict(data)
            ip, port = parse_addr(str(data.pop('address')))
            data.setdefault('ip', ip)
            if port is not None:
                data.setdefault('service_port', port)
        return data

    @field_validator('ip')
    @classmethod
    def valid_ip(cls, v: str) -> str:
        ipaddress.ip_address(v)
        return v


class InventoryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    defaults: NodeDefaults = Field(default_factory=NodeDefaults)
    nodes: List[NodeEntry] = Field(default_factory=list)

    def descriptors(self) -> List[NodeDescriptor]:
        result = []
        d = self.defaults
        for entry in self.nodes:
            work_dir = entry.work_dir or d.work_dir
            if not work_dir:
                raise ValueError(f"node {entry.ip} has no work_dir")
            password = entry.password if entry.password is not None else d.password
            result.append(NodeDescriptor(
                ip=entry.ip,
                work_dir=work_dir,
                ssh_port=entry.ssh_port or d.ssh_port,
                service_port=entry.service_port or d.service_port,
                credentials=Credentials(
                    user=entry.user or d.user or default_user(),
                    password=password,
                    key_file=entry.key_file or d.key_file,
                ),
            ))
        return result


def load_inventory(path: Union[str, Path]) -> List[NodeDescriptor]:
    """Read node descriptors from a YAML inventory file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the inventory is malformed
    """
    path = Path(path).expanduser()
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    try:
        return InventoryModel.model_validate(data).descriptors()
    except ValidationError as e:
        raise ValueError(f"invalid inventory {path}: {e}") from e
