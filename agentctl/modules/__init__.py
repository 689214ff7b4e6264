"""
Node provisioning engine.
"""
from .installer import initialize_nodes, install_package
from .inventory import load_inventory, parse_addr
from .lifecycle import clean_nodes, start_nodes, stop_nodes, takeover
from .models import CheckItem, CommandResult, Credentials, NodeDescriptor
from .preflight import check_nodes
from .ssh import HostConnection, connect

__all__ = [
    'CheckItem',
    'CommandResult',
    'Credentials',
    'NodeDescriptor',
    'HostConnection',
    'connect',
    'install_package',
    'initialize_nodes',
    'start_nodes',
    'stop_nodes',
    'clean_nodes',
    'check_nodes',
    'takeover',
    'load_inventory',
    'parse_addr',
]
