import lzma
import struct
import subprocess
import threading
import time

import pytest

from agentctl.config import ProvisionConfig, SSHSettings, TransferSettings, set_config
from agentctl.modules import preflight, ssh
from agentctl.modules.errors import RemoteCommandError
from agentctl.modules.models import CommandResult, NodeDescriptor

# ---------------------------------------------------------------------------
# RPM packages
# ---------------------------------------------------------------------------

RPM_LEAD = b'\xed\xab\xee\xdb' + b'\x03\x00' + b'\x00' * 90


def _pad4(n):
    return (4 - n % 4) % 4


def _rpm_header(tags):
    index = b''
    store = b''
    for tag, type_, value in tags:
        if type_ == 4:
            store += b'\0' * _pad4(len(store))
            data = struct.pack('>i', value)
        else:
            data = value.encode() + b'\0'
        index += struct.pack('>iiii', tag, type_, len(store), 1)
        store += data
    return struct.pack('>3sB4xII', b'\x8e\xad\xe8', 1, len(tags), len(store)) + index + store


def _cpio_member(name, mode, data, ino):
    namesize = len(name.encode()) + 1
    fields = [ino, mode, 0, 0, 1, 0, len(data), 0, 0, 0, 0, namesize, 0]
    out = b'070701' + b''.join(b'%08X' % v for v in fields) + name.encode() + b'\0'
    out += b'\0' * _pad4(len(out))
    return out + data + b'\0' * _pad4(len(data))


def build_cpio(entries):
    out = b''
    for ino, entry in enumerate(entries, start=1):
        kind, name = entry[0], entry[1]
        if kind == 'file':
            data = entry[2]
            mode = 0o100000 | (entry[3] if len(entry) > 3 else 0o644)
        elif kind == 'link':
            data = entry[2].encode()
            mode = 0o120777
        elif kind == 'dir':
            data = b''
            mode = 0o040755
        else:
            data = b''
            mode = 0o010644  # fifo
        out += _cpio_member(name, mode, data, ino)
    return out + _cpio_member('TRAILER!!!', 0, b'', 0)


@pytest.fixture
def rpm_factory(tmp_path):
    """Write an RPM with the given entries and return its path.

    Entries are ('file', name, bytes[, perm]), ('link', name, target),
    ('dir', name) or ('fifo', name).
    """
    def build(entries, filename='agent.rpm', compressor='xz', payload_format='cpio',
              name='obshell', version='4.2.1.0', release='1.el7', arch='x86_64', truncate=False):
        signature = _rpm_header([(269, 6, 'abc')])
        signature += b'\0' * ((8 - len(signature) % 8) % 8)
        header = _rpm_header([
            (1000, 6, name),
            (1001, 6, version),
            (1002, 6, release),
            (1022, 6, arch),
            (1124, 6, payload_format),
            (1125, 6, compressor),
        ])
        payload = lzma.compress(build_cpio(entries), format=lzma.FORMAT_XZ)
        if truncate:
            payload = payload[:len(payload) // 2]
        path = tmp_path / filename
        path.write_bytes(RPM_LEAD + signature + header + payload)
        return str(path)
    return build


@pytest.fixture
def agent_rpm(rpm_factory):
    return rpm_factory([
        ('dir', './home/admin/oceanbase'),
        ('dir', './home/admin/oceanbase/bin'),
        ('file', './home/admin/oceanbase/bin/obshell', b'#!/bin/sh\necho obshell\n', 0o755),
        ('file', './home/admin/oceanbase/etc/agent.conf', b'port=2886\n', 0o640),
        ('file', './home/admin/oceanbase/lib/libagent.so.1', b'\x7fELF' + b'\x00' * 300, 0o755),
        ('link', './home/admin/oceanbase/lib/libagent.so', 'libagent.so.1'),
        ('link', './usr/local/bin/obshell', '/home/admin/oceanbase/bin/obshell'),
        ('file', './usr/share/doc/README', b'docs\n'),
    ])


# ---------------------------------------------------------------------------
# Configuration and environment
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated(monkeypatch):
    """No test sees the real network interfaces or a leftover global config."""
    monkeypatch.setattr(ssh, 'local_addresses', lambda: set())
    monkeypatch.setattr(preflight, 'local_ipv4_addresses', lambda: ['192.168.10.5'])
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def config(tmp_path):
    return ProvisionConfig(
        ssh=SSHSettings(key_dir=str(tmp_path / 'no-keys')),
        transfer=TransferSettings(batch_threshold=16, chunk_size=64, parallel_max=2, batch_workers=2),
    )


# ---------------------------------------------------------------------------
# Fake paramiko client
# ---------------------------------------------------------------------------

class _Channel:
    def __init__(self, status):
        self._status = status

    def recv_exit_status(self):
        return self._status


class _Buf:
    def __init__(self, text, status):
        self._data = text.encode()
        self.channel = _Channel(status)

    def read(self):
        return self._data


class FakeRemote:
    """Scripted host shared by every FakeSSHClient built for it."""

    def __init__(self):
        self.responses = []
        self.commands = []
        self.connects = []
        self.clients = []
        self.connect_error = None
        self.exec_error = None
        self._lock = threading.Lock()

    def on(self, fragment, stdout='', stderr='', exit_code=0):
        """Answer commands containing ``fragment``; earlier rules win."""
        self.responses.append((fragment, CommandResult(stdout, stderr, exit_code)))
        return self

    def respond(self, command):
        with self._lock:
            self.commands.append(command)
        for fragment, result in self.responses:
            if fragment in command:
                return result
        return CommandResult('', '', 0)

    def ran(self, fragment):
        return [c for c in self.commands if fragment in c]

    def factory(self):
        client = FakeSSHClient(self)
        self.clients.append(client)
        return client


class FakeSSHClient:
    def __init__(self, remote):
        self.remote = remote
        self.policy = None
        self.host_keys = None
        self.closed = False

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def load_host_keys(self, path):
        self.host_keys = path

    def connect(self, **kwargs):
        self.remote.connects.append(kwargs)
        if self.remote.connect_error is not None:
            raise self.remote.connect_error

    def exec_command(self, command, timeout=None):
        if self.remote.exec_error is not None:
            raise self.remote.exec_error
        result = self.remote.respond(command)
        return None, _Buf(result.stdout, result.exit_code), _Buf(result.stderr, result.exit_code)

    def close(self):
        self.closed = True


@pytest.fixture
def remote():
    return FakeRemote()


# ---------------------------------------------------------------------------
# Connection whose "remote" side is a local directory
# ---------------------------------------------------------------------------

class TransferTracker:
    """Counts SFTP sessions and in-flight writes across reopened connections."""

    def __init__(self, write_delay=0.01):
        self.lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.opened = []
        self.sessions = 0
        self.commands = []
        self.fail_paths = set()
        self.fail_commands = []
        self.write_delay = write_delay


class _TrackedFile:
    def __init__(self, path, mode, tracker):
        self._tracker = tracker
        with tracker.lock:
            tracker.opened.append(path)
            tracker.in_flight += 1
            tracker.max_in_flight = max(tracker.max_in_flight, tracker.in_flight)
        self._file = open(path, mode)

    def write(self, data):
        time.sleep(self._tracker.write_delay)
        return self._file.write(data)

    def close(self):
        if not self._file.closed:
            self._file.close()
            with self._tracker.lock:
                self._tracker.in_flight -= 1

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class LocalSFTP:
    def __init__(self, tracker):
        self._tracker = tracker

    def open(self, path, mode='r'):
        if path in self._tracker.fail_paths:
            raise IOError(f"permission denied: {path}")
        return _TrackedFile(path, mode, self._tracker)

    def close(self):
        pass


class DirConnection:
    """HostConnection stand-in: SFTP and shell act on the local filesystem."""

    is_local = False

    def __init__(self, node, config, tracker):
        self.node = node
        self.config = config
        self.tracker = tracker
        self.address = f"{node.ip}:{node.ssh_port or config.ssh.default_port}"

    def execute(self, command):
        with self.tracker.lock:
            self.tracker.commands.append(command)
        for fragment in self.tracker.fail_commands:
            if command.startswith(fragment):
                return CommandResult('', f"{fragment}: operation not permitted", 1)
        proc = subprocess.run(['bash', '-c', command], stdout=subprocess.PIPE,
                              stderr=subprocess.PIPE, text=True)
        return CommandResult(proc.stdout, proc.stderr, proc.returncode)

    def run(self, command, message):
        result = self.execute(command)
        if not result.ok:
            raise RemoteCommandError(message, node=self.node, command=command, result=result)
        return result

    def open_sftp(self):
        return LocalSFTP(self.tracker)

    def reopen(self):
        with self.tracker.lock:
            self.tracker.sessions += 1
        return DirConnection(self.node, self.config, self.tracker)

    def close(self):
        pass


@pytest.fixture
def tracker():
    return TransferTracker()


@pytest.fixture
def dir_connection(tmp_path, config, tracker):
    node = NodeDescriptor(ip='10.0.0.8', work_dir=str(tmp_path / 'remote'))
    return DirConnection(node, config, tracker)
