"""
File distribution to provisioned nodes.

Every regular file is shipped with one of three strategies picked by size:

* batched  - small files are buffered and written by a pool of writers
  sharing the node's session,
* stream   - medium files are copied in one SFTP stream,
* chunked  - large files are spooled locally, split into fixed-size chunks
  uploaded in parallel over independent sessions, then concatenated on the
  node in offset order.

When enabled and available on both ends, rsync replaces all of them.
File modes are always applied afterwards with a separate ``chmod``.
"""
import io
import logging
import os
import posixpath
import shlex
import shutil
import subprocess
import tempfile
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import BinaryIO, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import paramiko

from ..config import ProvisionConfig, TransferSettings, get_config
from .errors import NodeConnectionError, ProvisionError, TransferError
from .models import TransferPlan
from .ssh import HostConnection

logger = logging.getLogger("agentctl.transfer")

READ_SIZE = 1024 * 1024
CHMOD_BATCH = 200

BatchItem = Tuple[str, bytes, int]


def plan_transfer(size: int, settings: TransferSettings) -> TransferPlan:
    """Pick the transfer strategy for a file of ``size`` bytes."""
    if size < settings.batch_threshold:
        return TransferPlan.BATCHED
    if size < settings.chunk_size:
        return TransferPlan.STREAM
    return TransferPlan.CHUNKED


def chunk_offsets(size: int, chunk_size: int) -> List[int]:
    """Start offsets of the ceil(size / chunk_size) chunks of a file."""
    return list(range(0, size, chunk_size))


def chunk_path(path: str, offset: int) -> str:
    return f"{path}.{offset}"


class CapabilityCache:
    """Per-host capability results for the lifetime of one operation.

    The first result stored for a key is kept; later probes of the same key
    return it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, bool] = {}

    def get(self, key: str) -> Optional[bool]:
        with self._lock:
            return self._values.get(key)

    def get_or_probe(self, key: str, probe: Callable[[], bool]) -> bool:
        with self._lock:
            if key in self._values:
                return self._values[key]
        value = probe()
        with self._lock:
            return self._values.setdefault(key, value)


class FileDistributor:
    """Writes files to nodes using the size-based strategies above.

    One instance is meant to live for a single provisioning operation; it
    owns the capability cache and the set of directories already created.
    """

    def __init__(self, config: Optional[ProvisionConfig] = None, cache: Optional[CapabilityCache] = None):
        self.config = config or get_config()
        self.settings = self.config.transfer
        self.cache = cache if cache is not None else CapabilityCache()
        self._lock = threading.Lock()
        self._dirs: Dict[str, Set[str]] = defaultdict(set)

    def rsync_available(self, conn: HostConnection) -> bool:
        """True when rsync is enabled, installed here and answers on the node."""
        if not self.settings.use_rsync or conn.is_local:
            return False
        if shutil.which('rsync') is None:
            return False
        return self.cache.get_or_probe(conn.address, lambda: conn.execute('rsync -h').ok)

    def ensure_dirs(self, conn: HostConnection, dirs: Iterable[str]) -> None:
        """Create missing parent directories with a single ``mkdir -p``."""
        with self._lock:
            known = set(self._dirs[conn.address])
        missing = sorted({d for d in dirs if d and d not in known})
        if not missing:
            return

        if conn.is_local:
            for d in missing:
                try:
                    os.makedirs(d, exist_ok=True)
                except OSError as e:
                    raise TransferError(f"failed to create directory {d}", [e]) from e
        else:
            conn.run('mkdir -p ' + ' '.join(shlex.quote(d) for d in missing),
                     "failed to create directories")

        with self._lock:
            self._dirs[conn.address].update(missing)

    def chmod(self, conn: HostConnection, files: Iterable[Tuple[str, int]]) -> None:
        """Apply file modes, one ``chmod`` per mode and batch of paths.

        Raises:
            RemoteCommandError: If the mode could not be changed
        """
        by_mode: Dict[int, List[str]] = defaultdict(list)
        for path, mode in files:
            by_mode[mode].append(path)

        for mode, paths in sorted(by_mode.items()):
            for i in range(0, len(paths), CHMOD_BATCH):
                quoted = ' '.join(shlex.quote(p) for p in paths[i:i + CHMOD_BATCH])
                conn.run(f"chmod {mode:04o} {quoted}", "failed to update file mode")

    def write_file(self, conn: HostConnection, path: str, data: bytes, mode: int) -> None:
        """Write an in-memory buffer to ``path`` on the node."""
        self.write_stream(conn, path, io.BytesIO(data), len(data), mode)

    def write_stream(self, conn: HostConnection, path: str, reader: BinaryIO, size: int, mode: int) -> TransferPlan:
        """Copy ``size`` bytes from ``reader`` to ``path`` on the node.

        Returns:
            TransferPlan: The strategy that was used

        Raises:
            TransferError: If the content could not be transferred
            RemoteCommandError: If the file mode could not be applied
        """
        plan = plan_transfer(size, self.settings)
        self.ensure_dirs(conn, [posixpath.dirname(path)])

        if conn.is_local:
            self._write_local(path, reader)
        elif self.rsync_available(conn):
            self._write_rsync(conn, path, reader)
        elif plan is TransferPlan.CHUNKED:
            self._write_chunked(conn, path, reader, size)
        else:
            self._write_remote(conn, path, reader)

        self.chmod(conn, [(path, mode)])
        return plan

    def write_batch(self, conn: HostConnection, files: Sequence[BatchItem]) -> None:
        """Write many small files in parallel.

        Files are split across ``batch_workers`` writers (CPU count by
        default). All writers finish before failures are reported together.
        """
        if not files:
            return
        self.ensure_dirs(conn, {posixpath.dirname(path) for path, _, _ in files})

        workers = self.settings.batch_workers or os.cpu_count() or 1
        groups = [list(files[i::workers]) for i in range(workers)]
        groups = [g for g in groups if g]
        logger.debug(f"Writing {len(files)} small files to {conn.node} with {len(groups)} writers")

        errors: List[BaseException] = []
        with ThreadPoolExecutor(max_workers=len(groups)) as executor:
            futures = [executor.submit(self._write_group, conn, group) for group in groups]
            for future in as_completed(futures):
                try:
                    future.result()
                except TransferError as e:
                    errors.extend(e.errors or [e])
        if errors:
            raise TransferError(f"failed to write {len(errors)} file(s) to {conn.node}", errors)

        self.chmod(conn, [(path, mode) for path, _, mode in files])

    def _write_group(self, conn: HostConnection, group: List[BatchItem]) -> None:
        errors: List[BaseException] = []
        if conn.is_local:
            for path, data, _ in group:
                try:
                    with open(path, 'wb') as f:
                        f.write(data)
                except OSError as e:
                    errors.append(OSError(f"{path}: {e}"))
        else:
            try:
                sftp = conn.open_sftp()
            except (paramiko.SSHException, OSError, NodeConnectionError) as e:
                raise TransferError(f"failed to open sftp session to {conn.node}", [e]) from e
            try:
                for path, data, _ in group:
                    try:
                        with sftp.open(path, 'wb') as f:
                            f.write(data)
                    except (paramiko.SSHException, OSError) as e:
                        errors.append(OSError(f"{path}: {e}"))
            finally:
                sftp.close()
        if errors:
            raise TransferError(f"failed to write files to {conn.node}", errors)

    def _write_local(self, path: str, reader: BinaryIO) -> None:
        try:
            with open(path, 'wb') as f:
                shutil.copyfileobj(reader, f, READ_SIZE)
        except OSError as e:
            raise TransferError(f"failed to write {path}", [e]) from e

    def _write_remote(self, conn: HostConnection, path: str, reader: BinaryIO) -> None:
        try:
            sftp = conn.open_sftp()
            try:
                with sftp.open(path, 'wb') as f:
                    shutil.copyfileobj(reader, f, READ_SIZE)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError, NodeConnectionError) as e:
            raise TransferError(f"failed to write {path} to {conn.node}", [e]) from e

    def _write_rsync(self, conn: HostConnection, path: str, reader: BinaryIO) -> None:
        node = conn.node
        port = node.ssh_port or self.config.ssh.default_port
        ssh_cmd = f"ssh -p {port}"
        if not self.config.ssh.strict_host_key_checking:
            ssh_cmd = f"ssh -o StrictHostKeyChecking=no -p {port}"
        host = conn.address.rsplit(':', 1)[0]

        with tempfile.NamedTemporaryFile(prefix='agentctl-') as spool:
            shutil.copyfileobj(reader, spool, READ_SIZE)
            spool.flush()
            cmd = ['rsync', '-a', '-W', '-L', '-e', ssh_cmd, spool.name,
                   f"{node.credentials.user}@{host}:{path}"]
            logger.debug(f"Running {' '.join(cmd)}")
            try:
                proc = subprocess.run(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE,
                                      stderr=subprocess.PIPE, text=True)
            except OSError as e:
                raise TransferError(f"failed to rsync {path} to {node}", [e]) from e
        if proc.returncode != 0:
            raise TransferError(f"failed to rsync {path} to {node}: {proc.stderr.strip()}")

    def _write_chunked(self, conn: HostConnection, path: str, reader: BinaryIO, size: int) -> None:
        """Spool, upload chunks in parallel, then concatenate in offset order."""
        chunk_size = self.settings.chunk_size
        offsets = chunk_offsets(size, chunk_size)
        chunks = [chunk_path(path, off) for off in offsets]

        with tempfile.TemporaryFile(prefix='agentctl-') as spool:
            shutil.copyfileobj(reader, spool, READ_SIZE)
            spool.flush()
            if spool.tell() != size:
                raise TransferError(f"{path}: expected {size} bytes, read {spool.tell()}")

            workers = min(self.settings.parallel_max, len(offsets))
            logger.info(f"Uploading {path} to {conn.node} in {len(offsets)} chunks ({workers} at a time)")
            try:
                errors: List[BaseException] = []
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    futures = {
                        executor.submit(self._send_chunk, conn, spool.fileno(), off,
                                        min(chunk_size, size - off), remote): remote
                        for off, remote in zip(offsets, chunks)
                    }
                    for future in as_completed(futures):
                        try:
                            future.result()
                        except ProvisionError as e:
                            errors.append(e)
                if errors:
                    raise TransferError(f"failed to transfer {path} to {conn.node}", errors)

                merge = [f"rm -f {shlex.quote(path)}"]
                for remote in chunks:
                    merge.append(f"cat {shlex.quote(remote)} >> {shlex.quote(path)}")
                    merge.append(f"rm -f {shlex.quote(remote)}")
                conn.run(' && '.join(merge), f"failed to merge chunks of {path}")
            finally:
                self._remove_chunks(conn, chunks)

    def _send_chunk(self, conn: HostConnection, fd: int, offset: int, length: int, remote: str) -> None:
        try:
            chunk_conn = conn.reopen()
        except NodeConnectionError as e:
            raise TransferError(f"failed to open session for {remote}", [e]) from e
        try:
            sftp = chunk_conn.open_sftp()
            try:
                with sftp.open(remote, 'wb') as f:
                    sent = 0
                    while sent < length:
                        data = os.pread(fd, min(READ_SIZE, length - sent), offset + sent)
                        if not data:
                            raise TransferError(f"{remote}: local spool ended early")
                        f.write(data)
                        sent += len(data)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"failed to write chunk {remote} to {conn.node}", [e]) from e
        finally:
            chunk_conn.close()

    def _remove_chunks(self, conn: HostConnection, chunks: List[str]) -> None:
        result = conn.execute('rm -f ' + ' '.join(shlex.quote(c) for c in chunks))
        if not result.ok:
            logger.warning(f"Failed to remove chunk files on {conn.node}: {result.stderr.strip()}")

