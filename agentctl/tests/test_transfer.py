import io
import os
import stat
import threading

import pytest

from agentctl.config import TransferSettings
from agentctl.modules.errors import RemoteCommandError, TransferError
from agentctl.modules.models import TransferPlan
from agentctl.modules.transfer import (CapabilityCache, FileDistributor, chunk_offsets,
                                       plan_transfer)


def _mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


@pytest.mark.parametrize("size, plan", [
    (0, TransferPlan.BATCHED),
    (15, TransferPlan.BATCHED),
    (16, TransferPlan.STREAM),
    (63, TransferPlan.STREAM),
    (64, TransferPlan.CHUNKED),
    (10 ** 6, TransferPlan.CHUNKED),
])
def test_plan_transfer_thresholds(size, plan):
    settings = TransferSettings(batch_threshold=16, chunk_size=64)
    assert plan_transfer(size, settings) is plan


def test_default_thresholds():
    settings = TransferSettings()
    assert plan_transfer(1024 * 1024 - 1, settings) is TransferPlan.BATCHED
    assert plan_transfer(64 * 1024 * 1024 - 1, settings) is TransferPlan.STREAM
    assert plan_transfer(64 * 1024 * 1024, settings) is TransferPlan.CHUNKED


def test_chunk_offsets():
    assert chunk_offsets(200, 64) == [0, 64, 128, 192]
    assert chunk_offsets(128, 64) == [0, 64]
    assert chunk_offsets(1, 64) == [0]


def test_stream_copy_writes_file_and_mode(dir_connection, config, tracker):
    target = os.path.join(dir_connection.node.work_dir, 'etc', 'agent.conf')
    data = b'x' * 40

    plan = FileDistributor(config).write_stream(dir_connection, target, io.BytesIO(data), len(data), 0o640)

    assert plan is TransferPlan.STREAM
    with open(target, 'rb') as f:
        assert f.read() == data
    assert _mode(target) == 0o640
    assert tracker.opened == [target]
    assert tracker.sessions == 0


def test_chunked_copy_two_waves(dir_connection, config, tracker):
    """A 200 byte file with 64 byte chunks is sent as 4 chunks, at most 2 at a time."""
    target = os.path.join(dir_connection.node.work_dir, 'bin', 'obshell')
    data = os.urandom(200)

    plan = FileDistributor(config).write_stream(dir_connection, target, io.BytesIO(data), len(data), 0o755)

    assert plan is TransferPlan.CHUNKED
    assert sorted(tracker.opened) == sorted(f"{target}.{off}" for off in (0, 64, 128, 192))
    assert tracker.sessions == 4
    assert tracker.max_in_flight <= config.transfer.parallel_max
    with open(target, 'rb') as f:
        assert f.read() == data
    assert _mode(target) == 0o755
    leftovers = [n for n in os.listdir(os.path.dirname(target)) if n != 'obshell']
    assert leftovers == []


@pytest.mark.parametrize("size, chunk_size", [(640, 64), (257, 100), (99, 33)])
def test_chunk_round_trip(dir_connection, config, tracker, size, chunk_size):
    config.transfer.chunk_size = chunk_size
    config.transfer.parallel_max = 3
    tracker.write_delay = 0
    target = os.path.join(dir_connection.node.work_dir, 'data.bin')
    data = os.urandom(size)

    FileDistributor(config).write_stream(dir_connection, target, io.BytesIO(data), size, 0o644)

    with open(target, 'rb') as f:
        assert f.read() == data
    assert len(tracker.opened) == len(chunk_offsets(size, chunk_size))


def test_concurrency_never_exceeds_limit(dir_connection, config, tracker):
    config.transfer.parallel_max = 3
    target = os.path.join(dir_connection.node.work_dir, 'big.bin')
    data = os.urandom(64 * 10)

    FileDistributor(config).write_stream(dir_connection, target, io.BytesIO(data), len(data), 0o644)

    assert len(tracker.opened) == 10
    assert 1 <= tracker.max_in_flight <= 3


def test_failed_chunk_is_reported_after_all_workers(dir_connection, config, tracker):
    target = os.path.join(dir_connection.node.work_dir, 'bin', 'obshell')
    tracker.fail_paths.add(f"{target}.64")
    data = os.urandom(200)

    with pytest.raises(TransferError) as exc:
        FileDistributor(config).write_stream(dir_connection, target, io.BytesIO(data), len(data), 0o755)

    assert len(exc.value.errors) == 1
    assert f"{target}.64" in str(exc.value)
    # the three healthy chunks were still sent
    assert len(tracker.opened) == 3
    assert not os.path.exists(target)
    assert os.listdir(os.path.dirname(target)) == []


def test_mode_failure_is_distinct_from_transfer_failure(dir_connection, config, tracker):
    tracker.fail_commands.append('chmod')
    target = os.path.join(dir_connection.node.work_dir, 'a.txt')

    with pytest.raises(RemoteCommandError, match="failed to update file mode"):
        FileDistributor(config).write_file(dir_connection, target, b'hello world, hello', 0o600)

    with open(target, 'rb') as f:
        assert f.read() == b'hello world, hello'


def test_batch_writes_every_file(dir_connection, config, tracker):
    base = dir_connection.node.work_dir
    files = [(os.path.join(base, d, f"f{i}"), f"content {i}".encode(), 0o600 + i % 2 * 0o44)
             for i, d in enumerate(['a', 'a', 'b', 'c/d', 'c/d'])]

    FileDistributor(config).write_batch(dir_connection, files)

    for path, data, mode in files:
        with open(path, 'rb') as f:
            assert f.read() == data
        assert _mode(path) == mode
    mkdirs = [c for c in tracker.commands if c.startswith('mkdir -p')]
    assert len(mkdirs) == 1


def test_batch_collects_failures(dir_connection, config, tracker):
    base = dir_connection.node.work_dir
    files = [(os.path.join(base, f"f{i}"), b'1', 0o644) for i in range(4)]
    tracker.fail_paths.update({files[0][0], files[3][0]})

    with pytest.raises(TransferError) as exc:
        FileDistributor(config).write_batch(dir_connection, files)

    assert len(exc.value.errors) == 2
    assert os.path.exists(files[1][0])
    assert os.path.exists(files[2][0])


def test_directories_created_once_per_host(dir_connection, config, tracker):
    distributor = FileDistributor(config)
    base = dir_connection.node.work_dir
    distributor.write_file(dir_connection, os.path.join(base, 'x', 'one'), b'1' * 20, 0o644)
    distributor.write_file(dir_connection, os.path.join(base, 'x', 'two'), b'2' * 20, 0o644)

    assert len([c for c in tracker.commands if c.startswith('mkdir -p')]) == 1


def test_rsync_probe_is_cached_per_host(dir_connection, config, tracker, monkeypatch):
    config.transfer.use_rsync = True
    monkeypatch.setattr('agentctl.modules.transfer.shutil.which', lambda name: '/usr/bin/rsync')
    tracker.fail_commands.append('rsync -h')
    distributor = FileDistributor(config)

    assert distributor.rsync_available(dir_connection) is False
    assert distributor.rsync_available(dir_connection) is False
    assert tracker.commands.count('rsync -h') == 1


def test_rsync_disabled_by_default(dir_connection, config, tracker):
    assert FileDistributor(config).rsync_available(dir_connection) is False
    assert 'rsync -h' not in tracker.commands


def test_capability_cache_keeps_first_result():
    cache = CapabilityCache()
    started = threading.Event()
    release = threading.Event()
    results = []

    def slow_probe():
        started.set()
        release.wait(5)
        return False

    worker = threading.Thread(target=lambda: results.append(cache.get_or_probe('h', slow_probe)))
    worker.start()
    started.wait(5)
    assert cache.get_or_probe('h', lambda: True) is True
    release.set()
    worker.join(5)

    assert results == [True]
    assert cache.get('h') is True


def test_local_connection_writes_directly(tmp_path, config):
    from agentctl.modules.models import NodeDescriptor
    from agentctl.modules.ssh import connect

    node = NodeDescriptor(ip='127.0.0.1', work_dir=str(tmp_path / 'work'))
    target = str(tmp_path / 'work' / 'bin' / 'big')
    data = os.urandom(300)
    with connect(node, config=config) as conn:
        FileDistributor(config).write_stream(conn, target, io.BytesIO(data), len(data), 0o750)

    with open(target, 'rb') as f:
        assert f.read() == data
    assert _mode(target) == 0o750
