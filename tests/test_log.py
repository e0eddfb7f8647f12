import struct

import pytest

from teachos.bufcache import BufferCache
from teachos.disk import RamDisk
from teachos.layout import BSIZE, FSMAGIC, LOGSIZE, Superblock
from teachos.log import Log, LogError

DEV = 1
LOGSTART = 2


def make(nlog=LOGSIZE, disk=None):
    disk = disk or RamDisk(100)
    cache = BufferCache(disk)
    sb = Superblock(FSMAGIC, 100, 50, 16, nlog, LOGSTART, 40, 45)
    return disk, cache, Log(cache, DEV, sb)


def modify(cache, log, blockno, payload):
    buf = cache.read(DEV, blockno)
    buf.data[:len(payload)] = payload
    log.log_write(buf)
    cache.release(buf)


def header_count(disk):
    return struct.unpack_from("<i", disk.read(LOGSTART))[0]


def test_commit_installs_block():
    disk, cache, log = make()
    with log.transaction():
        modify(cache, log, 50, b"hello")
        assert disk.read(50) == bytes(BSIZE)
        assert log.pending == (50,)
    assert disk.read(50)[:5] == b"hello"
    assert header_count(disk) == 0
    assert log.pending == ()


def test_absorption():
    disk, cache, log = make()
    with log.transaction():
        modify(cache, log, 50, b"one")
        modify(cache, log, 50, b"two")
        modify(cache, log, 51, b"x")
        assert log.pending == (50, 51)
    assert disk.read(50)[:3] == b"two"
    assert disk.read(51)[:1] == b"x"


def test_log_write_outside_transaction():
    _, cache, log = make()
    buf = cache.read(DEV, 50)
    with pytest.raises(LogError):
        log.log_write(buf)
    cache.release(buf)


def test_recovery_replays_committed_log():
    disk = RamDisk(100)
    header = struct.pack("<ii", 1, 60)
    disk.write(LOGSTART, header + bytes(BSIZE - len(header)))
    payload = b"\x5a" * BSIZE
    disk.write(LOGSTART + 1, payload)
    make(disk=disk)
    assert disk.read(60) == payload
    assert header_count(disk) == 0


def test_too_big_transaction():
    disk, cache, log = make(nlog=4)
    log.begin_op()
    for blockno in (50, 51, 52):
        modify(cache, log, blockno, b"z")
    buf = cache.read(DEV, 53)
    with pytest.raises(LogError):
        log.log_write(buf)
    cache.release(buf)
    log.end_op()
    assert [disk.read(b)[:1] for b in (50, 51, 52)] == [b"z"] * 3


def test_transaction_ends_on_error():
    _, cache, log = make()
    with pytest.raises(RuntimeError):
        with log.transaction():
            raise RuntimeError("boom")
    buf = cache.read(DEV, 50)
    with pytest.raises(LogError):
        log.log_write(buf)
    cache.release(buf)


def test_end_op_without_begin():
    _, _, log = make()
    with pytest.raises(LogError):
        log.end_op()