import errno
import threading

import pytest

from teachos.disk import RamDisk
from teachos.file import CONSOLE, PIPESIZE, FileKind, FileTable, Pipe
from teachos.fs import FileSystem
from teachos.kprint import KernelPanic
from teachos.layout import (
    BSIZE,
    DINODE_SIZE,
    FSMAGIC,
    IPB,
    LOGSIZE,
    NDIRECT,
    DiskInode,
    Dirent,
    InodeType,
    Superblock,
)


def make_fs():
    nblocks = 200
    nlog = LOGSIZE + 1
    ninodes = 50
    logstart = 2
    inodestart = logstart + nlog
    bmapstart = inodestart + ninodes // IPB + 1
    nmeta = bmapstart + 1
    sb = Superblock(FSMAGIC, nblocks, nblocks - nmeta, ninodes, nlog,
                    logstart, inodestart, bmapstart)
    disk = RamDisk(nblocks)
    disk.write(1, sb.pack().ljust(BSIZE, b"\0"))
    root_block = nmeta
    entries = Dirent(1, ".").pack() + Dirent(1, "..").pack()
    disk.write(root_block, entries.ljust(BSIZE, b"\0"))
    root = DiskInode(InodeType.DIR, 0, 0, 1, len(entries), [root_block] + [0] * NDIRECT)
    iblk = bytearray(BSIZE)
    off = (1 % IPB) * DINODE_SIZE
    iblk[off:off + DINODE_SIZE] = root.pack()
    disk.write(inodestart + 1 // IPB, bytes(iblk))
    bitmap = bytearray(BSIZE)
    for b in range(nmeta + 1):
        bitmap[b // 8] |= 1 << (b % 8)
    disk.write(bmapstart, bytes(bitmap))
    return FileSystem(disk)


def make_inode_file(fs, table):
    with fs.log.transaction():
        ip = fs.ialloc(InodeType.FILE)
        fs.ilock(ip)
        ip.nlink = 1
        fs.iupdate(ip)
        fs.iunlock(ip)
    f = table.alloc()
    f.kind = FileKind.INODE
    f.ip = ip
    f.readable = f.writable = True
    return f


def test_pipe_round_trip():
    pipe = Pipe()
    assert pipe.write(b"hello") == 5
    assert pipe.read(3) == b"hel"
    assert pipe.read(10) == b"lo"


def test_pipe_read_after_writer_closed_returns_empty():
    pipe = Pipe()
    pipe.write(b"x")
    pipe.close(True)
    assert pipe.read(10) == b"x"
    assert pipe.read(10) == b""


def test_pipe_write_without_reader_raises():
    pipe = Pipe()
    pipe.close(False)
    with pytest.raises(BrokenPipeError):
        pipe.write(b"data")


def test_pipe_killed_reader_raises():
    pipe = Pipe(killed=lambda: True)
    with pytest.raises(InterruptedError):
        pipe.read(1)


def test_pipe_closed_after_both_ends():
    pipe = Pipe()
    pipe.close(True)
    assert not pipe.closed
    pipe.close(False)
    assert pipe.closed


def test_pipe_transfers_more_than_capacity():
    pipe = Pipe()
    payload = bytes(range(256)) * ((PIPESIZE * 4) // 256)

    def writer():
        pipe.write(payload)
        pipe.close(True)

    t = threading.Thread(target=writer)
    t.start()
    got = bytearray()
    while chunk := pipe.read(300):
        got += chunk
    t.join(timeout=5)
    assert bytes(got) == payload


def test_alloc_exhaustion():
    table = FileTable(nfile=2)
    table.alloc()
    table.alloc()
    with pytest.raises(OSError) as exc:
        table.alloc()
    assert exc.value.errno == errno.ENFILE


def test_dup_and_close_reference_counts():
    table = FileTable(nfile=1)
    f = table.alloc()
    table.dup(f)
    assert f.ref == 2
    table.close(f)
    table.close(f)
    assert f.ref == 0
    assert table.alloc() is f


def test_close_unreferenced_panics():
    table = FileTable()
    f = table.alloc()
    table.close(f)
    with pytest.raises(KernelPanic):
        table.close(f)
    with pytest.raises(KernelPanic):
        table.dup(f)


def test_make_pipe_through_table():
    table = FileTable()
    rf, wf = table.make_pipe()
    assert rf.readable and not rf.writable
    assert wf.writable and not wf.readable
    table.write(wf, b"abc")
    assert table.read(rf, 10) == b"abc"
    table.close(wf)
    assert table.read(rf, 10) == b""


def test_wrong_direction_raises():
    table = FileTable()
    rf, wf = table.make_pipe()
    with pytest.raises(OSError) as exc:
        table.write(rf, b"x")
    assert exc.value.errno == errno.EBADF
    with pytest.raises(OSError):
        table.read(wf, 1)


def test_stat_of_pipe_fails():
    table = FileTable()
    rf, _ = table.make_pipe()
    with pytest.raises(OSError):
        table.stat(rf)


def test_device_dispatch():
    table = FileTable()
    written = []
    table.register_device(CONSOLE, read=lambda n: b"input"[:n],
                          write=lambda data: written.append(data) or len(data))
    f = table.alloc()
    f.kind = FileKind.DEVICE
    f.major = CONSOLE
    f.readable = f.writable = True
    assert table.read(f, 2) == b"in"
    assert table.write(f, b"out") == 3
    assert written == [b"out"]


def test_unregistered_device_raises():
    table = FileTable()
    f = table.alloc()
    f.kind = FileKind.DEVICE
    f.major = 3
    f.readable = True
    with pytest.raises(OSError) as exc:
        table.read(f, 1)
    assert exc.value.errno == errno.ENODEV


def test_register_device_out_of_range():
    with pytest.raises(ValueError):
        FileTable().register_device(-1)


def test_inode_file_round_trip():
    fs = make_fs()
    table = FileTable(fs)
    f = make_inode_file(fs, table)
    payload = b"hello"
    assert table.write(f, payload) == len(payload)
    assert f.off == len(payload)
    f.off = 0
    assert table.read(f, 100) == payload
    assert table.stat(f).size == len(payload)


def test_large_inode_write_spans_transactions():
    fs = make_fs()
    table = FileTable(fs)
    f = make_inode_file(fs, table)
    payload = bytes(i % 251 for i in range(BSIZE * 5 + 17))
    assert table.write(f, payload) == len(payload)
    f.off = 0
    assert table.read(f, len(payload) + 10) == payload


def test_closing_inode_file_drops_reference():
    fs = make_fs()
    table = FileTable(fs)
    f = make_inode_file(fs, table)
    ip = f.ip
    before = ip.ref
    table.close(f)
    assert ip.ref == before - 1
    assert f.kind is FileKind.NONE