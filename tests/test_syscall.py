import pytest

from teachos.disk import RamDisk
from teachos.kprint import KernelPanic
from teachos.layout import (
    BPB,
    BSIZE,
    DINODE_SIZE,
    FSSIZE,
    IPB,
    LOGSIZE,
    NDIRECT,
    ROOTINO,
    Dirent,
    DiskInode,
    InodeType,
    OpenFlag,
    Superblock,
    iblock,
)
from teachos.proc import ProcState
from teachos.syscall import Kernel, Sys


def make_disk():
    nblocks = FSSIZE
    ninodes = 200
    nlog = LOGSIZE
    nbitmap = nblocks // BPB + 1
    ninodeblocks = ninodes // IPB + 1
    nmeta = 2 + nlog + ninodeblocks + nbitmap
    sb = Superblock(
        size=nblocks,
        nblocks=nblocks - nmeta,
        ninodes=ninodes,
        nlog=nlog,
        logstart=2,
        inodestart=2 + nlog,
        bmapstart=2 + nlog + ninodeblocks,
    )
    image = bytearray(nblocks * BSIZE)
    raw = sb.pack()
    image[BSIZE:BSIZE + len(raw)] = raw
    entries = Dirent(ROOTINO, ".").pack() + Dirent(ROOTINO, "..").pack()
    root_block = nmeta
    image[root_block * BSIZE:root_block * BSIZE + len(entries)] = entries
    addrs = [0] * (NDIRECT + 1)
    addrs[0] = root_block
    root = DiskInode(type=InodeType.DIR, nlink=1, size=len(entries), addrs=addrs).pack()
    off = iblock(ROOTINO, sb) * BSIZE + (ROOTINO % IPB) * DINODE_SIZE
    image[off:off + len(root)] = root
    bmap = sb.bmapstart * BSIZE
    for b in range(nmeta + 1):
        image[bmap + b // 8] |= 1 << (b % 8)
    return RamDisk.from_bytes(bytes(image))


@pytest.fixture
def kernel():
    return Kernel(make_disk())


@pytest.fixture
def init(kernel):
    return kernel.ptable.userinit()


def _proc(kernel, pid):
    return next(p for p in kernel.ptable.procs if p.pid == pid)


def test_getpid_sets_register(kernel, init):
    assert kernel.syscall(init, Sys.GETPID) == init.pid
    assert init.trapframe["a0"] == init.pid


def test_priority_round_trip(kernel, init):
    assert kernel.syscall(init, Sys.SETPRIORITY, 7) == 0
    assert kernel.syscall(init, Sys.GETPRIORITY) == 7


def test_fork_creates_runnable_child(kernel, init):
    pid = kernel.syscall(init, Sys.FORK)
    child = _proc(kernel, pid)
    assert child.parent is init
    assert child.trapframe["a0"] == 0
    assert child.state is ProcState.RUNNABLE
    assert kernel.ptable.count_active() == 2


def test_spoon_names_child(kernel, init):
    pid = kernel.syscall(init, Sys.SPOON, "worker")
    assert _proc(kernel, pid).name == "worker"


def test_file_write_then_read(kernel, init):
    fd = kernel.syscall(init, Sys.OPEN, "/f", OpenFlag.CREATE | OpenFlag.RDWR)
    assert fd >= 0
    assert kernel.syscall(init, Sys.WRITE, fd, b"hello") == 5
    assert kernel.syscall(init, Sys.CLOSE, fd) == 0
    fd = kernel.syscall(init, Sys.OPEN, "/f", OpenFlag.RDONLY)
    assert kernel.syscall(init, Sys.READ, fd, 100) == b"hello"
    assert init.trapframe["a0"] == 5
    assert kernel.syscall(init, Sys.FSTAT, fd).size == 5


def test_open_missing_file_fails(kernel, init):
    assert kernel.syscall(init, Sys.OPEN, "/missing", OpenFlag.RDONLY) == -1
    assert init.trapframe["a0"] == -1


def test_mkdir_chdir_and_relative_open(kernel, init):
    assert kernel.syscall(init, Sys.MKDIR, "/d") == 0
    assert kernel.syscall(init, Sys.CHDIR, "/d") == 0
    fd = kernel.syscall(init, Sys.OPEN, "x", OpenFlag.CREATE | OpenFlag.WRONLY)
    assert fd >= 0
    assert kernel.syscall(init, Sys.OPEN, "/d/x", OpenFlag.RDONLY) >= 0
    assert kernel.syscall(init, Sys.UNLINK, "/d") == -1


def test_link_and_unlink(kernel, init):
    fd = kernel.syscall(init, Sys.OPEN, "/a", OpenFlag.CREATE | OpenFlag.WRONLY)
    kernel.syscall(init, Sys.CLOSE, fd)
    assert kernel.syscall(init, Sys.LINK, "/a", "/b") == 0
    assert kernel.syscall(init, Sys.UNLINK, "/a") == 0
    assert kernel.syscall(init, Sys.OPEN, "/a", OpenFlag.RDONLY) == -1
    assert kernel.syscall(init, Sys.OPEN, "/b", OpenFlag.RDONLY) >= 0


def test_pipe_and_dup(kernel, init):
    rfd, wfd = kernel.syscall(init, Sys.PIPE)
    assert init.trapframe["a0"] == 0
    dfd = kernel.syscall(init, Sys.DUP, wfd)
    assert dfd not in (rfd, wfd)
    assert kernel.syscall(init, Sys.WRITE, dfd, b"abc") == 3
    assert kernel.syscall(init, Sys.READ, rfd, 10) == b"abc"


def test_bad_descriptor_fails(kernel, init):
    assert kernel.syscall(init, Sys.CLOSE, 5) == -1


def test_unknown_syscall(kernel, init):
    assert kernel.syscall(init, Sys.PRCHIST) == -1
    assert init.trapframe["a0"] == -1
    assert b"initcode: unknown sys call 26" in kernel.console.transcript
    assert kernel.syscall(init, 0) == -1


def test_trace_mask_prints_result(kernel, init):
    init.mask = 1 << Sys.GETPID
    kernel.syscall(init, Sys.GETPID)
    kernel.syscall(init, Sys.UPTIME)
    text = kernel.console.transcript
    assert f"{init.pid}: syscall getpid -> {init.pid}\n".encode() in text
    assert b"uptime" not in text


def test_sleep_wakes_after_ticks(kernel, init):
    assert kernel.syscall(init, Sys.SLEEP, 2) == 0
    assert init.state is ProcState.SLEEPING
    assert kernel.tick() == []
    assert kernel.tick() == [init]
    assert init.state is ProcState.RUNNABLE
    assert kernel.syscall(init, Sys.UPTIME) == 2
    assert kernel.uptime() == 2


def test_sleep_zero_does_not_block(kernel, init):
    assert kernel.syscall(init, Sys.SLEEP, 0) == 0
    assert init.state is ProcState.RUNNABLE


def test_sleep_when_killed_fails(kernel, init):
    kernel.ptable.set_killed(init)
    assert kernel.syscall(init, Sys.SLEEP, 1) == -1
    assert init.state is ProcState.RUNNABLE


def test_kill(kernel, init):
    pid = kernel.syscall(init, Sys.FORK)
    assert kernel.syscall(init, Sys.KILL, pid) == 0
    assert _proc(kernel, pid).killed
    assert kernel.syscall(init, Sys.KILL, 999) == -1


def test_wait_without_children_fails(kernel, init):
    assert kernel.syscall(init, Sys.WAIT) == -1


def test_exit_then_wait(kernel, init):
    pid = kernel.syscall(init, Sys.FORK)
    child = _proc(kernel, pid)
    assert kernel.syscall(child, Sys.EXIT, 3) == 0
    assert child.state is ProcState.ZOMBIE
    assert kernel.syscall(init, Sys.WAIT) == (pid, 3)
    assert init.trapframe["a0"] == pid
    assert kernel.ptable.count_active() == 1


def test_wait_blocks_until_child_exits(kernel, init):
    pid = kernel.syscall(init, Sys.FORK)
    child = _proc(kernel, pid)
    assert kernel.syscall(init, Sys.WAIT) is None
    assert init.state is ProcState.SLEEPING
    kernel.syscall(child, Sys.EXIT, 7)
    assert init.state is ProcState.RUNNABLE
    assert kernel.syscall(init, Sys.WAIT) == (pid, 7)


def test_init_may_not_exit(kernel, init):
    with pytest.raises(KernelPanic):
        kernel.syscall(init, Sys.EXIT, 0)


def test_sbrk_returns_old_size(kernel, init):
    old = init.sz
    assert kernel.syscall(init, Sys.SBRK, 8192) == old
    assert init.sz == old + 8192


def test_exec_without_loader_fails(kernel, init):
    fd = kernel.syscall(init, Sys.OPEN, "/prog", OpenFlag.CREATE | OpenFlag.WRONLY)
    kernel.syscall(init, Sys.WRITE, fd, b"\x7fELF")
    assert kernel.syscall(init, Sys.EXEC, "/prog", ["prog"]) == -1
    assert init.name == "initcode"


def test_exec_with_loader():
    loaded = []
    kernel = Kernel(make_disk(), loader=lambda p, image, argv: loaded.append((image, argv)))
    init = kernel.ptable.userinit()
    fd = kernel.syscall(init, Sys.OPEN, "/prog", OpenFlag.CREATE | OpenFlag.WRONLY)
    kernel.syscall(init, Sys.WRITE, fd, b"\x7fELFdata")
    assert kernel.syscall(init, Sys.EXEC, "/prog", ["prog", "x"]) == 2
    assert loaded == [(b"\x7fELFdata", ["prog", "x"])]
    assert init.name == "prog"
    assert kernel.syscall(init, Sys.EXEC, "/nothing", ["a"]) == -1
    assert len(loaded) == 1


def test_console_device(kernel, init):
    assert kernel.syscall(init, Sys.MKNOD, "/console", 1, 0) == 0
    fd = kernel.syscall(init, Sys.OPEN, "/console", OpenFlag.WRONLY)
    assert kernel.syscall(init, Sys.WRITE, fd, b"hi") == 2
    assert b"hi" in kernel.console.transcript


def test_prochist_prints_report(kernel, init):
    assert kernel.syscall(init, Sys.PROCHIST) == 0
    assert b"Tmr Rupts: 0, Sch Loops: 0" in kernel.console.transcript


def test_console_control_keys(kernel, init):
    kernel.console.interrupt(ord("P") - ord("@"))
    assert b"initcode" in kernel.console.transcript
    kernel.console.interrupt(ord("G") - ord("@"))
    assert b"Tmr Rupts" in kernel.console.transcript


def test_scheduler_round_records_history(kernel, init):
    assert kernel.scheduler.run_round() == [init]
    assert kernel.history.run == 1
    kernel.syscall(init, Sys.PROCHIST)
    assert f"0: 0 {init.pid} initcode 0".encode() in kernel.console.transcript