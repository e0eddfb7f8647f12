"""System call dispatch and the process-related system calls."""

from __future__ import annotations

import enum
import errno
import threading
from collections.abc import Callable, Sequence
from typing import Any

from teachos.console import Console
from teachos.disk import RamDisk
from teachos.file import CONSOLE, FileTable
from teachos.fs import FileSystem
from teachos.kprint import kformat
from teachos.layout import MAXARG, MAXPATH
from teachos.proc import NAME_LEN, Process, ProcessTable
from teachos.scheduler import History, SchedPolicy, Scheduler
from teachos.sysfile import FileSyscalls, SyscallError


class Sys(enum.IntEnum):
    """System call numbers."""

    FORK = 1
    EXIT = 2
    WAIT = 3
    PIPE = 4
    READ = 5
    KILL = 6
    EXEC = 7
    FSTAT = 8
    CHDIR = 9
    DUP = 10
    GETPID = 11
    SBRK = 12
    SLEEP = 13
    UPTIME = 14
    OPEN = 15
    WRITE = 16
    MKNOD = 17
    UNLINK = 18
    LINK = 19
    MKDIR = 20
    CLOSE = 21
    PROCHIST = 22
    SETPRIORITY = 23
    GETPRIORITY = 24
    SPOON = 25
    PRCHIST = 26


Loader = Callable[[Process, bytes, list], object]
_Outcome = tuple[int, Any]


def _ok(value: int) -> _Outcome:
    return value, value


class Kernel:
    """The kernel's tables wired together behind a system call entry point."""

    def __init__(
        self,
        disk: RamDisk,
        *,
        policy: SchedPolicy = SchedPolicy.PRIOR,
        output: Callable[[bytes], object] | None = None,
        loader: Loader | None = None,
        runner: Callable[[Process], object] | None = None,
    ) -> None:
        self.fs = FileSystem(disk)
        self.ftable = FileTable(self.fs)
        self.files = FileSyscalls(self.fs, self.ftable)
        self.ptable = ProcessTable(self.fs, self.ftable)
        self.history = History()
        self.scheduler = Scheduler(self.ptable, policy, self.history, runner)
        self.ticks = 0
        self._ticks_lock = threading.Lock()
        self._loader = loader
        self.console = Console(
            output=output,
            procdump=lambda: self._print(self.ptable.procdump()),
            prochistory=lambda: self._print(self.history.report(self.ticks)),
        )
        self.ftable.register_device(CONSOLE, self.console.read, self.console.write)
        self._handlers: dict[Sys, Callable[..., _Outcome | None]] = {
            Sys.FORK: self._fork,
            Sys.EXIT: self._exit,
            Sys.WAIT: self._wait,
            Sys.PIPE: self._pipe,
            Sys.READ: self._read,
            Sys.KILL: self._kill,
            Sys.EXEC: self._exec,
            Sys.FSTAT: self._fstat,
            Sys.CHDIR: self._chdir,
            Sys.DUP: self._dup,
            Sys.GETPID: self._getpid,
            Sys.SBRK: self._sbrk,
            Sys.SLEEP: self._sleep,
            Sys.UPTIME: self._uptime,
            Sys.OPEN: self._open,
            Sys.WRITE: self._write,
            Sys.MKNOD: self._mknod,
            Sys.UNLINK: self._unlink,
            Sys.LINK: self._link,
            Sys.MKDIR: self._mkdir,
            Sys.CLOSE: self._close,
            Sys.PROCHIST: self._prochist,
            Sys.SETPRIORITY: self._setpriority,
            Sys.GETPRIORITY: self._getpriority,
            Sys.SPOON: self._spoon,
        }

    def _print(self, text: str) -> None:
        self.console.write(text.encode())

    # Entry point.

    def syscall(self, p: Process, num: int, *args: Any) -> Any:
        """Run system call ``num`` for ``p``.

        The register result goes to ``p.trapframe["a0"]``; the return value is
        what the call produced, -1 on failure, or None when ``p`` had to sleep
        and should repeat the call once woken.
        """
        try:
            sys_num = Sys(num)
            handler = self._handlers[sys_num]
        except (ValueError, KeyError):
            self._print(kformat("%d %s: unknown sys call %d\n", p.pid, p.name, num))
            p.trapframe["a0"] = -1
            return -1
        try:
            outcome = handler(p, *args)
        except (OSError, MemoryError):
            outcome = (-1, -1)
        if outcome is None:
            return None
        a0, value = outcome
        p.trapframe["a0"] = a0
        if (1 << sys_num) & p.mask:
            self._print(kformat("%d: syscall %s -> %d\n", p.pid, sys_num.name.lower(), a0))
        return value

    def tick(self) -> list[Process]:
        """Advance the clock one tick; returns sleepers whose time is up."""
        with self._ticks_lock:
            self.ticks += 1
            now = self.ticks
        return self.ptable.wakeup(("ticks", now))

    def uptime(self) -> int:
        with self._ticks_lock:
            return self.ticks

    # Process calls.

    def _fork(self, p: Process) -> _Outcome:
        return _ok(self.ptable.fork(p).pid)

    def _spoon(self, p: Process, name: str) -> _Outcome:
        return _ok(self.ptable.spoon(p, name).pid)

    def _exit(self, p: Process, status: int) -> _Outcome:
        self.ptable.exit(p, status)
        return _ok(0)

    def _wait(self, p: Process) -> _Outcome | None:
        reaped = self.ptable.wait(p)
        if reaped is None:
            return None
        return reaped[0], reaped

    def _kill(self, p: Process, pid: int) -> _Outcome:
        self.ptable.kill(pid)
        return _ok(0)

    def _getpid(self, p: Process) -> _Outcome:
        return _ok(p.pid)

    def _sbrk(self, p: Process, n: int) -> _Outcome:
        return _ok(self.ptable.growproc(p, n))

    def _sleep(self, p: Process, n: int) -> _Outcome:
        n = max(n, 0)
        if n == 0:
            return _ok(0)
        if self.ptable.killed(p):
            raise InterruptedError(errno.EINTR, "process killed")
        self.ptable.sleep(p, ("ticks", self.uptime() + n))
        return _ok(0)

    def _uptime(self, p: Process) -> _Outcome:
        return _ok(self.uptime())

    def _prochist(self, p: Process) -> _Outcome:
        self._print(self.history.report(self.uptime()))
        return _ok(0)

    def _setpriority(self, p: Process, priority: int) -> _Outcome:
        p.priority = priority
        return _ok(0)

    def _getpriority(self, p: Process) -> _Outcome:
        return _ok(p.priority)

    def _exec(self, p: Process, path: str, argv: Sequence[str] = ()) -> _Outcome:
        argv = list(argv)
        if len(path.encode()) >= MAXPATH:
            raise SyscallError(errno.ENAMETOOLONG, "path too long", path)
        if len(argv) >= MAXARG:
            raise SyscallError(errno.E2BIG, "too many arguments", path)
        fs = self.fs
        with fs.log.transaction():
            ip = fs.namei(path, p.files.cwd)
            if ip is None:
                raise SyscallError(errno.ENOENT, "no such file", path)
            fs.ilock(ip)
            try:
                image = fs.readi(ip, 0, ip.size)
            finally:
                fs.iunlockput(ip)
        if self._loader is None:
            raise SyscallError(errno.ENOEXEC, "no program loader", path)
        self._loader(p, image, argv)
        p.name = path.rsplit("/", 1)[-1][:NAME_LEN - 1]
        return _ok(len(argv))

    # File calls.

    def _pipe(self, p: Process) -> _Outcome:
        return 0, self.files.pipe(p.files)

    def _read(self, p: Process, fd: int, n: int) -> _Outcome:
        data = self.files.read(p.files, fd, n)
        return len(data), data

    def _write(self, p: Process, fd: int, data: bytes) -> _Outcome:
        return _ok(self.files.write(p.files, fd, data))

    def _fstat(self, p: Process, fd: int) -> _Outcome:
        return 0, self.files.fstat(p.files, fd)

    def _chdir(self, p: Process, path: str) -> _Outcome:
        self.files.chdir(p.files, path)
        return _ok(0)

    def _dup(self, p: Process, fd: int) -> _Outcome:
        return _ok(self.files.dup(p.files, fd))

    def _open(self, p: Process, path: str, mode: int) -> _Outcome:
        return _ok(self.files.open(p.files, path, mode))

    def _mknod(self, p: Process, path: str, major: int, minor: int) -> _Outcome:
        self.files.mknod(p.files, path, major, minor)
        return _ok(0)

    def _unlink(self, p: Process, path: str) -> _Outcome:
        self.files.unlink(p.files, path)
        return _ok(0)

    def _link(self, p: Process, old: str, new: str) -> _Outcome:
        self.files.link(p.files, old, new)
        return _ok(0)

    def _mkdir(self, p: Process, path: str) -> _Outcome:
        self.files.mkdir(p.files, path)
        return _ok(0)

    def _close(self, p: Process, fd: int) -> _Outcome:
        self.files.close(p.files, fd)
        return _ok(0)