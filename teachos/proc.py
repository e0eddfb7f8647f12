"""Process table: creation, exit, waiting, killing, sleep and wakeup."""

from __future__ import annotations

import enum
import errno
import threading
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any

from teachos.file import FileTable
from teachos.fs import FileSystem
from teachos.kprint import KernelPanic, kformat
from teachos.layout import DEF_PRIOR, NPROC
from teachos.sysfile import FileContext

PGSIZE = 4096
MAXVA = 1 << (9 + 9 + 9 + 12 - 1)
TRAMPOLINE = MAXVA - PGSIZE
TRAPFRAME = TRAMPOLINE - PGSIZE
NAME_LEN = 16


class ProcState(enum.IntEnum):
    """Life-cycle states of a process slot."""

    UNUSED = 0
    USED = 1
    SLEEPING = 2
    RUNNABLE = 3
    RUNNING = 4
    ZOMBIE = 5


_STATE_LABELS = {
    ProcState.UNUSED: "unused",
    ProcState.USED: "used",
    ProcState.SLEEPING: "sleep ",
    ProcState.RUNNABLE: "runble",
    ProcState.RUNNING: "run   ",
    ProcState.ZOMBIE: "zombie",
}


def _proc_name(name: str) -> str:
    return name.split("\0", 1)[0][:NAME_LEN - 1]


@dataclass(eq=False)
class Process:
    """One slot of the process table."""

    state: ProcState = ProcState.UNUSED
    pid: int = 0
    name: str = ""
    priority: int = 0
    mask: int = 0
    parent: Process | None = None
    sz: int = 0
    killed: bool = False
    xstate: int = 0
    chan: Any = None
    files: FileContext = field(default_factory=FileContext)
    trapframe: dict[str, int] = field(default_factory=dict)
    interval: int = 0
    handler: int = 0
    ticks: int = 0
    regs: dict[str, int] | None = None

    def _reset(self) -> None:
        self.state = ProcState.UNUSED
        self.pid = 0
        self.name = ""
        self.priority = 0
        self.parent = None
        self.sz = 0
        self.killed = False
        self.xstate = 0
        self.chan = None
        self.files = FileContext()
        self.trapframe = {}
        self.interval = 0
        self.handler = 0
        self.ticks = 0
        self.regs = None


class ProcessTable:
    """A fixed table of process slots and the operations on them."""

    def __init__(
        self,
        fs: FileSystem | None = None,
        ftable: FileTable | None = None,
        nproc: int = NPROC,
    ) -> None:
        if nproc < 1:
            raise ValueError("the process table needs at least one slot")
        self.fs = fs
        self.ftable = ftable
        self._lock = threading.RLock()
        self._procs = [Process() for _ in range(nproc)]
        self._nextpid = 1
        self.initproc: Process | None = None

    @property
    def procs(self) -> tuple[Process, ...]:
        """Every slot, in table order."""
        return tuple(self._procs)

    def _allocpid(self) -> int:
        pid = self._nextpid
        self._nextpid += 1
        return pid

    def _allocproc(self) -> Process:
        with self._lock:
            for p in self._procs:
                if p.state is ProcState.UNUSED:
                    p._reset()
                    p.pid = self._allocpid()
                    p.state = ProcState.USED
                    p.priority = DEF_PRIOR
                    return p
        raise OSError(errno.EAGAIN, "process table full")

    def _freeproc(self, p: Process) -> None:
        p._reset()

    def userinit(self) -> Process:
        """Create the first process, runnable in the root directory."""
        p = self._allocproc()
        self.initproc = p
        p.sz = PGSIZE
        p.trapframe = {"epc": 0, "sp": PGSIZE}
        p.name = "initcode"
        if self.fs is not None:
            p.files.cwd = self.fs.namei("/")
        p.state = ProcState.RUNNABLE
        return p

    def _copy(self, parent: Process, name: str) -> Process:
        np = self._allocproc()
        np.mask = parent.mask
        np.sz = parent.sz
        np.trapframe = dict(parent.trapframe)
        np.trapframe["a0"] = 0
        try:
            for fd, f in enumerate(parent.files.ofile):
                if f is not None:
                    if self.ftable is None:
                        raise KernelPanic("process has open files but no file table")
                    np.files.ofile[fd] = self.ftable.dup(f)
        except BaseException:
            self._freeproc(np)
            raise
        if parent.files.cwd is not None and self.fs is not None:
            np.files.cwd = self.fs.idup(parent.files.cwd)
        np.name = _proc_name(name)
        with self._lock:
            np.parent = parent
            np.state = ProcState.RUNNABLE
        return np

    def fork(self, parent: Process) -> Process:
        """Create a runnable copy of ``parent``; the child sees a0 == 0."""
        return self._copy(parent, parent.name)

    def spoon(self, parent: Process, name: str) -> Process:
        """Like fork, but the child gets the given name."""
        return self._copy(parent, name)

    def _reparent(self, p: Process) -> None:
        for pp in self._procs:
            if pp.parent is p:
                pp.parent = self.initproc
                self.wakeup(self.initproc)

    def exit(self, p: Process, status: int) -> None:
        """Close the process's files and leave it a zombie for its parent."""
        if p is self.initproc:
            raise KernelPanic("init exiting")
        for fd, f in enumerate(p.files.ofile):
            if f is not None:
                if self.ftable is None:
                    raise KernelPanic("process has open files but no file table")
                self.ftable.close(f)
                p.files.ofile[fd] = None
        if p.files.cwd is not None and self.fs is not None:
            with self.fs.log.transaction():
                self.fs.iput(p.files.cwd)
        p.files.cwd = None
        with self._lock:
            self._reparent(p)
            if p.parent is not None:
                self.wakeup(p.parent)
            p.xstate = status
            p.state = ProcState.ZOMBIE

    def wait(self, p: Process) -> tuple[int, int] | None:
        """Reap an exited child: (pid, exit status).

        Returns None when children exist but none has exited; ``p`` is then
        put to sleep until one does.
        """
        with self._lock:
            havekids = False
            for pp in self._procs:
                if pp.parent is not p:
                    continue
                havekids = True
                if pp.state is ProcState.ZOMBIE:
                    result = (pp.pid, pp.xstate)
                    self._freeproc(pp)
                    return result
            if not havekids:
                raise ChildProcessError(errno.ECHILD, "no children")
            if p.killed:
                raise InterruptedError(errno.EINTR, "process killed")
            self.sleep(p, p)
            return None

    def kill(self, pid: int) -> None:
        """Mark the process with ``pid`` killed, waking it if asleep."""
        with self._lock:
            for p in self._procs:
                if p.state is not ProcState.UNUSED and p.pid == pid:
                    p.killed = True
                    if p.state is ProcState.SLEEPING:
                        p.state = ProcState.RUNNABLE
                    return
        raise ProcessLookupError(errno.ESRCH, "no such process", pid)

    def set_killed(self, p: Process) -> None:
        with self._lock:
            p.killed = True

    def killed(self, p: Process) -> bool:
        with self._lock:
            return p.killed

    def sleep(self, p: Process, chan: Hashable) -> None:
        """Put ``p`` to sleep on ``chan``."""
        with self._lock:
            p.chan = chan
            p.state = ProcState.SLEEPING

    def wakeup(self, chan: Any) -> list[Process]:
        """Make every process sleeping on ``chan`` runnable; returns them."""
        woken = []
        with self._lock:
            for p in self._procs:
                if p.state is ProcState.SLEEPING and p.chan == chan:
                    p.state = ProcState.RUNNABLE
                    p.chan = None
                    woken.append(p)
        return woken

    def growproc(self, p: Process, n: int) -> int:
        """Grow or shrink user memory by ``n`` bytes; returns the old size."""
        old = p.sz
        if n > 0:
            if old + n > TRAPFRAME:
                raise MemoryError("out of user address space")
            p.sz = old + n
        elif n < 0 and old + n >= 0:
            p.sz = old + n
        return old

    def procdump(self) -> str:
        """A listing of every process in use: pid, priority, state, name."""
        lines = ["\n"]
        for p in self._procs:
            if p.state is ProcState.UNUSED:
                continue
            label = _STATE_LABELS.get(p.state, "???")
            lines.append(kformat("%d %d %s %s", p.pid, p.priority, label, p.name) + "\n")
        return "".join(lines)

    def count_active(self) -> int:
        """Number of slots not UNUSED."""
        return sum(p.state is not ProcState.UNUSED for p in self._procs)