"""Process scheduling policies and the history of scheduled processes."""

from __future__ import annotations

import enum
import threading
from collections.abc import Callable
from dataclasses import dataclass

from teachos.kprint import kformat
from teachos.layout import HIST_SIZE, SCHED_PRIOR, SCHED_RR
from teachos.proc import Process, ProcessTable, ProcState


class SchedPolicy(enum.IntEnum):
    """How the scheduler picks the next process."""

    RR = SCHED_RR
    PRIOR = SCHED_PRIOR


@dataclass
class HistoryEntry:
    """One process switched to by the scheduler."""

    pid: int = 0
    priority: int = 0
    cpuid: int = 0
    name: str = ""


class History:
    """A circular record of scheduled processes and switch counters."""

    def __init__(self, size: int = HIST_SIZE) -> None:
        if size < 1:
            raise ValueError("the history needs at least one slot")
        self._size = size
        self._entries = [HistoryEntry() for _ in range(size)]
        self._next = 0
        self._prev = 0
        self._start = 0
        self._lock = threading.Lock()
        self.new = 0  # switches to a process other than the last one recorded
        self.old = 0  # switches back to the last recorded process
        self.run = 0  # switches to any runnable process
        self.sch = 0  # scheduler rounds
        self.sh = 0  # switches to the shell

    def record(self, p: Process, cpuid: int) -> None:
        """Note that ``p`` was switched to on ``cpuid``."""
        with self._lock:
            self.run += 1
            if p.name == "sh":
                self.sh += 1
                return
            if self._entries[self._prev].pid == p.pid:
                self.old += 1
                return
            self._entries[self._next] = HistoryEntry(p.pid, p.priority, cpuid, p.name)
            self._prev = self._next
            self._next = (self._next + 1) % self._size
            self.new += 1
            if self.new > self._size:
                self._start = self.new % self._size

    def report(self, ticks: int) -> str:
        """Counters followed by the recorded processes, oldest first."""
        with self._lock:
            lines = [
                kformat(
                    "Tmr Rupts: %d, Sch Loops: %d, Swtch Run: %d, Swtch New: %d, "
                    "Switch Old: %d, Swtch sh: %d\n",
                    ticks, self.sch, self.run, self.new, self.old, self.sh,
                )
            ]
            for i in range(min(self.new, self._size)):
                e = self._entries[(self._start + i) % self._size]
                lines.append(kformat("%d: %d %d %s %d\n", i, e.cpuid, e.pid, e.name, e.priority))
        return "".join(lines)


class Scheduler:
    """Chooses runnable processes from a process table and runs them."""

    def __init__(
        self,
        ptable: ProcessTable,
        policy: SchedPolicy = SchedPolicy.PRIOR,
        history: History | None = None,
        runner: Callable[[Process], object] | None = None,
    ) -> None:
        self.ptable = ptable
        self.policy = SchedPolicy(policy)
        self.history = history if history is not None else History()
        self._runner = runner

    def select(self) -> Process | None:
        """The process the policy would run next, or None."""
        runnable = [p for p in self.ptable.procs if p.state is ProcState.RUNNABLE]
        if self.policy is SchedPolicy.RR:
            return runnable[0] if runnable else None
        # Priorities below -1 never beat the initial threshold.
        candidates = [p for p in runnable if p.priority >= -1]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.priority)

    def _dispatch(self, p: Process, cpuid: int) -> None:
        self.history.record(p, cpuid)
        p.state = ProcState.RUNNING
        if self._runner is not None:
            self._runner(p)
        if p.state is ProcState.RUNNING:
            p.state = ProcState.RUNNABLE

    def run_round(self, cpuid: int = 0) -> list[Process]:
        """One pass of the scheduler loop; returns the processes that ran."""
        self.history.sch += 1
        ran: list[Process] = []
        if self.policy is SchedPolicy.RR:
            for p in self.ptable.procs:
                if p.state is ProcState.RUNNABLE:
                    self._dispatch(p, cpuid)
                    ran.append(p)
        else:
            p = self.select()
            if p is not None:
                self._dispatch(p, cpuid)
                ran.append(p)
        return ran