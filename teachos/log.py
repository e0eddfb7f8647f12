"""Write-ahead redo log that makes groups of block writes atomic."""

from __future__ import annotations

import struct
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from teachos.bufcache import Buffer, BufferCache
from teachos.kprint import KernelPanic
from teachos.layout import LOGSIZE, MAXOPBLOCKS, Superblock


class LogError(KernelPanic):
    """The log was used in a way that cannot be honoured."""


class Log:
    """Groups file system updates into transactions committed through the log."""

    def __init__(self, cache: BufferCache, dev: int, sb: Superblock) -> None:
        self._cache = cache
        self.dev = dev
        self.start = sb.logstart
        self.size = sb.nlog
        self._cond = threading.Condition()
        self._outstanding = 0
        self._committing = False
        self._blocks: list[int] = []
        self.recover()

    @property
    def pending(self) -> tuple[int, ...]:
        """Block numbers logged in the current transaction."""
        with self._cond:
            return tuple(self._blocks)

    @contextmanager
    def _block(self, blockno: int) -> Iterator[Buffer]:
        buf = self._cache.read(self.dev, blockno)
        try:
            yield buf
        finally:
            self._cache.release(buf)

    def _read_head(self) -> None:
        with self._block(self.start) as buf:
            (n,) = struct.unpack_from("<i", buf.data, 0)
            if not 0 <= n <= LOGSIZE:
                raise LogError("corrupt log header")
            self._blocks = list(struct.unpack_from(f"<{n}i", buf.data, 4))

    def _write_head(self) -> None:
        with self._block(self.start) as buf:
            n = len(self._blocks)
            struct.pack_into(f"<i{n}i", buf.data, 0, n, *self._blocks)
            self._cache.write(buf)

    def _install(self, recovering: bool) -> None:
        for tail, blockno in enumerate(self._blocks):
            with self._block(self.start + tail + 1) as lbuf, self._block(blockno) as dbuf:
                dbuf.data[:] = lbuf.data
                self._cache.write(dbuf)
                if not recovering:
                    self._cache.unpin(dbuf)

    def _write_log(self) -> None:
        for tail, blockno in enumerate(self._blocks):
            with self._block(self.start + tail + 1) as to, self._block(blockno) as src:
                to.data[:] = src.data
                self._cache.write(to)

    def _commit(self) -> None:
        if self._blocks:
            self._write_log()
            self._write_head()
            self._install(False)
            self._blocks = []
            self._write_head()

    def recover(self) -> None:
        """Install any committed transaction found in the log, then clear it."""
        self._read_head()
        self._install(True)
        self._blocks = []
        self._write_head()

    def begin_op(self) -> None:
        """Start a file system operation, waiting while the log is busy or full."""
        with self._cond:
            self._cond.wait_for(
                lambda: not self._committing
                and len(self._blocks) + (self._outstanding + 1) * MAXOPBLOCKS <= LOGSIZE
            )
            self._outstanding += 1

    def end_op(self) -> None:
        """Finish an operation; the last one out commits."""
        with self._cond:
            if self._outstanding < 1:
                raise LogError("end_op without begin_op")
            self._outstanding -= 1
            if self._committing:
                raise LogError("log.committing")
            do_commit = self._outstanding == 0
            if do_commit:
                self._committing = True
            else:
                self._cond.notify_all()
        if do_commit:
            try:
                self._commit()
            finally:
                with self._cond:
                    self._committing = False
                    self._cond.notify_all()

    @contextmanager
    def transaction(self) -> Iterator[Log]:
        """Run a block between begin_op and end_op."""
        self.begin_op()
        try:
            yield self
        finally:
            self.end_op()

    def log_write(self, buf: Buffer) -> None:
        """Record a modified buffer in the transaction and pin it in the cache."""
        with self._cond:
            n = len(self._blocks)
            if n >= LOGSIZE or n >= self.size - 1:
                raise LogError("too big a transaction")
            if self._outstanding < 1:
                raise LogError("log_write outside of trans")
            if buf.blockno not in self._blocks:
                self._cache.pin(buf)
                self._blocks.append(buf.blockno)