"""Buffer cache of disk blocks with least-recently-used recycling."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from teachos.kprint import KernelPanic
from teachos.layout import BSIZE, NBUF


@dataclass(eq=False)
class Buffer:
    """A cached copy of one disk block."""

    dev: int = 0
    blockno: int = 0
    valid: bool = False
    refcnt: int = 0
    data: bytearray = field(default_factory=lambda: bytearray(BSIZE), repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _owner: int | None = field(default=None, init=False, repr=False)

    @property
    def holding(self) -> bool:
        """True if the calling thread holds this buffer."""
        return self._owner == threading.get_ident()

    def _acquire(self) -> None:
        self._lock.acquire()
        self._owner = threading.get_ident()

    def _release(self) -> None:
        self._owner = None
        self._lock.release()


class BufferCache:
    """A fixed pool of buffers in front of a block device."""

    def __init__(self, disk, nbuf: int = NBUF) -> None:
        if nbuf < 1:
            raise ValueError("the cache needs at least one buffer")
        self._disk = disk
        self._lock = threading.Lock()
        # Most recently used first.
        self._lru = [Buffer() for _ in range(nbuf)]

    def _get(self, dev: int, blockno: int) -> Buffer:
        with self._lock:
            buf = next(
                (b for b in self._lru if b.dev == dev and b.blockno == blockno), None
            )
            if buf is not None:
                buf.refcnt += 1
            else:
                buf = next((b for b in reversed(self._lru) if b.refcnt == 0), None)
                if buf is None:
                    raise KernelPanic("bget: no buffers")
                buf.dev, buf.blockno, buf.valid, buf.refcnt = dev, blockno, False, 1
        buf._acquire()
        return buf

    def read(self, dev: int, blockno: int) -> Buffer:
        """Return the block's buffer, locked by the caller."""
        buf = self._get(dev, blockno)
        if not buf.valid:
            try:
                buf.data[:] = self._disk.read(blockno)
            except BaseException:
                self.release(buf)
                raise
            buf.valid = True
        return buf

    def write(self, buf: Buffer) -> None:
        """Write the buffer's contents to disk; the caller must hold it."""
        if not buf.holding:
            raise KernelPanic("bwrite")
        self._disk.write(buf.blockno, bytes(buf.data))

    def release(self, buf: Buffer) -> None:
        """Release a held buffer and mark it most recently used."""
        if not buf.holding:
            raise KernelPanic("brelse")
        buf._release()
        with self._lock:
            buf.refcnt -= 1
            if buf.refcnt == 0:
                self._lru.remove(buf)
                self._lru.insert(0, buf)

    def pin(self, buf: Buffer) -> None:
        with self._lock:
            buf.refcnt += 1

    def unpin(self, buf: Buffer) -> None:
        with self._lock:
            buf.refcnt -= 1

    def lru_order(self) -> list[tuple[int, int]]:
        """(dev, blockno) of every buffer, most recently used first."""
        with self._lock:
            return [(b.dev, b.blockno) for b in self._lru]