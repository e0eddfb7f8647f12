"""Open files, pipes and the system-wide file table."""

from __future__ import annotations

import enum
import errno
import threading
from collections.abc import Callable
from dataclasses import dataclass

from teachos.fs import FileSystem, Inode, Stat
from teachos.kprint import KernelPanic
from teachos.layout import BSIZE, MAXOPBLOCKS, NDEV, NFILE

PIPESIZE = 512
CONSOLE = 1

# Write a few blocks per transaction so one write never overflows the log:
# inode, indirect block, allocation blocks and two blocks of slop.
_MAX_WRITE = ((MAXOPBLOCKS - 1 - 1 - 2) // 2) * BSIZE


class FileKind(enum.Enum):
    """What an open file refers to."""

    NONE = 0
    PIPE = 1
    INODE = 2
    DEVICE = 3


class Pipe:
    """A bounded byte channel between a writer and a reader."""

    def __init__(self, killed: Callable[[], bool] | None = None) -> None:
        self._cond = threading.Condition()
        self._data = bytearray(PIPESIZE)
        self.nread = 0
        self.nwrite = 0
        self.readopen = True
        self.writeopen = True
        self._killed = killed or (lambda: False)

    @property
    def closed(self) -> bool:
        """True once both ends have been closed."""
        return not self.readopen and not self.writeopen

    def write(self, data: bytes) -> int:
        """Write all of ``data``, waiting while the pipe is full."""
        data = bytes(data)
        i = 0
        with self._cond:
            while i < len(data):
                if not self.readopen:
                    raise BrokenPipeError(errno.EPIPE, "pipe has no reader")
                if self._killed():
                    raise InterruptedError(errno.EINTR, "process killed")
                if self.nwrite == self.nread + PIPESIZE:
                    self._cond.notify_all()
                    self._cond.wait()
                else:
                    self._data[self.nwrite % PIPESIZE] = data[i]
                    self.nwrite += 1
                    i += 1
            self._cond.notify_all()
        return i

    def read(self, n: int) -> bytes:
        """Read up to ``n`` bytes; waits for data while a writer is open."""
        with self._cond:
            while self.nread == self.nwrite and self.writeopen:
                if self._killed():
                    raise InterruptedError(errno.EINTR, "process killed")
                self._cond.wait()
            out = bytearray()
            while len(out) < n and self.nread != self.nwrite:
                out.append(self._data[self.nread % PIPESIZE])
                self.nread += 1
            self._cond.notify_all()
        return bytes(out)

    def close(self, writable: bool) -> None:
        """Close the write end if ``writable``, otherwise the read end."""
        with self._cond:
            if writable:
                self.writeopen = False
            else:
                self.readopen = False
            self._cond.notify_all()


@dataclass(eq=False)
class OpenFile:
    """An entry in the file table."""

    kind: FileKind = FileKind.NONE
    ref: int = 0
    readable: bool = False
    writable: bool = False
    pipe: Pipe | None = None
    ip: Inode | None = None
    off: int = 0
    major: int = 0


@dataclass(frozen=True)
class _Device:
    read: Callable[[int], bytes] | None
    write: Callable[[bytes], int] | None


class FileTable:
    """The system-wide table of open files and the device switch."""

    def __init__(self, fs: FileSystem | None = None, nfile: int = NFILE) -> None:
        if nfile < 1:
            raise ValueError("the file table needs at least one entry")
        self.fs = fs
        self._lock = threading.Lock()
        self._files = [OpenFile() for _ in range(nfile)]
        self._devsw: dict[int, _Device] = {}

    def _require_fs(self) -> FileSystem:
        if self.fs is None:
            raise KernelPanic("file table has no file system")
        return self.fs

    def register_device(
        self,
        major: int,
        read: Callable[[int], bytes] | None = None,
        write: Callable[[bytes], int] | None = None,
    ) -> None:
        """Connect read and write handlers to a major device number."""
        if not 0 <= major < NDEV:
            raise ValueError(f"major device number must be below {NDEV}")
        self._devsw[major] = _Device(read, write)

    def alloc(self) -> OpenFile:
        """Take a free entry with one reference."""
        with self._lock:
            for f in self._files:
                if f.ref == 0:
                    f.ref = 1
                    return f
        raise OSError(errno.ENFILE, "file table full")

    def dup(self, f: OpenFile) -> OpenFile:
        with self._lock:
            if f.ref < 1:
                raise KernelPanic("filedup")
            f.ref += 1
        return f

    def close(self, f: OpenFile) -> None:
        """Drop a reference; release the underlying object with the last one."""
        with self._lock:
            if f.ref < 1:
                raise KernelPanic("fileclose")
            f.ref -= 1
            if f.ref > 0:
                return
            kind, pipe, writable, ip = f.kind, f.pipe, f.writable, f.ip
            f.kind = FileKind.NONE
            f.pipe = None
            f.ip = None
            f.off = 0
            f.major = 0
            f.readable = f.writable = False
        if kind is FileKind.PIPE:
            pipe.close(writable)
        elif kind in (FileKind.INODE, FileKind.DEVICE):
            fs = self._require_fs()
            with fs.log.transaction():
                fs.iput(ip)

    def stat(self, f: OpenFile) -> Stat:
        if f.kind not in (FileKind.INODE, FileKind.DEVICE):
            raise OSError(errno.EINVAL, "file has no inode")
        fs = self._require_fs()
        fs.ilock(f.ip)
        try:
            return fs.stat(f.ip)
        finally:
            fs.iunlock(f.ip)

    def _device(self, f: OpenFile) -> _Device:
        dev = self._devsw.get(f.major)
        if dev is None:
            raise OSError(errno.ENODEV, f"no device with major {f.major}")
        return dev

    def read(self, f: OpenFile, n: int) -> bytes:
        if not f.readable:
            raise OSError(errno.EBADF, "file not open for reading")
        if f.kind is FileKind.PIPE:
            return f.pipe.read(n)
        if f.kind is FileKind.DEVICE:
            dev = self._device(f)
            if dev.read is None:
                raise OSError(errno.ENODEV, f"device {f.major} cannot read")
            return bytes(dev.read(n))
        if f.kind is FileKind.INODE:
            fs = self._require_fs()
            fs.ilock(f.ip)
            try:
                data = fs.readi(f.ip, f.off, n)
                f.off += len(data)
            finally:
                fs.iunlock(f.ip)
            return data
        raise KernelPanic("fileread")

    def write(self, f: OpenFile, data: bytes) -> int:
        data = bytes(data)
        if not f.writable:
            raise OSError(errno.EBADF, "file not open for writing")
        if f.kind is FileKind.PIPE:
            return f.pipe.write(data)
        if f.kind is FileKind.DEVICE:
            dev = self._device(f)
            if dev.write is None:
                raise OSError(errno.ENODEV, f"device {f.major} cannot write")
            return dev.write(data)
        if f.kind is FileKind.INODE:
            return self._write_inode(f, data)
        raise KernelPanic("filewrite")

    def _write_inode(self, f: OpenFile, data: bytes) -> int:
        fs = self._require_fs()
        n = len(data)
        i = 0
        while i < n:
            chunk = data[i:i + _MAX_WRITE]
            with fs.log.transaction():
                fs.ilock(f.ip)
                try:
                    try:
                        r = fs.writei(f.ip, f.off, chunk)
                    except ValueError:
                        r = -1
                    if r > 0:
                        f.off += r
                finally:
                    fs.iunlock(f.ip)
            if r != len(chunk):
                break
            i += r
        if i != n:
            raise OSError(errno.EIO, "short write to file")
        return n

    def make_pipe(self) -> tuple[OpenFile, OpenFile]:
        """Create a pipe: (read end, write end)."""
        rf = None
        try:
            rf = self.alloc()
            wf = self.alloc()
        except OSError:
            if rf is not None:
                self.close(rf)
            raise
        pipe = Pipe()
        rf.kind, rf.readable, rf.writable, rf.pipe = FileKind.PIPE, True, False, pipe
        wf.kind, wf.readable, wf.writable, wf.pipe = FileKind.PIPE, False, True, pipe
        return rf, wf