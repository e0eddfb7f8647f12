"""Inodes, directories and path names on top of the buffer cache and log."""

from __future__ import annotations

import errno
import logging
import struct
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from itertools import zip_longest

from teachos.bufcache import Buffer, BufferCache
from teachos.disk import RamDisk
from teachos.kprint import KernelPanic
from teachos.layout import (
    BPB,
    BSIZE,
    DINODE_SIZE,
    DIRENT_SIZE,
    DIRSIZ,
    FSMAGIC,
    IPB,
    MAXFILE,
    NBUF,
    NDIRECT,
    NINDIRECT,
    NINODE,
    ROOTDEV,
    ROOTINO,
    DiskInode,
    Dirent,
    InodeType,
    Superblock,
    bblock,
    iblock,
)
from teachos.log import Log

_log = logging.getLogger(__name__)
_ADDR = struct.Struct("<I")


@dataclass(eq=False)
class Inode:
    """In-memory copy of an inode, with its reference count and lock."""

    dev: int = 0
    inum: int = 0
    ref: int = 0
    valid: bool = False
    type: int = InodeType.FREE
    major: int = 0
    minor: int = 0
    nlink: int = 0
    size: int = 0
    addrs: list[int] = field(default_factory=lambda: [0] * (NDIRECT + 1))
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _owner: int | None = field(default=None, init=False, repr=False)

    @property
    def holding(self) -> bool:
        """True if the calling thread holds this inode's lock."""
        return self._owner == threading.get_ident()

    def _acquire(self) -> None:
        self._lock.acquire()
        self._owner = threading.get_ident()

    def _release(self) -> None:
        self._owner = None
        self._lock.release()


@dataclass(frozen=True)
class Stat:
    """Metadata about a file."""

    dev: int
    ino: int
    type: int
    nlink: int
    size: int


def _name_bytes(name: str | bytes) -> bytes:
    raw = name.encode() if isinstance(name, str) else bytes(name)
    return raw.split(b"\0", 1)[0][:DIRSIZ]


def namecmp(s: str | bytes, t: str | bytes) -> int:
    """Compare two directory names over at most DIRSIZ bytes, like strncmp."""
    for x, y in zip_longest(_name_bytes(s), _name_bytes(t), fillvalue=0):
        if x != y:
            return x - y
    return 0


def skipelem(path: str) -> tuple[str, str] | None:
    """Split off the first path element: (element, rest without leading slashes).

    Returns None when the path holds no element at all.
    """
    stripped = path.lstrip("/")
    if not stripped:
        return None
    elem, _, rest = stripped.partition("/")
    return elem[:DIRSIZ], rest.lstrip("/")


class FileSystem:
    """A mounted file system: block allocator, inode table, directories, paths."""

    def __init__(
        self,
        disk: RamDisk,
        dev: int = ROOTDEV,
        ninode: int = NINODE,
        nbuf: int = NBUF,
    ) -> None:
        self.dev = dev
        self.cache = BufferCache(disk, nbuf)
        with self._block(1) as buf:
            self.sb = Superblock.from_bytes(bytes(buf.data))
        if self.sb.magic != FSMAGIC:
            raise KernelPanic("invalid file system")
        self.log = Log(self.cache, dev, self.sb)
        self._itable_lock = threading.Lock()
        self._itable = [Inode() for _ in range(ninode)]

    @contextmanager
    def _block(self, blockno: int) -> Iterator[Buffer]:
        buf = self.cache.read(self.dev, blockno)
        try:
            yield buf
        finally:
            self.cache.release(buf)

    # Blocks.

    def _bzero(self, bno: int) -> None:
        with self._block(bno) as buf:
            buf.data[:] = bytes(BSIZE)
            self.log.log_write(buf)

    def _balloc(self) -> int:
        """Allocate a zeroed block; 0 if the disk is full."""
        for b in range(0, self.sb.size, BPB):
            found = None
            with self._block(bblock(b, self.sb)) as buf:
                for bi in range(min(BPB, self.sb.size - b)):
                    m = 1 << (bi % 8)
                    if not buf.data[bi // 8] & m:
                        buf.data[bi // 8] |= m
                        self.log.log_write(buf)
                        found = b + bi
                        break
            if found is not None:
                self._bzero(found)
                return found
        _log.warning("balloc: out of blocks")
        return 0

    def _bfree(self, b: int) -> None:
        with self._block(bblock(b, self.sb)) as buf:
            bi = b % BPB
            m = 1 << (bi % 8)
            if not buf.data[bi // 8] & m:
                raise KernelPanic("freeing free block")
            buf.data[bi // 8] &= ~m & 0xFF
            self.log.log_write(buf)

    # Inodes.

    @staticmethod
    def _dinode_offset(inum: int) -> int:
        return (inum % IPB) * DINODE_SIZE

    def ialloc(self, itype: int) -> Inode:
        """Allocate an on-disk inode of the given type; returns it unlocked."""
        for inum in range(1, self.sb.ninodes):
            with self._block(iblock(inum, self.sb)) as buf:
                off = self._dinode_offset(inum)
                dip = DiskInode.from_bytes(bytes(buf.data[off:off + DINODE_SIZE]))
                if dip.type != InodeType.FREE:
                    continue
                buf.data[off:off + DINODE_SIZE] = DiskInode(type=itype).pack()
                self.log.log_write(buf)
            return self.iget(inum)
        raise OSError(errno.ENOSPC, "ialloc: no inodes")

    def iupdate(self, ip: Inode) -> None:
        """Copy the in-memory inode to its on-disk slot."""
        with self._block(iblock(ip.inum, self.sb)) as buf:
            off = self._dinode_offset(ip.inum)
            dip = DiskInode(ip.type, ip.major, ip.minor, ip.nlink, ip.size, list(ip.addrs))
            buf.data[off:off + DINODE_SIZE] = dip.pack()
            self.log.log_write(buf)

    def iget(self, inum: int) -> Inode:
        """Find or make the table entry for inode ``inum``; neither locked nor read."""
        with self._itable_lock:
            empty = None
            for ip in self._itable:
                if ip.ref > 0 and ip.dev == self.dev and ip.inum == inum:
                    ip.ref += 1
                    return ip
                if empty is None and ip.ref == 0:
                    empty = ip
            if empty is None:
                raise KernelPanic("iget: no inodes")
            empty.dev = self.dev
            empty.inum = inum
            empty.ref = 1
            empty.valid = False
            return empty

    def idup(self, ip: Inode) -> Inode:
        with self._itable_lock:
            ip.ref += 1
        return ip

    def ilock(self, ip: Inode) -> None:
        """Lock the inode, reading it from disk if needed."""
        if ip is None or ip.ref < 1:
            raise KernelPanic("ilock")
        ip._acquire()
        if not ip.valid:
            with self._block(iblock(ip.inum, self.sb)) as buf:
                off = self._dinode_offset(ip.inum)
                dip = DiskInode.from_bytes(bytes(buf.data[off:off + DINODE_SIZE]))
            ip.type = dip.type
            ip.major = dip.major
            ip.minor = dip.minor
            ip.nlink = dip.nlink
            ip.size = dip.size
            ip.addrs = list(dip.addrs)
            ip.valid = True
            if ip.type == InodeType.FREE:
                raise KernelPanic("ilock: no type")

    def iunlock(self, ip: Inode) -> None:
        if ip is None or not ip.holding or ip.ref < 1:
            raise KernelPanic("iunlock")
        ip._release()

    def iput(self, ip: Inode) -> None:
        """Drop a reference; free the inode on disk if nothing refers to it."""
        self._itable_lock.acquire()
        try:
            if ip.ref == 1 and ip.valid and ip.nlink == 0:
                ip._acquire()
                self._itable_lock.release()
                try:
                    self.itrunc(ip)
                    ip.type = InodeType.FREE
                    self.iupdate(ip)
                    ip.valid = False
                finally:
                    ip._release()
                    self._itable_lock.acquire()
            ip.ref -= 1
        finally:
            self._itable_lock.release()

    def iunlockput(self, ip: Inode) -> None:
        self.iunlock(ip)
        self.iput(ip)

    # Inode content.

    def _bmap(self, ip: Inode, bn: int) -> int:
        """Disk block of the inode's block ``bn``, allocated if needed; 0 if full."""
        if bn < NDIRECT:
            addr = ip.addrs[bn]
            if addr == 0:
                addr = self._balloc()
                if addr == 0:
                    return 0
                ip.addrs[bn] = addr
            return addr
        bn -= NDIRECT
        if bn < NINDIRECT:
            ind = ip.addrs[NDIRECT]
            if ind == 0:
                ind = self._balloc()
                if ind == 0:
                    return 0
                ip.addrs[NDIRECT] = ind
            with self._block(ind) as buf:
                (addr,) = _ADDR.unpack_from(buf.data, bn * _ADDR.size)
                if addr == 0:
                    addr = self._balloc()
                    if addr:
                        _ADDR.pack_into(buf.data, bn * _ADDR.size, addr)
                        self.log.log_write(buf)
            return addr
        raise KernelPanic("bmap: out of range")

    def itrunc(self, ip: Inode) -> None:
        """Discard the inode's contents."""
        for i, addr in enumerate(ip.addrs[:NDIRECT]):
            if addr:
                self._bfree(addr)
                ip.addrs[i] = 0
        ind = ip.addrs[NDIRECT]
        if ind:
            with self._block(ind) as buf:
                entries = struct.unpack_from(f"<{NINDIRECT}I", buf.data, 0)
                for addr in entries:
                    if addr:
                        self._bfree(addr)
            self._bfree(ind)
            ip.addrs[NDIRECT] = 0
        ip.size = 0
        self.iupdate(ip)

    def stat(self, ip: Inode) -> Stat:
        return Stat(ip.dev, ip.inum, ip.type, ip.nlink, ip.size)

    def readi(self, ip: Inode, off: int, n: int) -> bytes:
        """Read up to ``n`` bytes at ``off``; stops at end of file."""
        if off < 0 or n < 0 or off > ip.size:
            return b""
        n = min(n, ip.size - off)
        out = bytearray()
        while len(out) < n:
            addr = self._bmap(ip, off // BSIZE)
            if addr == 0:
                break
            start = off % BSIZE
            m = min(n - len(out), BSIZE - start)
            with self._block(addr) as buf:
                out += buf.data[start:start + m]
            off += m
        return bytes(out)

    def writei(self, ip: Inode, off: int, data: bytes) -> int:
        """Write ``data`` at ``off``; returns how many bytes reached the file."""
        data = bytes(data)
        n = len(data)
        if off < 0 or off > ip.size:
            raise ValueError("write offset beyond end of file")
        if off + n > MAXFILE * BSIZE:
            raise ValueError("write would exceed the maximum file size")
        tot = 0
        while tot < n:
            addr = self._bmap(ip, off // BSIZE)
            if addr == 0:
                break
            start = off % BSIZE
            m = min(n - tot, BSIZE - start)
            with self._block(addr) as buf:
                buf.data[start:start + m] = data[tot:tot + m]
                self.log.log_write(buf)
            tot += m
            off += m
        if off > ip.size:
            ip.size = off
        # The loop may have added blocks to ip.addrs even if size is unchanged.
        self.iupdate(ip)
        return tot

    # Directories.

    def _entries(self, dp: Inode, start: int = 0) -> Iterator[tuple[int, Dirent]]:
        for off in range(start, dp.size, DIRENT_SIZE):
            raw = self.readi(dp, off, DIRENT_SIZE)
            if len(raw) != DIRENT_SIZE:
                raise KernelPanic("dirlookup read")
            yield off, Dirent.from_bytes(raw)

    def dirlookup(self, dp: Inode, name: str) -> tuple[Inode, int] | None:
        """Find ``name`` in directory ``dp``: (inode, byte offset of entry) or None."""
        if dp.type != InodeType.DIR:
            raise KernelPanic("dirlookup not DIR")
        for off, de in self._entries(dp):
            if de.inum and namecmp(name, de.name) == 0:
                return self.iget(de.inum), off
        return None

    def dirlink(self, dp: Inode, name: str, inum: int) -> None:
        """Add the entry (name, inum) to directory ``dp``."""
        found = self.dirlookup(dp, name)
        if found is not None:
            self.iput(found[0])
            raise FileExistsError(errno.EEXIST, "name already in directory", name)
        off = next((o for o, de in self._entries(dp) if de.inum == 0), dp.size)
        entry = Dirent(inum, name).pack()
        if self.writei(dp, off, entry) != len(entry):
            raise OSError(errno.ENOSPC, "dirlink: out of disk blocks", name)

    # Paths.

    def _namex(
        self, path: str, parent: bool, cwd: Inode | None
    ) -> tuple[Inode, str] | None:
        if path.startswith("/"):
            ip = self.iget(ROOTINO)
        else:
            if cwd is None:
                raise ValueError("a relative path needs a current directory")
            ip = self.idup(cwd)
        name = ""
        while (step := skipelem(path)) is not None:
            name, path = step
            self.ilock(ip)
            if ip.type != InodeType.DIR:
                self.iunlockput(ip)
                return None
            if parent and path == "":
                self.iunlock(ip)
                return ip, name
            found = self.dirlookup(ip, name)
            self.iunlockput(ip)
            if found is None:
                return None
            ip = found[0]
        if parent:
            self.iput(ip)
            return None
        return ip, name

    def namei(self, path: str, cwd: Inode | None = None) -> Inode | None:
        """The inode a path names, or None if it does not resolve."""
        found = self._namex(path, False, cwd)
        return None if found is None else found[0]

    def nameiparent(
        self, path: str, cwd: Inode | None = None
    ) -> tuple[Inode, str] | None:
        """The parent directory of a path and the path's final element."""
        return self._namex(path, True, cwd)