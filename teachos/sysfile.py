"""File system calls: argument checking over the file table and file system."""

from __future__ import annotations

import errno
from dataclasses import dataclass, field

from teachos.file import FileKind, FileTable, OpenFile
from teachos.fs import FileSystem, Inode, Stat, namecmp
from teachos.kprint import KernelPanic
from teachos.layout import (
    DIRENT_SIZE,
    MAXPATH,
    NDEV,
    NOFILE,
    Dirent,
    InodeType,
    OpenFlag,
)


class SyscallError(OSError):
    """A system call failed."""


@dataclass
class FileContext:
    """A process's open file descriptors and current directory."""

    ofile: list[OpenFile | None] = field(default_factory=lambda: [None] * NOFILE)
    cwd: Inode | None = None


class FileSyscalls:
    """The file-related system calls."""

    def __init__(self, fs: FileSystem, ftable: FileTable | None = None) -> None:
        self.fs = fs
        self.ftable = ftable if ftable is not None else FileTable(fs)

    # Helpers.

    @staticmethod
    def _argfd(ctx: FileContext, fd: int) -> OpenFile:
        if not 0 <= fd < len(ctx.ofile) or ctx.ofile[fd] is None:
            raise SyscallError(errno.EBADF, "bad file descriptor")
        return ctx.ofile[fd]

    @staticmethod
    def _fdalloc(ctx: FileContext, f: OpenFile) -> int:
        for fd, slot in enumerate(ctx.ofile):
            if slot is None:
                ctx.ofile[fd] = f
                return fd
        raise SyscallError(errno.EMFILE, "too many open files")

    @staticmethod
    def _checkpath(path: str) -> None:
        if len(path.encode()) >= MAXPATH:
            raise SyscallError(errno.ENAMETOOLONG, "path too long", path)

    def _isdirempty(self, dp: Inode) -> bool:
        """True if the directory holds nothing but "." and ".."."""
        for off in range(2 * DIRENT_SIZE, dp.size, DIRENT_SIZE):
            raw = self.fs.readi(dp, off, DIRENT_SIZE)
            if len(raw) != DIRENT_SIZE:
                raise KernelPanic("isdirempty: readi")
            if Dirent.from_bytes(raw).inum:
                return False
        return True

    def _create(
        self, ctx: FileContext, path: str, itype: int, major: int, minor: int
    ) -> Inode:
        """Create ``path`` and return its inode, locked."""
        fs = self.fs
        found = fs.nameiparent(path, ctx.cwd)
        if found is None:
            raise SyscallError(errno.ENOENT, "no such directory", path)
        dp, name = found
        fs.ilock(dp)
        hit = fs.dirlookup(dp, name)
        if hit is not None:
            ip = hit[0]
            fs.iunlockput(dp)
            fs.ilock(ip)
            if itype == InodeType.FILE and ip.type in (InodeType.FILE, InodeType.DEVICE):
                return ip
            fs.iunlockput(ip)
            raise SyscallError(errno.EEXIST, "file exists", path)
        try:
            ip = fs.ialloc(itype)
        except BaseException:
            fs.iunlockput(dp)
            raise
        fs.ilock(ip)
        ip.major = major
        ip.minor = minor
        ip.nlink = 1
        fs.iupdate(ip)
        try:
            if itype == InodeType.DIR:
                # No nlink for ".": that would be a cyclic reference.
                fs.dirlink(ip, ".", ip.inum)
                fs.dirlink(ip, "..", dp.inum)
            fs.dirlink(dp, name, ip.inum)
        except OSError:
            ip.nlink = 0
            fs.iupdate(ip)
            fs.iunlockput(ip)
            fs.iunlockput(dp)
            raise
        if itype == InodeType.DIR:
            dp.nlink += 1
            fs.iupdate(dp)
        fs.iunlockput(dp)
        return ip

    # Descriptor calls.

    def dup(self, ctx: FileContext, fd: int) -> int:
        f = self._argfd(ctx, fd)
        newfd = self._fdalloc(ctx, f)
        self.ftable.dup(f)
        return newfd

    def read(self, ctx: FileContext, fd: int, n: int) -> bytes:
        return self.ftable.read(self._argfd(ctx, fd), n)

    def write(self, ctx: FileContext, fd: int, data: bytes) -> int:
        return self.ftable.write(self._argfd(ctx, fd), data)

    def close(self, ctx: FileContext, fd: int) -> None:
        f = self._argfd(ctx, fd)
        ctx.ofile[fd] = None
        self.ftable.close(f)

    def fstat(self, ctx: FileContext, fd: int) -> Stat:
        return self.ftable.stat(self._argfd(ctx, fd))

    # Path calls.

    def link(self, ctx: FileContext, old: str, new: str) -> None:
        """Make ``new`` another name for the file ``old``."""
        self._checkpath(old)
        self._checkpath(new)
        fs = self.fs
        with fs.log.transaction():
            ip = fs.namei(old, ctx.cwd)
            if ip is None:
                raise SyscallError(errno.ENOENT, "no such file", old)
            fs.ilock(ip)
            if ip.type == InodeType.DIR:
                fs.iunlockput(ip)
                raise SyscallError(errno.EPERM, "cannot link a directory", old)
            ip.nlink += 1
            fs.iupdate(ip)
            fs.iunlock(ip)
            try:
                self._link_into(ctx, new, ip)
            except BaseException:
                fs.ilock(ip)
                ip.nlink -= 1
                fs.iupdate(ip)
                fs.iunlockput(ip)
                raise
            fs.iput(ip)

    def _link_into(self, ctx: FileContext, path: str, ip: Inode) -> None:
        fs = self.fs
        found = fs.nameiparent(path, ctx.cwd)
        if found is None:
            raise SyscallError(errno.ENOENT, "no such directory", path)
        dp, name = found
        fs.ilock(dp)
        try:
            if dp.dev != ip.dev:
                raise SyscallError(errno.EXDEV, "link across devices", path)
            fs.dirlink(dp, name, ip.inum)
        finally:
            fs.iunlockput(dp)

    def unlink(self, ctx: FileContext, path: str) -> None:
        """Remove a directory entry; the file goes when its last link does."""
        self._checkpath(path)
        fs = self.fs
        with fs.log.transaction():
            found = fs.nameiparent(path, ctx.cwd)
            if found is None:
                raise SyscallError(errno.ENOENT, "no such directory", path)
            dp, name = found
            fs.ilock(dp)
            try:
                if namecmp(name, ".") == 0 or namecmp(name, "..") == 0:
                    raise SyscallError(errno.EINVAL, "cannot unlink . or ..", path)
                hit = fs.dirlookup(dp, name)
                if hit is None:
                    raise SyscallError(errno.ENOENT, "no such file", path)
                ip, off = hit
                fs.ilock(ip)
                if ip.nlink < 1:
                    raise KernelPanic("unlink: nlink < 1")
                if ip.type == InodeType.DIR and not self._isdirempty(ip):
                    fs.iunlockput(ip)
                    raise SyscallError(errno.ENOTEMPTY, "directory not empty", path)
                if fs.writei(dp, off, bytes(DIRENT_SIZE)) != DIRENT_SIZE:
                    raise KernelPanic("unlink: writei")
                if ip.type == InodeType.DIR:
                    dp.nlink -= 1
                    fs.iupdate(dp)
            except BaseException:
                fs.iunlockput(dp)
                raise
            fs.iunlockput(dp)
            ip.nlink -= 1
            fs.iupdate(ip)
            fs.iunlockput(ip)

    def open(self, ctx: FileContext, path: str, mode: int) -> int:
        """Open ``path`` and return a new file descriptor."""
        self._checkpath(path)
        mode = int(mode)
        fs = self.fs
        with fs.log.transaction():
            if mode & OpenFlag.CREATE:
                ip = self._create(ctx, path, InodeType.FILE, 0, 0)
            else:
                ip = fs.namei(path, ctx.cwd)
                if ip is None:
                    raise SyscallError(errno.ENOENT, "no such file", path)
                fs.ilock(ip)
                if ip.type == InodeType.DIR and mode != OpenFlag.RDONLY:
                    fs.iunlockput(ip)
                    raise SyscallError(errno.EISDIR, "directory opened for writing", path)
            if ip.type == InodeType.DEVICE and not 0 <= ip.major < NDEV:
                fs.iunlockput(ip)
                raise SyscallError(errno.ENODEV, "bad device number", path)
            f = None
            try:
                f = self.ftable.alloc()
                fd = self._fdalloc(ctx, f)
            except OSError:
                if f is not None:
                    self.ftable.close(f)
                fs.iunlockput(ip)
                raise
            if ip.type == InodeType.DEVICE:
                f.kind = FileKind.DEVICE
                f.major = ip.major
            else:
                f.kind = FileKind.INODE
                f.off = 0
            f.ip = ip
            f.readable = not mode & OpenFlag.WRONLY
            f.writable = bool(mode & (OpenFlag.WRONLY | OpenFlag.RDWR))
            if mode & OpenFlag.TRUNC and ip.type == InodeType.FILE:
                fs.itrunc(ip)
            fs.iunlock(ip)
        return fd

    def mkdir(self, ctx: FileContext, path: str) -> None:
        self._checkpath(path)
        with self.fs.log.transaction():
            ip = self._create(ctx, path, InodeType.DIR, 0, 0)
            self.fs.iunlockput(ip)

    def mknod(self, ctx: FileContext, path: str, major: int, minor: int) -> None:
        self._checkpath(path)
        with self.fs.log.transaction():
            ip = self._create(ctx, path, InodeType.DEVICE, major, minor)
            self.fs.iunlockput(ip)

    def chdir(self, ctx: FileContext, path: str) -> None:
        self._checkpath(path)
        fs = self.fs
        with fs.log.transaction():
            ip = fs.namei(path, ctx.cwd)
            if ip is None:
                raise SyscallError(errno.ENOENT, "no such directory", path)
            fs.ilock(ip)
            if ip.type != InodeType.DIR:
                fs.iunlockput(ip)
                raise SyscallError(errno.ENOTDIR, "not a directory", path)
            fs.iunlock(ip)
            if ctx.cwd is not None:
                fs.iput(ctx.cwd)
        ctx.cwd = ip

    def pipe(self, ctx: FileContext) -> tuple[int, int]:
        """Create a pipe: (read descriptor, write descriptor)."""
        rf, wf = self.ftable.make_pipe()
        fd0 = None
        try:
            fd0 = self._fdalloc(ctx, rf)
            fd1 = self._fdalloc(ctx, wf)
        except SyscallError:
            if fd0 is not None:
                ctx.ofile[fd0] = None
            self.ftable.close(rf)
            self.ftable.close(wf)
            raise
        return fd0, fd1