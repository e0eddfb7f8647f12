"""A block device held in memory."""

from __future__ import annotations

from teachos.kprint import KernelPanic
from teachos.layout import BSIZE, FSSIZE


class DiskError(KernelPanic):
    """Raised for an impossible disk request."""


class RamDisk:
    """A disk of fixed-size blocks kept in a bytearray."""

    def __init__(self, nblocks: int = FSSIZE) -> None:
        if nblocks <= 0:
            raise ValueError("a disk needs at least one block")
        self._image = bytearray(nblocks * BSIZE)
        self.reads = 0
        self.writes = 0

    @property
    def nblocks(self) -> int:
        return len(self._image) // BSIZE

    def _offset(self, blockno: int) -> int:
        if not 0 <= blockno < self.nblocks:
            raise DiskError("ramdiskrw: blockno too big")
        return blockno * BSIZE

    def read(self, blockno: int) -> bytes:
        off = self._offset(blockno)
        self.reads += 1
        return bytes(self._image[off:off + BSIZE])

    def write(self, blockno: int, data: bytes) -> None:
        off = self._offset(blockno)
        if len(data) != BSIZE:
            raise DiskError(f"ramdiskrw: block must be {BSIZE} bytes")
        self._image[off:off + BSIZE] = data
        self.writes += 1

    def to_bytes(self) -> bytes:
        return bytes(self._image)

    @classmethod
    def from_bytes(cls, data: bytes) -> RamDisk:
        if not data or len(data) % BSIZE:
            raise DiskError(f"disk image must be a whole number of {BSIZE}-byte blocks")
        disk = cls(len(data) // BSIZE)
        disk._image[:] = data
        return disk