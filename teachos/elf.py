"""ELF executable parsing and the memory image exec builds from it."""

from __future__ import annotations

import struct
from collections.abc import Sequence
from dataclasses import dataclass

from teachos.layout import MAXARG

ELF_MAGIC = 0x464C457F
ELF_PROG_LOAD = 1
ELF_PROG_FLAG_EXEC = 1
ELF_PROG_FLAG_WRITE = 2
ELF_PROG_FLAG_READ = 4

PGSIZE = 4096
PTE_R = 1 << 1
PTE_W = 1 << 2
PTE_X = 1 << 3

_EHDR = struct.Struct("<I12sHHIQQQIHHHHHH")
_PHDR = struct.Struct("<IIQQQQQQ")
_PROC_NAME_LEN = 16
_U64_MAX = (1 << 64) - 1


class ElfError(Exception):
    """The executable cannot be loaded."""


@dataclass(frozen=True)
class ElfHeader:
    magic: int
    ident: bytes
    type: int
    machine: int
    version: int
    entry: int
    phoff: int
    shoff: int
    flags: int
    ehsize: int
    phentsize: int
    phnum: int
    shentsize: int
    shnum: int
    shstrndx: int

    @classmethod
    def from_bytes(cls, data: bytes) -> ElfHeader:
        if len(data) < _EHDR.size:
            raise ElfError("short ELF header")
        return cls(*_EHDR.unpack_from(data, 0))


@dataclass(frozen=True)
class ProgramHeader:
    type: int
    flags: int
    off: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    align: int

    @classmethod
    def from_bytes(cls, data: bytes) -> ProgramHeader:
        if len(data) < _PHDR.size:
            raise ElfError("short program header")
        return cls(*_PHDR.unpack_from(data, 0))


@dataclass(frozen=True)
class Segment:
    """A loadable segment: file bytes at vaddr, zero-filled up to memsz."""

    vaddr: int
    memsz: int
    data: bytes
    perm: int


@dataclass(frozen=True)
class LoadedProgram:
    entry: int
    size: int
    segments: tuple[Segment, ...]


@dataclass(frozen=True)
class UserStack:
    """The initial user stack page holding argv."""

    sp: int
    argc: int
    argv: tuple[int, ...]
    base: int
    page: bytes


def flags_to_perm(flags: int) -> int:
    """Page permissions for a segment's ELF flags."""
    perm = 0
    if flags & 0x1:
        perm = PTE_X
    if flags & 0x2:
        perm |= PTE_W
    return perm


def load_segments(image: bytes) -> LoadedProgram:
    """Check an executable and collect its loadable segments."""
    image = bytes(image)
    elf = ElfHeader.from_bytes(image)
    if elf.magic != ELF_MAGIC:
        raise ElfError("bad ELF magic")
    size = 0
    segments = []
    for i in range(elf.phnum):
        off = elf.phoff + i * _PHDR.size
        ph = ProgramHeader.from_bytes(image[off:off + _PHDR.size])
        if ph.type != ELF_PROG_LOAD:
            continue
        if ph.memsz < ph.filesz:
            raise ElfError("segment memsz smaller than filesz")
        if ph.vaddr + ph.memsz > _U64_MAX:
            raise ElfError("segment wraps the address space")
        if ph.vaddr % PGSIZE:
            raise ElfError("segment not page aligned")
        size = max(size, ph.vaddr + ph.memsz)
        if ph.off + ph.filesz > len(image):
            raise ElfError("segment data truncated")
        segments.append(Segment(
            ph.vaddr, ph.memsz, image[ph.off:ph.off + ph.filesz], flags_to_perm(ph.flags)
        ))
    return LoadedProgram(elf.entry, size, tuple(segments))


def build_user_stack(argv: Sequence[str | bytes], stack_top: int) -> UserStack:
    """Lay out argument strings and the argv array below stack_top."""
    if stack_top < PGSIZE:
        raise ValueError("stack top must leave room for a stack page")
    base = stack_top - PGSIZE
    page = bytearray(PGSIZE)
    sp = stack_top
    addrs: list[int] = []
    for arg in argv:
        if len(addrs) >= MAXARG:
            raise ElfError("too many arguments")
        raw = arg.encode() if isinstance(arg, str) else bytes(arg)
        raw = raw.split(b"\0", 1)[0] + b"\0"
        sp -= len(raw)
        sp -= sp % 16
        if sp < base:
            raise ElfError("arguments do not fit on the stack")
        page[sp - base:sp - base + len(raw)] = raw
        addrs.append(sp)
    table = struct.pack(f"<{len(addrs) + 1}Q", *addrs, 0)
    sp -= len(table)
    sp -= sp % 16
    if sp < base:
        raise ElfError("arguments do not fit on the stack")
    page[sp - base:sp - base + len(table)] = table
    return UserStack(sp, len(addrs), tuple(addrs), base, bytes(page))


def program_name(path: str) -> str:
    """The process name exec records: the last path element, truncated."""
    return path.rsplit("/", 1)[-1][:_PROC_NAME_LEN - 1]