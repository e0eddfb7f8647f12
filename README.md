# teachos

`teachos` models the core of a small teaching kernel in plain Python. It
holds the on-disk file system layout, a block device kept in memory, an LRU
buffer cache, a write-ahead redo log, inodes and directories, the open-file
table with pipes and devices, the file system calls, a line-editing console,
a process table, and a round-robin or priority scheduler that keeps a history
of what it ran.

It is meant for studying how those pieces fit together and for trying
changes to them. It has no dependencies outside the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

| Module | What it provides |
| --- | --- |
| `teachos.layout` | Limits and format constants, `Superblock`, `DiskInode`, `Dirent` (each with `pack` and `from_bytes`), `InodeType`, `OpenFlag`, `iblock`, `bblock` |
| `teachos.disk` | `RamDisk` with `read`, `write`, `to_bytes`, `from_bytes`; `DiskError` |
| `teachos.kprint` | `kformat` (understands `%d %x %p %s %%`), `panic`, `KernelPanic` |
| `teachos.bufcache` | `Buffer` and `BufferCache` with `read`, `write`, `release`, `pin`, `unpin`, `lru_order` |
| `teachos.elf` | `ElfHeader`, `ProgramHeader`, `load_segments`, `build_user_stack`, `program_name`, `flags_to_perm`, `ElfError` |
| `teachos.log` | `Log` with `begin_op`, `end_op`, the `transaction()` context manager, `log_write`, `recover`; `LogError` |
| `teachos.fs` | `FileSystem` (inode table, `readi`/`writei`, `dirlookup`/`dirlink`, `namei`/`nameiparent`), `Inode`, `Stat`, `skipelem`, `namecmp` |
| `teachos.file` | `FileTable` (`alloc`, `dup`, `close`, `stat`, `read`, `write`, `make_pipe`, `register_device`), `OpenFile`, `FileKind`, `Pipe` |
| `teachos.sysfile` | `FileSyscalls`: `open`, `read`, `write`, `close`, `dup`, `fstat`, `link`, `unlink`, `mkdir`, `mknod`, `chdir`, `pipe`; `FileContext`, `SyscallError` |
| `teachos.console` | `Console` with `interrupt`, `read`, `write` |
| `teachos.proc` | `ProcessTable`: `userinit`, `fork`, `spoon`, `exit`, `wait`, `kill`, `killed`, `set_killed`, `sleep`, `wakeup`, `growproc`, `procdump`, `count_active`; `Process`, `ProcState` |
| `teachos.scheduler` | `Scheduler` (`select`, `run_round`) with `SchedPolicy.RR` or `SchedPolicy.PRIOR`; `History` (`record`, `report`) |
| `teachos.syscall` | `Kernel` with `syscall`, `tick`, `uptime`; `Sys` call numbers |

## Examples

Pipes need no file system:

```python
from teachos.file import FileTable

ft = FileTable()
r, w = ft.make_pipe()
ft.write(w, b"hello")
ft.read(r, 5)          # b"hello"
```

The console edits input a line at a time; `^H` or DEL erases, `^U` kills
the line, `^D` marks end of file, and `\r` becomes `\n`:

```python
from teachos.console import Console

con = Console()
for ch in "hi\x08o\n":
    con.interrupt(ch)
con.read(10)           # b"ho\n"
bytes(con.transcript)  # b"hi\b \bo\n"
```

Kernel-style formatting treats `%d` and `%x` as 32-bit signed values:

```python
from teachos.kprint import kformat

kformat("%d %x %p", -5, 255, 16)   # "-5 ff 0x0000000000000010"
```

## Behaviour worth knowing

* Blocks are 1024 bytes. An inode maps 12 direct blocks plus one indirect
  block, so a file holds at most 268 blocks.
* Directory names hold at most 14 bytes; longer path elements are cut to
  that length when they are looked up.
* A single operation may log at most 10 blocks and the log holds 30.
  File system changes go through `Log.transaction()` or `begin_op` and
  `end_op`; the last operation to end commits.
* Conditions that would halt a kernel raise `KernelPanic`; `LogError` and
  `DiskError` are kinds of it. Ordinary failures raise `OSError` or a
  subclass: `SyscallError` from the file calls, and `FileExistsError`,
  `BrokenPipeError`, `InterruptedError`, `ChildProcessError` or
  `ProcessLookupError` where those fit. Bad executables raise `ElfError`.
* `Kernel.syscall` stores the result in `p.trapframe["a0"]` and returns the
  call's value, `-1` when the call raised `OSError` or `MemoryError`, or
  `None` when the process was put to sleep and should repeat the call once
  woken. An unknown call number prints a message and returns `-1`. If bit
  *n* of `p.mask` is set, call *n* is traced to the console output.
* `Kernel.tick` advances the clock and wakes processes whose `SLEEP` has
  run out. The console is registered as device major 1.
* The priority scheduler runs the runnable process with the highest
  priority; among equals the one earliest in the process table wins, and
  processes with a priority below -1 are never chosen. The round-robin
  policy runs every runnable process once per round. Switches to a process
  named `sh` are counted but not recorded in the history.

## What it does not do

* There is no tool that formats a disk. `FileSystem` expects a `RamDisk`
  whose block 1 holds a `Superblock` with the right magic number, an empty
  log header at `logstart`, a root directory in inode 1 and a block bitmap;
  build such an image with the classes in `teachos.layout`.
* Programs are not executed. The `EXEC` call reads the file and hands its
  bytes and arguments to a `loader` callback given to `Kernel`; running a
  process means calling the `runner` callback given to `Scheduler`. There
  are no page tables, traps or hardware devices.
* There is no command-line program.