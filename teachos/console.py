"""Line-at-a-time console input with erase and kill editing."""

from __future__ import annotations

import errno
import threading
from collections.abc import Callable

INPUT_BUF_SIZE = 128
BACKSPACE = 0x100


def _ctrl(x: str) -> int:
    return ord(x) - ord("@")


_NL = ord("\n")
_CR = ord("\r")
_EOT = _ctrl("D")


class Console:
    """The console device: edits typed input and hands out whole lines."""

    def __init__(
        self,
        output: Callable[[bytes], object] | None = None,
        procdump: Callable[[], object] | None = None,
        prochistory: Callable[[], object] | None = None,
        killed: Callable[[], bool] | None = None,
    ) -> None:
        self.transcript = bytearray()
        self._out = output if output is not None else self.transcript.extend
        self._procdump = procdump
        self._prochistory = prochistory
        self._killed = killed or (lambda: False)
        self._cond = threading.Condition()
        self._buf = bytearray(INPUT_BUF_SIZE)
        self._r = 0  # read index
        self._w = 0  # write index
        self._e = 0  # edit index

    def _putc(self, c: int) -> None:
        if c == BACKSPACE:
            self._out(b"\b \b")
        else:
            self._out(bytes([c]))

    def write(self, data: bytes) -> int:
        """Send bytes to the output; returns how many were sent."""
        data = bytes(data)
        self._out(data)
        return len(data)

    def interrupt(self, c: int | str) -> None:
        """Handle one typed character."""
        if isinstance(c, str):
            c = ord(c)
        if not 0 <= c <= 0xFF:
            raise ValueError("console input must be a single byte")
        with self._cond:
            if c == _ctrl("P"):
                if self._procdump is not None:
                    self._procdump()
            elif c == _ctrl("U"):
                while self._e != self._w and self._buf[(self._e - 1) % INPUT_BUF_SIZE] != _NL:
                    self._e -= 1
                    self._putc(BACKSPACE)
            elif c in (_ctrl("H"), 0x7F):
                if self._e != self._w:
                    self._e -= 1
                    self._putc(BACKSPACE)
            elif c == _ctrl("G"):
                if self._prochistory is not None:
                    self._prochistory()
            elif c != 0 and self._e - self._r < INPUT_BUF_SIZE:
                c = _NL if c == _CR else c
                self._putc(c)
                self._buf[self._e % INPUT_BUF_SIZE] = c
                self._e += 1
                if c in (_NL, _EOT) or self._e - self._r == INPUT_BUF_SIZE:
                    self._w = self._e
                    self._cond.notify_all()

    def read(self, n: int) -> bytes:
        """Read up to ``n`` bytes, stopping after a newline; b"" means end of file."""
        out = bytearray()
        if n <= 0:
            return b""
        with self._cond:
            while len(out) < n:
                while self._r == self._w:
                    if self._killed():
                        raise InterruptedError(errno.EINTR, "process killed")
                    self._cond.wait()
                c = self._buf[self._r % INPUT_BUF_SIZE]
                self._r += 1
                if c == _EOT:
                    if out:
                        # Keep ^D so the next read returns nothing.
                        self._r -= 1
                    break
                out.append(c)
                if c == _NL:
                    break
        return bytes(out)