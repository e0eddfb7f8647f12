"""Kernel formatted output and panics."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

_DIGITS = "0123456789abcdef"
_MASK32 = 0xFFFFFFFF
_MASK64 = (1 << 64) - 1


class KernelPanic(Exception):
    """An unrecoverable kernel error."""


def _int32(value: int) -> int:
    value &= _MASK32
    return value - (1 << 32) if value & 0x80000000 else value


def _format_int(value: int, base: int) -> str:
    xx = _int32(value)
    negative = xx < 0
    x = -xx if negative else xx
    out = []
    while True:
        out.append(_DIGITS[x % base])
        x //= base
        if x == 0:
            break
    if negative:
        out.append("-")
    return "".join(reversed(out))


def _next_arg(args: Iterator[Any]) -> Any:
    try:
        return next(args)
    except StopIteration:
        raise TypeError("not enough arguments for format string") from None


def kformat(fmt: str, *args: Any) -> str:
    """Format like the kernel printf: only %d, %x, %p, %s and %%."""
    if fmt is None:
        raise KernelPanic("null fmt")
    fmt = fmt.split("\0", 1)[0]
    values = iter(args)
    out: list[str] = []
    chars = iter(fmt)
    for c in chars:
        if c != "%":
            out.append(c)
            continue
        c = next(chars, "")
        if not c:
            break
        if c == "d":
            out.append(_format_int(_next_arg(values), 10))
        elif c == "x":
            out.append(_format_int(_next_arg(values), 16))
        elif c == "p":
            out.append("0x" + format(_next_arg(values) & _MASK64, "016x"))
        elif c == "s":
            s = _next_arg(values)
            out.append("(null)" if s is None else str(s))
        elif c == "%":
            out.append("%")
        else:
            out.append("%" + c)
    return "".join(out)


def panic(message: str) -> None:
    """Stop with a kernel panic."""
    raise KernelPanic(message)