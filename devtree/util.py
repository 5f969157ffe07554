"""Shared helpers: escapes, data formatting, blob I/O and usage text."""

from __future__ import annotations

import string
import struct
import sys
from dataclasses import dataclass
from pathlib import Path

__all__ = [
    "FatalError",
    "OptionSpec",
    "COMMON_SHORT_OPTS",
    "COMMON_OPTIONS",
    "USAGE_TYPE_MSG",
    "join_path",
    "is_printable_string",
    "get_escape_char",
    "decode_type",
    "format_data",
    "read_blob",
    "write_blob",
    "blob_totalsize",
    "format_usage",
]

USAGE_TYPE_MSG = (
    "<type>\ts=string, i=int, u=unsigned, x=hex, r=raw\n"
    "\tOptional modifier prefix:\n"
    "\t\thh or b=byte, h=2 byte, l=4 byte (default)"
)

_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "t": "\t",
    "n": "\n",
    "v": "\v",
    "f": "\f",
    "r": "\r",
}

_OCT_DIGITS = set("01234567")
_HEX_DIGITS = set(string.hexdigits)
_ARG_PLACEHOLDER = "<arg>"


class FatalError(Exception):
    """An unrecoverable error in input or processing."""


@dataclass(frozen=True)
class OptionSpec:
    """A command-line option as shown in usage text."""

    name: str
    has_arg: bool = False
    short: str | None = None
    help: str = ""


COMMON_SHORT_OPTS = "hV"

COMMON_OPTIONS = (
    OptionSpec("help", short="h", help="Print this help and exit"),
    OptionSpec("version", short="V", help="Print version and exit"),
)


def join_path(path: str, name: str) -> str:
    """Join a directory and a file name with exactly one slash."""
    if path.endswith("/"):
        return path + name
    return f"{path}/{name}"


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def is_printable_string(data: bytes) -> bool:
    """True if data is one or more non-empty, printable, NUL-terminated strings."""
    if not data or data[-1] != 0:
        return False
    return all(
        segment and all(_isprint(b) for b in segment)
        for segment in data[:-1].split(b"\0")
    )


def _take_digits(s: str, start: int, limit: int, digits: set[str]) -> str:
    taken = []
    for ch in s[start:start + limit]:
        if ch not in digits:
            break
        taken.append(ch)
    return "".join(taken)


def get_escape_char(s: str, i: int) -> tuple[str, int]:
    """Decode the escape whose first character is at s[i].

    Returns the decoded character and the index just past the escape.
    """
    c = s[i] if i < len(s) else "\0"
    j = i + 1

    if c in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[c], j
    if c in _OCT_DIGITS:
        digits = _take_digits(s, i, 3, _OCT_DIGITS)
        return chr(int(digits, 8) & 0xFF), i + len(digits)
    if c == "x":
        digits = _take_digits(s, j, 2, _HEX_DIGITS)
        if not digits:
            raise FatalError("\\x used with no following hex digits")
        return chr(int(digits, 16)), j + len(digits)
    return c, j


def decode_type(fmt: str) -> tuple[str, int]:
    """Decode a type string such as 'hx' or 's' into (type, size).

    Size is -1 when no byte size applies. Raises ValueError on a bad format.
    """
    if not fmt:
        raise ValueError("empty type format")

    pos = 0
    qualifier = ""
    if fmt[pos] in "hlLb":
        qualifier = fmt[pos]
        pos += 1
        if pos < len(fmt) and fmt[pos] == qualifier:
            pos += 1
            if qualifier == "h":
                qualifier = "b"

    if pos >= len(fmt) or fmt[pos] not in "iuxsr":
        raise ValueError(f"invalid type format {fmt!r}")

    type_char = fmt[pos]
    pos += 1
    size = -1
    if type_char not in "sr":
        size = {"b": 1, "h": 2, "l": 4}.get(qualifier, -1)

    if pos != len(fmt):
        raise ValueError(f"invalid type format {fmt!r}")
    return type_char, size


def format_data(data: bytes) -> str:
    """Render property data as strings, cells or bytes; empty data gives ''."""
    if not data:
        return ""
    if is_printable_string(data):
        strings = data[:-1].split(b"\0")
        return " = " + ", ".join(f'"{s.decode("ascii")}"' for s in strings)
    if len(data) % 4 == 0:
        cells = struct.unpack(f">{len(data) // 4}I", data)
        return " = <" + " ".join(f"0x{cell:08x}" for cell in cells) + ">"
    return " = [" + " ".join(f"{b:02x}" for b in data) + "]"


def read_blob(filename: str) -> bytes:
    """Read a whole file, or standard input for '-'. Raises OSError."""
    if filename == "-":
        return sys.stdin.buffer.read()
    return Path(filename).read_bytes()


def blob_totalsize(blob: bytes) -> int:
    """Return the totalsize field of a device tree blob header."""
    if len(blob) < 8:
        raise ValueError("blob too short for a header")
    return struct.unpack_from(">I", blob, 4)[0]


def write_blob(filename: str, blob: bytes) -> None:
    """Write totalsize bytes of a blob to a file, or standard output for '-'."""
    payload = bytes(blob[:blob_totalsize(blob)])
    if filename == "-":
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
        return
    Path(filename).write_bytes(payload)


def format_usage(
    synopsis: str,
    short_opts: str,
    options,
    errmsg: str | None = None,
) -> str:
    """Build the usage text, with aligned help columns and an optional error."""
    options = list(options)
    arg_len = len(_ARG_PLACEHOLDER) + 1
    lines = [f"Usage: {synopsis}\n", "\n", f"Options: -[{short_opts}]\n"]

    optlen = max(
        (len(o.name) + 1 + (arg_len if o.has_arg else 0) for o in options),
        default=0,
    )

    for opt in options:
        prefix = f"  -{opt.short}, " if opt.short else "      "
        if opt.has_arg:
            pad = " " * max(optlen - len(opt.name) - arg_len, 0)
            flag = f"--{opt.name} {_ARG_PLACEHOLDER}{pad}"
        else:
            flag = "--" + opt.name.ljust(optlen)
        lines.append(f"{prefix}{flag}{opt.help}\n")

    if errmsg:
        lines.append(f"\nError: {errmsg}\n")
    return "".join(lines)