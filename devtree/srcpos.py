"""Source file tracking: include search paths, nesting and positions."""

from __future__ import annotations

import copy as _copy
import sys
from dataclasses import dataclass, field, replace
from typing import IO, Iterator

from devtree.util import FatalError, join_path

__all__ = [
    "MAX_SRCFILE_DEPTH",
    "SourceFile",
    "SourcePosition",
    "SourceTracker",
]

MAX_SRCFILE_DEPTH = 200


@dataclass
class SourceFile:
    """State of one source file being read."""

    name: str | None
    dirname: str | None = None
    lineno: int = 1
    colno: int = 1
    prev: SourceFile | None = field(default=None, repr=False)
    stream: IO | None = field(default=None, repr=False, compare=False)
    owns_stream: bool = field(default=True, repr=False, compare=False)


@dataclass
class SourcePosition:
    """A span in a source file; spans may be chained through ``next``."""

    first_line: int = 0
    first_column: int = 0
    last_line: int = 0
    last_column: int = 0
    file: SourceFile | None = None
    next: SourcePosition | None = None

    def __iter__(self) -> Iterator[SourcePosition]:
        pos: SourcePosition | None = self
        while pos is not None:
            yield pos
            pos = pos.next

    def copy(self) -> SourcePosition:
        """Return an unchained copy holding a snapshot of the file state."""
        if self.next is not None:
            raise ValueError("cannot copy a chained source position")
        snapshot = _copy.copy(self.file) if self.file is not None else None
        return replace(self, file=snapshot)

    def extend(self, newtail: SourcePosition | None) -> SourcePosition:
        """Append ``newtail`` to the end of this chain and return the head."""
        *_, last = self
        last.next = newtail
        return self

    def describe(self) -> str:
        """Format as ``file:line.col``, ``file:line.col-col`` or a full range."""
        fname = "<no-file>"
        if self.file is not None and self.file.name:
            fname = self.file.name
        if self.first_line != self.last_line:
            return (f"{fname}:{self.first_line}.{self.first_column}"
                    f"-{self.last_line}.{self.last_column}")
        if self.first_column != self.last_column:
            return (f"{fname}:{self.first_line}.{self.first_column}"
                    f"-{self.last_column}")
        return f"{fname}:{self.first_line}.{self.first_column}"

    def format_error(self, prefix: str, message: str) -> str:
        """Build a diagnostic line for this position."""
        return f"{prefix}: {self.describe()} {message}"


def _get_dirname(path: str) -> str | None:
    slash = path.rfind("/")
    if slash < 0:
        return None
    return path[:slash]


class SourceTracker:
    """Opens source files along a search path and tracks the include stack."""

    def __init__(self) -> None:
        self.search_paths: list[str] = []
        self.current: SourceFile | None = None
        self.depfile: IO | None = None
        self._depth = 0
        self._initial_path: str | None = None
        self._initial_pathlen = 0
        self._initial_cpp = True

    def add_search_path(self, dirname: str) -> None:
        """Add a directory to the end of the search path."""
        self.search_paths.append(dirname)

    @staticmethod
    def _try_open(dirname: str | None, fname: str):
        if dirname is None or fname.startswith("/"):
            fullname = fname
        else:
            fullname = join_path(dirname, fname)
        try:
            return open(fullname, "rb"), fullname, None
        except OSError as exc:
            return None, None, exc

    def relative_open(self, fname: str) -> tuple[IO, str]:
        """Open a file, trying the current file's directory then the search path.

        Returns the open stream and its full name; '-' means standard input.
        """
        if fname == "-":
            stream = getattr(sys.stdin, "buffer", sys.stdin)
            fullname = "<stdin>"
        else:
            cur_dir = self.current.dirname if self.current else None
            stream, fullname, error = self._try_open(cur_dir, fname)
            for dirname in self.search_paths:
                if stream is not None:
                    break
                stream, fullname, error = self._try_open(dirname, fname)
            if stream is None:
                reason = error.strerror if error and error.strerror else str(error)
                raise FatalError(f'Couldn\'t open "{fname}": {reason}')

        if self.depfile is not None:
            self.depfile.write(f" {fullname}")
        return stream, fullname

    def _set_initial_path(self, fname: str) -> None:
        self._initial_path = fname
        self._initial_pathlen = fname.count("/")

    def push(self, fname: str) -> SourceFile:
        """Open a file and make it the current source file."""
        depth = self._depth
        self._depth += 1
        if depth >= MAX_SRCFILE_DEPTH:
            raise FatalError("Includes nested too deeply")

        stream, fullname = self.relative_open(fname)
        srcfile = SourceFile(
            name=fullname,
            dirname=_get_dirname(fullname),
            prev=self.current,
            stream=stream,
            owns_stream=fname != "-",
        )
        self.current = srcfile
        if self._depth == 1:
            self._set_initial_path(fullname)
        return srcfile

    def pop(self) -> bool:
        """Close the current file; return True if an outer file remains."""
        srcfile = self.current
        if srcfile is None:
            raise IndexError("no source file to pop")
        self.current = srcfile.prev
        if srcfile.owns_stream and srcfile.stream is not None:
            try:
                srcfile.stream.close()
            except OSError as exc:
                raise FatalError(
                    f'Error closing "{srcfile.name}": {exc.strerror or exc}'
                ) from exc
        return self.current is not None

    def update(self, pos: SourcePosition, text: str) -> None:
        """Set ``pos`` to the span of ``text`` and advance the current file."""
        cur = self.current
        if cur is None:
            raise RuntimeError("no current source file")
        pos.file = cur
        pos.first_line = cur.lineno
        pos.first_column = cur.colno
        for ch in text:
            if ch == "\n":
                cur.lineno += 1
                cur.colno = 1
            else:
                cur.colno += 1
        pos.last_line = cur.lineno
        pos.last_column = cur.colno

    def set_line(self, fname: str, lineno: int) -> None:
        """Apply a line marker: rename the current file and set its line."""
        cur = self.current
        if cur is None:
            raise RuntimeError("no current source file")
        cur.name = fname
        cur.lineno = lineno
        if self._initial_cpp:
            self._initial_cpp = False
            self._set_initial_path(fname)

    def shorten_to_initial_path(self, fname: str) -> str | None:
        """Express ``fname`` relative to the first file's directory, if they share one."""
        if self._initial_path is None:
            return None
        prevslash = -1
        slashes = 0
        for idx, (a, b) in enumerate(zip(fname, self._initial_path)):
            if a != b:
                break
            if a == "/":
                prevslash = idx
                slashes += 1
        if prevslash < 0:
            return None
        return "../" * (self._initial_pathlen - slashes) + fname[prevslash + 1:]

    def _describe_one(self, pos: SourcePosition, first_line: bool,
                      level: int) -> str:
        if pos.file is None:
            fname = "<no-file>"
        elif not pos.file.name:
            fname = "<no-filename>"
        elif level > 1:
            fname = pos.file.name
        else:
            fname = self.shorten_to_initial_path(pos.file.name) or pos.file.name

        if level > 1:
            return (f"{fname}:{pos.first_line}:{pos.first_column}"
                    f"-{pos.last_line}:{pos.last_column}")
        line = pos.first_line if first_line else pos.last_line
        return f"{fname}:{line}"

    def _string_comment(self, pos: SourcePosition | None, first_line: bool,
                        level: int) -> str | None:
        if pos is None:
            return "<no-file>:<no-line>" if level > 1 else None
        return ", ".join(self._describe_one(p, first_line, level) for p in pos)

    def string_first(self, pos: SourcePosition | None, level: int) -> str | None:
        """Annotation text using each span's first line."""
        return self._string_comment(pos, True, level)

    def string_last(self, pos: SourcePosition | None, level: int) -> str | None:
        """Annotation text using each span's last line."""
        return self._string_comment(pos, False, level)