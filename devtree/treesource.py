"""Render a live device tree as device tree source text."""

from __future__ import annotations

import io
import struct
from typing import IO, Iterator

from devtree.livetree import DtInfo, Label, Marker, MarkerType, Node, Property
from devtree.srcpos import SourcePosition, SourceTracker

__all__ = ["guess_value_type", "dt_to_source", "tree_to_source"]

_DELIM_START = {
    MarkerType.TYPE_UINT8: "[",
    MarkerType.TYPE_UINT16: "/bits/ 16 <",
    MarkerType.TYPE_UINT32: "<",
    MarkerType.TYPE_UINT64: "/bits/ 64 <",
    MarkerType.TYPE_STRING: "",
}

_DELIM_END = {
    MarkerType.TYPE_UINT8: "]",
    MarkerType.TYPE_UINT16: ">",
    MarkerType.TYPE_UINT32: ">",
    MarkerType.TYPE_UINT64: ">",
    MarkerType.TYPE_STRING: "",
}

_STRING_CONTROL = frozenset(b"\a\b\t\n\v\f\r\0")

_STRING_ESCAPES = {
    0x07: "\\a",
    0x08: "\\b",
    0x09: "\\t",
    0x0A: "\\n",
    0x0B: "\\v",
    0x0C: "\\f",
    0x0D: "\\r",
    0x5C: "\\\\",
    0x22: '\\"',
    0x00: "\\0",
}

_INT_CODES = {1: "B", 2: "H", 4: "I", 8: "Q"}


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def _isstring(byte: int) -> bool:
    return _isprint(byte) or byte in _STRING_CONTROL


def _live_labels(labels: list[Label]) -> Iterator[str]:
    return (label.label for label in labels if not label.deleted)


def _label_prefix(labels: list[Label]) -> str:
    return "".join(f"{label}: " for label in _live_labels(labels))


def guess_value_type(prop: Property) -> MarkerType:
    """Guess whether untyped property data is a string list, cells or bytes."""
    val = bytes(prop.val.val)
    length = len(val)
    nnotstring = sum(1 for b in val if not _isstring(b))
    nnul = val.count(0)

    labels = list(prop.val.markers_of_type(MarkerType.LABEL))
    nnotstringlbl = sum(
        1 for m in labels if m.offset > 0 and val[m.offset - 1] != 0)
    nnotcelllbl = sum(1 for m in labels if m.offset % 4 != 0)

    if (val and val[-1] == 0 and nnotstring == 0
            and nnul <= length - nnul and nnotstringlbl == 0):
        return MarkerType.TYPE_STRING
    if length % 4 == 0 and nnotcelllbl == 0:
        return MarkerType.TYPE_UINT32
    return MarkerType.TYPE_UINT8


def _format_string(chunk: bytes) -> str:
    if not chunk:
        return ""
    if chunk[-1] != 0:
        raise ValueError("string data is not NUL terminated")
    out = ['"']
    for b in chunk[:-1]:
        if b in _STRING_ESCAPES:
            out.append(_STRING_ESCAPES[b])
        elif _isprint(b):
            out.append(chr(b))
        else:
            out.append(f"\\x{b:02x}")
    out.append('"')
    return "".join(out)


def _format_ints(chunk: bytes, width: int) -> str:
    if len(chunk) % width:
        raise ValueError(f"data length {len(chunk)} is not a multiple of {width}")
    values = (v for (v,) in struct.iter_unpack(f">{_INT_CODES[width]}", chunk))
    if width == 1:
        return " ".join(f"{v:02x}" for v in values)
    return " ".join(f"0x{v:02x}" for v in values)


def _annotation(tracker: SourceTracker, pos: SourcePosition | None,
                annotate: int, last: bool = False) -> str:
    if not annotate:
        return ""
    describe = tracker.string_last if last else tracker.string_first
    text = describe(pos, annotate)
    return f" /* {text} */" if text else ""


def _format_propval(prop: Property, comment: str) -> str:
    val = bytes(prop.val.val)
    length = len(val)
    if length == 0:
        return f";{comment}\n"

    parts = [" ="]
    markers: list[Marker] = list(prop.val.markers)
    if prop.val.next_type_marker() is None:
        markers.insert(0, Marker(guess_value_type(prop), 0))

    emit_type = MarkerType.TYPE_NONE
    for index, marker in enumerate(markers):
        following = markers[index + 1:]
        chunk_end = following[0].offset if following else length
        chunk_len = chunk_end - marker.offset
        next_type = next((m for m in following if m.type.is_type), None)
        type_len = next_type.offset - marker.offset if next_type else 0
        data_len = type_len or (length - marker.offset)

        if marker.type.is_type:
            emit_type = marker.type
            parts.append(" " + _DELIM_START[emit_type])
        elif marker.type == MarkerType.LABEL:
            parts.append(f" {marker.ref}:")

        if emit_type == MarkerType.TYPE_NONE or chunk_len == 0:
            continue

        chunk = val[marker.offset:marker.offset + chunk_len]
        if emit_type == MarkerType.TYPE_UINT16:
            parts.append(_format_ints(chunk, 2))
        elif emit_type == MarkerType.TYPE_UINT32:
            ref = next((m.ref for m in prop.val.markers_of_type(MarkerType.REF_PHANDLE)
                        if m.offset == marker.offset), None)
            if ref is not None:
                parts.append(f"&{{{ref}}}" if ref.startswith("/") else f"&{ref}")
                if chunk_len > 4:
                    parts.append(" " + _format_ints(chunk[4:], 4))
            else:
                parts.append(_format_ints(chunk, 4))
        elif emit_type == MarkerType.TYPE_UINT64:
            parts.append(_format_ints(chunk, 8))
        elif emit_type == MarkerType.TYPE_STRING:
            parts.append(_format_string(chunk))
        else:
            parts.append(_format_ints(chunk, 1))

        if chunk_len == data_len:
            end = _DELIM_END.get(emit_type, "")
            at_end = marker.offset + chunk_len == length
            parts.append(end if at_end else end + ",")
            emit_type = MarkerType.TYPE_NONE

    parts.append(f";{comment}\n")
    return "".join(parts)


def _render_node(node: Node, level: int, annotate: int,
                 tracker: SourceTracker) -> Iterator[str]:
    indent = "\t" * level
    name = node.name if node.name else "/"
    yield (f"{indent}{_label_prefix(node.labels)}{name} {{"
           f"{_annotation(tracker, node.srcpos, annotate)}\n")

    for prop in node.iter_properties():
        comment = _annotation(tracker, prop.srcpos, annotate)
        yield (f"{indent}\t{_label_prefix(prop.labels)}{prop.name}"
               f"{_format_propval(prop, comment)}")

    for child in node.iter_children():
        yield "\n"
        yield from _render_node(child, level + 1, annotate, tracker)

    yield f"{indent}}};{_annotation(tracker, node.srcpos, annotate, last=True)}\n"


def _render(dti: DtInfo, annotate: int,
            tracker: SourceTracker | None) -> Iterator[str]:
    tracker = tracker if tracker is not None else SourceTracker()
    yield "/dts-v1/;\n\n"
    for entry in dti.reservelist:
        yield (f"{_label_prefix(entry.labels)}/memreserve/\t"
               f"0x{entry.address:016x} 0x{entry.size:016x};\n")
    yield from _render_node(dti.dt, 0, annotate, tracker)


def dt_to_source(stream: IO[str], dti: DtInfo, annotate: int = 0,
                 tracker: SourceTracker | None = None) -> None:
    """Write the tree as source text; ``annotate`` adds source position comments."""
    for piece in _render(dti, annotate, tracker):
        stream.write(piece)


def tree_to_source(dti: DtInfo, annotate: int = 0,
                   tracker: SourceTracker | None = None) -> str:
    """Return the tree as source text."""
    out = io.StringIO()
    dt_to_source(out, dti, annotate, tracker)
    return out.getvalue()