"""Render a live device tree as YAML."""

from __future__ import annotations

import struct
from itertools import count
from typing import IO, Iterator

import yaml
from yaml.events import (
    DocumentEndEvent,
    DocumentStartEvent,
    MappingEndEvent,
    MappingStartEvent,
    ScalarEvent,
    SequenceEndEvent,
    SequenceStartEvent,
    StreamEndEvent,
    StreamStartEvent,
)

from devtree.livetree import Data, DtInfo, MarkerType, Node, Property
from devtree.util import FatalError

__all__ = ["dt_to_yaml", "tree_to_yaml"]

_STR_TAG = "tag:yaml.org,2002:str"
_INT_TAG = "tag:yaml.org,2002:int"
_BOOL_TAG = "tag:yaml.org,2002:bool"
_SEQ_TAG = "tag:yaml.org,2002:seq"
_MAP_TAG = "tag:yaml.org,2002:map"

_WIDTH_TAGS = {1: "!u8", 2: "!u16", 4: "!u32", 8: "!u64"}
_INT_CODES = {1: "B", 2: "H", 4: "I", 8: "Q"}

_WIDTHS = {
    MarkerType.TYPE_UINT16: 2,
    MarkerType.TYPE_UINT32: 4,
    MarkerType.TYPE_UINT64: 8,
}


class _DtDumper(yaml.Dumper):
    """Emitter that keeps explicitly plain scalars plain even when tagged."""

    def choose_scalar_style(self):
        event = self.event
        if event.style == "" and event.tag is not None and not event.implicit[0]:
            if self.analysis is None:
                self.analysis = self.analyze_scalar(event.value)
            analysis = self.analysis
            if (not (self.simple_key_context
                     and (analysis.empty or analysis.multiline))
                    and ((self.flow_level and analysis.allow_flow_plain)
                         or (not self.flow_level and analysis.allow_block_plain))):
                return ""
        return super().choose_scalar_style()


def _int_events(data: Data, chunk: bytes, seq_offset: int,
                width: int) -> Iterator:
    tag = _WIDTH_TAGS.get(width)
    if tag is None:
        raise FatalError(f"Invalid width {width}")
    if len(chunk) % width:
        raise ValueError(f"data length {len(chunk)} is not a multiple of {width}")

    phandle_offsets = set()
    if width == 4:
        phandle_offsets = {m.offset for m in data.markers_of_type(MarkerType.REF_PHANDLE)}

    yield SequenceStartEvent(None, tag, width == 4, flow_style=True)
    values = struct.iter_unpack(f">{_INT_CODES[width]}", chunk)
    for off, (value,) in zip(count(0, width), values):
        text = f"0x{value:x}"
        if seq_offset + off in phandle_offsets:
            yield ScalarEvent(None, "!phandle", (False, False), text, style="")
        else:
            yield ScalarEvent(None, _INT_TAG, (True, True), text)
    yield SequenceEndEvent()


def _string_event(chunk: bytes) -> ScalarEvent:
    if not chunk or chunk[-1] != 0:
        raise ValueError("string data is not NUL terminated")
    if any(b >= 0x80 for b in chunk):
        raise ValueError("string data is not 7-bit ASCII")
    return ScalarEvent(None, _STR_TAG, (False, True),
                       chunk[:-1].decode("ascii"), style='"')


def _propval_events(prop: Property) -> Iterator:
    yield ScalarEvent(None, _STR_TAG, (True, True), prop.name)

    val = bytes(prop.val.val)
    remaining = len(val)
    if remaining == 0:
        yield ScalarEvent(None, _BOOL_TAG, (True, False), "true")
        return

    if not prop.val.markers:
        raise FatalError(f"No markers present in property '{prop.name}' value")

    yield SequenceStartEvent(None, _SEQ_TAG, True, flow_style=True)
    for marker in prop.val.markers:
        if not marker.type.is_type:
            continue
        chunk_len = prop.val.type_marker_length(marker) or remaining
        if chunk_len <= 0:
            raise ValueError(f"empty data chunk in property '{prop.name}'")
        remaining -= chunk_len
        chunk = val[marker.offset:marker.offset + chunk_len]

        if marker.type == MarkerType.TYPE_STRING:
            yield _string_event(chunk)
        else:
            width = _WIDTHS.get(marker.type, 1)
            yield from _int_events(prop.val, chunk, marker.offset, width)
    yield SequenceEndEvent()


def _tree_events(node: Node) -> Iterator:
    if node.deleted:
        return
    yield MappingStartEvent(None, _MAP_TAG, True, flow_style=None)
    for prop in node.iter_properties():
        yield from _propval_events(prop)
    for child in node.iter_children():
        yield ScalarEvent(None, _STR_TAG, (True, False), child.name or "")
        yield from _tree_events(child)
    yield MappingEndEvent()


def _events(dti: DtInfo) -> Iterator:
    yield StreamStartEvent(encoding="utf-8")
    yield DocumentStartEvent(explicit=True)
    yield SequenceStartEvent(None, _SEQ_TAG, True, flow_style=None)
    yield from _tree_events(dti.dt)
    yield SequenceEndEvent()
    yield DocumentEndEvent(explicit=True)
    yield StreamEndEvent()


def dt_to_yaml(stream: IO, dti: DtInfo) -> None:
    """Write the tree to ``stream`` as a YAML document."""
    try:
        yaml.emit(_events(dti), stream, Dumper=_DtDumper)
    except yaml.YAMLError as exc:
        raise FatalError(f"yaml: {exc}") from exc


def tree_to_yaml(dti: DtInfo) -> str:
    """Return the tree as a YAML document."""
    try:
        return yaml.emit(_events(dti), Dumper=_DtDumper)
    except yaml.YAMLError as exc:
        raise FatalError(f"yaml: {exc}") from exc