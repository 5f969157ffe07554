"""In-memory device tree: nodes, properties, labels and tree editing."""

from __future__ import annotations

import struct
import sys
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Iterable, Iterator

from devtree.srcpos import SourcePosition
from devtree.util import FatalError, get_escape_char, join_path

__all__ = [
    "MarkerType",
    "PhandleFormat",
    "Marker",
    "Data",
    "Label",
    "Property",
    "Node",
    "ReserveEntry",
    "DtInfo",
    "phandle_is_valid",
    "add_label",
    "delete_labels",
    "merge_nodes",
]

_INVALID_PHANDLE = 0xFFFFFFFF


class MarkerType(IntEnum):
    """Kinds of marker attached to property data."""

    TYPE_NONE = 0
    REF_PHANDLE = 1
    REF_PATH = 2
    LABEL = 3
    TYPE_UINT8 = 4
    TYPE_UINT16 = 5
    TYPE_UINT32 = 6
    TYPE_UINT64 = 7
    TYPE_STRING = 8

    @property
    def is_type(self) -> bool:
        """True for markers that describe the type of the following data."""
        return self >= MarkerType.TYPE_UINT8


class PhandleFormat(IntFlag):
    """Which phandle properties are generated."""

    LEGACY = 0x1
    EPAPR = 0x2
    BOTH = 0x3


def phandle_is_valid(phandle: int) -> bool:
    """A phandle is valid unless it is 0 or all ones."""
    return phandle != 0 and phandle != _INVALID_PHANDLE


@dataclass
class Marker:
    """A typed annotation at a byte offset of property data."""

    type: MarkerType
    offset: int
    ref: str | None = None


@dataclass
class Data:
    """Property bytes together with their markers."""

    val: bytearray = field(default_factory=bytearray)
    markers: list[Marker] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.val = bytearray(self.val)

    def __len__(self) -> int:
        return len(self.val)

    def __bytes__(self) -> bytes:
        return bytes(self.val)

    @classmethod
    def from_escaped_string(cls, s: str) -> Data:
        """String data with backslash escapes decoded, NUL terminated."""
        data = cls().add_marker(MarkerType.TYPE_STRING)
        out = bytearray()
        i = 0
        while i < len(s):
            c = s[i]
            i += 1
            if c == "\\":
                c, i = get_escape_char(s, i)
            out.append(ord(c) & 0xFF)
        out.append(0)
        return data.append_bytes(out)

    def add_marker(self, type: MarkerType, ref: str | None = None) -> Data:
        """Add a marker at the current end of the data."""
        self.markers.append(Marker(MarkerType(type), len(self.val), ref))
        return self

    def append_bytes(self, data: bytes) -> Data:
        self.val.extend(data)
        return self

    def append_integer(self, value: int, bits: int) -> Data:
        """Append a big-endian integer of 8, 16, 32 or 64 bits."""
        if bits not in (8, 16, 32, 64):
            raise FatalError(f"Invalid literal size ({bits})")
        nbytes = bits // 8
        masked = value & ((1 << bits) - 1)
        self.val.extend(masked.to_bytes(nbytes, "big"))
        return self

    def append_cell(self, value: int) -> Data:
        return self.append_integer(value, 32)

    def markers_of_type(self, type: MarkerType) -> Iterator[Marker]:
        return (m for m in self.markers if m.type == type)

    def next_type_marker(self, start: int = 0) -> Marker | None:
        """The first type marker at or after index ``start`` of the marker list."""
        return next((m for m in self.markers[start:] if m.type.is_type), None)

    def type_marker_length(self, marker: Marker) -> int:
        """Bytes from ``marker`` to the next type marker, or 0 if none follows."""
        index = next(i for i, m in enumerate(self.markers) if m is marker)
        following = self.next_type_marker(index + 1)
        if following is None:
            return 0
        return following.offset - marker.offset


@dataclass
class Label:
    label: str
    deleted: bool = False


def _live(labels: Iterable[Label]) -> Iterator[Label]:
    return (l for l in labels if not l.deleted)


def add_label(labels: list[Label], label: str) -> None:
    """Add a label at the front of the list, or revive an existing one."""
    for existing in labels:
        if existing.label == label:
            existing.deleted = False
            return
    labels.insert(0, Label(label))


def delete_labels(labels: list[Label]) -> None:
    for label in labels:
        label.deleted = True


@dataclass(eq=False)
class Property:
    """A named property value in a node."""

    name: str
    val: Data = field(default_factory=Data)
    labels: list[Label] = field(default_factory=list)
    deleted: bool = False
    srcpos: SourcePosition | None = None

    @classmethod
    def deletion(cls, name: str) -> Property:
        """A placeholder that deletes the named property when merged."""
        return cls(name, deleted=True)

    def cell(self) -> int:
        """The value as a single 32-bit cell."""
        if len(self.val) != 4:
            raise ValueError(f"property '{self.name}' is not a single cell")
        return struct.unpack(">I", bytes(self.val))[0]

    def cell_n(self, n: int) -> int:
        """The n-th 32-bit cell of the value."""
        if not 0 <= n < len(self.val) // 4:
            raise IndexError(f"property '{self.name}' has no cell {n}")
        return struct.unpack_from(">I", self.val, 4 * n)[0]

    def delete(self) -> None:
        self.deleted = True
        delete_labels(self.labels)


@dataclass(eq=False)
class Node:
    """A device tree node; deleted entries stay in the lists but are skipped."""

    name: str | None = None
    properties: list[Property] = field(default_factory=list)
    children: list[Node] = field(default_factory=list)
    labels: list[Label] = field(default_factory=list)
    srcpos: SourcePosition | None = None
    deleted: bool = False
    phandle: int = 0
    omit_if_unused: bool = False
    is_referenced: bool = False
    parent: Node | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.properties = list(self.properties)
        self.children = list(self.children)
        for child in self.children:
            child.parent = self

    @classmethod
    def deletion(cls, srcpos: SourcePosition | None = None) -> Node:
        """A placeholder that deletes the same-named node when merged."""
        return cls(deleted=True, srcpos=srcpos)

    @property
    def fullpath(self) -> str:
        if self.parent is None:
            return join_path("", self.name or "")
        return join_path(self.parent.fullpath, self.name or "")

    @property
    def unit_name(self) -> str:
        """The part of the name after '@', or an empty string."""
        _, sep, unit = (self.name or "").partition("@")
        return unit if sep else ""

    def iter_properties(self) -> Iterator[Property]:
        return (p for p in self.properties if not p.deleted)

    def iter_children(self) -> Iterator[Node]:
        return (c for c in self.children if not c.deleted)

    def add_property(self, prop: Property) -> None:
        self.properties.append(prop)

    def delete_property_by_name(self, name: str) -> None:
        for prop in self.properties:
            if prop.name == name:
                prop.delete()
                return

    def add_child(self, child: Node) -> None:
        child.parent = self
        self.children.append(child)

    def delete_node_by_name(self, name: str) -> None:
        for child in self.children:
            if child.name == name:
                child.delete()
                return

    def delete(self) -> None:
        """Mark this node, its live subtree, properties and labels deleted."""
        self.deleted = True
        for child in self.iter_children():
            child.delete()
        for prop in self.iter_properties():
            prop.delete()
        delete_labels(self.labels)

    def append_to_property(self, name: str, data: bytes,
                           type: MarkerType) -> None:
        """Append typed data to a property, creating it if missing."""
        prop = self.get_property(name)
        if prop is not None:
            prop.val.add_marker(type, name).append_bytes(data)
        else:
            val = Data().add_marker(type, name).append_bytes(data)
            self.add_property(Property(name, val))

    def get_property(self, name: str) -> Property | None:
        return next((p for p in self.iter_properties() if p.name == name), None)

    def get_subnode(self, name: str) -> Node | None:
        return next((c for c in self.iter_children() if c.name == name), None)

    def get_node_by_path(self, path: str | None) -> Node | None:
        if not path:
            return None if self.deleted else self
        path = path.lstrip("/")
        head, slash, rest = path.partition("/")
        for child in self.iter_children():
            if slash and head == child.name:
                return child.get_node_by_path(rest)
            if not slash and path == child.name:
                return child
        return None

    def get_node_by_label(self, label: str) -> Node | None:
        if not label:
            raise ValueError("label must not be empty")
        if any(l.label == label for l in _live(self.labels)):
            return self
        for child in self.iter_children():
            found = child.get_node_by_label(label)
            if found is not None:
                return found
        return None

    def get_node_by_phandle(self, phandle: int) -> Node | None:
        if not phandle_is_valid(phandle):
            return None
        if self.phandle == phandle:
            return None if self.deleted else self
        for child in self.iter_children():
            found = child.get_node_by_phandle(phandle)
            if found is not None:
                return found
        return None

    def get_node_by_ref(self, ref: str) -> Node | None:
        """Resolve '/path', 'label' or 'label/path' relative to this tree."""
        if ref == "/":
            return self
        target: Node | None = self
        path: str | None = None
        if ref.startswith("/"):
            path = ref
        else:
            label, slash, rest = ref.partition("/")
            if slash:
                path = rest
            target = self.get_node_by_label(label)
            if target is None:
                return None
        if path is not None:
            target = target.get_node_by_path(path)
        return target

    def get_property_by_label(self, label: str):
        """Return (property, node) carrying the label, or (None, None)."""
        for prop in self.iter_properties():
            if any(l.label == label for l in _live(prop.labels)):
                return prop, self
        for child in self.iter_children():
            prop, node = child.get_property_by_label(label)
            if prop is not None:
                return prop, node
        return None, None

    def get_marker_label(self, label: str):
        """Return (marker, node, property) for a data label, or Nones."""
        for prop in self.iter_properties():
            for marker in prop.val.markers_of_type(MarkerType.LABEL):
                if marker.ref == label:
                    return marker, self, prop
        for child in self.iter_children():
            found = child.get_marker_label(label)
            if found[0] is not None:
                return found
        return None, None, None


def merge_nodes(old_node: Node, new_node: Node) -> Node:
    """Merge ``new_node`` into ``old_node``; new values win on collision."""
    old_node.deleted = False

    for label in new_node.labels:
        add_label(old_node.labels, label.label)

    new_props, new_node.properties = new_node.properties, []
    for new_prop in new_props:
        if new_prop.deleted:
            old_node.delete_property_by_name(new_prop.name)
            continue
        for old_prop in old_node.properties:
            if old_prop.name == new_prop.name:
                for label in new_prop.labels:
                    add_label(old_prop.labels, label.label)
                old_prop.val = new_prop.val
                old_prop.deleted = False
                old_prop.srcpos = new_prop.srcpos
                break
        else:
            old_node.add_property(new_prop)

    new_children, new_node.children = new_node.children, []
    for new_child in new_children:
        new_child.parent = None
        if new_child.deleted:
            old_node.delete_node_by_name(new_child.name)
            continue
        for old_child in old_node.children:
            if old_child.name == new_child.name:
                merge_nodes(old_child, new_child)
                break
        else:
            old_node.add_child(new_child)

    if old_node.srcpos is None:
        old_node.srcpos = new_node.srcpos
    elif new_node.srcpos is not None:
        old_node.srcpos.extend(new_node.srcpos)
    return old_node


@dataclass
class ReserveEntry:
    """A memory reservation."""

    address: int
    size: int
    labels: list[Label] = field(default_factory=list)


@dataclass(eq=False)
class DtInfo:
    """A whole device tree: root node, reservations and header details."""

    dt: Node
    reservelist: list[ReserveEntry] = field(default_factory=list)
    dtsflags: int = 0
    boot_cpuid_phys: int = 0
    phandle_format: PhandleFormat = PhandleFormat.EPAPR
    _next_phandle: int = field(default=1, init=False, repr=False)
    _next_orphan_fragment: int = field(default=0, init=False, repr=False)

    def add_orphan_node(self, new_node: Node, ref: str) -> Node:
        """Wrap ``new_node`` in an overlay fragment targeting ``ref``."""
        if new_node.name is not None:
            raise ValueError("orphan node must not already be named")
        data = Data()
        if ref.startswith("/"):
            data.add_marker(MarkerType.TYPE_STRING, ref)
            data.append_bytes(ref.encode() + b"\0")
            prop = Property("target-path", data)
        else:
            data.add_marker(MarkerType.REF_PHANDLE, ref)
            data.append_integer(_INVALID_PHANDLE, 32)
            prop = Property("target", data)

        name = f"fragment@{self._next_orphan_fragment}"
        self._next_orphan_fragment += 1
        new_node.name = "__overlay__"
        fragment = Node(name, properties=[prop], children=[new_node])
        self.dt.add_child(fragment)
        return self.dt

    def add_reserve_entry(self, entry: ReserveEntry) -> None:
        self.reservelist.append(entry)

    def _add_phandle_property(self, node: Node, name: str,
                              fmt: PhandleFormat) -> None:
        if not self.phandle_format & fmt:
            return
        if node.get_property(name) is not None:
            return
        data = Data().add_marker(MarkerType.TYPE_UINT32).append_cell(node.phandle)
        node.add_property(Property(name, data))

    def get_node_phandle(self, node: Node) -> int:
        """Return the node's phandle, allocating an unused one if needed."""
        if phandle_is_valid(node.phandle):
            return node.phandle
        while self.dt.get_node_by_phandle(self._next_phandle) is not None:
            self._next_phandle += 1
        node.phandle = self._next_phandle
        self._add_phandle_property(node, "linux,phandle", PhandleFormat.LEGACY)
        self._add_phandle_property(node, "phandle", PhandleFormat.EPAPR)
        return node.phandle

    def guess_boot_cpuid(self) -> int:
        """The 'reg' cell of the first /cpus child, or 0."""
        cpus = self.dt.get_node_by_path("/cpus")
        if cpus is None or not cpus.children:
            return 0
        reg = cpus.children[0].get_property("reg")
        if reg is None or len(reg.val) != 4:
            return 0
        return reg.cell()

    def sort(self) -> None:
        """Sort reservations, and properties and subnodes by name, throughout."""
        self.reservelist.sort(key=lambda r: (r.address, r.size))

        def sort_node(node: Node) -> None:
            node.properties.sort(key=lambda p: p.name.encode())
            node.children.sort(key=lambda c: (c.name or "").encode())
            for child in node.children:
                sort_node(child)

        sort_node(self.dt)

    def _build_root_node(self, name: str) -> Node:
        node = self.dt.get_subnode(name)
        if node is None:
            node = Node(name)
            self.dt.add_child(node)
        return node

    # label tree

    def _any_label(self, node: Node) -> bool:
        return bool(node.labels) or any(
            self._any_label(c) for c in node.iter_children())

    def _label_tree(self, an: Node, node: Node, allocph: bool) -> None:
        if node.labels:
            for label in _live(node.labels):
                if an.get_property(label.label) is not None:
                    sys.stderr.write(f"WARNING: label {label.label} already"
                                     f" exists in /{an.name}")
                    continue
                an.add_property(Property(
                    label.label, Data.from_escaped_string(node.fullpath)))
            if allocph:
                self.get_node_phandle(node)
        for child in node.iter_children():
            self._label_tree(an, child, allocph)

    def generate_label_tree(self, name: str, allocph: bool) -> None:
        """Add a node mapping every label to its node's path."""
        if not self._any_label(self.dt):
            return
        self._label_tree(self._build_root_node(name), self.dt, allocph)

    # fixups

    def _phandle_refs(self, node: Node):
        for prop in node.iter_properties():
            for marker in prop.val.markers_of_type(MarkerType.REF_PHANDLE):
                yield prop, marker

    def _any_ref(self, node: Node, resolved: bool) -> bool:
        for _, marker in self._phandle_refs(node):
            if (self.dt.get_node_by_ref(marker.ref) is not None) == resolved:
                return True
        return any(self._any_ref(c, resolved) for c in node.iter_children())

    def _fixups_tree(self, fn: Node, node: Node) -> None:
        for prop, marker in self._phandle_refs(node):
            if self.dt.get_node_by_ref(marker.ref) is None:
                if "/" in marker.ref:
                    raise FatalError("Can't generate fixup for reference to "
                                     f"path &{{{marker.ref}}}")
                if ":" in node.fullpath or ":" in prop.name:
                    raise FatalError("arguments should not contain ':'")
                entry = f"{node.fullpath}:{prop.name}:{marker.offset}"
                fn.append_to_property(marker.ref, entry.encode() + b"\0",
                                      MarkerType.TYPE_STRING)
        for child in node.iter_children():
            self._fixups_tree(fn, child)

    def generate_fixups_tree(self, name: str) -> None:
        """Record every unresolved phandle reference for later fixup."""
        if not self._any_ref(self.dt, resolved=False):
            return
        self._fixups_tree(self._build_root_node(name), self.dt)

    def _local_fixups_tree(self, lfn: Node, node: Node) -> None:
        for prop, marker in self._phandle_refs(node):
            if self.dt.get_node_by_ref(marker.ref) is None:
                continue
            names = []
            walk: Node | None = node
            while walk is not None:
                names.append(walk.name or "")
                walk = walk.parent
            target = lfn
            for component in reversed(names[:-1]):
                sub = target.get_subnode(component)
                if sub is None:
                    sub = Node(component)
                    target.add_child(sub)
                target = sub
            target.append_to_property(prop.name, struct.pack(">I", marker.offset),
                                      MarkerType.TYPE_UINT32)
        for child in node.iter_children():
            self._local_fixups_tree(lfn, child)

    def generate_local_fixups_tree(self, name: str) -> None:
        """Record the offsets of every resolved phandle reference."""
        if not self._any_ref(self.dt, resolved=True):
            return
        self._local_fixups_tree(self._build_root_node(name), self.dt)