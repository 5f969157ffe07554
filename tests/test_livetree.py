import struct

import pytest

from devtree.livetree import (
    Data,
    DtInfo,
    Label,
    MarkerType,
    Node,
    PhandleFormat,
    Property,
    ReserveEntry,
    add_label,
    delete_labels,
    merge_nodes,
    phandle_is_valid,
)
from devtree.util import FatalError


def cell_prop(name, value):
    return Property(name, Data().add_marker(MarkerType.TYPE_UINT32).append_cell(value))


def ref_prop(name, ref):
    data = Data().add_marker(MarkerType.TYPE_UINT32)
    data.add_marker(MarkerType.REF_PHANDLE, ref).append_cell(0xFFFFFFFF)
    return Property(name, data)


def sample_tree():
    a = Node("a", labels=[Label("lbl")])
    b = Node("b@1", properties=[cell_prop("x", 7)])
    c = Node("c", children=[b])
    root = Node("", children=[a, c])
    return DtInfo(root)


def test_add_label_deduplicates_and_revives():
    labels = []
    add_label(labels, "one")
    add_label(labels, "two")
    add_label(labels, "one")
    assert [l.label for l in labels] == ["two", "one"]
    delete_labels(labels)
    assert all(l.deleted for l in labels)
    add_label(labels, "one")
    assert [l.deleted for l in labels] == [True, False]


def test_data_integers_are_big_endian():
    data = Data().append_integer(0x1234, 16).append_cell(0xDEADBEEF)
    assert bytes(data) == (0x1234).to_bytes(2, "big") + (0xDEADBEEF).to_bytes(4, "big")
    with pytest.raises(FatalError):
        Data().append_integer(1, 12)


def test_marker_offsets_follow_data_length():
    data = Data().append_bytes(b"abc").add_marker(MarkerType.LABEL, "here")
    assert data.markers[0].offset == len(b"abc")
    assert data.markers[0].ref == "here"


def test_type_marker_length():
    data = Data().add_marker(MarkerType.TYPE_UINT8).append_bytes(b"\1\2")
    data.add_marker(MarkerType.TYPE_STRING).append_bytes(b"x\0")
    first, second = data.markers
    assert data.type_marker_length(first) == 2
    assert data.type_marker_length(second) == 0


def test_escaped_string_decoding():
    data = Data.from_escaped_string("a\\nb")
    assert bytes(data) == b"a\nb\0"
    assert data.markers[0].type == MarkerType.TYPE_STRING


def test_property_cells():
    prop = Property("p", Data().append_cell(3).append_cell(9))
    assert prop.cell_n(1) == 9
    with pytest.raises(ValueError):
        prop.cell()
    with pytest.raises(IndexError):
        prop.cell_n(2)
    assert cell_prop("q", 42).cell() == 42


def test_merge_nodes_replaces_adds_and_deletes():
    old = Node("n", properties=[cell_prop("keep", 1), cell_prop("swap", 2),
                                cell_prop("gone", 3)],
               children=[Node("kid", properties=[cell_prop("k", 1)]),
                         Node("dead")])
    new_kid = Node("kid", properties=[cell_prop("k2", 5)])
    new = Node("n", properties=[cell_prop("swap", 20), cell_prop("fresh", 4),
                                Property.deletion("gone")],
               children=[new_kid, Node.deletion()],
               labels=[Label("L")])
    new.children[1].name = "dead"

    merged = merge_nodes(old, new)
    assert merged is old
    assert merged.get_property("swap").cell() == 20
    assert merged.get_property("fresh").cell() == 4
    assert merged.get_property("gone") is None
    assert merged.get_property("keep").cell() == 1
    kid = merged.get_subnode("kid")
    assert kid.get_property("k").cell() == 1
    assert kid.get_property("k2").cell() == 5
    assert merged.get_subnode("dead") is None
    assert [l.label for l in merged.labels] == ["L"]


def test_get_node_by_path_and_ref():
    dti = sample_tree()
    root = dti.dt
    b = root.get_node_by_path("/c/b@1")
    assert b.name == "b@1"
    assert root.get_node_by_path("//c///b@1") is b
    assert root.get_node_by_path("/c/") is root.get_subnode("c")
    assert root.get_node_by_path("/missing") is None
    assert root.get_node_by_ref("/") is root
    assert root.get_node_by_ref("lbl") is root.get_subnode("a")
    assert root.get_node_by_ref("/c/b@1") is b
    assert root.get_node_by_ref("nolabel") is None


def test_label_with_path_ref():
    dti = sample_tree()
    c = dti.dt.get_subnode("c")
    add_label(c.labels, "cl")
    assert dti.dt.get_node_by_ref("cl/b@1") is c.get_subnode("b@1")


def test_fullpath_and_unit_name():
    dti = sample_tree()
    b = dti.dt.get_node_by_path("/c/b@1")
    assert dti.dt.fullpath == "/"
    assert b.fullpath == "/c/b@1"
    assert b.unit_name == "1"
    assert dti.dt.get_subnode("a").unit_name == ""


def test_delete_cascades():
    dti = sample_tree()
    c = dti.dt.get_subnode("c")
    b = c.get_subnode("b@1")
    c.delete()
    assert c.deleted and b.deleted
    assert all(p.deleted for p in b.properties)
    assert dti.dt.get_node_by_path("/c") is None


def test_property_and_marker_labels():
    dti = sample_tree()
    b = dti.dt.get_node_by_path("/c/b@1")
    prop = b.get_property("x")
    add_label(prop.labels, "plabel")
    assert dti.dt.get_property_by_label("plabel") == (prop, b)
    assert dti.dt.get_property_by_label("none") == (None, None)
    prop.val.add_marker(MarkerType.LABEL, "mlabel")
    marker, node, owner = dti.dt.get_marker_label("mlabel")
    assert (marker.ref, node, owner) == ("mlabel", b, prop)


def test_get_node_phandle_allocates_unused():
    dti = sample_tree()
    a = dti.dt.get_subnode("a")
    a.phandle = 1
    b = dti.dt.get_node_by_path("/c/b@1")
    handle = b.get_node_by_phandle(0) or dti.get_node_phandle(b)
    assert handle != 1 and phandle_is_valid(handle)
    assert b.phandle == handle
    assert b.get_property("phandle").cell() == handle
    assert b.get_property("linux,phandle") is None
    assert dti.dt.get_node_by_phandle(handle) is b
    assert dti.get_node_phandle(b) == handle


def test_phandle_format_both():
    dti = sample_tree()
    dti.phandle_format = PhandleFormat.BOTH
    a = dti.dt.get_subnode("a")
    handle = dti.get_node_phandle(a)
    assert a.get_property("linux,phandle").cell() == handle
    assert a.get_property("phandle").cell() == handle


def test_invalid_phandles():
    assert not phandle_is_valid(0)
    assert not phandle_is_valid(0xFFFFFFFF)
    assert sample_tree().dt.get_node_by_phandle(0) is None


def test_guess_boot_cpuid():
    cpu = Node("cpu@0", properties=[cell_prop("reg", 5)])
    dti = DtInfo(Node("", children=[Node("cpus", children=[cpu])]))
    assert dti.guess_boot_cpuid() == 5
    assert sample_tree().guess_boot_cpuid() == 0


def test_sort():
    root = Node("", properties=[cell_prop("zz", 1), cell_prop("aa", 2)],
                children=[Node("y"), Node("x")])
    dti = DtInfo(root, reservelist=[ReserveEntry(20, 1), ReserveEntry(10, 5),
                                    ReserveEntry(10, 2)])
    dti.sort()
    assert [p.name for p in root.properties] == ["aa", "zz"]
    assert [c.name for c in root.children] == ["x", "y"]
    assert [(r.address, r.size) for r in dti.reservelist] == [(10, 2), (10, 5), (20, 1)]


def test_add_reserve_entry_appends():
    dti = sample_tree()
    dti.add_reserve_entry(ReserveEntry(1, 2))
    dti.add_reserve_entry(ReserveEntry(0, 1))
    assert [r.address for r in dti.reservelist] == [1, 0]


def test_generate_label_tree():
    dti = sample_tree()
    dti.generate_label_tree("__symbols__", True)
    symbols = dti.dt.get_subnode("__symbols__")
    assert bytes(symbols.get_property("lbl").val) == b"/a\0"
    assert phandle_is_valid(dti.dt.get_subnode("a").phandle)


def test_generate_label_tree_without_labels_does_nothing():
    dti = DtInfo(Node("", children=[Node("plain")]))
    dti.generate_label_tree("__symbols__", False)
    assert dti.dt.get_subnode("__symbols__") is None


def test_generate_fixups_tree():
    user = Node("user", properties=[ref_prop("clk", "external")])
    dti = DtInfo(Node("", children=[user]))
    dti.generate_fixups_tree("__fixups__")
    fixups = dti.dt.get_subnode("__fixups__")
    assert bytes(fixups.get_property("external").val) == b"/user:clk:0\0"


def test_fixups_reject_path_reference():
    user = Node("user", properties=[ref_prop("clk", "missing/path")])
    dti = DtInfo(Node("", children=[user]))
    with pytest.raises(FatalError):
        dti.generate_fixups_tree("__fixups__")


def test_fixups_reject_colon():
    user = Node("user", properties=[ref_prop("a:b", "external")])
    dti = DtInfo(Node("", children=[user]))
    with pytest.raises(FatalError):
        dti.generate_fixups_tree("__fixups__")


def test_generate_local_fixups_tree():
    dti = sample_tree()
    user = Node("user", properties=[ref_prop("clk", "lbl")])
    dti.dt.get_subnode("c").add_child(user)
    dti.generate_fixups_tree("__fixups__")
    assert dti.dt.get_subnode("__fixups__") is None
    dti.generate_local_fixups_tree("__local_fixups__")
    entry = dti.dt.get_node_by_path("/__local_fixups__/c/user")
    assert bytes(entry.get_property("clk").val) == struct.pack(">I", 0)


def test_add_orphan_node_label_target():
    dti = DtInfo(Node(""))
    dti.add_orphan_node(Node(properties=[cell_prop("v", 1)]), "somelabel")
    fragment = dti.dt.get_subnode("fragment@0")
    target = fragment.get_property("target")
    assert bytes(target.val) == b"\xff\xff\xff\xff"
    assert target.val.markers[0].type == MarkerType.REF_PHANDLE
    assert target.val.markers[0].ref == "somelabel"
    assert fragment.get_subnode("__overlay__").get_property("v").cell() == 1


def test_add_orphan_node_path_target_and_counter():
    dti = DtInfo(Node(""))
    dti.add_orphan_node(Node(), "somelabel")
    dti.add_orphan_node(Node(), "/soc")
    second = dti.dt.children[1]
    assert second.name != dti.dt.children[0].name
    assert bytes(second.get_property("target-path").val) == b"/soc\0"
    with pytest.raises(ValueError):
        dti.add_orphan_node(Node("named"), "x")


def test_append_to_property_extends_existing():
    node = Node("n")
    node.append_to_property("p", b"ab", MarkerType.TYPE_STRING)
    node.append_to_property("p", b"cd", MarkerType.TYPE_STRING)
    prop = node.get_property("p")
    assert bytes(prop.val) == b"abcd"
    assert [m.offset for m in prop.val.markers] == [0, 2]
    node.delete_property_by_name("p")
    assert node.get_property("p") is None
    assert node.properties[0].deleted