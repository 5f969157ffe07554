import io

import pytest

from devtree.livetree import (
    Data,
    DtInfo,
    Label,
    MarkerType,
    Node,
    Property,
    ReserveEntry,
)
from devtree.srcpos import SourceFile, SourcePosition, SourceTracker
from devtree.treesource import dt_to_source, guess_value_type, tree_to_source


def _string(text: bytes) -> Data:
    return Data().add_marker(MarkerType.TYPE_STRING).append_bytes(text + b"\0")


def _cells(*values: int) -> Data:
    data = Data().add_marker(MarkerType.TYPE_UINT32)
    for value in values:
        data.append_cell(value)
    return data


def _single(prop: Property) -> str:
    return tree_to_source(DtInfo(Node("", properties=[prop])))


def test_guess_string():
    assert guess_value_type(Property("p", Data(b"hello\0"))) == MarkerType.TYPE_STRING
    assert guess_value_type(Property("p", Data(b"ab\0cd\0"))) == MarkerType.TYPE_STRING


def test_guess_cells_and_bytes():
    assert guess_value_type(Property("p", Data(b"\0\0\0\x01"))) == MarkerType.TYPE_UINT32
    assert guess_value_type(Property("p", Data(b"\x01\x02\x03"))) == MarkerType.TYPE_UINT8


def test_guess_misaligned_label_forces_bytes():
    data = Data(b"\x01\x02")
    data.add_marker(MarkerType.LABEL, "mid")
    data.append_bytes(b"\x03\x04\x05\x06")
    assert guess_value_type(Property("p", data)) == MarkerType.TYPE_UINT8


def test_full_tree_output():
    root = Node("", properties=[
        Property("compatible", _string(b"test")),
        Property("reg", _cells(1)),
    ])
    child = Node("child@1", properties=[Property("empty")])
    child.labels.append(Label("lbl"))
    root.add_child(child)
    dti = DtInfo(root, reservelist=[ReserveEntry(0x1000, 0x2000)])

    expected = (
        "/dts-v1/;\n\n"
        "/memreserve/\t0x0000000000001000 0x0000000000002000;\n"
        "/ {\n"
        "\tcompatible = \"test\";\n"
        "\treg = <0x01>;\n"
        "\n"
        "\tlbl: child@1 {\n"
        "\t\tempty;\n"
        "\t};\n"
        "};\n"
    )
    assert tree_to_source(dti) == expected


def test_string_escapes():
    out = _single(Property("s", _string(b'a\tb"c\\\x01')))
    assert r's = "a\tb\"c\\\x01";' in out


def test_phandle_reference():
    data = (Data().add_marker(MarkerType.TYPE_UINT32)
            .add_marker(MarkerType.REF_PHANDLE, "foo")
            .append_cell(0xFFFFFFFF).append_cell(5))
    assert "p = <&foo 0x05>;" in _single(Property("p", data))


def test_path_reference_is_braced():
    data = (Data().add_marker(MarkerType.TYPE_UINT32)
            .add_marker(MarkerType.REF_PHANDLE, "/a/b")
            .append_cell(0xFFFFFFFF))
    assert "&{/a/b}" in _single(Property("p", data))


def test_sized_integers_use_bits_syntax():
    data = (Data().add_marker(MarkerType.TYPE_UINT16)
            .append_integer(1, 16).append_integer(2, 16))
    out = _single(Property("p", data))
    assert "/bits/ 16 <" in out
    wide = Data().add_marker(MarkerType.TYPE_UINT64).append_integer(3, 64)
    assert "/bits/ 64 <" in _single(Property("q", wide))


def test_untyped_bytes_are_guessed():
    out = _single(Property("x", Data(b"\x01\x02\x03")))
    assert "x = [01 02 03];" in out


def test_mixed_chunks_are_comma_separated():
    data = _string(b"a").add_marker(MarkerType.TYPE_UINT32).append_cell(1)
    line = next(l for l in _single(Property("m", data)).splitlines() if "m =" in l)
    assert line.count(",") == 1
    assert line.endswith(">;")


def test_unterminated_string_raises():
    data = Data().add_marker(MarkerType.TYPE_STRING).append_bytes(b"ab")
    with pytest.raises(ValueError):
        _single(Property("s", data))


def test_deleted_entries_are_skipped():
    gone = Property("gone", _cells(1))
    gone.delete()
    root = Node("", properties=[gone, Property("kept", _cells(2))])
    old = Node("oldchild")
    root.add_child(old)
    old.delete()
    out = tree_to_source(DtInfo(root))
    assert "gone" not in out
    assert "oldchild" not in out
    assert "kept" in out


def test_deleted_labels_are_skipped():
    prop = Property("p", _cells(1), labels=[Label("dead", deleted=True), Label("live")])
    out = _single(prop)
    assert "live: p" in out
    assert "dead" not in out


def test_annotation_first_line():
    pos = SourcePosition(3, 1, 3, 5, file=SourceFile("board.dts"))
    prop = Property("p", _cells(1), srcpos=pos)
    out = tree_to_source(DtInfo(Node("", properties=[prop])), annotate=1,
                         tracker=SourceTracker())
    assert "/* board.dts:3 */" in out


def test_annotation_level_two_without_position():
    out = tree_to_source(DtInfo(Node("")), annotate=2)
    assert "<no-file>:<no-line>" in out


def test_no_annotation_by_default():
    pos = SourcePosition(3, 1, 3, 5, file=SourceFile("board.dts"))
    prop = Property("p", _cells(1), srcpos=pos)
    assert "/*" not in tree_to_source(DtInfo(Node("", properties=[prop])))


def test_stream_matches_string():
    root = Node("", properties=[Property("compatible", _string(b"x"))])
    dti = DtInfo(root, reservelist=[ReserveEntry(1, 2)])
    out = io.StringIO()
    dt_to_source(out, dti)
    assert out.getvalue() == tree_to_source(dti)
    assert out.getvalue().startswith("/dts-v1/;\n\n")