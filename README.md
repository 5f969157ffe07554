# devtree

Python building blocks for working with device trees in memory and writing
them out as device tree source text or YAML.

## Modules

- `devtree.livetree`: an in-memory tree. It provides `Node`, `Property`,
  `Data` (bytes plus typed `Marker`s), `Label`, `ReserveEntry` and `DtInfo`.
  It supports these operations:
  - merging trees with `merge_nodes`.
  - lookup by path, label, phandle or reference, using
    `Node.get_node_by_path`, `get_node_by_label`, `get_node_by_phandle` and
    `get_node_by_ref`.
  - phandle allocation with `DtInfo.get_node_phandle`.
  - sorting with `DtInfo.sort`.
  - generation of label, fixup and local-fixup nodes with
    `DtInfo.generate_label_tree`, `generate_fixups_tree` and
    `generate_local_fixups_tree`.
- `devtree.treesource`: `dt_to_source(stream, dti)` and
  `tree_to_source(dti)` render a tree as source text. An `annotate` level
  adds source-position comments. `guess_value_type` picks string, cell or
  byte output for property data that carries no type markers.
- `devtree.yamltree`: `dt_to_yaml(stream, dti)` and `tree_to_yaml(dti)`
  render a tree as a YAML document. It uses tags such as `!u8`, `!u32` and
  `!phandle`.
- `devtree.srcpos`: `SourcePosition` spans and `SourceTracker`, which
  handles:
  - the include search path.
  - the stack of open files, with a nesting limit of 200.
  - position text for diagnostics and annotations.
- `devtree.util`: helpers. They are:
  - `get_escape_char`, for backslash escapes.
  - `is_printable_string`.
  - `decode_type`, for type strings such as `"hx"`.
  - `format_data`, which renders property data.
  - `read_blob`, `write_blob` and `blob_totalsize`.
  - `format_usage`, for option help text.

  Unrecoverable input errors raise `devtree.util.FatalError`.

## Installation

```
pip install devtree
```

## Example

```python
from devtree.livetree import Data, DtInfo, MarkerType, Node, Property
from devtree.treesource import tree_to_source
from devtree.yamltree import tree_to_yaml

root = Node(name="")
cells = Data().add_marker(MarkerType.TYPE_UINT32).append_cell(1)
root.add_property(Property(name="#address-cells", val=cells))
root.add_property(Property(name="model", val=Data.from_escaped_string("board")))

dti = DtInfo(dt=root)
print(tree_to_source(dti))
print(tree_to_yaml(dti))
```

## What this package does not do

- It does not parse device tree source text.
- It does not read flattened blobs into a tree.
- It does not produce flattened blobs from a tree. `write_blob` only writes
  bytes that are already in blob form.
- It has no command-line tool. Everything is used as a library.

## Running the tests

```
pip install -e .[test]
pytest
```