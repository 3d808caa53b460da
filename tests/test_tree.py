from __future__ import annotations

from schema_workspace.app.tree import (
    data_to_tree,
    path_from_node_id,
    resolve_ref,
    schema_to_tree,
)

ADDRESS_SCHEMA = {
    "type": "object",
    "properties": {"home": {"$ref": "#/definitions/Address"}},
    "definitions": {
        "Address": {
            "type": "object",
            "properties": {
                "street": {"type": "string", "description": "Street line"},
                "city": {"type": "string"},
            },
        }
    },
}


def test_ref_expands_target_properties() -> None:
    tree = schema_to_tree(ADDRESS_SCHEMA, ADDRESS_SCHEMA)

    assert tree.id == "root"
    assert tree.label == "Root (object)"
    assert tree.children is not None
    home = tree.children[0]
    assert home.label == "home (Ref: Address)"
    assert home.children is not None
    assert [child.label for child in home.children] == [
        "street (string, Street line)",
        "city (string)",
    ]
    assert home.children[0].id == "root.properties.home.properties.street"


def test_unresolved_ref_is_a_leaf() -> None:
    schema = {"type": "object", "properties": {"x": {"$ref": "#/definitions/Missing"}}}

    tree = schema_to_tree(schema, schema)

    assert tree.children is not None
    assert tree.children[0].label == "x (Unresolved Ref: #/definitions/Missing)"
    assert tree.children[0].children is None


def test_circular_ref_stops_expansion() -> None:
    schema = {
        "type": "object",
        "properties": {"head": {"$ref": "#/definitions/Node"}},
        "definitions": {
            "Node": {
                "type": "object",
                "properties": {"next": {"$ref": "#/definitions/Node"}},
            }
        },
    }

    tree = schema_to_tree(schema, schema)

    assert tree.children is not None
    head = tree.children[0]
    assert head.label == "head (Ref: Node)"
    assert head.children is not None
    assert head.children[0].label == "next (Circular Ref: #/definitions/Node)"


def test_combinators_render_numbered_options() -> None:
    schema = {"oneOf": [{"type": "string"}, {"type": "number"}]}

    tree = schema_to_tree(schema, schema, key_name="value", id_path="root.properties.value")

    assert tree.label == "value (unknown)"
    assert tree.children is not None
    group = tree.children[0]
    assert group.label == "oneOf (2 options)"
    assert group.id == "root.properties.value.oneOf"
    assert [option.label for option in group.children or []] == [
        "Option 1 (string)",
        "Option 2 (number)",
    ]


def test_long_descriptions_are_truncated() -> None:
    exact = {"type": "string", "description": "d" * 40}
    long = {"type": "string", "description": "d" * 41}

    assert schema_to_tree(exact, exact, "k").label == f"k (string, {'d' * 40})"
    assert schema_to_tree(long, long, "k").label == f"k (string, {'d' * 37}...)"


def test_depth_cap_marks_deep_nodes() -> None:
    schema = {
        "type": "object",
        "properties": {
            "a": {
                "type": "object",
                "properties": {
                    "b": {"type": "object", "properties": {"c": {"type": "string"}}},
                },
            }
        },
    }

    tree = schema_to_tree(schema, schema, max_depth=2)

    assert tree.children is not None
    a = tree.children[0]
    assert a.children is not None
    b = a.children[0]
    assert b.children is not None
    assert b.children[0].label == "c (Max Depth Reached)"


def test_children_distinguish_empty_structure_from_leaves() -> None:
    empty_object = {"type": "object", "properties": {}}
    leaf = {"type": "string"}
    array = {"type": "array", "items": {"type": "number"}}

    assert schema_to_tree(empty_object, empty_object).children == []
    assert schema_to_tree(leaf, leaf).children is None
    array_tree = schema_to_tree(array, array)
    assert array_tree.children is not None
    assert array_tree.children[0].label == "items (number)"
    assert array_tree.children[0].id == "root.items"


def test_resolve_ref_only_follows_internal_pointers() -> None:
    assert resolve_ref("#/definitions/Address", ADDRESS_SCHEMA) is not None
    assert resolve_ref("http://example.com/schema", ADDRESS_SCHEMA) is None
    assert resolve_ref("#/definitions/Nope", ADDRESS_SCHEMA) is None


def test_data_to_tree_labels_primitives() -> None:
    nodes = data_to_tree({"name": "Ann", "tags": ["x"], "missing": None, "note": "n" * 50})

    labels = [node.label for node in nodes]
    assert labels[0] == 'name: "Ann"'
    assert labels[1] == "tags"
    assert labels[2] == "missing: null"
    assert labels[3] == "note: " + ('"' + "n" * 29)
    assert nodes[1].id == "preview.tags"
    assert nodes[1].children is not None
    assert nodes[1].children[0].label == '0: "x"'
    assert data_to_tree(None) == []


def test_path_from_node_id() -> None:
    assert path_from_node_id("root.properties.address") == ["properties", "address"]
    assert path_from_node_id("root") == []


def test_data_to_tree_keeps_non_ascii_text() -> None:
    nodes = data_to_tree({"city": "Montréal"})

    assert nodes[0].label == 'city: "Montréal"'
