"""Materialize schema documents and plain JSON data into display trees.

Node ids double as paths: `root.properties.address` addresses
`["properties", "address"]` in the document, so a selected tree node can be
fed straight back into the document model.
"""

from __future__ import annotations

import json
from typing import Any

from .models import TreeNode

DEFAULT_MAX_DEPTH = 20
COMBINATORS = ("oneOf", "anyOf", "allOf")
DESCRIPTION_LIMIT = 40
DATA_VALUE_LIMIT = 30


def resolve_ref(ref: str, root: Any) -> Any:
    """Resolve an internal `#/a/b` pointer against `root`; None when unresolved.

    Segments are used verbatim (no `~0`/`~1` unescaping).
    """
    if not ref.startswith("#/"):
        return None
    current = root
    for part in ref[2:].split("/"):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def schema_to_tree(
    node: Any,
    root: Any,
    key_name: str = "Root",
    id_path: str = "root",
    depth: int = 0,
    max_depth: int = DEFAULT_MAX_DEPTH,
    _expanding: frozenset[str] = frozenset(),
) -> TreeNode:
    if depth > max_depth:
        return TreeNode(id=id_path, label=f"{key_name} (Max Depth Reached)")

    schema = node if isinstance(node, dict) else {}

    ref = schema.get("$ref")
    if isinstance(ref, str):
        if ref in _expanding:
            return TreeNode(id=id_path, label=f"{key_name} (Circular Ref: {ref})")
        resolved = resolve_ref(ref, root)
        if resolved is None:
            return TreeNode(id=id_path, label=f"{key_name} (Unresolved Ref: {ref})")
        ref_name = ref.split("/")[-1]
        return TreeNode(
            id=id_path,
            label=f"{key_name} (Ref: {ref_name})",
            children=_schema_children(
                resolved, root, id_path, depth + 1, max_depth, _expanding | {ref}
            ),
        )

    label = f"{key_name} ({schema.get('type') or 'unknown'}"
    description = schema.get("description")
    if isinstance(description, str) and description:
        label += f", {_truncate_description(description)}"
    label += ")"

    return TreeNode(
        id=id_path,
        label=label,
        children=_schema_children(schema, root, id_path, depth, max_depth, _expanding),
    )


def _schema_children(
    schema: Any,
    root: Any,
    id_path: str,
    depth: int,
    max_depth: int,
    expanding: frozenset[str],
) -> list[TreeNode] | None:
    if not isinstance(schema, dict):
        return None
    children: list[TreeNode] = []
    has_structure = False

    for combinator in COMBINATORS:
        options = schema.get(combinator)
        if not isinstance(options, list):
            continue
        has_structure = True
        option_nodes = [
            schema_to_tree(
                option,
                root,
                f"Option {index + 1}",
                f"{id_path}.{combinator}.{index}",
                depth + 1,
                max_depth,
                expanding,
            )
            for index, option in enumerate(options)
        ]
        children.append(
            TreeNode(
                id=f"{id_path}.{combinator}",
                label=f"{combinator} ({len(option_nodes)} options)",
                children=option_nodes,
            )
        )

    properties = schema.get("properties")
    items = schema.get("items")
    if isinstance(properties, dict):
        has_structure = True
        # Property children are spliced in directly; ids keep the `properties`
        # segment so they still map onto document paths.
        for prop_key, prop_schema in properties.items():
            children.append(
                schema_to_tree(
                    prop_schema,
                    root,
                    prop_key,
                    f"{id_path}.properties.{prop_key}",
                    depth + 1,
                    max_depth,
                    expanding,
                )
            )
    elif isinstance(items, dict):
        has_structure = True
        children.append(
            schema_to_tree(
                items, root, "items", f"{id_path}.items", depth + 1, max_depth, expanding
            )
        )

    return children if has_structure else None


def data_to_tree(value: Any, id_prefix: str = "preview") -> list[TreeNode]:
    """Convert plain JSON data (not a schema) into tree nodes."""
    if isinstance(value, dict):
        entries = [(str(key), child) for key, child in value.items()]
    elif isinstance(value, list):
        entries = [(str(index), child) for index, child in enumerate(value)]
    else:
        return []

    nodes: list[TreeNode] = []
    for key, child in entries:
        node_id = f"{id_prefix}.{key}"
        if isinstance(child, (dict, list)):
            nodes.append(TreeNode(id=node_id, label=key, children=data_to_tree(child, node_id)))
        else:
            rendered = json.dumps(child, ensure_ascii=False)[:DATA_VALUE_LIMIT]
            nodes.append(TreeNode(id=node_id, label=f"{key}: {rendered}"))
    return nodes


def path_from_node_id(node_id: str) -> list[str]:
    if node_id.startswith("root."):
        return node_id[len("root.") :].split(".")
    return []


def _truncate_description(description: str) -> str:
    if len(description) > DESCRIPTION_LIMIT:
        return description[: DESCRIPTION_LIMIT - 3] + "..."
    return description
