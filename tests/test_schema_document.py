from __future__ import annotations

from schema_workspace.app.event_log import EventLog
from schema_workspace.app.models import SchemaImprovement
from schema_workspace.app.schema_document import (
    DEFAULT_SCHEMA,
    SchemaDocumentModel,
    infer_schema,
    is_json_schema,
    navigate,
)
from schema_workspace.app.storage import InMemorySnapshotStorage


def _property_names(model: SchemaDocumentModel, path: list[str] | None = None) -> list[str]:
    node = model.node_at(path or [])
    return list(node["properties"].keys())


def test_infer_schema_covers_json_kinds() -> None:
    assert infer_schema(1) == {"type": "number", "description": "Numeric value"}
    assert infer_schema(2.5)["type"] == "number"
    assert infer_schema(True) == {"type": "boolean", "description": "Boolean flag"}
    assert infer_schema("x") == {"type": "string", "description": "Text field"}
    assert infer_schema(None) == {"type": "null", "description": "Nullable field"}
    assert infer_schema({"a": 1}) == {
        "type": "object",
        "description": "Object container",
        "properties": {},
    }
    assert infer_schema([]) == {"type": "array", "description": "List of items", "items": {}}
    assert infer_schema(["a"])["items"] == {"type": "string", "description": "Text field"}


def test_add_fragment_infers_stub_at_root(document_model: SchemaDocumentModel) -> None:
    assert document_model.add_fragment(1, "count") is True

    assert document_model.node_at(["properties", "count"]) == {
        "type": "number",
        "description": "Numeric value",
    }
    assert document_model.history[0].action == "Added node: count"
    assert document_model.history[0].document == DEFAULT_SCHEMA


def test_add_node_uses_selected_path(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("object", "address")
    document_model.select_path(["properties", "address"])

    assert document_model.add_node("string", "street") is True
    assert document_model.node_at(["properties", "address", "properties", "street"]) == {
        "type": "string",
        "description": "Description for street",
    }


def test_add_node_to_array_replaces_items(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("array", "tags")

    assert document_model.add_node("string", "tag", ["properties", "tags"]) is True
    assert document_model.node_at(["properties", "tags", "items"])["type"] == "string"


def test_add_node_to_leaf_is_rejected(
    document_model: SchemaDocumentModel, event_log: EventLog
) -> None:
    document_model.add_node("string", "name")
    before = document_model.document

    assert document_model.add_node("string", "inner", ["properties", "name"]) is False
    assert document_model.document == before
    assert event_log.entries()[0].kind == "error"
    assert event_log.entries()[0].title == "Cannot add child to non-object node"


def test_rename_preserves_property_order(document_model: SchemaDocumentModel) -> None:
    for key in ("a", "b", "c"):
        document_model.add_node("string", key)

    assert document_model.rename_node(["properties", "b"], "bb") is True
    assert _property_names(document_model) == ["a", "bb", "c"]
    assert document_model.history[0].action == "Renamed b to bb"


def test_rename_onto_existing_sibling_is_rejected(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("string", "a")
    document_model.add_node("number", "b")
    history_length = len(document_model.history)

    assert document_model.rename_node(["properties", "a"], "b") is False
    assert document_model.node_at(["properties", "b"])["type"] == "number"
    assert len(document_model.history) == history_length


def test_rename_missing_node_is_noop(document_model: SchemaDocumentModel) -> None:
    assert document_model.rename_node(["properties", "ghost"], "spirit") is False
    assert document_model.rename_node([], "root") is False
    assert document_model.history == ()


def test_delete_then_add_creates_fresh_stub(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("object", "meta")
    document_model.add_node("string", "inner", ["properties", "meta"])

    assert document_model.delete_node(["properties", "meta"]) is True
    assert "meta" not in _property_names(document_model)

    document_model.add_node("object", "meta")
    assert document_model.node_at(["properties", "meta", "properties"]) == {}


def test_delete_missing_node_leaves_history_untouched(
    document_model: SchemaDocumentModel,
) -> None:
    assert document_model.delete_node(["properties", "nothing"]) is False
    assert document_model.history == ()


def test_copy_paste_appends_copy_suffix(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("string", "email")

    assert document_model.copy_node(["properties", "email"]) is True
    assert document_model.paste_node([]) is True

    assert _property_names(document_model) == ["email", "email_copy"]
    # Copy mode keeps the clipboard for repeated pastes.
    assert document_model.clipboard is not None
    assert document_model.clipboard.mode == "copy"


def test_cut_paste_moves_node_and_clears_clipboard(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("object", "contact")
    document_model.add_node("string", "phone")

    assert document_model.copy_node(["properties", "phone"], is_cut=True) is True
    assert document_model.paste_node(["properties", "contact"]) is True

    assert _property_names(document_model) == ["contact"]
    assert _property_names(document_model, ["properties", "contact"]) == ["phone"]
    assert document_model.clipboard is None


def test_cut_paste_into_own_subtree_is_rejected(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("object", "contact")
    document_model.copy_node(["properties", "contact"], is_cut=True)
    before = document_model.document

    assert document_model.paste_node(["properties", "contact"]) is False
    assert document_model.document == before
    assert document_model.clipboard is not None


def test_paste_into_leaf_is_rejected(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("string", "a")
    document_model.add_node("string", "b")
    document_model.copy_node(["properties", "a"])

    assert document_model.paste_node(["properties", "b"]) is False


def test_copy_missing_node_returns_false(document_model: SchemaDocumentModel) -> None:
    assert document_model.copy_node(["properties", "nope"]) is False
    assert document_model.clipboard is None


def test_move_node_into_object(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("object", "billing")
    document_model.add_node("string", "iban")

    assert document_model.move_node(["properties", "iban"], ["properties", "billing"]) is True
    assert _property_names(document_model) == ["billing"]
    assert document_model.node_at(["properties", "billing", "properties", "iban"]) is not None


def test_move_into_descendant_is_rejected(
    document_model: SchemaDocumentModel, event_log: EventLog
) -> None:
    document_model.add_node("object", "outer")
    document_model.add_node("object", "inner", ["properties", "outer"])
    before = document_model.document

    assert (
        document_model.move_node(
            ["properties", "outer"],
            ["properties", "outer", "properties", "inner"],
        )
        is False
    )
    assert document_model.move_node(["properties", "outer"], ["properties", "outer"]) is False
    assert document_model.document == before
    assert event_log.entries()[0].title == (
        "Cannot move a node into itself or one of its descendants"
    )


def test_move_onto_leaf_is_rejected(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("string", "a")
    document_model.add_node("string", "b")

    assert document_model.move_node(["properties", "a"], ["properties", "b"]) is False
    assert _property_names(document_model) == ["a", "b"]


def test_unserializable_update_is_rejected(
    document_model: SchemaDocumentModel, event_log: EventLog
) -> None:
    cyclic: dict[str, object] = {"type": "object"}
    cyclic["self"] = cyclic

    assert document_model.update_schema(cyclic, "cyclic") is False
    assert document_model.update_schema({"values": {1, 2}}, "set") is False
    assert document_model.document == DEFAULT_SCHEMA
    assert document_model.history == ()
    assert event_log.entries()[0].title == "Failed to update schema (not serializable)"


def test_history_is_capped_newest_first(document_model: SchemaDocumentModel) -> None:
    for index in range(30):
        document_model.add_node("string", f"field_{index}")

    history = document_model.history
    assert len(history) == 25
    assert history[0].action == "Added string: field_29"
    assert history[-1].action == "Added string: field_5"


def test_restore_records_current_document_and_alternates(
    document_model: SchemaDocumentModel,
) -> None:
    document_model.add_node("string", "first")
    state_a = document_model.document
    document_model.add_node("string", "second")
    state_b = document_model.document

    assert document_model.restore_version(document_model.history[0].version_id) is True
    assert document_model.document == state_a
    assert document_model.history[0].document == state_b
    assert document_model.history[0].action.startswith("Restored from ")

    assert document_model.restore_version(document_model.history[0].version_id) is True
    assert document_model.document == state_b


def test_restore_unknown_version_is_rejected(document_model: SchemaDocumentModel) -> None:
    assert document_model.restore_version("missing") is False
    assert document_model.history == ()


def test_readers_return_copies(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("string", "name")

    document = document_model.document
    document["properties"]["name"]["type"] = "number"
    history = document_model.history
    history[0].document["tampered"] = True

    assert document_model.node_at(["properties", "name"])["type"] == "string"
    assert "tampered" not in document_model.history[0].document


def test_load_and_reset_schema(document_model: SchemaDocumentModel) -> None:
    loaded = {"title": "Order", "type": "object", "properties": {"id": {"type": "string"}}}

    assert document_model.load_schema(loaded, "order.json") is True
    assert document_model.schema_name == "order"
    assert document_model.document == loaded

    assert document_model.reset_schema() is True
    assert document_model.schema_name == "NewSchema"
    assert document_model.document == DEFAULT_SCHEMA


def test_commit_clears_mapped_content(document_model: SchemaDocumentModel) -> None:
    file_id = document_model.add_file("data.json", {"a": 1})
    document_model.set_mapping(file_id, {"mapped": True})
    mapped = document_model.find_file(file_id)
    assert mapped is not None
    assert mapped.mapped_content == {"mapped": True}

    document_model.add_node("string", "b")

    cleared = document_model.find_file(file_id)
    assert cleared is not None
    assert cleared.mapped_content is None


def test_improvement_cache_follows_content_and_name(document_model: SchemaDocumentModel) -> None:
    improvement = SchemaImprovement(
        id="imp-1", title="Add description", description="Root lacks one", category="Documentation"
    )
    document_model.cache_improvements([improvement])
    assert document_model.cached_improvements() == [improvement]

    document_model.set_schema_name("Renamed")
    assert document_model.cached_improvements() is None

    document_model.cache_improvements([improvement])
    document_model.add_node("string", "x")
    assert document_model.cached_improvements() is None


def test_add_files_creates_numbered_groups(document_model: SchemaDocumentModel) -> None:
    single = document_model.add_files([("one.json", {"a": 1})])
    group_id = document_model.add_files([("a.json", {"a": 1}), ("b.json", {"b": 2})])

    files = document_model.files()
    assert [f.file_id for f in files] == [single, group_id]
    group = files[1]
    assert group.is_group
    assert group.name == "Group 1"
    assert [child.name for child in group.children or []] == ["a.json", "b.json"]
    assert len(document_model.all_files_flat()) == 4
    assert document_model.add_files([]) is None


def test_group_files_forms_and_extends_groups(document_model: SchemaDocumentModel) -> None:
    first = document_model.add_file("first.json", {"x": 1})
    second = document_model.add_file("second.json", {"y": 2})
    third = document_model.add_file("third.json", {"z": 3})

    assert document_model.group_files(first, second) is True
    files = document_model.files()
    assert len(files) == 2
    group = files[0]
    assert group.name == "Group 1"
    assert [child.file_id for child in group.children or []] == [first, second]

    assert document_model.group_files(group.file_id, third) is True
    group = document_model.files()[0]
    assert [child.file_id for child in group.children or []] == [first, second, third]
    assert len(document_model.files()) == 1


def test_group_cannot_join_its_own_member(document_model: SchemaDocumentModel) -> None:
    first = document_model.add_file("first.json", {})
    second = document_model.add_file("second.json", {})
    document_model.group_files(first, second)
    group_id = document_model.files()[0].file_id

    assert document_model.group_files(first, group_id) is False
    assert document_model.group_files(first, first) is False


def test_aggregate_content_collects_group_samples(document_model: SchemaDocumentModel) -> None:
    group_id = document_model.add_files([("a.json", {"a": 1}), ("b.json", {"b": 2})])
    group = document_model.find_file(group_id)
    assert group is not None

    assert SchemaDocumentModel.aggregate_content(group) == [{"a": 1}, {"b": 2}]


def test_remove_file_clears_selection(document_model: SchemaDocumentModel) -> None:
    file_id = document_model.add_file("a.json", {})
    document_model.select_file(file_id)
    assert document_model.selected_file() is not None

    assert document_model.remove_file(file_id) is True
    assert document_model.selected_file() is None
    assert document_model.remove_file(file_id) is False


def test_snapshot_round_trips_through_storage(event_log: EventLog) -> None:
    storage = InMemorySnapshotStorage()
    original = SchemaDocumentModel(event_log=event_log, storage=storage)
    original.add_file("data.json", {"a": 1})
    original.add_node("string", "a")
    original.set_schema_name("Customer")

    restored = SchemaDocumentModel(storage=storage)

    assert restored.schema_name == "Customer"
    assert restored.document == original.document
    assert [f.name for f in restored.files()] == ["data.json"]
    # History is not persisted.
    assert restored.history == ()


def test_storage_quota_failure_is_logged_not_raised(event_log: EventLog) -> None:
    model = SchemaDocumentModel(
        event_log=event_log, storage=InMemorySnapshotStorage(capacity_bytes=10)
    )

    assert model.add_node("string", "a") is True
    assert "a" in _property_names(model)
    titles = [entry.title for entry in event_log.entries()]
    assert "Failed to save workspace snapshot (quota likely exceeded)" in titles


def test_clear_resets_workspace(document_model: SchemaDocumentModel) -> None:
    document_model.add_file("a.json", {})
    document_model.add_node("string", "a")
    document_model.copy_node(["properties", "a"])

    document_model.clear()

    assert document_model.files() == []
    assert document_model.document == DEFAULT_SCHEMA
    assert document_model.history == ()
    assert document_model.clipboard is None
    assert document_model.storage.load_snapshot() is None


def test_subscribers_are_notified_on_commit(document_model: SchemaDocumentModel) -> None:
    calls: list[int] = []
    unsubscribe = document_model.subscribe(lambda: calls.append(1))

    document_model.add_node("string", "a")
    assert calls == [1]

    unsubscribe()
    document_model.add_node("string", "b")
    assert calls == [1]


def test_navigate_and_schema_detection() -> None:
    document = {"properties": {"items": [{"a": 1}]}}

    assert navigate(document, ["properties", "items", "0", "a"]) == 1
    assert navigate(document, ["properties", "missing"]) is None
    assert is_json_schema({"$schema": "x"}) is True
    assert is_json_schema({"type": "object", "properties": {}}) is True
    assert is_json_schema({"name": "Ann"}) is False


def test_rename_nested_property_keeps_siblings(document_model: SchemaDocumentModel) -> None:
    document_model.add_node("object", "address")
    for key in ("street", "city", "zip"):
        document_model.add_node("string", key, ["properties", "address"])

    assert document_model.rename_node(["properties", "address", "properties", "city"], "town")
    assert _property_names(document_model, ["properties", "address"]) == [
        "street",
        "town",
        "zip",
    ]


def test_move_of_targets_own_properties_map_is_rejected(
    document_model: SchemaDocumentModel, event_log: EventLog
) -> None:
    document_model.add_node("object", "a", [])
    before = document_model.document

    assert document_model.move_node(["properties", "a", "properties"], ["properties", "a"]) is False
    assert document_model.document == before
    assert event_log.entries()[0].title == "Invalid drop target (must be object properties)"
