"""Schema document model: canonical document, history, clipboard and files.

Every structural edit follows the same transaction:
1) deep-copy the current document into a draft,
2) apply the change to the draft,
3) `_commit(draft, action)`.

`_commit` rejects drafts that do not serialize to JSON, records the previous
document as a `SchemaVersion`, swaps the draft in, clears every file's
`mapped_content`, drops cached improvement suggestions and persists a
snapshot. Rejected edits return False and leave a log entry; nothing here
raises on a bad path.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import re
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .event_log import EventLog
from .models import ClipboardEntry, JsonFile, SchemaImprovement, SchemaVersion, WorkspaceSnapshot
from .storage import SnapshotStorage

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 25
DEFAULT_SCHEMA_NAME = "DataSchema"
DEFAULT_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "Generated Schema",
    "type": "object",
    "properties": {},
}

_GROUP_NAME_PATTERN = re.compile(r"^Group (\d+)$", re.IGNORECASE)

ChangeListener = Callable[[], None]


def navigate(document: Any, path: list[str]) -> Any:
    """Follow `path` from the document root; None when any segment is missing."""
    current = document
    for segment in path:
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return None
    return current


def infer_schema(value: Any) -> dict[str, Any]:
    """Build a schema stub describing one JSON value."""
    if value is None:
        return {"type": "null", "description": "Nullable field"}
    if isinstance(value, list):
        return {
            "type": "array",
            "description": "List of items",
            "items": infer_schema(value[0]) if value else {},
        }
    if isinstance(value, dict):
        return {"type": "object", "description": "Object container", "properties": {}}
    # bool is an int subclass, so it must be checked before numbers.
    if isinstance(value, bool):
        return {"type": "boolean", "description": "Boolean flag"}
    if isinstance(value, (int, float)):
        return {"type": "number", "description": "Numeric value"}
    return {"type": "string", "description": "Text field"}


def node_template(node_type: str, key: str) -> dict[str, Any]:
    description = f"Description for {key}"
    if node_type == "object":
        return {"type": "object", "description": description, "properties": {}}
    if node_type == "array":
        return {"type": "array", "description": description, "items": {}}
    return {"type": node_type, "description": description}


def is_json_schema(value: Any) -> bool:
    """Heuristic: does this JSON value look like a JSON Schema document?"""
    if not isinstance(value, dict):
        return False
    if "$schema" in value:
        return True
    if "definitions" in value and ("type" in value or "properties" in value):
        return True
    if "type" in value and ("properties" in value or "items" in value):
        return True
    return bool(value.get("title")) and value.get("type") == "object"


def document_fingerprint(document: Any) -> str:
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _is_object_like(node: Any) -> bool:
    return isinstance(node, dict) and (node.get("type") == "object" or "properties" in node)


def _is_array_like(node: Any) -> bool:
    return isinstance(node, dict) and (node.get("type") == "array" or "items" in node)


def _is_within(path: list[str], ancestor: list[str]) -> bool:
    return len(path) >= len(ancestor) and path[: len(ancestor)] == ancestor


def _properties_owner(document: Any, path: list[str]) -> dict[str, Any] | None:
    """Node whose `properties` mapping holds the last segment of `path`.

    Accepts tree paths (`[..., "properties", key]`) as well as paths that skip
    the `properties` segment (`[..., owner, key]`).
    """
    if len(path) >= 2 and path[-2] == "properties":
        owner = navigate(document, path[:-2])
    else:
        owner = navigate(document, path[:-1])
    if isinstance(owner, dict) and isinstance(owner.get("properties"), dict):
        return owner
    return None


class SchemaDocumentModel:
    """Owns the schema document and everything derived from it."""

    def __init__(
        self,
        *,
        event_log: EventLog | None = None,
        storage: SnapshotStorage | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.event_log = event_log or EventLog()
        self.storage = storage
        self.history_limit = history_limit
        self._document: Any = copy.deepcopy(DEFAULT_SCHEMA)
        self._schema_name = DEFAULT_SCHEMA_NAME
        self._history: list[SchemaVersion] = []
        self._clipboard: ClipboardEntry | None = None
        self._selected_path: list[str] = []
        self._files: list[JsonFile] = []
        self._selected_file_id: str | None = None
        self._improvement_cache: dict[str, list[SchemaImprovement]] = {}
        self._listeners: list[ChangeListener] = []
        self._load_state()

    # Read access (always copies, so callers never alias the canonical state)

    @property
    def document(self) -> Any:
        return copy.deepcopy(self._document)

    @property
    def schema_name(self) -> str:
        return self._schema_name

    @property
    def history(self) -> tuple[SchemaVersion, ...]:
        return tuple(version.model_copy(deep=True) for version in self._history)

    @property
    def clipboard(self) -> ClipboardEntry | None:
        return self._clipboard.model_copy(deep=True) if self._clipboard else None

    @property
    def selected_path(self) -> list[str]:
        return list(self._selected_path)

    def select_path(self, path: list[str]) -> None:
        self._selected_path = list(path)

    def node_at(self, path: list[str]) -> Any:
        return copy.deepcopy(navigate(self._document, path))

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Whole-document updates

    def update_schema(self, document: Any, action: str) -> bool:
        return self._commit(copy.deepcopy(document), action)

    def load_schema(self, document: Any, name: str) -> bool:
        if not self.update_schema(document, f"Loaded schema: {name}"):
            return False
        self.set_schema_name(re.sub(r"\.json$", "", name, flags=re.IGNORECASE))
        return True

    def reset_schema(self) -> bool:
        self._selected_path = []
        committed = self._commit(copy.deepcopy(DEFAULT_SCHEMA), "Reset to new empty schema")
        if committed:
            self.set_schema_name("NewSchema")
        return committed

    def restore_version(self, version_id: str) -> bool:
        version = next((v for v in self._history if v.version_id == version_id), None)
        if version is None:
            self._reject(f"Unknown schema version: {version_id}")
            return False
        label = version.timestamp.astimezone().strftime("%H:%M:%S")
        return self._commit(copy.deepcopy(version.document), f"Restored from {label}")

    def set_schema_name(self, name: str) -> None:
        self._improvement_cache.pop(self._improvement_key(), None)
        self._schema_name = name
        self._save_state()
        self._notify()

    # Structural edits

    def add_fragment(self, fragment: Any, key: str, target_path: list[str] | None = None) -> bool:
        return self._insert_child(infer_schema(fragment), key, target_path, f"Added node: {key}")

    def add_node(self, node_type: str, key: str, target_path: list[str] | None = None) -> bool:
        return self._insert_child(
            node_template(node_type, key), key, target_path, f"Added {node_type}: {key}"
        )

    def rename_node(self, path: list[str], new_name: str) -> bool:
        if not path:
            return False
        old_name = path[-1]
        draft = copy.deepcopy(self._document)
        owner = _properties_owner(draft, path)
        if owner is None or old_name not in owner["properties"]:
            return False
        properties = owner["properties"]
        if new_name == old_name:
            return False
        if new_name in properties:
            self._reject(f"Cannot rename {old_name}: {new_name} already exists")
            return False
        owner["properties"] = {
            (new_name if name == old_name else name): node for name, node in properties.items()
        }
        return self._commit(draft, f"Renamed {old_name} to {new_name}")

    def delete_node(self, path: list[str]) -> bool:
        if not path:
            return False
        draft = copy.deepcopy(self._document)
        if not self._remove(draft, path):
            return False
        return self._commit(draft, f"Deleted node at {'/'.join(path)}")

    def copy_node(self, path: list[str], is_cut: bool = False) -> bool:
        node = navigate(self._document, path)
        if node is None:
            return False
        self._clipboard = ClipboardEntry(
            mode="cut" if is_cut else "copy",
            path=list(path),
            data=copy.deepcopy(node),
        )
        self.event_log.record(
            "info", "Node cut to clipboard" if is_cut else "Node copied to clipboard"
        )
        return True

    def paste_node(self, target_path: list[str]) -> bool:
        clipboard = self._clipboard
        if clipboard is None:
            return False
        if clipboard.mode == "cut" and clipboard.path and _is_within(target_path, clipboard.path):
            self._reject("Cannot paste a cut node into itself")
            return False

        draft = copy.deepcopy(self._document)
        target = navigate(draft, target_path)
        if not _is_object_like(target):
            self._reject("Cannot paste into this node type (target must be object properties)")
            return False

        key = clipboard.path[-1] if clipboard.path else "root"
        if clipboard.mode == "copy":
            key += "_copy"
        elif clipboard.path:
            # Remove the original first; `target` stays valid because it is
            # not inside the removed subtree.
            self._remove(draft, clipboard.path)
        target.setdefault("properties", {})[key] = copy.deepcopy(clipboard.data)

        if not self._commit(draft, "Pasted node"):
            return False
        if clipboard.mode == "cut":
            self._clipboard = None
        return True

    def move_node(self, source_path: list[str], target_path: list[str]) -> bool:
        if not source_path:
            return False
        if _is_within(target_path, source_path):
            self._reject("Cannot move a node into itself or one of its descendants")
            return False

        draft = copy.deepcopy(self._document)
        source_node = navigate(draft, source_path)
        if source_node is None:
            return False

        key = source_path[-1]
        self._remove(draft, source_path)
        # Resolved after the removal: the source may be the target's own mapping.
        target = navigate(draft, target_path)
        if not (isinstance(target, dict) and isinstance(target.get("properties"), dict)):
            self._reject("Invalid drop target (must be object properties)")
            return False
        target["properties"][key] = source_node
        return self._commit(draft, f"Moved {key}")

    # Improvement suggestions

    def cache_improvements(self, improvements: list[SchemaImprovement]) -> None:
        self._improvement_cache[self._improvement_key()] = [
            improvement.model_copy() for improvement in improvements
        ]

    def cached_improvements(self) -> list[SchemaImprovement] | None:
        cached = self._improvement_cache.get(self._improvement_key())
        return [improvement.model_copy() for improvement in cached] if cached is not None else None

    def clear_cached_improvements(self) -> None:
        self._improvement_cache.pop(self._improvement_key(), None)

    # Files

    def files(self) -> list[JsonFile]:
        return [f.model_copy(deep=True) for f in self._files]

    def all_files_flat(self) -> list[JsonFile]:
        return [f.model_copy(deep=True) for f in self._iter_files(self._files)]

    def find_file(self, file_id: str) -> JsonFile | None:
        found = self._find_file(file_id)
        return found.model_copy(deep=True) if found else None

    def add_file(self, name: str, content: Any) -> str:
        new_file = JsonFile(file_id=str(uuid4()), name=name, content=copy.deepcopy(content))
        self._files.append(new_file)
        self.event_log.record("info", f"File added: {name}")
        self._save_state()
        self._notify()
        return new_file.file_id

    def add_files(self, entries: list[tuple[str, Any]]) -> str | None:
        """Add one leaf file, or a new group holding several; returns the new id."""
        if not entries:
            return None
        if len(entries) == 1:
            name, content = entries[0]
            return self.add_file(name, content)

        group = JsonFile(
            file_id=str(uuid4()),
            name=self._next_group_name(),
            content=None,
            children=[
                JsonFile(file_id=str(uuid4()), name=name, content=copy.deepcopy(content))
                for name, content in entries
            ],
        )
        self._files.append(group)
        self.event_log.record("info", f"Created {group.name} with {len(entries)} files")
        self._save_state()
        self._notify()
        return group.file_id

    def group_files(self, target_id: str, source_id: str) -> bool:
        """Drop `source_id` onto `target_id`: join its group or form a new one."""
        if target_id == source_id:
            return False
        source = self._find_file(source_id)
        target = self._find_file(target_id)
        if source is None or target is None:
            return False
        if source.children is not None and self._contains_file(source, target_id):
            self._reject("Cannot move a group into one of its own members")
            return False

        self._detach_file(source_id)
        if target.children is not None:
            target.children.append(source)
            self.event_log.record("info", f"Moved {source.name} into {target.name}")
        else:
            group = JsonFile(
                file_id=str(uuid4()),
                name=self._next_group_name(),
                content=None,
                children=[target, source],
            )
            siblings = self._sibling_list(target_id)
            siblings[siblings.index(target)] = group
            self.event_log.record(
                "info", f"Created {group.name} containing {target.name} and {source.name}"
            )
        self._save_state()
        self._notify()
        return True

    def remove_file(self, file_id: str) -> bool:
        if self._detach_file(file_id) is None:
            return False
        if self._selected_file_id is not None and self._find_file(self._selected_file_id) is None:
            self._selected_file_id = None
        self._save_state()
        self._notify()
        return True

    def select_file(self, file_id: str | None) -> None:
        self._selected_file_id = file_id or None
        self._notify()

    def selected_file(self) -> JsonFile | None:
        if self._selected_file_id is None:
            return None
        return self.find_file(self._selected_file_id)

    def set_mapping(self, file_id: str, mapped_content: Any) -> bool:
        found = self._find_file(file_id)
        if found is None:
            return False
        found.mapped_content = copy.deepcopy(mapped_content)
        self._save_state()
        self._notify()
        return True

    @staticmethod
    def aggregate_content(file: JsonFile) -> Any:
        """Content for analysis: a leaf's content, or every sample in a group."""
        if file.children is None:
            return file.content
        samples: list[Any] = []

        def collect(item: JsonFile) -> None:
            if item.content:
                samples.append(item.content)
            for child in item.children or []:
                collect(child)

        for child in file.children:
            collect(child)
        if file.content:
            samples.append(file.content)
        return samples

    def clear(self) -> None:
        """Reset the whole workspace to defaults and drop the stored snapshot."""
        self._files = []
        self._selected_file_id = None
        self._document = copy.deepcopy(DEFAULT_SCHEMA)
        self._schema_name = DEFAULT_SCHEMA_NAME
        self._history = []
        self._clipboard = None
        self._selected_path = []
        self._improvement_cache.clear()
        if self.storage is not None:
            try:
                self.storage.clear_snapshot()
            except Exception as exc:  # noqa: BLE001
                self.event_log.record("error", "Failed to clear stored workspace", str(exc))
        self.event_log.record("info", "Workspace reset to defaults")
        self._notify()

    # Internals

    def _commit(self, draft: Any, action: str) -> bool:
        try:
            json.dumps(draft)
        except (TypeError, ValueError) as exc:
            self.event_log.record(
                "error", "Failed to update schema (not serializable)", {"error": str(exc)}
            )
            return False

        # Suggestions belong to the content being replaced.
        self._improvement_cache.pop(self._improvement_key(), None)
        self._history.insert(
            0,
            SchemaVersion(
                version_id=str(uuid4()),
                timestamp=datetime.now(tz=UTC),
                document=copy.deepcopy(self._document),
                action=action,
            ),
        )
        del self._history[self.history_limit :]
        self._document = draft
        for item in self._iter_files(self._files):
            item.mapped_content = None

        self.event_log.record("info", f"Schema updated: {action}")
        self._save_state()
        self._notify()
        return True

    def _insert_child(
        self,
        node: dict[str, Any],
        key: str,
        target_path: list[str] | None,
        action: str,
    ) -> bool:
        path = self._selected_path if target_path is None else target_path
        draft = copy.deepcopy(self._document)
        target = navigate(draft, path)
        if target is None:
            target = draft

        if _is_object_like(target):
            target.setdefault("properties", {})[key] = node
        elif _is_array_like(target):
            target["items"] = node
        elif not path and isinstance(draft, dict):
            draft.setdefault("properties", {})[key] = node
        else:
            self._reject("Cannot add child to non-object node")
            return False
        return self._commit(draft, action)

    @staticmethod
    def _remove(document: Any, path: list[str]) -> bool:
        parent = navigate(document, path[:-1])
        key = path[-1]
        if isinstance(parent, list):
            if key.isdigit() and int(key) < len(parent):
                parent.pop(int(key))
                return True
            return False
        if not isinstance(parent, dict):
            return False
        properties = parent.get("properties")
        if isinstance(properties, dict) and key in properties:
            del properties[key]
            return True
        if key in parent:
            del parent[key]
            return True
        return False

    def _reject(self, reason: str) -> None:
        logger.warning("schema_document event=rejected reason=%s", reason)
        self.event_log.record("error", reason)

    def _improvement_key(self) -> str:
        return f"{self._schema_name}:{document_fingerprint(self._document)}"

    @staticmethod
    def _iter_files(files: list[JsonFile]) -> Iterator[JsonFile]:
        for item in files:
            yield item
            if item.children is not None:
                yield from SchemaDocumentModel._iter_files(item.children)

    def _find_file(self, file_id: str) -> JsonFile | None:
        return next((f for f in self._iter_files(self._files) if f.file_id == file_id), None)

    def _sibling_list(self, file_id: str) -> list[JsonFile]:
        if any(f.file_id == file_id for f in self._files):
            return self._files
        for item in self._iter_files(self._files):
            if item.children is not None and any(c.file_id == file_id for c in item.children):
                return item.children
        raise KeyError(f"File {file_id} does not exist")

    def _detach_file(self, file_id: str) -> JsonFile | None:
        found = self._find_file(file_id)
        if found is None:
            return None
        siblings = self._sibling_list(file_id)
        siblings.remove(found)
        return found

    def _contains_file(self, group: JsonFile, file_id: str) -> bool:
        return any(f.file_id == file_id for f in self._iter_files(group.children or []))

    def _next_group_name(self) -> str:
        highest = 0
        for item in self._iter_files(self._files):
            match = _GROUP_NAME_PATTERN.match(item.name)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"Group {highest + 1}"

    def _snapshot(self) -> WorkspaceSnapshot:
        return WorkspaceSnapshot(
            files=self._files,
            document=self._document,
            schema_name=self._schema_name,
        )

    def _save_state(self) -> None:
        if self.storage is None:
            return
        try:
            self.storage.save_snapshot(self._snapshot().model_dump(mode="json"))
        except Exception as exc:  # noqa: BLE001
            self.event_log.record(
                "error", "Failed to save workspace snapshot (quota likely exceeded)", str(exc)
            )

    def _load_state(self) -> None:
        if self.storage is None:
            return
        try:
            raw = self.storage.load_snapshot()
            if raw is None:
                return
            snapshot = WorkspaceSnapshot.model_validate(raw)
        except Exception as exc:  # noqa: BLE001
            self.event_log.record("error", "Failed to load workspace snapshot", str(exc))
            return
        if snapshot.document is not None:
            self._document = snapshot.document
        self._schema_name = snapshot.schema_name
        self._files = snapshot.files
        self.event_log.record("info", "Workspace restored from snapshot storage")

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()
