"""Pydantic models shared across the scheduler, document model, tree and API.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Field(default_factory=...): creates a fresh default object per instance.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Job lifecycle states used by the scheduler + API responses.
JobStatus = Literal["pending", "running", "finished", "failed"]

LogKind = Literal["info", "error", "request", "response"]

ClipboardMode = Literal["copy", "cut"]

ImprovementCategory = Literal[
    "Naming",
    "Structure",
    "Type",
    "Documentation",
    "Optimization",
    "Validation",
    "Extension",
]


class Job(BaseModel):
    """Canonical job record shape returned by the scheduler/API."""

    job_id: str
    name: str
    status: JobStatus = "pending"
    created_at: datetime
    # Prompt texts shown to the user for this job.
    prompts: list[str] = Field(default_factory=list)
    system_instructions: str | None = None
    result: Any = None
    error: str | None = None
    # Task bodies append backend calls here for observability.
    request_log: list[dict[str, Any]] = Field(default_factory=list)
    response_log: list[dict[str, Any]] = Field(default_factory=list)


class LogEntry(BaseModel):
    """One event log entry."""

    entry_id: str
    timestamp: datetime
    kind: LogKind
    title: str
    data: Any = None


class SchemaVersion(BaseModel):
    """Snapshot of the document as it was before one accepted commit."""

    version_id: str
    timestamp: datetime
    document: Any
    action: str


class ClipboardEntry(BaseModel):
    mode: ClipboardMode
    path: list[str]
    data: Any


class JsonFile(BaseModel):
    """A loaded JSON file, or a group of files when `children` is set."""

    file_id: str
    name: str
    content: Any = None
    # Cached "file transformed to match the current schema".
    mapped_content: Any = None
    children: list[JsonFile] | None = None

    @property
    def is_group(self) -> bool:
        return self.children is not None


class SchemaImprovement(BaseModel):
    id: str
    title: str
    description: str
    category: ImprovementCategory


class TreeNode(BaseModel):
    """Display-oriented node produced by tree projection."""

    id: str
    label: str
    children: list[TreeNode] | None = None


class WorkspaceSnapshot(BaseModel):
    """Blob written to snapshot storage."""

    files: list[JsonFile] = Field(default_factory=list)
    document: Any = None
    schema_name: str = "DataSchema"


class JobSubmittedResponse(BaseModel):
    """Response body for job submission endpoints."""

    job_id: str


class NodePathRequest(BaseModel):
    path: list[str] = Field(default_factory=list)


class AddNodeRequest(BaseModel):
    node_type: str = Field(min_length=1)
    key: str = Field(min_length=1)
    target_path: list[str] | None = None


class AddFragmentRequest(BaseModel):
    fragment: Any = None
    key: str = Field(min_length=1)
    target_path: list[str] | None = None


class RenameNodeRequest(BaseModel):
    path: list[str]
    new_name: str = Field(min_length=1)


class CopyNodeRequest(BaseModel):
    path: list[str]
    is_cut: bool = False


class MoveNodeRequest(BaseModel):
    source_path: list[str]
    target_path: list[str] = Field(default_factory=list)


class LoadSchemaRequest(BaseModel):
    document: dict[str, Any]
    name: str = Field(min_length=1)


class SchemaNameRequest(BaseModel):
    name: str = Field(min_length=1)


class NamedContent(BaseModel):
    name: str = Field(min_length=1)
    content: Any = None


class AddFilesRequest(BaseModel):
    """One file becomes a leaf; several become a new group."""

    files: list[NamedContent] = Field(min_length=1)


class GroupFilesRequest(BaseModel):
    target_id: str
    source_id: str


class FileJobRequest(BaseModel):
    file_id: str


class ModifySchemaRequest(BaseModel):
    instruction: str = Field(min_length=1)
    file_id: str | None = None


class ApplyImprovementsRequest(BaseModel):
    improvement_ids: list[str] = Field(min_length=1)


class SampleDataRequest(BaseModel):
    instruction: str = ""
    file_name: str = "sample.json"

