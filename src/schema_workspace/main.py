"""FastAPI application wiring for the schema workspace.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: startup/shutdown hook; here it starts and stops the job scheduler loop.
- app.state: shared runtime objects (event log, scheduler, document model, jobs).

Routes are `async def` so they run on the event loop thread that also runs
job task bodies; the scheduler and the document model stay single-threaded.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request

from .app.assistant import SchemaAssistant, WorkspaceJobs
from .app.event_log import EventLog
from .app.jobs import JobScheduler
from .app.llm import AIBackend, OpenAIChatCompletionsAdapter
from .app.models import (
    AddFilesRequest,
    AddFragmentRequest,
    AddNodeRequest,
    ApplyImprovementsRequest,
    ClipboardEntry,
    CopyNodeRequest,
    FileJobRequest,
    GroupFilesRequest,
    Job,
    JobSubmittedResponse,
    JsonFile,
    LoadSchemaRequest,
    LogEntry,
    ModifySchemaRequest,
    MoveNodeRequest,
    NodePathRequest,
    RenameNodeRequest,
    SampleDataRequest,
    SchemaImprovement,
    SchemaNameRequest,
    SchemaVersion,
    TreeNode,
)
from .app.schema_document import SchemaDocumentModel
from .app.settings import Settings, get_settings
from .app.storage import InMemorySnapshotStorage, PostgresSnapshotStorage, SnapshotStorage
from .app.tree import data_to_tree, schema_to_tree

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings_override: Settings | None = None,
    storage: SnapshotStorage | None = None,
    ai_backend: AIBackend | None = None,
) -> FastAPI:
    """Application factory.

    Each call builds a fresh workspace (event log, scheduler, document model),
    so tests can create an isolated app per case.
    """
    settings = settings_override or get_settings()

    # Fail fast if required configuration is missing.
    backend = ai_backend or build_ai_backend(settings)
    if settings.require_llm and backend is None:
        raise RuntimeError(
            "AI backend required but not configured. "
            "Set OPENAI_API_KEY and SCHEMA_WORKSPACE_LLM_PROVIDER=openai."
        )

    event_log = EventLog()
    snapshot_storage = storage or build_snapshot_storage(settings)
    document_model = SchemaDocumentModel(
        event_log=event_log,
        storage=snapshot_storage,
        history_limit=settings.history_limit,
    )
    scheduler = JobScheduler(
        event_log=event_log,
        max_running=settings.max_running_jobs,
        tick_interval_s=settings.tick_interval_s,
    )
    assistant = SchemaAssistant(backend, model=settings.llm_model, event_log=event_log)
    workspace_jobs = WorkspaceJobs(
        scheduler=scheduler,
        document_model=document_model,
        assistant=assistant,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.scheduler.start()
        try:
            yield
        finally:
            await app.state.scheduler.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.event_log = event_log
    app.state.document_model = document_model
    app.state.scheduler = scheduler
    app.state.workspace_jobs = workspace_jobs

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    # Jobs

    @app.get("/jobs", response_model=list[Job])
    async def list_jobs(request: Request) -> list[Job]:
        return list(request.app.state.scheduler.jobs())

    @app.get("/jobs/{job_id}", response_model=Job)
    async def get_job(job_id: str, request: Request) -> Job:
        job = request.app.state.scheduler.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, request: Request) -> dict[str, bool]:
        job = _require_job(request, job_id)
        if not request.app.state.scheduler.cancel(job_id):
            raise HTTPException(status_code=409, detail=f"Job is {job.status}, not pending")
        return {"cancelled": True}

    @app.post("/jobs/{job_id}/retry", response_model=Job)
    async def retry_job(job_id: str, request: Request) -> Job:
        job = _require_job(request, job_id)
        if not request.app.state.scheduler.retry(job_id):
            raise HTTPException(status_code=409, detail=f"Job is {job.status}, not failed")
        return _require_job(request, job_id)

    @app.post("/jobs/{job_id}/prioritize", response_model=list[Job])
    async def prioritize_job(job_id: str, request: Request) -> list[Job]:
        _require_job(request, job_id)
        request.app.state.scheduler.prioritize(job_id)
        return list(request.app.state.scheduler.jobs())

    @app.delete("/jobs/{job_id}")
    async def delete_job(job_id: str, request: Request) -> dict[str, bool]:
        job = _require_job(request, job_id)
        if not request.app.state.scheduler.delete(job_id):
            raise HTTPException(status_code=409, detail=f"Job is {job.status}, not completed")
        return {"deleted": True}

    @app.post("/jobs/analyze", response_model=JobSubmittedResponse)
    async def submit_analyze(payload: FileJobRequest, request: Request) -> JobSubmittedResponse:
        return _submit(lambda: request.app.state.workspace_jobs.submit_analyze(payload.file_id))

    @app.post("/jobs/modify", response_model=JobSubmittedResponse)
    async def submit_modify(payload: ModifySchemaRequest, request: Request) -> JobSubmittedResponse:
        return _submit(
            lambda: request.app.state.workspace_jobs.submit_modify(
                payload.instruction, payload.file_id
            )
        )

    @app.post("/jobs/map", response_model=JobSubmittedResponse)
    async def submit_mapping(payload: FileJobRequest, request: Request) -> JobSubmittedResponse:
        return _submit(lambda: request.app.state.workspace_jobs.submit_mapping(payload.file_id))

    @app.post("/jobs/improvements", response_model=JobSubmittedResponse)
    async def submit_improvements(request: Request) -> JobSubmittedResponse:
        return _submit(request.app.state.workspace_jobs.submit_improvements)

    @app.post("/jobs/improvements/apply", response_model=JobSubmittedResponse)
    async def submit_apply_improvements(
        payload: ApplyImprovementsRequest, request: Request
    ) -> JobSubmittedResponse:
        return _submit(
            lambda: request.app.state.workspace_jobs.submit_apply_improvements(
                payload.improvement_ids
            )
        )

    @app.post("/jobs/sample-data", response_model=JobSubmittedResponse)
    async def submit_sample_data(
        payload: SampleDataRequest, request: Request
    ) -> JobSubmittedResponse:
        return _submit(
            lambda: request.app.state.workspace_jobs.submit_sample_data(
                payload.instruction, payload.file_name
            )
        )

    # Schema document

    @app.get("/schema")
    async def get_schema(request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        return {"name": model.schema_name, "document": model.document}

    @app.put("/schema")
    async def load_schema(payload: LoadSchemaRequest, request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.load_schema(payload.document, payload.name))
        return {"name": model.schema_name, "document": model.document}

    @app.put("/schema/name")
    async def set_schema_name(payload: SchemaNameRequest, request: Request) -> dict[str, str]:
        request.app.state.document_model.set_schema_name(payload.name)
        return {"name": request.app.state.document_model.schema_name}

    @app.post("/schema/reset")
    async def reset_schema(request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.reset_schema())
        return {"name": model.schema_name, "document": model.document}

    @app.post("/schema/nodes")
    async def add_node(payload: AddNodeRequest, request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.add_node(payload.node_type, payload.key, payload.target_path))
        return model.document

    @app.post("/schema/fragments")
    async def add_fragment(payload: AddFragmentRequest, request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.add_fragment(payload.fragment, payload.key, payload.target_path))
        return model.document

    @app.post("/schema/rename")
    async def rename_node(payload: RenameNodeRequest, request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.rename_node(payload.path, payload.new_name))
        return model.document

    @app.post("/schema/delete")
    async def delete_node(payload: NodePathRequest, request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.delete_node(payload.path))
        return model.document

    @app.post("/schema/copy", response_model=ClipboardEntry)
    async def copy_node(payload: CopyNodeRequest, request: Request) -> ClipboardEntry:
        model: SchemaDocumentModel = request.app.state.document_model
        if not model.copy_node(payload.path, payload.is_cut):
            raise HTTPException(status_code=404, detail="Node not found")
        return model.clipboard

    @app.post("/schema/paste")
    async def paste_node(payload: NodePathRequest, request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.paste_node(payload.path))
        return model.document

    @app.post("/schema/move")
    async def move_node(payload: MoveNodeRequest, request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.move_node(payload.source_path, payload.target_path))
        return model.document

    @app.get("/schema/history", response_model=list[SchemaVersion])
    async def schema_history(request: Request) -> list[SchemaVersion]:
        return list(request.app.state.document_model.history)

    @app.post("/schema/history/{version_id}/restore")
    async def restore_version(version_id: str, request: Request) -> dict[str, Any]:
        model: SchemaDocumentModel = request.app.state.document_model
        if not any(v.version_id == version_id for v in model.history):
            raise HTTPException(status_code=404, detail="Version not found")
        _require_edit(model.restore_version(version_id))
        return model.document

    @app.get("/schema/tree", response_model=TreeNode)
    async def schema_tree(request: Request) -> TreeNode:
        document = request.app.state.document_model.document
        return schema_to_tree(document, document, max_depth=settings.tree_max_depth)

    @app.get("/schema/improvements", response_model=list[SchemaImprovement])
    async def cached_improvements(request: Request) -> list[SchemaImprovement]:
        return request.app.state.document_model.cached_improvements() or []

    # Files

    @app.get("/files", response_model=list[JsonFile])
    async def list_files(request: Request) -> list[JsonFile]:
        return request.app.state.document_model.files()

    @app.post("/files")
    async def add_files(payload: AddFilesRequest, request: Request) -> dict[str, str]:
        file_id = request.app.state.document_model.add_files(
            [(entry.name, entry.content) for entry in payload.files]
        )
        return {"file_id": file_id}

    @app.post("/files/group", response_model=list[JsonFile])
    async def group_files(payload: GroupFilesRequest, request: Request) -> list[JsonFile]:
        model: SchemaDocumentModel = request.app.state.document_model
        _require_edit(model.group_files(payload.target_id, payload.source_id))
        return model.files()

    @app.get("/files/{file_id}/preview-tree", response_model=list[TreeNode])
    async def preview_tree(file_id: str, request: Request) -> list[TreeNode]:
        found = request.app.state.document_model.find_file(file_id)
        if found is None:
            raise HTTPException(status_code=404, detail="File not found")
        return data_to_tree(found.mapped_content)

    @app.get("/logs", response_model=list[LogEntry])
    async def list_logs(request: Request) -> list[LogEntry]:
        return list(request.app.state.event_log.entries())

    return app


def build_ai_backend(settings: Settings) -> AIBackend | None:
    if settings.llm_provider.lower() != "openai":
        logger.warning(
            "app event=llm_disabled reason=unsupported_provider provider=%s",
            settings.llm_provider,
        )
        return None
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        logger.warning("app event=llm_disabled reason=missing_api_key")
        return None
    logger.info("app event=llm_configured provider=openai model=%s", settings.llm_model)
    return OpenAIChatCompletionsAdapter(
        api_key=api_key,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )


def build_snapshot_storage(settings: Settings) -> SnapshotStorage:
    if settings.database_url:
        logger.info("app event=storage_selected backend=postgres")
        return PostgresSnapshotStorage(settings.database_url)
    logger.info("app event=storage_selected backend=memory")
    return InMemorySnapshotStorage()


def _require_job(request: Request, job_id: str) -> Job:
    job = request.app.state.scheduler.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _require_edit(committed: bool) -> None:
    """Map a rejected document edit onto 409; the event log holds the reason."""
    if not committed:
        raise HTTPException(status_code=409, detail="Edit rejected; schema unchanged")


def _submit(submit: Callable[[], str]) -> JobSubmittedResponse:
    try:
        job_id = submit()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
    return JobSubmittedResponse(job_id=job_id)


# Module-level app for ASGI servers (`schema_workspace.main:app`).
app = create_app()
