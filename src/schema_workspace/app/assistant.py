"""AI-assisted schema operations and the job task bodies that run them.

Beginner terms:
- Task body: async function the scheduler runs for one job. It receives the
  job record and appends every backend request/response to it.
- Commit: handing the AI result to the document model, which records history
  and invalidates mapped previews.

Each `submit_*` method on `WorkspaceJobs` only queues work. The schema is read
when the job actually runs, so queued jobs always see the latest document.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from .event_log import EventLog
from .jobs import JobScheduler
from .llm import AIBackend, InvalidAIResponseError, parse_json_response
from .models import Job, JsonFile, SchemaImprovement
from .schema_document import SchemaDocumentModel, document_fingerprint

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTIONS = (
    "You are a precise data architect working on JSON Schema (draft 2020-12). "
    "Every property you emit has a 'type' and a 'description'. "
    "Answer with JSON only, without markdown."
)

IMPROVEMENT_ANALYSIS_PROMPT = """
You are a senior data architect. Review the JSON Schema below for improvements in:
1. Naming: inconsistent casing or vague names.
2. Documentation: missing 'description' or 'title'.
3. Type: loose types or missing formats (email, date-time, ...).
4. Structure: redundant nesting or needless complexity.
5. Validation: missing required fields or constraints.
6. Extension: standard fields the domain usually has but the schema lacks.

Return a JSON array. Each element has "id", "category" (one of Naming,
Documentation, Type, Structure, Validation, Optimization, Extension), "title"
and "description". Return only the array.
"""

IMPROVEMENT_APPLY_PROMPT = """
You are a data architect. Apply exactly the improvements listed below to the
JSON Schema. Keep every existing valid field unless an improvement restructures
it, add suggested fields with type and description, and return only the
resulting JSON Schema object.
"""

PREVIEW_CHARS = 100


class SchemaAssistant:
    """Prompts for schema work on top of an `AIBackend`."""

    def __init__(
        self,
        backend: AIBackend | None,
        *,
        model: str,
        event_log: EventLog | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.event_log = event_log or EventLog()

    async def generate(
        self,
        prompt: str,
        system_instruction: str | None = None,
        job: Job | None = None,
    ) -> str:
        if self.backend is None:
            raise RuntimeError(
                "AI backend is not configured. Set OPENAI_API_KEY or "
                "SCHEMA_WORKSPACE_OPENAI_API_KEY."
            )
        self.event_log.record(
            "request",
            "AI generate",
            {
                "model": self.model,
                "prompt": prompt[:PREVIEW_CHARS],
                "system_instruction": system_instruction,
            },
        )
        if job is not None:
            job.request_log.append(
                {
                    "timestamp": _now_iso(),
                    "model": self.model,
                    "prompt": prompt,
                    "system_instruction": system_instruction,
                }
            )
        try:
            text = await self.backend.generate(self.model, prompt, system_instruction)
        except Exception as exc:
            logger.warning("assistant event=generate_failed model=%s error=%s", self.model, exc)
            self.event_log.record("error", "AI backend error", {"error": str(exc)})
            if job is not None:
                job.response_log.append({"timestamp": _now_iso(), "error": str(exc)})
            raise

        self.event_log.record("response", "AI response", {"text": text[:PREVIEW_CHARS]})
        if job is not None:
            job.response_log.append({"timestamp": _now_iso(), "text": text})
        return text

    async def generate_json(
        self,
        prompt: str,
        system_instruction: str | None = None,
        job: Job | None = None,
    ) -> Any:
        text = await self.generate(prompt, system_instruction, job)
        try:
            return parse_json_response(text)
        except InvalidAIResponseError:
            self.event_log.record("error", "Failed to parse AI JSON response", {"text": text})
            raise

    async def analyze_and_create_schema(
        self,
        source: Any,
        current_schema: Any,
        job: Job | None = None,
    ) -> dict[str, Any]:
        label = (
            "Source JSON data (array of samples from a file group)"
            if isinstance(source, list)
            else "Source JSON data"
        )
        prompt = (
            "Analyze the SOURCE JSON data and update the TARGET JSON SCHEMA "
            "(draft 2020-12) so it covers every field in the source.\n"
            "Rules:\n"
            "1. Every property has a 'type' and a 'description'.\n"
            "2. Set a descriptive root 'title' (for example 'CustomerProfile').\n"
            "3. Keep every existing schema field; when names collide keep the schema "
            "version; only add missing fields.\n"
            "4. An array of samples describes one object of that type.\n"
            "5. Return only the JSON Schema object.\n\n"
            f"Current target schema:\n{json.dumps(current_schema)}\n\n"
            f"{label}:\n{json.dumps(source)[:15000]}"
        )
        return _require_object(await self.generate_json(prompt, SYSTEM_INSTRUCTIONS, job))

    async def modify_schema(
        self,
        current_schema: Any,
        instruction: str,
        source: Any = None,
        job: Job | None = None,
    ) -> dict[str, Any]:
        prompt = (
            "Modify the JSON SCHEMA below following the user's instructions.\n\n"
            f"User instructions: {instruction}\n\n"
            "Rules:\n"
            "1. Every property has a 'type' and a 'description'.\n"
            "2. Keep a valid JSON Schema structure.\n"
            "3. Return only the modified JSON Schema object.\n\n"
            f"Current schema:\n{json.dumps(current_schema)}\n"
        )
        if source is not None:
            prompt += f"\nContext - source JSON sample:\n{json.dumps(source)[:5000]}\n"
        return _require_object(await self.generate_json(prompt, SYSTEM_INSTRUCTIONS, job))

    async def map_json(self, source: Any, schema: Any, job: Job | None = None) -> Any:
        prompt = (
            "Transform the SOURCE JSON into a new JSON value that validates against "
            "the TARGET JSON SCHEMA, mapping fields by meaning. Return only the JSON.\n\n"
            f"Target JSON schema:\n{json.dumps(schema)}\n\n"
            f"Source JSON:\n{json.dumps(source)[:10000]}"
        )
        return await self.generate_json(prompt, SYSTEM_INSTRUCTIONS, job)

    async def suggest_improvements(
        self,
        schema: Any,
        job: Job | None = None,
    ) -> list[SchemaImprovement]:
        prompt = f"{IMPROVEMENT_ANALYSIS_PROMPT}\nSchema:\n{json.dumps(schema, indent=2)}"
        parsed = await self.generate_json(prompt, None, job)
        # Some answers wrap the array in {"improvements": [...]}.
        if isinstance(parsed, dict):
            parsed = parsed.get("improvements")
        if not isinstance(parsed, list):
            raise InvalidAIResponseError(json.dumps(parsed))
        try:
            return [SchemaImprovement.model_validate(item) for item in parsed]
        except ValidationError as exc:
            raise InvalidAIResponseError(json.dumps(parsed)) from exc

    async def apply_improvements(
        self,
        schema: Any,
        improvements: list[SchemaImprovement],
        job: Job | None = None,
    ) -> dict[str, Any]:
        listing = "\n".join(f"- [{i.category}] {i.title}: {i.description}" for i in improvements)
        prompt = (
            f"{IMPROVEMENT_APPLY_PROMPT}\nImprovements to apply:\n{listing}\n\n"
            f"Current schema:\n{json.dumps(schema, indent=2)}"
        )
        return _require_object(await self.generate_json(prompt, None, job))

    async def generate_sample_data(
        self,
        schema: Any,
        instruction: str,
        job: Job | None = None,
    ) -> Any:
        prompt = (
            "Generate one complete, realistic JSON document that strictly follows the "
            "JSON Schema below. Fill every field and give arrays 3-5 items. "
            "Return only the JSON.\n\n"
            f"Instructions: {instruction or 'none'}\n\n"
            f"JSON schema:\n{json.dumps(schema)}"
        )
        return await self.generate_json(prompt, SYSTEM_INSTRUCTIONS, job)


class WorkspaceJobs:
    """Queue assistant work on the scheduler and commit results to the document."""

    def __init__(
        self,
        *,
        scheduler: JobScheduler,
        document_model: SchemaDocumentModel,
        assistant: SchemaAssistant,
    ) -> None:
        self.scheduler = scheduler
        self.document_model = document_model
        self.assistant = assistant

    def submit_analyze(self, file_id: str) -> str:
        source_file = self._require_file(file_id)

        async def run(job: Job) -> Any:
            current = self.document_model.find_file(file_id) or source_file
            source = SchemaDocumentModel.aggregate_content(current)
            schema = await self.assistant.analyze_and_create_schema(
                source, self.document_model.document, job
            )
            self._commit(schema, f"Analyzed {current.name}")
            return schema

        return self.scheduler.submit(
            f"Analyze {source_file.name}",
            ["Analyze source JSON and extend the target schema"],
            run,
            SYSTEM_INSTRUCTIONS,
        )

    def submit_modify(self, instruction: str, file_id: str | None = None) -> str:
        if file_id is not None:
            self._require_file(file_id)

        async def run(job: Job) -> Any:
            source = None
            if file_id is not None:
                current = self.document_model.find_file(file_id)
                if current is not None:
                    source = SchemaDocumentModel.aggregate_content(current)
            schema = await self.assistant.modify_schema(
                self.document_model.document, instruction, source, job
            )
            self._commit(schema, f"User prompt: {instruction[:60]}")
            return schema

        return self.scheduler.submit(
            "Modify schema",
            [instruction],
            run,
            SYSTEM_INSTRUCTIONS,
        )

    def submit_mapping(self, file_id: str) -> str:
        source_file = self._require_file(file_id)

        async def run(job: Job) -> Any:
            schema = self.document_model.document
            fingerprint = document_fingerprint(schema)
            mapped = await self.assistant.map_json(source_file.content, schema, job)
            # A mapping computed against an older schema must not be cached.
            if document_fingerprint(self.document_model.document) != fingerprint:
                raise RuntimeError("Schema changed while mapping; retry to map again")
            if not self.document_model.set_mapping(file_id, mapped):
                raise KeyError(f"File {file_id} no longer exists")
            return mapped

        return self.scheduler.submit(
            f"Map {source_file.name} to Schema",
            ["Map source to target schema"],
            run,
            SYSTEM_INSTRUCTIONS,
        )

    def submit_improvements(self) -> str:
        async def run(job: Job) -> Any:
            schema = self.document_model.document
            analyzed = (self.document_model.schema_name, document_fingerprint(schema))
            improvements = await self.assistant.suggest_improvements(schema, job)
            # Suggestions are cached for the content they were computed from only.
            current = (
                self.document_model.schema_name,
                document_fingerprint(self.document_model.document),
            )
            if current != analyzed:
                raise RuntimeError("Schema changed while analyzing; retry to refresh suggestions")
            self.document_model.cache_improvements(improvements)
            return [improvement.model_dump() for improvement in improvements]

        return self.scheduler.submit(
            f"Suggest improvements for {self.document_model.schema_name}",
            ["Analyze schema for improvements"],
            run,
        )

    def submit_apply_improvements(self, improvement_ids: list[str]) -> str:
        cached = self.document_model.cached_improvements() or []
        by_id = {improvement.id: improvement for improvement in cached}
        missing = [item_id for item_id in improvement_ids if item_id not in by_id]
        if missing:
            raise KeyError(f"Unknown improvement ids: {', '.join(missing)}")
        selected = [by_id[item_id] for item_id in improvement_ids]

        async def run(job: Job) -> Any:
            schema = await self.assistant.apply_improvements(
                self.document_model.document, selected, job
            )
            self._commit(schema, f"Applied {len(selected)} improvements")
            return schema

        return self.scheduler.submit(
            "Apply improvements",
            [f"[{i.category}] {i.title}" for i in selected],
            run,
        )

    def submit_sample_data(self, instruction: str, file_name: str) -> str:
        async def run(job: Job) -> Any:
            data = await self.assistant.generate_sample_data(
                self.document_model.document, instruction, job
            )
            file_id = self.document_model.add_file(file_name, data)
            return {"file_id": file_id}

        return self.scheduler.submit(
            f"Gen Data {file_name}",
            [instruction or "Generate sample data"],
            run,
            SYSTEM_INSTRUCTIONS,
        )

    def _require_file(self, file_id: str) -> JsonFile:
        found = self.document_model.find_file(file_id)
        if found is None:
            raise KeyError(f"File {file_id} does not exist")
        return found

    def _commit(self, schema: dict[str, Any], action: str) -> None:
        if not self.document_model.update_schema(schema, action):
            raise RuntimeError(f"Schema update was rejected: {action}")
        logger.info("assistant event=committed action=%s", action)


def _require_object(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise InvalidAIResponseError(json.dumps(value))
    return value


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()
