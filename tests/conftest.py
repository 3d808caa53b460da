from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from schema_workspace.app.event_log import EventLog
from schema_workspace.app.jobs import JobScheduler
from schema_workspace.app.schema_document import SchemaDocumentModel
from schema_workspace.app.settings import Settings
from schema_workspace.app.storage import InMemorySnapshotStorage

Response = str | dict[str, Any] | list[Any] | Exception | Callable[[str], str]


class FakeBackend:
    """Test-only AI backend that replays queued responses in order.

    Dict/list responses are serialized to JSON; callables receive the prompt;
    exceptions are raised.
    """

    def __init__(self, responses: list[Response] | None = None) -> None:
        self.responses: list[Response] = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: Response) -> None:
        self.responses.extend(responses)

    async def generate(
        self,
        model: str,
        prompt: str,
        system_instruction: str | None = None,
    ) -> str:
        self.calls.append(
            {"model": model, "prompt": prompt, "system_instruction": system_instruction}
        )
        if not self.responses:
            raise RuntimeError("FakeBackend has no queued response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        if isinstance(response, str):
            return response
        return json.dumps(response)


async def run_queued(scheduler: JobScheduler) -> None:
    """Admit pending jobs and wait until every execution has settled."""
    scheduler.tick()
    await scheduler.wait_idle()


@pytest.fixture
def event_log() -> EventLog:
    return EventLog()


@pytest.fixture
def document_model(event_log: EventLog) -> SchemaDocumentModel:
    return SchemaDocumentModel(event_log=event_log, storage=InMemorySnapshotStorage())


@pytest.fixture
def scheduler(event_log: EventLog) -> JobScheduler:
    return JobScheduler(event_log=event_log)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def test_settings() -> Settings:
    # The scheduler loop never reaches its first tick, so API tests decide
    # exactly when queued jobs are admitted.
    return Settings(_env_file=None, tick_interval_s=3600.0, openai_api_key="")


@pytest.fixture
def client(test_settings: Settings, fake_backend: FakeBackend) -> Iterator[TestClient]:
    from schema_workspace.main import create_app

    app = create_app(
        settings_override=test_settings,
        storage=InMemorySnapshotStorage(),
        ai_backend=fake_backend,
    )
    with TestClient(app) as test_client:
        yield test_client
