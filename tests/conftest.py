from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Iterator

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Importing task_agent.main builds the module-level app; keep its files out of the repo.
os.environ.setdefault("TASK_AGENT_DATA_DIR", tempfile.mkdtemp(prefix="task-agent-"))

from task_agent.assistant import AssistantBridge  # noqa: E402
from task_agent.session import SessionCoordinator  # noqa: E402
from task_agent.storage import SessionStore  # noqa: E402

from .fakes import FakeGenerationClient  # noqa: E402


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[SessionStore]:
    store = SessionStore(tmp_path / "session.sqlite3")
    yield store
    store.close()


@pytest.fixture()
def client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture()
def coordinator(store: SessionStore, client: FakeGenerationClient) -> SessionCoordinator:
    bridge = AssistantBridge(client, model="test-model")
    return SessionCoordinator("test-session", store, bridge)
