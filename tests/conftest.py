"""
Shared fixtures: an in-memory SQLite database, in-memory key/value storage and
a FastAPI TestClient with the database dependency pointed at the test engine.
"""

import os
import sys
from pathlib import Path

# Configure before any project module reads the environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("DATA_HUB_TOKEN", "")

sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx
import pytest
from fastapi.testclient import TestClient

import core.cache
from core.agent_client import AgentClient
from core.agent_config import AgentCredential, AGENT_TYPES
from core.cache import KeyValueStore
from database import Base, SessionLocal, engine, get_db
from services.audit.task_registry import TaskRegistry

# Tests never talk to Redis
core.cache.kv_store._use_redis = False


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store():
    return KeyValueStore(use_redis=False)


@pytest.fixture
def tasks(store):
    return TaskRegistry(store=store)


def make_agent_client(handler, sleep=None) -> AgentClient:
    """AgentClient whose HTTP traffic goes to `handler` (an httpx.MockTransport handler)."""
    agents = {name: AgentCredential(f"{name}-key", "secret", f"{name}-uuid") for name in AGENT_TYPES}
    return AgentClient(
        host="http://agents.test",
        kb_id=1,
        account=AgentCredential("account-key", "account-secret"),
        agents=agents,
        http_client=httpx.Client(base_url="http://agents.test", transport=httpx.MockTransport(handler)),
        poll_interval=0,
        sleep=sleep or (lambda seconds: None),
    )


def chat_reply(text: str) -> dict:
    return {"code": 1, "choices": [{"type": "text", "content": text}]}


class FakeAgentClient:
    """Stands in for AgentClient in pipeline and audit tests; records every chat call."""

    def __init__(self, replies=None, error=None):
        self.replies = list(replies or [])
        self.error = error
        self.calls = []
        self.waited = []

    def chat(self, agent_type, user_input, state=None, chat_id=None, files=None):
        self.calls.append({"agent": agent_type, "state": state, "files": files})
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return chat_reply(reply)

    def wait_for_parsing(self, ds_id):
        self.waited.append(ds_id)
        return True

    get_text_content = staticmethod(AgentClient.get_text_content)


@pytest.fixture
def client(tasks):
    from app import app
    from core.dependencies import get_audit_sessions, get_task_registry
    from services.audit.orchestrator import AuditSessionRegistry

    sessions = AuditSessionRegistry(agent=None, tasks=tasks)

    def override_get_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_task_registry] = lambda: tasks
    app.dependency_overrides[get_audit_sessions] = lambda: sessions
    with TestClient(app) as test_client:
        test_client.sessions = sessions
        yield test_client
    app.dependency_overrides.clear()
