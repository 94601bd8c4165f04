from __future__ import annotations

import pytest

from scene_core import SceneClient
from tests.fakes import CountingStore, FakeGenai, FakeSession, FakeSleep
from workspace import Workspace


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def genai_client() -> FakeGenai:
    return FakeGenai()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def client(genai_client: FakeGenai, session: FakeSession, fake_sleep: FakeSleep) -> SceneClient:
    return SceneClient(genai_client, "test-key", session=session, sleep=fake_sleep)


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def workspace(client: SceneClient, store: CountingStore) -> Workspace:
    return Workspace(client, store)
