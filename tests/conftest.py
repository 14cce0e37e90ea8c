from __future__ import annotations

from typing import Dict

import pytest
from fastapi.testclient import TestClient

from carecall.config import Settings
from carecall.services.call_store import InMemoryCallStore
from carecall.services.container import Services, wire_services
from tests.fakes.fake_clients import (
    FakeBlobStore,
    FakeClock,
    FakeDatabase,
    FakeSimilarityIndex,
    FakeTimer,
    FakeVoicePlatform,
    fake_fetch_recording,
)

INTERNAL_SECRET = "internal-test-secret"
VOICE_SECRET = "voice-test-secret"


@pytest.fixture(autouse=True)
def reset_rate_limits():
    from carecall.api import middleware

    middleware._rate_counts.clear()
    yield
    middleware._rate_counts.clear()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        environment="development",
        supabase_webhook_secret=INTERNAL_SECRET,
        vapi_webhook_secret=VOICE_SECRET,
        weaviate_url="",
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture()
def fake_db() -> FakeDatabase:
    return FakeDatabase(users={
        "42": {
            "id": "42",
            "name": "Rosa",
            "birth_date": "1956-05-10",
            "migrant_name": "Carlos",
            "relationship": "hijo",
            "companion": "Lupita",
        },
    })


@pytest.fixture()
def fake_voice() -> FakeVoicePlatform:
    return FakeVoicePlatform()


@pytest.fixture()
def fake_blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture()
def fake_index() -> FakeSimilarityIndex:
    return FakeSimilarityIndex()


@pytest.fixture()
def services(settings, fake_db, fake_voice, fake_blobs, fake_index, timer, clock) -> Services:
    return wire_services(
        settings,
        db=fake_db,
        voice=fake_voice,
        blob_store=fake_blobs,
        similarity_index=fake_index,
        store=InMemoryCallStore(),
        timer=timer,
        clock=clock,
        fetch_recording=fake_fetch_recording,
    )


@pytest.fixture()
def client(services):
    from carecall.api_server import create_app

    with TestClient(create_app(services)) as test_client:
        yield test_client


def internal_headers(token: str = INTERNAL_SECRET) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def new_user_payload(**overrides: str) -> Dict[str, str]:
    payload = {
        "user_id": "42",
        "user_phone": "55 1234 5678",
        "user_name": "Rosa",
        "migrant_name": "Carlos",
        "registered_at": "2026-03-02T15:00:00+00:00",
    }
    payload.update(overrides)
    return payload
