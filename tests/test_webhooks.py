from __future__ import annotations

from carecall.config import Environment
from carecall.schemas.call import CallStatus
from carecall.services.blob_store import BucketClass
from tests.conftest import VOICE_SECRET, internal_headers, new_user_payload


def test_health_and_root(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "carecall"
    assert set(body["services"]) == {"database", "voice_platform", "blob_store", "similarity_index"}
    assert body["services"]["similarity_index"]["status"] == "disabled"
    assert client.get("/").json()["webhooks"]["voice"] == "/webhooks/voice"
    for path in ("/webhooks/internal/health", "/webhooks/voice/health", "/webhooks/carrier/health"):
        assert client.get(path).json()["status"] == "healthy"


def test_health_degraded_when_index_check_raises(client, fake_index) -> None:
    fake_index.fail = True

    response = client.get("/health")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "degraded"
    assert body["services"]["similarity_index"]["status"] == "unhealthy"
    assert body["services"]["database"]["status"] == "healthy"


def test_health_degraded_when_bucket_unavailable(client, fake_blobs) -> None:
    fake_blobs.failing = {BucketClass.LEGAL}

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["services"]["blob_store"]["status"] == "unhealthy"


def test_responses_carry_request_id(client) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert "X-Response-Time-Ms" in response.headers


def test_new_user_requires_bearer_token(client) -> None:
    assert client.post("/webhooks/internal/new-user", json=new_user_payload()).status_code == 401
    response = client.post(
        "/webhooks/internal/new-user", json=new_user_payload(), headers=internal_headers("wrong")
    )
    assert response.status_code == 401


def test_new_user_schedules_first_call(client, services, timer, settings) -> None:
    response = client.post("/webhooks/internal/new-user", json=new_user_payload(), headers=internal_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["received"] is True
    assert body["scheduled"] is True
    assert timer.delay_for(body["call_id"]) == settings.first_call_delay_minutes * 60

    listed = client.get("/api/calls").json()
    assert listed["count"] == 1
    assert listed["data"][0]["id"] == body["call_id"]


def test_new_user_missing_fields_is_400(client) -> None:
    response = client.post(
        "/webhooks/internal/new-user", json={"user_name": "Rosa"}, headers=internal_headers()
    )

    assert response.status_code == 400
    assert "user_id" in response.json()["error"]


def test_new_user_invalid_phone_is_400(client) -> None:
    response = client.post(
        "/webhooks/internal/new-user", json=new_user_payload(user_phone="123"), headers=internal_headers()
    )

    assert response.status_code == 400


def test_user_updated_is_acknowledged(client) -> None:
    response = client.post(
        "/webhooks/internal/user-updated",
        json={"user_id": "42", "updated_fields": {"phone": "5598765432"}},
        headers=internal_headers(),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_subscription_cancelled_keeps_calls_by_default(client) -> None:
    created = client.post("/webhooks/internal/new-user", json=new_user_payload(), headers=internal_headers()).json()

    response = client.post(
        "/webhooks/internal/subscription-cancelled",
        json={"user_id": "42", "reason": "too expensive"},
        headers=internal_headers(),
    )

    assert response.json() == {"received": True, "cancelled_calls": 0}
    assert client.get(f"/api/calls/{created['call_id']}").json()["status"] == "scheduled"


def test_subscription_cancelled_cancels_calls_when_enabled(client, services) -> None:
    services.settings = services.settings.model_copy(update={"feature_cancel_on_unsubscribe": True})
    created = client.post("/webhooks/internal/new-user", json=new_user_payload(), headers=internal_headers()).json()

    response = client.post(
        "/webhooks/internal/subscription-cancelled", json={"user_id": "42"}, headers=internal_headers()
    )

    assert response.json()["cancelled_calls"] == 1
    assert client.get(f"/api/calls/{created['call_id']}").json()["status"] == "cancelled"


def test_voice_webhook_acknowledges_unknown_calls(client) -> None:
    response = client.post("/webhooks/voice", json={"type": "call.ended", "call": {"id": "vapi_missing"}})

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "dropped"}


def test_voice_webhook_signature_checked_outside_development(client, services) -> None:
    services.settings = services.settings.model_copy(update={"environment": Environment.PRODUCTION})
    event = {"type": "speech.started", "call": {"id": "vapi_1"}}

    assert client.post("/webhooks/voice", json=event).status_code == 401
    ok = client.post("/webhooks/voice", json=event, headers={"x-vapi-signature": VOICE_SECRET})
    assert ok.status_code == 200


def test_voice_webhook_processing_errors_are_still_acknowledged(client, services) -> None:
    async def explode(*args, **kwargs):
        raise RuntimeError("store down")

    services.correlator.correlate = explode

    response = client.post("/webhooks/voice", json={"type": "call.started", "call": {"id": "vapi_1"}})

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "failed"}


def test_carrier_webhook_unwraps_data_envelope(client, fake_db) -> None:
    response = client.post(
        "/webhooks/carrier",
        json={"data": {"event_type": "call.answered", "payload": {"call_control_id": "ctrl_9"}}},
    )

    assert response.json() == {"received": True, "outcome": "handled"}
    assert fake_db.call_events[0]["call_control_id"] == "ctrl_9"


def test_call_operations(client, services, clock) -> None:
    created = client.post("/webhooks/internal/new-user", json=new_user_payload(), headers=internal_headers()).json()
    call_id = created["call_id"]

    new_time = "2026-03-05T16:00:00+00:00"
    rescheduled = client.post(f"/api/calls/{call_id}/reschedule", json={"scheduled_for": new_time})
    assert rescheduled.status_code == 200
    assert rescheduled.json()["scheduled_for"] == new_time

    assert client.post(f"/api/calls/{call_id}/cancel").status_code == 200
    assert client.post(f"/api/calls/{call_id}/cancel").status_code == 409

    stats = client.get("/api/stats").json()
    assert stats["total"] == 1
    assert stats["cancelled"] == 1

    assert client.get("/api/calls/nope").status_code == 404


def test_end_call_requires_live_call(client) -> None:
    created = client.post("/webhooks/internal/new-user", json=new_user_payload(), headers=internal_headers()).json()

    assert client.post(f"/api/calls/{created['call_id']}/end").status_code == 409


def test_context_endpoint_for_first_call(client) -> None:
    response = client.get("/api/context/42")

    assert response.status_code == 200
    body = response.json()
    assert body["variables"]["user_name"] == "Rosa"
    assert body["variables"]["last_topics"] == "primera llamada"

    context = body["context"]
    assert context["is_first_call"] is True
    assert context["emotional_trend"] == "unknown"
    assert context["similar_patterns"] == []
    assert "Carlos" in context["conversation_starters"][0]
    assert "PRIMERA LLAMADA" in body["briefing"]
    assert client.get("/api/context/999").status_code == 404


def test_context_endpoint_includes_history_analysis(client, fake_db, fake_index) -> None:
    fake_db.history["42"] = [
        {
            "external_call_id": "vapi_2",
            "created_at": "2026-02-28T15:00:00Z",
            "topics_discussed": ["salud", "familia"],
            "behavioral_codes": ["SAL"],
            "sentiment": "negativo",
            "follow_up_needed": True,
            "follow_up_reason": "dolor de rodilla",
        },
        {
            "external_call_id": "vapi_1",
            "created_at": "2026-02-20T15:00:00Z",
            "topics_discussed": ["familia", "comida"],
            "behavioral_codes": ["FAM", "SAL"],
            "sentiment": "positivo",
        },
    ]
    fake_index.results = [
        {"topics": ["familia"], "emotionalState": "positivo", "behavioralCodes": ["FAM"], "content": "..."},
    ]

    body = client.get("/api/context/42").json()
    context = body["context"]

    assert context["total_calls"] == 2
    assert context["dominant_topics"][0] == "familia"
    assert context["frequent_codes"][0] == "SAL"
    assert context["topics_to_revisit"] == ["salud", "familia"]
    assert context["topics_to_avoid"] == ["salud", "familia"]
    assert context["pending_follow_ups"] == [
        {"call_id": "vapi_2", "date": "2026-02-28T15:00:00Z", "reason": "dolor de rodilla"}
    ]
    assert context["emotional_trend"] == "estable_positivo"
    assert context["days_since_last_call"] is not None
    assert context["similar_patterns"] == [
        {"topics": ["familia"], "emotional_state": "positivo", "effective_responses": ["FAM"]}
    ]
    assert fake_index.queries == [("familia salud comida", 3)]
    assert "Temas para retomar: salud, familia" in body["briefing"]
    assert "Temas sensibles: salud, familia" in body["briefing"]


def test_similar_conversations(client, fake_index) -> None:
    fake_index.results = [{"content": "hablamos de [NOMBRE]", "topics": ["familia"]}]

    response = client.get("/api/similar", params={"topic": "familia", "limit": 3})

    assert response.json()["count"] == 1
    assert fake_index.queries == [("familia", 3)]


def test_test_call_refused_in_production(client, services) -> None:
    services.settings = services.settings.model_copy(update={"environment": Environment.PRODUCTION})

    response = client.post("/api/test-call", json={"user_id": "42", "phone": "5512345678"})

    assert response.status_code == 403


def test_test_call_schedules_immediate_call(client, services) -> None:
    response = client.post("/api/test-call", json={"user_id": "42", "phone": "5512345678"})

    assert response.status_code == 200
    assert response.json()["call_id"].startswith("call_42_")


def test_test_call_invalid_phone(client) -> None:
    response = client.post("/api/test-call", json={"user_id": "42", "phone": "99"})

    assert response.status_code == 400


def test_scheduled_call_listing_excludes_cancelled(client, services) -> None:
    first = client.post("/webhooks/internal/new-user", json=new_user_payload(), headers=internal_headers()).json()
    client.post("/webhooks/internal/new-user", json=new_user_payload(user_id="7"), headers=internal_headers())
    client.post(f"/api/calls/{first['call_id']}/cancel")

    listed = client.get("/api/calls").json()
    assert [c["user_id"] for c in listed["data"]] == ["7"]
    assert client.get("/api/calls", params={"user_id": "42"}).json()["count"] == 0
    assert client.get(f"/api/calls/{first['call_id']}").json()["status"] == CallStatus.CANCELLED.value
