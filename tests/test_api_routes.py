"""Tests for API routes."""

import time
from types import SimpleNamespace

import requests
from fastapi.testclient import TestClient

from concierge.clients.places import PlaceDetails, PlaceSummary
from concierge.main import create_app
from concierge.models import CallStatus, Coordinates
from concierge.notifications import SmsNotifier
from concierge.routing import RoutingPolicy

STRICT = RoutingPolicy(orchestrator_enabled=True, orchestrator_url="http://kestra:8080", strict_mode=True)

BATCH_BODY = {
    "providers": [
        {"name": "ABC Plumbing", "phone": "(864) 555-0100", "id": "p1"},
        {"name": "XYZ Plumbing", "phone": "+18645550101", "id": "p2"},
    ],
    "serviceNeeded": "plumbing",
    "userCriteria": "licensed, available this week",
    "serviceRequestId": "req-1",
}


def test_root_endpoint(client):
    """Test root endpoint returns API info."""
    response = client.get("/")
    assert response.status_code == 200

    data = response.json()
    assert "message" in data
    assert data["endpoints"]["batch_call"] == "/providers/batch-call"


def test_call_single_provider(client):
    response = client.post(
        "/providers/call",
        json={"providerName": "ABC Plumbing", "providerPhone": "(864) 555-0100", "serviceNeeded": "plumbing"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["data"]["status"] == "completed"
    assert data["data"]["provider"]["phone"] == "+18645550100"
    assert data["data"]["backend"] == "direct_vapi"


def test_call_single_provider_bad_phone(client):
    response = client.post(
        "/providers/call",
        json={"providerName": "ABC Plumbing", "providerPhone": "555-0100", "serviceNeeded": "plumbing"},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_call_missing_fields(client):
    response = client.post("/providers/call", json={"providerName": "ABC Plumbing"})
    assert response.status_code == 422


def test_batch_call_returns_results_and_recommendations(client):
    response = client.post("/providers/batch-call", json={**BATCH_BODY, "maxConcurrent": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["stats"]["total"] == 2
    assert body["data"]["stats"]["windows"] == [1, 1]
    assert [r["provider"]["name"] for r in body["data"]["results"]] == ["ABC Plumbing", "XYZ Plumbing"]
    recs = body["recommendations"]["recommendations"]
    assert [r["providerName"] for r in recs] == ["ABC Plumbing", "XYZ Plumbing"]
    assert body["recommendations"]["usedFallback"] is True
    assert body["notificationSid"] is None


def test_batch_call_all_failed(make_container):
    with TestClient(create_app(make_container(status=CallStatus.ERROR))) as client:
        response = client.post("/providers/batch-call", json=BATCH_BODY)

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert len(body["data"]["errors"]) == 2
    assert body["recommendations"]["recommendations"] == []


def test_batch_call_strict_mode_unavailable(make_container, down_orchestrator):
    app = create_app(make_container(policy=STRICT, orchestrator=down_orchestrator))
    with TestClient(app) as client:
        response = client.post("/providers/batch-call", json=BATCH_BODY)

    assert response.status_code == 503
    assert "strict mode" in response.json()["error"]


def test_batch_call_rejects_excess_concurrency(client):
    response = client.post("/providers/batch-call", json={**BATCH_BODY, "maxConcurrent": 50})
    assert response.status_code == 422


def test_batch_call_async_completes(client):
    response = client.post("/providers/batch-call-async", json=BATCH_BODY)
    assert response.status_code == 202
    job_id = response.json()["data"]["jobId"]

    job = None
    for _ in range(100):
        job = client.get(f"/providers/batch-status/{job_id}").json()["data"]
        if job["status"] in ("completed", "failed"):
            break
        time.sleep(0.01)

    assert job["status"] == "completed"
    assert job["result"]["stats"]["completed"] == 2
    assert len(job["recommendations"]["recommendations"]) == 2


def test_batch_status_unknown_job(client):
    assert client.get("/providers/batch-status/nope").status_code == 404


def test_call_system_status(client):
    response = client.get("/providers/call/status")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["activeMethod"] == "direct_vapi"
    assert data["kestra"]["enabled"] is False
    assert data["fallbackAvailable"] is True


def test_recommend_endpoint(client, make_request, make_result):
    results = [
        make_result(make_request(0)).model_dump(by_alias=True, mode="json"),
        make_result(make_request(1), status=CallStatus.NO_ANSWER).model_dump(by_alias=True, mode="json"),
    ]
    response = client.post("/providers/recommend", json={"callResults": results, "originalCriteria": "licensed"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert [r["providerName"] for r in data["recommendations"]] == ["Provider 0"]
    assert data["stats"]["totalCalls"] == 2


def test_recommend_rejects_bad_weights(client):
    response = client.post("/providers/recommend", json={"callResults": [], "weights": {"availabilityUrgency": 0.9}})
    assert response.status_code == 422


class FakePlaces:
    async def text_search(self, query, coordinates=None, radius_meters=50000, max_results=20):
        return [
            PlaceSummary(place_id="place-1", name="ABC Plumbing", rating=4.8, review_count=120,
                         location=Coordinates(latitude=34.85, longitude=-82.40)),
            PlaceSummary(place_id="place-2", name="Low Rated", rating=2.1, review_count=3),
        ]

    async def get_details(self, place_id):
        return PlaceDetails(place_id=place_id, phone="(864) 555-0100")


def test_research_endpoint(make_container):
    with TestClient(create_app(make_container(places=FakePlaces()))) as client:
        response = client.post(
            "/providers/research",
            json={"service": "plumber", "location": "Greenville, SC", "minRating": 4.0, "minEnrichedResults": 1},
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "success"
    assert data["method"] == "google_places"
    assert [p["name"] for p in data["providers"]] == ["ABC Plumbing"]
    assert data["providers"][0]["phone"] == "+18645550100"


def test_research_without_places(client):
    response = client.post("/providers/research", json={"service": "plumber", "location": "Greenville"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "error"


def test_vapi_webhook_caches_result(client):
    payload = {
        "message": {
            "type": "end-of-call-report",
            "call": {
                "id": "call_abc",
                "status": "ended",
                "endedReason": "customer-did-not-answer",
                "metadata": {"providerName": "ABC Plumbing"},
            },
        }
    }
    response = client.post("/vapi/webhook", json=payload)
    assert response.status_code == 200
    assert response.json()["status"] == "no_answer"

    cached = client.get("/vapi/calls/call_abc")
    assert cached.status_code == 200
    data = cached.json()["data"]
    assert data["callId"] == "call_abc"
    assert data["dataStatus"] == "complete"
    assert data["provider"]["name"] == "ABC Plumbing"

    stats = client.get("/vapi/cache/stats").json()["data"]
    assert stats["size"] == 1
    assert stats["entries"][0]["callId"] == "call_abc"

    assert client.delete("/vapi/calls/call_abc").status_code == 200
    assert client.get("/vapi/calls/call_abc").status_code == 404
    assert client.delete("/vapi/calls/call_abc").status_code == 404


def test_vapi_webhook_other_events_acknowledged(client):
    response = client.post("/vapi/webhook", json={"message": {"type": "status-update", "status": "ringing"}})
    assert response.status_code == 200
    assert response.json()["success"] is True


def test_vapi_webhook_invalid_payload(client):
    assert client.post("/vapi/webhook", json={"message": {"type": "made-up"}}).status_code == 400
    assert client.post("/vapi/webhook", content=b"not json").status_code == 400


def test_vapi_webhook_end_of_call_without_call(client):
    response = client.post("/vapi/webhook", json={"message": {"type": "end-of-call-report"}})
    assert response.status_code == 400


class UnreachableTwilioMessages:
    def create(self, **kwargs):
        raise requests.exceptions.ConnectionError("twilio unreachable")


def test_batch_call_sms_failure_still_returns_results(make_container):
    notifier = SmsNotifier(client=SimpleNamespace(messages=UnreachableTwilioMessages()), from_number="+18645550000")
    with TestClient(create_app(make_container(notifier=notifier))) as client:
        response = client.post("/providers/batch-call", json={**BATCH_BODY, "notifyPhone": "+18645559999"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["stats"]["completed"] == 2
    assert body["notificationSid"] is None
    assert "twilio unreachable" in body["notificationError"]
