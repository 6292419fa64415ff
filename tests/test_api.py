import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import SAMPLE_PREFERENCES
from serial_story.app import create_app
from serial_story.events import IMAGE_GENERATION_REQUESTED
from serial_story.models import GenerationStatus, Story

USER = {"X-User-Id": "user-1"}


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def put_preferences(client, headers=USER, **overrides):
    return client.put("/preferences", json={"preferences": {**SAMPLE_PREFERENCES, **overrides}}, headers=headers)


def test_health(client):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["event_bus"] == "LocalEventBus"


def test_requests_without_user_are_rejected(client):
    response = client.post("/workflow/start", json={"numberOfStories": 1})
    assert response.status_code == 401
    error = response.json()["error"]
    assert error["code"] == "UNAUTHORIZED"
    assert error["requestId"] == response.headers["X-Request-ID"]
    assert error["timestamp"].endswith("Z")


def test_preferences_round_trip(client):
    assert client.get("/preferences", headers=USER).status_code == 404
    assert put_preferences(client).status_code == 200

    body = client.get("/preferences", headers=USER).json()
    assert body["userId"] == "user-1"
    assert body["preferences"]["artStyle"] == "Modern"


def test_invalid_preferences(client):
    response = put_preferences(client, genres=["Cooking"])
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
    assert "Cooking" in response.json()["error"]["message"]


def test_start_workflow_and_poll_status(client, bus):
    put_preferences(client)
    response = client.post("/workflow/start", json={"numberOfStories": 2}, headers=USER)
    assert response.status_code == 202
    ack = response.json()
    assert ack["status"] == "STARTED"
    assert ack["numberOfStories"] == 2
    assert "estimatedCompletionTime" in ack

    pending = client.get(f"/status/{ack['requestId']}", headers=USER).json()
    assert pending["status"] == "PENDING"
    assert "result" not in pending

    asyncio.run(bus.drain())
    done = client.get(f"/status/{ack['requestId']}", headers=USER).json()
    assert done["status"] == "COMPLETED"
    assert done["progress"] == {"currentStep": "All episodes completed", "totalSteps": 3, "completedSteps": 3}
    assert len(done["result"]["storyIds"]) == 2

    other = client.get(f"/status/{ack['requestId']}", headers={"X-User-Id": "user-2"})
    assert other.status_code == 403


@pytest.mark.parametrize("body,code", [
    ("", "MISSING_BODY"),
    ("{not json", "INVALID_JSON"),
    ('{"numberOfStories": 20}', "VALIDATION_ERROR"),
])
def test_start_workflow_rejects_bad_bodies(client, body, code):
    put_preferences(client)
    response = client.post("/workflow/start", content=body,
                           headers={**USER, "Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == code


def test_start_workflow_is_rate_limited(client):
    put_preferences(client)
    for _ in range(5):
        assert client.post("/workflow/start", json={"numberOfStories": 1}, headers=USER).status_code == 202

    response = client.post("/workflow/start", json={"numberOfStories": 1}, headers=USER)
    assert response.status_code == 429
    assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(response.headers["Retry-After"]) >= 1


def test_status_of_unknown_request(client):
    assert client.get("/status/not-a-uuid", headers=USER).json()["error"]["code"] == "INVALID_REQUEST"
    response = client.get("/status/6f1c1e8e-2a4b-4a4e-9a55-000000000000", headers=USER)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "REQUEST_NOT_FOUND"


def test_stories_and_downloads(client, bus):
    put_preferences(client)
    client.post("/workflow/start", json={"numberOfStories": 1}, headers=USER)
    asyncio.run(bus.drain())

    [story] = client.get("/stories", headers=USER).json()["stories"]
    assert story["status"] == "COMPLETED"
    assert client.get("/stories", headers={"X-User-Id": "user-2"}).json() == {"stories": []}

    detail = client.get(f"/stories/{story['storyId']}", headers=USER).json()
    [episode] = detail["episodes"]
    assert episode["episodeNumber"] == 1

    markdown = client.get(f"/stories/{story['storyId']}/download", headers=USER)
    assert markdown.headers["content-type"].startswith("text/markdown")
    assert markdown.text.startswith("# Story 1")

    pdf = client.get(f"/episodes/{episode['episodeId']}/download", headers=USER)
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")

    assert client.get(f"/stories/{story['storyId']}", headers={"X-User-Id": "user-2"}).status_code == 404
    assert client.get("/episodes/missing/download", headers=USER).json()["error"]["code"] == "EPISODE_NOT_FOUND"


def test_download_before_story_is_ready(client, services):
    asyncio.run(services.stories.create_if_absent(
        Story(story_id="draft", user_id="user-1", status=GenerationStatus.PROCESSING)
    ))
    response = client.get("/stories/draft/download", headers=USER)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "NOT_READY"


def test_continue_story_endpoint(client, bus):
    put_preferences(client)
    client.post("/workflow/start", json={"numberOfStories": 1}, headers=USER)
    asyncio.run(bus.drain())
    [story] = client.get("/stories", headers=USER).json()["stories"]

    response = client.post(f"/stories/{story['storyId']}/episodes", headers=USER)
    assert response.status_code == 202
    ack = response.json()
    assert ack["episodeNumber"] == 2
    assert ack["status"] == "GENERATING"

    asyncio.run(bus.drain())
    status = client.get(f"/status/{ack['requestId']}", headers=USER).json()
    assert status["type"] == "EPISODE"
    assert status["result"]["downloadUrl"] == f"/episodes/{ack['episodeId']}/download"

    missing = client.post("/stories/nope/episodes", headers=USER)
    assert missing.json()["error"]["code"] == "STORY_NOT_FOUND"


def test_pushed_events_are_dispatched(client, services, bus, generator):
    put_preferences(client)
    client.post("/workflow/start", json={"numberOfStories": 1}, headers=USER)
    asyncio.run(bus.drain())
    [image_event] = bus.events(IMAGE_GENERATION_REQUESTED)

    response = client.post("/events", json=image_event.to_entry("serial-story-events-test"))
    assert response.json() == {"ok": True, "detailType": IMAGE_GENERATION_REQUESTED, "dispatched": True}
    # the episode was already rendered, so the redelivery generated nothing
    assert generator.image_calls == 2

    bad = client.post("/events", json={"source": "someone.else", "detailType": "Nope", "detail": {}})
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "EVENT_VALIDATION_ERROR"
