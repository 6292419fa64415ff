import asyncio

import pytest

from serial_story.errors import EventPublishError, NotFoundError, ValidationError
from serial_story.events import (
    BATCH_STORY_GENERATION_REQUESTED,
    BATCH_WORKFLOW_COMPLETED,
    EPISODE_GENERATION_REQUESTED,
    GENERATION_STATUS_UPDATED,
    IMAGE_GENERATION_REQUESTED,
)
from serial_story.models import GenerationStatus


def start_and_drain(services, bus, user_id="user-1", **payload):
    async def scenario():
        ack = await services.coordinator.start_workflow(user_id, payload)
        await bus.drain()
        return ack
    return asyncio.run(scenario())


def test_start_workflow_records_request_and_first_batch(services, bus, save_preferences):
    save_preferences()
    ack = asyncio.run(services.coordinator.start_workflow("user-1", {"numberOfStories": 5, "batchSize": 2}))

    assert ack.status == "STARTED"
    assert ack.number_of_stories == 5
    request = asyncio.run(services.ledger.get(ack.request_id))
    assert request.status == GenerationStatus.PENDING
    assert request.workflow_id == ack.workflow_id

    [event] = bus.events()
    assert event.detail_type == BATCH_STORY_GENERATION_REQUESTED
    assert event.detail.current_batch == 1
    assert event.detail.total_batches == 3
    assert event.detail.preferences.genres == ["Fantasy", "Adventure"]


@pytest.mark.parametrize("payload", [
    {},
    {"numberOfStories": 0},
    {"numberOfStories": 11},
    {"numberOfStories": "3"},
    {"numberOfStories": 2.5},
    {"numberOfStories": 3, "batchSize": 6},
    {"numberOfStories": 3, "batchSize": 0},
])
def test_invalid_requests_have_no_side_effects(services, bus, save_preferences, payload):
    save_preferences()
    with pytest.raises(ValidationError) as exc:
        asyncio.run(services.coordinator.start_workflow("user-1", payload))
    assert exc.value.code == "VALIDATION_ERROR"
    assert not bus.published
    assert asyncio.run(services.ledger.list_for_user("user-1")) == []


def test_missing_preferences(services, bus):
    with pytest.raises(ValidationError) as exc:
        asyncio.run(services.coordinator.start_workflow("user-1", {"numberOfStories": 1}))
    assert exc.value.code == "PREFERENCES_NOT_FOUND"
    assert not bus.published


def test_batches_advance_one_at_a_time(services, bus, generator, save_preferences):
    save_preferences()
    ack = start_and_drain(services, bus, numberOfStories=5, batchSize=2)

    batches = [e.detail.current_batch for e in bus.events(BATCH_STORY_GENERATION_REQUESTED)]
    assert batches == [1, 2, 3]
    [completed] = bus.events(BATCH_WORKFLOW_COMPLETED)
    assert completed.detail.completed_stories == 5
    assert len(completed.detail.story_ids) == 5
    assert generator.story_calls == 5

    stories = asyncio.run(services.stories.list_for_workflow(ack.workflow_id))
    assert sorted(s.story_id for s in stories) == sorted(completed.detail.story_ids)
    assert all(s.status == GenerationStatus.COMPLETED for s in stories)
    assert len(bus.events(EPISODE_GENERATION_REQUESTED)) == 5

    request = asyncio.run(services.ledger.get(ack.request_id))
    assert request.status == GenerationStatus.COMPLETED


def test_request_stays_processing_between_batches(services, bus, save_preferences):
    save_preferences()

    async def scenario():
        ack = await services.coordinator.start_workflow("user-1", {"numberOfStories": 2})
        [first] = bus.events(BATCH_STORY_GENERATION_REQUESTED)
        await services.story_worker.handle(first)
        return await services.ledger.get(ack.request_id)

    request = asyncio.run(scenario())
    assert request.status == GenerationStatus.PROCESSING
    assert [e.detail.current_batch for e in bus.events(BATCH_STORY_GENERATION_REQUESTED)] == [1, 2]


def test_three_story_workflow_end_to_end(services, bus, save_preferences):
    save_preferences()
    ack = start_and_drain(services, bus, numberOfStories=3)

    status = asyncio.run(services.status.get_status(ack.request_id, "user-1"))
    assert status.status == GenerationStatus.COMPLETED
    assert status.progress.current_step == "All episodes completed"
    assert (status.progress.completed_steps, status.progress.total_steps) == (3, 3)
    assert status.result.download_url == f"/stories/{status.result.story_id}/download"
    assert len(status.result.story_ids) == 3

    for story_id in status.result.story_ids:
        [episode] = asyncio.run(services.episodes.list_for_story(story_id))
        assert episode.episode_number == 1
        assert episode.status == GenerationStatus.COMPLETED
        assert episode.title == "Episode 1: The Gate"
        assert episode.image_count == 2
        assert services.blobs.get_bytes(episode.artifact_key).startswith(b"%PDF")
    assert len(bus.events(IMAGE_GENERATION_REQUESTED)) == 3
    assert all(not dead for dead in bus.dead_letters.values())

    [update] = bus.events(GENERATION_STATUS_UPDATED)
    assert update.detail.request_id == ack.request_id
    assert update.detail.status == GenerationStatus.COMPLETED
    assert update.detail.entity_id == status.result.story_id


def test_failure_on_second_item_halts_workflow(services, bus, generator, save_preferences):
    save_preferences()
    generator.fail_story_calls = {2}
    ack = start_and_drain(services, bus, numberOfStories=3)

    request = asyncio.run(services.ledger.get(ack.request_id))
    assert request.status == GenerationStatus.FAILED
    assert "story 2 of 3" in request.error_message
    assert "model overloaded" in request.error_message

    assert [e.detail.current_batch for e in bus.events(BATCH_STORY_GENERATION_REQUESTED)] == [1, 2]
    assert bus.events(BATCH_WORKFLOW_COMPLETED) == []

    stories = asyncio.run(services.stories.list_for_workflow(ack.workflow_id))
    by_status = sorted(s.status.value for s in stories)
    assert by_status == ["COMPLETED", "FAILED"]
    # retries find the request already failed and run out into the route's DLQ
    assert generator.story_calls == 2
    [dead] = bus.dead_letters["story-generation"]
    assert dead.attempts == 3
    assert "already failed" in dead.error

    # one announcement for the failure, none for the retries
    [update] = bus.events(GENERATION_STATUS_UPDATED)
    assert update.detail.status == GenerationStatus.FAILED
    assert update.detail.error_message == request.error_message

    status = asyncio.run(services.status.get_status(ack.request_id, "user-1"))
    assert status.progress is None
    assert status.error == request.error_message


def test_redelivered_batch_after_completion_is_dropped(services, bus, generator, save_preferences):
    save_preferences()
    start_and_drain(services, bus, numberOfStories=1)
    [first] = bus.events(BATCH_STORY_GENERATION_REQUESTED)
    published = len(bus.published)

    asyncio.run(services.story_worker.handle(first))
    assert generator.story_calls == 1
    assert len(bus.published) == published


def test_redelivered_batch_reuses_completed_stories(services, bus, generator, save_preferences):
    save_preferences()

    async def scenario():
        await services.coordinator.start_workflow("user-1", {"numberOfStories": 2})
        [first] = bus.events(BATCH_STORY_GENERATION_REQUESTED)
        await services.story_worker.handle(first)
        await services.story_worker.handle(first)

    asyncio.run(scenario())
    assert generator.story_calls == 1
    # both deliveries advanced to the same next batch
    assert [e.detail.current_batch for e in bus.events(BATCH_STORY_GENERATION_REQUESTED)] == [1, 2, 2]


def test_unknown_request_is_retried(services, bus, save_preferences):
    save_preferences()

    async def scenario():
        await services.coordinator.start_workflow("user-1", {"numberOfStories": 1})
        [event] = bus.events(BATCH_STORY_GENERATION_REQUESTED)
        event.detail.request_id = "00000000-0000-0000-0000-000000000000"
        await services.story_worker.handle(event)

    with pytest.raises(NotFoundError):
        asyncio.run(scenario())


def test_publish_failure_marks_request_failed(services, bus, save_preferences):
    save_preferences()

    async def broken_put_events(entries):
        raise EventPublishError("bus unavailable")

    bus.put_events = broken_put_events
    with pytest.raises(EventPublishError):
        asyncio.run(services.coordinator.start_workflow("user-1", {"numberOfStories": 1}))

    [request] = asyncio.run(services.ledger.list_for_user("user-1"))
    assert request.status == GenerationStatus.FAILED
    assert "bus unavailable" in request.error_message


def test_episode_worker_is_idempotent(services, bus, generator, save_preferences):
    save_preferences()
    start_and_drain(services, bus, numberOfStories=1)
    [episode_event] = bus.events(EPISODE_GENERATION_REQUESTED)

    async def redeliver():
        await services.episode_worker.handle(episode_event)
        await bus.drain()

    asyncio.run(redeliver())
    assert len(generator.episode_calls) == 1
    # the image stage saw the episode already rendered and did nothing new
    assert generator.image_calls == 2
    assert len(bus.events(IMAGE_GENERATION_REQUESTED)) == 2


def test_image_failures_are_skipped_until_none_succeed(services, bus, generator, save_preferences):
    save_preferences()
    generator.fail_image_calls = {1}
    start_and_drain(services, bus, numberOfStories=1)

    [story] = asyncio.run(services.stories.list_for_user("user-1"))
    [episode] = asyncio.run(services.episodes.list_for_story(story.story_id))
    assert episode.image_count == 1
    assert episode.artifact_key.endswith("episode.pdf")


def test_episode_fails_when_no_image_is_generated(services, bus, generator, save_preferences):
    save_preferences()
    # both scenes of the only episode
    generator.fail_image_calls = {1, 2}
    start_and_drain(services, bus, numberOfStories=1)

    [story] = asyncio.run(services.stories.list_for_user("user-1"))
    [episode] = asyncio.run(services.episodes.list_for_story(story.story_id))
    assert episode.status == GenerationStatus.FAILED
    assert "No images" in episode.error_message
    assert len(bus.dead_letters["image-generation"]) == 1
