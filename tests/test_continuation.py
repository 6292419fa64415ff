import asyncio

import pytest

from serial_story.errors import ConflictError, EventPublishError, NotFoundError, PersistenceError, ValidationError
from serial_story.events import CONTINUE_EPISODE_REQUESTED
from serial_story.models import Episode, GenerationStatus, GenerationType, Story


def completed_story(services, user_id="user-1", story_id="story-1", with_preferences=True):
    from conftest import SAMPLE_PREFERENCES
    from serial_story.models import UserPreferencesData

    key = services.blobs.put_text(f"stories/{user_id}/{story_id}/story.md", "# The Courier\n\nA long road north.")
    story = Story(
        story_id=story_id,
        user_id=user_id,
        title="The Courier",
        content_key=key,
        status=GenerationStatus.COMPLETED,
        preferences=UserPreferencesData.model_validate(SAMPLE_PREFERENCES) if with_preferences else None,
    )
    asyncio.run(services.stories.create_if_absent(story))
    return story


def add_episodes(services, story, numbers):
    async def scenario():
        for n in numbers:
            await services.episodes.create_if_absent(Episode(
                episode_id=f"ep-{n}",
                story_id=story.story_id,
                user_id=story.user_id,
                episode_number=n,
                status=GenerationStatus.COMPLETED,
                content_key=f"episodes/{story.user_id}/{story.story_id}/{n}/episode.md",
            ))
    asyncio.run(scenario())


def test_next_number_is_max_plus_one_with_gaps(services, bus):
    story = completed_story(services)
    add_episodes(services, story, [1, 3, 4])

    ack = asyncio.run(services.continuation.continue_story("user-1", story.story_id))
    assert ack.episode_number == 5
    assert ack.status == "GENERATING"

    reserved = asyncio.run(services.episodes.get(story.story_id, 5))
    assert reserved.episode_id == ack.episode_id
    assert reserved.status == GenerationStatus.PENDING

    request = asyncio.run(services.ledger.get(ack.request_id))
    assert request.type == GenerationType.EPISODE
    assert request.status == GenerationStatus.PENDING

    [event] = bus.events(CONTINUE_EPISODE_REQUESTED)
    assert event.detail.next_episode_number == 5
    assert event.detail.episode_id == ack.episode_id
    assert event.detail.original_preferences.art_style == "Modern"


def test_first_continuation_of_story_without_episodes(services):
    story = completed_story(services)
    ack = asyncio.run(services.continuation.continue_story("user-1", story.story_id))
    assert ack.episode_number == 1


def test_continuation_runs_through_to_rendered_episode(services, bus, generator):
    story = completed_story(services)
    add_episodes(services, story, [1])

    async def scenario():
        ack = await services.continuation.continue_story("user-1", story.story_id)
        await bus.drain()
        return ack

    ack = asyncio.run(scenario())
    assert generator.episode_calls == [("The Courier", 2)]

    request = asyncio.run(services.ledger.get(ack.request_id))
    assert request.status == GenerationStatus.COMPLETED
    assert request.related_entity_id == ack.episode_id

    episode = asyncio.run(services.episodes.get_by_id(ack.episode_id))
    assert episode.episode_number == 2
    assert episode.artifact_key is not None

    status = asyncio.run(services.status.get_status(ack.request_id, "user-1"))
    assert status.progress.current_step == "Episode completed"
    assert status.result.download_url == f"/episodes/{ack.episode_id}/download"


def test_slot_conflict_recomputes_once_then_gives_up(services):
    story = completed_story(services)
    add_episodes(services, story, [1])
    attempts = []
    original = services.episodes.create_if_absent

    async def contended(episode):
        attempts.append(episode.episode_number)
        # another writer takes the slot first
        await original(Episode(
            episode_id=f"other-{len(attempts)}", story_id=episode.story_id, user_id=episode.user_id,
            episode_number=episode.episode_number,
        ))
        return False

    services.episodes.create_if_absent = contended
    with pytest.raises(ConflictError) as exc:
        asyncio.run(services.continuation.continue_story("user-1", story.story_id))

    assert exc.value.code == "EPISODE_CONFLICT"
    assert exc.value.status_code == 409
    assert attempts == [2, 3]
    assert asyncio.run(services.ledger.list_for_user("user-1")) == []


def test_slot_conflict_succeeds_on_recompute(services):
    story = completed_story(services)
    original = services.episodes.create_if_absent
    calls = []

    async def racing(episode):
        calls.append(episode.episode_number)
        if len(calls) == 1:
            await original(Episode(episode_id="racer", story_id=episode.story_id,
                                   user_id=episode.user_id, episode_number=episode.episode_number))
            return False
        return await original(episode)

    services.episodes.create_if_absent = racing
    ack = asyncio.run(services.continuation.continue_story("user-1", story.story_id))
    assert calls == [1, 2]
    assert ack.episode_number == 2


def test_story_must_belong_to_user(services):
    story = completed_story(services, user_id="someone-else")
    with pytest.raises(NotFoundError) as exc:
        asyncio.run(services.continuation.continue_story("user-1", story.story_id))
    assert exc.value.code == "STORY_NOT_FOUND"


def test_story_must_be_completed(services):
    asyncio.run(services.stories.create_if_absent(Story(
        story_id="draft", user_id="user-1", status=GenerationStatus.PROCESSING,
    )))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(services.continuation.continue_story("user-1", "draft"))
    assert exc.value.code == "STORY_NOT_COMPLETED"


def test_falls_back_to_latest_user_preferences(services, bus, save_preferences):
    story = completed_story(services, with_preferences=False)
    with pytest.raises(ValidationError) as exc:
        asyncio.run(services.continuation.continue_story("user-1", story.story_id))
    assert exc.value.code == "PREFERENCES_NOT_FOUND"

    save_preferences(artStyle="Chibi")
    asyncio.run(services.continuation.continue_story("user-1", story.story_id))
    [event] = bus.events(CONTINUE_EPISODE_REQUESTED)
    assert event.detail.original_preferences.art_style == "Chibi"


def test_publish_failure_fails_request_and_reserved_episode(services, bus):
    story = completed_story(services)

    async def broken_put_events(entries):
        raise EventPublishError("bus unavailable")

    bus.put_events = broken_put_events
    with pytest.raises(EventPublishError):
        asyncio.run(services.continuation.continue_story("user-1", story.story_id))

    [request] = asyncio.run(services.ledger.list_for_user("user-1"))
    assert request.status == GenerationStatus.FAILED
    [episode] = asyncio.run(services.episodes.list_for_story(story.story_id))
    assert episode.status == GenerationStatus.FAILED


def test_failed_index_write_does_not_block_later_continuations(services):
    story = completed_story(services)
    add_episodes(services, story, [1])
    original = services.kv.add_to_index
    failures = []

    async def flaky(index_key, member):
        if index_key.endswith(":episodes") and not failures:
            failures.append(member)
            raise PersistenceError("KV command SADD failed: timeout")
        await original(index_key, member)

    services.kv.add_to_index = flaky
    with pytest.raises(PersistenceError):
        asyncio.run(services.continuation.continue_story("user-1", story.story_id))

    assert failures == ["2"]
    # nothing was claimed, so the number is still free
    assert asyncio.run(services.episodes.get(story.story_id, 2)) is None
    ack = asyncio.run(services.continuation.continue_story("user-1", story.story_id))
    assert ack.episode_number == 2


def test_unindexed_slot_is_stepped_over(services):
    story = completed_story(services)
    add_episodes(services, story, [1])
    orphan = Episode(episode_id="orphan", story_id=story.story_id, user_id="user-1", episode_number=2)
    asyncio.run(services.kv.put(f"episode:{story.story_id}:2", orphan.to_json_dict()))

    ack = asyncio.run(services.continuation.continue_story("user-1", story.story_id))
    assert ack.episode_number == 3
    assert asyncio.run(services.episodes.get(story.story_id, 2)).episode_id == "orphan"


def test_request_failure_releases_reserved_slot(services):
    story = completed_story(services)

    async def broken_create(*args, **kwargs):
        raise PersistenceError("KV command SET failed: timeout")

    services.ledger.create = broken_create
    with pytest.raises(PersistenceError):
        asyncio.run(services.continuation.continue_story("user-1", story.story_id))

    [episode] = asyncio.run(services.episodes.list_for_story(story.story_id))
    assert episode.status == GenerationStatus.FAILED
    assert "Failed to record request" in episode.error_message


def test_failed_continuation_is_dead_lettered_not_dropped(services, bus, generator):
    story = completed_story(services)
    add_episodes(services, story, [1])
    # both scenes of the new episode
    generator.fail_image_calls = {1, 2}

    async def scenario():
        ack = await services.continuation.continue_story("user-1", story.story_id)
        await bus.drain()
        return ack

    ack = asyncio.run(scenario())
    request = asyncio.run(services.ledger.get(ack.request_id))
    assert request.status == GenerationStatus.FAILED

    [dead] = bus.dead_letters["image-generation"]
    assert dead.attempts == 2
    assert "already failed" in dead.error

    [event] = bus.events(CONTINUE_EPISODE_REQUESTED)
    with pytest.raises(ConflictError) as exc:
        asyncio.run(services.episode_worker.handle(event))
    assert exc.value.code == "REQUEST_FAILED"
    assert generator.episode_calls == [("The Courier", 2)]
