"""Tracker service orchestration with a fake catalog."""

from __future__ import annotations

import asyncio
import json
from datetime import date

import httpx
import pytest

from app.config import Settings
from app.database import Database
from app.errors import InvalidImportFormat
from app.models import (
    HiddenItem,
    Release,
    Reminder,
    SpoilerConfig,
    TrackedShow,
    UserSettings,
    interaction_key,
)
from app.services.interactions import Progress
from app.services.persistence import StateRepository
from app.services.sync import SyncEngine, SyncJob
from app.services.tracker import TrackerService, history_seasons
from app.services.trakt import TraktClient


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


async def _no_sleep(_: float) -> None:
    return None


def build_service(repository, catalog, **kwargs) -> TrackerService:
    settings = Settings(_env_file=None)
    engine = SyncEngine(batch_size=4, batch_delay=0.5, sleep=_no_sleep)
    return TrackerService(settings, repository, catalog, engine=engine, **kwargs)


def test_history_seasons_keep_specials_apart() -> None:
    assert history_seasons(0) == [0]
    assert history_seasons(3) == [1, 2, 3]


@pytest.mark.anyio("asyncio")
async def test_mark_history_marks_everything_up_to_target(fake_catalog, memory_repository) -> None:
    fake_catalog.season_sizes = {(5, 0): 2, (5, 1): 3, (5, 2): 2, (5, 3): 5}
    service = build_service(memory_repository, fake_catalog)
    await service.set_watched("p", interaction_key(5, 1, 2), True)

    job = await service.mark_history_watched("p", 5, 3, 2, wait=True)

    watched = {key for key, item in (await service.interactions("p")).items() if item.is_watched}
    assert job.state == "done"
    assert job.to_payload()["percentage"] == 100
    assert watched == {
        interaction_key(5, 1, 1),
        interaction_key(5, 1, 2),
        interaction_key(5, 1, 3),
        interaction_key(5, 2, 1),
        interaction_key(5, 2, 2),
        interaction_key(5, 3, 1),
        interaction_key(5, 3, 2),
    }
    assert await service.progress("p", 5) == Progress(3, 2)
    assert ("season", 5, 0) not in fake_catalog.calls
    assert len(memory_repository.profiles["p"].interactions) == 7


@pytest.mark.anyio("asyncio")
async def test_mark_history_for_special_only_touches_specials(fake_catalog, memory_repository) -> None:
    fake_catalog.season_sizes = {(5, 0): 4, (5, 1): 3}
    service = build_service(memory_repository, fake_catalog)

    job = await service.mark_history_watched("p", 5, 0, 2, wait=True)

    assert job.total == 1
    assert sorted(await service.interactions("p")) == [
        interaction_key(5, 0, 1),
        interaction_key(5, 0, 2),
    ]


@pytest.mark.anyio("asyncio")
async def test_mark_history_failures_are_reported(fake_catalog, memory_repository) -> None:
    fake_catalog.failing_shows = {9}
    service = build_service(memory_repository, fake_catalog)

    job = await service.mark_history_watched("p", 9, 2, 1, wait=True)

    assert job.state == "failed"
    assert (job.succeeded, job.failed) == (0, 2)
    assert service.job(job.id) is job
    with pytest.raises(KeyError):
        service.job("unknown")


@pytest.mark.anyio("asyncio")
async def test_mark_history_rejects_invalid_targets(fake_catalog, memory_repository) -> None:
    service = build_service(memory_repository, fake_catalog)

    with pytest.raises(ValueError):
        await service.mark_history_watched("p", 1, 1, 0)


def _backup() -> dict:
    def episode(show_id: int, season: int, number: int) -> dict:
        return {
            "show_id": show_id,
            "media_type": "episode",
            "season_number": season,
            "episode_number": number,
            "is_watched": True,
        }

    return {
        "user": {"username": "sam"},
        "watchlist": [{"id": 1, "name": "Old name"}, {"id": 2, "name": "Broken"}],
        "interactions": {
            "episode-1-1-1": episode(1, 1, 1),
            "episode-2-1-1": episode(2, 1, 1),
            "episode-3-1-1": episode(3, 1, 1),
        },
        "reminders": [
            {"show_id": 1, "media_type": "tv", "scope": "all"},
            {"show_id": 1, "media_type": "tv", "scope": "all"},
        ],
        "settings": {"ignoreSpecials": True},
    }


@pytest.mark.anyio("asyncio")
async def test_import_replays_interactions_per_show(fake_catalog, memory_repository) -> None:
    fake_catalog.releases[1] = [
        Release(
            show_id=1,
            season_number=1,
            episode_number=1,
            air_date="2024-01-01",
            show_name="New name",
            origin_country=("GB",),
        )
    ]
    fake_catalog.failing_shows = {2}
    service = build_service(memory_repository, fake_catalog)

    preview = service.preview_import(json.dumps(_backup()))
    job = await service.import_backup("p", json.dumps(_backup()), wait=True)

    interactions = await service.interactions("p")
    shows = await service.tracked_shows("p")
    assert preview.to_payload() == {
        "username": "sam",
        "shows": 2,
        "interactions": 3,
        "reminders": 2,
        "estimate": "1 seconds",
    }
    assert (job.succeeded, job.failed, job.state) == (1, 1, "failed")
    assert set(interactions) == {"episode-1-1-1", "episode-3-1-1"}
    assert [(show.id, show.name) for show in shows] == [(1, "New name"), (2, "Broken")]
    assert shows[0].origin_country == ["GB"]
    assert len(await service.reminders("p")) == 1
    assert (await service.get_settings("p")).ignore_specials is True
    assert memory_repository.profiles["p"].username == "sam"


@pytest.mark.anyio("asyncio")
async def test_cancelled_import_keeps_only_processed_shows(fake_catalog, memory_repository) -> None:
    running: list[SyncJob] = []

    async def _cancel_during_pause(_: float) -> None:
        running[0].cancel()

    engine = SyncEngine(batch_size=4, batch_delay=0.5, sleep=_cancel_during_pause)
    service = TrackerService(
        Settings(_env_file=None), memory_repository, fake_catalog, engine=engine
    )
    backup = {
        "user": {"username": "sam"},
        "watchlist": [{"id": show_id, "name": f"Show {show_id}"} for show_id in range(1, 11)],
        "interactions": {
            interaction_key(show_id, 1, 1): {
                "show_id": show_id,
                "media_type": "episode",
                "season_number": 1,
                "episode_number": 1,
                "is_watched": True,
            }
            for show_id in (*range(1, 11), 99)
        },
        "reminders": [{"show_id": 1, "media_type": "tv", "scope": "all"}],
        "settings": {"ignoreSpecials": True},
    }

    job = await service.import_backup("p", json.dumps(backup))
    running.append(job)
    while not job.finished:
        await asyncio.sleep(0)
    await service.stop()

    shows = await service.tracked_shows("p")
    assert (job.state, job.current, job.total) == ("cancelled", 4, 10)
    assert [show.id for show in shows] == [1, 2, 3, 4]
    assert sorted(await service.interactions("p")) == sorted(
        interaction_key(show_id, 1, 1) for show_id in range(1, 5)
    )
    assert await service.reminders("p") == []
    assert (await service.get_settings("p")).ignore_specials is False
    snapshot = memory_repository.profiles["p"]
    assert [show.id for show in snapshot.tracked_shows] == [1, 2, 3, 4]
    assert snapshot.username is None
    assert len(snapshot.interactions) == 4


@pytest.mark.anyio("asyncio")
async def test_finished_jobs_are_evicted_past_the_cap(fake_catalog, memory_repository) -> None:
    service = build_service(memory_repository, fake_catalog, max_finished_jobs=1)

    first = await service.mark_history_watched("p", 5, 1, 1, wait=True)
    second = await service.mark_history_watched("p", 5, 1, 1, wait=True)

    assert service.job(second.id) is second
    with pytest.raises(KeyError):
        service.job(first.id)


@pytest.mark.anyio("asyncio")
async def test_invalid_import_changes_nothing(fake_catalog, memory_repository) -> None:
    service = build_service(memory_repository, fake_catalog)
    await service.set_watched("p", "movie-1", True)

    with pytest.raises(InvalidImportFormat):
        await service.import_backup("p", json.dumps({"watchlist": []}))

    assert list(await service.interactions("p")) == ["movie-1"]
    assert fake_catalog.calls == []


@pytest.mark.anyio("asyncio")
async def test_calendar_view_applies_filters_and_spoilers(fake_catalog, memory_repository) -> None:
    fake_catalog.releases = {
        1: [
            Release(
                show_id=1,
                season_number=1,
                episode_number=1,
                air_date="2024-05-03",
                name="Pilot",
                show_name="Show",
                still_path="/still.jpg",
                backdrop_path="/banner.jpg",
            ),
            Release(show_id=1, season_number=0, episode_number=1, air_date="2024-05-03"),
        ],
        2: [Release(show_id=2, is_movie=True, release_type="theatrical", air_date="2024-05-10")],
        3: [Release(show_id=3, season_number=1, episode_number=1, air_date="2024-05-11")],
    }
    service = build_service(memory_repository, fake_catalog)
    for show_id in (1, 2, 3):
        await service.track_show("p", TrackedShow(id=show_id, media_type="movie" if show_id == 2 else "tv"))
    await service.update_settings(
        "p",
        UserSettings(
            spoiler_config=SpoilerConfig(images=True, title=True, replacement_mode="banner"),
            hide_theatrical=True,
            ignore_specials=True,
            hidden_items=[HiddenItem(id=3)],
        ),
    )

    view = await service.calendar("p", date(2024, 5, 1))

    assert view["month"] == "2024-05"
    assert [day["date"] for day in view["days"]] == ["2024-05-03"]
    release = view["days"][0]["shows"][0]["releases"][0]
    assert release["title"] == "Episode 1"
    assert release["image"].endswith("/banner.jpg")
    assert release["spoiler"]["useBanner"] is True
    assert release["watched"] is False

    await service.toggle("p", "episode-1-1-1")
    watched_view = await service.calendar("p", date(2024, 5, 1))
    opened = watched_view["days"][0]["shows"][0]["releases"][0]
    assert opened["title"] == "Pilot"
    assert opened["image"].endswith("/still.jpg")


@pytest.mark.anyio("asyncio")
async def test_reminders_reject_duplicates_and_follow_strategy(fake_catalog, memory_repository) -> None:
    service = build_service(memory_repository, fake_catalog)
    request = Reminder(show_id=1, media_type="tv", scope="episode", episode_season=0, episode_number=2)

    first = await service.add_reminder("p", request)
    second = await service.add_reminder("p", Reminder(show_id=1, media_type="tv", scope="all"))
    await service.update_settings("p", UserSettings(reminder_strategy="always"))
    decision = await service.apply_reminder_strategy("p", TrackedShow(id=2, name="Two"))

    assert first.reminder.scope == "all"
    assert second.already_exists is True
    assert decision.action == "add"
    assert [item.show_id for item in memory_repository.profiles["p"].reminders] == [1, 2]
    await service.remove_reminder("p", first.reminder.id)
    with pytest.raises(KeyError):
        await service.remove_reminder("p", first.reminder.id)


@pytest.mark.anyio("asyncio")
async def test_export_round_trips_through_import_preview(fake_catalog, memory_repository) -> None:
    service = build_service(memory_repository, fake_catalog)
    await service.track_show("p", TrackedShow(id=1, name="Show"))
    await service.toggle("p", "episode-1-1-1")

    exported = await service.export_backup("p")
    preview = service.preview_import(json.dumps(exported))

    assert preview.show_count == 1
    assert preview.interaction_count == 1


@pytest.mark.anyio("asyncio")
async def test_trakt_sync_merges_history(fake_catalog, memory_repository) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/movies"):
            return httpx.Response(
                200, json=[{"movie": {"title": "Film", "ids": {"tmdb": 50}}}]
            )
        return httpx.Response(
            200,
            json=[
                {
                    "show": {"title": "Show", "ids": {"tmdb": 60}},
                    "seasons": [{"number": 1, "episodes": [{"number": 1}, {"number": 2}]}],
                },
                {"show": {"title": "Hidden", "ids": {"tmdb": 61}}, "seasons": []},
            ],
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        trakt = TraktClient(Settings(_env_file=None, TRAKT_CLIENT_ID="cid"), http_client)
        service = build_service(memory_repository, fake_catalog, trakt_client=trakt)
        await service.update_settings("p", UserSettings(hidden_items=[HiddenItem(id=61)]))
        result = await service.sync_trakt("p", access_token="token")

    assert result["interactions"] == 3
    assert result["showsAdded"] == 2
    assert await service.progress("p", 60) == Progress(1, 2)
    assert [show.id for show in await service.tracked_shows("p")] == [50, 60]


@pytest.mark.anyio("asyncio")
async def test_trakt_sync_requires_configuration(fake_catalog, memory_repository) -> None:
    service = build_service(memory_repository, fake_catalog)

    with pytest.raises(ValueError):
        await service.sync_trakt("p", access_token="token")


@pytest.mark.anyio("asyncio")
async def test_state_survives_a_restart(tmp_path, fake_catalog) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}")
    await database.create_all()
    try:
        first = build_service(StateRepository(database.session_factory), fake_catalog)
        await first.start()
        await first.toggle("default", "episode-7-2-4")
        await first.track_show("default", TrackedShow(id=7, name="Seven"))
        await first.add_reminder("default", Reminder(show_id=7, media_type="tv", scope="all"))
        await first.stop()

        second = build_service(StateRepository(database.session_factory), fake_catalog)
        assert await second.progress("default", 7) == Progress(2, 4)
        assert [show.name for show in await second.tracked_shows("default")] == ["Seven"]
        assert len(await second.reminders("default")) == 1
    finally:
        await database.dispose()
