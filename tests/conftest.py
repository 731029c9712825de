"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from datetime import date
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.errors import NetworkError  # noqa: E402
from app.models import Interaction, Release, Reminder, TrackedShow, UserSettings  # noqa: E402
from app.services.persistence import ProfileSnapshot  # noqa: E402


class FakeCatalog:
    """In-memory catalog returning canned season sizes and releases."""

    def __init__(self) -> None:
        self.season_sizes: dict[tuple[int, int], int] = {}
        self.releases: dict[int, list[Release]] = {}
        self.failing_shows: set[int] = set()
        self.calls: list[tuple] = []

    async def fetch_episode(self, show_id: int, season: int, episode: int) -> Release:
        self.calls.append(("episode", show_id, season, episode))
        for release in self.releases.get(show_id, []):
            if (release.season_number, release.episode_number) == (season, episode):
                return release
        raise NetworkError("missing episode", status_code=404)

    async def fetch_season_episode_count(self, show_id: int, season: int) -> int:
        self.calls.append(("season", show_id, season))
        if show_id in self.failing_shows:
            raise NetworkError("catalog down", status_code=503)
        return self.season_sizes.get((show_id, season), 0)

    async def fetch_season_numbers(self, show_id: int) -> list[int]:
        return sorted({season for (show, season) in self.season_sizes if show == show_id})

    async def fetch_show_releases(
        self, show: TrackedShow, *, since: date | None = None
    ) -> list[Release]:
        self.calls.append(("show", show.id))
        if show.id in self.failing_shows:
            raise NetworkError("catalog down", status_code=503)
        return list(self.releases.get(show.id, []))

    async def fetch_releases_for_month(
        self, month: date, shows: Sequence[TrackedShow]
    ) -> list[Release]:
        found: list[Release] = []
        for show in shows:
            for release in self.releases.get(show.id, []):
                day = release.air_date
                if (day.year, day.month) == (month.year, month.month):
                    found.append(release)
        return found


class MemoryRepository:
    """Dict-backed stand-in for :class:`app.services.persistence.StateRepository`."""

    def __init__(self) -> None:
        self.profiles: dict[str, ProfileSnapshot] = {}
        self.saved_interactions: list[dict[str, Interaction]] = []

    async def load(self, profile_id: str) -> ProfileSnapshot | None:
        return self.profiles.get(profile_id)

    async def ensure_profile(self, profile_id: str, *, username: str | None = None) -> None:
        self.profiles.setdefault(profile_id, ProfileSnapshot(id=profile_id, username=username))

    async def save_profile(
        self,
        profile_id: str,
        *,
        username: str | None = None,
        settings: UserSettings | None = None,
        tracked_shows: Iterable[TrackedShow] | None = None,
        **_: object,
    ) -> None:
        snapshot = self.profiles.setdefault(profile_id, ProfileSnapshot(id=profile_id))
        if username is not None:
            snapshot.username = username
        if settings is not None:
            snapshot.settings = settings
        if tracked_shows is not None:
            snapshot.tracked_shows = list(tracked_shows)

    async def save_interactions(
        self, profile_id: str, interactions: Mapping[str, Interaction]
    ) -> int:
        snapshot = self.profiles.setdefault(profile_id, ProfileSnapshot(id=profile_id))
        snapshot.interactions.update(interactions)
        self.saved_interactions.append(dict(interactions))
        return len(interactions)

    async def replace_reminders(self, profile_id: str, reminders: Iterable[Reminder]) -> None:
        snapshot = self.profiles.setdefault(profile_id, ProfileSnapshot(id=profile_id))
        snapshot.reminders = list(reminders)


@pytest.fixture
def fake_catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def memory_repository() -> MemoryRepository:
    return MemoryRepository()
