"""Interface the tracker expects from the upstream content catalog."""

from __future__ import annotations

from datetime import date
from typing import Protocol, Sequence

from ..models import Release, TrackedShow


class CatalogClient(Protocol):
    """Read-only release metadata source.

    Every call is fallible and independently retryable. Implementations raise
    :class:`app.errors.NetworkError` (or :class:`app.errors.RateLimited`) and
    enforce their own request timeout.
    """

    async def fetch_episode(self, show_id: int, season: int, episode: int) -> Release: ...

    async def fetch_season_episode_count(self, show_id: int, season: int) -> int: ...

    async def fetch_season_numbers(self, show_id: int) -> list[int]: ...

    async def fetch_show_releases(
        self, show: TrackedShow, *, since: date | None = None
    ) -> list[Release]: ...

    async def fetch_releases_for_month(
        self, month: date, shows: Sequence[TrackedShow]
    ) -> list[Release]: ...
