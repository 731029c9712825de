"""Release metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import date, datetime, timedelta
from typing import Any, Sequence

import httpx

from ..config import Settings
from ..errors import CatalogError, NetworkError, RateLimited
from ..models import Release, ReleaseType, TrackedShow

logger = logging.getLogger(__name__)

IMAGE_BASE_URL = "https://image.tmdb.org/t/p/w500"
BACKDROP_BASE_URL = "https://image.tmdb.org/t/p/w780"

# TMDB release_dates type codes
RELEASE_TYPE_CODES: dict[int, ReleaseType] = {2: "theatrical", 3: "theatrical", 4: "digital"}


def build_image_url(path: str | None, base_url: str = IMAGE_BASE_URL) -> str | None:
    if not path:
        return None
    if path.startswith("http"):
        return path
    return f"{base_url}{path}"


def month_bounds(month: date) -> tuple[date, date]:
    first = month.replace(day=1)
    last = first.replace(day=calendar.monthrange(first.year, first.month)[1])
    return first, last


class TMDBCatalogClient:
    """Catalog client backed by the TMDB v3 API."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        max_retries: int = 2,
        concurrency: int = 4,
    ):
        self._settings = settings
        self._client = http_client
        self._max_retries = max_retries
        self._semaphore = asyncio.Semaphore(concurrency)

    def _auth(self) -> tuple[dict[str, str], dict[str, str]]:
        key = self._settings.tmdb_api_key or ""
        # v4 read access tokens are JWTs, v3 keys are short hex strings
        if key.count(".") == 2:
            return {"Authorization": f"Bearer {key}"}, {}
        return {}, {"api_key": key}

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self._settings.tmdb_api_key:
            raise CatalogError("TMDB_API_KEY is not configured")
        headers, auth_params = self._auth()
        query = {**auth_params, **(params or {})}
        attempt = 0
        while True:
            try:
                response = await self._client.get(path, headers=headers, params=query)
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to TMDB (%s). Retrying %s in %.1fs",
                        exc.__class__.__name__,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise NetworkError(f"TMDB request {path} failed: {exc}") from exc

            if response.status_code == 429:
                retry_after = _parse_retry_after(response.headers.get("retry-after"))
                raise RateLimited(f"TMDB rate limited {path}", retry_after=retry_after)
            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "TMDB %s during %s. Retrying in %.1fs",
                        response.status_code,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
            if response.status_code >= 400:
                raise NetworkError(
                    f"TMDB request {path} returned {response.status_code}",
                    status_code=response.status_code,
                )
            break

        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkError(f"TMDB returned non-JSON payload for {path}") from exc
        if not isinstance(payload, dict):
            raise NetworkError(f"Unexpected TMDB payload structure for {path}")
        return payload

    async def fetch_episode(self, show_id: int, season: int, episode: int) -> Release:
        data = await self._get(f"/tv/{show_id}/season/{season}/episode/{episode}")
        air_date = data.get("air_date")
        if not air_date:
            raise NetworkError(
                f"TMDB episode {show_id} S{season}E{episode} has no air date"
            )
        return Release(
            show_id=show_id,
            season_number=int(data.get("season_number", season)),
            episode_number=int(data.get("episode_number", episode)),
            air_date=air_date,
            name=data.get("name"),
            overview=data.get("overview"),
            still_path=data.get("still_path"),
        )

    async def fetch_season_episode_count(self, show_id: int, season: int) -> int:
        data = await self._get(f"/tv/{show_id}/season/{season}")
        episodes = data.get("episodes")
        if not isinstance(episodes, list):
            return 0
        return len(episodes)

    async def fetch_season_numbers(self, show_id: int) -> list[int]:
        data = await self._get(f"/tv/{show_id}")
        numbers: list[int] = []
        for season in data.get("seasons") or []:
            if isinstance(season, dict) and isinstance(season.get("season_number"), int):
                numbers.append(season["season_number"])
        return sorted(numbers)

    async def fetch_show_releases(
        self, show: TrackedShow, *, since: date | None = None
    ) -> list[Release]:
        """Return every dated release of a tracked show.

        With ``since`` set, TV seasons that premiered before it are skipped
        unless they are the latest season.
        """

        async with self._semaphore:
            if show.media_type == "movie":
                return await self._movie_releases(show)
            return await self._tv_releases(show, since=since)

    async def fetch_releases_for_month(
        self, month: date, shows: Sequence[TrackedShow]
    ) -> list[Release]:
        first, last = month_bounds(month)
        since = first - timedelta(days=183)
        results = await asyncio.gather(
            *(self.fetch_show_releases(show, since=since) for show in shows),
            return_exceptions=True,
        )
        releases: list[Release] = []
        for show, result in zip(shows, results):
            if isinstance(result, Exception):
                logger.warning("Failed to fetch releases for %s (%s): %s", show.name, show.id, result)
                continue
            for release in result:
                day = release.air_date
                if isinstance(day, datetime):
                    day = day.date()
                if first <= day <= last:
                    releases.append(release)
        return releases

    async def _tv_releases(self, show: TrackedShow, *, since: date | None) -> list[Release]:
        details = await self._get(f"/tv/{show.id}")
        seasons = [
            season
            for season in details.get("seasons") or []
            if isinstance(season, dict) and isinstance(season.get("season_number"), int)
        ]
        latest = max((season["season_number"] for season in seasons), default=None)
        origin = tuple(details.get("origin_country") or show.origin_country)
        show_name = details.get("name") or show.name

        releases: list[Release] = []
        for season in seasons:
            number = season["season_number"]
            premiere = season.get("air_date")
            if since is not None and number != latest and premiere:
                try:
                    if date.fromisoformat(premiere) < since:
                        continue
                except ValueError:
                    pass
            season_data = await self._get(f"/tv/{show.id}/season/{number}")
            for episode in season_data.get("episodes") or []:
                if not isinstance(episode, dict) or not episode.get("air_date"):
                    continue
                releases.append(
                    Release(
                        show_id=show.id,
                        season_number=number,
                        episode_number=int(episode.get("episode_number", 0)),
                        air_date=episode["air_date"],
                        name=episode.get("name"),
                        show_name=show_name,
                        overview=episode.get("overview"),
                        still_path=episode.get("still_path"),
                        backdrop_path=details.get("backdrop_path"),
                        poster_path=details.get("poster_path"),
                        origin_country=origin,
                    )
                )
        return releases

    async def _movie_releases(self, show: TrackedShow) -> list[Release]:
        details, release_data = await asyncio.gather(
            self._get(f"/movie/{show.id}"),
            self._get(f"/movie/{show.id}/release_dates"),
        )
        earliest: dict[ReleaseType, str] = {}
        for country in release_data.get("results") or []:
            for entry in (country or {}).get("release_dates") or []:
                release_type = RELEASE_TYPE_CODES.get(entry.get("type"))
                raw_date = str(entry.get("release_date") or "")[:10]
                if release_type is None or len(raw_date) != 10:
                    continue
                if release_type not in earliest or raw_date < earliest[release_type]:
                    earliest[release_type] = raw_date

        title = details.get("title") or show.name
        origin = tuple(details.get("origin_country") or show.origin_country)
        return [
            Release(
                show_id=show.id,
                is_movie=True,
                release_type=release_type,
                air_date=raw_date,
                name=title,
                show_name=title,
                overview=details.get("overview"),
                still_path=details.get("backdrop_path"),
                backdrop_path=details.get("backdrop_path"),
                poster_path=details.get("poster_path"),
                origin_country=origin,
            )
            for release_type, raw_date in sorted(earliest.items(), key=lambda pair: pair[1])
        ]


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
