"""Utilities for pulling watched state from the Trakt API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

import httpx

from ..config import Settings
from ..models import Interaction, TrackedShow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WatchedBatch:
    """Watched entries for one content type and whether the fetch completed."""

    items: list[dict[str, Any]]
    fetched: bool = True


class TraktClient:
    """Thin wrapper around the Trakt HTTP API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._max_retries = 3

    def _headers(
        self,
        *,
        client_id: str | None = None,
        access_token: str | None = None,
    ) -> dict[str, str]:
        headers = {
            "trakt-api-version": "2",
            "User-Agent": f"{self._settings.app_name} (airdate)",
        }
        resolved_client_id = client_id or self._settings.trakt_client_id
        if resolved_client_id:
            headers["trakt-api-key"] = resolved_client_id
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def fetch_watched(
        self,
        content_type: Literal["movies", "shows"],
        *,
        access_token: str | None,
        client_id: str | None = None,
    ) -> WatchedBatch:
        """Fetch everything the user has watched for one content type."""

        resolved_client_id = client_id or self._settings.trakt_client_id
        if not (resolved_client_id and access_token):
            logger.info("Trakt credentials missing, returning empty watched list for %s", content_type)
            return WatchedBatch(items=[], fetched=False)

        url = f"/sync/watched/{content_type}"
        attempt = 0
        while True:
            try:
                response = await self._client.get(
                    url,
                    headers=self._headers(
                        client_id=resolved_client_id, access_token=access_token
                    ),
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to Trakt (%s). Retrying %s in %.1fs",
                        exc.__class__.__name__,
                        content_type,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.warning("Failed to fetch Trakt watched %s: %s", content_type, exc)
                return WatchedBatch(items=[], fetched=False)

            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Trakt 5xx during watched fetch for %s. Retrying in %.1fs",
                        content_type,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
            if response.status_code >= 400:
                logger.warning(
                    "Failed to fetch Trakt watched %s: %s", content_type, response.text
                )
                return WatchedBatch(items=[], fetched=False)
            break

        try:
            data = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON Trakt response for watched %s", content_type)
            return WatchedBatch(items=[], fetched=False)
        if not isinstance(data, list):
            logger.warning("Unexpected Trakt response structure for %s", content_type)
            return WatchedBatch(items=[], fetched=False)
        return WatchedBatch(items=[entry for entry in data if isinstance(entry, dict)])

    @staticmethod
    def to_interactions(entries: list[dict[str, Any]], *, key: str) -> list[Interaction]:
        """Map ``/sync/watched`` entries onto watched interactions.

        Entries without a TMDB id cannot be joined with catalog releases and
        are dropped.
        """

        interactions: list[Interaction] = []
        for entry in entries:
            media = entry.get(key)
            if not isinstance(media, dict):
                continue
            tmdb_id = (media.get("ids") or {}).get("tmdb")
            if not isinstance(tmdb_id, int):
                continue
            if key == "movie":
                interactions.append(
                    Interaction(
                        show_id=tmdb_id,
                        media_type="movie",
                        is_watched=True,
                        watched_at=_parse_timestamp(entry.get("last_watched_at")),
                    )
                )
                continue
            for season in entry.get("seasons") or []:
                number = season.get("number")
                if not isinstance(number, int):
                    continue
                for episode in season.get("episodes") or []:
                    episode_number = episode.get("number")
                    if not isinstance(episode_number, int):
                        continue
                    interactions.append(
                        Interaction(
                            show_id=tmdb_id,
                            media_type="episode",
                            season_number=number,
                            episode_number=episode_number,
                            is_watched=True,
                            watched_at=_parse_timestamp(episode.get("last_watched_at")),
                        )
                    )
        return interactions

    @staticmethod
    def to_tracked_shows(entries: list[dict[str, Any]], *, key: str) -> list[TrackedShow]:
        shows: list[TrackedShow] = []
        for entry in entries:
            media = entry.get(key)
            if not isinstance(media, dict):
                continue
            tmdb_id = (media.get("ids") or {}).get("tmdb")
            if not isinstance(tmdb_id, int):
                continue
            shows.append(
                TrackedShow(
                    id=tmdb_id,
                    name=str(media.get("title") or ""),
                    media_type="movie" if key == "movie" else "tv",
                )
            )
        return shows


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
