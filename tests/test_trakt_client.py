"""Tests for the Trakt API client helpers."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from app.config import Settings
from app.services.trakt import TraktClient


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base = {"TRAKT_CLIENT_ID": "client-id"}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


WATCHED_SHOWS = [
    {
        "last_watched_at": "2024-02-01T20:00:00.000Z",
        "show": {"title": "Show One", "ids": {"trakt": 1, "tmdb": 1399}},
        "seasons": [
            {
                "number": 1,
                "episodes": [
                    {"number": 1, "last_watched_at": "2024-01-01T20:00:00.000Z"},
                    {"number": 2, "last_watched_at": "2024-01-02T20:00:00.000Z"},
                ],
            },
            {"number": 2, "episodes": [{"number": 1}]},
        ],
    },
    {"show": {"title": "No TMDB", "ids": {"trakt": 2}}, "seasons": []},
]

WATCHED_MOVIES = [
    {
        "last_watched_at": "2024-03-05T10:00:00.000Z",
        "movie": {"title": "Film", "ids": {"trakt": 3, "tmdb": 603}},
    }
]


@pytest.mark.anyio("asyncio")
async def test_fetch_watched_sends_trakt_headers() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=WATCHED_SHOWS)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        batch = await client.fetch_watched("shows", access_token="token")

    assert batch.fetched is True
    assert len(batch.items) == 2
    assert requests[0].url.path == "/sync/watched/shows"
    assert requests[0].headers["trakt-api-key"] == "client-id"
    assert requests[0].headers["Authorization"] == "Bearer token"
    assert requests[0].headers["trakt-api-version"] == "2"


@pytest.mark.anyio("asyncio")
async def test_fetch_watched_without_credentials_skips_request() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(Settings(_env_file=None), http_client)
        batch = await client.fetch_watched("movies", access_token="token")

    assert batch.fetched is False
    assert batch.items == []


@pytest.mark.anyio("asyncio")
async def test_fetch_watched_handles_error_response() -> None:
    """HTTP failures should result in an empty watched payload."""

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "unavailable"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        client._max_retries = 0
        batch = await client.fetch_watched("movies", access_token="token")

    assert batch.fetched is False
    assert batch.items == []


@pytest.mark.anyio("asyncio")
async def test_fetch_watched_rejects_unexpected_payload() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"not": "a list"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com") as http_client:
        client = TraktClient(build_settings(), http_client)
        batch = await client.fetch_watched("shows", access_token="token")

    assert batch.fetched is False


def test_watched_shows_map_to_episode_interactions() -> None:
    interactions = TraktClient.to_interactions(WATCHED_SHOWS, key="show")

    assert [item.key for item in interactions] == [
        "episode-1399-1-1",
        "episode-1399-1-2",
        "episode-1399-2-1",
    ]
    assert all(item.is_watched for item in interactions)
    assert interactions[0].watched_at is not None
    assert interactions[2].watched_at is None


def test_watched_movies_map_to_movie_interactions_and_shows() -> None:
    interactions = TraktClient.to_interactions(WATCHED_MOVIES, key="movie")
    shows = TraktClient.to_tracked_shows(WATCHED_MOVIES + [{"movie": {"ids": {}}}], key="movie")
    tv = TraktClient.to_tracked_shows(WATCHED_SHOWS, key="show")

    assert [item.key for item in interactions] == ["movie-603"]
    assert [(show.id, show.media_type, show.name) for show in shows] == [(603, "movie", "Film")]
    assert [(show.id, show.media_type) for show in tv] == [(1399, "tv")]
