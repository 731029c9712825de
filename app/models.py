"""Pydantic models describing releases, watch state and user preferences."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Literal
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MediaType = Literal["movie", "episode"]
ShowType = Literal["tv", "movie"]
ReleaseType = Literal["theatrical", "digital"]
ReminderScope = Literal["all", "episode", "movie_theatrical", "movie_digital"]
ReplacementMode = Literal["blur", "banner"]
ReminderStrategy = Literal["ask", "always", "never"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def interaction_key(
    show_id: int,
    season_number: int | None = None,
    episode_number: int | None = None,
    *,
    is_movie: bool = False,
) -> str:
    """Return the canonical identity string joining releases and interactions."""

    if is_movie:
        return f"movie-{show_id}"
    if season_number is None or episode_number is None:
        raise ValueError("Episode keys require both a season and an episode number")
    return f"episode-{show_id}-{season_number}-{episode_number}"


def parse_interaction_key(key: str) -> tuple[MediaType, int, int | None, int | None]:
    """Split an interaction key back into its components."""

    parts = key.split("-")
    try:
        if parts[0] == "movie" and len(parts) == 2:
            return "movie", int(parts[1]), None, None
        if parts[0] == "episode" and len(parts) == 4:
            return "episode", int(parts[1]), int(parts[2]), int(parts[3])
    except ValueError:
        pass
    raise ValueError(f"Malformed interaction key: {key!r}")


class Release(BaseModel):
    """A single schedulable unit: one TV episode or one movie release event."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    show_id: int = Field(validation_alias=AliasChoices("show_id", "showId"))
    season_number: int | None = Field(
        default=None, validation_alias=AliasChoices("season_number", "seasonNumber")
    )
    episode_number: int | None = Field(
        default=None,
        validation_alias=AliasChoices("episode_number", "episodeNumber"),
    )
    is_movie: bool = Field(
        default=False, validation_alias=AliasChoices("is_movie", "isMovie")
    )
    release_type: ReleaseType | None = Field(
        default=None, validation_alias=AliasChoices("release_type", "releaseType")
    )
    air_date: date | datetime = Field(
        validation_alias=AliasChoices("air_date", "airDate")
    )
    name: str | None = None
    show_name: str | None = None
    overview: str | None = None
    still_path: str | None = None
    backdrop_path: str | None = None
    poster_path: str | None = None
    origin_country: tuple[str, ...] = ()

    @field_validator("air_date", mode="before")
    @classmethod
    def _parse_air_date(cls, value: object) -> object:
        if isinstance(value, str):
            raw = value.strip()
            if len(raw) == 10:
                return date.fromisoformat(raw)
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return value

    @property
    def key(self) -> str:
        return interaction_key(
            self.show_id,
            self.season_number,
            self.episode_number,
            is_movie=self.is_movie,
        )

    @property
    def is_special(self) -> bool:
        return not self.is_movie and self.season_number == 0


class Interaction(BaseModel):
    """Persisted watched/unwatched fact for one release."""

    show_id: int
    media_type: MediaType
    season_number: int | None = None
    episode_number: int | None = None
    is_watched: bool = False
    watched_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("watched_at", "updated_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # sqlite hands back naive timestamps; everything stored is UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_key(cls, key: str, *, is_watched: bool = False) -> "Interaction":
        media_type, show_id, season, episode = parse_interaction_key(key)
        return cls(
            show_id=show_id,
            media_type=media_type,
            season_number=season,
            episode_number=episode,
            is_watched=is_watched,
        )

    @property
    def key(self) -> str:
        return interaction_key(
            self.show_id,
            self.season_number,
            self.episode_number,
            is_movie=self.media_type == "movie",
        )


class SpoilerConfig(BaseModel):
    """Which fields are spoiler-sensitive and how blocked images degrade."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    images: bool = False
    title: bool = False
    overview: bool = False
    include_movies: bool = Field(
        default=False,
        validation_alias=AliasChoices("include_movies", "includeMovies"),
    )
    replacement_mode: ReplacementMode = Field(
        default="blur",
        validation_alias=AliasChoices("replacement_mode", "replacementMode"),
    )


class RevealState(BaseModel):
    """Per-row reveal latches; lives only as long as the view showing the row."""

    model_config = ConfigDict(frozen=True)

    image: bool = False
    title: bool = False
    overview: bool = False

    def reveal(self, field: Literal["image", "title", "overview"]) -> "RevealState":
        return self.model_copy(update={field: True})


class SpoilerDecision(BaseModel):
    """Per-field visibility verdict for one release."""

    model_config = ConfigDict(frozen=True)

    image_blocked: bool
    title_blocked: bool
    overview_blocked: bool
    use_banner: bool = False

    def to_payload(self) -> dict[str, bool]:
        return {
            "imageBlocked": self.image_blocked,
            "titleBlocked": self.title_blocked,
            "overviewBlocked": self.overview_blocked,
            "useBanner": self.use_banner,
        }


class HiddenItem(BaseModel):
    """A show the user removed and does not want re-added by syncs."""

    id: int
    name: str | None = None


class UserSettings(BaseModel):
    """User preferences threaded explicitly into the pure policy functions."""

    model_config = ConfigDict(populate_by_name=True)

    spoiler_config: SpoilerConfig = Field(
        default_factory=SpoilerConfig,
        validation_alias=AliasChoices("spoiler_config", "spoilerConfig"),
    )
    hide_theatrical: bool = Field(
        default=False,
        validation_alias=AliasChoices("hide_theatrical", "hideTheatrical"),
    )
    ignore_specials: bool = Field(
        default=False,
        validation_alias=AliasChoices("ignore_specials", "ignoreSpecials"),
    )
    hidden_items: list[HiddenItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("hidden_items", "hiddenItems"),
    )
    show_hidden: bool = Field(
        default=False, validation_alias=AliasChoices("show_hidden", "showHidden")
    )
    reminder_strategy: ReminderStrategy = Field(
        default="ask",
        validation_alias=AliasChoices("reminder_strategy", "reminderStrategy"),
    )
    timezone: str | None = None
    time_shift: bool = Field(
        default=False, validation_alias=AliasChoices("time_shift", "timeShift")
    )

    @field_validator("timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: object) -> str | None:
        """Reject timezone names zoneinfo cannot resolve."""

        if value is None:
            return None
        name = str(value).strip()
        if not name:
            return None
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {name}") from exc
        return name


class TrackedShow(BaseModel):
    """A followed series or movie."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str = ""
    media_type: ShowType = "tv"
    origin_country: list[str] = Field(default_factory=list)


class Reminder(BaseModel):
    """A request to be notified about an upcoming release."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    show_id: int = Field(validation_alias=AliasChoices("show_id", "tmdb_id", "showId"))
    media_type: ShowType
    show_name: str | None = None
    scope: ReminderScope
    episode_season: int | None = None
    episode_number: int | None = None
    offset_minutes: int = Field(default=0, ge=0)
