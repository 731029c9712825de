"""Reminder scope canonicalisation and duplicate detection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Literal

from ..models import Release, Reminder, ReminderScope, ReminderStrategy, TrackedShow

logger = logging.getLogger(__name__)

# Scope a special (season 0) episode request collapses to.
SPECIALS_DEFAULT_SCOPE: ReminderScope = "all"


@dataclass(frozen=True, slots=True)
class ReminderResolution:
    """Canonical reminder for a request and whether an equivalent one exists.

    When ``already_exists`` is true ``reminder`` is the existing entry.
    """

    reminder: Reminder
    already_exists: bool


@dataclass(frozen=True, slots=True)
class ReminderDecision:
    """What to do with a reminder request under the user's strategy."""

    action: Literal["ignore", "prompt", "add"]
    reminder: Reminder | None = None


def canonicalize(
    request: Reminder, *, specials_scope: ReminderScope = SPECIALS_DEFAULT_SCOPE
) -> Reminder:
    """Normalise scope and episode fields of a reminder request."""

    if request.media_type == "movie":
        scope = request.scope if request.scope.startswith("movie") else "movie_digital"
        return request.model_copy(
            update={"scope": scope, "episode_season": None, "episode_number": None}
        )

    if request.scope.startswith("movie"):
        raise ValueError("Movie reminder scopes are not valid for TV shows")

    if request.scope == "episode":
        if request.episode_season is None or request.episode_number is None:
            raise ValueError("Episode reminders need a season and an episode number")
        if request.episode_season == 0:
            return request.model_copy(
                update={
                    "scope": specials_scope,
                    "episode_season": None,
                    "episode_number": None,
                }
            )
        return request

    return request.model_copy(update={"episode_season": None, "episode_number": None})


def is_duplicate(candidate: Reminder, existing: Reminder) -> bool:
    """Two reminders collide on the same show under the same scope class.

    Movie scopes form a single class: a theatrical reminder duplicates a
    digital one for the same title.
    """

    if candidate.show_id != existing.show_id:
        return False
    if candidate.scope == "all" and existing.scope == "all":
        return True
    if candidate.scope == "episode" and existing.scope == "episode":
        return (
            candidate.episode_season == existing.episode_season
            and candidate.episode_number == existing.episode_number
        )
    return candidate.scope.startswith("movie") and existing.scope.startswith("movie")


def resolve(request: Reminder, existing: Iterable[Reminder]) -> ReminderResolution:
    reminder = canonicalize(request)
    for current in existing:
        if is_duplicate(reminder, current):
            return ReminderResolution(reminder=current, already_exists=True)
    return ReminderResolution(reminder=reminder, already_exists=False)


def decide(item: Release | TrackedShow, strategy: ReminderStrategy) -> ReminderDecision:
    """Apply the user's reminder strategy to a request made from a release or show."""

    if strategy == "never":
        return ReminderDecision(action="ignore")
    if strategy == "ask":
        return ReminderDecision(action="prompt")

    if isinstance(item, Release):
        is_movie = item.is_movie
        show_id = item.show_id
        name = item.show_name or item.name
    else:
        is_movie = item.media_type == "movie"
        show_id = item.id
        name = item.name
    reminder = Reminder(
        show_id=show_id,
        media_type="movie" if is_movie else "tv",
        show_name=name,
        scope="movie_digital" if is_movie else "all",
        offset_minutes=0,
    )
    return ReminderDecision(action="add", reminder=reminder)


class ReminderBook:
    """Owns a user's reminder list; duplicates are rejected, never merged."""

    def __init__(self, reminders: Iterable[Reminder] = ()):
        self._reminders: list[Reminder] = list(reminders)

    def add(self, request: Reminder) -> ReminderResolution:
        resolution = resolve(request, self._reminders)
        if resolution.already_exists:
            logger.debug(
                "Reminder for show %s (%s) already exists",
                request.show_id,
                request.scope,
            )
            return resolution
        self._reminders.append(resolution.reminder)
        return resolution

    def remove(self, reminder_id: str) -> bool:
        remaining = [item for item in self._reminders if item.id != reminder_id]
        removed = len(remaining) != len(self._reminders)
        self._reminders = remaining
        return removed

    def for_show(self, show_id: int) -> list[Reminder]:
        return [item for item in self._reminders if item.show_id == show_id]

    def snapshot(self) -> list[Reminder]:
        return list(self._reminders)

    def __iter__(self) -> Iterator[Reminder]:
        return iter(list(self._reminders))

    def __len__(self) -> int:
        return len(self._reminders)
