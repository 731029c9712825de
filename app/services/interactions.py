"""In-memory source of truth for watched/unwatched state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping

from ..models import Interaction, Release, parse_interaction_key, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Progress:
    """Furthest watched episode of a series."""

    max_season: int = 0
    max_episode: int = 0

    def to_payload(self) -> dict[str, int]:
        return {"maxSeason": self.max_season, "maxEpisode": self.max_episode}


class InteractionStore:
    """Keyed interaction state with synchronous mutation operations.

    The store performs no I/O. Persistence happens at process boundaries via
    :meth:`from_snapshot` and :meth:`snapshot`; :meth:`drain_dirty` reports the
    keys touched since the last save so callers only write what changed.
    """

    def __init__(self) -> None:
        self._items: dict[str, Interaction] = {}
        self._dirty: set[str] = set()

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Interaction]) -> "InteractionStore":
        store = cls()
        for key, interaction in snapshot.items():
            if interaction.key != key:
                logger.warning("Skipping interaction stored under mismatched key %s", key)
                continue
            store._items[key] = interaction
        return store

    def snapshot(self) -> dict[str, Interaction]:
        return dict(self._items)

    def drain_dirty(self) -> dict[str, Interaction]:
        """Return interactions mutated since the previous drain."""

        changed = {key: self._items[key] for key in self._dirty if key in self._items}
        self._dirty.clear()
        return changed

    def get(self, key: str) -> Interaction | None:
        return self._items.get(key)

    def is_watched(self, release: Release) -> bool:
        interaction = self._items.get(release.key)
        return bool(interaction and interaction.is_watched)

    def toggle(self, key: str) -> Interaction:
        """Flip the watched flag, creating the interaction as watched if absent."""

        current = self._items.get(key)
        next_value = True if current is None else not current.is_watched
        return self.set_watched(key, next_value)

    def set_watched(self, key: str, value: bool) -> Interaction:
        """Create or update the interaction so that ``is_watched == value``."""

        current = self._items.get(key) or Interaction.from_key(key)
        now = utcnow()
        updated = current.model_copy(
            update={
                "is_watched": value,
                "watched_at": (current.watched_at or now) if value else None,
                "updated_at": now,
            }
        )
        self._items[key] = updated
        self._dirty.add(key)
        return updated

    def mark_many(self, keys: Iterable[str]) -> list[Interaction]:
        """Mark every key watched, skipping ones that already are."""

        changed: list[Interaction] = []
        for key in keys:
            existing = self._items.get(key)
            if existing is not None and existing.is_watched:
                continue
            changed.append(self.set_watched(key, True))
        return changed

    def merge(self, interactions: Iterable[Interaction]) -> int:
        """Apply externally sourced interactions, newest ``updated_at`` wins."""

        applied = 0
        for incoming in interactions:
            key = incoming.key
            existing = self._items.get(key)
            if existing is not None and existing.updated_at >= incoming.updated_at:
                continue
            self._items[key] = incoming
            self._dirty.add(key)
            applied += 1
        return applied

    def progress_for(self, show_id: int) -> Progress:
        """Return the greatest watched (season, episode) pair for the show."""

        best = (0, 0)
        for key, interaction in self._items.items():
            if interaction.show_id != show_id or interaction.media_type != "episode":
                continue
            if not interaction.is_watched:
                continue
            _, _, season, episode = parse_interaction_key(key)
            candidate = (season or 0, episode or 0)
            if candidate > best:
                best = candidate
        return Progress(max_season=best[0], max_episode=best[1])

    def for_show(self, show_id: int) -> list[Interaction]:
        return [item for item in self._items.values() if item.show_id == show_id]

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)
