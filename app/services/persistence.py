"""Load and save a profile's tracker state through SQLAlchemy."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Mapping

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import InteractionRecord, Profile, ReminderRecord
from ..models import Interaction, Reminder, TrackedShow, UserSettings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProfileSnapshot:
    """Everything persisted for one profile, as domain models."""

    id: str
    username: str | None = None
    settings: UserSettings = field(default_factory=UserSettings)
    tracked_shows: list[TrackedShow] = field(default_factory=list)
    interactions: dict[str, Interaction] = field(default_factory=dict)
    reminders: list[Reminder] = field(default_factory=list)
    trakt_access_token: str | None = None


def _to_naive_utc(value: datetime | None) -> datetime | None:
    # sqlite DATETIME columns drop tzinfo
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class StateRepository:
    """Persistence boundary for the tracker service."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load(self, profile_id: str) -> ProfileSnapshot | None:
        async with self._session_factory() as session:
            profile = await session.get(Profile, profile_id)
            if profile is None:
                return None

            snapshot = ProfileSnapshot(
                id=profile.id,
                username=profile.username,
                settings=self._load_settings(profile),
                tracked_shows=self._load_tracked_shows(profile),
                trakt_access_token=profile.trakt_access_token,
            )

            result = await session.execute(
                select(InteractionRecord).where(InteractionRecord.profile_id == profile_id)
            )
            for record in result.scalars():
                interaction = Interaction(
                    show_id=record.show_id,
                    media_type=record.media_type,
                    season_number=record.season_number,
                    episode_number=record.episode_number,
                    is_watched=record.is_watched,
                    watched_at=record.watched_at,
                    updated_at=record.updated_at,
                )
                snapshot.interactions[interaction.key] = interaction

            result = await session.execute(
                select(ReminderRecord)
                .where(ReminderRecord.profile_id == profile_id)
                .order_by(ReminderRecord.position)
            )
            for record in result.scalars():
                try:
                    snapshot.reminders.append(Reminder.model_validate(record.payload))
                except ValidationError:
                    logger.warning("Dropping unreadable reminder %s for %s", record.id, profile_id)
            return snapshot

    async def ensure_profile(self, profile_id: str, *, username: str | None = None) -> None:
        async with self._session_factory() as session:
            profile = await session.get(Profile, profile_id)
            if profile is not None:
                return
            session.add(
                Profile(
                    id=profile_id,
                    username=username,
                    settings=UserSettings().model_dump(mode="json", by_alias=True),
                    tracked_shows=[],
                )
            )
            await session.commit()
            logger.info("Created profile %s", profile_id)

    async def save_profile(
        self,
        profile_id: str,
        *,
        username: str | None = None,
        settings: UserSettings | None = None,
        tracked_shows: Iterable[TrackedShow] | None = None,
        trakt_access_token: str | None = None,
        trakt_synced_at: datetime | None = None,
    ) -> None:
        """Write the scalar profile fields that are given; others stay untouched."""

        async with self._session_factory() as session:
            profile = await session.get(Profile, profile_id)
            if profile is None:
                profile = Profile(id=profile_id, tracked_shows=[])
                session.add(profile)
            if username is not None:
                profile.username = username
            if settings is not None:
                profile.settings = settings.model_dump(mode="json", by_alias=True)
            if tracked_shows is not None:
                profile.tracked_shows = [
                    show.model_dump(mode="json", by_alias=True) for show in tracked_shows
                ]
            if trakt_access_token is not None:
                profile.trakt_access_token = trakt_access_token
            if trakt_synced_at is not None:
                profile.trakt_synced_at = _to_naive_utc(trakt_synced_at)
            profile.updated_at = datetime.utcnow()
            await session.commit()

    async def save_interactions(
        self, profile_id: str, interactions: Mapping[str, Interaction]
    ) -> int:
        """Upsert the given interactions keyed by interaction key."""

        if not interactions:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                select(InteractionRecord).where(
                    InteractionRecord.profile_id == profile_id,
                    InteractionRecord.key.in_(list(interactions)),
                )
            )
            existing = {record.key: record for record in result.scalars()}
            for key, interaction in interactions.items():
                record = existing.get(key)
                if record is None:
                    record = InteractionRecord(profile_id=profile_id, key=key)
                    session.add(record)
                record.show_id = interaction.show_id
                record.media_type = interaction.media_type
                record.season_number = interaction.season_number
                record.episode_number = interaction.episode_number
                record.is_watched = interaction.is_watched
                record.watched_at = _to_naive_utc(interaction.watched_at)
                record.updated_at = _to_naive_utc(interaction.updated_at)
            await session.commit()
        logger.debug("Saved %s interactions for %s", len(interactions), profile_id)
        return len(interactions)

    async def replace_reminders(self, profile_id: str, reminders: Iterable[Reminder]) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ReminderRecord).where(ReminderRecord.profile_id == profile_id)
            )
            for position, reminder in enumerate(reminders):
                session.add(
                    ReminderRecord(
                        id=reminder.id,
                        profile_id=profile_id,
                        show_id=reminder.show_id,
                        scope=reminder.scope,
                        position=position,
                        payload=reminder.model_dump(mode="json", by_alias=True),
                    )
                )
            await session.commit()

    @staticmethod
    def _load_settings(profile: Profile) -> UserSettings:
        if not profile.settings:
            return UserSettings()
        try:
            return UserSettings.model_validate(profile.settings)
        except ValidationError:
            logger.warning("Stored settings for %s are invalid, using defaults", profile.id)
            return UserSettings()

    @staticmethod
    def _load_tracked_shows(profile: Profile) -> list[TrackedShow]:
        shows: list[TrackedShow] = []
        for raw in profile.tracked_shows or []:
            try:
                shows.append(TrackedShow.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping invalid tracked show for %s: %s", profile.id, raw)
        return shows
