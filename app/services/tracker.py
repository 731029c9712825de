"""Per-profile orchestration of watch state, calendar views, reminders and sync jobs."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Container, Iterable, Mapping

from ..config import Settings
from ..models import (
    Interaction,
    Release,
    Reminder,
    RevealState,
    SpoilerDecision,
    TrackedShow,
    UserSettings,
    interaction_key,
    utcnow,
)
from .backup import ImportPreview, build_export, parse_backup
from .calendar import CalendarFilters, aggregate, group_by_show
from .catalog import CatalogClient
from .interactions import InteractionStore, Progress
from .persistence import ProfileSnapshot, StateRepository
from .reminders import ReminderBook, ReminderDecision, ReminderResolution, decide
from .spoilers import display_overview, display_title, evaluate, select_image
from .sync import SyncEngine, SyncJob, SyncReport
from .tmdb import BACKDROP_BASE_URL, build_image_url
from .trakt import TraktClient

logger = logging.getLogger(__name__)

# Finished jobs stay queryable until this many newer ones have completed.
MAX_FINISHED_JOBS = 32


@dataclass(slots=True)
class ProfileState:
    """In-memory working copy of a profile; persisted through the repository."""

    id: str
    store: InteractionStore
    reminders: ReminderBook
    settings: UserSettings = field(default_factory=UserSettings)
    tracked_shows: list[TrackedShow] = field(default_factory=list)
    username: str | None = None
    trakt_access_token: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: ProfileSnapshot) -> "ProfileState":
        return cls(
            id=snapshot.id,
            store=InteractionStore.from_snapshot(snapshot.interactions),
            reminders=ReminderBook(snapshot.reminders),
            settings=snapshot.settings,
            tracked_shows=list(snapshot.tracked_shows),
            username=snapshot.username,
            trakt_access_token=snapshot.trakt_access_token,
        )

    def show(self, show_id: int) -> TrackedShow | None:
        for show in self.tracked_shows:
            if show.id == show_id:
                return show
        return None


def history_seasons(target_season: int) -> list[int]:
    """Seasons touched when marking everything up to an episode as watched.

    Specials are only ever marked together with other specials.
    """

    if target_season == 0:
        return [0]
    return list(range(1, target_season + 1))


class TrackerService:
    """Coordinates the pure domain modules with the catalog and persistence."""

    def __init__(
        self,
        settings: Settings,
        repository: StateRepository,
        catalog: CatalogClient,
        *,
        trakt_client: TraktClient | None = None,
        engine: SyncEngine[Any] | None = None,
        max_finished_jobs: int = MAX_FINISHED_JOBS,
    ):
        self._settings = settings
        self._repository = repository
        self._catalog = catalog
        self._trakt = trakt_client
        self._engine = engine or SyncEngine.from_settings(settings)
        self._profiles: dict[str, ProfileState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._jobs: dict[str, SyncJob] = {}
        self._job_tasks: dict[str, asyncio.Task[None]] = {}
        self._max_finished_jobs = max_finished_jobs

    async def start(self) -> None:
        """Make sure the default profile exists."""

        await self._repository.ensure_profile("default")

    async def stop(self) -> None:
        """Cancel outstanding jobs and wait for them to wind down."""

        tasks = list(self._job_tasks.values())
        for job in self._jobs.values():
            if not job.finished:
                job.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._job_tasks.clear()

    @property
    def engine(self) -> SyncEngine[Any]:
        return self._engine

    def _lock(self, profile_id: str) -> asyncio.Lock:
        return self._locks.setdefault(profile_id, asyncio.Lock())

    async def _state(self, profile_id: str) -> ProfileState:
        state = self._profiles.get(profile_id)
        if state is not None:
            return state
        snapshot = await self._repository.load(profile_id)
        if snapshot is None:
            await self._repository.ensure_profile(profile_id)
            snapshot = ProfileSnapshot(id=profile_id)
        state = ProfileState.from_snapshot(snapshot)
        return self._profiles.setdefault(profile_id, state)

    async def _flush(self, state: ProfileState) -> None:
        dirty = state.store.drain_dirty()
        if dirty:
            await self._repository.save_interactions(state.id, dirty)

    # Watch state -----------------------------------------------------------------

    async def toggle(self, profile_id: str, key: str) -> Interaction:
        state = await self._state(profile_id)
        async with self._lock(profile_id):
            interaction = state.store.toggle(key)
            await self._flush(state)
        return interaction

    async def set_watched(self, profile_id: str, key: str, value: bool) -> Interaction:
        state = await self._state(profile_id)
        async with self._lock(profile_id):
            interaction = state.store.set_watched(key, value)
            await self._flush(state)
        return interaction

    async def progress(self, profile_id: str, show_id: int) -> Progress:
        state = await self._state(profile_id)
        return state.store.progress_for(show_id)

    async def interactions(self, profile_id: str) -> dict[str, Interaction]:
        state = await self._state(profile_id)
        return state.store.snapshot()

    # Settings and watchlist ------------------------------------------------------

    async def get_settings(self, profile_id: str) -> UserSettings:
        return (await self._state(profile_id)).settings

    async def update_settings(self, profile_id: str, settings: UserSettings) -> UserSettings:
        state = await self._state(profile_id)
        async with self._lock(profile_id):
            state.settings = settings
            await self._repository.save_profile(profile_id, settings=settings)
        return settings

    async def tracked_shows(self, profile_id: str) -> list[TrackedShow]:
        return list((await self._state(profile_id)).tracked_shows)

    async def track_show(self, profile_id: str, show: TrackedShow) -> list[TrackedShow]:
        state = await self._state(profile_id)
        async with self._lock(profile_id):
            if state.show(show.id) is None:
                state.tracked_shows.append(show)
                await self._repository.save_profile(
                    profile_id, tracked_shows=state.tracked_shows
                )
        return list(state.tracked_shows)

    async def untrack_show(self, profile_id: str, show_id: int) -> list[TrackedShow]:
        state = await self._state(profile_id)
        async with self._lock(profile_id):
            if state.show(show_id) is None:
                raise KeyError(show_id)
            state.tracked_shows = [show for show in state.tracked_shows if show.id != show_id]
            await self._repository.save_profile(profile_id, tracked_shows=state.tracked_shows)
        return list(state.tracked_shows)

    # Views -----------------------------------------------------------------------

    async def evaluate_spoilers(
        self, profile_id: str, release: Release, reveal: RevealState | None = None
    ) -> SpoilerDecision:
        state = await self._state(profile_id)
        return evaluate(
            release, state.store.get(release.key), state.settings.spoiler_config, reveal
        )

    async def calendar(
        self,
        profile_id: str,
        month: date,
        *,
        reveals: Mapping[str, RevealState] | None = None,
    ) -> dict[str, Any]:
        """Build the month view: date buckets, each split into per-show groups."""

        state = await self._state(profile_id)
        releases = await self._catalog.fetch_releases_for_month(month, state.tracked_shows)
        filters = CalendarFilters.from_settings(
            state.settings, default_zone=self._settings.display_zone
        )
        buckets = aggregate(releases, filters)

        days = []
        for day, bucket in buckets.items():
            groups = []
            for show_id, show_releases in group_by_show(bucket).items():
                groups.append(
                    {
                        "showId": show_id,
                        "showName": show_releases[0].show_name,
                        "releases": [
                            self._release_view(state, release, (reveals or {}).get(release.key))
                            for release in show_releases
                        ],
                    }
                )
            days.append({"date": day, "shows": groups})
        return {"month": month.strftime("%Y-%m"), "timezone": str(filters.zone), "days": days}

    def _release_view(
        self, state: ProfileState, release: Release, reveal: RevealState | None
    ) -> dict[str, Any]:
        interaction = state.store.get(release.key)
        decision = evaluate(release, interaction, state.settings.spoiler_config, reveal)
        image_path = select_image(release, decision)
        return {
            "key": release.key,
            "showId": release.show_id,
            "seasonNumber": release.season_number,
            "episodeNumber": release.episode_number,
            "isMovie": release.is_movie,
            "releaseType": release.release_type,
            "airDate": release.air_date.isoformat(),
            "title": display_title(release, decision),
            "overview": display_overview(release, decision),
            "image": (
                build_image_url(image_path, BACKDROP_BASE_URL)
                if decision.use_banner
                else build_image_url(image_path)
            ),
            "watched": bool(interaction and interaction.is_watched),
            "spoiler": decision.to_payload(),
        }

    # Bulk jobs -------------------------------------------------------------------

    def job(self, job_id: str) -> SyncJob:
        return self._jobs[job_id]

    def cancel_job(self, job_id: str) -> SyncJob:
        job = self._jobs[job_id]
        job.cancel()
        return job

    def _prune_jobs(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.finished]
        for job_id in finished[: max(len(finished) - self._max_finished_jobs, 0)]:
            del self._jobs[job_id]

    async def _launch(
        self,
        job: SyncJob,
        work: Callable[[], Awaitable[SyncReport]],
        *,
        wait: bool,
    ) -> SyncJob:
        self._jobs[job.id] = job

        async def _runner() -> None:
            try:
                await work()
            except Exception as exc:  # pragma: no cover - background safety net
                job.state = "failed"
                logger.exception("Background %s job %s failed: %s", job.kind, job.id, exc)
            finally:
                self._job_tasks.pop(job.id, None)
                self._prune_jobs()

        task = asyncio.create_task(_runner())
        self._job_tasks[job.id] = task
        if wait:
            await task
        return job

    async def mark_history_watched(
        self,
        profile_id: str,
        show_id: int,
        season_number: int,
        episode_number: int,
        *,
        wait: bool = False,
    ) -> SyncJob:
        """Mark every episode up to and including the given one as watched."""

        if season_number < 0 or episode_number < 1:
            raise ValueError("Target episode must have a season >= 0 and an episode >= 1")
        state = await self._state(profile_id)
        seasons = history_seasons(season_number)
        job = SyncJob(total=len(seasons), kind="mark-history")

        async def _apply(season: int) -> int:
            count = await self._catalog.fetch_season_episode_count(show_id, season)
            last = episode_number if season == season_number else count
            keys = [
                interaction_key(show_id, season, episode)
                for episode in range(1, min(last, count) + 1)
            ]
            async with self._lock(profile_id):
                changed = state.store.mark_many(keys)
            return len(changed)

        async def _work() -> SyncReport:
            report = await self._engine.run(seasons, _apply, job=job)
            async with self._lock(profile_id):
                await self._flush(state)
            return report

        logger.info(
            "Marking history for show %s up to S%sE%s (%s seasons)",
            show_id,
            season_number,
            episode_number,
            len(seasons),
        )
        return await self._launch(job, _work, wait=wait)

    def preview_import(self, raw: str | bytes | Mapping[str, Any]) -> ImportPreview:
        document = parse_backup(raw)
        return ImportPreview(
            username=document.user.username,
            show_count=len(document.watchlist),
            interaction_count=len(document.interactions),
            reminder_count=len(document.reminders),
            estimate=self._engine.format_estimate(len(document.watchlist)),
        )

    @staticmethod
    def _merge_watchlist(
        state: ProfileState, shows: Iterable[TrackedShow], *, refreshed: Container[int]
    ) -> None:
        # Existing entries are only overwritten with metadata refreshed from the catalog.
        for show in shows:
            existing = state.show(show.id)
            if existing is None:
                state.tracked_shows.append(show)
            elif show.id in refreshed:
                state.tracked_shows[state.tracked_shows.index(existing)] = show

    async def import_backup(
        self,
        profile_id: str,
        raw: str | bytes | Mapping[str, Any],
        *,
        wait: bool = False,
    ) -> SyncJob:
        """Replay a validated backup into the profile as a throttled job.

        Validation happens before anything is touched. Each tracked show is
        refreshed from the catalog and its interactions replayed; a show whose
        refresh fails keeps its backup metadata but its interactions are not
        applied.
        """

        document = parse_backup(raw)
        state = await self._state(profile_id)
        by_show = document.interactions_by_show()
        shows = list(document.watchlist)
        imported: dict[int, TrackedShow] = {}
        job = SyncJob(total=len(shows), kind="import")

        async def _apply(show: TrackedShow) -> int:
            releases = await self._catalog.fetch_show_releases(show)
            refreshed = show
            if releases:
                first = releases[0]
                refreshed = show.model_copy(
                    update={
                        "name": first.show_name or show.name,
                        "origin_country": list(first.origin_country) or show.origin_country,
                    }
                )
            async with self._lock(profile_id):
                applied = state.store.merge(by_show.get(show.id, []))
                imported[show.id] = refreshed
            return applied

        async def _work() -> SyncReport:
            report = await self._engine.run(shows, _apply, job=job)
            if report.cancelled:
                async with self._lock(profile_id):
                    self._merge_watchlist(state, imported.values(), refreshed=imported)
                    await self._flush(state)
                    await self._repository.save_profile(
                        profile_id, tracked_shows=state.tracked_shows
                    )
                logger.info(
                    "Import into %s cancelled; kept %s of %s shows",
                    profile_id,
                    len(imported),
                    len(shows),
                )
                return report

            tracked_ids = {show.id for show in shows}
            orphans = [
                interaction
                for show_id, items in by_show.items()
                if show_id not in tracked_ids
                for interaction in items
            ]
            async with self._lock(profile_id):
                state.store.merge(orphans)
                self._merge_watchlist(
                    state, [imported.get(show.id, show) for show in shows], refreshed=imported
                )
                for reminder in document.reminders:
                    try:
                        state.reminders.add(reminder)
                    except ValueError as exc:
                        logger.warning("Skipping imported reminder %s: %s", reminder.id, exc)
                if document.settings is not None:
                    state.settings = document.settings
                state.username = document.user.username
                await self._flush(state)
                await self._repository.save_profile(
                    profile_id,
                    username=state.username,
                    settings=state.settings,
                    tracked_shows=state.tracked_shows,
                )
                await self._repository.replace_reminders(profile_id, state.reminders.snapshot())
            return report

        logger.info(
            "Importing backup for %s into %s: %s shows, %s interactions",
            document.user.username,
            profile_id,
            len(shows),
            len(document.interactions),
        )
        return await self._launch(job, _work, wait=wait)

    async def export_backup(self, profile_id: str) -> dict[str, Any]:
        state = await self._state(profile_id)
        return build_export(
            username=state.username or state.id,
            watchlist=state.tracked_shows,
            interactions=state.store.snapshot(),
            reminders=state.reminders.snapshot(),
            settings=state.settings,
        )

    # Reminders -------------------------------------------------------------------

    async def reminders(self, profile_id: str) -> list[Reminder]:
        return (await self._state(profile_id)).reminders.snapshot()

    async def add_reminder(self, profile_id: str, request: Reminder) -> ReminderResolution:
        state = await self._state(profile_id)
        async with self._lock(profile_id):
            resolution = state.reminders.add(request)
            if not resolution.already_exists:
                await self._repository.replace_reminders(profile_id, state.reminders.snapshot())
        return resolution

    async def remove_reminder(self, profile_id: str, reminder_id: str) -> None:
        state = await self._state(profile_id)
        async with self._lock(profile_id):
            if not state.reminders.remove(reminder_id):
                raise KeyError(reminder_id)
            await self._repository.replace_reminders(profile_id, state.reminders.snapshot())

    async def apply_reminder_strategy(
        self, profile_id: str, item: Release | TrackedShow
    ) -> ReminderDecision:
        """Handle a new follow under the user's reminder strategy."""

        state = await self._state(profile_id)
        decision = decide(item, state.settings.reminder_strategy)
        if decision.action == "add" and decision.reminder is not None:
            resolution = await self.add_reminder(profile_id, decision.reminder)
            return ReminderDecision(action="add", reminder=resolution.reminder)
        return decision

    # Trakt -----------------------------------------------------------------------

    async def sync_trakt(
        self, profile_id: str, *, access_token: str | None = None
    ) -> dict[str, Any]:
        """Merge Trakt watched history into the profile and follow new titles."""

        if self._trakt is None:
            raise ValueError("Trakt is not configured")
        state = await self._state(profile_id)
        token = access_token or state.trakt_access_token
        if not token:
            raise ValueError("A Trakt access token is required")

        movies, shows = await asyncio.gather(
            self._trakt.fetch_watched("movies", access_token=token),
            self._trakt.fetch_watched("shows", access_token=token),
        )
        interactions = [
            *TraktClient.to_interactions(movies.items, key="movie"),
            *TraktClient.to_interactions(shows.items, key="show"),
        ]
        discovered = [
            *TraktClient.to_tracked_shows(movies.items, key="movie"),
            *TraktClient.to_tracked_shows(shows.items, key="show"),
        ]
        hidden = {item.id for item in state.settings.hidden_items}

        async with self._lock(profile_id):
            applied = state.store.merge(interactions)
            added = 0
            for show in discovered:
                if show.id in hidden or state.show(show.id) is not None:
                    continue
                state.tracked_shows.append(show)
                added += 1
            state.trakt_access_token = token
            await self._flush(state)
            await self._repository.save_profile(
                profile_id,
                tracked_shows=state.tracked_shows,
                trakt_access_token=token,
                trakt_synced_at=utcnow(),
            )

        logger.info(
            "Trakt sync for %s: %s interactions applied, %s shows added",
            profile_id,
            applied,
            added,
        )
        return {
            "interactions": applied,
            "showsAdded": added,
            "moviesFetched": movies.fetched,
            "showsFetched": shows.fetched,
        }
