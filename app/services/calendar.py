"""Group releases into calendar day buckets and apply visibility filters."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models import Release, UserSettings

logger = logging.getLogger(__name__)

# Broadcast timezone assumed for a show's first origin country.
COUNTRY_TIMEZONES: dict[str, str] = {
    "US": "America/New_York",
    "CA": "America/Toronto",
    "GB": "Europe/London",
    "IE": "Europe/Dublin",
    "JP": "Asia/Tokyo",
    "KR": "Asia/Seoul",
    "CN": "Asia/Shanghai",
    "AU": "Australia/Sydney",
    "NZ": "Pacific/Auckland",
    "DE": "Europe/Berlin",
    "FR": "Europe/Paris",
    "ES": "Europe/Madrid",
    "IT": "Europe/Rome",
    "NL": "Europe/Amsterdam",
    "BR": "America/Sao_Paulo",
    "MX": "America/Mexico_City",
    "AR": "America/Argentina/Buenos_Aires",
    "IN": "Asia/Kolkata",
    "RU": "Europe/Moscow",
    "ZA": "Africa/Johannesburg",
}

PRIME_TIME = time(20, 0)


@dataclass(frozen=True, slots=True)
class CalendarFilters:
    """Explicit filter settings; every filter only ever removes releases."""

    hide_theatrical: bool = False
    ignore_specials: bool = False
    hidden_show_ids: frozenset[int] = field(default_factory=frozenset)
    show_hidden: bool = False
    zone: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))
    time_shift: bool = False

    @classmethod
    def from_settings(
        cls, user_settings: UserSettings, *, default_zone: ZoneInfo | None = None
    ) -> "CalendarFilters":
        zone = default_zone or ZoneInfo("UTC")
        if user_settings.timezone:
            try:
                zone = ZoneInfo(user_settings.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning(
                    "Unknown timezone %r in user settings; using %s",
                    user_settings.timezone,
                    zone,
                )
        return cls(
            hide_theatrical=user_settings.hide_theatrical,
            ignore_specials=user_settings.ignore_specials,
            hidden_show_ids=frozenset(item.id for item in user_settings.hidden_items),
            show_hidden=user_settings.show_hidden,
            zone=zone,
            time_shift=user_settings.time_shift,
        )


def date_key(air_date: date | datetime, zone: ZoneInfo) -> str:
    """Return the ``yyyy-MM-dd`` day an air date falls on in the display zone.

    Plain dates already name a calendar day. Naive datetimes are UTC.
    """

    if isinstance(air_date, datetime):
        moment = air_date if air_date.tzinfo else air_date.replace(tzinfo=timezone.utc)
        return moment.astimezone(zone).date().isoformat()
    return air_date.isoformat()


def shift_air_date(
    air_date: date, origin_country: Sequence[str], zone: ZoneInfo
) -> date:
    """Move a date-only air date to the day a prime-time airing lands on locally."""

    if not origin_country:
        return air_date
    origin_name = COUNTRY_TIMEZONES.get(origin_country[0])
    if origin_name is None:
        return air_date
    airing = datetime.combine(air_date, PRIME_TIME, tzinfo=ZoneInfo(origin_name))
    return airing.astimezone(zone).date()


def release_day(release: Release, filters: CalendarFilters) -> str:
    air_date = release.air_date
    if filters.time_shift and not isinstance(air_date, datetime):
        air_date = shift_air_date(air_date, release.origin_country, filters.zone)
    return date_key(air_date, filters.zone)


def apply_filters(releases: Iterable[Release], filters: CalendarFilters) -> list[Release]:
    visible = list(releases)
    if filters.hide_theatrical:
        visible = [
            release
            for release in visible
            if not (release.is_movie and release.release_type == "theatrical")
        ]
    if filters.ignore_specials:
        visible = [release for release in visible if not release.is_special]
    if filters.hidden_show_ids and not filters.show_hidden:
        visible = [
            release
            for release in visible
            if release.show_id not in filters.hidden_show_ids
        ]
    return visible


def aggregate(
    releases: Iterable[Release], filters: CalendarFilters
) -> dict[str, list[Release]]:
    """Bucket visible releases by display day, preserving upstream order."""

    buckets: dict[str, list[Release]] = {}
    for release in apply_filters(releases, filters):
        buckets.setdefault(release_day(release, filters), []).append(release)
    return buckets


def group_by_show(releases: Iterable[Release]) -> dict[int, list[Release]]:
    """Sub-group a day's releases so one card can represent several episodes."""

    groups: dict[int, list[Release]] = {}
    for release in releases:
        groups.setdefault(release.show_id, []).append(release)
    return groups
