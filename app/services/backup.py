"""Parsing, validation and export of profile backup documents."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import InvalidImportFormat
from ..models import Interaction, Reminder, TrackedShow, UserSettings, utcnow

logger = logging.getLogger(__name__)

BACKUP_VERSION = "2.5"


class BackupUser(BaseModel):
    """Identity block of a backup; other fields are carried but ignored."""

    model_config = ConfigDict(extra="allow")

    username: str = Field(min_length=1)


class BackupDocument(BaseModel):
    """A full profile export as produced by :func:`build_export`."""

    model_config = ConfigDict(populate_by_name=True)

    user: BackupUser
    watchlist: list[TrackedShow] = Field(default_factory=list)
    interactions: dict[str, Interaction] = Field(default_factory=dict)
    reminders: list[Reminder] = Field(default_factory=list)
    settings: UserSettings | None = None
    version: str | None = None
    timestamp: datetime | None = None

    def interactions_by_show(self) -> dict[int, list[Interaction]]:
        grouped: dict[int, list[Interaction]] = {}
        for interaction in self.interactions.values():
            grouped.setdefault(interaction.show_id, []).append(interaction)
        return grouped


@dataclass(frozen=True, slots=True)
class ImportPreview:
    """Summary shown to the user before an import is committed."""

    username: str
    show_count: int
    interaction_count: int
    reminder_count: int
    estimate: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "shows": self.show_count,
            "interactions": self.interaction_count,
            "reminders": self.reminder_count,
            "estimate": self.estimate,
        }


def parse_backup(raw: str | bytes | Mapping[str, Any]) -> BackupDocument:
    """Fully parse and validate a backup; nothing is mutated on failure."""

    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidImportFormat("Backup is not valid JSON") from exc
    else:
        data = dict(raw)

    if not isinstance(data, dict):
        raise InvalidImportFormat("Backup must be a JSON object")
    if not data.get("user"):
        raise InvalidImportFormat("Invalid backup file. Missing user data.")

    try:
        document = BackupDocument.model_validate(data)
    except ValidationError as exc:
        logger.warning("Rejected backup document: %s", exc.errors()[:3])
        raise InvalidImportFormat(f"Backup failed validation: {exc.error_count()} errors") from exc

    for key, interaction in document.interactions.items():
        if interaction.key != key:
            raise InvalidImportFormat(f"Interaction key {key!r} does not match its content")
    return document


def build_export(
    *,
    username: str,
    watchlist: list[TrackedShow],
    interactions: Mapping[str, Interaction],
    reminders: list[Reminder],
    settings: UserSettings,
) -> dict[str, Any]:
    """Return a JSON-ready backup document that :func:`parse_backup` accepts."""

    document = BackupDocument(
        user=BackupUser(username=username),
        watchlist=watchlist,
        interactions=dict(interactions),
        reminders=reminders,
        settings=settings,
        version=BACKUP_VERSION,
        timestamp=utcnow(),
    )
    return document.model_dump(mode="json")
