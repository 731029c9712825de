"""Entry point for the FastAPI-powered release tracker API."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import date
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import settings
from .database import Database
from .errors import CatalogError, InvalidImportFormat
from .models import Release, Reminder, RevealState, TrackedShow, UserSettings
from .services.persistence import StateRepository
from .services.tmdb import TMDBCatalogClient
from .services.tracker import TrackerService
from .services.trakt import TraktClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(settings.catalog_timeout_seconds, connect=5.0),
        )
    )
    trakt_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.trakt_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    if not settings.tmdb_api_key:
        logger.warning("TMDB_API_KEY is not set; calendar and sync calls will fail")
    catalog = TMDBCatalogClient(settings, tmdb_http_client)
    trakt = TraktClient(settings, trakt_http_client)
    tracker_service = TrackerService(
        settings,
        StateRepository(database.session_factory),
        catalog,
        trakt_client=trakt,
    )

    app.state.tracker_service = tracker_service
    app.state.database = database
    await tracker_service.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await tracker_service.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Release calendar, watch progress and reminders for followed shows",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_tracker_service(app: FastAPI) -> TrackerService:
    service = getattr(app.state, "tracker_service", None)
    if not isinstance(service, TrackerService):
        raise RuntimeError("Tracker service not initialised")
    return service


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def _parse_month(raw: str | None) -> date:
    if not raw:
        return date.today().replace(day=1)
    try:
        year, month = raw.split("-", 1)
        return date(int(year), int(month), 1)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="month must look like YYYY-MM") from exc


def _coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "yes", "on"}
    if isinstance(value, (int, float)):
        return bool(value)
    return False


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/profiles/{profile_id}/calendar")
    async def calendar_endpoint(profile_id: str, month: str | None = None) -> JSONResponse:
        service = get_tracker_service(fastapi_app)
        payload = await service.calendar(profile_id, _parse_month(month))
        return JSONResponse(payload)

    @fastapi_app.get("/api/profiles/{profile_id}/interactions")
    async def list_interactions(profile_id: str) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        interactions = await service.interactions(profile_id)
        return {
            key: interaction.model_dump(mode="json")
            for key, interaction in interactions.items()
        }

    @fastapi_app.post("/api/profiles/{profile_id}/interactions/{key}/toggle")
    async def toggle_interaction(profile_id: str, key: str) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        try:
            interaction = await service.toggle(profile_id, key)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return interaction.model_dump(mode="json")

    @fastapi_app.put("/api/profiles/{profile_id}/interactions/{key}")
    async def set_interaction(profile_id: str, key: str, request: Request) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        payload = await _json_body(request)
        if "watched" not in payload:
            raise HTTPException(status_code=400, detail="watched is required")
        try:
            interaction = await service.set_watched(
                profile_id, key, _coerce_bool(payload["watched"])
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return interaction.model_dump(mode="json")

    @fastapi_app.get("/api/profiles/{profile_id}/shows/{show_id}/progress")
    async def show_progress(profile_id: str, show_id: int) -> dict[str, int]:
        service = get_tracker_service(fastapi_app)
        progress = await service.progress(profile_id, show_id)
        return progress.to_payload()

    @fastapi_app.post("/api/profiles/{profile_id}/shows/{show_id}/mark-history")
    async def mark_history(profile_id: str, show_id: int, request: Request) -> JSONResponse:
        service = get_tracker_service(fastapi_app)
        payload = await _json_body(request)
        try:
            season = int(payload["season"])
            episode = int(payload["episode"])
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(
                status_code=400, detail="season and episode must be integers"
            ) from exc
        try:
            job = await service.mark_history_watched(
                profile_id,
                show_id,
                season,
                episode,
                wait=_coerce_bool(payload.get("waitForCompletion", False)),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(job.to_payload(), status_code=202)

    @fastapi_app.get("/api/profiles/{profile_id}/settings")
    async def read_settings(profile_id: str) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        user_settings = await service.get_settings(profile_id)
        return user_settings.model_dump(mode="json")

    @fastapi_app.put("/api/profiles/{profile_id}/settings")
    async def write_settings(profile_id: str, request: Request) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        payload = await _json_body(request)
        try:
            user_settings = UserSettings.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        saved = await service.update_settings(profile_id, user_settings)
        return saved.model_dump(mode="json")

    @fastapi_app.get("/api/profiles/{profile_id}/shows")
    async def list_shows(profile_id: str) -> list[dict[str, Any]]:
        service = get_tracker_service(fastapi_app)
        return [show.model_dump(mode="json") for show in await service.tracked_shows(profile_id)]

    @fastapi_app.post("/api/profiles/{profile_id}/shows")
    async def follow_show(profile_id: str, request: Request) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        payload = await _json_body(request)
        try:
            show = TrackedShow.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        shows = await service.track_show(profile_id, show)
        decision = await service.apply_reminder_strategy(profile_id, show)
        return {
            "shows": [item.model_dump(mode="json") for item in shows],
            "reminder": {
                "action": decision.action,
                "reminder": (
                    decision.reminder.model_dump(mode="json") if decision.reminder else None
                ),
            },
        }

    @fastapi_app.delete("/api/profiles/{profile_id}/shows/{show_id}")
    async def unfollow_show(profile_id: str, show_id: int) -> list[dict[str, Any]]:
        service = get_tracker_service(fastapi_app)
        try:
            shows = await service.untrack_show(profile_id, show_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Show is not tracked") from exc
        return [show.model_dump(mode="json") for show in shows]

    @fastapi_app.post("/api/profiles/{profile_id}/spoilers")
    async def spoiler_decision(profile_id: str, request: Request) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        payload = await _json_body(request)
        try:
            release = Release.model_validate(payload.get("release") or {})
            reveal = RevealState.model_validate(payload.get("reveal") or {})
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        decision = await service.evaluate_spoilers(profile_id, release, reveal)
        return decision.to_payload()

    @fastapi_app.post("/api/import/preview")
    async def import_preview(request: Request) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        try:
            preview = service.preview_import(await request.body())
        except InvalidImportFormat as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return preview.to_payload()

    @fastapi_app.post("/api/profiles/{profile_id}/import")
    async def import_profile(profile_id: str, request: Request) -> JSONResponse:
        service = get_tracker_service(fastapi_app)
        wait = _coerce_bool(request.query_params.get("wait", False))
        try:
            job = await service.import_backup(profile_id, await request.body(), wait=wait)
        except InvalidImportFormat as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(job.to_payload(), status_code=202)

    @fastapi_app.get("/api/profiles/{profile_id}/export")
    async def export_profile(profile_id: str) -> JSONResponse:
        service = get_tracker_service(fastapi_app)
        return JSONResponse(await service.export_backup(profile_id))

    @fastapi_app.get("/api/jobs/{job_id}")
    async def job_status(job_id: str) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        try:
            return service.job(job_id).to_payload()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Job not found") from exc

    @fastapi_app.post("/api/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        try:
            return service.cancel_job(job_id).to_payload()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Job not found") from exc

    @fastapi_app.get("/api/profiles/{profile_id}/reminders")
    async def list_reminders(profile_id: str) -> list[dict[str, Any]]:
        service = get_tracker_service(fastapi_app)
        return [
            reminder.model_dump(mode="json") for reminder in await service.reminders(profile_id)
        ]

    @fastapi_app.post("/api/profiles/{profile_id}/reminders")
    async def add_reminder(profile_id: str, request: Request) -> JSONResponse:
        service = get_tracker_service(fastapi_app)
        payload = await _json_body(request)
        try:
            resolution = await service.add_reminder(
                profile_id, Reminder.model_validate(payload)
            )
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(
            {
                "reminder": resolution.reminder.model_dump(mode="json"),
                "alreadyExists": resolution.already_exists,
            },
            status_code=200 if resolution.already_exists else 201,
        )

    @fastapi_app.delete("/api/profiles/{profile_id}/reminders/{reminder_id}")
    async def delete_reminder(profile_id: str, reminder_id: str) -> dict[str, str]:
        service = get_tracker_service(fastapi_app)
        try:
            await service.remove_reminder(profile_id, reminder_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Reminder not found") from exc
        return {"status": "deleted"}

    @fastapi_app.post("/api/profiles/{profile_id}/trakt/sync")
    async def trakt_sync(profile_id: str, request: Request) -> dict[str, Any]:
        service = get_tracker_service(fastapi_app)
        payload = await _json_body(request)
        token = payload.get("accessToken")
        try:
            return await service.sync_trakt(
                profile_id, access_token=str(token) if token else None
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @fastapi_app.exception_handler(CatalogError)
    async def catalog_error_handler(_: Request, exc: CatalogError) -> JSONResponse:
        logger.warning("Catalog request failed: %s", exc)
        return JSONResponse({"detail": str(exc)}, status_code=502)


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
