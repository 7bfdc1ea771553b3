from __future__ import annotations

import logging
from pathlib import Path

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse

from memento.config import configure_logging, get_settings
from memento.db import count_subscribers, init_db, remove_subscriber, update_preferences, upsert_subscriber
from memento.errors import MementoError, ValidationError
from memento.jobs.reminders import send_now, send_test
from memento.jobs.schedule_runner import SchedulerThread
from memento.life import life_expectancy_years, life_percentage_remaining, life_weeks
from memento.models import GENDER_ALIASES, normalize_timezone, preferences_update_from_payload, subscriber_from_payload

logger = logging.getLogger(__name__)

app = FastAPI(title="Memento Mori")
scheduler = SchedulerThread()


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()
    if settings.scheduler_enabled:
        scheduler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    scheduler.stop()


@app.exception_handler(MementoError)
async def memento_error(request: Request, exc: MementoError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"ok": False, "error": str(exc)}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = errors[0].get("msg", "invalid request") if errors else "invalid request"
    return JSONResponse({"ok": False, "error": detail}, status_code=400)


def _endpoint_from(payload: dict | None) -> str:
    endpoint = (payload or {}).get("endpoint")
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise ValidationError("endpoint is required")
    return endpoint.strip()


def _optional_str(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) and value else None


@app.get("/api/health")
def health() -> JSONResponse:
    return JSONResponse({"status": "ok", "subscribers": count_subscribers()})


@app.get("/api/push/public-key")
def public_key() -> JSONResponse:
    return JSONResponse({"publicKey": get_settings().vapid_public_key or ""})


@app.post("/api/push/subscribe")
def subscribe(payload: dict | None = Body(None)) -> JSONResponse:
    subscriber = subscriber_from_payload(payload, get_settings().default_timezone)
    upsert_subscriber(subscriber)
    return JSONResponse({"ok": True}, status_code=201)


@app.put("/api/push/prefs")
def update_prefs(payload: dict | None = Body(None)) -> JSONResponse:
    payload = payload or {}
    endpoint = _endpoint_from(payload)
    update = preferences_update_from_payload(payload)
    timezone = None
    if payload.get("timezone"):
        timezone = normalize_timezone(payload["timezone"], get_settings().default_timezone)
    update_preferences(endpoint, update, timezone=timezone)
    return JSONResponse({"ok": True})


@app.delete("/api/push/unsubscribe")
def unsubscribe(payload: dict | None = Body(None)) -> JSONResponse:
    remove_subscriber(_endpoint_from(payload))
    return JSONResponse({"ok": True})


@app.post("/api/push/test")
def push_test(payload: dict | None = Body(None)) -> JSONResponse:
    payload = payload or {}
    sent = send_test(
        endpoint=_optional_str(payload, "endpoint"),
        title=_optional_str(payload, "title"),
        body=_optional_str(payload, "body"),
        url=_optional_str(payload, "url"),
    )
    return JSONResponse({"ok": True, "sent": sent})


@app.api_route("/api/push/send-now", methods=["GET", "POST"])
def push_send_now(endpoint: str | None = None, payload: dict | None = Body(None)) -> JSONResponse:
    target = endpoint or _optional_str(payload or {}, "endpoint")
    return JSONResponse({"ok": True, "sent": send_now(endpoint=target)})


@app.get("/api/life")
def life(dob: str, gender: str = "male", customLifeExpectancy: str | None = None) -> JSONResponse:
    canonical = GENDER_ALIASES.get(gender.strip().lower(), "male")
    years = life_expectancy_years(canonical, customLifeExpectancy)
    try:
        weeks = life_weeks(dob, years)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return JSONResponse(
        {
            "totalWeeks": weeks["total_weeks"],
            "pastWeeks": weeks["past_weeks"],
            "lifeExpectancyYears": years,
            "percentRemaining": life_percentage_remaining(dob, canonical, customLifeExpectancy),
        }
    )


@app.api_route("/api/{rest:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def api_not_found(rest: str) -> JSONResponse:
    return JSONResponse({"error": "Not Found"}, status_code=404)


FRONTEND_DIST = Path(get_settings().frontend_dist) if get_settings().frontend_dist else None

if FRONTEND_DIST is not None and (FRONTEND_DIST / "index.html").exists():

    @app.get("/{path:path}", include_in_schema=False)
    def spa(path: str) -> FileResponse:
        candidate = (FRONTEND_DIST / path).resolve()
        if path and candidate.is_file() and FRONTEND_DIST.resolve() in candidate.parents:
            return FileResponse(candidate)
        return FileResponse(FRONTEND_DIST / "index.html")
