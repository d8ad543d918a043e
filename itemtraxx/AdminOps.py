import functools
import logging
from typing import Any, Callable

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from db.deps import get_gear_session_factory
from schemas.admin_ops import (
    ACTION_NAMES,
    ADMIN_OPS_COMMAND,
    BulkImportGearCommand,
    GetNotificationsCommand,
    GetStatusTrackingCommand,
    SendOverdueRemindersCommand,
    SetDuePolicyCommand,
)
from services.access_service import (
    ROLE_TENANT_ADMIN,
    TENANT_ROLES,
    CallerContext,
    extract_bearer_token,
    fetch_auth_user,
    require_role,
    resolve_caller,
)
from services.email_service import send_reminder_email
from services.errors import AdminOpsError, InvalidRequest, RateLimited
from services.import_service import import_gear
from services.notification_service import build_notifications
from services.policy_service import save_policy
from services.rate_limit_service import enforce_rate_limit
from services.reminder_service import send_overdue_reminders
from services.status_tracking_service import build_status_tracking
from settings import Settings, load_allowed_origins, load_settings

app = FastAPI()

ADMIN_OPS_LOGGER = logging.getLogger("itemtraxx.admin_ops")

BASE_CORS_HEADERS = {
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Vary": "Origin",
}
ADMIN_ONLY = frozenset({ROLE_TENANT_ADMIN})
ACTION_ROLES = {
    "get_notifications": TENANT_ROLES,
    "get_status_tracking": ADMIN_ONLY,
    "set_due_policy": ADMIN_ONLY,
    "send_overdue_reminders": ADMIN_ONLY,
    "bulk_import_gear": ADMIN_ONLY,
}
_INVALID_BODY = object()


def resolve_cors(request: Request) -> tuple[bool, dict[str, str]]:
    origin = request.headers.get("origin")
    if not origin:
        return True, dict(BASE_CORS_HEADERS)
    if origin in load_allowed_origins():
        return True, {**BASE_CORS_HEADERS, "Access-Control-Allow-Origin": origin}
    return False, dict(BASE_CORS_HEADERS)


def _json_response(request: Request, status_code: int, body: dict, headers: dict[str, str] | None = None) -> JSONResponse:
    _, cors_headers = resolve_cors(request)
    return JSONResponse(status_code=status_code, content=body, headers={**cors_headers, **(headers or {})})


@app.exception_handler(AdminOpsError)
def handle_admin_ops_error(request: Request, exc: AdminOpsError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return _json_response(request, exc.status_code, {"error": exc.message}, headers)


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    ADMIN_OPS_LOGGER.exception("admin-ops function error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Request failed"})


async def read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return _INVALID_BODY


def parse_command(body: Any):
    if not isinstance(body, dict) or not isinstance(body.get("action"), str):
        raise InvalidRequest()
    if body["action"] not in ACTION_NAMES:
        raise InvalidRequest("Invalid action")
    try:
        return ADMIN_OPS_COMMAND.validate_python(body)
    except ValidationError as exc:
        raise InvalidRequest() from exc


def _reminder_sender(settings: Settings) -> Callable[..., None]:
    return functools.partial(send_reminder_email, timeout=settings.email_timeout_seconds)


def handle_get_notifications(db: Session, session_factory: sessionmaker, caller: CallerContext, settings: Settings, command: GetNotificationsCommand) -> dict:
    return build_notifications(session_factory, caller.tenant_id)


def handle_get_status_tracking(db: Session, session_factory: sessionmaker, caller: CallerContext, settings: Settings, command: GetStatusTrackingCommand) -> dict:
    return build_status_tracking(session_factory, caller.tenant_id)


def handle_set_due_policy(db: Session, session_factory: sessionmaker, caller: CallerContext, settings: Settings, command: SetDuePolicyCommand) -> dict:
    return save_policy(db, caller.tenant_id, caller.user_id, command.payload.model_dump())


def handle_send_overdue_reminders(db: Session, session_factory: sessionmaker, caller: CallerContext, settings: Settings, command: SendOverdueRemindersCommand) -> dict:
    return send_overdue_reminders(
        db,
        caller.tenant_id,
        api_key=settings.resend_api_key,
        sender=settings.email_from,
        send_email=_reminder_sender(settings),
    )


def handle_bulk_import_gear(db: Session, session_factory: sessionmaker, caller: CallerContext, settings: Settings, command: BulkImportGearCommand) -> dict:
    return import_gear(db, caller.tenant_id, caller.user_id, command.payload.rows)


ACTION_HANDLERS = {
    "get_notifications": handle_get_notifications,
    "get_status_tracking": handle_get_status_tracking,
    "set_due_policy": handle_set_due_policy,
    "send_overdue_reminders": handle_send_overdue_reminders,
    "bulk_import_gear": handle_bulk_import_gear,
}


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.options("/admin-ops")
def admin_ops_preflight(request: Request):
    allowed, headers = resolve_cors(request)
    if not allowed:
        return PlainTextResponse("Origin not allowed", status_code=403, headers=headers)
    return PlainTextResponse("ok", headers=headers)


@app.post("/admin-ops")
def admin_ops(
    request: Request,
    body: Any = Depends(read_json_body),
    authorization: str | None = Header(None),
):
    allowed, _ = resolve_cors(request)
    if not allowed:
        return _json_response(request, 403, {"error": "Origin not allowed"})

    access_token = extract_bearer_token(authorization)
    settings = load_settings()
    auth_user = fetch_auth_user(
        settings.supabase_url,
        settings.publishable_key,
        access_token,
        timeout=settings.auth_timeout_seconds,
    )
    user_id = str(auth_user["id"])
    session_factory = get_gear_session_factory()

    with session_factory() as db:
        caller = resolve_caller(db, user_id)
        enforce_rate_limit(db, caller)

        command = parse_command(body)
        require_role(caller, ACTION_ROLES[command.action])
        ADMIN_OPS_LOGGER.info(
            "admin-ops action=%s tenant_id=%s user_id=%s role=%s",
            command.action,
            caller.tenant_id,
            caller.user_id,
            caller.role,
        )
        data = ACTION_HANDLERS[command.action](db, session_factory, caller, settings, command)
    return _json_response(request, 200, {"data": data})
