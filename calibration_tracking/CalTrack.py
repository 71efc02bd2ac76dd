import logging
import os
from contextlib import asynccontextmanager
from datetime import date

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from db.base import Base
from db.deps import get_tracking_db
from db.session import engine_tracking
from schemas.completions import ConfirmPickupRequest, CreateCompletionDto, UpdateCompletionDto
from schemas.intakes import ConfirmIntakeRequest, CreateIntakeDto, UpdateIntakeDto
from services.audit_service import log_audit
from services.completion_service import (
    archive_completion,
    create_completion,
    delete_completion,
    edit_completion,
    list_completions_stmt,
    load_completion,
    restore_completion,
    serialize_completion,
)
from services.employee_service import display_name, employee_role, get_employee, verify_pin
from services.errors import TrackingError
from services.intake_service import (
    archive_intake,
    confirm_intake,
    create_intake,
    delete_intake,
    edit_intake,
    generate_recall_number,
    list_intakes_stmt,
    load_intake,
    restore_intake,
    serialize_intake,
)
from services.overdue_service import (
    due_for_recalibration_stmt,
    due_soon_stmt,
    overdue_intakes_stmt,
    status_summary,
)
from services.pickup_service import confirm_pickup
from services.roles import Actor, can_archive
from services.status import CompletionStatus
from services.user_access_service import create_session, get_session, remove_session


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except ValueError:
        return default


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


DUE_SOON_DEFAULT_DAYS = _env_int("DUE_SOON_DEFAULT_DAYS", 7)
DEFAULT_PAGE_SIZE = _env_int("DEFAULT_PAGE_SIZE", 15)
MAX_PAGE_SIZE = 200
AUTO_CREATE_SCHEMA = _env_flag("AUTO_CREATE_SCHEMA", "true")

AUTH_LOGGER = logging.getLogger("calibration_tracking.auth")
PICKUP_LOGGER = logging.getLogger("calibration_tracking.pickup")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine_tracking)
    yield


app = FastAPI(title="Calibration Tracking", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="calibration_tracking_session",
    same_site="lax",
    https_only=False,
)


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    employeeID: int | str | None = None
    pinCode: str | None = None


def _http_error(exc: TrackingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _audit_auth_event(db: Session, *, action: str, details: str, user_id: int | None = None) -> None:
    log_audit(db, "Auth", int(user_id or 0), action, details, user_id=user_id)
    db.commit()


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = {**session_from_token, "token": session_token}
        return dict(session_from_token)
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict) and get_session(session_from_cookie.get("token")):
        return dict(session_from_cookie)
    return None


def _require_actor(request: Request, db: Session, session_token: str | None) -> Actor:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    # Role and department come from the current employee row, not the token snapshot.
    employee = get_employee(db, session.get("employeeID"))
    if employee is None or employee.IsActive is False:
        raise HTTPException(status_code=401, detail="Session is no longer valid.")
    return Actor(
        employee_id=employee.EmployeeID,
        role=employee_role(employee),
        department_id=employee.DepartmentID,
        display_name=display_name(employee),
    )


def _paginate(db: Session, stmt, page: int, per_page: int, serializer) -> dict:
    total = db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar() or 0
    rows = db.execute(stmt.offset((page - 1) * per_page).limit(per_page)).scalars().all()
    return {
        "items": [serializer(row) for row in rows],
        "total": int(total),
        "page": page,
        "perPage": per_page,
    }


def _empty_page(page: int, per_page: int) -> dict:
    return {"items": [], "total": 0, "page": page, "perPage": per_page}


def _scope_department(actor: Actor, department_id: int | None) -> tuple[int | None, bool]:
    """Admins filter freely; everyone else sees only their own department."""
    if actor.is_admin:
        return department_id, True
    return actor.department_id, actor.department_id is not None


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_tracking_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_tracking_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = AuthLoginRequest.model_validate(payload)
    except ValidationError:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=invalid_payload")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    if parsed.employeeID in (None, "") or not parsed.pinCode:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=missing_identity")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    employee = get_employee(db, parsed.employeeID)
    if employee is None or employee.IsActive is False or not verify_pin(employee, parsed.pinCode):
        user_id = employee.EmployeeID if employee is not None else None
        _audit_auth_event(db, action="LoginFailed", details=f"ip={client_ip} employee={parsed.employeeID}", user_id=user_id)
        AUTH_LOGGER.warning("Login failed ip=%s employee=%s", client_ip, parsed.employeeID)
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    session_payload = {
        "employeeID": employee.EmployeeID,
        "displayName": display_name(employee),
        "role": employee_role(employee).value,
        "departmentID": employee.DepartmentID,
    }
    token = create_session(session_payload)
    request.session["user"] = {**session_payload, "token": token}
    _audit_auth_event(db, action="LoginSuccess", details=f"ip={client_ip}", user_id=employee.EmployeeID)
    AUTH_LOGGER.info("Login success ip=%s user_id=%s", client_ip, employee.EmployeeID)
    return {"sessionToken": token, "user": session_payload}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    cookie_user = request.session.get("user")
    if isinstance(cookie_user, dict):
        remove_session(cookie_user.get("token"))
    request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    return {
        "user": {
            "employeeID": actor.employee_id,
            "displayName": actor.display_name,
            "role": actor.role.value,
            "departmentID": actor.department_id,
        }
    }


@app.get("/api/tracking/summary")
def tracking_summary(
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_actor(request, db, x_session_token)
    return status_summary(db, date.today())


@app.get("/api/intakes")
def get_intakes(
    request: Request,
    status: str | None = Query(None),
    technician_id: int | None = Query(None, alias="technicianID"),
    location_id: int | None = Query(None, alias="locationID"),
    date_from: date | None = Query(None, alias="dateFrom"),
    date_to: date | None = Query(None, alias="dateTo"),
    search: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="perPage"),
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_actor(request, db, x_session_token)
    stmt = list_intakes_stmt(
        status=status,
        technician_id=technician_id,
        location_id=location_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
    )
    today = date.today()
    return _paginate(db, stmt, page, per_page, lambda row: serialize_intake(row, today))


@app.get("/api/intakes/archived")
def get_archived_intakes(
    request: Request,
    search: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="perPage"),
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    if not can_archive(actor.role):
        raise HTTPException(status_code=403, detail="Archived records are restricted to administrators and technicians.")
    stmt = list_intakes_stmt(search=search, archived=True)
    return _paginate(db, stmt, page, per_page, serialize_intake)


@app.get("/api/intakes/overdue")
def get_overdue_intakes(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="perPage"),
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_actor(request, db, x_session_token)
    today = date.today()
    return _paginate(db, overdue_intakes_stmt(today), page, per_page, lambda row: serialize_intake(row, today))


@app.post("/api/intakes/recall-number")
def new_recall_number(
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_actor(request, db, x_session_token)
    return {"recallNumber": generate_recall_number(db)}


@app.get("/api/intakes/{incoming_id}")
def get_intake(
    incoming_id: int,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_actor(request, db, x_session_token)
    try:
        intake = load_intake(db, incoming_id)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_intake(intake)


@app.post("/api/intakes", status_code=201)
def post_intake(
    payload: CreateIntakeDto,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        intake = create_intake(db, actor, payload)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_intake(intake)


@app.put("/api/intakes/{incoming_id}")
def put_intake(
    incoming_id: int,
    payload: UpdateIntakeDto,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        intake = edit_intake(db, actor, incoming_id, payload)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_intake(intake)


@app.post("/api/intakes/{incoming_id}/confirm")
def post_confirm_intake(
    incoming_id: int,
    request: Request,
    payload: ConfirmIntakeRequest | None = None,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    received_by_id = payload.receivedByID if payload is not None else None
    try:
        intake = confirm_intake(db, actor, incoming_id, received_by_id)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_intake(intake)


@app.post("/api/intakes/{incoming_id}/archive")
def post_archive_intake(
    incoming_id: int,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        intake = archive_intake(db, actor, incoming_id)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_intake(intake)


@app.post("/api/intakes/{incoming_id}/restore")
def post_restore_intake(
    incoming_id: int,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        intake = restore_intake(db, actor, incoming_id)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_intake(intake)


@app.delete("/api/intakes/{incoming_id}")
def remove_intake(
    incoming_id: int,
    request: Request,
    force: bool = Query(False),
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        delete_intake(db, actor, incoming_id, force=force)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return {"ok": True}


@app.get("/api/completions")
def get_completions(
    request: Request,
    status: str | None = Query(None),
    employee_id_out: int | None = Query(None, alias="employeeIDOut"),
    department_id: int | None = Query(None, alias="departmentID"),
    date_from: date | None = Query(None, alias="dateFrom"),
    date_to: date | None = Query(None, alias="dateTo"),
    search: str | None = Query(None),
    archived: bool = Query(False),
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="perPage"),
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    if archived and not can_archive(actor.role):
        raise HTTPException(status_code=403, detail="Archived records are restricted to administrators and technicians.")
    department_id, visible = _scope_department(actor, department_id)
    if not visible:
        return _empty_page(page, per_page)
    stmt = list_completions_stmt(
        status=status,
        employee_id_out=employee_id_out,
        date_from=date_from,
        date_to=date_to,
        search=search,
        department_id=department_id,
        archived=archived,
    )
    today = date.today()
    return _paginate(db, stmt, page, per_page, lambda row: serialize_completion(row, today))


@app.get("/api/completions/due-soon")
def get_due_soon_completions(
    request: Request,
    days: int = Query(DUE_SOON_DEFAULT_DAYS, ge=0, le=365),
    department_id: int | None = Query(None, alias="departmentID"),
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="perPage"),
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    department_id, visible = _scope_department(actor, department_id)
    if not visible:
        return _empty_page(page, per_page)
    today = date.today()
    stmt = due_soon_stmt(today, days, department_id)
    return _paginate(db, stmt, page, per_page, lambda row: serialize_completion(row, today))


@app.get("/api/completions/due-for-recalibration")
def get_due_for_recalibration(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="perPage"),
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    department_id, visible = _scope_department(actor, None)
    if not visible:
        return _empty_page(page, per_page)
    today = date.today()
    stmt = due_for_recalibration_stmt(today, department_id)
    return _paginate(db, stmt, page, per_page, lambda row: serialize_completion(row, today))


@app.get("/api/completions/ready-for-pickup")
def get_ready_for_pickup(
    request: Request,
    department_id: int | None = Query(None, alias="departmentID"),
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="perPage"),
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    department_id, visible = _scope_department(actor, department_id)
    if not visible:
        return _empty_page(page, per_page)
    stmt = list_completions_stmt(status=CompletionStatus.FOR_PICKUP.value, department_id=department_id)
    today = date.today()
    return _paginate(db, stmt, page, per_page, lambda row: serialize_completion(row, today))


@app.get("/api/completions/{outgoing_id}")
def get_completion(
    outgoing_id: int,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_actor(request, db, x_session_token)
    try:
        completion = load_completion(db, outgoing_id)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_completion(completion)


@app.post("/api/completions", status_code=201)
def post_completion(
    payload: CreateCompletionDto,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        completion = create_completion(db, actor, payload)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_completion(completion)


@app.put("/api/completions/{outgoing_id}")
def put_completion(
    outgoing_id: int,
    payload: UpdateCompletionDto,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        completion = edit_completion(db, actor, outgoing_id, payload)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_completion(completion)


@app.post("/api/completions/{outgoing_id}/confirm-pickup")
def post_confirm_pickup(
    outgoing_id: int,
    payload: ConfirmPickupRequest,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        result = confirm_pickup(db, actor, outgoing_id, payload.employeeID, payload.confirmationPin)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    if result.bypassed_pin:
        message = f"Pickup confirmed for {display_name(result.picker)} by {actor.display_name}."
    else:
        message = f"Pickup confirmed for {display_name(result.picker)}."
    PICKUP_LOGGER.debug("Pickup response completion=%s bypassed_pin=%s", outgoing_id, result.bypassed_pin)
    return {
        "success": True,
        "bypassed_pin": result.bypassed_pin,
        "message": message,
        "data": serialize_completion(result.completion),
    }


@app.post("/api/completions/{outgoing_id}/archive")
def post_archive_completion(
    outgoing_id: int,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        completion = archive_completion(db, actor, outgoing_id)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_completion(completion)


@app.post("/api/completions/{outgoing_id}/restore")
def post_restore_completion(
    outgoing_id: int,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        completion = restore_completion(db, actor, outgoing_id)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return serialize_completion(completion)


@app.delete("/api/completions/{outgoing_id}")
def remove_completion(
    outgoing_id: int,
    request: Request,
    db: Session = Depends(get_tracking_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(request, db, x_session_token)
    try:
        delete_completion(db, actor, outgoing_id)
    except TrackingError as exc:
        raise _http_error(exc) from exc
    return {"ok": True}
