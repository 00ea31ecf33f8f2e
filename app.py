# app.py
# =============================================================================
# Exercise Log API — users & timed exercise entries
# (FastAPI + SQLAlchemy 2.x async, Pydantic v2)
# One counter per user, maintained in the same transaction as every new entry.
# =============================================================================

from __future__ import annotations

import datetime as dt
import logging
import os
import re
import secrets
import string
import time
import traceback
from collections import defaultdict
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncGenerator, Dict, List, Mapping, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi import Path as FPath
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import (
    BigInteger,
    Date,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    desc,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from starlette.exceptions import HTTPException as StarletteHTTPException

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(levelname)s %(message)s",
)
log = logging.getLogger("exercise-log-api")

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) PostgreSQL if PGURL is set (asyncpg driver)
#   2) env EXLOG_DB (path to a SQLite file)
#   3) ./exercise_log.db
# -----------------------------------------------------------------------------
_pg_url = os.getenv("PGURL")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "4"))
DB_POOL_TIMEOUT = float(os.getenv("DB_POOL_TIMEOUT", "2"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "30"))

_pool_args: Dict[str, Any] = dict(
    pool_size=DB_POOL_SIZE,
    max_overflow=0,
    pool_timeout=DB_POOL_TIMEOUT,
    pool_recycle=DB_POOL_RECYCLE,
    pool_pre_ping=True,
)

if _pg_url:
    DB_URL = re.sub(r"^postgres(ql)?://", "postgresql+asyncpg://", _pg_url)
    engine = create_async_engine(DB_URL, echo=False, **_pool_args)
    log.info("Using PostgreSQL (async)")
else:
    DB_PATH = os.getenv("EXLOG_DB") or os.path.join(os.getcwd(), "exercise_log.db")
    engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}", echo=False, **_pool_args)
    log.info(f"Using SQLite (async): {DB_PATH}")

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Duplicate usernames answer 409 unless the old catch-all 500 is requested.
LEGACY_CONFLICT_ERRORS = os.getenv("LEGACY_CONFLICT_ERRORS", "0").lower() in ("1", "true", "yes")

# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------
ID_LENGTH = 20
NAME_MAX_LENGTH = 255


class Base(DeclarativeBase):
    pass


class AppUser(Base):
    __tablename__ = "app_user"
    __table_args__ = (UniqueConstraint("username", name="idx_uniq_username"),)

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    username: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    # Only ever touched by the exercise-creation transaction.
    exercise_count: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default=text("0")
    )


class Exercise(Base):
    __tablename__ = "exercise"
    __table_args__ = (
        Index("idx_user_id", "user_id"),
        Index("idx_date", "date"),
    )

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(ID_LENGTH), ForeignKey("app_user.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    duration: Mapped[int] = mapped_column(BigInteger, nullable=False)
    date: Mapped[dt.date] = mapped_column(
        Date, nullable=False, server_default=text("CURRENT_DATE")
    )


# -----------------------------------------------------------------------------
# Startup: create tables
# -----------------------------------------------------------------------------
async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("Tables ready: app_user, exercise")


# -----------------------------------------------------------------------------
# Pydantic schemas
# -----------------------------------------------------------------------------
class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    timestamp: str


class GenericResponse(BaseModel):
    message: str


class ErrorsOut(BaseModel):
    errors: List[str]


class UserOut(BaseModel):
    id: str
    username: str


class LogEntryOut(BaseModel):
    description: str
    duration: int
    date: str


class ExerciseCreatedOut(BaseModel):
    """The owning user's identity merged with the new entry (entry id omitted)."""
    id: str
    username: str
    description: str
    duration: int
    date: str


class UserLogOut(BaseModel):
    id: str
    username: str
    count: int
    log: List[LogEntryOut]


# -----------------------------------------------------------------------------
# Error codes
# -----------------------------------------------------------------------------
MISSING_USERNAME = "missing_username"
USERNAME_TOO_LONG = "username_too_long"
MISSING_DESCRIPTION = "missing_description"
DESCRIPTION_TOO_LONG = "description_too_long"
MISSING_DURATION = "missing_duration"
DURATION_MUST_BE_NUMBER = "duration_must_be_number"
INVALID_DATE = "invalid_date"
INVALID_DATE_FROM = "invalid_date_from"
INVALID_DATE_TO = "invalid_date_to"
INVALID_NUMBER_LIMIT = "invalid_number_limit"
ID_NOT_FOUND = "id_not_found"
USERNAME_TAKEN = "username_taken"
INTERNAL_SERVER_ERROR = "internal_server_error"
RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


class ApiError(Exception):
    """A client-facing failure: an HTTP status plus machine-readable codes."""

    def __init__(self, status_code: int, errors: List[str]) -> None:
        self.status_code = status_code
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))


# -----------------------------------------------------------------------------
# App (with lifespan)
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await _init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="Exercise Log API",
    description="Register users and log timed exercise entries; query logs by date range.",
    version="1.0.0",
    lifespan=lifespan,
)


def _errors_response(status_code: int, errors: List[str]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorsOut(errors=errors).model_dump())


@app.exception_handler(ApiError)
async def _api_error_handler(request: Request, exc: ApiError):
    return _errors_response(exc.status_code, exc.errors)


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    code = re.sub(r"[^a-z0-9]+", "_", str(exc.detail).lower()).strip("_") or "http_error"
    return _errors_response(exc.status_code, [code])


# -----------------------------------------------------------------------------
# Store failures and anything unexpected: log the traceback, answer generically
# -----------------------------------------------------------------------------
@app.exception_handler(SQLAlchemyError)
async def _store_error_handler(request: Request, exc: SQLAlchemyError):
    log.error(f"Store error on {request.method} {request.url.path}: {exc}\n{traceback.format_exc()}")
    return _errors_response(500, [INTERNAL_SERVER_ERROR])


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return _errors_response(500, [INTERNAL_SERVER_ERROR])


# -----------------------------------------------------------------------------
# Rate limiting middleware
# -----------------------------------------------------------------------------
_rate_limit_store: Dict[str, List[float]] = defaultdict(list)
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "300"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW
    _rate_limit_store[client_ip] = [
        t for t in _rate_limit_store[client_ip] if t > window_start
    ]
    if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return _errors_response(429, [RATE_LIMIT_EXCEEDED])
    _rate_limit_store[client_ip].append(now)
    # Prune stale IPs to prevent memory leak
    if len(_rate_limit_store) > 1000:
        stale = [ip for ip, ts in _rate_limit_store.items()
                 if not ts or ts[-1] < window_start]
        for ip in stale:
            del _rate_limit_store[ip]
    response: Response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(RATE_LIMIT_REQUESTS)
    response.headers["X-RateLimit-Remaining"] = str(
        max(RATE_LIMIT_REQUESTS - len(_rate_limit_store[client_ip]), 0)
    )
    return response


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
_ID_ALPHABET = string.ascii_lowercase + string.digits
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MAX_WHOLE_NUMBER = 2**63 - 1  # BIGINT


def new_id() -> str:
    """Random 20-char [a-z0-9] id; the primary key is what guarantees uniqueness."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(ID_LENGTH))


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _whole_number(value: Any) -> Optional[int]:
    """Read ints and numeric-looking strings ("30", " 2.0 ", "1e2") as a non-negative int.

    Returns None for anything else: text, booleans, NaN/infinity, fractions,
    negative numbers, and anything above the BIGINT column maximum.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if 0 <= value <= MAX_WHOLE_NUMBER else None
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not number.is_finite() or number < 0:
        return None
    # Bound the exponent before any conversion; "1e2000000" must stay cheap.
    if number.adjusted() > 18 or number > MAX_WHOLE_NUMBER:
        return None
    if number != number.to_integral_value():
        return None
    return int(number)


def _looks_like_day(value: Any) -> bool:
    return isinstance(value, str) and bool(_DATE_RE.match(value))


def _to_day(value: str) -> Optional[dt.date]:
    """Calendar check for a value that already passed the YYYY-MM-DD pattern."""
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        return None


def _check_text(errors: List[str], value: Any, missing: str, too_long: str) -> None:
    if not isinstance(value, str) or not value.strip():
        _add_error(errors, missing)
    elif len(value.strip()) > NAME_MAX_LENGTH:
        _add_error(errors, too_long)


def _add_error(errors: List[str], code: str) -> None:
    if code not in errors:
        errors.append(code)


# -----------------------------------------------------------------------------
# Request validation — every problem is reported, not just the first one
# -----------------------------------------------------------------------------
def validate_new_user(body: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []
    _check_text(errors, body.get("username"), MISSING_USERNAME, USERNAME_TOO_LONG)
    return errors


def validate_new_exercise(body: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []
    _check_text(errors, body.get("description"), MISSING_DESCRIPTION, DESCRIPTION_TOO_LONG)

    duration = body.get("duration")
    if _is_blank(duration):
        _add_error(errors, MISSING_DURATION)
    elif _whole_number(duration) is None:
        _add_error(errors, DURATION_MUST_BE_NUMBER)

    day = body.get("date")
    if not _is_blank(day) and not _looks_like_day(day):
        _add_error(errors, INVALID_DATE)
    return errors


def validate_log_query(
    date_from: Optional[str], date_to: Optional[str], limit: Optional[str]
) -> List[str]:
    errors: List[str] = []
    if date_from and not _looks_like_day(date_from):
        _add_error(errors, INVALID_DATE_FROM)
    if date_to and not _looks_like_day(date_to):
        _add_error(errors, INVALID_DATE_TO)
    if limit and _whole_number(limit) is None:
        _add_error(errors, INVALID_NUMBER_LIMIT)
    return errors


async def _read_body(request: Request) -> Dict[str, Any]:
    """JSON or form body as a plain dict; anything unreadable counts as empty."""
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            log.warning(f"Unparseable JSON body on {request.url.path}")
            return {}
        return payload if isinstance(payload, dict) else {}
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    return {}


# -----------------------------------------------------------------------------
# Response shaping
# -----------------------------------------------------------------------------
def _format_day(value: Any) -> str:
    """Day-only text in the form 'Mon Jan 15 2024'."""
    if isinstance(value, str):
        value = dt.date.fromisoformat(value[:10])
    # %Y is not zero-padded below year 1000 on every platform
    return f"{value:%a %b %d} {value.year:04d}"


def _user_to_out(u: AppUser) -> UserOut:
    return UserOut(id=u.id, username=u.username)


def _exercise_to_out(e: Exercise) -> LogEntryOut:
    return LogEntryOut(
        description=e.description,
        duration=int(e.duration),
        date=_format_day(e.date),
    )


def _db_type() -> str:
    """Return a safe description of the DB type (no credentials)."""
    return "PostgreSQL" if _pg_url else "SQLite"


# -----------------------------------------------------------------------------
# Health / Root
# -----------------------------------------------------------------------------
@app.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    db_connected = False
    try:
        async with async_session() as s:
            await s.execute(text("SELECT 1"))
            db_connected = True
    except (SQLAlchemyError, OSError) as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        db_type=_db_type(),
        timestamp=dt.datetime.now(dt.timezone.utc).isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="Exercise Log API is running")


# -----------------------------------------------------------------------------
# Users
# -----------------------------------------------------------------------------
@app.get("/api/users", response_model=List[UserOut])
async def list_users() -> List[UserOut]:
    async with async_session() as s:
        result = await s.execute(select(AppUser))
        rows = result.scalars().all()
    return [_user_to_out(u) for u in rows]


@app.post("/api/users", response_model=UserOut, responses={400: {"model": ErrorsOut}, 409: {"model": ErrorsOut}})
async def create_user(request: Request) -> UserOut:
    body = await _read_body(request)
    errors = validate_new_user(body)
    if errors:
        raise ApiError(400, errors)

    username = body["username"].strip()
    user_id = new_id()
    async with async_session() as s:
        try:
            async with s.begin():
                await s.execute(insert(AppUser).values(id=user_id, username=username))
        except IntegrityError:
            taken = await s.scalar(select(AppUser.id).where(AppUser.username == username))
            if taken is None:
                raise
            log.warning(f"Username already registered (user {taken})")
            if LEGACY_CONFLICT_ERRORS:
                raise ApiError(500, [INTERNAL_SERVER_ERROR])
            raise ApiError(409, [USERNAME_TAKEN])
    log.info(f"Created user {user_id}")
    return UserOut(id=user_id, username=username)


# -----------------------------------------------------------------------------
# Exercise log
# IMPORTANT: the counter bump and the insert share one transaction; an
# exception anywhere inside `s.begin()` rolls both back.
# -----------------------------------------------------------------------------
@app.post(
    "/api/users/{user_id}/exercises",
    response_model=ExerciseCreatedOut,
    responses={400: {"model": ErrorsOut}},
)
async def create_exercise(request: Request, user_id: str = FPath(...)) -> ExerciseCreatedOut:
    body = await _read_body(request)
    errors = validate_new_exercise(body)
    if errors:
        raise ApiError(400, errors)

    day: Optional[dt.date] = None
    if not _is_blank(body.get("date")):
        day = _to_day(body["date"])
        if day is None:
            raise ApiError(400, [INVALID_DATE])

    values: Dict[str, Any] = {
        "id": new_id(),
        "user_id": user_id,
        "description": body["description"].strip(),
        "duration": _whole_number(body["duration"]),
    }
    if day is not None:
        values["date"] = day

    async with async_session() as s:
        async with s.begin():
            bumped = await s.execute(
                update(AppUser)
                .where(AppUser.id == user_id)
                .values(exercise_count=AppUser.exercise_count + 1)
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount < 1:
                log.warning(f"Exercise for unknown user {user_id}")
                raise ApiError(400, [ID_NOT_FOUND])
            await s.execute(insert(Exercise).values(**values))

        # Re-read both rows: the store may have filled in today's date.
        user = await s.scalar(select(AppUser).where(AppUser.id == user_id))
        if user is None:
            raise ApiError(400, [ID_NOT_FOUND])
        entry = await s.scalar(select(Exercise).where(Exercise.id == values["id"]))
        if entry is None:
            log.error(f"Exercise {values['id']} not found but should exist")
            raise ApiError(500, [INTERNAL_SERVER_ERROR])

    log.info(f"Logged exercise {entry.id} for user {user_id}")
    out = _exercise_to_out(entry)
    return ExerciseCreatedOut(id=user.id, username=user.username, **out.model_dump())


@app.get(
    "/api/users/{user_id}/logs",
    response_model=UserLogOut,
    responses={400: {"model": ErrorsOut}},
)
async def user_log(
    user_id: str = FPath(...),
    date_from: Optional[str] = Query(None, alias="from", description="YYYY-MM-DD, inclusive"),
    date_to: Optional[str] = Query(None, alias="to", description="YYYY-MM-DD, inclusive"),
    limit: Optional[str] = Query(None, description="max entries, newest first"),
) -> UserLogOut:
    errors = validate_log_query(date_from, date_to, limit)
    if errors:
        raise ApiError(400, errors)

    start = _to_day(date_from) if date_from else None
    end = _to_day(date_to) if date_to else None
    if date_from and start is None:
        _add_error(errors, INVALID_DATE_FROM)
    if date_to and end is None:
        _add_error(errors, INVALID_DATE_TO)
    if errors:
        raise ApiError(400, errors)

    async with async_session() as s:
        user = await s.scalar(select(AppUser).where(AppUser.id == user_id))
        if user is None:
            raise ApiError(400, [ID_NOT_FOUND])

        stmt = select(Exercise).where(Exercise.user_id == user_id)
        if start is not None:
            stmt = stmt.where(Exercise.date >= start)
        if end is not None:
            stmt = stmt.where(Exercise.date <= end)
        stmt = stmt.order_by(desc(Exercise.date))
        if limit:
            stmt = stmt.limit(_whole_number(limit))
        result = await s.execute(stmt)
        rows = result.scalars().all()

    # count is the lifetime counter, not len(log)
    return UserLogOut(
        id=user.id,
        username=user.username,
        count=int(user.exercise_count),
        log=[_exercise_to_out(e) for e in rows],
    )
