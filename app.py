# app.py
# =============================================================================
# Exercise Log API — Users, Exercises & Logs (FastAPI + SQLAlchemy 2.x async, Pydantic v2)
# Exercises are stored one row per entry, referencing their user.
# Dates are stored as YYYY-MM-DD and formatted as "Mon Jan 01 1990" on the way out.
# v1.0.0
# =============================================================================

from __future__ import annotations

import os
import re
import logging
import traceback
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from pathlib import Path as OSPath
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi import Path as FPath
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import ForeignKey, Integer, String, asc, func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(levelname)s %(message)s",
)
log = logging.getLogger("exercise-log-api")

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) env DATABASE_URL (any SQLAlchemy async URL)
#   2) Cloud SQL (PostgreSQL) if CLOUD_SQL_CONNECTION_NAME is set
#   3) env EXLOG_DB (path to a SQLite file)
#   4) ./data/exercise_log.db if it exists, else ./exercise_log.db
# -----------------------------------------------------------------------------
_database_url = os.getenv("DATABASE_URL")
_cloud_sql = os.getenv("CLOUD_SQL_CONNECTION_NAME")
_db_user = os.getenv("DB_USER", "postgres")
_db_pass = os.getenv("DB_PASSWORD", "")
_db_name = os.getenv("DB_NAME", "exercise_log")

if _database_url:
    engine = create_async_engine(_database_url, echo=False, pool_pre_ping=True)
    log.info(f"Using DATABASE_URL (async): {engine.dialect.name}")
elif _cloud_sql:
    _socket_path = f"/cloudsql/{_cloud_sql}"
    DB_PATH = f"postgresql+asyncpg://{_db_user}:{_db_pass}@/{_db_name}?host={_socket_path}"
    engine = create_async_engine(
        DB_PATH, echo=False, pool_pre_ping=True,
        pool_size=20, max_overflow=30, pool_timeout=30,
    )
    log.info(f"Using Cloud SQL (async): {_cloud_sql}")
else:
    env_db = os.getenv("EXLOG_DB")
    if env_db:
        DB_PATH = env_db
    else:
        candidates = [
            str((OSPath(__file__).parent / "data" / "exercise_log.db").resolve()),
            str((OSPath(__file__).parent / "exercise_log.db").resolve()),
        ]
        DB_PATH = next((p for p in candidates if OSPath(p).exists()), candidates[-1])
    engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}", echo=False)
    log.info(f"Using SQLite (async): {DB_PATH}")

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "users"
    __table_args__ = {"extend_existing": True}

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)  # insertion order
    id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, default=_new_id)
    username: Mapped[str] = mapped_column(String, unique=True, nullable=False)


class Exercise(Base):
    __tablename__ = "exercises"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)  # append order
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id"), nullable=False, index=True
    )
    description: Mapped[str] = mapped_column(String, nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)      # minutes
    date: Mapped[str] = mapped_column(String, nullable=False)           # YYYY-MM-DD


# -----------------------------------------------------------------------------
# Startup: create tables
# -----------------------------------------------------------------------------
async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# -----------------------------------------------------------------------------
# Errors
# Every ApiError is rendered as {"error": message} with its status code.
# -----------------------------------------------------------------------------
class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ApiError):
    status_code = 400


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    status_code = 409


class StoreError(ApiError):
    """Persistence failure. The message is generic; details only go to the log."""
    status_code = 500


def _store_failure(action: str, exc: Exception) -> StoreError:
    tb = traceback.format_exc()
    log.error(f"Store error while trying to {action}: {exc}\n{tb}")
    return StoreError(f"Failed to {action}")


# -----------------------------------------------------------------------------
# Dates
# Stored values may be ISO dates, ISO timestamps or day strings written by
# older clients; all of them compare by calendar day.
# -----------------------------------------------------------------------------
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DAY_FORMAT = "%a %b %d %Y"


def parse_day(value: Optional[str]) -> Optional[date]:
    """Parse a date-ish string to a calendar day, or None if it isn't one."""
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if _DATE_RE.match(s):
        try:
            return datetime.strptime(s, "%Y-%m-%d").date()
        except ValueError:
            return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(s, DAY_FORMAT).date()
    except ValueError:
        return None


def format_day(d: date) -> str:
    return d.strftime(DAY_FORMAT)


def _display_date(stored: str) -> str:
    day = parse_day(stored)
    return format_day(day) if day else stored


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


class DBInfoOut(BaseModel):
    db_type: str
    user_rows: int
    exercise_rows: int


class UserIn(BaseModel):
    model_config = ConfigDict(validate_default=True)

    username: Optional[str] = None

    @field_validator("username")
    @classmethod
    def require_username(cls, v: Optional[str]) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("Username is required")
        return v


class UserOut(BaseModel):
    username: str
    id: str


class ExerciseIn(BaseModel):
    """One exercise entry as posted by a client (form fields or JSON)."""
    model_config = ConfigDict(validate_default=True)

    description: Optional[str] = None
    duration: Optional[int] = None
    date: Optional[str] = None

    @field_validator("description")
    @classmethod
    def require_description(cls, v: Optional[str]) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("Description is required")
        return v

    @field_validator("duration", mode="before")
    @classmethod
    def blank_duration(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("Duration must be a positive number of minutes")
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("duration")
    @classmethod
    def positive_duration(cls, v: Optional[int]) -> int:
        if v is None:
            raise ValueError("Duration is required")
        if v <= 0:
            raise ValueError("Duration must be a positive number of minutes")
        return v

    @field_validator("date", mode="before")
    @classmethod
    def normalize_date(cls, v: Any) -> Optional[str]:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        day = parse_day(str(v))
        if day is None:
            raise ValueError("date is not a valid calendar date")
        return day.isoformat()


class ExerciseAddedOut(BaseModel):
    username: str
    description: str
    duration: int
    date: str
    id: str


class LogEntryOut(BaseModel):
    description: str
    duration: int
    date: str


class LogOut(BaseModel):
    username: str
    count: int
    id: str
    log: List[LogEntryOut] = Field(default_factory=list)


class FileMetadataOut(BaseModel):
    name: str
    type: str
    size: int


M = TypeVar("M", bound=BaseModel)


def _first_error(errors: Sequence[Dict[str, Any]]) -> str:
    if not errors:
        return "Invalid request"
    err = errors[0]
    msg = str(err.get("msg", "Invalid value"))
    if err.get("type") == "value_error":
        return msg.removeprefix("Value error, ")
    field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
    return f"{field}: {msg}" if field else msg


def _parse_body(model: Type[M], payload: Dict[str, Any]) -> M:
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e.errors())) from e


async def _read_payload(request: Request) -> Dict[str, Any]:
    """Read a request body sent as JSON, urlencoded or multipart form."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Malformed JSON body")
        if not isinstance(body, dict):
            raise ValidationError("JSON body must be an object")
        return body
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


# -----------------------------------------------------------------------------
# Stores
# Both stores get the process-wide session factory; each call is one unit of work.
# -----------------------------------------------------------------------------
async def _get_user(session: AsyncSession, user_id: str) -> User:
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar()
    if not user:
        raise NotFoundError("User not found")
    return user


class UserStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session = session_factory

    async def create_user(self, username: str) -> User:
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")
        try:
            async with self._session() as s:
                existing = await s.execute(select(User.pk).where(User.username == username))
                if existing.first() is not None:
                    raise ConflictError("Username already taken")
                user = User(id=_new_id(), username=username)
                s.add(user)
                await s.commit()
        except IntegrityError as e:
            # Lost a race against a concurrent insert of the same username
            log.info(f"Duplicate username on commit: {username}")
            raise ConflictError("Username already taken") from e
        except SQLAlchemyError as e:
            raise _store_failure("create user", e) from e
        log.info(f"Created user {user.username} ({user.id})")
        return user

    async def list_users(self) -> List[User]:
        try:
            async with self._session() as s:
                result = await s.execute(select(User).order_by(asc(User.pk)))
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise _store_failure("retrieve users", e) from e


class ExerciseStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session = session_factory

    async def append_exercise(
        self,
        user_id: str,
        description: str,
        duration: int,
        day: Optional[date] = None,
    ) -> Tuple[User, Exercise]:
        description = (description or "").strip()
        if not description:
            raise ValidationError("Description is required")
        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        if day is None:
            day = date.today()
        try:
            async with self._session() as s:
                user = await _get_user(s, user_id)
                entry = Exercise(
                    user_id=user.id,
                    description=description,
                    duration=duration,
                    date=day.isoformat(),
                )
                s.add(entry)
                await s.commit()
        except SQLAlchemyError as e:
            raise _store_failure("add exercise", e) from e
        return user, entry

    async def get_exercises(self, user_id: str) -> Tuple[User, List[Exercise]]:
        try:
            async with self._session() as s:
                user = await _get_user(s, user_id)
                result = await s.execute(
                    select(Exercise)
                    .where(Exercise.user_id == user.id)
                    .order_by(asc(Exercise.id))
                )
                return user, list(result.scalars().all())
        except SQLAlchemyError as e:
            raise _store_failure("retrieve logs", e) from e


users = UserStore(async_session)
exercises = ExerciseStore(async_session)


# -----------------------------------------------------------------------------
# Log query pipeline: fetch -> normalize -> range filter -> truncate -> shape
# -----------------------------------------------------------------------------
def filter_entries(
    entries: Sequence[Exercise],
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: Optional[int] = None,
) -> List[Exercise]:
    """Keep entries whose day lies in [start, end], then the first ``limit`` of them.

    Entries whose stored date can't be parsed only survive when no range is set.
    """
    kept: List[Exercise] = []
    for e in entries:
        if start is not None or end is not None:
            day = parse_day(e.date)
            if day is None:
                continue
            if start is not None and day < start:
                continue
            if end is not None and day > end:
                continue
        kept.append(e)
    if limit is not None:
        kept = kept[:limit]
    return kept


def _parse_filter(name: str, value: Optional[str]) -> Optional[date]:
    if value is None or not value.strip():
        return None
    day = parse_day(value)
    if day is None:
        log.warning(f"Ignoring unparseable '{name}' filter: {value!r}")
    return day


def _parse_limit(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        limit = int(value.strip())
    except ValueError:
        limit = 0
    if limit < 1:
        log.warning(f"Ignoring invalid 'limit': {value!r}")
        return None
    return limit


def _entry_to_out(e: Exercise) -> LogEntryOut:
    return LogEntryOut(
        description=e.description,
        duration=e.duration,
        date=_display_date(e.date),
    )


async def build_log(
    store: ExerciseStore,
    user_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    limit: Optional[str] = None,
) -> LogOut:
    """Answer a log query. Filters that don't parse are not applied."""
    user, entries = await store.get_exercises(user_id)
    kept = filter_entries(
        entries,
        start=_parse_filter("from", start),
        end=_parse_filter("to", end),
        limit=_parse_limit(limit),
    )
    shaped = [_entry_to_out(e) for e in kept]
    return LogOut(username=user.username, count=len(shaped), id=user.id, log=shaped)


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
    description="Users, their exercises and date-filtered exercise logs. Plus a file metadata echo.",
    version="1.0.0",
    lifespan=lifespan,
)

_cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------------------------------------------------------
# Exception handlers — every failure is {"error": "..."}
# -----------------------------------------------------------------------------
@app.exception_handler(ApiError)
async def _api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": _first_error(exc.errors())})


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _user_to_out(u: User) -> UserOut:
    return UserOut(username=u.username, id=u.id)


def _db_type() -> str:
    """Return a safe description of the DB type (no credentials)."""
    if _database_url:
        return f"{engine.dialect.name} (DATABASE_URL)"
    if _cloud_sql:
        return f"Cloud SQL PostgreSQL ({_cloud_sql})"
    return "SQLite"


# =============================================================================
# ENDPOINTS — Health / Root / Debug
# =============================================================================
@app.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    db_connected = False
    try:
        async with async_session() as s:
            await s.execute(text("SELECT 1"))
            db_connected = True
    except Exception as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected, db_connected=db_connected,
        db_type=_db_type(), timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="Exercise Log API v1 is running")


@app.get("/debug/dbinfo", response_model=DBInfoOut)
async def dbinfo() -> DBInfoOut:
    try:
        async with async_session() as s:
            ur = await s.execute(select(func.count()).select_from(User))
            er = await s.execute(select(func.count()).select_from(Exercise))
            user_rows, exercise_rows = ur.scalar_one(), er.scalar_one()
    except SQLAlchemyError as e:
        raise _store_failure("count rows", e) from e
    return DBInfoOut(db_type=_db_type(), user_rows=int(user_rows), exercise_rows=int(exercise_rows))


# =============================================================================
# ENDPOINTS — Users
# =============================================================================
@app.post("/api/users", response_model=UserOut)
async def create_user(request: Request) -> UserOut:
    body = _parse_body(UserIn, await _read_payload(request))
    user = await users.create_user(body.username)
    return _user_to_out(user)


@app.get("/api/users", response_model=List[UserOut])
async def list_users() -> List[UserOut]:
    return [_user_to_out(u) for u in await users.list_users()]


# =============================================================================
# ENDPOINTS — Exercises & Logs
# =============================================================================
@app.post("/api/users/{user_id}/exercises", response_model=ExerciseAddedOut)
async def add_exercise(request: Request, user_id: str = FPath(..., min_length=1)) -> ExerciseAddedOut:
    body = _parse_body(ExerciseIn, await _read_payload(request))
    day = parse_day(body.date) if body.date else None
    user, entry = await exercises.append_exercise(user_id, body.description, body.duration, day)
    log.info(f"Added exercise {entry.id} for user {user.id}")
    return ExerciseAddedOut(
        username=user.username,
        description=entry.description,
        duration=entry.duration,
        date=_display_date(entry.date),
        id=user.id,
    )


@app.get("/api/users/{user_id}/logs", response_model=LogOut)
async def user_logs(
    user_id: str = FPath(..., min_length=1),
    start: Optional[str] = Query(None, alias="from", description="YYYY-MM-DD, inclusive"),
    end: Optional[str] = Query(None, alias="to", description="YYYY-MM-DD, inclusive"),
    limit: Optional[str] = Query(None, description="max entries, after filtering"),
) -> LogOut:
    return await build_log(exercises, user_id, start=start, end=end, limit=limit)


# =============================================================================
# ENDPOINTS — File metadata
# =============================================================================
@app.post("/api/fileanalyse", response_model=FileMetadataOut)
async def file_analyse(upfile: Optional[UploadFile] = File(None)) -> FileMetadataOut:
    if upfile is None or not upfile.filename:
        raise ValidationError("No file uploaded")
    try:
        size = upfile.size
        if size is None:
            upfile.file.seek(0, os.SEEK_END)
            size = upfile.file.tell()
    finally:
        await upfile.close()
    return FileMetadataOut(
        name=upfile.filename,
        type=upfile.content_type or "application/octet-stream",
        size=size,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "3000")))
