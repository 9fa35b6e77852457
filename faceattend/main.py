import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import config
from .database import init_db
from .domain import Guest, RegisteredUser, UserRecord
from .engine import AttendanceEngine
from .errors import AttendanceEngineError, InvalidToken, UnknownIdentity
from .logger_helper import create_logging_middleware, setup_logger
from .recognition import InsightFaceExtractor
from .sql_repository import SqlRepository

logger = logging.getLogger(__name__)


# Response Models
class CleanupResult(BaseModel):
    deleted: int
    ran_at: datetime


def build_default_engine() -> AttendanceEngine:
    """SQL-backed engine with the InsightFace extractor."""
    init_db()
    logger.info("Database initialized")

    try:
        extractor = InsightFaceExtractor(use_gpu=config.USE_GPU)
    except Exception as e:
        if not config.USE_GPU:
            raise
        logger.warning("GPU initialization failed: %s. Falling back to CPU...", e)
        extractor = InsightFaceExtractor(use_gpu=False)

    return AttendanceEngine(SqlRepository(), extractor)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _read_upload(file: UploadFile) -> bytes:
    return file.file.read()


def _user_payload(user: UserRecord) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "identifier": user.identifier,
        "enrolled": bool(user.descriptors),
        "created_at": user.created_at.isoformat(),
    }


def _guest_payload(guest: Guest) -> dict:
    return {
        "id": guest.id,
        "name": guest.name,
        "email": guest.email,
        "created_at": guest.created_at.isoformat(),
        "expires_at": guest.expires_at.isoformat(),
    }


def create_app(engine: Optional[AttendanceEngine] = None, start_scheduler: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize resources on startup."""
        setup_logger()
        if app.state.engine is None:
            app.state.engine = build_default_engine()

        scheduler = None
        if start_scheduler:
            scheduler = app.state.engine.cleanup_scheduler()
            scheduler.start()

        yield

        if scheduler:
            scheduler.stop()
        logger.info("Shutting down...")

    app = FastAPI(
        title="Face Attendance Engine",
        description="Face-verified check-in/check-out for employees and guests",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Demo only - restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    create_logging_middleware(app, logging.getLogger("faceattend.access"))

    def get_engine() -> AttendanceEngine:
        return app.state.engine

    @app.exception_handler(AttendanceEngineError)
    async def engine_error_handler(request: Request, exc: AttendanceEngineError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        engine = get_engine()
        extractor = getattr(engine.extractor, "extractor", engine.extractor) if engine else None
        gpu_info = extractor.get_provider_info() if hasattr(extractor, "get_provider_info") \
            else {"providers": [], "using_gpu": False}
        return {
            "status": "running" if engine else "starting",
            "model": config.MODEL_NAME,
            "threshold": engine.verification.threshold if engine else config.MATCH_THRESHOLD,
            "gpu_enabled": gpu_info["using_gpu"],
            "providers": gpu_info["providers"],
        }

    # Registered users

    @app.post("/users/", status_code=201)
    def create_user(name: str = Form(...), identifier: str = Form(...)):
        """Register a person; faces are enrolled separately."""
        user = get_engine().create_user(name, identifier)
        return _user_payload(user)

    @app.post("/users/{user_id}/enroll")
    def enroll_user(user_id: str, files: List[UploadFile] = File(...)):
        """Enroll a user's face from 5-10 captures."""
        descriptors = get_engine().enroll_user(user_id, [_read_upload(f) for f in files])
        return {"message": "Face enrolled successfully", "user_id": user_id, "descriptors": len(descriptors)}

    @app.get("/users/{user_id}")
    def get_user(user_id: str):
        user = get_engine().repository.get_user(user_id)
        if user is None:
            raise UnknownIdentity()
        return _user_payload(user)

    # Attendance

    @app.post("/attendance/check-in", status_code=201)
    def check_in(user_id: str = Form(...), file: UploadFile = File(...)):
        """Verify the live capture against the user's enrolled face, then check in."""
        engine = get_engine()
        identity, result = engine.verify_user(user_id, _read_upload(file))
        record = engine.check_in(identity)
        return {"attendance": record.to_dict(), "verification": result.to_dict()}

    @app.post("/attendance/check-out")
    def check_out(user_id: str = Form(...), file: UploadFile = File(...)):
        engine = get_engine()
        identity, result = engine.verify_user(user_id, _read_upload(file))
        record = engine.check_out(identity)
        return {"attendance": record.to_dict(), "verification": result.to_dict()}

    @app.get("/attendance/")
    def attendance_for_day(day: Optional[date] = None):
        """Every record for a date (default: today), users and guests alike."""
        records = get_engine().attendance_on(day)
        return {"attendance": [record.to_dict() for record in records]}

    @app.get("/attendance/{user_id}/today")
    def attendance_today(user_id: str):
        record = get_engine().today(RegisteredUser(user_id))
        return {"attendance": record.to_dict() if record else None}

    @app.get("/attendance/{user_id}")
    def list_attendance(user_id: str, limit: int = 50):
        """Attendance history for a user, most recent first."""
        records = get_engine().history(RegisteredUser(user_id))[:limit]
        return {"attendance": [record.to_dict() for record in records]}

    # Guests

    @app.post("/guests/", status_code=201)
    def register_guest(
        name: str = Form(...),
        consent: bool = Form(False),
        email: Optional[str] = Form(None),
        files: List[UploadFile] = File(...),
    ):
        """Enroll a consenting visitor and return their check-in token."""
        guest, token = get_engine().register_guest([_read_upload(f) for f in files], consent, name, email)
        return {"guest": _guest_payload(guest), "token": token}

    @app.post("/guests/resume")
    def resume_guest(email: str = Form(...), file: UploadFile = File(...)):
        """Returning visitor: verify by face and issue a fresh token."""
        guest, token = get_engine().resume_guest(email, _read_upload(file))
        return {"guest": _guest_payload(guest), "token": token}

    @app.get("/guests/me")
    def current_guest(authorization: Optional[str] = Header(None)):
        guest = get_engine().validate_token(_bearer(authorization))
        return _guest_payload(guest)

    @app.post("/guests/check-in", status_code=201)
    def guest_check_in(authorization: Optional[str] = Header(None)):
        record = get_engine().check_in_guest(_bearer(authorization))
        return {"attendance": record.to_dict()}

    @app.post("/guests/check-out")
    def guest_check_out(authorization: Optional[str] = Header(None)):
        record = get_engine().check_out_guest(_bearer(authorization))
        return {"attendance": record.to_dict()}

    @app.get("/guests/attendance")
    def guest_attendance(authorization: Optional[str] = Header(None)):
        """The calling guest's record for today and their history."""
        today, history = get_engine().guest_attendance(_bearer(authorization))
        return {
            "today": today.to_dict() if today else None,
            "history": [record.to_dict() for record in history],
        }

    @app.post("/guests/logout")
    def guest_logout(authorization: Optional[str] = Header(None)):
        if not get_engine().revoke_token(_bearer(authorization)):
            raise InvalidToken()
        return {"message": "Logged out"}

    # Maintenance

    @app.post("/admin/cleanup", response_model=CleanupResult)
    def cleanup():
        """Run guest retention cleanup now, as of the server clock."""
        engine = get_engine()
        now = engine.clock.now()
        deleted = engine.run_cleanup(now)
        return CleanupResult(deleted=deleted, ran_at=now)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("faceattend.main:app", host="0.0.0.0", port=8000)
