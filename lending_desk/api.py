import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lending_desk.config import configure_logging, settings
from lending_desk.errors import ExtensionRefused, ExternalServiceError, LendingError, RecordRejected, ValidationError
from lending_desk.services.http_client import cleanup_http_client, get_http_client
from lending_desk.sessions import new_session_id
from lending_desk.workflow import LendingDesk, StepResult

configure_logging()
logger = logging.getLogger(__name__)

_desk: Optional[LendingDesk] = None


def get_desk() -> LendingDesk:
    """Process-wide desk; tests replace it through ``app.dependency_overrides``."""
    global _desk
    if _desk is None:
        _desk = LendingDesk()
    return _desk


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_http_client()
    logger.info(f"{settings.app_name} starting: {settings.config_flags()}")
    try:
        yield
    finally:
        await cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
# The wizard relies on the session cookie, so credentials must be allowed
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)")

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    if request.url.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-store"
    return response


# --- Errors ---
@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}", exc_info=exc)
    content: Dict[str, Any] = {"success": False, "message": exc.message}
    if isinstance(exc, RecordRejected):
        content["error"] = {"type": "record_update_error", "details": exc.details}
    if isinstance(exc, ExtensionRefused) and exc.reason:
        content["reason"] = exc.reason
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} crashed: {exc!r}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": ExternalServiceError.default_message},
    )


# --- Models ---
class StepResponse(BaseModel):
    success: bool = True
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class ActionRequest(BaseModel):
    action: str | None = None


class NameRequest(BaseModel):
    name: str | None = None


class ExtendRequest(BaseModel):
    loanId: str | None = None
    studentName: str | None = None


def _respond(result: StepResult) -> StepResponse:
    return StepResponse(message=result.message, data=result.data)


# --- Sessions ---
def session_id(request: Request, response: Response) -> str:
    """Read the session cookie, issuing a new id when the browser has none."""
    sid = request.cookies.get(settings.session_cookie_name) or new_session_id()
    response.set_cookie(
        settings.session_cookie_name,
        sid,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        samesite="lax",
    )
    return sid


async def _read_image(upload: Optional[UploadFile]) -> Optional[bytes]:
    if upload is None:
        return None
    data = await upload.read()
    if len(data) > settings.max_upload_size:
        raise ValidationError(f"The image is too large (max {settings.max_upload_size // (1024 * 1024)}MB).")
    logger.info(f"Received image {upload.filename!r} ({len(data)} bytes)")
    return data


# --- Health ---
@app.get("/api/health")
async def health(desk: LendingDesk = Depends(get_desk)):
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "config": settings.config_flags(),
        "sessions": desk.sessions.get_stats(),
    }


@app.post("/api/reset", response_model=StepResponse)
async def reset(sid: str = Depends(session_id), desk: LendingDesk = Depends(get_desk)):
    return _respond(desk.reset(sid))


# --- Borrow ---
@app.post("/api/step1", response_model=StepResponse)
async def borrow_step1(
    bookImage: UploadFile | None = File(None),
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    """Identify the book on a photographed cover and check it can be lent."""
    return _respond(await desk.borrow_find_book(sid, await _read_image(bookImage)))


@app.post("/api/step2", response_model=StepResponse)
async def borrow_step2(
    payload: ActionRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    return _respond(await desk.borrow_choose(sid, payload.action if payload else None))


@app.post("/api/step3", response_model=StepResponse)
async def borrow_step3(
    payload: NameRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    return _respond(await desk.borrow_identify_student(sid, payload.name if payload else None))


@app.post("/api/step4", response_model=StepResponse)
async def borrow_step4(
    payload: ActionRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    return _respond(await desk.borrow_accept_period(sid, payload.action if payload else None))


@app.post("/api/step5", response_model=StepResponse)
async def borrow_step5(
    payload: ActionRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    """Create the loan once the student has agreed to the lending rules."""
    return _respond(await desk.borrow_accept_rules(sid, payload.action if payload else None))


# --- Return ---
@app.post("/api/return-step1", response_model=StepResponse)
async def return_step1(
    bookImage: UploadFile | None = File(None),
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    return _respond(await desk.return_find_book(sid, await _read_image(bookImage)))


@app.post("/api/return-step2", response_model=StepResponse)
async def return_step2(
    payload: ActionRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    return _respond(await desk.return_choose(sid, payload.action if payload else None))


@app.post("/api/return-step3", response_model=StepResponse)
async def return_step3(
    payload: NameRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    return _respond(await desk.return_identify_student(sid, payload.name if payload else None))


@app.post("/api/return-step4", response_model=StepResponse)
async def return_step4(
    payload: ActionRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    return _respond(await desk.return_confirm(sid, payload.action if payload else None))


# --- Extend ---
@app.post("/api/extend-step1", response_model=StepResponse)
async def extend_step1(
    payload: NameRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    return _respond(await desk.extend_list_loans(sid, payload.name if payload else None))


@app.post("/api/extend-step2", response_model=StepResponse)
async def extend_step2(
    payload: ExtendRequest | None = None,
    sid: str = Depends(session_id),
    desk: LendingDesk = Depends(get_desk),
):
    loan_id = payload.loanId if payload else None
    student_name = payload.studentName if payload else None
    return _respond(await desk.extend_loan(sid, loan_id, student_name))


# --- Debug ---
@app.get("/api/debug/book/{book_id}/loans", response_model=StepResponse)
async def debug_book_loans(book_id: str, desk: LendingDesk = Depends(get_desk)):
    """Every loan record of one book, newest first. Only served with DEBUG on."""
    if not settings.debug:
        return _not_found(f"/api/debug/book/{book_id}/loans")
    loans = await desk.records.loans_for_book(book_id)
    return StepResponse(
        message=f"{len(loans)} loan record(s)",
        data={"bookId": book_id, "totalRecords": len(loans), "loans": [loan.to_dict() for loan in loans]},
    )


def _not_found(path: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"success": False, "message": "API endpoint not found", "path": path},
    )


@app.api_route("/api/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def api_not_found(path: str):
    logger.info(f"404 - no such endpoint: /api/{path}")
    return _not_found(f"/api/{path}")
