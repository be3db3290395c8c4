from __future__ import annotations

import json
import logging
import tempfile
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from prioritizer import jira, reconciler, services
from prioritizer.config import settings
from prioritizer.db import get_session, init_db
from prioritizer.errors import PrioritizerError, ValidationError
from prioritizer.exporter import EXPORT_FILENAME, export_stack_rank
from prioritizer.importer import extract_rows, list_headers, suggest_mapping
from prioritizer.logging_config import configure_logging
from prioritizer.mailer import mailer_from_settings
from prioritizer.otp import InMemoryRateLimiter, OtpService
from prioritizer.schemas import (
    ColumnsOut,
    CommentIn,
    CriteriaList,
    CriterionIn,
    CriterionOut,
    Envelope,
    JiraTestIn,
    OtpRequest,
    OtpVerify,
    PlanUpdate,
    RankIn,
    RankOut,
    RequirementOut,
    RequirementSave,
    ScoreIn,
    SquadIn,
    SquadOut,
    TokenOut,
)
from prioritizer.scorer import score_requirement

configure_logging(settings.log_level)
log = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Prioritizer",
    version="0.1.0",
    description=(
        "Requirement prioritization API. Import requirements from XLSX, "
        "score them against weighted criteria, stack-rank and plan releases. "
        "Every response uses the {success, data|error, message} envelope."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Import", "description": "Spreadsheet header discovery, preview and commit."},
        {"name": "Requirements", "description": "Browse, edit, score, rank and comment on requirements."},
        {"name": "Criteria", "description": "Weighted scoring criteria."},
        {"name": "Plan", "description": "Squads and release planning."},
        {"name": "Analytics", "description": "Aggregate breakdowns."},
        {"name": "Integrations", "description": "External system checks."},
        {"name": "Auth", "description": "Email one-time passcode login."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


def _error(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "message": message, **extra},
    )


@app.exception_handler(PrioritizerError)
async def prioritizer_error_handler(request: Request, exc: PrioritizerError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        log.warning("%s %s rejected (%d): %s", request.method, request.url.path, exc.status_code, exc.message)
    return _error(exc.status_code, exc.error, exc.message, **exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return _error(422, "Invalid request", problems)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, "HTTP error", str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal error", str(exc) or exc.__class__.__name__)


def _ok(data: Any = None, message: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@lru_cache(maxsize=1)
def otp_service() -> OtpService:
    return OtpService(
        settings, mailer_from_settings(settings), InMemoryRateLimiter(settings.otp_max_per_hour),
    )


def _parse_mapping(raw: str | None) -> dict[str, str]:
    if not raw or not raw.strip():
        raise ValidationError("mapping is required", field="mapping")
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"mapping is not valid JSON: {exc.msg}", field="mapping") from exc
    if not isinstance(mapping, dict):
        raise ValidationError("mapping must be a JSON object", field="mapping")
    return {str(k): "" if v is None else str(v) for k, v in mapping.items()}


async def _save_upload(file: UploadFile | None) -> Path:
    """Write an uploaded spreadsheet to a temp file. The caller unlinks it."""
    if file is None or not file.filename:
        raise ValidationError("No file uploaded", field="file")
    if not file.filename.lower().endswith(".xlsx"):
        raise ValidationError("Only .xlsx files are supported", field="file")
    content = await file.read()
    if len(content) > settings.upload_max_mb * 1024 * 1024:
        raise ValidationError(f"File exceeds {settings.upload_max_mb} MB", field="file")
    with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
        f.write(content)
        return Path(f.name)


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/", tags=["Admin"], summary="Health check")
@app.get("/health", tags=["Admin"], summary="Health check")
async def health():
    return _ok({"status": "ok"})


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/requirements/columns", response_model=Envelope[ColumnsOut], tags=["Import"],
          summary="List spreadsheet headers and a suggested field mapping")
async def import_columns(file: UploadFile | None = File(None)):
    tmp_path = await _save_upload(file)
    try:
        headers = list_headers(tmp_path)
    finally:
        tmp_path.unlink(missing_ok=True)
    return _ok({"headers": headers, "suggested_mapping": suggest_mapping(headers)})


@app.post("/api/requirements/preview", tags=["Import"],
          summary="Classify spreadsheet rows as inserts or updates without saving")
async def import_preview(
    file: UploadFile | None = File(None),
    mapping: str | None = Form(None),
    session: Session = Depends(db_session),
):
    field_mapping = _parse_mapping(mapping)
    tmp_path = await _save_upload(file)
    try:
        extraction = extract_rows(tmp_path, field_mapping)
    finally:
        tmp_path.unlink(missing_ok=True)
    return _ok(reconciler.preview(session, extraction, field_mapping))


@app.post("/api/requirements/import", tags=["Import"],
          summary="Insert or update requirements from a spreadsheet")
async def import_commit(
    file: UploadFile | None = File(None),
    mapping: str | None = Form(None),
    session: Session = Depends(db_session),
):
    field_mapping = _parse_mapping(mapping)
    tmp_path = await _save_upload(file)
    try:
        extraction = extract_rows(tmp_path, field_mapping)
    finally:
        tmp_path.unlink(missing_ok=True)
    result = reconciler.commit(session, extraction, field_mapping)
    return _ok(result, f"Imported {result['inserted']} new and updated {result['updated']} requirements")


# ---------------------------------------------------------------------------
# Routes: Requirements (fixed paths before parameterized to avoid shadowing)
# ---------------------------------------------------------------------------


@app.get("/api/requirements", response_model=Envelope[list[RequirementOut]], tags=["Requirements"],
         summary="List requirements with search, status filter and sorting")
async def list_requirements(
    search: str | None = Query(None, description="Substring match on key or summary"),
    status: str | None = Query(None, description="Comma-separated statuses"),
    sort_by: str = Query("rank", description=f"One of: {', '.join(services.SORT_FIELDS)}"),
    sort_dir: str = Query("asc", description="asc or desc"),
    session: Session = Depends(db_session),
):
    if sort_by not in services.SORT_FIELDS:
        raise ValidationError(f"sort_by must be one of {', '.join(services.SORT_FIELDS)}", field="sort_by")
    items = services.list_requirements(
        session, search=search, status=status, sort_by=sort_by, sort_dir=sort_dir,
    )
    return _ok(items)


@app.get("/api/requirements/export", tags=["Requirements"],
         summary="Download the stack rank as an XLSX workbook")
async def export_requirements(session: Session = Depends(db_session)):
    return Response(
        export_stack_rank(session).getvalue(),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
    )


@app.post("/api/requirements/fix-ranks", response_model=Envelope[list[RankOut]], tags=["Requirements"],
          summary="Renumber ranks to 0..N-1 by rank then score")
async def fix_ranks(session: Session = Depends(db_session)):
    ordered = services.normalize_ranks(session)
    session.commit()
    return _ok([services.rank_dict(r) for r in ordered], "Ranks have been fixed successfully")


@app.post("/api/requirements", response_model=Envelope[RequirementOut], tags=["Requirements"], summary="Create or replace a requirement")
async def save_requirement(body: RequirementSave, session: Session = Depends(db_session)):
    return _ok(services.save_requirement(session, body.model_dump()))


@app.get("/api/requirements/{key}", response_model=Envelope[RequirementOut], tags=["Requirements"], summary="Get one requirement")
async def get_requirement(key: str, session: Session = Depends(db_session)):
    return _ok(services.get_requirement(session, key))


@app.delete("/api/requirements/{key}", tags=["Requirements"], summary="Delete a requirement")
async def delete_requirement(key: str, session: Session = Depends(db_session)):
    services.delete_requirement(session, key)
    return _ok(message=f"Requirement {key} deleted")


@app.post("/api/requirements/{key}/score", response_model=Envelope[RequirementOut], tags=["Requirements"],
          summary="Set criterion scores and recompute the weighted score")
async def score_one(key: str, body: ScoreIn, session: Session = Depends(db_session)):
    score_requirement(session, key, body.criteria)
    session.commit()
    return _ok(services.get_requirement(session, key))


@app.post("/api/requirements/{key}/rank", response_model=Envelope[RankOut], tags=["Requirements"], summary="Set one requirement's rank")
async def rank_one(key: str, body: RankIn, session: Session = Depends(db_session)):
    req = services.update_rank(session, key, body.rank)
    session.commit()
    return _ok(services.rank_dict(req))


@app.post("/api/requirements/{key}/comments", tags=["Requirements"], summary="Append a comment")
async def add_comment(key: str, body: CommentIn, session: Session = Depends(db_session)):
    comments = services.add_comment(session, key, body.text)
    session.commit()
    return _ok(comments)


# ---------------------------------------------------------------------------
# Routes: Criteria
# ---------------------------------------------------------------------------


@app.get("/api/criteria", response_model=Envelope[CriteriaList], tags=["Criteria"], summary="List criteria and their total weight")
async def list_criteria(session: Session = Depends(db_session)):
    return _ok(services.list_criteria(session))


@app.post("/api/criteria", response_model=Envelope[CriterionOut], tags=["Criteria"], summary="Create or update a criterion")
async def save_criterion(body: CriterionIn, session: Session = Depends(db_session)):
    return _ok(services.save_criterion(session, body.model_dump()))


@app.post("/api/criteria/init", response_model=Envelope[list[CriterionOut]], tags=["Criteria"], summary="Reset criteria to the default set")
async def init_criteria(session: Session = Depends(db_session)):
    return _ok(services.reset_criteria(session), "Default criteria restored")


@app.delete("/api/criteria/{criterion_id}", tags=["Criteria"], summary="Delete a criterion")
async def delete_criterion(criterion_id: str, session: Session = Depends(db_session)):
    services.delete_criterion(session, criterion_id)
    return _ok(message=f"Criterion {criterion_id} deleted")


# ---------------------------------------------------------------------------
# Routes: Squads & Plan
# ---------------------------------------------------------------------------


@app.get("/api/squads", response_model=Envelope[list[SquadOut]], tags=["Plan"], summary="List squads")
async def list_squads(session: Session = Depends(db_session)):
    return _ok(services.list_squads(session))


@app.post("/api/squads", response_model=Envelope[SquadOut], tags=["Plan"], summary="Create or update a squad")
async def save_squad(body: SquadIn, session: Session = Depends(db_session)):
    return _ok(services.save_squad(session, body.model_dump()))


@app.delete("/api/squads/{squad_id}", tags=["Plan"], summary="Delete a squad")
async def delete_squad(squad_id: str, session: Session = Depends(db_session)):
    services.delete_squad(session, squad_id)
    return _ok(message=f"Squad {squad_id} deleted")


@app.get("/api/plan", tags=["Plan"], summary="Release plan ordered by rank")
async def get_plan(session: Session = Depends(db_session)):
    return _ok(services.plan_overview(session))


@app.patch("/api/plan/{key}", response_model=Envelope[RequirementOut], tags=["Plan"], summary="Update a requirement's plan fields")
async def update_plan(key: str, body: PlanUpdate, session: Session = Depends(db_session)):
    return _ok(services.update_plan(session, key, body.model_dump()))


# ---------------------------------------------------------------------------
# Routes: Analytics
# ---------------------------------------------------------------------------


@app.get("/api/analytics", tags=["Analytics"], summary="Aggregate breakdowns over all requirements")
async def get_analytics(session: Session = Depends(db_session)):
    return _ok(services.compute_analytics(session))


# ---------------------------------------------------------------------------
# Routes: Integrations
# ---------------------------------------------------------------------------


@app.post("/api/jira/test", tags=["Integrations"], summary="Check Jira URL and credentials")
async def jira_test(body: JiraTestIn):
    user = await jira.check_connection(body.jira_url, body.token, timeout=settings.jira_timeout_seconds)
    return _ok(user, "Successfully connected to Jira!")


# ---------------------------------------------------------------------------
# Routes: Auth (sync so blocking SMTP runs in the threadpool)
# ---------------------------------------------------------------------------


@app.post("/api/auth/otp/request", tags=["Auth"], summary="Email a one-time login code")
def request_otp(body: OtpRequest, session: Session = Depends(db_session),
                service: OtpService = Depends(otp_service)):
    return _ok(service.request_code(session, body.email), "Code sent")


@app.post("/api/auth/otp/verify", response_model=Envelope[TokenOut], tags=["Auth"], summary="Exchange a login code for an access token")
def verify_otp(body: OtpVerify, session: Session = Depends(db_session),
               service: OtpService = Depends(otp_service)):
    return _ok(service.verify_code(session, body.email, body.code))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("prioritizer.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
