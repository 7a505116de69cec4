"""
Scan Review Service API
=======================

FastAPI endpoints over the single active case.

Endpoints:
- GET    /health                                - Health check
- GET    /api/v1/case                           - Current case view
- POST   /api/v1/case                           - Start a new case
- POST   /api/v1/case/analysis                  - Upload images and run analysis
- DELETE /api/v1/case/analysis                  - Reset analysis
- PUT    /api/v1/case/report                    - Save report draft (primary)
- PUT    /api/v1/case/review-notes              - Save reviewer notes draft (peer)
- POST   /api/v1/case/findings/{id}/accept      - Accept finding into report
- POST   /api/v1/case/findings/{id}/reject      - Reject finding
- POST   /api/v1/case/review-request            - Send to peer reviewer
- POST   /api/v1/case/review                    - Submit peer review
- POST   /api/v1/case/finalize                  - Finalize report
- PUT    /api/v1/persona                        - Switch acting persona

The acting persona comes from the X-Persona header, falling back to the
persona stored in the session.

Run with:
    uvicorn scan_review.api:app --host 0.0.0.0 --port 8000
"""

import logging
import mimetypes
import os
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Header, Depends, Body, UploadFile, File, Form, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings, get_llm_mode
from .errors import (
    AnalysisAborted, CaseReviewError, ConfigurationError, ValidationError, WorkflowGuardViolation
)
from .schemas import (
    CaseStateResponse,
    HealthResponse,
    Persona,
    ReportUpdateRequest,
    ReviewNotesRequest,
    ReviewRequestRequest,
    ScanImage,
    StartCaseRequest,
    SubmitReviewRequest,
)
from .session import CaseSession
from .store import StateStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Scan Review Service",
    description="AI-assisted multi-image scan analysis and peer review workflow",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)


# CORS - get allowed origins from environment, default to localhost for development
def _parse_cors_origins(raw: str) -> List[str]:
    origins: List[str] = []
    for item in raw.split(","):
        origin = item.strip().strip('"').strip("'").rstrip("/")
        if origin:
            origins.append(origin)
    return origins

_cors_raw = os.environ.get(
    "CORS_ALLOW_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000,http://localhost:8000,http://127.0.0.1:8000"
)
CORS_ALLOW_ORIGINS = _parse_cors_origins(_cors_raw)
logger.info(f"CORS allow origins: {CORS_ALLOW_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# =============================================================================
# Dependencies
# =============================================================================

def get_session(request: Request) -> CaseSession:
    """The case session owned by the app (created at startup)"""
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Case session is not initialized")
    return session


def get_actor(
    x_persona: Optional[Persona] = Header(None),
    session: CaseSession = Depends(get_session)
) -> Persona:
    return x_persona or session.persona


def _guess_mime_type(upload: UploadFile) -> str:
    if upload.content_type and upload.content_type != "application/octet-stream":
        return upload.content_type
    guessed, _ = mimetypes.guess_type(upload.filename or "")
    return guessed or "application/octet-stream"


# =============================================================================
# Lifecycle
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    settings = get_settings()
    logger.info(f"Starting Scan Review Service v{settings.service_version}")
    logger.info(f"LLM Mode: {settings.llm_mode.value}")
    for warning in settings.validate_llm_config():
        logger.warning(warning)

    if getattr(app.state, "session", None) is None:
        app.state.session = CaseSession(StateStore(), settings=settings)


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    session = getattr(app.state, "session", None)
    if session is not None:
        await session.scheduler.analyzer.close()
    logger.info("Scan Review Service stopped")


# =============================================================================
# Health
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        version=settings.service_version,
        llm_mode=get_llm_mode(),
        timestamp=datetime.now()
    )


# =============================================================================
# Case
# =============================================================================

@app.get("/api/v1/case", response_model=CaseStateResponse, tags=["Case"])
async def get_case(
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    return session.view(actor)


@app.post("/api/v1/case", response_model=CaseStateResponse, tags=["Case"])
async def start_case(
    request: Optional[StartCaseRequest] = None,
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    """Start a new case; the previous case, findings and report are discarded"""
    request = request or StartCaseRequest()
    session.start_case(request.patient_ref, request.clinical_context, actor=actor)
    return session.view(actor)


@app.put("/api/v1/persona", response_model=CaseStateResponse, tags=["Case"])
async def switch_persona(
    persona: Persona = Body(..., embed=True),
    session: CaseSession = Depends(get_session)
):
    session.switch_persona(persona)
    return session.view(persona)


# =============================================================================
# Analysis
# =============================================================================

@app.post("/api/v1/case/analysis", response_model=CaseStateResponse, tags=["Analysis"])
async def run_analysis(
    files: List[UploadFile] = File(..., description="Scan images, in sequence order"),
    clinical_context: Optional[str] = Form(None),
    labels: Optional[List[str]] = Form(None, description="Sequence label per image"),
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    """
    Analyze every uploaded image and replace the case's findings.

    All-or-nothing: if any image fails, nothing is stored.
    """
    labels = labels or []
    images = []
    for index, upload in enumerate(files):
        mime_type = _guess_mime_type(upload)
        if not mime_type.startswith("image/"):
            raise ValidationError(f"File '{upload.filename}' is not an image ({mime_type})")
        images.append(ScanImage(
            id=f"image-{uuid.uuid4().hex[:8]}-{index + 1}",
            data=await upload.read(),
            mime_type=mime_type,
            label=labels[index] if index < len(labels) else (upload.filename or f"Image {index + 1}"),
        ))

    await session.run_analysis(images, clinical_context, actor=actor)
    return session.view(actor)


@app.delete("/api/v1/case/analysis", response_model=CaseStateResponse, tags=["Analysis"])
async def reset_analysis(
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    session.reset_analysis(actor=actor)
    return session.view(actor)


# =============================================================================
# Report & findings
# =============================================================================

@app.put("/api/v1/case/report", response_model=CaseStateResponse, tags=["Report"])
async def update_report(
    request: ReportUpdateRequest,
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    session.update_report(request.report_text, actor=actor)
    return session.view(actor)


@app.put("/api/v1/case/review-notes", response_model=CaseStateResponse, tags=["Report"])
async def save_review_notes(
    request: ReviewNotesRequest,
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    session.save_review_notes(request.notes, actor=actor)
    return session.view(actor)


@app.post("/api/v1/case/findings/{finding_id}/accept", response_model=CaseStateResponse, tags=["Report"])
async def accept_finding(
    finding_id: str,
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    session.accept_finding(finding_id, actor=actor)
    return session.view(actor)


@app.post("/api/v1/case/findings/{finding_id}/reject", response_model=CaseStateResponse, tags=["Report"])
async def reject_finding(
    finding_id: str,
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    session.reject_finding(finding_id, actor=actor)
    return session.view(actor)


# =============================================================================
# Workflow
# =============================================================================

@app.post("/api/v1/case/review-request", response_model=CaseStateResponse, tags=["Workflow"])
async def submit_for_review(
    request: ReviewRequestRequest,
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    session.submit_for_review(request.reviewer, request.note, actor=actor)
    return session.view(actor)


@app.post("/api/v1/case/review", response_model=CaseStateResponse, tags=["Workflow"])
async def submit_review(
    request: SubmitReviewRequest,
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    session.submit_review(request.notes, actor=actor)
    return session.view(actor)


@app.post("/api/v1/case/finalize", response_model=CaseStateResponse, tags=["Workflow"])
async def finalize(
    session: CaseSession = Depends(get_session),
    actor: Persona = Depends(get_actor)
):
    session.finalize(actor=actor)
    return session.view(actor)


# =============================================================================
# Error handling
# =============================================================================

_ERROR_STATUS = {
    ValidationError: 400,
    WorkflowGuardViolation: 409,
    AnalysisAborted: 502,
    ConfigurationError: 503,
}


def _sanitize_error_detail(detail: Any) -> Any:
    if detail is None:
        return None
    if isinstance(detail, str):
        compact = " ".join(detail.split())
        return compact[:300]
    return detail


def _error_code_for_status(status_code: int) -> str:
    return {
        400: "bad_request",
        404: "not_found",
        409: "conflict",
        422: "validation_error",
        500: "internal_error",
        503: "service_unavailable",
    }.get(status_code, "error")


def _build_error_payload(code: str, message: str, details: Any = None) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        }
    }


@app.exception_handler(CaseReviewError)
async def case_review_error_handler(request: Request, exc: CaseReviewError):
    """Typed domain failures -> structured JSON"""
    status_code = next(
        (status for cls, status in _ERROR_STATUS.items() if isinstance(exc, cls)),
        500,
    )
    details = {"image_id": exc.image_id} if isinstance(exc, AnalysisAborted) else None
    logger.warning(f"{request.url.path}: {exc.code}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=_build_error_payload(exc.code, _sanitize_error_detail(str(exc)), details),
    )


@app.exception_handler(HTTPException)
async def api_http_exception_handler(request: Request, exc: HTTPException):
    """Structured errors for /api/v1 endpoints."""
    if not request.url.path.startswith("/api/v1"):
        return await http_exception_handler(request, exc)

    detail = _sanitize_error_detail(exc.detail)
    message = detail if isinstance(detail, str) and detail else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_error_payload(_error_code_for_status(exc.status_code), message),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler - always return valid JSON"""
    logger.error("Unhandled exception on %s: %s", request.url.path, exc.__class__.__name__)
    return JSONResponse(
        status_code=500,
        content=_build_error_payload("internal_error", "Internal server error", {"exception": exc.__class__.__name__}),
    )


# =============================================================================
# Main (for direct execution)
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "scan_review.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
