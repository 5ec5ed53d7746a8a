from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Depends, Body, Path, Query
from fastapi.responses import JSONResponse
import structlog
import uvicorn
from sqlalchemy.orm import Session
from starlette import status

from survey_quota.core.db import get_db, init_db
from survey_quota.core.logging import configure_logging
from survey_quota.core.middleware import register_error_handlers
from survey_quota.core.settings import config_settings
from survey_quota.models.schemas.assignment import AssignmentRequestModel, AssignmentResult
from survey_quota.models.schemas.form import (
    ArticleImportModel,
    ArticleImportResultModel,
    FormCreateModel,
    FormResponseModel,
    QuotaStatusModel,
)
from survey_quota.models.schemas.session import (
    AnnotationProgressModel,
    AnnotationProgressResponseModel,
    DemographicsModel,
    ExpirySweepModel,
    SessionCompletionModel,
    SessionDeclineModel,
    SessionPublic,
    SessionStartModel,
    SessionStartResponseModel,
    SessionTokenModel,
)
from survey_quota.services.assignment_service import AssignmentService
from survey_quota.services.form_service import FormService
from survey_quota.services.session_service import SessionService

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    logger.info("app_started", env=config_settings.app_env)
    yield


# 1. Create the FastAPI application instance
app = FastAPI(
    title=config_settings.app_title,
    description="Quota-balanced assignment of survey participants to annotation articles",
    version="0.1.0",
    lifespan=lifespan,
)
register_error_handlers(app)


# --- Forms ---


@app.post(
    "/forms",
    response_model=FormResponseModel,
    status_code=status.HTTP_201_CREATED,
)
def post_forms(form_data: FormCreateModel, db: Session = Depends(get_db)):
    return FormService(db).create_form(form_data)


@app.get("/forms/{form_id}", response_model=FormResponseModel, summary="Get a form")
def get_form(
    form_id: str = Path(..., description="The ID of the form."),
    db: Session = Depends(get_db),
):
    return FormService(db).get_form(form_id)


@app.put(
    "/forms/{form_id}/quota-settings",
    response_model=FormResponseModel,
    summary="Replace a form's quota settings",
)
def put_quota_settings(
    form_id: str,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
):
    """
    Validates the settings as a whole (disjoint groups, non-negative targets)
    before storing them. Running sessions pick up the new targets on their
    next counter write.
    """
    return FormService(db).update_quota_settings(form_id, payload)


@app.post(
    "/forms/{form_id}/articles",
    response_model=ArticleImportResultModel,
    status_code=status.HTTP_201_CREATED,
    summary="Import articles",
)
def post_articles(form_id: str, import_data: ArticleImportModel, db: Session = Depends(get_db)):
    return FormService(db).import_articles(form_id, import_data)


@app.get(
    "/forms/{form_id}/quota-status",
    response_model=QuotaStatusModel,
    summary="Quota progress per demographic group",
)
def get_quota_status(form_id: str, db: Session = Depends(get_db)):
    return FormService(db).get_quota_status(form_id)


# --- Participant sessions ---


@app.post("/forms/{form_id}/session", response_model=SessionStartResponseModel)
def post_session(
    form_id: str,
    request: Optional[SessionStartModel] = Body(None),
    db: Session = Depends(get_db),
):
    """Starts a session, or resumes the one behind sessionToken while it is live."""
    return SessionService(db).start_or_resume(form_id, request or SessionStartModel())


@app.get("/forms/{form_id}/session", response_model=SessionPublic)
def get_session(
    form_id: str,
    token: Optional[str] = Query(None, description="The participant's session token."),
    db: Session = Depends(get_db),
):
    return SessionService(db).get_session(form_id, token)


@app.post("/forms/{form_id}/session/demographics", response_model=SessionPublic)
def post_session_demographics(form_id: str, request: DemographicsModel, db: Session = Depends(get_db)):
    return SessionService(db).save_demographics(form_id, request)


@app.post(
    "/forms/{form_id}/session/assign",
    response_model=AssignmentResult,
    response_model_exclude_none=True,
    summary="Classify a participant and assign articles",
    responses={status.HTTP_409_CONFLICT: {"model": AssignmentResult}},
)
def post_assignment(form_id: str, request: AssignmentRequestModel, db: Session = Depends(get_db)):
    """
    Returns the assigned articles, or a screen-out with its reason
    (under_age, no_matching_group, quota_full) as a 409. Repeating the
    call for the same session returns the same outcome.
    """
    result = AssignmentService(db).assign(form_id, request)
    if not result.assigned:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=result.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
    return result


@app.post(
    "/forms/{form_id}/session/annotate",
    response_model=AnnotationProgressResponseModel,
    summary="Record an annotated article",
)
def post_session_annotate(form_id: str, request: AnnotationProgressModel, db: Session = Depends(get_db)):
    """The article must belong to the session's unit; completion needs all of them."""
    return AssignmentService(db).record_annotation(form_id, request)


@app.post("/forms/{form_id}/session/complete", response_model=SessionCompletionModel)
def post_session_complete(form_id: str, request: SessionTokenModel, db: Session = Depends(get_db)):
    return AssignmentService(db).complete_session(form_id, request.session_token)


@app.post("/forms/{form_id}/session/decline", response_model=SessionDeclineModel)
def post_session_decline(form_id: str, request: SessionTokenModel, db: Session = Depends(get_db)):
    return SessionService(db).decline(form_id, request.session_token)


@app.post(
    "/forms/{form_id}/sessions/expire",
    response_model=ExpirySweepModel,
    summary="Expire idle sessions and release their slots",
)
def post_expire_sessions(form_id: str, db: Session = Depends(get_db)):
    return AssignmentService(db).expire_stale_sessions(form_id)


# Optional: Entry point for running the application directly (useful for local development)
if __name__ == "__main__":
    uvicorn.run("survey_quota.main:app", host="0.0.0.0", port=8000, reload=True)
