"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, PlainTextResponse

from teachlens.api.middleware import verify_api_key
from teachlens.api.schemas import (
    ClassifyResponse,
    DisplayResponse,
    ErrorResponse,
    HealthResponse,
    HistoryItem,
    HistoryResponse,
    LastResultResponse,
    predictions_from,
)
from teachlens.errors import FailureKind
from teachlens.reporting import export_filename, format_timestamp, to_report_text

if TYPE_CHECKING:
    from teachlens.config import Settings
    from teachlens.ml.inference import InferencePool
    from teachlens.session import ClassificationSession, LastResult, SessionContext

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_FAILURE_STATUS: dict[FailureKind, int] = {
    FailureKind.NOT_AN_IMAGE: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    FailureKind.INVALID_IMAGE: 422,
    FailureKind.MODEL_NOT_READY: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureKind.SERVER_BUSY: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureKind.CLASSIFICATION_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_FAILURE_RESPONSES = {code: {"model": ErrorResponse} for code in _FAILURE_STATUS.values()}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_session(request: Request) -> ClassificationSession:
    session: ClassificationSession = request.app.state.session
    return session


def _get_context(request: Request) -> SessionContext:
    return _get_session(request).context


def _require_last_result(request: Request) -> LastResult:
    last = _get_context(request).last_result
    if last is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No prediction yet. Upload an image to analyze first.",
        )
    return last


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    responses={413: {"model": ErrorResponse}, **_FAILURE_RESPONSES},
    summary="Classify an image",
)
async def classify(request: Request, file: UploadFile) -> ClassifyResponse | JSONResponse:
    """Classify an uploaded image and return ranked class probabilities."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    await file.close()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    outcome = await _get_session(request).classify(data, file.content_type)
    if not outcome.ok or outcome.result is None:
        kind = outcome.failure or FailureKind.CLASSIFICATION_ERROR
        return JSONResponse(
            status_code=_FAILURE_STATUS[kind],
            content=ErrorResponse(detail=outcome.message or "Prediction failed", kind=kind).model_dump(),
        )

    predictions = predictions_from(outcome.result)
    return ClassifyResponse(
        session_id=outcome.session_id,
        best=predictions[0],
        predictions=predictions,
        timestamp=outcome.timestamp or "",
        applied=outcome.applied,
    )


@router.get("/display", response_model=DisplayResponse, summary="Currently displayed probabilities")
async def display(request: Request) -> DisplayResponse:
    """Return the probabilities on display; empty until success or after a failure."""
    shown = _get_context(request).display
    return DisplayResponse(predictions=predictions_from(shown) if shown is not None else [])


@router.get(
    "/result",
    response_model=LastResultResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Most recent result",
)
async def last_result(request: Request) -> LastResultResponse:
    last = _require_last_result(request)
    predictions = predictions_from(last.result)
    return LastResultResponse(
        best=predictions[0],
        predictions=predictions,
        timestamp=last.timestamp,
        analyzed_at=format_timestamp(last.timestamp),
    )


@router.get(
    "/result/report",
    response_class=PlainTextResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Most recent result as report text (for copying)",
)
async def last_result_report(request: Request) -> PlainTextResponse:
    last = _require_last_result(request)
    return PlainTextResponse(to_report_text(last.result, last.timestamp))


@router.get(
    "/result/export",
    response_class=PlainTextResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Download the most recent result as a text file",
)
async def export_last_result(request: Request) -> PlainTextResponse:
    """Return the report as an attachment named after the current local time."""
    last = _require_last_result(request)
    return PlainTextResponse(
        to_report_text(last.result, last.timestamp),
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )


@router.get("/history", response_model=HistoryResponse, summary="Past results, newest first")
async def list_history(request: Request) -> HistoryResponse:
    history = _get_context(request).history
    return HistoryResponse(
        items=[HistoryItem.from_entry(entry) for entry in history.list()],
        max_items=history.max_history,
    )


@router.delete(
    "/history",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse}},
    summary="Delete all history",
)
async def clear_history(request: Request, confirm: bool = False) -> None:
    """Clear history. The caller must confirm explicitly with ``confirm=true``."""
    if not confirm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Clearing history requires confirm=true",
        )
    _get_context(request).history.clear()


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request) -> HealthResponse:
    """Return service health and model readiness."""
    context = _get_context(request)
    pool: InferencePool = request.app.state.inference_pool
    classifier = context.classifier
    return HealthResponse(
        status="ok" if context.model_error is None else "degraded",
        model_ready=context.model_ready,
        model_error=context.model_error,
        labels=list(classifier.labels) if classifier is not None else [],
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )

