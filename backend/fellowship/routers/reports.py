from fastapi import APIRouter, Depends, HTTPException

from fellowship.auth import require_authenticated_user
from fellowship.models import Report, ReportCreateRequest, UserProfile
from fellowship.services.report_store import (
    ReportStoreConflictError,
    ReportStoreError,
    ReportStoreNotFoundError,
    ReportStoreRateLimitError,
    report_store,
)

router = APIRouter(prefix="/reports", tags=["reports"])


def raise_report_http_error(exc: ReportStoreError) -> None:
    if isinstance(exc, ReportStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ReportStoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ReportStoreRateLimitError):
        raise HTTPException(status_code=429, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


@router.post("", response_model=Report, status_code=201)
def create_report(payload: ReportCreateRequest, user: UserProfile = Depends(require_authenticated_user)):
    try:
        return report_store.create_report(user.id, payload)
    except ReportStoreError as exc:
        raise_report_http_error(exc)
