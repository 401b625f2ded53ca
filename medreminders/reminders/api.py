import secrets
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Response, status

from medreminders.db.session import SessionLocal
from .config import settings
from .processing import get_timing_backfill_status
from .schemas import BackfillStatusRead


def verify_operator_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    if not x_api_key or not any(secrets.compare_digest(x_api_key, key) for key in settings.OPS_API_KEYS):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "forbidden", "message": "Operator access required"},
        )


def get_session_factory():
    return SessionLocal


router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get(
    "/ops/timing-backfill-status",
    response_model=BackfillStatusRead,
    response_model_by_alias=True,
    dependencies=[Depends(verify_operator_key)],
)
def timing_backfill_status_endpoint(response: Response, session_factory=Depends(get_session_factory)):
    response.headers["Cache-Control"] = "private, max-age=15"
    return get_timing_backfill_status(session_factory=session_factory)
