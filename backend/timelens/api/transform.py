"""Transform, usage and gallery API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.orm import Session

from timelens.core.security import require_auth, require_csrf_new
from timelens.db.session import get_db
from timelens.schemas.transform import GalleryResponse, TransformResponse, UsageResponse
from timelens.services import quota_service
from timelens.services.auth_service import get_user_by_id
from timelens.services.generation.prompts import list_themes
from timelens.services.transform_service import (
    TransformOrchestrator, TransformRequest, list_user_transformations, serialize_result
)

router = APIRouter(prefix="/api", tags=["transform"])
logger = logging.getLogger(__name__)


def get_orchestrator() -> TransformOrchestrator:
    """Dependency: orchestrator wired to the process-wide R2 and Gemini clients"""
    return TransformOrchestrator()


@router.post("/transform", response_model=TransformResponse)
def transform_image(
    image: Optional[UploadFile] = File(None),
    theme: Optional[str] = Form(None),
    custom_prompt: Optional[str] = Form(None),
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db),
    orchestrator: TransformOrchestrator = Depends(get_orchestrator)
):
    """Transform an uploaded photo into the chosen era (or a custom prompt)"""
    request = TransformRequest(
        image_bytes=image.file.read() if image else None,
        content_type=image.content_type if image else None,
        filename=image.filename if image else None,
        theme=theme,
        custom_prompt=custom_prompt
    )
    result = orchestrator.run(user_id, request, db)
    return {"result": serialize_result(result)}


@router.get("/themes")
def get_themes():
    return {"themes": list_themes()}


@router.get("/usage", response_model=UsageResponse)
def get_usage(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Today's counter and limit"""
    check = quota_service.can_transform(user_id, db)
    counter = quota_service.get_usage_counter(user_id, db)
    user = get_user_by_id(user_id, db)
    return {
        "plan_type": user.current_plan,
        "count": counter.transformations_count if counter else 0,
        "limit": check["limit"],
        "remaining": check["remaining"],
        "allowed": check["allowed"],
    }


@router.get("/usage/stats")
def get_usage_stats(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return quota_service.get_usage_stats(user_id, db)


@router.get("/usage/history")
def get_usage_history(
    days: int = Query(30, ge=1, le=365),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    return {"history": quota_service.get_usage_history(user_id, db, days=days)}


@router.get("/images", response_model=GalleryResponse)
def get_images(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """The user's transformations, newest first"""
    return list_user_transformations(user_id, db, page=page, limit=limit)
