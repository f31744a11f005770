"""Transform orchestration - quota gate, staging, generation, persistence and compensation"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from timelens.core.config import settings
from timelens.core.errors import InvalidRequest, QuotaExceeded, StorageError
from timelens.core.logging import transform_logger
from timelens.core.metrics import (
    compensation_deletes_counter, quota_rejections_counter, transformations_counter
)
from timelens.models.transform_result import TransformResult
from timelens.models.user import User
from timelens.services import quota_service
from timelens.services.generation.generator import ImageGenerator
from timelens.services.generation.prompts import resolve_prompt
from timelens.services.storage.r2_service import (
    R2Service, extension_for, get_r2_service, original_object_key, transformed_object_key
)

logger = logging.getLogger(__name__)


class TransformState(str, Enum):
    REQUESTED = "requested"
    QUOTA_CHECKED = "quota_checked"
    ORIGINAL_STAGED = "original_staged"
    GENERATED = "generated"
    RESULT_STAGED = "result_staged"
    PERSISTED = "persisted"
    QUOTA_COMMITTED = "quota_committed"
    FAILED = "failed"


@dataclass
class TransformRequest:
    image_bytes: Optional[bytes]
    content_type: Optional[str]
    filename: Optional[str] = None
    theme: Optional[str] = None
    custom_prompt: Optional[str] = None


@dataclass
class TransformRun:
    """Per-request progress: current state and the object keys staged so far"""

    user_id: int
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: TransformState = TransformState.REQUESTED
    staged_keys: List[str] = field(default_factory=list)

    def advance(self, state: TransformState) -> None:
        transform_logger.debug(f"Transform {self.run_id} (user {self.user_id}): {self.state.value} -> {state.value}")
        self.state = state


def serialize_result(result: TransformResult) -> Dict:
    return {
        "id": result.id,
        "original_url": result.original_url,
        "generated_url": result.generated_url,
        "theme": result.era_theme,
        "custom_prompt": result.custom_prompt,
        "used_fallback_prompt": result.used_fallback_prompt,
        "created_at": result.created_at.isoformat() if result.created_at else None,
    }


def validate_image(image_bytes: Optional[bytes], content_type: Optional[str]) -> None:
    if not image_bytes:
        raise InvalidRequest("An image is required")
    if not content_type or not content_type.lower().startswith("image/"):
        raise InvalidRequest("Uploaded file must be an image")
    if len(image_bytes) > settings.MAX_IMAGE_SIZE:
        raise InvalidRequest(f"Image exceeds maximum size of {settings.MAX_IMAGE_SIZE // (1024 * 1024)}MB")


class TransformOrchestrator:
    """Runs one transformation end to end.

    Quota is consumed only after the result row is written, in the same commit.
    Any failure after the original is staged deletes whatever was staged before
    the error is re-raised.
    """

    def __init__(
        self,
        storage: Optional[R2Service] = None,
        generator: Optional[ImageGenerator] = None,
        clock: Callable[[], float] = time.time
    ):
        self.storage = storage or get_r2_service()
        self.generator = generator or ImageGenerator()
        self.clock = clock

    def run(self, user_id: int, request: TransformRequest, db: Session) -> TransformResult:
        """Transform an uploaded image for a user.

        Raises:
            NotFoundError: Unknown user
            QuotaExceeded: No transformations left today
            InvalidRequest: Missing or non-image upload, or no usable prompt
            GenerationFailed: The model produced no image
            StorageError: Object storage or database failure
        """
        run = TransformRun(user_id=user_id)
        try:
            result = self._execute(run, request, db)
        except Exception as e:
            if isinstance(e, QuotaExceeded):
                transformations_counter.labels(status="quota_exceeded").inc()
                transform_logger.info(f"Transform {run.run_id} for user {user_id} rejected in state {run.state.value}: {e}")
            elif isinstance(e, InvalidRequest):
                transformations_counter.labels(status="invalid").inc()
                transform_logger.info(f"Transform {run.run_id} for user {user_id} rejected: {e}")
            else:
                transformations_counter.labels(status="failed").inc()
                transform_logger.error(f"Transform {run.run_id} for user {user_id} failed in state {run.state.value}: {e}")
            run.advance(TransformState.FAILED)
            # A quota race lost at commit time also lands here with objects staged
            db.rollback()
            self._compensate(run)
            if isinstance(e, SQLAlchemyError):
                raise StorageError("Failed to save the transformation", cause=e)
            raise

        transformations_counter.labels(status="success").inc()
        transform_logger.info(
            f"Transform {run.run_id} for user {user_id} completed (result {result.id}, theme {result.era_theme})"
        )
        return result

    def _execute(self, run: TransformRun, request: TransformRequest, db: Session) -> TransformResult:
        user_id = run.user_id

        check = quota_service.can_transform(user_id, db)
        if not check["allowed"]:
            user = db.query(User).filter(User.id == user_id).first()
            quota_rejections_counter.labels(plan=user.current_plan if user else "unknown").inc()
            raise QuotaExceeded(remaining=check["remaining"], limit=check["limit"])
        # Release the connection while storage and the model run
        db.commit()
        run.advance(TransformState.QUOTA_CHECKED)

        validate_image(request.image_bytes, request.content_type)
        prompt = resolve_prompt(request.theme, request.custom_prompt)

        timestamp = int(self.clock() * 1000)
        original_key = original_object_key(user_id, timestamp, request.filename)
        self.storage.put_object(original_key, request.image_bytes, request.content_type)
        run.staged_keys.append(original_key)
        run.advance(TransformState.ORIGINAL_STAGED)

        generated = self.generator.generate(request.image_bytes, request.content_type, prompt)
        run.advance(TransformState.GENERATED)

        generated_key = transformed_object_key(
            user_id, timestamp, extension_for(generated.mime_type, request.filename)
        )
        self.storage.put_object(generated_key, generated.data, generated.mime_type)
        run.staged_keys.append(generated_key)
        run.advance(TransformState.RESULT_STAGED)

        # Counter creation commits, so it must exist before the result row is pending
        user = db.query(User).filter(User.id == user_id).first()
        quota_service.get_or_create_usage_counter(user_id, user.current_plan, db)

        result = TransformResult(
            user_id=user_id,
            original_key=original_key,
            original_url=self.storage.public_url(original_key),
            generated_key=generated_key,
            generated_url=self.storage.public_url(generated_key),
            era_theme=prompt.label,
            custom_prompt=prompt.text if prompt.is_custom else None,
            used_fallback_prompt=generated.used_fallback,
        )
        db.add(result)
        db.flush()
        run.advance(TransformState.PERSISTED)

        quota_service.commit_usage(user_id, db, commit=False)
        db.commit()
        db.refresh(result)
        run.advance(TransformState.QUOTA_COMMITTED)
        return result

    def _compensate(self, run: TransformRun) -> None:
        """Best-effort delete of staged objects. Never raises."""
        for key in reversed(run.staged_keys):
            try:
                self.storage.delete_object(key)
                compensation_deletes_counter.labels(status="deleted").inc()
                transform_logger.info(f"Transform {run.run_id}: removed staged object {key}")
            except Exception as cleanup_error:
                compensation_deletes_counter.labels(status="failed").inc()
                logger.error(f"Transform {run.run_id}: failed to remove staged object {key}: {cleanup_error}")


def list_user_transformations(user_id: int, db: Session, page: int = 1, limit: int = 20) -> Dict:
    """User's results newest first with pagination metadata"""
    if page < 1 or limit < 1:
        raise InvalidRequest("page and limit must be positive")
    limit = min(limit, 100)

    query = db.query(TransformResult).filter(TransformResult.user_id == user_id)
    total = query.count()
    results = query.order_by(
        TransformResult.created_at.desc(), TransformResult.id.desc()
    ).offset((page - 1) * limit).limit(limit).all()

    return {
        "images": [serialize_result(r) for r in results],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }
