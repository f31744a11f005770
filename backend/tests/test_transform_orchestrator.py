"""Transform orchestration tests (quota gate, staging, compensation, atomic usage commit)"""
import pytest
from unittest.mock import call, patch
from botocore.exceptions import ClientError
from sqlalchemy.exc import SQLAlchemyError

from timelens.core.errors import GenerationFailed, InvalidRequest, QuotaExceeded, StorageError
from timelens.models.transform_result import TransformResult
from timelens.models.usage_counter import UsageCounter
from timelens.services import quota_service
from timelens.services.generation.gemini_client import PermanentFailure, Refused
from timelens.services.transform_service import (
    TransformOrchestrator, TransformRequest, list_user_transformations, validate_image
)

ORIGINAL_KEY = "original/{uid}/1700000000000-me.jpg"
GENERATED_KEY = "transformed/{uid}/1700000000000-transformed.png"


def make_request(**overrides):
    data = {
        "image_bytes": b"jpeg-bytes",
        "content_type": "image/jpeg",
        "filename": "me.jpg",
        "theme": "medieval",
        "custom_prompt": None,
    }
    data.update(overrides)
    return TransformRequest(**data)


def usage_count(db_session, user):
    counter = quota_service.get_usage_counter(user.id, db_session)
    if counter is None:
        return 0
    db_session.refresh(counter)
    return counter.transformations_count


@pytest.mark.critical
class TestSuccessfulTransform:
    """Happy path"""

    def test_transform_persists_result_and_counts_usage(self, orchestrator, test_user, db_session, s3_client):
        result = orchestrator.run(test_user.id, make_request(), db_session)

        original_key = ORIGINAL_KEY.format(uid=test_user.id)
        generated_key = GENERATED_KEY.format(uid=test_user.id)
        assert result.id is not None
        assert result.original_key == original_key
        assert result.generated_key == generated_key
        assert result.generated_url == f"https://images.example.com/{generated_key}"
        assert result.era_theme == "medieval"
        assert result.custom_prompt is None
        assert usage_count(db_session, test_user) == 1
        assert [c.kwargs["Key"] for c in s3_client.put_object.call_args_list] == [original_key, generated_key]
        s3_client.delete_object.assert_not_called()

    def test_custom_prompt_is_stored(self, orchestrator, test_user, db_session):
        result = orchestrator.run(test_user.id, make_request(theme=None, custom_prompt="as a pirate"), db_session)

        assert result.era_theme == "custom"
        assert result.custom_prompt == "as a pirate"

    def test_fallback_flag_recorded(self, orchestrator, image_client, test_user, db_session):
        image_client.generate.side_effect = [Refused("no"), image_client.generate.return_value]

        result = orchestrator.run(test_user.id, make_request(), db_session)

        assert result.used_fallback_prompt is True

    def test_pro_user_not_limited(self, orchestrator, pro_user, db_session):
        for _ in range(5):
            orchestrator.run(pro_user.id, make_request(), db_session)

        assert db_session.query(TransformResult).filter(TransformResult.user_id == pro_user.id).count() == 5
        assert usage_count(db_session, pro_user) == 5

    def test_midday_pro_upgrade_after_free_limit(self, orchestrator, test_user, db_session, s3_client):
        orchestrator.run(test_user.id, make_request(), db_session)
        orchestrator.run(test_user.id, make_request(), db_session)
        test_user.current_plan = "pro"
        db_session.commit()

        result = orchestrator.run(test_user.id, make_request(), db_session)

        assert result.id is not None
        assert usage_count(db_session, test_user) == 3
        s3_client.delete_object.assert_not_called()

    def test_no_open_transaction_while_generating(self, orchestrator, image_client, test_user, db_session):
        generated = image_client.generate.return_value
        seen = []

        def record_session_state(*args, **kwargs):
            seen.append(db_session.in_transaction())
            return generated

        image_client.generate.side_effect = record_session_state

        orchestrator.run(test_user.id, make_request(), db_session)

        assert seen == [False]


@pytest.mark.critical
class TestRejections:
    """Failures before anything is staged"""

    def test_quota_exceeded_before_any_work(self, orchestrator, test_user, db_session, s3_client, image_client):
        orchestrator.run(test_user.id, make_request(), db_session)
        orchestrator.run(test_user.id, make_request(), db_session)

        with pytest.raises(QuotaExceeded) as exc_info:
            orchestrator.run(test_user.id, make_request(), db_session)

        assert exc_info.value.limit == 2
        assert exc_info.value.remaining == 0
        assert s3_client.put_object.call_count == 4
        assert image_client.generate.call_count == 2

    def test_non_image_rejected(self, orchestrator, test_user, db_session, s3_client):
        with pytest.raises(InvalidRequest):
            orchestrator.run(test_user.id, make_request(content_type="text/plain"), db_session)

        s3_client.put_object.assert_not_called()
        assert usage_count(db_session, test_user) == 0

    def test_missing_image_rejected(self, orchestrator, test_user, db_session):
        with pytest.raises(InvalidRequest):
            orchestrator.run(test_user.id, make_request(image_bytes=None), db_session)

    def test_unknown_theme_rejected(self, orchestrator, test_user, db_session, s3_client):
        with pytest.raises(InvalidRequest):
            orchestrator.run(test_user.id, make_request(theme="baroque"), db_session)

        s3_client.put_object.assert_not_called()

    def test_oversized_image_rejected(self, monkeypatch):
        from timelens.core.config import settings
        monkeypatch.setattr(settings, "MAX_IMAGE_SIZE", 4)

        with pytest.raises(InvalidRequest):
            validate_image(b"12345", "image/png")


@pytest.mark.critical
class TestCompensation:
    """Staged objects are removed when a later step fails"""

    def test_generation_failure_deletes_original(self, orchestrator, image_client, test_user, db_session, s3_client):
        image_client.generate.return_value = PermanentFailure(ValueError("blocked"))

        with pytest.raises(GenerationFailed):
            orchestrator.run(test_user.id, make_request(), db_session)

        s3_client.delete_object.assert_called_once_with(
            Bucket=orchestrator.storage.bucket, Key=ORIGINAL_KEY.format(uid=test_user.id)
        )
        assert db_session.query(TransformResult).count() == 0
        assert usage_count(db_session, test_user) == 0

    def test_cleanup_failure_does_not_mask_error(self, orchestrator, image_client, test_user, db_session, s3_client):
        image_client.generate.return_value = PermanentFailure(ValueError("blocked"))
        s3_client.delete_object.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "DeleteObject")

        with pytest.raises(GenerationFailed):
            orchestrator.run(test_user.id, make_request(), db_session)

    def test_result_upload_failure_deletes_original(self, orchestrator, test_user, db_session, s3_client):
        s3_client.put_object.side_effect = [None, ClientError({"Error": {"Code": "InternalError"}}, "PutObject")]

        with pytest.raises(StorageError):
            orchestrator.run(test_user.id, make_request(), db_session)

        assert s3_client.delete_object.call_args_list == [
            call(Bucket=orchestrator.storage.bucket, Key=ORIGINAL_KEY.format(uid=test_user.id))
        ]
        assert usage_count(db_session, test_user) == 0

    def test_database_failure_deletes_both_objects(self, orchestrator, test_user, db_session, s3_client):
        with patch.object(quota_service, "commit_usage", side_effect=SQLAlchemyError("db down")):
            with pytest.raises(StorageError):
                orchestrator.run(test_user.id, make_request(), db_session)

        deleted = [c.kwargs["Key"] for c in s3_client.delete_object.call_args_list]
        assert deleted == [GENERATED_KEY.format(uid=test_user.id), ORIGINAL_KEY.format(uid=test_user.id)]
        assert db_session.query(TransformResult).count() == 0

    def test_lost_quota_race_rolls_back(self, orchestrator, image_client, test_user, db_session, s3_client):
        generated = image_client.generate.return_value

        def concurrent_request_wins(*args, **kwargs):
            # Another request consumes the last slot while this one is generating
            db_session.query(UsageCounter).filter(UsageCounter.user_id == test_user.id).update(
                {UsageCounter.transformations_count: 2}, synchronize_session=False
            )
            db_session.commit()
            return generated

        image_client.generate.side_effect = concurrent_request_wins

        with pytest.raises(QuotaExceeded):
            orchestrator.run(test_user.id, make_request(), db_session)

        assert db_session.query(TransformResult).count() == 0
        assert usage_count(db_session, test_user) == 2
        assert s3_client.delete_object.call_count == 2


@pytest.mark.high
class TestGallery:
    """Paginated listing of a user's results"""

    def test_pagination(self, test_user, test_user_2, db_session, storage, generator):
        orchestrator = TransformOrchestrator(storage=storage, generator=generator, clock=iter(range(1, 100)).__next__)
        test_user.current_plan = "pro"
        db_session.commit()
        for _ in range(3):
            orchestrator.run(test_user.id, make_request(), db_session)
        orchestrator.run(test_user_2.id, make_request(), db_session)

        page = list_user_transformations(test_user.id, db_session, page=1, limit=2)
        second = list_user_transformations(test_user.id, db_session, page=2, limit=2)

        assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert len(page["images"]) == 2
        assert len(second["images"]) == 1
        all_ids = [img["id"] for img in page["images"] + second["images"]]
        assert all_ids == sorted(all_ids, reverse=True)

    def test_invalid_page(self, test_user, db_session):
        with pytest.raises(InvalidRequest):
            list_user_transformations(test_user.id, db_session, page=0)
