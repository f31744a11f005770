"""Cloudflare R2 storage service using S3-compatible API"""
import logging
import re
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from timelens.core.config import settings
from timelens.core.errors import StorageError

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/heic": "heic",
}


def _encode_object_key_for_url(object_key: str) -> str:
    """URL-encode each path segment of an object key, keeping the slashes"""
    if not object_key:
        return ""
    return '/'.join(quote(segment, safe='') for segment in object_key.split('/'))


def _safe_name(filename: Optional[str]) -> str:
    name = (filename or "upload").rsplit('/', 1)[-1].rsplit('\\', 1)[-1]
    name = re.sub(r'[^A-Za-z0-9._-]+', '_', name).strip('._')
    return name or "upload"


def extension_for(mime_type: Optional[str], filename: Optional[str] = None) -> str:
    """File extension for a mime type, falling back to the filename's extension"""
    if mime_type and mime_type.lower() in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[mime_type.lower()]
    if filename and '.' in filename:
        return filename.rsplit('.', 1)[-1].lower()
    return "png"


def original_object_key(user_id: int, timestamp: int, filename: Optional[str]) -> str:
    return f"original/{user_id}/{timestamp}-{_safe_name(filename)}"


def transformed_object_key(user_id: int, timestamp: int, extension: str) -> str:
    return f"transformed/{user_id}/{timestamp}-transformed.{extension}"


class R2Service:
    """Service for storing images in Cloudflare R2"""

    def __init__(self, s3_client=None):
        self.bucket = settings.R2_BUCKET_NAME
        self.public_domain = settings.R2_PUBLIC_DOMAIN

        if s3_client is not None:
            self.s3_client = s3_client
            return

        if not settings.R2_ACCOUNT_ID or not settings.R2_ACCESS_KEY_ID or not settings.R2_SECRET_ACCESS_KEY:
            raise ValueError("R2 configuration is missing. Set R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, and R2_SECRET_ACCESS_KEY environment variables.")
        if not settings.R2_BUCKET_NAME:
            raise ValueError("R2_BUCKET_NAME is not set. Set R2_BUCKET_NAME environment variable.")

        endpoint_url = settings.R2_ENDPOINT_URL or f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"

        # Every call is bounded: connect/read timeouts plus a small retry budget
        self.s3_client = boto3.client(
            's3',
            endpoint_url=endpoint_url,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            config=Config(
                signature_version='s3v4',
                connect_timeout=settings.R2_CONNECT_TIMEOUT,
                read_timeout=settings.R2_READ_TIMEOUT,
                retries={'max_attempts': settings.R2_MAX_ATTEMPTS, 'mode': 'standard'}
            )
        )
        logger.info(f"R2Service initialized for bucket: {self.bucket}")

    def put_object(self, object_key: str, data: bytes, content_type: str) -> str:
        """Upload bytes to R2

        Returns:
            The object key

        Raises:
            ValueError: If object_key is empty
            StorageError: If the upload fails
        """
        if not object_key:
            raise ValueError("object_key cannot be empty")

        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=object_key,
                Body=data,
                ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {object_key} to R2: {e}", exc_info=True)
            raise StorageError(f"Failed to store {object_key}", cause=e)

        logger.debug(f"Uploaded {object_key} ({len(data)} bytes, {content_type})")
        return object_key

    def delete_object(self, object_key: str) -> bool:
        """Delete object from R2

        Returns:
            True if deletion succeeded or the object doesn't exist

        Raises:
            StorageError: If the deletion fails
        """
        if not object_key:
            raise ValueError("object_key cannot be empty")

        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=object_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == 'NoSuchKey':
                logger.debug(f"Object already deleted or doesn't exist: {object_key}")
                return True
            raise StorageError(f"Failed to delete {object_key}", cause=e)
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete {object_key}", cause=e)

        logger.info(f"Successfully deleted {object_key} from R2")
        return True

    def public_url(self, object_key: str) -> str:
        """Public URL for an object served through the bucket's custom domain"""
        encoded_key = _encode_object_key_for_url(object_key)
        if self.public_domain:
            domain = self.public_domain.replace("https://", "").replace("http://", "").rstrip('/')
            return f"https://{domain}/{encoded_key}"
        return f"{settings.R2_ENDPOINT_URL.rstrip('/')}/{self.bucket}/{encoded_key}"


# Global R2 service instance (lazy initialization)
_r2_service: Optional[R2Service] = None


def get_r2_service() -> R2Service:
    """Get or create R2 service instance

    Raises:
        ValueError: If R2 configuration is missing
    """
    global _r2_service
    if _r2_service is None:
        _r2_service = R2Service()
    return _r2_service
