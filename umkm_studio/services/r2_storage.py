"""Cloudflare R2 storage service for generated images."""

import asyncio
import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from functools import lru_cache
from io import BytesIO
from uuid import uuid4

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from umkm_studio.core.config import settings

logger = logging.getLogger(__name__)

_DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


class ImageStorageError(Exception):
    """Raised when an image cannot be stored."""

    pass


def decode_data_url(data_url: str) -> tuple[bytes, str]:
    """
    Decode a base64 data URL.

    Returns:
        Tuple of (raw bytes, mime type)

    Raises:
        ImageStorageError: If the value is not a base64 data URL
    """
    match = _DATA_URL_PATTERN.match(data_url.strip())
    if not match:
        raise ImageStorageError("Image is not a base64 data URL")
    try:
        content = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageStorageError(f"Invalid base64 image data: {e}")
    return content, match.group("mime")


class R2StorageService:
    """Service for uploading generated images to Cloudflare R2."""

    def __init__(self):
        """Initialize R2 storage service with boto3 client."""
        self._client = None

    @property
    def client(self):
        """Get or create boto3 S3 client for R2."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=settings.R2_ENDPOINT_URL,
                aws_access_key_id=settings.R2_ACCESS_KEY_ID,
                aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
                config=Config(signature_version="s3v4"),
                region_name="auto",  # R2 uses 'auto' region
            )
        return self._client

    def _generate_r2_path(self, account_id: int, extension: str) -> str:
        """
        Generate R2 path for a generated image.

        Path format: generated/{account_id}/{timestamp}_{uuid}.{ext}
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        return f"generated/{account_id}/{timestamp}_{uuid4().hex[:12]}.{extension}"

    async def store_generated_image(self, account_id: int, data_url: str) -> tuple[str, str]:
        """
        Decode and upload a generated image.

        Args:
            account_id: Owner of the image
            data_url: Image as a base64 data URL

        Returns:
            Tuple of (r2_path, presigned_url)

        Raises:
            ImageStorageError: If decoding or the upload fails
        """
        content, mime_type = decode_data_url(data_url)
        bucket_name = settings.R2_BUCKET_IMAGES
        r2_path = self._generate_r2_path(account_id, _EXTENSIONS.get(mime_type, "png"))

        try:
            await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: self.client.upload_fileobj(
                    BytesIO(content),
                    bucket_name,
                    r2_path,
                    ExtraArgs={"ContentType": mime_type},
                ),
            )
        except (ClientError, BotoCoreError) as e:
            raise ImageStorageError(f"Failed to upload image to R2: {e}")

        url = await self.generate_presigned_url(bucket_name, r2_path)
        logger.info(f"Stored image for account {account_id} at {r2_path}")
        return r2_path, url

    async def generate_presigned_url(
        self, bucket_name: str, r2_path: str, expiry_seconds: int = 3600
    ) -> str:
        """
        Generate pre-signed URL for temporary file access.

        Raises:
            ImageStorageError: If URL generation fails
        """
        try:
            return await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: self.client.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": bucket_name, "Key": r2_path},
                    ExpiresIn=expiry_seconds,
                ),
            )
        except (ClientError, BotoCoreError) as e:
            raise ImageStorageError(f"Failed to generate pre-signed URL: {e}")


@lru_cache
def get_r2_service() -> R2StorageService:
    """
    Get R2 storage service instance (cached).

    Returns:
        R2StorageService instance
    """
    return R2StorageService()
