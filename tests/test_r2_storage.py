"""Tests for generated image storage."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from umkm_studio.core.config import settings
from umkm_studio.services.r2_storage import ImageStorageError, R2StorageService, decode_data_url

PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgo="


@pytest.fixture
def r2_service():
    service = R2StorageService()
    service._client = MagicMock()
    service._client.generate_presigned_url.return_value = "https://r2.test/signed"
    return service


class TestDecodeDataUrl:
    """Tests for decode_data_url."""

    def test_decodes_png(self):
        content, mime = decode_data_url(PNG_DATA_URL)

        assert mime == "image/png"
        assert content.startswith(b"\x89PNG")

    @pytest.mark.parametrize(
        "value",
        ["https://cdn.test/image.png", "data:image/png;base64,not*base64", "data:image/png,raw"],
    )
    def test_rejects_invalid(self, value):
        with pytest.raises(ImageStorageError):
            decode_data_url(value)


class TestStoreGeneratedImage:
    """Tests for R2StorageService.store_generated_image."""

    async def test_uploads_and_signs(self, r2_service):
        path, url = await r2_service.store_generated_image(42, PNG_DATA_URL)

        assert path.startswith("generated/42/")
        assert path.endswith(".png")
        assert url == "https://r2.test/signed"

        args, kwargs = r2_service._client.upload_fileobj.call_args
        assert args[1] == settings.R2_BUCKET_IMAGES
        assert args[2] == path
        assert kwargs["ExtraArgs"] == {"ContentType": "image/png"}

    async def test_jpeg_extension(self, r2_service):
        path, _ = await r2_service.store_generated_image(1, "data:image/jpeg;base64,/9j/4AAQ")

        assert path.endswith(".jpg")

    async def test_upload_failure(self, r2_service):
        r2_service._client.upload_fileobj.side_effect = ClientError(
            {"Error": {"Code": "NoSuchBucket", "Message": "missing"}}, "PutObject"
        )

        with pytest.raises(ImageStorageError):
            await r2_service.store_generated_image(1, PNG_DATA_URL)
